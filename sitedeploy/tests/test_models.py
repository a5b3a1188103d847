from __future__ import annotations

from pathlib import Path

import pytest

from sitedeploy.models.errors import PipelineError, RenderFailure
from sitedeploy.models.pipeline import BuildOutput, PipelineState, PublishTarget
from sitedeploy.models.trigger import PushWebhookPayload, TriggerEvent


@pytest.mark.parametrize(
    ("ref", "branch"),
    [
        ("refs/heads/main", "main"),
        ("refs/heads/feature/x", "feature/x"),
        ("refs/tags/v1.0.0", None),
        ("refs/pull/7/merge", None),
        ("main", "main"),
        ("", None),
    ],
)
def test_trigger_event_from_ref(ref: str, branch: str | None) -> None:
    event = TriggerEvent.from_ref(ref, "abc123")

    assert event.branch == branch
    assert event.commit == "abc123"


def test_push_payload_maps_to_trigger_event() -> None:
    payload = PushWebhookPayload.model_validate(
        {
            "ref": "refs/heads/main",
            "after": "9f2c1e",
            "repository": {"full_name": "uzluisf/blog", "clone_url": "https://github.com/uzluisf/blog.git"},
            "pusher": {"name": "uzluisf", "email": "luis@example.com"},
        }
    )

    event = payload.to_event()

    assert event == TriggerEvent(branch="main", commit="9f2c1e", repository="uzluisf/blog", pusher="uzluisf")


def test_branch_deletion_produces_no_event() -> None:
    payload = PushWebhookPayload.model_validate(
        {
            "ref": "refs/heads/main",
            "after": "0" * 40,
            "deleted": True,
            "repository": {"full_name": "uzluisf/blog"},
        }
    )

    assert payload.to_event() is None


def test_build_id_depends_only_on_paths_and_digests(tmp_path: Path) -> None:
    first = BuildOutput(path=tmp_path / "a", files={"index.html": "11", "posts/a/index.html": "22"})
    second = BuildOutput(path=tmp_path / "b", files={"posts/a/index.html": "22", "index.html": "11"})
    changed = BuildOutput(path=tmp_path / "a", files={"index.html": "11", "posts/a/index.html": "33"})

    assert first.build_id == second.build_id
    assert first.build_id != changed.build_id
    assert first.file_count == 2
    assert BuildOutput(path=tmp_path).is_empty


def test_terminal_states() -> None:
    assert PipelineState.SUCCEEDED.is_terminal
    assert PipelineState.FAILED.is_terminal
    assert not PipelineState.PUBLISHING.is_terminal


def test_publish_target_key() -> None:
    assert PublishTarget("uzluisf/uzluisf.github.io", "main").key == "uzluisf/uzluisf.github.io@main"


def test_render_failure_defaults_to_generic_exit_code() -> None:
    error = RenderFailure("no output")

    assert isinstance(error, PipelineError)
    assert error.exit_code == 0
    assert str(error) == "no output"
