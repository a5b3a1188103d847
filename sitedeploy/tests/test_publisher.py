from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from sitedeploy.models.errors import PublishFailure
from sitedeploy.models.pipeline import BuildOutput, PublishTarget
from sitedeploy.services.build_output import snapshot_output
from sitedeploy.services.publisher import GitPublisher, remote_url_for
from sitedeploy.tests.git_helpers import branch_tree, git, has_branch

DEPLOY_KEY = "not-a-real-key"


def make_build(root: Path, files: dict[str, str]) -> BuildOutput:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return snapshot_output(root)


def make_publisher(target_repo: Path, **kwargs: object) -> GitPublisher:
    return GitPublisher(
        target=PublishTarget(repository="owner/owner.github.io", branch="main"),
        remote_url=str(target_repo),
        **kwargs,
    )


def test_publish_creates_branch_with_exact_build_content(tmp_path: Path, target_repo: Path) -> None:
    build = make_build(
        tmp_path / "public",
        {"index.html": "<h1>Home</h1>\n", "posts/first/index.html": "<p>First</p>\n"},
    )

    result = make_publisher(target_repo).publish(build, deploy_key=DEPLOY_KEY, source_commit="a" * 40)

    assert result.changed is True
    assert result.target.branch == "main"
    assert branch_tree(target_repo) == {
        "index.html": "<h1>Home</h1>",
        "posts/first/index.html": "<p>First</p>",
    }
    assert git("rev-parse", "refs/heads/main", cwd=target_repo) == result.commit_hash
    message = git("log", "-1", "--format=%s", "refs/heads/main", cwd=target_repo)
    assert message == f"deploy: {'a' * 40}"


def test_build_shipping_a_gitignore_is_published_in_full(tmp_path: Path, target_repo: Path) -> None:
    build = make_build(
        tmp_path / "public",
        {".gitignore": "*.log\n", "index.html": "<h1>Home</h1>\n", "build.log": "rendered 1 page\n"},
    )

    make_publisher(target_repo).publish(build, deploy_key=DEPLOY_KEY)

    assert set(branch_tree(target_repo)) == {".gitignore", "index.html", "build.log"}


def test_global_excludes_file_does_not_drop_build_files(
    tmp_path: Path, target_repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    excludes = tmp_path / "global-ignore"
    excludes.write_text("*.xml\n", encoding="utf-8")
    global_config = tmp_path / "gitconfig"
    global_config.write_text(f"[core]\n\texcludesFile = {excludes}\n", encoding="utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    build = make_build(tmp_path / "public", {"index.html": "<h1>Home</h1>\n", "index.xml": "<rss/>\n"})

    make_publisher(target_repo).publish(build, deploy_key=DEPLOY_KEY)

    assert branch_tree(target_repo) == {"index.html": "<h1>Home</h1>", "index.xml": "<rss/>"}


def test_publish_removes_files_absent_from_the_new_build(tmp_path: Path, target_repo: Path) -> None:
    publisher = make_publisher(target_repo)
    publisher.publish(
        make_build(tmp_path / "first", {"index.html": "v1\n", "old/page.html": "stale\n"}),
        deploy_key=DEPLOY_KEY,
    )

    publisher.publish(make_build(tmp_path / "second", {"index.html": "v2\n"}), deploy_key=DEPLOY_KEY)

    assert branch_tree(target_repo) == {"index.html": "v2"}
    history = git("rev-list", "--count", "refs/heads/main", cwd=target_repo)
    assert history == "2"


def test_publishing_the_same_build_twice_leaves_the_branch_unchanged(
    tmp_path: Path, target_repo: Path
) -> None:
    publisher = make_publisher(target_repo)
    first = publisher.publish(make_build(tmp_path / "one", {"index.html": "same\n"}), deploy_key=DEPLOY_KEY)

    second = publisher.publish(make_build(tmp_path / "two", {"index.html": "same\n"}), deploy_key=DEPLOY_KEY)

    assert second.changed is False
    assert second.commit_hash == first.commit_hash
    assert git("rev-list", "--count", "refs/heads/main", cwd=target_repo) == "1"


def test_allow_empty_commit_records_a_deploy_even_without_changes(tmp_path: Path, target_repo: Path) -> None:
    publisher = make_publisher(target_repo, allow_empty_commit=True)
    first = publisher.publish(make_build(tmp_path / "one", {"index.html": "same\n"}), deploy_key=DEPLOY_KEY)

    second = publisher.publish(make_build(tmp_path / "two", {"index.html": "same\n"}), deploy_key=DEPLOY_KEY)

    assert second.changed is False
    assert second.commit_hash != first.commit_hash
    assert git("rev-list", "--count", "refs/heads/main", cwd=target_repo) == "2"


def test_force_orphan_replaces_history_with_a_single_commit(tmp_path: Path, target_repo: Path) -> None:
    make_publisher(target_repo).publish(make_build(tmp_path / "one", {"a.html": "a\n"}), deploy_key=DEPLOY_KEY)

    result = make_publisher(target_repo, force_orphan=True).publish(
        make_build(tmp_path / "two", {"b.html": "b\n"}),
        deploy_key=DEPLOY_KEY,
    )

    assert result.changed is True
    assert git("rev-list", "--count", "refs/heads/main", cwd=target_repo) == "1"
    assert branch_tree(target_repo) == {"b.html": "b"}


def test_commit_message_template_receives_build_details(tmp_path: Path, target_repo: Path) -> None:
    build = make_build(tmp_path / "public", {"index.html": "x\n"})
    publisher = make_publisher(target_repo, commit_message="site {short_commit} ({build_id})")

    publisher.publish(build, deploy_key=DEPLOY_KEY, source_commit="0123456789abcdef")

    message = git("log", "-1", "--format=%s", "refs/heads/main", cwd=target_repo)
    assert message == f"site 0123456 ({build.build_id})"


def test_unreachable_remote_raises_publish_failure(tmp_path: Path) -> None:
    build = make_build(tmp_path / "public", {"index.html": "x\n"})
    publisher = make_publisher(tmp_path / "missing.git")

    with pytest.raises(PublishFailure) as excinfo:
        publisher.publish(build, deploy_key=DEPLOY_KEY)

    assert excinfo.value.exit_code not in (None, 0)


def test_rejected_push_raises_publish_failure(tmp_path: Path, target_repo: Path) -> None:
    hook = target_repo / "hooks" / "pre-receive"
    hook.write_text("#!/bin/sh\necho 'deploys are frozen' >&2\nexit 1\n", encoding="utf-8")
    hook.chmod(0o755)
    build = make_build(tmp_path / "public", {"index.html": "x\n"})

    with pytest.raises(PublishFailure, match="git push failed"):
        make_publisher(target_repo).publish(build, deploy_key=DEPLOY_KEY)

    assert not has_branch(target_repo)


def test_publish_leaves_other_branches_alone(tmp_path: Path, target_repo: Path) -> None:
    publisher = GitPublisher(
        target=PublishTarget(repository="owner/site", branch="gh-pages"),
        remote_url=str(target_repo),
    )

    publisher.publish(make_build(tmp_path / "public", {"index.html": "x\n"}), deploy_key=DEPLOY_KEY)

    assert has_branch(target_repo, "gh-pages")
    assert not has_branch(target_repo, "main")


@pytest.mark.parametrize(
    ("repository", "expected"),
    [
        ("uzluisf/uzluisf.github.io", "git@github.com:uzluisf/uzluisf.github.io.git"),
        ("https://example.com/site.git", "https://example.com/site.git"),
        ("git@example.com:site.git", "git@example.com:site.git"),
        ("/srv/git/site.git", "/srv/git/site.git"),
    ],
)
def test_remote_url_for(repository: str, expected: str) -> None:
    assert remote_url_for(repository) == expected


def test_remote_url_for_uses_template() -> None:
    url = remote_url_for("owner/site", "https://git.example.com/{repository}.git")

    assert url == "https://git.example.com/owner/site.git"


def test_deploy_key_is_not_left_on_disk(tmp_path: Path, target_repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    scratch = tmp_path / "tmp"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))

    make_publisher(target_repo).publish(make_build(tmp_path / "public", {"index.html": "x\n"}), deploy_key=DEPLOY_KEY)

    assert list(scratch.iterdir()) == []
    assert has_branch(target_repo)
