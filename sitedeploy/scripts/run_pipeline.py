"""Run the build-and-deploy pipeline for a single push event.

This is the CI entry point: a push to an allow-listed branch acquires the
source tree, rebuilds the site from scratch and publishes it to the external
repository. Pushes to any other branch are ignored and exit successfully.

The branch and commit default to ``GITHUB_REF``/``GITHUB_SHA`` when running
under GitHub Actions, and to the source repository's current ``HEAD``
otherwise.

Configuration:
- ``--config PATH`` or ``SITEDEPLOY_CONFIG`` (default ``sitedeploy.yaml``).
- The deploy key is read from the environment variable named in the
  configuration (``ACTIONS_DEPLOY_KEY`` by default).
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Sequence

from sitedeploy.models.settings import PipelineSettings
from sitedeploy.models.trigger import TriggerEvent
from sitedeploy.services.commands import CommandRunner
from sitedeploy.services.pipeline import PipelineController, RunResult
from sitedeploy.services.settings import SettingsError, build_controller, load_settings

LOGGER = logging.getLogger("sitedeploy.pipeline")

EXIT_CONFIGURATION_ERROR = 2


def _configure_logging(level_name: str | None = None) -> None:
    """Configure root logging based on ``--log-level`` or ``SITEDEPLOY_LOG_LEVEL``."""
    level_name = (level_name or os.getenv("SITEDEPLOY_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the site and publish it to the deploy target.")
    parser.add_argument(
        "--config",
        default=os.getenv("SITEDEPLOY_CONFIG"),
        help="Path to the YAML settings file (default from SITEDEPLOY_CONFIG or sitedeploy.yaml).",
    )
    parser.add_argument(
        "--source",
        default=os.getenv("SITEDEPLOY_SOURCE"),
        help="Source repository to clone: a path or URL (default: source_url setting, then the current directory).",
    )
    parser.add_argument("--branch", help="Branch that was pushed (default from GITHUB_REF or HEAD).")
    parser.add_argument("--commit", help="Commit to build (default from GITHUB_SHA or the branch tip).")
    parser.add_argument("--workspace", help="Override the working directory used for checkouts.")
    parser.add_argument("--log-level", default=None, help="Logging level (default INFO).")
    return parser.parse_args(argv)


def _current_branch(source: str) -> str | None:
    """Return the branch checked out in a local ``source`` repository, if any."""

    path = Path(source).expanduser()
    if not path.is_dir():
        return None
    result = CommandRunner().git("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
    branch = result.stdout.strip()
    if result.returncode != 0 or not branch or branch == "HEAD":
        return None
    return branch


def _resolve_event(args: argparse.Namespace) -> TriggerEvent:
    if args.branch:
        return TriggerEvent(branch=args.branch, commit=args.commit)

    github_ref = os.getenv("GITHUB_REF")
    if github_ref:
        return TriggerEvent.from_ref(
            github_ref,
            args.commit or os.getenv("GITHUB_SHA"),
            repository=os.getenv("GITHUB_REPOSITORY"),
            pusher=os.getenv("GITHUB_ACTOR"),
        )

    return TriggerEvent(branch=_current_branch(args.source), commit=args.commit)


def _build_controller(settings: PipelineSettings, source: str) -> PipelineController:
    return build_controller(settings, source)


def _summarise(result: RunResult) -> dict[str, Any]:
    build = result.build
    publication = result.publication
    return {
        "status": result.state.value,
        "run_id": result.run_id,
        "branch": result.event.branch,
        "commit": result.snapshot.commit if result.snapshot else result.event.commit,
        "target": result.target.key,
        "failed_stage": result.failed_stage.value if result.failed_stage else None,
        "exit_code": result.exit_status,
        "build_id": build.build_id if build else None,
        "file_count": build.file_count if build else 0,
        "published_commit": publication.commit_hash if publication else None,
        "changed": publication.changed if publication else None,
        "transitions": [transition.state.value for transition in result.transitions],
        "warnings": result.warnings,
        "errors": [result.error] if result.error else [],
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.log_level)

    try:
        settings = load_settings(args.config)
    except SettingsError as exc:
        LOGGER.error("PIPELINE_CONFIG_ERROR %s", exc)
        return EXIT_CONFIGURATION_ERROR

    if args.workspace:
        settings = settings.model_copy(update={"workspace": Path(args.workspace)})

    args.source = args.source or settings.source_url or "."
    event = _resolve_event(args)
    controller = _build_controller(settings, args.source)
    result = controller.handle(event)

    if result is None:
        LOGGER.info("Push to %s does not trigger a deploy; nothing to do.", event.branch)
        print(json.dumps({"status": "ignored", "branch": event.branch}))
        return 0

    for warning in result.warnings:
        LOGGER.warning("PIPELINE_WARNING %s", warning)
    if result.error:
        LOGGER.error("PIPELINE_ERROR %s", result.error)

    print(json.dumps(_summarise(result), ensure_ascii=False))
    sys.stdout.flush()
    return result.exit_status


if __name__ == "__main__":  # pragma: no cover - script entry point
    raise SystemExit(main())
