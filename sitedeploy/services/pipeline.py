"""Orchestration layer that chains acquisition, cleaning, rendering and publishing."""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from sitedeploy.models.errors import PipelineError
from sitedeploy.models.pipeline import (
    BuildOutput,
    PipelineState,
    PublicationResult,
    PublishTarget,
    SourceSnapshot,
    StageTransition,
)
from sitedeploy.models.trigger import TriggerEvent
from sitedeploy.services.build_output import clean_output, discard_output, resolve_output_dir
from sitedeploy.services.run_lock import shared_run_lock


logger = logging.getLogger(__name__)

SHALLOW_HISTORY_WARNING = (
    "Source history is shallow; last-modified metadata derived from commit history is incorrect."
)


class SupportsAcquisition(Protocol):
    """Subset of :class:`SourceAcquirer` relied on by the pipeline."""

    def acquire(self, event: TriggerEvent, destination: Path, theme: str) -> SourceSnapshot:
        """Check out the source tree for ``event``."""


class SupportsRendering(Protocol):
    """Protocol describing the renderer interface."""

    def render(self, snapshot: SourceSnapshot, output_dir: Path) -> BuildOutput:
        """Generate the site for ``snapshot`` into ``output_dir``."""


class SupportsPublishing(Protocol):
    """Protocol describing the publisher interface."""

    def publish(
        self,
        build: BuildOutput,
        *,
        deploy_key: str,
        source_commit: str | None = None,
    ) -> PublicationResult:
        """Push the build to the publish target."""


class SupportsRunLedger(Protocol):
    """Run history store; see :class:`RunLedger`."""

    def record_build(self, build: BuildOutput) -> str:
        """Store the manifest of ``build``."""

    def record_run(self, result: "RunResult") -> Any:
        """Append a finished run."""


class SupportsRunLock(Protocol):
    def hold(self, key: str) -> AbstractContextManager[None]:
        """Serialise runs sharing ``key``."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RunResult:
    """Structured summary of a single pipeline run."""

    run_id: str
    event: TriggerEvent
    target: PublishTarget
    state: PipelineState = PipelineState.IDLE
    failed_stage: PipelineState | None = None
    error: str | None = None
    exit_code: int | None = None
    transitions: list[StageTransition] = field(default_factory=list)
    snapshot: SourceSnapshot | None = None
    build: BuildOutput | None = None
    publication: PublicationResult | None = None
    warnings: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the build reached the publish target."""

        return self.state is PipelineState.SUCCEEDED

    @property
    def exit_status(self) -> int:
        """Process exit status for the run: the failing step's status, or 1."""

        if self.succeeded:
            return 0
        return self.exit_code or 1


@dataclass(slots=True)
class PipelineController:
    """Run acquire, clean, render and publish strictly in order, failing closed."""

    acquirer: SupportsAcquisition
    renderer: SupportsRendering
    publisher: SupportsPublishing
    target: PublishTarget
    theme: str
    workspace: Path
    credential_resolver: Callable[[], str]
    branches: Sequence[str] = ("main",)
    output_dir: str = "public"
    ledger: SupportsRunLedger | None = None
    lock: SupportsRunLock = field(default_factory=shared_run_lock)

    def accepts(self, event: TriggerEvent) -> bool:
        """Return ``True`` when ``event`` is a push to an allow-listed branch."""

        return event.branch is not None and event.branch in self.branches

    def handle(self, event: TriggerEvent) -> RunResult | None:
        """Run the pipeline for ``event``, or ignore it when the branch does not match."""

        if not self.accepts(event):
            logger.info(
                "PIPELINE_IGNORED branch=%s allowed=%s", event.branch, ",".join(self.branches)
            )
            return None
        return self.run(event)

    def run(self, event: TriggerEvent) -> RunResult:
        """Execute one run for ``event``; the first failing stage ends it."""

        result = RunResult(run_id=uuid.uuid4().hex, event=event, target=self.target)
        result.transitions.append(StageTransition(PipelineState.IDLE, result.started_at))
        logger.info(
            "PIPELINE_START run=%s branch=%s commit=%s target=%s",
            result.run_id,
            event.branch,
            event.commit or "HEAD",
            self.target.key,
        )

        with self.lock.hold(self.target.key):
            try:
                self._execute(result)
            finally:
                result.finished_at = _utcnow()
                self._record_run(result)

        publication = result.publication
        if result.succeeded and publication is not None:
            logger.info(
                "PIPELINE_COMPLETE run=%s build=%s commit=%s changed=%s",
                result.run_id,
                result.build.build_id if result.build else None,
                publication.commit_hash,
                publication.changed,
            )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _execute(self, result: RunResult) -> None:
        try:
            self._advance(result, PipelineState.TRIGGERED)
            deploy_key = self.credential_resolver()

            self._advance(result, PipelineState.ACQUIRING)
            snapshot = self.acquirer.acquire(result.event, self.workspace / "source", self.theme)
            result.snapshot = snapshot
            if snapshot.shallow:
                result.warnings.append(SHALLOW_HISTORY_WARNING)

            self._advance(result, PipelineState.CLEANING)
            output_path = resolve_output_dir(snapshot.path, self.output_dir)
            clean_output(output_path)

            self._advance(result, PipelineState.RENDERING)
            build = self.renderer.render(snapshot, output_path)
            result.build = build
            self._record_build(result, build)

            self._advance(result, PipelineState.PUBLISHING)
            result.publication = self.publisher.publish(
                build,
                deploy_key=deploy_key,
                source_commit=snapshot.commit,
            )
        except PipelineError as exc:
            self._fail(result, str(exc), exc.exit_code)
            return
        except OSError as exc:
            self._fail(result, f"{type(exc).__name__}: {exc}", None)
            return
        except Exception as exc:
            logger.exception("Unexpected error in stage %s of run %s", result.state.value, result.run_id)
            self._fail(result, f"{type(exc).__name__}: {exc}", None)
            return

        discard_output(build)
        self._advance(result, PipelineState.SUCCEEDED)

    def _advance(self, result: RunResult, state: PipelineState) -> None:
        result.state = state
        result.transitions.append(StageTransition(state))
        logger.info("PIPELINE_STAGE run=%s stage=%s", result.run_id, state.value)

    def _fail(self, result: RunResult, message: str, exit_code: int | None) -> None:
        result.failed_stage = result.state
        result.error = message
        result.exit_code = exit_code
        result.state = PipelineState.FAILED
        result.transitions.append(StageTransition(PipelineState.FAILED))
        logger.error(
            "PIPELINE_FAILED run=%s stage=%s exit_code=%s: %s",
            result.run_id,
            result.failed_stage.value,
            exit_code,
            message,
        )

    def _record_build(self, result: RunResult, build: BuildOutput) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.record_build(build)
        except Exception as exc:
            logger.exception("Could not record manifest for build %s", build.build_id)
            result.warnings.append(f"Build manifest not recorded: {exc}")

    def _record_run(self, result: RunResult) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.record_run(result)
        except Exception:
            logger.exception("Could not record run %s in the ledger", result.run_id)
