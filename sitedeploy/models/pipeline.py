"""Data structures exchanged between the pipeline stages."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineState(str, Enum):
    """States a single run moves through."""

    IDLE = "idle"
    TRIGGERED = "triggered"
    ACQUIRING = "acquiring"
    CLEANING = "cleaning"
    RENDERING = "rendering"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.SUCCEEDED, PipelineState.FAILED)


@dataclass(slots=True, frozen=True)
class PublishTarget:
    """The external repository and branch receiving generated output."""

    repository: str
    branch: str

    @property
    def key(self) -> str:
        """Identifier shared by the run lock and the run history."""

        return f"{self.repository}@{self.branch}"


@dataclass(slots=True, frozen=True)
class ThemeReference:
    """Named theme with the revision recorded in the acquired commit."""

    name: str
    revision: str | None = None


@dataclass(slots=True)
class SourceSnapshot:
    """A fresh checkout of the source repository for one run."""

    path: Path
    commit: str
    branch: str | None
    shallow: bool
    theme: ThemeReference


@dataclass(slots=True)
class BuildOutput:
    """Files written by the renderer, keyed by POSIX relative path."""

    path: Path
    files: dict[str, str] = field(default_factory=dict)

    @property
    def build_id(self) -> str:
        """Content address of the output: only paths and file digests count."""

        digest = hashlib.sha256()
        for relative, file_digest in sorted(self.files.items()):
            digest.update(relative.encode("utf-8"))
            digest.update(b"\0")
            digest.update(file_digest.encode("ascii"))
            digest.update(b"\n")
        return digest.hexdigest()

    @property
    def file_count(self) -> int:
        return len(self.files)

    @property
    def is_empty(self) -> bool:
        return not self.files


@dataclass(slots=True)
class PublicationResult:
    """Outcome returned by the publisher after pushing a build."""

    target: PublishTarget
    commit_hash: str
    changed: bool
    pushed_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True, frozen=True)
class StageTransition:
    """A single entry in a run's state history."""

    state: PipelineState
    at: datetime = field(default_factory=_utcnow)
