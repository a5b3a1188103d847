"""Failures raised by pipeline stages.

Mismatched triggers are not represented here: the controller ignores them
instead of raising.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures that stop a run."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class MissingCredential(PipelineError):
    """The deploy key is not available to the execution environment."""


class AcquisitionFailure(PipelineError):
    """Cloning, checking out, fetching submodules or resolving the theme failed."""


class CleanFailure(PipelineError):
    """Stale build output could not be removed."""


class RenderFailure(PipelineError):
    """The renderer exited non-zero or produced no output."""

    def __init__(self, message: str, *, exit_code: int | None = 0) -> None:
        super().__init__(message, exit_code=exit_code)


class PublishFailure(PipelineError):
    """Authentication, network failure or a rejected push."""
