"""Thin wrapper around ``subprocess`` shared by the pipeline stages."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandRunner:
    """Execute external commands and return the completed process.

    Non-zero exit statuses are returned, not raised: each stage maps them onto
    its own failure type.
    """

    git_executable: str = "git"

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        merged_env = None
        if env:
            merged_env = {**os.environ, **env}

        logger.debug("Running %s (cwd=%s)", " ".join(args), cwd)
        result = subprocess.run(
            list(args),
            cwd=cwd,
            env=merged_env,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            logger.warning(
                "Command %s exited with %s: %s",
                args[0],
                result.returncode,
                (result.stderr or "").strip(),
            )
        return result

    def git(
        self,
        *args: str,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute a Git subcommand."""

        return self.run([self.git_executable, *args], cwd=cwd, env=env)


def describe_failure(result: subprocess.CompletedProcess[str]) -> str:
    """Return the most useful line of output from a failed command."""

    for stream in (result.stderr, result.stdout):
        text = (stream or "").strip()
        if text:
            return text.splitlines()[-1]
    return f"exit status {result.returncode}"
