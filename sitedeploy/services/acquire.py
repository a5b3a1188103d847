"""Acquire a fresh checkout of the source repository for a run."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from sitedeploy.models.errors import AcquisitionFailure
from sitedeploy.models.pipeline import SourceSnapshot, ThemeReference
from sitedeploy.models.trigger import TriggerEvent
from sitedeploy.services.commands import CommandRunner, describe_failure

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceAcquirer:
    """Clone the source repository, resolve submodules and locate the theme.

    ``fetch_depth`` of ``0`` clones the full history. The renderer derives
    per-page last-modified dates from the commit log, so anything shallower
    yields wrong dates rather than an error.
    """

    source_url: str
    runner: CommandRunner = field(default_factory=CommandRunner)
    submodules: bool = True
    fetch_depth: int = 0
    themes_dir: str = "themes"

    def acquire(self, event: TriggerEvent, destination: Path, theme: str) -> SourceSnapshot:
        """Check out ``event`` into ``destination`` and return the snapshot."""

        if destination.exists():
            shutil.rmtree(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        clone_args = ["clone", "--quiet"]
        if event.branch:
            clone_args += ["--branch", event.branch]
        if self.fetch_depth > 0:
            clone_args += ["--depth", str(self.fetch_depth)]
        clone_args += [self._clone_url(), str(destination)]
        self._git(*clone_args, action="clone")

        if event.commit:
            self._git("checkout", "--quiet", "--detach", event.commit, cwd=destination, action="checkout")

        if self.submodules:
            submodule_args = ["submodule", "update", "--init", "--recursive"]
            if self.fetch_depth > 0:
                submodule_args += ["--depth", str(self.fetch_depth)]
            self._git(*submodule_args, cwd=destination, action="submodule update")

        commit = self._git("rev-parse", "HEAD", cwd=destination, action="rev-parse").stdout.strip()
        shallow_flag = self._git(
            "rev-parse", "--is-shallow-repository", cwd=destination, action="rev-parse"
        ).stdout.strip()
        shallow = shallow_flag == "true"
        if shallow:
            logger.warning(
                "Source checkout of %s is shallow (depth=%s); last-modified metadata derived "
                "from commit history will be incorrect",
                commit,
                self.fetch_depth,
            )

        theme_reference = self._resolve_theme(destination, theme)
        logger.info(
            "Acquired %s at %s (theme %s@%s)",
            self.source_url,
            commit,
            theme_reference.name,
            theme_reference.revision or "untracked",
        )
        return SourceSnapshot(
            path=destination,
            commit=commit,
            branch=event.branch,
            shallow=shallow,
            theme=theme_reference,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _clone_url(self) -> str:
        """Return the URL to clone; local paths become ``file://`` URLs when shallow.

        Git ignores ``--depth`` for plain-path local clones.
        """

        candidate = Path(self.source_url).expanduser()
        if "://" not in self.source_url and candidate.exists():
            resolved = candidate.resolve()
            return resolved.as_uri() if self.fetch_depth > 0 else str(resolved)
        return self.source_url

    def _resolve_theme(self, root: Path, theme: str) -> ThemeReference:
        relative = f"{self.themes_dir}/{theme}"
        theme_path = root / self.themes_dir / theme
        if not theme_path.is_dir() or not any(theme_path.iterdir()):
            raise AcquisitionFailure(
                f"Theme '{theme}' did not resolve: {relative} is missing or empty "
                "(are submodules enabled?)"
            )

        result = self.runner.git("rev-parse", f"HEAD:{relative}", cwd=root)
        revision = result.stdout.strip() if result.returncode == 0 else None
        return ThemeReference(name=theme, revision=revision or None)

    def _git(self, *args: str, action: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
        try:
            result = self.runner.git(*args, cwd=cwd)
        except FileNotFoundError as exc:
            raise AcquisitionFailure(f"git executable not found: {exc}", exit_code=127) from exc
        if result.returncode != 0:
            raise AcquisitionFailure(
                f"git {action} failed: {describe_failure(result)}",
                exit_code=result.returncode,
            )
        return result
