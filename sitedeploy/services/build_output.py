"""Lifecycle of the generated site: clean, snapshot and discard."""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path

from sitedeploy.models.errors import CleanFailure, RenderFailure
from sitedeploy.models.pipeline import BuildOutput

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 16


def resolve_output_dir(source_root: Path, output_dir: str) -> Path:
    """Return ``output_dir`` under ``source_root``, refusing paths that escape it."""

    root = source_root.resolve(strict=False)
    target = (source_root / output_dir).resolve(strict=False)
    try:
        target.relative_to(root)
    except ValueError as exc:
        raise CleanFailure(f"Output directory escapes the source tree: {output_dir!r}") from exc
    if target == root:
        raise CleanFailure("Output directory must not be the source root")
    return target


def clean_output(path: Path) -> bool:
    """Remove any previous build output at ``path``.

    Returns ``True`` when something was removed.
    """

    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        else:
            return False
    except OSError as exc:
        raise CleanFailure(f"Could not remove stale output at {path}: {exc}") from exc

    logger.info("Removed stale build output at %s", path)
    return True


def _file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def snapshot_output(path: Path) -> BuildOutput:
    """Hash every file below ``path``; a missing directory yields an empty build."""

    files: dict[str, str] = {}
    if path.is_dir():
        for candidate in sorted(path.rglob("*")):
            relative = candidate.relative_to(path)
            # Git cannot track these; the publisher would clobber its own metadata.
            if ".git" in relative.parts:
                continue
            if candidate.is_symlink() and candidate.is_dir():
                raise RenderFailure(f"Build output contains a symlinked directory: {relative.as_posix()}", exit_code=0)
            if candidate.is_file():
                files[relative.as_posix()] = _file_digest(candidate)
    return BuildOutput(path=path, files=files)


def discard_output(build: BuildOutput) -> None:
    """Delete the local copy of a build once it has been published."""

    if build.path.exists():
        shutil.rmtree(build.path, ignore_errors=True)
        logger.debug("Discarded build output %s at %s", build.build_id[:12], build.path)
