"""Deploy key handling. The key itself is never logged or written to the source tree."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from sitedeploy.models.errors import MissingCredential


def resolve_deploy_key(
    env_name: str,
    key_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Return the deploy key from ``key_file`` or the ``env_name`` variable."""

    if key_file is not None:
        try:
            secret = Path(key_file).expanduser().read_text(encoding="utf-8")
        except OSError as exc:
            raise MissingCredential(f"Deploy key file {key_file} could not be read: {exc.strerror}") from exc
        if secret.strip():
            return secret
        raise MissingCredential(f"Deploy key file {key_file} is empty")

    environ = os.environ if environ is None else environ
    secret = environ.get(env_name, "")
    if not secret.strip():
        raise MissingCredential(f"Deploy key is not set; expected secret in ${env_name}")
    return secret


@contextmanager
def deploy_key_file(secret: str) -> Iterator[Path]:
    """Write ``secret`` to a private temporary file for the duration of the block."""

    if not secret.endswith("\n"):
        secret = f"{secret}\n"

    fd, raw_path = tempfile.mkstemp(prefix="sitedeploy-key-")
    path = Path(raw_path)
    try:
        os.chmod(path, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(secret)
        yield path
    finally:
        path.unlink(missing_ok=True)


def ssh_environment(key_path: Path) -> dict[str, str]:
    """Environment that makes Git authenticate over SSH with ``key_path`` only."""

    return {
        "GIT_SSH_COMMAND": (
            f"ssh -i {key_path} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
        ),
        "GIT_TERMINAL_PROMPT": "0",
    }
