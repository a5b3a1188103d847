"""Serialise runs that publish to the same target."""

from __future__ import annotations

import fcntl
import hashlib
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunLock:
    """Blocking mutex keyed by publish target.

    Threads in this process share a ``threading.Lock`` per key. When
    ``lock_dir`` is set, an ``flock`` on a per-key file also serialises runs
    started by other processes on the same host.
    """

    lock_dir: Path | None = None
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _locks: dict[str, threading.Lock] = field(default_factory=dict, init=False, repr=False)

    def _local_lock(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def lock_path(self, key: str) -> Path | None:
        if self.lock_dir is None:
            return None
        name = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
        return self.lock_dir / f"{name}.lock"

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Block until no other run holds ``key``, then hold it for the block."""

        local = self._local_lock(key)
        if not local.acquire(blocking=False):
            logger.info("Waiting for the in-flight run on %s to finish", key)
            local.acquire()
        try:
            path = self.lock_path(key)
            if path is None:
                yield
                return
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            local.release()


@lru_cache(maxsize=None)
def _run_lock_for(lock_dir: Path | None) -> RunLock:
    return RunLock(lock_dir=lock_dir)


def shared_run_lock(lock_dir: Path | None = None) -> RunLock:
    """Return the process-wide lock for ``lock_dir`` so every controller shares it."""

    return _run_lock_for(lock_dir)
