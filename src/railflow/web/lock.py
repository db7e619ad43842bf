# src/railflow/web/lock.py
"""Single-instance lock for the headless worker.

Two workers sharing a profile root would fight over the same persistent
browser profiles. The lock file records the owning pid; a live previous
owner is terminated (SIGTERM, then SIGKILL after a grace period) before the
new worker takes over.
"""

from __future__ import annotations

import json
import os
import signal
import time
from pathlib import Path
from typing import Any

import structlog

from railflow.contracts.records import utc_now

slog = structlog.get_logger(__name__)

LOCK_FILE_NAME = "worker.lock.json"
TERMINATE_GRACE_SECONDS = 1.2
_TERMINATE_POLL_SECONDS = 0.12


def harden_dir(path: Path) -> None:
    """Create path (and parents) and restrict it to the current user."""
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    try:
        path.chmod(0o700)
    except OSError:
        slog.debug("chmod_unsupported", path=str(path))


def harden_file(path: Path) -> None:
    try:
        path.chmod(0o600)
    except OSError:
        slog.debug("chmod_unsupported", path=str(path))


def is_pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


def terminate_pid(pid: int, *, grace_seconds: float = TERMINATE_GRACE_SECONDS) -> None:
    """SIGTERM pid, escalating to SIGKILL if it is still alive after grace_seconds."""
    if pid == os.getpid() or not is_pid_alive(pid):
        return
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        return

    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not is_pid_alive(pid):
            return
        time.sleep(_TERMINATE_POLL_SECONDS)

    try:
        os.kill(pid, signal.SIGKILL)
    except OSError as e:
        slog.warning("stale_worker_kill_failed", pid=pid, error=str(e))


class WorkerLock:
    """worker.lock.json under the profile root.

    Example:
        lock = WorkerLock(settings.worker.profile_root)
        lock.acquire()
        try:
            ...
        finally:
            lock.release()
    """

    def __init__(self, profile_root: Path) -> None:
        self._profile_root = profile_root
        self._path = profile_root / LOCK_FILE_NAME
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def read_owner(self) -> dict[str, Any] | None:
        """Parsed lock file, or None when it is missing or corrupt."""
        try:
            parsed = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return parsed if isinstance(parsed, dict) else None

    def acquire(self) -> None:
        harden_dir(self._profile_root)
        owner = self.read_owner()
        if owner is not None:
            try:
                existing_pid = int(owner.get("pid", 0))
            except (TypeError, ValueError):
                existing_pid = 0
            if existing_pid > 0 and existing_pid != os.getpid() and is_pid_alive(existing_pid):
                slog.warning("stale_worker_lock", pid=existing_pid, path=str(self._path))
                terminate_pid(existing_pid)

        payload = {
            "pid": os.getpid(),
            "startedAt": utc_now().isoformat(),
            "profileRoot": str(self._profile_root),
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        harden_file(self._path)
        self._held = True
        slog.info("worker_lock_acquired", path=str(self._path))

    def release(self) -> None:
        """Remove the lock file if this process still owns it."""
        if not self._held:
            return
        self._held = False
        owner = self.read_owner()
        if owner is not None and owner.get("pid") == os.getpid():
            self._path.unlink(missing_ok=True)
            slog.info("worker_lock_released", path=str(self._path))
