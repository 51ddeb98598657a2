"""Per-feature run locks.

A run lock marks a feature's artifact directory as in use while a stage
executes. The lock is an exclusive lock file created with O_CREAT | O_EXCL
so creation is atomic; it holds the pid of the owning process. The cleanup
sweeper only inspects lock files and never takes them. A lock whose
holder process has died is stale: it does not count as held and the next
run replaces it.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".lock"


class RunLockedError(Exception):
    """Raised when a feature's run lock is already held.

    Attributes:
        feature_dir: Directory whose lock is held.
        holder_pid: Pid recorded in the lock file, if readable.
    """

    def __init__(self, feature_dir: Path, holder_pid: Optional[int] = None):
        self.feature_dir = feature_dir
        self.holder_pid = holder_pid
        message = f"Run lock already held for {feature_dir}"
        if holder_pid is not None:
            message += f" by pid {holder_pid}"
        super().__init__(message)


def lock_path(feature_dir: Path) -> Path:
    return feature_dir / LOCK_FILE_NAME


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


def is_stale(feature_dir: Path) -> bool:
    """Check whether a feature's lock file was left behind by a dead process.

    A lock whose pid cannot be read is not considered stale; it may be
    between creation and the pid write.
    """
    holder = get_lock_holder(feature_dir)
    return holder is not None and not _process_alive(holder)


def is_locked(feature_dir: Path) -> bool:
    """Check whether a feature directory is held by an in-progress run."""
    return lock_path(feature_dir).exists() and not is_stale(feature_dir)


def get_lock_holder(feature_dir: Path) -> Optional[int]:
    """Return the pid holding a feature's lock, or None."""
    path = lock_path(feature_dir)
    try:
        return int(path.read_text().strip())
    except (ValueError, OSError):
        return None


class RunLock:
    """Exclusive lock on a feature's artifact directory.

    Usage:
        with RunLock(root / feature_id):
            ...  # execute a stage
    """

    def __init__(self, feature_dir: Path):
        self.feature_dir = feature_dir
        self._held = False

    @property
    def path(self) -> Path:
        return lock_path(self.feature_dir)

    def acquire(self) -> None:
        """Take the lock.

        A lock left by a process that no longer exists is removed and
        taken over.

        Raises:
            RunLockedError: If another live holder owns the lock.
        """
        self.feature_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            holder = get_lock_holder(self.feature_dir)
            if not is_stale(self.feature_dir):
                raise RunLockedError(self.feature_dir, holder) from exc
            logger.warning(
                "Removing stale run lock",
                extra={"lock": str(self.path), "holder_pid": holder},
            )
            self.path.unlink(missing_ok=True)
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError as retry_exc:
                raise RunLockedError(
                    self.feature_dir, get_lock_holder(self.feature_dir)
                ) from retry_exc
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        self._held = True
        logger.debug("Acquired run lock", extra={"lock": str(self.path)})

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False
            logger.debug("Released run lock", extra={"lock": str(self.path)})

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()
