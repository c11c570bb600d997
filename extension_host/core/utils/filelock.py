"""
Cross-platform file locking

Provides one locking interface for Windows, Linux and macOS.

- Unix/Linux/macOS: fcntl.flock
- Windows: msvcrt.locking

On top of the raw primitives, ``PathLock`` serializes writers of a given
path across processes. The lock file lives in the system temp directory and
is named after a hash of the target path, so every process agrees on it
without touching the protected directory.

Usage:
    from extension_host.core.utils.filelock import PathLock

    async with PathLock(cache_path, cancel_event=cancel):
        ... critical section ...
"""

import asyncio
import hashlib
import logging
import platform
import tempfile
from pathlib import Path
from typing import IO, Optional

from extension_host.core.utils.cancel import CancelSignal, raise_if_cancelled

logger = logging.getLogger(__name__)

LOCK_FILE_PREFIX = "aslock_"


class FileLockError(Exception):
    """File lock operation failed"""
    pass


class LockAcquisitionError(FileLockError):
    """Lock is currently held by someone else"""
    pass


def acquire_lock(file_handle: IO, non_blocking: bool = True) -> None:
    """
    Acquire an exclusive lock on an open file

    Args:
        file_handle: Open file object
        non_blocking: Fail immediately if the lock is taken instead of waiting

    Raises:
        LockAcquisitionError: Lock held by another process (non_blocking only)
        FileLockError: Any other locking failure
    """
    if platform.system() == "Windows":
        _acquire_lock_windows(file_handle, non_blocking)
    else:
        _acquire_lock_unix(file_handle, non_blocking)

    logger.debug(f"Acquired lock on {file_handle.name}")


def release_lock(file_handle: IO) -> None:
    """
    Release a lock taken with acquire_lock

    Raises:
        FileLockError: Unlock failed
    """
    if platform.system() == "Windows":
        _release_lock_windows(file_handle)
    else:
        _release_lock_unix(file_handle)

    logger.debug(f"Released lock on {file_handle.name}")


def lock_file_path(target: Path) -> Path:
    """Deterministic lock file location for a protected path"""
    digest = hashlib.sha256(str(target).upper().encode("utf-8")).hexdigest()
    return Path(tempfile.gettempdir()) / f"{LOCK_FILE_PREFIX}{digest}"


class PathLock:
    """
    Async exclusive lock guarding a filesystem path

    Acquisition is non-blocking and retried every ``poll_interval`` seconds
    until it succeeds or the cancel signal is set.
    """

    def __init__(
        self,
        target: Path,
        poll_interval: float = 0.01,
        cancel_event: Optional[CancelSignal] = None
    ):
        self.target = Path(target)
        self.lock_path = lock_file_path(self.target)
        self.poll_interval = poll_interval
        self.cancel_event = cancel_event
        self._handle: Optional[IO] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    async def acquire(self) -> None:
        if self._handle is not None:
            raise FileLockError(f"Lock already held for {self.target}")

        attempts = 0
        while True:
            raise_if_cancelled(self.cancel_event)
            handle = open(self.lock_path, "a+", encoding="utf-8")
            try:
                acquire_lock(handle, non_blocking=True)
            except LockAcquisitionError:
                handle.close()
                attempts += 1
                if attempts == 1:
                    logger.debug(f"Waiting for lock on {self.target}")
                await asyncio.sleep(self.poll_interval)
                continue
            except BaseException:
                handle.close()
                raise
            self._handle = handle
            return

    def release(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            release_lock(handle)
        finally:
            handle.close()

    async def __aenter__(self) -> "PathLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


# ============================================
# Unix/Linux/macOS
# ============================================

def _acquire_lock_unix(file_handle: IO, non_blocking: bool) -> None:
    import fcntl

    try:
        flags = fcntl.LOCK_EX
        if non_blocking:
            flags |= fcntl.LOCK_NB

        fcntl.flock(file_handle.fileno(), flags)

    except BlockingIOError as e:
        raise LockAcquisitionError(
            f"Lock is held by another process: {file_handle.name}"
        ) from e
    except OSError as e:
        raise FileLockError(f"fcntl.flock failed: {e}") from e


def _release_lock_unix(file_handle: IO) -> None:
    import fcntl

    try:
        fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        raise FileLockError(f"fcntl.flock unlock failed: {e}") from e


# ============================================
# Windows
# ============================================

def _acquire_lock_windows(file_handle: IO, non_blocking: bool) -> None:
    import msvcrt

    try:
        file_handle.seek(0)
        mode = msvcrt.LK_NBLCK if non_blocking else msvcrt.LK_LOCK
        msvcrt.locking(file_handle.fileno(), mode, 1)

    except OSError as e:
        # errno 13 / 36: region already locked
        if e.errno in (13, 36):
            raise LockAcquisitionError(
                f"Lock is held by another process: {file_handle.name}"
            ) from e
        raise FileLockError(f"msvcrt.locking failed: {e}") from e


def _release_lock_windows(file_handle: IO) -> None:
    import msvcrt

    try:
        file_handle.seek(0)
        msvcrt.locking(file_handle.fileno(), msvcrt.LK_UNLCK, 1)
    except OSError as e:
        raise FileLockError(f"msvcrt.locking unlock failed: {e}") from e
