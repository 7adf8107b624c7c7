"""
Advisory File Locking Module

Cross-process mutual exclusion for files shared between codemachine
processes (per-agent log files and the monitoring database).

Locks are advisory and best-effort:
- fcntl.flock on a sidecar `<path>.lock` file
- Bounded retry with exponential backoff (never blocks indefinitely)
- Stale lock files are broken after LOCK_STALE_MS or once their holder pid is gone
- Any failure degrades to a no-op release instead of raising

Holders refresh the lock file mtime from a heartbeat thread so that long-held
locks (an agent log held for the whole run) are never mistaken for stale ones.
"""

import asyncio
import errno
import fcntl
import inspect
import json
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Optional

from .config import LOCK_STALE_MS
from .process import is_process_alive

logger = logging.getLogger(__name__)

__all__ = [
    'FileLock',
    'LogLockService',
    'RegistryLockService',
    'noop_release',
]


def noop_release() -> None:
    """Release callback handed out when a lock could not be taken."""
    return None


def _current_owner() -> Any:
    """The running asyncio task, or the calling thread outside a coroutine."""
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    return task if task is not None else threading.get_ident()


# ============================================================================
# FILE LOCK PRIMITIVE
# ============================================================================


class FileLock:
    """
    Exclusive advisory lock over `<path>.lock`.

    Usage:
        lock = FileLock('/path/to/file')
        if lock.acquire():
            try:
                ...
            finally:
                lock.release()
    """

    def __init__(
        self,
        path: str,
        stale_ms: int = LOCK_STALE_MS,
        retries: int = 3,
        min_backoff_ms: int = 100,
        max_backoff_ms: int = 500,
    ):
        """
        Initialize lock for a file.

        Args:
            path: File being protected
            stale_ms: Age after which an unrefreshed lock file is broken
            retries: Additional attempts after the first one
            min_backoff_ms: First retry delay
            max_backoff_ms: Upper bound for a single retry delay
        """
        self.path = os.path.abspath(path)
        self.lock_path = self.path + '.lock'
        self.stale_ms = stale_ms
        self.retries = retries
        self.min_backoff_ms = min_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self._fd: Optional[int] = None
        self._heartbeat_stop: Optional[threading.Event] = None
        self._heartbeat: Optional[threading.Thread] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _backoff_delays(self):
        delay = self.min_backoff_ms
        for _ in range(self.retries):
            yield delay / 1000.0
            delay = min(delay * 2, self.max_backoff_ms)

    def _break_if_stale(self) -> None:
        try:
            age_ms = (time.time() - os.path.getmtime(self.lock_path)) * 1000
        except FileNotFoundError:
            return
        holder = self._read_holder()
        pid = holder.get('pid') if isinstance(holder, dict) else None
        holder_dead = isinstance(pid, int) and not is_process_alive(pid)
        if age_ms <= self.stale_ms and not holder_dead:
            return
        logger.debug(f"Breaking stale lock {self.lock_path} (age={age_ms:.0f}ms, holder={holder}, dead={holder_dead})")
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass

    def _read_holder(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError):
            return None

    def _try_once(self) -> bool:
        self._break_if_stale()
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EACCES, errno.EAGAIN):
                return False
            raise

        # The file may have been unlinked (released or broken) between open and flock
        try:
            same_file = os.fstat(fd).st_ino == os.stat(self.lock_path).st_ino
        except FileNotFoundError:
            same_file = False
        if not same_file:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            return False

        os.ftruncate(fd, 0)
        os.write(fd, json.dumps({'pid': os.getpid(), 'acquired_at': time.time()}).encode('utf-8'))
        self._fd = fd
        self._start_heartbeat()
        return True

    def _start_heartbeat(self) -> None:
        stop = threading.Event()
        interval = max(self.stale_ms / 2000.0, 0.05)
        lock_path = self.lock_path

        def _beat():
            while not stop.wait(interval):
                try:
                    os.utime(lock_path, None)
                except OSError:
                    return

        self._heartbeat_stop = stop
        self._heartbeat = threading.Thread(target=_beat, name=f"lock-heartbeat:{os.path.basename(self.path)}", daemon=True)
        self._heartbeat.start()

    def acquire(self) -> bool:
        """
        Try to take the lock with bounded retries.

        Returns:
            True if the lock is held, False if it could not be taken. Never raises
            on OS errors (permission denied, missing directory, ...).
        """
        if self._fd is not None:
            return True
        delays = self._backoff_delays()
        while True:
            try:
                if self._try_once():
                    return True
            except OSError as e:
                logger.debug(f"Cannot lock {self.path}: {e}")
                return False
            delay = next(delays, None)
            if delay is None:
                return False
            time.sleep(delay)

    async def acquire_async(self) -> bool:
        """Same as acquire() but yields to the event loop between attempts."""
        if self._fd is not None:
            return True
        delays = self._backoff_delays()
        while True:
            try:
                if self._try_once():
                    return True
            except OSError as e:
                logger.debug(f"Cannot lock {self.path}: {e}")
                return False
            delay = next(delays, None)
            if delay is None:
                return False
            await asyncio.sleep(delay)

    def release(self) -> None:
        if self._fd is None:
            return
        if self._heartbeat_stop is not None:
            self._heartbeat_stop.set()
        fd, self._fd = self._fd, None
        try:
            # Unlink while still holding; waiters on the old inode detect the mismatch
            if os.fstat(fd).st_ino == os.stat(self.lock_path).st_ino:
                os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Could not remove lock file {self.lock_path}: {e}")
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def probe(path: str) -> bool:
        """Return True if `<path>.lock` is currently held by any open file description."""
        lock_path = os.path.abspath(path) + '.lock'
        try:
            fd = os.open(lock_path, os.O_RDONLY)
        except OSError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            return e.errno in (errno.EACCES, errno.EAGAIN)
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)


# ============================================================================
# LOG LOCK SERVICE
# ============================================================================


class LogLockService:
    """
    Locks agent log files for the lifetime of the agent so that log rotation or
    cleanup in another process never deletes/truncates an active log.

    A log lock requires the file to exist; otherwise the no-op release is returned.
    """

    def __init__(self, stale_ms: int = LOCK_STALE_MS):
        self.stale_ms = stale_ms
        self._locks: Dict[str, FileLock] = {}

    def acquire_lock(self, path: str) -> Callable[[], None]:
        path = os.path.abspath(path)
        if not os.path.exists(path):
            logger.debug(f"Log file {path} does not exist, skipping lock")
            return noop_release
        if path in self._locks:
            return lambda: self.release_lock(path)

        lock = FileLock(path, stale_ms=self.stale_ms, retries=3, min_backoff_ms=100, max_backoff_ms=500)
        if not lock.acquire():
            logger.debug(f"Could not lock log file {path}, continuing unlocked")
            return noop_release
        self._locks[path] = lock
        return lambda: self.release_lock(path)

    def release_lock(self, path: str) -> None:
        lock = self._locks.pop(os.path.abspath(path), None)
        if lock is None:
            return
        try:
            lock.release()
        except OSError as e:
            logger.debug(f"Failed to release log lock {path}: {e}")

    def release_all_locks(self) -> None:
        for path in list(self._locks):
            self.release_lock(path)

    def is_locked(self, path: str) -> bool:
        path = os.path.abspath(path)
        return path in self._locks or FileLock.probe(path)

    def get_active_lock_count(self) -> int:
        return len(self._locks)


# ============================================================================
# REGISTRY LOCK SERVICE
# ============================================================================


class RegistryLockService:
    """
    Serializes writers of a shared registry file (the monitoring database).

    Unlike log locks, the target file is created when missing so the very
    first writer can still lock it (first writer wins).

    Ownership is tracked per asyncio task (or per thread outside a coroutine):
    nested calls from the holder are re-entrant, while another coroutine of the
    same process waits on the file lock like any other process would.

    Usage:
        registry_lock = RegistryLockService(db_path)
        registry_lock.with_lock(lambda: do_write())
        await registry_lock.with_lock_async(lambda: do_write())
    """

    def __init__(self, path: str, stale_ms: int = LOCK_STALE_MS):
        self.path = os.path.abspath(path)
        self.stale_ms = stale_ms
        self._held: Dict[Any, FileLock] = {}

    def _ensure_file(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            if not os.path.exists(self.path):
                # 'a' never truncates a file another process just created
                with open(self.path, 'a'):
                    pass
        except OSError as e:
            logger.debug(f"Could not create registry file {self.path}: {e}")

    def _new_lock(self) -> FileLock:
        return FileLock(self.path, stale_ms=self.stale_ms, retries=5, min_backoff_ms=50, max_backoff_ms=500)

    def _releaser(self, owner: Any) -> Callable[[], None]:
        return lambda: self._release_owner(owner)

    def acquire_lock(self) -> Callable[[], None]:
        owner = _current_owner()
        if owner in self._held:
            return noop_release
        self._ensure_file()
        lock = self._new_lock()
        if not lock.acquire():
            logger.debug(f"Could not lock registry {self.path}, continuing unlocked")
            return noop_release
        self._held[owner] = lock
        return self._releaser(owner)

    async def acquire_lock_async(self) -> Callable[[], None]:
        """Same as acquire_lock() but backs off with asyncio.sleep."""
        owner = _current_owner()
        if owner in self._held:
            return noop_release
        self._ensure_file()
        lock = self._new_lock()
        if not await lock.acquire_async():
            logger.debug(f"Could not lock registry {self.path}, continuing unlocked")
            return noop_release
        self._held[owner] = lock
        return self._releaser(owner)

    def _release_owner(self, owner: Any) -> None:
        lock = self._held.pop(owner, None)
        if lock is None:
            return
        try:
            lock.release()
        except OSError as e:
            logger.debug(f"Failed to release registry lock {self.path}: {e}")

    def release_lock(self) -> None:
        """Release the lock held by the calling task or thread."""
        self._release_owner(_current_owner())

    def with_lock(self, fn: Callable[[], Any]) -> Any:
        """Run fn while holding the lock (or unlocked if the lock is unavailable)."""
        if _current_owner() in self._held:
            return fn()
        release = self.acquire_lock()
        try:
            return fn()
        finally:
            release()

    async def with_lock_async(self, fn: Callable[[], Any]) -> Any:
        """Run fn (sync or coroutine function) under the lock without blocking the event loop."""
        if _current_owner() in self._held:
            result = fn()
            return await result if inspect.isawaitable(result) else result
        release = await self.acquire_lock_async()
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            release()

    def is_locked(self) -> bool:
        return bool(self._held) or FileLock.probe(self.path)
