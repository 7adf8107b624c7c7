"""
Tests for locks.py: advisory file locks, degradation and stale-lock recovery.
"""

import asyncio
import errno
import fcntl
import json
import os
import shutil
import sys
import tempfile
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from codemachine import locks
from codemachine.locks import FileLock, LogLockService, RegistryLockService, noop_release

# Far above any pid_max, so os.kill(pid, 0) always reports ESRCH
DEAD_PID = 99999999


class TestLocks:
    @pytest.fixture
    def temp_dir(self):
        temp_dir = tempfile.mkdtemp(prefix="test_locks_")
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def log_file(self, temp_dir):
        path = os.path.join(temp_dir, 'agent-1.log')
        with open(path, 'w') as f:
            f.write('=== log ===\n')
        return path

    # ------------------------------------------------------------------
    # FileLock
    # ------------------------------------------------------------------

    def test_acquire_and_release_removes_lock_file(self, log_file):
        lock = FileLock(log_file)

        assert lock.acquire()
        assert lock.held
        assert os.path.exists(log_file + '.lock')
        assert FileLock.probe(log_file)

        lock.release()
        assert not lock.held
        assert not os.path.exists(log_file + '.lock')
        assert not FileLock.probe(log_file)

    def test_second_holder_is_refused(self, log_file):
        first = FileLock(log_file)
        second = FileLock(log_file, retries=1, min_backoff_ms=10)
        assert first.acquire()
        try:
            assert not second.acquire()
        finally:
            first.release()

        assert second.acquire()
        second.release()

    def test_stale_lock_is_broken(self, log_file):
        lock_path = log_file + '.lock'
        # A holder that died without cleaning up: lock held, mtime far in the past
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        old = time.time() - 120
        os.utime(lock_path, (old, old))
        try:
            lock = FileLock(log_file, stale_ms=1000, retries=0)
            assert lock.acquire()
            lock.release()
        finally:
            os.close(fd)

    def _hold(self, lock_path, pid):
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        os.write(fd, json.dumps({'pid': pid, 'acquired_at': time.time()}).encode('utf-8'))
        return fd

    def test_lock_of_dead_holder_is_broken(self, log_file):
        # Fresh lock file, but recorded for a process that no longer exists
        fd = self._hold(log_file + '.lock', DEAD_PID)
        try:
            lock = FileLock(log_file, stale_ms=60_000, retries=0)
            assert lock.acquire()
            lock.release()
        finally:
            os.close(fd)

    def test_lock_of_live_holder_is_kept(self, log_file):
        fd = self._hold(log_file + '.lock', os.getpid())
        try:
            lock = FileLock(log_file, stale_ms=60_000, retries=0)
            assert not lock.acquire()
            assert os.path.exists(log_file + '.lock')
        finally:
            os.close(fd)

    def test_acquire_async(self, log_file):
        lock = FileLock(log_file)

        assert asyncio.run(lock.acquire_async())
        lock.release()

    # ------------------------------------------------------------------
    # LogLockService
    # ------------------------------------------------------------------

    def test_missing_log_file_gets_noop_release(self, temp_dir):
        service = LogLockService()

        release = service.acquire_lock(os.path.join(temp_dir, 'missing.log'))

        assert release is noop_release
        release()
        assert service.get_active_lock_count() == 0

    def test_permission_denied_degrades_to_noop(self, log_file, monkeypatch):
        def denied(fd, operation):
            raise PermissionError(errno.EPERM, 'Operation not permitted')

        monkeypatch.setattr(locks.fcntl, 'flock', denied)
        service = LogLockService()

        release = service.acquire_lock(log_file)

        assert release is noop_release
        release()
        assert service.get_active_lock_count() == 0

    def test_log_lock_lifecycle(self, log_file):
        service = LogLockService()

        release = service.acquire_lock(log_file)
        assert service.is_locked(log_file)
        assert service.get_active_lock_count() == 1

        release()
        assert not service.is_locked(log_file)
        assert service.get_active_lock_count() == 0

    def test_release_all_locks(self, temp_dir):
        service = LogLockService()
        paths = []
        for i in range(3):
            path = os.path.join(temp_dir, f"agent-{i}.log")
            open(path, 'w').close()
            service.acquire_lock(path)
            paths.append(path)
        assert service.get_active_lock_count() == 3

        service.release_all_locks()

        assert service.get_active_lock_count() == 0
        assert not any(os.path.exists(p + '.lock') for p in paths)

    # ------------------------------------------------------------------
    # RegistryLockService
    # ------------------------------------------------------------------

    def test_registry_lock_creates_missing_file(self, temp_dir):
        path = os.path.join(temp_dir, 'nested', 'registry.db')
        service = RegistryLockService(path)

        release = service.acquire_lock()

        assert os.path.exists(path)
        assert service.is_locked()
        release()
        assert not service.is_locked()

    def test_with_lock_is_reentrant(self, temp_dir):
        service = RegistryLockService(os.path.join(temp_dir, 'registry.db'))

        result = service.with_lock(lambda: service.with_lock(lambda: 'inner'))

        assert result == 'inner'
        assert not service.is_locked()

    def test_with_lock_releases_on_error(self, temp_dir):
        service = RegistryLockService(os.path.join(temp_dir, 'registry.db'))

        def boom():
            raise RuntimeError('write failed')

        with pytest.raises(RuntimeError):
            service.with_lock(boom)
        assert not service.is_locked()

    def test_with_lock_async_awaits_coroutines(self, temp_dir):
        service = RegistryLockService(os.path.join(temp_dir, 'registry.db'))

        async def write():
            assert service.is_locked()
            return 7

        assert asyncio.run(service.with_lock_async(write)) == 7
        assert not service.is_locked()

    def test_with_lock_async_serializes_coroutines(self, temp_dir):
        service = RegistryLockService(os.path.join(temp_dir, 'registry.db'))
        inside = []
        peak = [0]

        async def write(tag):
            inside.append(tag)
            peak[0] = max(peak[0], len(inside))
            await asyncio.sleep(0.05)
            inside.remove(tag)
            return tag

        async def scenario():
            return await asyncio.gather(
                service.with_lock_async(lambda: write('a')),
                service.with_lock_async(lambda: write('b')),
            )

        assert asyncio.run(scenario()) == ['a', 'b']
        assert peak[0] == 1
        assert not service.is_locked()

    def test_with_lock_async_is_reentrant_for_the_holder(self, temp_dir):
        service = RegistryLockService(os.path.join(temp_dir, 'registry.db'))

        async def outer():
            return await service.with_lock_async(lambda: service.with_lock(lambda: 'inner'))

        started = time.monotonic()
        assert asyncio.run(outer()) == 'inner'
        assert time.monotonic() - started < 0.5

    def test_waiting_for_registry_lock_keeps_event_loop_running(self, temp_dir):
        path = os.path.join(temp_dir, 'registry.db')
        service = RegistryLockService(path)
        holder = FileLock(path)
        assert holder.acquire()

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.3, holder.release)
            gaps = []
            done = asyncio.Event()

            async def tick():
                last = loop.time()
                while not done.is_set():
                    await asyncio.sleep(0.02)
                    now = loop.time()
                    gaps.append(now - last)
                    last = now

            ticker = asyncio.ensure_future(tick())
            held_during_write = await service.with_lock_async(lambda: holder.held)
            done.set()
            await ticker
            return held_during_write, max(gaps)

        try:
            held_during_write, worst_gap = asyncio.run(scenario())
        finally:
            holder.release()

        assert not held_during_write
        assert worst_gap < 0.2
