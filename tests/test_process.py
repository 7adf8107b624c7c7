"""
Tests for process.py: spawning, streaming, timeouts and cancellation.

Children are real `python -c` processes so the tests exercise actual pipes
and process groups.
"""

import asyncio
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from codemachine.process import (
    AbortSignal,
    ProcessAborted,
    ProcessTimeout,
    SpawnFailure,
    USER_INTERRUPTED,
    get_active_process_count,
    spawn,
)

PY = sys.executable


class TestSpawn:
    def test_streams_stdout_incrementally(self):
        chunks = []
        script = "import sys, time\nfor i in range(3):\n    print(f'line {i}', flush=True)\n    time.sleep(0.05)\n"

        result = asyncio.run(spawn(PY, ['-c', script], on_stdout=chunks.append))

        assert result.exit_code == 0
        assert result.stdout == 'line 0\nline 1\nline 2\n'
        assert ''.join(chunks) == result.stdout
        assert len(chunks) >= 2

    def test_stderr_is_separate(self):
        errors = []
        script = "import sys\nprint('out')\nprint('err', file=sys.stderr)\n"

        result = asyncio.run(spawn(PY, ['-c', script], on_stderr=errors.append))

        assert result.stdout.strip() == 'out'
        assert result.stderr.strip() == 'err'
        assert ''.join(errors).strip() == 'err'

    def test_stdin_payload_is_written_and_closed(self):
        script = "import sys\nprint(sys.stdin.read().upper(), end='')\n"

        result = asyncio.run(spawn(PY, ['-c', script], stdin_input='hello agent'))

        assert result.stdout == 'HELLO AGENT'

    def test_non_zero_exit_is_returned(self):
        result = asyncio.run(spawn(PY, ['-c', 'import sys; sys.exit(3)']))

        assert result.exit_code == 3

    def test_cwd_and_env(self, tmp_path):
        script = "import os\nprint(os.getcwd())\nprint(os.environ['CM_TEST_VALUE'])\n"
        env = dict(os.environ, CM_TEST_VALUE='42')

        result = asyncio.run(spawn(PY, ['-c', script], cwd=str(tmp_path), env=env))

        lines = result.stdout.splitlines()
        assert os.path.realpath(lines[0]) == os.path.realpath(str(tmp_path))
        assert lines[1] == '42'

    def test_callback_errors_do_not_break_the_run(self):
        def broken(_chunk):
            raise RuntimeError('consumer bug')

        result = asyncio.run(spawn(PY, ['-c', "print('still here')"], on_stdout=broken))

        assert result.stdout.strip() == 'still here'


class TestSpawnFailures:
    def test_missing_binary_raises_spawn_failure_with_hint(self):
        with pytest.raises(SpawnFailure) as exc_info:
            asyncio.run(spawn('codemachine-no-such-binary', install_hint='npm install -g nothing'))

        assert 'codemachine-no-such-binary' in str(exc_info.value)
        assert 'npm install -g nothing' in str(exc_info.value)

    def test_timeout_kills_the_child(self):
        started = time.monotonic()

        with pytest.raises(ProcessTimeout) as exc_info:
            asyncio.run(spawn(PY, ['-c', 'import time; time.sleep(30)'], timeout=200))

        assert time.monotonic() - started < 10
        assert 'timed out after 200ms' in str(exc_info.value)
        assert get_active_process_count() == 0

    def test_abort_during_run(self):
        async def _run():
            signal = AbortSignal()
            asyncio.get_running_loop().call_later(0.2, signal.abort, USER_INTERRUPTED)
            await spawn(PY, ['-c', 'import time; time.sleep(30)'], signal=signal)

        with pytest.raises(ProcessAborted) as exc_info:
            asyncio.run(_run())

        assert exc_info.value.user_interrupted
        assert get_active_process_count() == 0

    def test_already_aborted_signal_never_spawns(self):
        async def _run():
            signal = AbortSignal()
            signal.abort('stop')
            await spawn(PY, ['-c', "print('should not run')"], signal=signal)

        with pytest.raises(ProcessAborted) as exc_info:
            asyncio.run(_run())

        assert str(exc_info.value) == 'stop'
        assert not exc_info.value.user_interrupted

    def test_abort_kills_every_process_sharing_the_signal(self):
        async def _run():
            signal = AbortSignal()
            runs = [
                asyncio.ensure_future(spawn(PY, ['-c', 'import time; time.sleep(30)'], signal=signal))
                for _ in range(3)
            ]
            await asyncio.sleep(0.3)
            signal.abort(USER_INTERRUPTED)
            return await asyncio.gather(*runs, return_exceptions=True)

        results = asyncio.run(_run())

        assert len(results) == 3
        assert all(isinstance(r, ProcessAborted) for r in results)
        assert get_active_process_count() == 0


class TestAbortSignal:
    def test_abort_is_sticky_and_notifies_listeners_once(self):
        seen = []
        signal = AbortSignal()
        signal.add_listener(seen.append)

        signal.abort('first')
        signal.abort('second')

        assert signal.aborted
        assert signal.reason == 'first'
        assert seen == ['first']

    def test_removed_listener_is_not_called(self):
        seen = []
        signal = AbortSignal()
        signal.add_listener(seen.append)
        signal.remove_listener(seen.append)

        signal.abort()

        assert seen == []
