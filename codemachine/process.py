"""
Process Spawning Module

Launches external agent CLIs as child processes and supervises them:
- Incremental stdout/stderr streaming to callbacks
- Optional stdin payload (written then closed)
- Cooperative cancellation through AbortSignal
- Hard timeout with process-group kill
- Global registry of live children for interrupt cleanup

Every child runs in its own session so SIGTERM/SIGKILL reach the whole
process group (the agent CLI plus anything it spawned).
"""

import asyncio
import codecs
import errno
import logging
import os
import signal as signal_module
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

# Grace period between SIGTERM and SIGKILL
KILL_GRACE_SECONDS = 0.1

# How long to wait for pipes to drain after the group was killed
DRAIN_TIMEOUT_SECONDS = 2.0

READ_CHUNK_BYTES = 65536

__all__ = [
    'AbortSignal',
    'ProcessResult',
    'ProcessError',
    'SpawnFailure',
    'NonZeroExit',
    'ProcessTimeout',
    'ProcessAborted',
    'USER_INTERRUPTED',
    'spawn',
    'terminate_process',
    'kill_all_active_processes',
    'get_active_process_count',
    'is_process_alive',
]

USER_INTERRUPTED = 'User interrupted'


def is_process_alive(pid: Optional[int]) -> bool:
    """Signal-0 liveness probe. EPERM means the process exists but is not ours."""
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except OSError as e:
        return e.errno == errno.EPERM
    return True


# ============================================================================
# ERRORS
# ============================================================================


class ProcessError(Exception):
    """Base class for child process failures."""


class SpawnFailure(ProcessError):
    """The command could not be started (binary missing or not executable)."""

    def __init__(self, command: str, detail: str, install_hint: Optional[str] = None):
        self.command = command
        self.install_hint = install_hint
        message = f"Failed to start '{command}': {detail}"
        if install_hint:
            message += f"\nInstall it with: {install_hint}"
        super().__init__(message)


class NonZeroExit(ProcessError):
    """The child exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stdout: str = '', stderr: str = '', limit: int = 500):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        snippet = (stderr.strip() or stdout.strip())[-limit:]
        message = f"{command} exited with code {exit_code}"
        if snippet:
            message += f": {snippet}"
        super().__init__(message)


class ProcessTimeout(ProcessError):
    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Process timed out after {timeout_ms}ms")


class ProcessAborted(ProcessError):
    """The run was cancelled through its AbortSignal."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or 'Aborted'
        super().__init__(self.reason)

    @property
    def user_interrupted(self) -> bool:
        return self.reason == USER_INTERRUPTED


# ============================================================================
# ABORT SIGNAL
# ============================================================================


class AbortSignal:
    """
    Cancellation token shared between a run and every process it spawns.

    Aborting is sticky: once aborted, the signal stays aborted and any later
    spawn fails immediately. Listeners run synchronously inside abort().
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._aborted = False
        self.reason: Optional[str] = None
        self._listeners: List[Callable[[str], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self, reason: str = 'Aborted') -> None:
        if self._aborted:
            return
        self._aborted = True
        self.reason = reason
        self._event.set()
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.warning(f"Abort listener failed: {e}")

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def wait(self) -> str:
        await self._event.wait()
        return self.reason or 'Aborted'

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise ProcessAborted(self.reason)


@dataclass
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str


# ============================================================================
# ACTIVE PROCESS TRACKING
# ============================================================================

_active_processes: Set[asyncio.subprocess.Process] = set()


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    if proc.returncode is not None:
        return
    try:
        if hasattr(os, 'killpg'):
            # start_new_session=True makes the child its own group leader
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.debug(f"Cannot signal process group {proc.pid}, signalling child only")
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


async def terminate_process(proc: asyncio.subprocess.Process, grace: float = KILL_GRACE_SECONDS) -> None:
    """SIGTERM the process group, escalating to SIGKILL after the grace period."""
    if proc.returncode is not None:
        return
    _signal_group(proc, signal_module.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        _signal_group(proc, getattr(signal_module, 'SIGKILL', signal_module.SIGTERM))
        await proc.wait()


def kill_all_active_processes() -> int:
    """
    Terminate every tracked child process group.

    Safe to call from signal handlers: sends SIGTERM immediately and, when an
    event loop is running, schedules a SIGKILL follow-up after the grace period.

    Returns:
        Number of processes signalled
    """
    procs = [p for p in _active_processes if p.returncode is None]
    for proc in procs:
        _signal_group(proc, signal_module.SIGTERM)

    if procs:
        logger.debug(f"Sent SIGTERM to {len(procs)} active process group(s)")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            sigkill = getattr(signal_module, 'SIGKILL', signal_module.SIGTERM)
            for proc in procs:
                loop.call_later(KILL_GRACE_SECONDS, _signal_group, proc, sigkill)
    return len(procs)


def get_active_process_count() -> int:
    return sum(1 for p in _active_processes if p.returncode is None)


# ============================================================================
# SPAWN
# ============================================================================


async def _pump(stream: asyncio.StreamReader, sink: List[str], callback: Optional[Callable[[str], None]]) -> None:
    decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
    while True:
        data = await stream.read(READ_CHUNK_BYTES)
        text = decoder.decode(data, final=not data)
        if text:
            sink.append(text)
            if callback is not None:
                try:
                    callback(text)
                except Exception as e:
                    # A broken consumer must not stall the child on a full pipe
                    logger.debug(f"Stream callback failed: {e}")
        if not data:
            return


async def _feed_stdin(proc: asyncio.subprocess.Process, payload: str) -> None:
    try:
        proc.stdin.write(payload.encode('utf-8'))
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Child closed stdin before the prompt was fully written")
    finally:
        proc.stdin.close()


async def spawn(
    command: str,
    args: Optional[List[str]] = None,
    *,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    stdin_input: Optional[str] = None,
    on_stdout: Optional[Callable[[str], None]] = None,
    on_stderr: Optional[Callable[[str], None]] = None,
    signal: Optional[AbortSignal] = None,
    timeout: Optional[int] = None,
    install_hint: Optional[str] = None,
) -> ProcessResult:
    """
    Run one external command to completion.

    Args:
        command: Executable name or path
        args: Command arguments
        cwd: Working directory for the child
        env: Full environment for the child (inherits ours when None)
        stdin_input: Text written to stdin before it is closed
        on_stdout: Called with each decoded stdout chunk as it arrives
        on_stderr: Called with each decoded stderr chunk as it arrives
        signal: Abort signal; aborting kills the process group
        timeout: Hard limit in milliseconds
        install_hint: Shown in SpawnFailure when the binary is missing

    Returns:
        ProcessResult with exit code and the full buffered output. A non-zero
        exit code is returned, not raised.

    Raises:
        SpawnFailure: Command missing or not executable
        ProcessTimeout: Timeout elapsed
        ProcessAborted: Signal aborted before or during the run
    """
    args = list(args or [])
    if signal is not None:
        signal.raise_if_aborted()

    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE if stdin_input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise SpawnFailure(command, 'command not found', install_hint) from e
    except PermissionError as e:
        raise SpawnFailure(command, f'permission denied ({e})', install_hint) from e

    _active_processes.add(proc)
    logger.debug(f"Spawned {command} (pid={proc.pid})")

    stdout_chunks: List[str] = []
    stderr_chunks: List[str] = []

    async def _run() -> int:
        tasks = [
            _pump(proc.stdout, stdout_chunks, on_stdout),
            _pump(proc.stderr, stderr_chunks, on_stderr),
        ]
        if stdin_input is not None:
            tasks.append(_feed_stdin(proc, stdin_input))
        await asyncio.gather(*tasks)
        return await proc.wait()

    work = asyncio.ensure_future(_run())
    abort_waiter = asyncio.ensure_future(signal.wait()) if signal is not None else None
    waiters = {work} if abort_waiter is None else {work, abort_waiter}

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=(timeout / 1000.0) if timeout else None,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if work in done:
            exit_code = work.result()
            return ProcessResult(exit_code, ''.join(stdout_chunks), ''.join(stderr_chunks))

        await terminate_process(proc)
        try:
            await asyncio.wait_for(work, timeout=DRAIN_TIMEOUT_SECONDS)
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Pipes did not drain after kill: {e}")

        if abort_waiter is not None and abort_waiter in done:
            logger.debug(f"Process {proc.pid} aborted: {signal.reason}")
            raise ProcessAborted(signal.reason)
        logger.warning(f"Process {command} (pid={proc.pid}) timed out after {timeout}ms")
        raise ProcessTimeout(timeout)
    except asyncio.CancelledError:
        await terminate_process(proc)
        raise
    finally:
        if abort_waiter is not None and not abort_waiter.done():
            abort_waiter.cancel()
        if not work.done():
            work.cancel()
        _active_processes.discard(proc)
