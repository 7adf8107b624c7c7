"""
Interrupt and crash handling for long-running CLI commands.

First Ctrl+C stops the run without exiting (so a UI can render the stopped
state); a second Ctrl+C after the debounce window exits with 130. SIGTERM
exits with 130 and uncaught errors exit with 1, both after full cleanup.
"""

import asyncio
import logging
import os
import signal as signal_module
import sys
import time
from typing import Any, Callable, List, Optional

from .agent_logger import AgentLogger
from .monitor import AgentMonitor
from .process import USER_INTERRUPTED, AbortSignal, kill_all_active_processes

logger = logging.getLogger(__name__)

__all__ = [
    'ARMED',
    'STOPPING',
    'EXITING',
    'EXIT_INTERRUPTED',
    'EXIT_CRASHED',
    'InterruptController',
]

ARMED = 'armed'
STOPPING = 'stopping'
EXITING = 'exiting'

EXIT_INTERRUPTED = 130
EXIT_CRASHED = 1

DEFAULT_DEBOUNCE_MS = 500


class InterruptController:
    """
    Owns SIGINT/SIGTERM handling for one CLI process.

    Only agents registered by this process (same pid) are failed during
    cleanup; records owned by other live processes are left alone.
    """

    def __init__(
        self,
        monitor: Optional[AgentMonitor] = None,
        agent_logger: Optional[AgentLogger] = None,
        clock: Callable[[], float] = time.monotonic,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        exit_fn: Callable[[int], Any] = sys.exit,
        kill_processes: Callable[[], int] = kill_all_active_processes,
        echo: Callable[[str], None] = print,
    ):
        self.monitor = monitor
        self.agent_logger = agent_logger
        self.clock = clock
        self.debounce_ms = debounce_ms
        self.exit_fn = exit_fn
        self.kill_processes = kill_processes
        self.echo = echo

        self.state = ARMED
        self.abort_signal: Optional[AbortSignal] = None
        self.on_stop: List[Callable[[], None]] = []
        self.on_exit: List[Callable[[int], None]] = []

        self._stopped_at: Optional[float] = None
        self._cleaning_up = False
        self._cleaned_up = False
        self._installed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handlers = {}
        self._previous_excepthook = None
        self._previous_loop_handler = None

    def attach_abort_signal(self, abort_signal: Optional[AbortSignal]) -> None:
        """Set the signal of the currently running step (None when idle)."""
        self.abort_signal = abort_signal

    # ------------------------------------------------------------------
    # Signal entry points
    # ------------------------------------------------------------------

    def handle_interrupt(self) -> None:
        now = self.clock()
        if self.state == ARMED:
            self._stop(now)
            return
        if self.state == STOPPING:
            if self._stopped_at is not None and (now - self._stopped_at) * 1000 < self.debounce_ms:
                logger.debug('Ignoring repeated interrupt inside debounce window')
                return
            self._exit(EXIT_INTERRUPTED)

    def handle_terminate(self) -> None:
        self.echo('\nReceived SIGTERM: Process terminated')
        self._exit(EXIT_INTERRUPTED)

    def handle_crash(self, error: Optional[BaseException] = None) -> None:
        if error is not None:
            logger.error(f"Uncaught error: {error!r}")
        self._exit(EXIT_CRASHED, reason=str(error) if error is not None else 'Crashed')

    def _stop(self, now: float) -> None:
        self.state = STOPPING
        self._stopped_at = now
        self.echo('\nStopping... press Ctrl+C again to exit')

        if self.abort_signal is not None:
            self.abort_signal.abort(USER_INTERRUPTED)
        killed = self.kill_processes()
        if killed:
            logger.debug(f"Killed {killed} child process(es)")
        self._fail_running_agents(USER_INTERRUPTED, close_streams=False)
        if self.agent_logger is not None:
            self.agent_logger.release_all_locks()

        for callback in list(self.on_stop):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Stop callback failed: {e}")

    def _exit(self, code: int, reason: str = USER_INTERRUPTED) -> None:
        self.state = EXITING
        self.cleanup(reason)
        for callback in list(self.on_exit):
            try:
                callback(code)
            except Exception as e:
                logger.warning(f"Exit callback failed: {e}")
        self.exit_fn(code)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _owned_running_agents(self):
        if self.monitor is None:
            return []
        pid = os.getpid()
        return [a for a in self.monitor.get_active_agents() if a.pid in (None, pid)]

    def _fail_running_agents(self, reason: str, close_streams: bool) -> int:
        running = self._owned_running_agents()
        for agent in running:
            try:
                self.monitor.fail(agent.id, reason)
                if close_streams and self.agent_logger is not None:
                    self.agent_logger.close_stream(agent.id)
                logger.debug(f"Marked agent {agent.id} ({agent.name}) as failed: {reason}")
            except Exception as e:
                logger.error(f"Failed to cleanup agent {agent.id}: {e}")
        return len(running)

    def cleanup(self, reason: str = USER_INTERRUPTED) -> None:
        """Fail running agents, close their logs, kill children and release locks. Runs once."""
        if self._cleaning_up or self._cleaned_up:
            return
        self._cleaning_up = True
        try:
            if self.abort_signal is not None:
                self.abort_signal.abort(reason)
            self.kill_processes()

            running = self._owned_running_agents()
            if running:
                self.echo(f"\nCleaning up {len(running)} running agent(s)...")
                self._fail_running_agents(reason, close_streams=True)
                self.echo('Cleanup complete.\n')

            if self.agent_logger is not None:
                self.agent_logger.close_all()
                self.agent_logger.release_all_locks()
            self._cleaned_up = True
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
        finally:
            self._cleaning_up = False

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self._installed:
            return
        self._installed = True
        self._loop = loop

        if loop is not None:
            loop.add_signal_handler(signal_module.SIGINT, self.handle_interrupt)
            loop.add_signal_handler(signal_module.SIGTERM, self.handle_terminate)
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._loop_exception_handler)
        else:
            self._previous_handlers = {
                signal_module.SIGINT: signal_module.signal(signal_module.SIGINT, lambda s, f: self.handle_interrupt()),
                signal_module.SIGTERM: signal_module.signal(signal_module.SIGTERM, lambda s, f: self.handle_terminate()),
            }

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        logger.debug('Interrupt handlers installed')

    def uninstall(self) -> None:
        if not self._installed:
            return
        self._installed = False

        if self._loop is not None:
            self._loop.remove_signal_handler(signal_module.SIGINT)
            self._loop.remove_signal_handler(signal_module.SIGTERM)
            self._loop.set_exception_handler(self._previous_loop_handler)
            self._loop = None
        for signum, handler in self._previous_handlers.items():
            signal_module.signal(signum, handler)
        self._previous_handlers = {}

        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def _excepthook(self, exc_type, exc, tb) -> None:
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc, tb)
        self.handle_crash(exc)

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        loop.default_exception_handler(context)
        self.handle_crash(context.get('exception'))
