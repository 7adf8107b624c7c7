"""
Per-agent log streams.

Each monitored agent gets an append-only log file under .codemachine/logs.
While the agent is active the file is held through LogLockService so another
process never deletes or truncates it. Tail-following uses a watchdog Observer
on the log directory so `agents logs <id> --follow` reacts to writes from the
process running the agent.
"""

import logging
import os
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, TextIO

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .locks import LogLockService

logger = logging.getLogger(__name__)

HEADER_RULE = '=' * 60


class _LogTailHandler(FileSystemEventHandler):
    """Wakes the tail loop whenever the followed file changes."""

    def __init__(self, path: str, wake: threading.Event):
        super().__init__()
        self.path = os.path.abspath(path)
        self.wake = wake

    def _matches(self, event: FileSystemEvent) -> bool:
        return not event.is_directory and os.path.abspath(event.src_path) == self.path

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self.wake.set()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self.wake.set()


class AgentLogger:
    """
    Writes and reads per-agent log files.

    Usage:
        agent_logger = AgentLogger(LogLockService())
        agent_logger.create_stream(agent_id, 'planner', prompt, record.log_path)
        agent_logger.write(agent_id, chunk)
        agent_logger.close_stream(agent_id)
    """

    def __init__(self, lock_service: Optional[LogLockService] = None):
        self.lock_service = lock_service or LogLockService()
        self._streams: Dict[int, TextIO] = {}
        self._paths: Dict[int, str] = {}

    def create_stream(self, agent_id: int, name: str, prompt: str, log_path: str) -> str:
        """
        Open the agent's log, write the header and lock the file.

        Returns:
            The absolute log path
        """
        log_path = os.path.abspath(log_path)
        if agent_id in self._streams:
            return self._paths[agent_id]

        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        stream = open(log_path, 'a', encoding='utf-8')
        stream.write(f"=== Agent {agent_id} ({name}) Log ===\n")
        stream.write(f"Started: {datetime.now().isoformat()}\n")
        stream.write(f"Prompt: {prompt}\n")
        stream.write(f"{HEADER_RULE}\n\n")
        stream.flush()

        self._streams[agent_id] = stream
        self._paths[agent_id] = log_path
        # The file exists now, so the log lock can be taken
        self.lock_service.acquire_lock(log_path)
        return log_path

    def write(self, agent_id: int, chunk: str) -> None:
        stream = self._streams.get(agent_id)
        if stream is None:
            logger.debug(f"No open log stream for agent {agent_id}")
            return
        try:
            stream.write(chunk)
            stream.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"Failed to write log for agent {agent_id}: {e}")

    def store_full_prompt(self, agent_id: int, prompt: str) -> None:
        """Record the complete composite prompt in the log when debug logging is on."""
        if logger.isEnabledFor(logging.DEBUG):
            self.write(agent_id, f"[FULL PROMPT]\n{prompt}\n{HEADER_RULE}\n\n")

    def close_stream(self, agent_id: int) -> None:
        path = self._paths.pop(agent_id, None)
        if path is not None:
            # Release before close so the lock never outlives its holder
            self.lock_service.release_lock(path)
        stream = self._streams.pop(agent_id, None)
        if stream is not None:
            try:
                stream.close()
            except OSError as e:
                logger.debug(f"Failed to close log for agent {agent_id}: {e}")

    def close_all(self) -> None:
        for agent_id in list(self._streams):
            self.close_stream(agent_id)

    def release_all_locks(self) -> None:
        self.lock_service.release_all_locks()

    def get_log_path(self, agent_id: int) -> Optional[str]:
        return self._paths.get(agent_id)

    def has_stream(self, agent_id: int) -> bool:
        return agent_id in self._streams

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @staticmethod
    def read_log(log_path: str) -> str:
        with open(log_path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()

    @staticmethod
    def get_log_stats(log_path: str) -> Optional[Dict[str, object]]:
        if not os.path.exists(log_path):
            return None
        stat = os.stat(log_path)
        with open(log_path, 'rb') as f:
            lines = sum(1 for _ in f)
        return {
            'path': os.path.abspath(log_path),
            'size': stat.st_size,
            'lines': lines,
            'modified': datetime.fromtimestamp(stat.st_mtime).isoformat(),
        }

    def stream_logs(
        self,
        log_path: str,
        on_chunk: Callable[[str], None],
        follow: bool = False,
        stop: Optional[Callable[[], bool]] = None,
        poll_interval: float = 0.5,
    ) -> None:
        """
        Emit the existing log content, then optionally follow new writes.

        Args:
            log_path: Log file to read
            on_chunk: Receives each piece of text read
            follow: Keep tailing until stop() returns True
            stop: Checked after each wake-up; defaults to never stopping
            poll_interval: Upper bound between checks when no change events arrive
        """
        with open(log_path, 'r', encoding='utf-8', errors='replace') as f:
            content = f.read()
            if content:
                on_chunk(content)
            if not follow:
                return

            wake = threading.Event()
            observer = Observer()
            observer.schedule(_LogTailHandler(log_path, wake), os.path.dirname(os.path.abspath(log_path)), recursive=False)
            observer.start()
            try:
                while True:
                    chunk = f.read()
                    if chunk:
                        on_chunk(chunk)
                    if stop is not None and stop():
                        chunk = f.read()
                        if chunk:
                            on_chunk(chunk)
                        return
                    wake.wait(poll_interval)
                    wake.clear()
            finally:
                observer.stop()
                observer.join()
