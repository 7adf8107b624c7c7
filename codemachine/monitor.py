"""
Agent Monitor Service

Durable, hierarchical registry of agent executions for one workspace.

Tracks:
- Lifecycle (running -> completed | failed, exactly one terminal transition)
- Parent/child relationships (tree and subtree views)
- Telemetry (token usage and cost)
- Orphans (records whose process died without reporting back)

One AgentMonitor is created per process and passed explicitly to the runner,
step executor and orchestration executor.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import monitor_db
from .config import get_logs_dir, get_registry_db_path
from .locks import RegistryLockService
from .monitor_db import AgentRecord, Telemetry
from .process import USER_INTERRUPTED, is_process_alive

logger = logging.getLogger(__name__)

__all__ = [
    'AgentMonitor',
    'AgentTreeNode',
    'is_process_alive',
    'PROMPT_DISPLAY_LIMIT',
]

PROMPT_DISPLAY_LIMIT = 500


@dataclass
class AgentTreeNode:
    agent: AgentRecord
    children: List['AgentTreeNode'] = field(default_factory=list)

    def count(self) -> int:
        return 1 + sum(child.count() for child in self.children)


def _safe_name(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9_-]+', '-', name).strip('-') or 'agent'


def _duration_ms(start_time: str, end: datetime) -> Optional[int]:
    try:
        return int((end - datetime.fromisoformat(start_time)).total_seconds() * 1000)
    except (TypeError, ValueError):
        return None


def _failure_message(error: Any) -> str:
    if error is None:
        return 'Unknown error'
    return str(error) or type(error).__name__


def _log_failure(agent_id: int, message: str) -> None:
    if message == USER_INTERRUPTED:
        logger.debug(f"Agent {agent_id} interrupted by user")
    else:
        logger.warning(f"Agent {agent_id} failed: {message[:200]}")


class AgentMonitor:
    """
    Hierarchical agent registry backed by the shared monitoring database.

    Usage:
        monitor = AgentMonitor.for_workspace(cwd)
        agent_id = monitor.register(name='planner', prompt='...', engine='claude')
        ...
        monitor.complete(agent_id)
    """

    def __init__(self, db_path: str, logs_dir: Optional[str] = None):
        """
        Initialize the monitor.

        Args:
            db_path: SQLite database shared by all processes of the workspace
            logs_dir: Directory for default per-agent log paths
        """
        self.db_path = os.path.abspath(db_path)
        self.logs_dir = logs_dir or os.path.dirname(self.db_path)
        self._lock = RegistryLockService(self.db_path)
        self._lock.with_lock(lambda: monitor_db.ensure_db(self.db_path))

    @classmethod
    def for_workspace(cls, cwd: str) -> 'AgentMonitor':
        return cls(get_registry_db_path(cwd), logs_dir=get_logs_dir(cwd))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _registration(
        self,
        name: str,
        prompt: str,
        parent_id: Optional[int] = None,
        pid: Optional[int] = None,
        engine: Optional[str] = None,
        engine_provider: Optional[str] = None,
        model_name: Optional[str] = None,
        log_path: Optional[str] = None,
    ) -> Callable[[], int]:
        display_prompt = prompt if len(prompt) <= PROMPT_DISPLAY_LIMIT else prompt[:PROMPT_DISPLAY_LIMIT] + '...'
        start = datetime.now()

        def _register() -> int:
            effective_parent = parent_id
            if effective_parent is not None and monitor_db.get_agent(db_path=self.db_path, agent_id=effective_parent) is None:
                logger.warning(f"Parent agent {effective_parent} not found, registering {name} as a root agent")
                effective_parent = None

            agent_id = monitor_db.insert_agent(
                db_path=self.db_path,
                name=name,
                prompt=display_prompt,
                start_time=start.isoformat(),
                engine=engine,
                parent_id=effective_parent,
                pid=pid if pid is not None else os.getpid(),
                engine_provider=engine_provider,
                model_name=model_name,
            )
            path = log_path or os.path.join(
                self.logs_dir,
                f"agent-{agent_id}-{_safe_name(name)}-{start.strftime('%Y%m%dT%H%M%S')}.log",
            )
            monitor_db.update_agent(db_path=self.db_path, agent_id=agent_id, log_path=path)
            logger.debug(f"Registered agent {agent_id} ({name}), parent={effective_parent}")
            return agent_id

        return _register

    def register(
        self,
        name: str,
        prompt: str,
        parent_id: Optional[int] = None,
        pid: Optional[int] = None,
        engine: Optional[str] = None,
        engine_provider: Optional[str] = None,
        model_name: Optional[str] = None,
        log_path: Optional[str] = None,
    ) -> int:
        """
        Register a new running agent.

        Args:
            name: Agent name (catalog id or step agent id)
            prompt: Prompt shown in listings; trimmed to PROMPT_DISPLAY_LIMIT chars
            parent_id: Monitoring id of the spawning agent
            pid: Owning process id (defaults to this process)
            engine: Engine id used for the run
            engine_provider: Engine provider reported in listings
            model_name: Resolved model
            log_path: Explicit log path (defaults to logs_dir/agent-{id}-{name}-{ts}.log)

        Returns:
            The new monitoring id
        """
        return self._lock.with_lock(self._registration(
            name, prompt, parent_id=parent_id, pid=pid, engine=engine,
            engine_provider=engine_provider, model_name=model_name, log_path=log_path,
        ))

    async def register_async(self, name: str, prompt: str, **kwargs) -> int:
        """register() for coroutines: waits for the registry lock without blocking the event loop."""
        return await self._lock.with_lock_async(self._registration(name, prompt, **kwargs))

    def _transition(self, agent_id: int, status: str, error: Optional[str] = None) -> Callable[[], bool]:
        def _mark() -> bool:
            record = monitor_db.get_agent(db_path=self.db_path, agent_id=agent_id)
            if record is None:
                logger.warning(f"Cannot mark unknown agent {agent_id} as {status}")
                return False
            if record.status != 'running':
                logger.warning(f"Agent {agent_id} already {record.status}, ignoring transition to {status}")
                return False
            end = datetime.now()
            return monitor_db.mark_agent_terminal(
                db_path=self.db_path,
                agent_id=agent_id,
                status=status,
                end_time=end.isoformat(),
                duration=_duration_ms(record.start_time, end),
                error=error,
            )

        return _mark

    def _finish(self, agent_id: int, status: str, error: Optional[str] = None) -> bool:
        return self._lock.with_lock(self._transition(agent_id, status, error))

    def complete(self, agent_id: int, telemetry: Optional[Telemetry] = None) -> bool:
        """Mark an agent completed. Returns False if it was unknown or already terminal."""
        if telemetry is not None:
            self.update_telemetry(agent_id, telemetry)
        done = self._finish(agent_id, 'completed')
        if done:
            logger.debug(f"Agent {agent_id} completed")
        return done

    async def complete_async(self, agent_id: int, telemetry: Optional[Telemetry] = None) -> bool:
        if telemetry is not None:
            await self.update_telemetry_async(agent_id, telemetry)
        done = await self._lock.with_lock_async(self._transition(agent_id, 'completed'))
        if done:
            logger.debug(f"Agent {agent_id} completed")
        return done

    def fail(self, agent_id: int, error: Any) -> bool:
        """Mark an agent failed with an error message (str or exception)."""
        message = _failure_message(error)
        done = self._finish(agent_id, 'failed', message)
        if done:
            _log_failure(agent_id, message)
        return done

    async def fail_async(self, agent_id: int, error: Any) -> bool:
        message = _failure_message(error)
        done = await self._lock.with_lock_async(self._transition(agent_id, 'failed', message))
        if done:
            _log_failure(agent_id, message)
        return done

    def update_status(self, agent_id: int, status: str) -> bool:
        if status in monitor_db.AGENT_TERMINAL_STATUSES:
            return self._finish(agent_id, status)
        return self._lock.with_lock(
            lambda: monitor_db.update_agent(db_path=self.db_path, agent_id=agent_id, status=status)
        )

    def update_telemetry(self, agent_id: int, telemetry: Telemetry) -> None:
        self._lock.with_lock(
            lambda: monitor_db.upsert_telemetry(db_path=self.db_path, agent_id=agent_id, telemetry=telemetry)
        )

    async def update_telemetry_async(self, agent_id: int, telemetry: Telemetry) -> None:
        await self._lock.with_lock_async(
            lambda: monitor_db.upsert_telemetry(db_path=self.db_path, agent_id=agent_id, telemetry=telemetry)
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: int) -> Optional[AgentRecord]:
        return monitor_db.get_agent(db_path=self.db_path, agent_id=agent_id)

    get = get_agent

    def get_all_agents(self) -> List[AgentRecord]:
        return monitor_db.get_all_agents(db_path=self.db_path)

    def get_active_agents(self) -> List[AgentRecord]:
        return monitor_db.query_agents(db_path=self.db_path, status='running')

    def get_offline_agents(self) -> List[AgentRecord]:
        """Agents that are no longer running (completed or failed)."""
        return [a for a in self.get_all_agents() if a.status != 'running']

    def query_agents(
        self,
        status: Optional[str] = None,
        parent_id: Optional[int] = None,
        name: Optional[str] = None,
        roots_only: bool = False,
    ) -> List[AgentRecord]:
        return monitor_db.query_agents(
            db_path=self.db_path, status=status, parent_id=parent_id, name=name, roots_only=roots_only,
        )

    def get_root_agents(self) -> List[AgentRecord]:
        return monitor_db.query_agents(db_path=self.db_path, roots_only=True)

    def get_children(self, agent_id: int) -> List[AgentRecord]:
        return monitor_db.query_agents(db_path=self.db_path, parent_id=agent_id)

    def get_full_subtree(self, agent_id: int) -> List[AgentRecord]:
        """Pre-order traversal: the agent, then each child's full subtree depth-first."""
        by_parent, by_id = self._index()
        if agent_id not in by_id:
            return []
        result: List[AgentRecord] = []
        seen = set()

        def _visit(record: AgentRecord) -> None:
            if record.id in seen:
                return
            seen.add(record.id)
            result.append(record)
            for child in by_parent.get(record.id, []):
                _visit(child)

        _visit(by_id[agent_id])
        return result

    def build_agent_tree(self) -> List[AgentTreeNode]:
        """Forest of every root agent with its descendants."""
        by_parent, by_id = self._index()

        def _node(record: AgentRecord) -> AgentTreeNode:
            return AgentTreeNode(agent=record, children=[_node(c) for c in by_parent.get(record.id, [])])

        roots = [r for r in by_id.values() if r.parent_id is None or r.parent_id not in by_id]
        return [_node(r) for r in sorted(roots, key=lambda r: r.id)]

    def get_agents_by_root(self) -> Dict[int, List[AgentRecord]]:
        """Map each root id to its full subtree."""
        return {node.agent.id: self.get_full_subtree(node.agent.id) for node in self.build_agent_tree()}

    def _index(self):
        records = self.get_all_agents()
        by_id = {r.id: r for r in records}
        by_parent: Dict[int, List[AgentRecord]] = {}
        for record in records:
            if record.parent_id is not None:
                by_parent.setdefault(record.parent_id, []).append(record)
        return by_parent, by_id

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_descendants(self, agent_id: int) -> int:
        """Delete every descendant of an agent (the agent itself is kept)."""
        descendants = [r.id for r in self.get_full_subtree(agent_id) if r.id != agent_id]
        deleted = self._lock.with_lock(
            lambda: monitor_db.delete_agents(db_path=self.db_path, agent_ids=descendants)
        )
        if deleted:
            logger.info(f"Cleared {len(descendants)} descendant(s) of agent {agent_id}")
        return len(descendants)

    def validate_and_cleanup_agent(self, agent_id: int) -> bool:
        """
        Fail a running record whose owning process is gone.

        Returns:
            True if the record was marked failed
        """
        record = self.get_agent(agent_id)
        if record is None or record.status != 'running':
            return False
        if is_process_alive(record.pid):
            return False
        logger.info(f"Agent {agent_id} ({record.name}) process {record.pid} is gone, marking failed")
        return self.fail(agent_id, 'Process terminated unexpectedly')

    def cleanup_stale_agents(self) -> int:
        return sum(1 for record in self.get_active_agents() if self.validate_and_cleanup_agent(record.id))
