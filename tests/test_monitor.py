"""
Tests for monitor_db.py and monitor.py.

Tests cover:
- Registration and exactly-once terminal transitions
- Tree integrity and pre-order subtrees
- Telemetry upsert
- Orphan detection and stale cleanup
- Filtered queries
"""

import asyncio
import os
import shutil
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from codemachine import monitor_db
from codemachine.locks import FileLock
from codemachine.monitor import AgentMonitor, PROMPT_DISPLAY_LIMIT, is_process_alive
from codemachine.monitor_db import Telemetry, _connect

# Far above any pid_max, so os.kill(pid, 0) always reports ESRCH
DEAD_PID = 99999999


class TestAgentMonitor:
    @pytest.fixture
    def temp_workspace(self):
        temp_dir = tempfile.mkdtemp(prefix="test_monitor_")
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def monitor(self, temp_workspace):
        return AgentMonitor.for_workspace(temp_workspace)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def test_schema_created(self, monitor):
        conn = _connect(monitor.db_path)
        try:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        finally:
            conn.close()
        assert {'agents', 'telemetry'} <= tables

    def test_ensure_db_is_idempotent(self, monitor):
        monitor_db.ensure_db(monitor.db_path)
        monitor_db.ensure_db(monitor.db_path)
        assert monitor.get_all_agents() == []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def test_register_defaults(self, monitor):
        agent_id = monitor.register(name='planner', prompt='plan the work', engine='claude')

        record = monitor.get_agent(agent_id)
        assert record.status == 'running'
        assert record.pid == os.getpid()
        assert record.parent_id is None
        assert record.engine == 'claude'
        assert record.log_path.startswith(monitor.logs_dir)
        assert f"agent-{agent_id}-planner-" in os.path.basename(record.log_path)

    def test_ids_are_monotonic(self, monitor):
        ids = [monitor.register(name=f"a{i}", prompt='p') for i in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    def test_long_prompt_is_trimmed(self, monitor):
        agent_id = monitor.register(name='a', prompt='x' * (PROMPT_DISPLAY_LIMIT + 100))

        prompt = monitor.get_agent(agent_id).prompt
        assert prompt == 'x' * PROMPT_DISPLAY_LIMIT + '...'

    def test_complete_once(self, monitor):
        agent_id = monitor.register(name='a', prompt='p')

        assert monitor.complete(agent_id)
        assert not monitor.complete(agent_id)
        assert not monitor.fail(agent_id, 'too late')

        record = monitor.get_agent(agent_id)
        assert record.status == 'completed'
        assert record.error is None
        assert record.end_time is not None
        assert record.duration is not None and record.duration >= 0

    def test_fail_records_error_message(self, monitor):
        agent_id = monitor.register(name='a', prompt='p')

        assert monitor.fail(agent_id, RuntimeError('engine exploded'))

        record = monitor.get_agent(agent_id)
        assert record.status == 'failed'
        assert record.error == 'engine exploded'

    def test_fail_without_message_uses_exception_type(self, monitor):
        agent_id = monitor.register(name='a', prompt='p')

        monitor.fail(agent_id, KeyError())

        assert monitor.get_agent(agent_id).error
        assert monitor.get_agent(agent_id).status == 'failed'

    def test_unknown_agent_transitions_are_ignored(self, monitor):
        assert not monitor.complete(424242)
        assert not monitor.fail(424242, 'nope')

    def test_unknown_parent_registers_as_root(self, monitor):
        agent_id = monitor.register(name='orphan', prompt='p', parent_id=9999)

        assert monitor.get_agent(agent_id).parent_id is None

    def test_update_rejects_unknown_status(self, monitor):
        agent_id = monitor.register(name='a', prompt='p')
        with pytest.raises(ValueError):
            monitor_db.update_agent(db_path=monitor.db_path, agent_id=agent_id, status='exploded')

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def _build_family(self, monitor):
        root = monitor.register(name='root', prompt='p')
        child_a = monitor.register(name='child-a', prompt='p', parent_id=root)
        child_b = monitor.register(name='child-b', prompt='p', parent_id=root)
        grandchild = monitor.register(name='grandchild', prompt='p', parent_id=child_a)
        other_root = monitor.register(name='other', prompt='p')
        return root, child_a, child_b, grandchild, other_root

    def test_children_are_recomputed(self, monitor):
        root, child_a, child_b, grandchild, _ = self._build_family(monitor)

        assert monitor.get_agent(root).children == [child_a, child_b]
        assert [a.id for a in monitor.get_children(child_a)] == [grandchild]
        assert monitor.get_agent(grandchild).children == []

    def test_tree_integrity(self, monitor):
        self._build_family(monitor)
        for i in range(4):
            monitor.register(name=f"extra-{i}", prompt='p', parent_id=1 + i % 2)

        forest = monitor.build_agent_tree()

        seen = []

        def _walk(node):
            seen.append(node.agent.id)
            for child in node.children:
                assert child.agent.parent_id == node.agent.id
                _walk(child)

        for node in forest:
            _walk(node)
        assert sum(node.count() for node in forest) == len(monitor.get_all_agents())
        assert len(seen) == len(set(seen))

    def test_full_subtree_is_pre_order(self, monitor):
        root, child_a, child_b, grandchild, other_root = self._build_family(monitor)

        subtree = [a.id for a in monitor.get_full_subtree(root)]

        assert subtree == [root, child_a, grandchild, child_b]
        assert other_root not in subtree
        assert monitor.get_full_subtree(12345) == []

    def test_roots_and_agents_by_root(self, monitor):
        root, child_a, child_b, grandchild, other_root = self._build_family(monitor)

        assert [a.id for a in monitor.get_root_agents()] == [root, other_root]
        by_root = monitor.get_agents_by_root()
        assert set(by_root) == {root, other_root}
        assert len(by_root[root]) == 4

    def test_clear_descendants_keeps_the_agent(self, monitor):
        root, child_a, child_b, grandchild, other_root = self._build_family(monitor)

        removed = monitor.clear_descendants(root)

        assert removed == 3
        assert monitor.get_agent(root) is not None
        assert monitor.get_agent(grandchild) is None
        assert monitor.get_agent(other_root) is not None

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def test_telemetry_upsert(self, monitor):
        agent_id = monitor.register(name='a', prompt='p')

        monitor.update_telemetry(agent_id, Telemetry(tokens_in=10, tokens_out=5, cost=0.01))
        monitor.update_telemetry(agent_id, Telemetry(tokens_in=20, tokens_out=8, cached=3))

        telemetry = monitor.get_agent(agent_id).telemetry
        assert telemetry.tokens_in == 20
        assert telemetry.tokens_out == 8
        assert telemetry.cached == 3
        # Fields omitted by the later update keep their stored value
        assert telemetry.cost == pytest.approx(0.01)

        conn = _connect(monitor.db_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM telemetry WHERE agent_id=?", (agent_id,)).fetchone()[0]
        finally:
            conn.close()
        assert count == 1

    def test_complete_with_telemetry(self, monitor):
        agent_id = monitor.register(name='a', prompt='p')

        monitor.complete(agent_id, Telemetry(tokens_in=1, tokens_out=2))

        record = monitor.get_agent(agent_id)
        assert record.status == 'completed'
        assert record.telemetry.tokens_out == 2

    # ------------------------------------------------------------------
    # Orphans and queries
    # ------------------------------------------------------------------

    def test_is_process_alive(self):
        assert is_process_alive(os.getpid())
        assert not is_process_alive(DEAD_PID)
        assert not is_process_alive(None)

    def test_cleanup_stale_agents(self, monitor):
        alive = monitor.register(name='alive', prompt='p')
        orphan = monitor.register(name='orphan', prompt='p', pid=DEAD_PID)
        finished = monitor.register(name='done', prompt='p', pid=DEAD_PID)
        monitor.complete(finished)

        cleaned = monitor.cleanup_stale_agents()

        assert cleaned == 1
        assert monitor.get_agent(alive).status == 'running'
        assert monitor.get_agent(orphan).status == 'failed'
        assert monitor.get_agent(orphan).error == 'Process terminated unexpectedly'
        assert monitor.get_agent(finished).status == 'completed'

    def test_query_agents(self, monitor):
        root = monitor.register(name='coordinator', prompt='p')
        first = monitor.register(name='worker', prompt='p', parent_id=root)
        second = monitor.register(name='worker', prompt='p', parent_id=root)
        monitor.register(name='worker', prompt='p')
        monitor.complete(first)

        assert [a.id for a in monitor.query_agents(name='worker', parent_id=root)] == [first, second]
        assert [a.id for a in monitor.query_agents(status='completed')] == [first]
        assert len(monitor.query_agents(name='worker')) == 3
        assert {a.id for a in monitor.get_offline_agents()} == {first}
        assert second in {a.id for a in monitor.get_active_agents()}

    def test_monitors_share_the_database(self, temp_workspace, monitor):
        agent_id = monitor.register(name='a', prompt='p')
        other = AgentMonitor.for_workspace(temp_workspace)

        assert other.complete(agent_id)
        assert monitor.get_agent(agent_id).status == 'completed'

    # ------------------------------------------------------------------
    # Async lifecycle
    # ------------------------------------------------------------------

    def test_async_lifecycle(self, monitor):
        async def scenario():
            done = await monitor.register_async(name='coder', prompt='p', engine='claude')
            await monitor.complete_async(done, Telemetry(tokens_in=4, tokens_out=2))
            broken = await monitor.register_async(name='tester', prompt='p', parent_id=done)
            await monitor.fail_async(broken, RuntimeError('tests red'))
            return done, broken, await monitor.fail_async(done, 'too late')

        done, broken, late = asyncio.run(scenario())

        assert monitor.get_agent(done).status == 'completed'
        assert monitor.get_agent(done).telemetry.tokens_in == 4
        assert monitor.get_agent(broken).parent_id == done
        assert monitor.get_agent(broken).error == 'tests red'
        assert late is False

    def test_register_async_waits_for_lock_without_blocking_the_loop(self, monitor):
        # Another holder (a second process in practice) owns the registry lock
        holder = FileLock(monitor.db_path)
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
            started = loop.time()
            agent_id = await monitor.register_async(name='coder', prompt='p')
            waited = loop.time() - started
            done.set()
            await ticker
            return agent_id, waited, max(gaps)

        try:
            agent_id, waited, worst_gap = asyncio.run(scenario())
        finally:
            holder.release()

        assert waited >= 0.25
        assert worst_gap < 0.2
        assert monitor.get_agent(agent_id).status == 'running'
