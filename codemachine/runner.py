"""
Agent Runner

Low-level execution of one agent with a ready-made prompt:
- Engine selection and authentication
- Model resolution (override > agent config > engine default)
- Monitoring registration, per-agent log stream and telemetry
- Memory persistence of the trailing output

Prompt building is the caller's job (the step executor and the orchestration
executor build their own composite prompts).
"""

import asyncio
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .agent_logger import AgentLogger
from .agents_config import AgentDefinition, load_agent_config
from .config import MEMORY_SLICE_CHARS, PARENT_AGENT_ENV, get_memory_dir
from .engines import (
    AuthCache,
    EngineRegistry,
    EngineRunOptions,
    create_default_registry,
    ensure_engine_auth,
    resolve_engine,
)
from .locks import LogLockService
from .memory import MemoryStore
from .monitor import AgentMonitor
from .monitor_db import Telemetry
from .process import AbortSignal

logger = logging.getLogger(__name__)

__all__ = [
    'RunnerServices',
    'AgentExecutionOutput',
    'execute_agent',
]


@dataclass
class RunnerServices:
    """Process-wide service objects shared by every execution path."""
    engines: EngineRegistry
    monitor: Optional[AgentMonitor] = None
    agent_logger: Optional[AgentLogger] = None
    auth_cache: AuthCache = field(default_factory=AuthCache)

    @classmethod
    def for_workspace(cls, cwd: str, engines: Optional[EngineRegistry] = None, monitoring: bool = True) -> 'RunnerServices':
        return cls(
            engines=engines if engines is not None else create_default_registry(cwd),
            monitor=AgentMonitor.for_workspace(cwd) if monitoring else None,
            agent_logger=AgentLogger(LogLockService()) if monitoring else None,
        )


@dataclass
class AgentExecutionOutput:
    output: str
    agent_id: Optional[int] = None


def _tag_failure(error: BaseException, agent_id: str, monitoring_id: Optional[int]) -> None:
    """Attach the failing agent to the error so callers can point at its log."""
    if getattr(error, 'agent_name', None) is None:
        error.agent_name = agent_id
        error.monitoring_id = monitoring_id


async def execute_agent(
    agent_id: str,
    prompt: str,
    *,
    services: RunnerServices,
    working_dir: str,
    agent_config: Optional[AgentDefinition] = None,
    engine: Optional[str] = None,
    model: Optional[str] = None,
    model_reasoning_effort: Optional[str] = None,
    on_stdout: Optional[Callable[[str], None]] = None,
    on_stderr: Optional[Callable[[str], None]] = None,
    on_telemetry: Optional[Callable[[Telemetry], None]] = None,
    abort_signal: Optional[AbortSignal] = None,
    timeout: Optional[int] = None,
    parent_id: Optional[int] = None,
    display_prompt: Optional[str] = None,
    disable_monitoring: bool = False,
) -> AgentExecutionOutput:
    """
    Execute an agent with a final prompt.

    Args:
        agent_id: Catalog id (also the memory key and monitoring name)
        prompt: Complete prompt passed to the engine
        services: Engine registry, monitor and logger
        working_dir: Directory the agent runs in
        agent_config: Explicit agent config; loaded from the catalog when None
        engine: Engine override
        model: Model override
        model_reasoning_effort: Reasoning effort override
        on_stdout: Receives stdout chunks as they stream
        on_stderr: Receives stderr chunks as they stream
        on_telemetry: Receives parsed usage updates
        abort_signal: Cancels the underlying process
        timeout: Hard timeout in milliseconds
        parent_id: Monitoring id of the spawning agent
        display_prompt: Short prompt shown in listings instead of the full prompt
        disable_monitoring: Skip monitor registration and log files

    Returns:
        AgentExecutionOutput with the engine stdout and monitoring id

    Raises:
        AgentNotFoundError, EngineNotFoundError, EngineAuthError, ProcessError.
        Errors raised by the engine run carry `agent_name` and `monitoring_id`.
    """
    config = agent_config if agent_config is not None else load_agent_config(agent_id, working_dir)

    selected = await resolve_engine(
        services.engines,
        override=engine,
        configured=config.engine,
        auth_cache=services.auth_cache,
    )
    if not engine and not config.engine:
        logger.info(f"No engine specified for agent '{agent_id}', using {selected.metadata.name} ({selected.metadata.id})")
    await ensure_engine_auth(selected, services.auth_cache)

    resolved_model = model or config.model or selected.metadata.default_model
    resolved_effort = (
        model_reasoning_effort or config.model_reasoning_effort or selected.metadata.default_model_reasoning_effort
    )

    monitor = services.monitor if not disable_monitoring else None
    agent_logger = services.agent_logger if not disable_monitoring else None
    monitoring_id: Optional[int] = None

    if monitor is not None:
        monitoring_id = await monitor.register_async(
            name=agent_id,
            prompt=display_prompt or prompt,
            parent_id=parent_id,
            engine=selected.metadata.id,
            engine_provider=selected.metadata.id,
            model_name=resolved_model,
        )
        record = monitor.get_agent(monitoring_id)
        if agent_logger is not None and record is not None:
            agent_logger.create_stream(monitoring_id, agent_id, record.prompt, record.log_path)
            agent_logger.store_full_prompt(monitoring_id, prompt)

    env = dict(os.environ)
    if monitoring_id is not None:
        env[PARENT_AGENT_ENV] = str(monitoring_id)

    def _on_data(chunk: str) -> None:
        if agent_logger is not None and monitoring_id is not None:
            agent_logger.write(monitoring_id, chunk)
        if on_stdout is not None:
            on_stdout(chunk)

    def _on_error_data(chunk: str) -> None:
        if agent_logger is not None and monitoring_id is not None:
            agent_logger.write(monitoring_id, f"[STDERR] {chunk}")
        if on_stderr is not None:
            on_stderr(chunk)

    # Telemetry writes run as chained tasks so a busy registry lock never stalls output streaming
    last_telemetry_write: List[Optional[asyncio.Future]] = [None]

    async def _record_telemetry(previous: Optional[asyncio.Future], telemetry: Telemetry) -> None:
        if previous is not None:
            await previous
        try:
            await monitor.update_telemetry_async(monitoring_id, telemetry)
        except sqlite3.Error as e:
            logger.error(f"Failed to update telemetry: {e}")

    def _on_telemetry(telemetry: Telemetry) -> None:
        if monitor is not None and monitoring_id is not None:
            last_telemetry_write[0] = asyncio.ensure_future(_record_telemetry(last_telemetry_write[0], telemetry))
        if on_telemetry is not None:
            on_telemetry(telemetry)

    async def _flush_telemetry() -> None:
        if last_telemetry_write[0] is not None:
            await last_telemetry_write[0]

    try:
        result = await selected.run(EngineRunOptions(
            prompt=prompt,
            working_dir=working_dir,
            model=resolved_model,
            model_reasoning_effort=resolved_effort,
            env=env,
            on_data=_on_data,
            on_error_data=_on_error_data,
            on_telemetry=_on_telemetry,
            abort_signal=abort_signal,
            timeout=timeout,
        ))

        MemoryStore(get_memory_dir(working_dir)).remember(agent_id, result.stdout, MEMORY_SLICE_CHARS)

        if monitor is not None and monitoring_id is not None:
            await _flush_telemetry()
            await monitor.complete_async(monitoring_id)
        return AgentExecutionOutput(output=result.stdout, agent_id=monitoring_id)
    except (Exception, asyncio.CancelledError) as error:
        _tag_failure(error, agent_id, monitoring_id)
        if monitor is not None and monitoring_id is not None:
            await _flush_telemetry()
            await monitor.fail_async(monitoring_id, error)
        raise
    finally:
        if agent_logger is not None and monitoring_id is not None:
            agent_logger.close_stream(monitoring_id)
