"""
Workflow step execution.

Runs one module step of a workflow template: reads the step's prompt
template, composes the final prompt and hands it to the agent runner, which
takes care of engine selection, monitoring, logging and memory.
"""

import logging
import os
from typing import Callable, Optional

from .agents_config import AgentDefinition, resolve_prompt_path
from .config import get_agent_timeout_ms, get_cm_root, get_memory_dir
from .memory import MemoryStore
from .process import AbortSignal
from .runner import RunnerServices, execute_agent
from .templates import ModuleStep

logger = logging.getLogger(__name__)


def build_step_prompt(template: str, memory: Optional[str] = None, extra_prompt: Optional[str] = None) -> str:
    """Template first, then the agent's remembered output, then any extra request."""
    sections = [template.rstrip()]
    if memory:
        sections.append(f"[MEMORY]\n{memory}")
    if extra_prompt:
        sections.append(f"[REQUEST]\n{extra_prompt}")
    return '\n\n'.join(sections)


def _ensure_project_scaffold(cwd: str) -> None:
    cm_root = get_cm_root(cwd)
    os.makedirs(os.path.join(cm_root, 'agents'), exist_ok=True)
    os.makedirs(os.path.join(cm_root, 'plan'), exist_ok=True)


def step_agent_config(step: ModuleStep) -> AgentDefinition:
    """The step carries its own agent configuration; no catalog lookup is needed."""
    return AgentDefinition(
        id=step.agent_id,
        name=step.agent_name,
        prompt_path=step.prompt_path,
        model=step.model,
        model_reasoning_effort=step.model_reasoning_effort,
        engine=step.engine,
    )


async def execute_step(
    step: ModuleStep,
    cwd: str,
    services: RunnerServices,
    *,
    stdout_logger: Optional[Callable[[str], None]] = None,
    stderr_logger: Optional[Callable[[str], None]] = None,
    abort_signal: Optional[AbortSignal] = None,
    timeout: Optional[int] = None,
    engine: Optional[str] = None,
    extra_prompt: Optional[str] = None,
    include_memory: bool = False,
    parent_id: Optional[int] = None,
) -> str:
    """
    Execute a workflow step and return the agent's stdout.

    Args:
        step: Module step to run
        cwd: Workspace directory
        services: Shared runner services
        stdout_logger: Receives stdout chunks as they stream
        stderr_logger: Receives stderr chunks as they stream
        abort_signal: Cancels the agent process
        timeout: Milliseconds; defaults to CODEMACHINE_AGENT_TIMEOUT or 10 minutes
        engine: Engine override (wins over the step's own engine)
        extra_prompt: Appended as a [REQUEST] section
        include_memory: Fold the agent's remembered output into the prompt
        parent_id: Monitoring id of the spawning agent

    Raises:
        OSError: Prompt file cannot be read
        ProcessError, EngineAuthError, EngineNotFoundError: Agent run failed
    """
    prompt_path = resolve_prompt_path(step.prompt_path, cwd)
    with open(prompt_path, 'r', encoding='utf-8') as f:
        template = f.read()

    memory = MemoryStore(get_memory_dir(cwd)).summary(step.agent_id) if include_memory else None
    prompt = build_step_prompt(template, memory, extra_prompt)

    result = await execute_agent(
        step.agent_id,
        prompt,
        services=services,
        working_dir=cwd,
        agent_config=step_agent_config(step),
        engine=engine,
        on_stdout=stdout_logger,
        on_stderr=stderr_logger,
        abort_signal=abort_signal,
        timeout=timeout if timeout is not None else get_agent_timeout_ms(),
        parent_id=parent_id,
        display_prompt=extra_prompt or template,
    )

    if step.agent_id == 'agents-builder' or 'builder' in step.agent_name.lower():
        _ensure_project_scaffold(cwd)

    return result.output
