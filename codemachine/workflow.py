"""
Workflow Runner

Drives a workflow template step by step:
- Resume from the first step left unfinished by a previous run
- Skip executeOnce steps that already completed, and steps excluded by an active loop
- Run a step's fallback agent first when the step was interrupted last time
- Honor agent signals after each step (checkpoint, trigger, loop/stop)
- Persist started/completed step indices in .codemachine/template.json

A step failure stops the run; retrying is the caller's decision.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from .agents_config import load_agent_config, load_agent_template
from .config import get_cm_root
from .loop import (
    LoopController,
    RunState,
    clear_behavior_signal,
    evaluate_checkpoint,
    evaluate_trigger_behavior,
    format_agent_log,
    read_behavior_signal,
)
from .process import AbortSignal
from .runner import RunnerServices, execute_agent
from .step_executor import execute_step
from .templates import ModuleStep, UiStep, WorkflowTemplate, load_template, resolve_template_path
from .tracking import (
    TrackingState,
    load_tracking,
    mark_step_completed,
    mark_step_started,
    remove_from_not_completed,
    resume_start_index,
    set_active_template,
)

logger = logging.getLogger(__name__)

RULE = '═' * 80

__all__ = [
    'WorkflowRunner',
    'WorkflowRunResult',
    'should_execute_fallback',
    'run_workflow',
]


@dataclass
class WorkflowRunResult:
    executed_steps: List[int] = field(default_factory=list)
    checkpoint_reason: Optional[str] = None

    @property
    def stopped_at_checkpoint(self) -> bool:
        return self.checkpoint_reason is not None


def should_execute_fallback(step: ModuleStep, index: int, not_completed_steps) -> bool:
    """A step left unfinished by a previous run gets its fallback agent first, if it declares one."""
    return index in not_completed_steps and bool(step.not_completed_fallback)


class WorkflowRunner:
    """
    Executes one workflow template against a workspace.

    A runner instance owns its RunState (loop counters and active loop); never
    share an instance between concurrent runs.
    """

    def __init__(
        self,
        cwd: str,
        services: RunnerServices,
        *,
        abort_signal: Optional[AbortSignal] = None,
        stdout_logger: Optional[Callable[[str], None]] = None,
        stderr_logger: Optional[Callable[[str], None]] = None,
        engine: Optional[str] = None,
        state: Optional[RunState] = None,
    ):
        self.cwd = os.path.abspath(cwd)
        self.cm_root = get_cm_root(self.cwd)
        self.services = services
        self.abort_signal = abort_signal
        self.stdout_logger = stdout_logger
        self.stderr_logger = stderr_logger
        self.engine = engine
        self.loop = LoopController(state)

    @property
    def state(self) -> RunState:
        return self.loop.state

    async def _execute(self, step: ModuleStep) -> str:
        return await execute_step(
            step,
            self.cwd,
            self.services,
            stdout_logger=self.stdout_logger,
            stderr_logger=self.stderr_logger,
            abort_signal=self.abort_signal,
            engine=self.engine,
        )

    async def execute_fallback_step(self, step: ModuleStep) -> None:
        """
        Run the fallback agent of a previously interrupted step.

        The fallback agent brings its own prompt but keeps the original step's
        engine/model settings. Failures propagate and abort the run.
        """
        fallback_id = step.not_completed_fallback
        if not fallback_id:
            raise ValueError('No fallback agent defined for this step')

        logger.info(format_agent_log(fallback_id, f"Fallback agent for {step.agent_name} started to work."))
        fallback_agent = load_agent_config(fallback_id, self.cwd)
        fallback_step = step.model_copy(update={
            'agent_id': fallback_agent.id,
            'agent_name': fallback_agent.name or fallback_agent.id,
            'prompt_path': fallback_agent.prompt_path,
            'not_completed_fallback': None,
            'module': None,
        })
        try:
            await self._execute(fallback_step)
        except Exception as error:
            logger.error(format_agent_log(fallback_id, f"Fallback agent failed: {error}"))
            raise
        logger.info(format_agent_log(fallback_id, 'Fallback agent completed successfully.'))
        logger.info(RULE)

    async def execute_trigger_agent(self, trigger_agent_id: str, source: ModuleStep) -> str:
        """Run an agent requested by a step's trigger signal; it writes to memory but gets none."""
        config = load_agent_config(trigger_agent_id, self.cwd)
        template = load_agent_template(trigger_agent_id, self.cwd)

        logger.info(format_agent_log(source.agent_id, f"Executing triggered agent: {config.name}"))
        logger.info(RULE)
        logger.info(format_agent_log(trigger_agent_id, f"{config.name} started to work (triggered)."))
        try:
            result = await execute_agent(
                trigger_agent_id,
                f"[SYSTEM]\n{template}",
                services=self.services,
                working_dir=self.cwd,
                agent_config=config,
                engine=self.engine or source.engine,
                on_stdout=self.stdout_logger,
                on_stderr=self.stderr_logger,
                abort_signal=self.abort_signal,
            )
        except Exception as error:
            logger.error(format_agent_log(source.agent_id, f"Triggered agent '{trigger_agent_id}' failed: {error}"))
            raise
        logger.info(format_agent_log(trigger_agent_id, f"{config.name} (triggered) has completed their work."))
        logger.info(RULE)
        return result.output

    async def run(self, template: WorkflowTemplate, tracking: Optional[TrackingState] = None) -> WorkflowRunResult:
        """
        Execute the template from the resume point to the end.

        Raises:
            Exception: The first step failure, unchanged
        """
        if tracking is None:
            tracking = load_tracking(self.cm_root)
        completed: List[int] = list(tracking.completed_steps)
        fallback_pending: Set[int] = set(tracking.not_completed_steps)
        result = WorkflowRunResult()

        index = resume_start_index(tracking)
        if index:
            logger.info(f"Resuming workflow '{template.name}' at step {index}")

        steps = template.steps
        while index < len(steps):
            step = steps[index]
            if not isinstance(step, ModuleStep):
                if isinstance(step, UiStep):
                    logger.info(step.text)
                index += 1
                continue

            skip = self.loop.should_skip(step, index, completed)
            if skip.skip:
                logger.info(format_agent_log(step.agent_id, skip.reason))
                index += 1
                continue

            if self.abort_signal is not None:
                self.abort_signal.raise_if_aborted()

            logger.info(RULE)
            logger.info(format_agent_log(step.agent_id, f"{step.agent_name} started to work."))

            if should_execute_fallback(step, index, fallback_pending):
                fallback_pending.discard(index)
                await self.execute_fallback_step(step)

            mark_step_started(self.cm_root, index)
            clear_behavior_signal(self.cwd)
            try:
                output = await self._execute(step)
            except Exception as error:
                logger.error(format_agent_log(step.agent_id, f"{step.agent_name} failed: {error}"))
                raise
            remove_from_not_completed(self.cm_root, index)
            result.executed_steps.append(index)

            signal = read_behavior_signal(self.cwd)

            checkpoint = evaluate_checkpoint(self.cwd, signal)
            if checkpoint is not None:
                if step.execute_once:
                    mark_step_completed(self.cm_root, index)
                reason = checkpoint.reason or 'no reason given'
                logger.info(format_agent_log(step.agent_id, f"Checkpoint reached ({reason}); workflow paused."))
                result.checkpoint_reason = reason
                return result

            trigger = evaluate_trigger_behavior(step.behavior, self.cwd, signal)
            if trigger is not None:
                suffix = f" ({trigger.reason})" if trigger.reason else ''
                logger.info(format_agent_log(
                    step.agent_id,
                    f"{step.agent_name} is triggering agent '{trigger.trigger_agent_id}'{suffix}.",
                ))
                await self.execute_trigger_agent(trigger.trigger_agent_id, step)

            loop_result = self.loop.handle(step, index, output, self.cwd, signal)
            self.loop.apply(loop_result.decision)
            if loop_result.decision is not None and loop_result.decision.should_repeat:
                index = loop_result.new_index + 1
                continue

            if step.execute_once:
                mark_step_completed(self.cm_root, index)
                completed.append(index)

            logger.info(format_agent_log(step.agent_id, f"{step.agent_name} has completed their work."))
            logger.info(RULE)
            index += 1

        return result


async def run_workflow(
    cwd: str,
    template_path: Optional[str] = None,
    services: Optional[RunnerServices] = None,
    *,
    abort_signal: Optional[AbortSignal] = None,
    engine: Optional[str] = None,
    stdout_logger: Optional[Callable[[str], None]] = None,
    stderr_logger: Optional[Callable[[str], None]] = None,
) -> WorkflowRunResult:
    """Resolve, record and run the workspace's workflow template."""
    cwd = os.path.abspath(cwd)
    path = resolve_template_path(cwd, template_path)
    template = load_template(path)
    logger.info(f"Using workflow template: {template.name}")

    cm_root = get_cm_root(cwd)
    relative = os.path.relpath(path, cwd)
    set_active_template(cm_root, path if relative.startswith('..') else relative)

    runner = WorkflowRunner(
        cwd,
        services or RunnerServices.for_workspace(cwd),
        abort_signal=abort_signal,
        stdout_logger=stdout_logger,
        stderr_logger=stderr_logger,
        engine=engine,
    )
    return await runner.run(template, load_tracking(cm_root))
