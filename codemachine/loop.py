"""
Loop Controller and step behaviors.

Control-flow decisions after a step come from an out-of-band signal file,
.codemachine/memory/behavior.json, written by the agent itself:

    {"action": "loop" | "stop" | "continue" | "checkpoint" | "trigger",
     "reason": "...", "triggerAgentId": "..."}

No signal file means "no decision", never "stop". The runner clears the file
before each step so a signal only applies to the step that wrote it.

Loop state (iteration counters and the active skip list) lives in a RunState
owned by a single WorkflowRunner instance.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import debug_loops_enabled, get_behavior_file
from .templates import LoopBehaviorConfig, ModuleBehavior, ModuleStep, TriggerBehaviorConfig

logger = logging.getLogger(__name__)

LOOP_LIMIT_REASON = 'loop limit exceeded'


def format_agent_log(agent_id: str, message: str) -> str:
    return f"[{agent_id}] {message}"


# ============================================================================
# BEHAVIOR SIGNAL FILE
# ============================================================================


class BehaviorSignal(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal['loop', 'stop', 'continue', 'checkpoint', 'trigger']
    reason: Optional[str] = None
    trigger_agent_id: Optional[str] = Field(default=None, alias='triggerAgentId')


def read_behavior_signal(cwd: str) -> Optional[BehaviorSignal]:
    """Read the agent's behavior signal; missing or unparsable files yield None."""
    path = get_behavior_file(cwd)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return BehaviorSignal.model_validate(json.load(f))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Failed to parse behavior file: {e}")
        return None


def clear_behavior_signal(cwd: str) -> None:
    try:
        os.unlink(get_behavior_file(cwd))
    except FileNotFoundError:
        pass


# ============================================================================
# DECISIONS
# ============================================================================


@dataclass
class LoopDecision:
    should_repeat: bool
    steps_back: int = 0
    skip: List[str] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class TriggerDecision:
    trigger_agent_id: str
    reason: Optional[str] = None


@dataclass
class CheckpointDecision:
    reason: Optional[str] = None


def evaluate_loop_behavior(
    behavior: Optional[ModuleBehavior],
    output: str,
    iteration_count: int,
    cwd: Optional[str] = None,
    signal: Optional[BehaviorSignal] = None,
) -> Optional[LoopDecision]:
    """
    Decide whether a loop step repeats.

    Args:
        behavior: The step's module behavior
        output: The step's output (kept for callers; decisions come from the signal)
        iteration_count: Repeats already performed for this loop
        cwd: Workspace to read the signal from when `signal` is not given
        signal: Pre-read behavior signal

    Returns:
        None when the step has no loop behavior or the agent signalled nothing
        relevant; otherwise a LoopDecision.
    """
    if not isinstance(behavior, LoopBehaviorConfig):
        return None
    if signal is None and cwd is not None:
        signal = read_behavior_signal(cwd)
    if signal is None:
        return None

    if signal.action == 'loop':
        if behavior.max_iterations is not None and iteration_count >= behavior.max_iterations:
            return LoopDecision(should_repeat=False, reason=LOOP_LIMIT_REASON)
        return LoopDecision(
            should_repeat=True,
            steps_back=behavior.steps,
            skip=list(behavior.skip),
            reason=signal.reason,
        )
    if signal.action == 'stop':
        return LoopDecision(should_repeat=False, reason=signal.reason)
    return None


def evaluate_trigger_behavior(
    behavior: Optional[ModuleBehavior],
    cwd: str,
    signal: Optional[BehaviorSignal] = None,
) -> Optional[TriggerDecision]:
    if not isinstance(behavior, TriggerBehaviorConfig):
        return None
    if signal is None:
        signal = read_behavior_signal(cwd)
    if signal is None or signal.action != 'trigger':
        return None
    target = signal.trigger_agent_id or behavior.trigger_agent_id
    if not target:
        logger.error('Trigger action requires triggerAgentId in behavior.json or module configuration')
        return None
    return TriggerDecision(trigger_agent_id=target, reason=signal.reason)


def evaluate_checkpoint(cwd: str, signal: Optional[BehaviorSignal] = None) -> Optional[CheckpointDecision]:
    """Any agent may request a checkpoint; no behavior configuration is needed."""
    if signal is None:
        signal = read_behavior_signal(cwd)
    if signal is None or signal.action != 'checkpoint':
        return None
    return CheckpointDecision(reason=signal.reason)


# ============================================================================
# RUN STATE AND CONTROLLER
# ============================================================================


@dataclass
class ActiveLoop:
    skip: List[str] = field(default_factory=list)


@dataclass
class RunState:
    loop_counters: Dict[str, int] = field(default_factory=dict)
    active_loop: Optional[ActiveLoop] = None


@dataclass
class LoopResult:
    decision: Optional[LoopDecision]
    new_index: int


@dataclass
class SkipDecision:
    skip: bool
    reason: Optional[str] = None


def should_skip_step(
    step: ModuleStep,
    index: int,
    completed_steps: List[int],
    active_loop: Optional[ActiveLoop],
) -> SkipDecision:
    if step.execute_once and index in completed_steps:
        return SkipDecision(True, f"{step.agent_name} skipped (already completed).")
    if active_loop is not None and (step.agent_id in active_loop.skip or step.module_id in active_loop.skip):
        return SkipDecision(True, f"{step.agent_name} skipped (loop configuration).")
    return SkipDecision(False)


class LoopController:
    """Turns loop decisions into cursor moves for one workflow run."""

    def __init__(self, state: Optional[RunState] = None):
        self.state = state or RunState()

    @staticmethod
    def loop_key(step: ModuleStep, index: int) -> str:
        return f"{step.module_id}:{index}"

    def handle(
        self,
        step: ModuleStep,
        index: int,
        output: str,
        cwd: str,
        signal: Optional[BehaviorSignal] = None,
    ) -> LoopResult:
        key = self.loop_key(step, index)
        iteration_count = self.state.loop_counters.get(key, 0)
        if signal is None:
            signal = read_behavior_signal(cwd)
        decision = evaluate_loop_behavior(step.behavior, output, iteration_count, signal=signal)

        if debug_loops_enabled():
            last_line = (output.strip().splitlines() or [''])[-1]
            logger.info(format_agent_log(
                step.agent_id,
                f"[loop] step={step.agent_name} behavior={step.behavior} iteration={iteration_count} lastLine={last_line}",
            ))

        if decision is not None and decision.should_repeat:
            next_count = iteration_count + 1
            self.state.loop_counters[key] = next_count
            steps_back = max(1, decision.steps_back)
            new_index = max(-1, index - steps_back - 1)

            behavior = step.behavior
            max_info = f"/{behavior.max_iterations}" if behavior.max_iterations else ''
            skip_info = f" (skipping: {', '.join(decision.skip)})" if decision.skip else ''
            why = decision.reason or behavior.trigger or 'agent signal'
            logger.info(format_agent_log(
                step.agent_id,
                f"{step.agent_name} triggered a loop ({why}); repeating previous step. "
                f"Iteration {next_count}{max_info}{skip_info}.",
            ))
            return LoopResult(decision, new_index)

        if decision is not None:
            if decision.reason:
                logger.info(format_agent_log(step.agent_id, f"{step.agent_name} loop skipped: {decision.reason}."))
            self.state.loop_counters[key] = 0
        return LoopResult(decision, index)

    def apply(self, decision: Optional[LoopDecision]) -> None:
        """Repeat sets the active skip list, terminate clears it, no decision leaves it alone."""
        if decision is None:
            return
        if decision.should_repeat:
            self.state.active_loop = ActiveLoop(skip=list(decision.skip))
        else:
            self.state.active_loop = None

    def should_skip(self, step: ModuleStep, index: int, completed_steps: List[int]) -> SkipDecision:
        return should_skip_step(step, index, completed_steps, self.state.active_loop)
