"""
Ad-hoc agent orchestration (`codemachine run "<script>"`).

Script syntax:
- `a 'p1' & b 'p2'`            one parallel group
- `a 'p1' && b 'p2'`           two sequential groups, run in order
- `a 'p' && b 'x' & c 'y' && d 'z'` mixed: `&&` separates groups, `&` runs within a group in parallel
- `agent[input:a.md;b.md,tail:100,prompt:"text"] 'prompt'` enhanced command form

Groups always run one after another. Parallel groups launch every command
before awaiting any and never cancel siblings on failure; sequential groups
stop at the first failure and end the whole plan.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional

from .agents_config import load_agent_template
from .config import get_parent_agent_id
from .process import AbortSignal
from .runner import RunnerServices, execute_agent

logger = logging.getLogger(__name__)

__all__ = [
    'CommandSyntaxError',
    'AgentCommand',
    'CommandGroup',
    'ExecutionPlan',
    'AgentExecutionResult',
    'OrchestrationResult',
    'OrchestrationParser',
    'load_input_files',
    'build_composite_prompt',
    'OrchestrationExecutor',
    'CoordinatorService',
]

FILE_RULE = '=' * 60


class CommandSyntaxError(ValueError):
    pass


# ============================================================================
# PLAN TYPES
# ============================================================================


@dataclass
class AgentCommand:
    name: str
    prompt: Optional[str] = None
    input: List[str] = field(default_factory=list)
    tail: Optional[int] = None
    options: Dict[str, str] = field(default_factory=dict)


@dataclass
class CommandGroup:
    mode: Literal['parallel', 'sequential']
    commands: List[AgentCommand]


@dataclass
class ExecutionPlan:
    groups: List[CommandGroup]


@dataclass
class AgentExecutionResult:
    name: str
    agent_id: int
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    tail_applied: Optional[int] = None
    prompt: Optional[str] = None
    input: List[str] = field(default_factory=list)


@dataclass
class OrchestrationResult:
    parent_id: Optional[int]
    results: List[AgentExecutionResult]
    success: bool


# ============================================================================
# PARSER
# ============================================================================

_QUOTED_COMMAND = re.compile(r"""^(\S+)\s+(['"])(.+)\2$""", re.S)
_ENHANCED_COMMAND = re.compile(r"""^([^\s\[]+)\[([^\]]*)\](?:\s+(['"])(.+)\3)?$""", re.S)


def smart_split(text: str, separator: str) -> List[str]:
    """Split on `separator` outside single/double quotes."""
    parts: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
            current.append(ch)
            i += 1
        elif ch in ('"', "'"):
            quote = ch
            current.append(ch)
            i += 1
        elif text.startswith(separator, i):
            parts.append(''.join(current))
            current = []
            i += len(separator)
        else:
            current.append(ch)
            i += 1
    parts.append(''.join(current))
    return parts


def unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


class OrchestrationParser:
    """Turns an orchestration script into an ExecutionPlan."""

    def parse(self, script: str) -> ExecutionPlan:
        """
        Raises:
            CommandSyntaxError: Empty script or a malformed command
        """
        trimmed = (script or '').strip()
        if not trimmed:
            raise CommandSyntaxError('Orchestration script cannot be empty')

        groups: List[CommandGroup] = []
        for segment in smart_split(trimmed, '&&'):
            parallel_parts = smart_split(segment, '&')
            if len(parallel_parts) > 1:
                groups.append(CommandGroup('parallel', [self.parse_command(p) for p in parallel_parts]))
            else:
                groups.append(CommandGroup('sequential', [self.parse_command(segment)]))
        return ExecutionPlan(groups)

    def parse_command(self, command_str: str) -> AgentCommand:
        trimmed = command_str.strip()
        if not trimmed:
            raise CommandSyntaxError('Invalid command syntax: empty command')

        enhanced = self.try_parse_enhanced(trimmed)
        if enhanced is not None:
            return enhanced

        match = _QUOTED_COMMAND.match(trimmed)
        if match:
            return AgentCommand(name=match.group(1), prompt=match.group(3))

        name, sep, rest = trimmed.partition(' ')
        if sep and rest.strip():
            return AgentCommand(name=name, prompt=rest.strip())

        raise CommandSyntaxError(
            f"Invalid command syntax: {command_str}\nExpected: agent-name 'prompt' or agent-name \"prompt\""
        )

    def try_parse_enhanced(self, command_str: str) -> Optional[AgentCommand]:
        """Parse `name[key:value,...] 'prompt'`; returns None for the plain form."""
        match = _ENHANCED_COMMAND.match(command_str.strip())
        if not match:
            return None
        command = AgentCommand(name=match.group(1))
        trailing_prompt = match.group(4)

        for part in smart_split(match.group(2), ','):
            key, sep, value = part.strip().partition(':')
            if not sep:
                continue
            key = key.strip()
            if key == 'input':
                command.input = [p.strip() for p in unquote(value).split(';') if p.strip()]
            elif key == 'tail':
                try:
                    command.tail = int(unquote(value))
                except ValueError:
                    logger.warning(f"Ignoring non-numeric tail value {value!r} for {command.name}")
            elif key == 'prompt':
                command.prompt = unquote(value)
            else:
                command.options[key] = unquote(value)

        if command.prompt is None and trailing_prompt:
            command.prompt = trailing_prompt
        return command


# ============================================================================
# PROMPT BUILDING
# ============================================================================


def load_input_files(file_paths: List[str], working_dir: str) -> str:
    """Concatenate input files with headers; unreadable files leave a FAILED TO LOAD marker."""
    blocks = []
    for file_path in file_paths:
        resolved = file_path if os.path.isabs(file_path) else os.path.join(working_dir, file_path)
        try:
            with open(resolved, 'r', encoding='utf-8') as f:
                content = f.read()
            blocks.append(f"\n=== File: {file_path} ===\n{content}\n{FILE_RULE}\n")
        except OSError as e:
            logger.warning(f"Failed to load input file {file_path}: {e}")
            blocks.append(f"\n=== File: {file_path} (FAILED TO LOAD) ===\nError: {e}\n{FILE_RULE}\n")
    return '\n'.join(blocks)


def build_composite_prompt(input_content: str, template: str, user_prompt: Optional[str] = None) -> str:
    parts: List[str] = []
    if input_content and input_content.strip():
        parts += ['[INPUT FILES]', input_content, '']
    if template and template.strip():
        parts += ['[SYSTEM]', template, '']
    if user_prompt and user_prompt.strip():
        parts += ['[REQUEST]', user_prompt]
    return '\n'.join(parts)


# ============================================================================
# EXECUTOR
# ============================================================================


class OrchestrationExecutor:
    """
    Executes an ExecutionPlan.

    Every command shares the executor's AbortSignal, so aborting while a
    parallel group is in flight kills every outstanding agent process.
    """

    def __init__(
        self,
        working_dir: str,
        services: RunnerServices,
        parent_id: Optional[int] = None,
        abort_signal: Optional[AbortSignal] = None,
        output_logger: Optional[Callable[[str, str], None]] = None,
        engine: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.working_dir = os.path.abspath(working_dir)
        self.services = services
        self.parent_id = parent_id
        self.abort_signal = abort_signal
        self.output_logger = output_logger
        self.engine = engine
        self.model = model

    async def execute(self, plan: ExecutionPlan) -> OrchestrationResult:
        results: List[AgentExecutionResult] = []
        for group in plan.groups:
            if self._aborted():
                logger.warning('Execution aborted, skipping remaining agents')
                break
            group_results = await self.execute_group(group)
            results.extend(group_results)
            if group.mode == 'sequential' and any(not r.success for r in group_results):
                logger.warning('Sequential group had failures, stopping execution')
                break
        return OrchestrationResult(
            parent_id=self.parent_id,
            results=results,
            success=all(r.success for r in results),
        )

    async def execute_group(self, group: CommandGroup) -> List[AgentExecutionResult]:
        if group.mode == 'parallel':
            return await self.execute_parallel(group.commands)
        return await self.execute_sequential(group.commands)

    async def execute_parallel(self, commands: List[AgentCommand]) -> List[AgentExecutionResult]:
        logger.info(f"Executing {len(commands)} agents in parallel")
        return list(await asyncio.gather(*(self.execute_command(c) for c in commands)))

    async def execute_sequential(self, commands: List[AgentCommand]) -> List[AgentExecutionResult]:
        results: List[AgentExecutionResult] = []
        for i, command in enumerate(commands, 1):
            if self._aborted():
                logger.warning('Execution aborted, skipping remaining agents')
                break
            logger.info(f"Executing agent {i}/{len(commands)}")
            result = await self.execute_command(command)
            results.append(result)
            if not result.success:
                logger.error(f"Agent {result.name} failed, stopping sequential execution")
                break
        return results

    def _aborted(self) -> bool:
        return self.abort_signal is not None and self.abort_signal.aborted

    def _stream_to(self, name: str) -> Optional[Callable[[str], None]]:
        if self.output_logger is None:
            return None
        return lambda chunk: self.output_logger(name, chunk)

    def _recover_agent_id(self, name: str) -> int:
        """Most recent monitoring record for (name, parent_id), or 0 when monitoring is off."""
        if self.services.monitor is None:
            return 0
        if self.parent_id is None:
            agents = self.services.monitor.query_agents(name=name, roots_only=True)
        else:
            agents = self.services.monitor.query_agents(name=name, parent_id=self.parent_id)
        return max((a.id for a in agents), default=0)

    async def execute_command(self, command: AgentCommand) -> AgentExecutionResult:
        """Run one command; failures are captured in the result, never raised."""
        logger.info(f"Agent: {command.name} | Prompt: {command.prompt or '(using template only)'}")
        suppress_output = command.tail is not None and command.tail > 0
        try:
            input_content = load_input_files(command.input, self.working_dir) if command.input else ''
            template = load_agent_template(command.name, self.working_dir)
            prompt = build_composite_prompt(input_content, template, command.prompt)

            execution = await execute_agent(
                command.name,
                prompt,
                services=self.services,
                working_dir=self.working_dir,
                engine=self.engine,
                model=self.model,
                on_stdout=None if suppress_output else self._stream_to(command.name),
                on_stderr=None if suppress_output else self._stream_to(command.name),
                abort_signal=self.abort_signal,
                parent_id=self.parent_id,
                display_prompt=command.prompt or f"{command.name} (template only)",
            )
        except Exception as error:
            logger.error(f"Agent {command.name} failed: {error}")
            failed_id = getattr(error, 'monitoring_id', None)
            return AgentExecutionResult(
                name=command.name,
                agent_id=failed_id if failed_id is not None else self._recover_agent_id(command.name),
                success=False,
                error=str(error),
                prompt=command.prompt,
                input=list(command.input),
            )

        output = execution.output
        tail_applied = None
        if suppress_output:
            lines = output.split('\n')
            if len(lines) > command.tail:
                output = '\n'.join(lines[-command.tail:])
                tail_applied = command.tail
                logger.debug(f"Applied tail limiting: {len(lines)} -> {command.tail} lines")

        logger.info(f"Agent {command.name} completed successfully")
        agent_id = execution.agent_id if execution.agent_id is not None else self._recover_agent_id(command.name)
        return AgentExecutionResult(
            name=command.name,
            agent_id=agent_id,
            success=True,
            output=output,
            tail_applied=tail_applied,
            prompt=command.prompt,
            input=list(command.input),
        )


# ============================================================================
# COORDINATOR
# ============================================================================


class CoordinatorService:
    """Parses a script, attaches it to the calling agent and prints a summary."""

    def __init__(
        self,
        working_dir: str,
        services: RunnerServices,
        abort_signal: Optional[AbortSignal] = None,
        output_logger: Optional[Callable[[str, str], None]] = None,
        echo: Callable[[str], None] = print,
    ):
        self.working_dir = os.path.abspath(working_dir)
        self.services = services
        self.abort_signal = abort_signal
        self.output_logger = output_logger
        self.echo = echo
        self.parser = OrchestrationParser()

    def resolve_parent_id(self) -> Optional[int]:
        """Parent from CODEMACHINE_PARENT_AGENT_ID, else the most recently started active agent."""
        parent_id = get_parent_agent_id()
        if parent_id is not None:
            logger.debug(f"Found parent agent ID from environment: {parent_id}")
            return parent_id
        if self.services.monitor is None:
            return None
        active = self.services.monitor.get_active_agents()
        if not active:
            return None
        most_recent = max(active, key=lambda a: (a.start_time, a.id))
        logger.debug(f"Inferred parent agent from active agents: {most_recent.id} ({most_recent.name})")
        return most_recent.id

    async def parse_and_execute(
        self,
        script: str,
        engine: Optional[str] = None,
        model: Optional[str] = None,
    ) -> OrchestrationResult:
        plan = self.parser.parse(script)
        logger.debug(f"Parsed orchestration plan with {len(plan.groups)} groups")

        parent_id = self.resolve_parent_id()
        if parent_id is not None:
            self.echo(f"Coordination under parent agent ID: {parent_id}")
        else:
            self.echo('Coordination running as standalone session')

        executor = OrchestrationExecutor(
            self.working_dir,
            self.services,
            parent_id=parent_id,
            abort_signal=self.abort_signal,
            output_logger=self.output_logger,
            engine=engine,
            model=model,
        )
        result = await executor.execute(plan)
        self.print_summary(result)
        return result

    def print_summary(self, result: OrchestrationResult) -> None:
        succeeded = sum(1 for r in result.results if r.success)
        failed = len(result.results) - succeeded

        self.echo('\n' + '═' * 60)
        self.echo('Coordination Summary')
        self.echo('═' * 60)
        self.echo(f"Total agents: {len(result.results)}")
        self.echo(f"Succeeded: {succeeded}")
        if failed:
            self.echo(f"Failed: {failed}")

        for i, r in enumerate(result.results, 1):
            status = 'Completed' if r.success else 'Failed'
            self.echo(f"  {i}. {r.name} - {status} (ID: {r.agent_id})")
            if r.input:
                self.echo(f"     Input: {', '.join(r.input)}")
            if r.prompt:
                prompt = r.prompt if len(r.prompt) <= 80 else r.prompt[:77] + '...'
                self.echo(f"     Prompt: {prompt}")
            if r.tail_applied:
                self.echo(f"     (Output limited to last {r.tail_applied} lines)")
            if r.error:
                error = r.error if len(r.error) <= 200 else r.error[:197] + '...'
                self.echo(f"     Error: {error}")

        self.echo('─' * 60)
        self.echo('View logs: codemachine agents logs <id>')
        self.echo('List all agents: codemachine agents')
