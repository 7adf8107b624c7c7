"""
codemachine command line interface.

Usage:
    codemachine agents [-d DIR]
    codemachine agents logs <id> [--follow]
    codemachine run "<script>" [--engine ID] [--model NAME]
    codemachine step <agentId> ["prompt"] [--engine ID] [--model NAME] [--reasoning LEVEL]
    codemachine workflow [--template PATH]
    codemachine retry <agentId> [--max-rounds N]

Exit codes: 0 success, 1 failure, 130 user interrupt.
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from .agent_logger import AgentLogger
from .agents_config import AgentNotFoundError, load_agent_config, load_agent_template
from .cleanup import EXIT_CRASHED, EXIT_INTERRUPTED, STOPPING, InterruptController
from .config import LOG_FORMAT, LOG_LEVEL, get_tasks_path
from .engines import EngineAuthError, EngineNotFoundError
from .loop import format_agent_log
from .monitor import AgentMonitor, AgentTreeNode
from .monitor_db import AgentRecord
from .orchestration import CommandSyntaxError, CoordinatorService
from .process import AbortSignal, ProcessAborted, ProcessError
from .retry import Task, retry_until_done
from .runner import RunnerServices, execute_agent
from .step_executor import build_step_prompt
from .templates import TemplateError
from .workflow import RULE, run_workflow

logger = logging.getLogger(__name__)

EXIT_OK = 0

# Errors reported as a one-line message with exit code 1
USER_FACING_ERRORS = (
    AgentNotFoundError,
    CommandSyntaxError,
    EngineAuthError,
    EngineNotFoundError,
    ProcessError,
    TemplateError,
    FileNotFoundError,
    ValueError,
    RuntimeError,
)


def format_duration(ms: float) -> str:
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def _uptime(agent: AgentRecord, now: datetime) -> str:
    try:
        started = datetime.fromisoformat(agent.start_time)
    except (TypeError, ValueError):
        return ''
    return format_duration((now - started).total_seconds() * 1000)


def _short_prompt(prompt: str) -> str:
    return prompt if len(prompt) <= 60 else prompt[:57] + '...'


def _report_failure(error: BaseException) -> None:
    """One-line error, or the failing agent plus a pointer to its log."""
    agent_name = getattr(error, 'agent_name', None)
    if agent_name is None:
        print(f"❌ Error: {error}", file=sys.stderr)
        return
    message = str(error) or type(error).__name__
    if len(message) > 200:
        message = message[:197] + '...'
    print(f"❌ {agent_name} failed: {message}", file=sys.stderr)
    monitoring_id = getattr(error, 'monitoring_id', None)
    if monitoring_id is not None:
        print(f"   View logs: codemachine agents logs {monitoring_id}", file=sys.stderr)


def _write_chunk(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


# ============================================================================
# agents
# ============================================================================


def _print_tree_node(node: AgentTreeNode, prefix: str, is_last: bool, now: datetime, out: Callable[[str], None]) -> None:
    agent = node.agent
    connector = '└─' if is_last else '├─'
    rail = ' ' if is_last else '│'
    tag = '[SUB]' if agent.parent_id else '[MAIN]'
    status = 'Running' if agent.status == 'running' else agent.status.capitalize()
    uptime = _uptime(agent, now) if agent.status == 'running' else ''

    out(f"{prefix}{connector} {tag} {agent.name}")
    out(f"{prefix}{rail}   ID: {agent.id} | Status: {status}" + (f" | Uptime: {uptime}" if uptime else ''))
    out(f"{prefix}{rail}   Prompt: {_short_prompt(agent.prompt)}")

    child_prefix = prefix + ('    ' if is_last else '│   ')
    for i, child in enumerate(node.children):
        _print_tree_node(child, child_prefix, i == len(node.children) - 1, now, out)


def _running_only(node: AgentTreeNode) -> AgentTreeNode:
    return AgentTreeNode(
        agent=node.agent,
        children=[_running_only(c) for c in node.children if c.agent.status == 'running'],
    )


def list_agents(monitor: AgentMonitor, out: Callable[[str], None] = print) -> None:
    """Print running agents as a tree, then the terminated ones."""
    now = datetime.now()
    active = monitor.get_active_agents()
    offline = monitor.get_offline_agents()

    out('')
    if active:
        out(f"ACTIVE AGENTS ({len(active)} running)")
        roots = [_running_only(n) for n in monitor.build_agent_tree() if n.agent.status == 'running']
        for i, root in enumerate(roots):
            _print_tree_node(root, '', i == len(roots) - 1, now, out)
        out('')

    if offline:
        out(f"OFFLINE AGENTS ({len(offline)} terminated)")
        for i, agent in enumerate(offline):
            is_last = i == len(offline) - 1
            rail = ' ' if is_last else '│'
            duration = format_duration(agent.duration) if agent.duration else 'N/A'
            out(f"{'└─' if is_last else '├─'} {agent.name}")
            out(f"{rail}   ID: {agent.id} | Status: {agent.status.capitalize()} | Duration: {duration}")
            out(f"{rail}   Ran: {agent.start_time} → {agent.end_time or 'N/A'}")
            if agent.error:
                out(f"{rail}   Error: {agent.error}")
        out('')

    out('─' * 60)
    out(f"Total: {len(active) + len(offline)} agents ({len(active)} active, {len(offline)} offline)")
    out('')


def show_agent_logs(
    monitor: AgentMonitor,
    agent_id: int,
    follow: bool = False,
    out: Callable[[str], None] = print,
    write: Callable[[str], None] = _write_chunk,
) -> int:
    agent = monitor.get_agent(agent_id)
    if agent is None:
        print(f"❌ Agent {agent_id} not found", file=sys.stderr)
        print('Use "codemachine agents" to see all agents', file=sys.stderr)
        return 1

    out('')
    out(f"Agent {agent_id} - {agent.name}")
    out('─' * 60)
    out(f"Status: {agent.status.capitalize()}")
    out(f"Started: {agent.start_time}")
    if agent.end_time:
        out(f"Ended: {agent.end_time}")
    if agent.duration:
        out(f"Duration: {format_duration(agent.duration)}")
    out(f"Prompt: {agent.prompt}")
    if agent.telemetry is not None:
        out('Telemetry:')
        out(f"  Tokens In: {agent.telemetry.tokens_in}")
        out(f"  Tokens Out: {agent.telemetry.tokens_out}")
        if agent.telemetry.cached:
            out(f"  Cached: {agent.telemetry.cached}")
        if agent.telemetry.cost:
            out(f"  Cost: ${agent.telemetry.cost:.4f}")
    out('─' * 60)
    out('Logs:')
    out('')

    if not agent.log_path or not os.path.exists(agent.log_path):
        print(f"❌ Log file not found: {agent.log_path}", file=sys.stderr)
        return 1

    def _finished() -> bool:
        record = monitor.get_agent(agent_id)
        return record is None or record.status != 'running'

    try:
        AgentLogger().stream_logs(
            agent.log_path,
            write,
            follow=follow and agent.status == 'running',
            stop=_finished,
        )
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    out('')
    return EXIT_OK


# ============================================================================
# run / step / workflow / retry
# ============================================================================


def _run_interruptible(services: RunnerServices, body: Callable[[AbortSignal], Awaitable[int]]) -> int:
    """Run an async command with SIGINT/SIGTERM wired to the interrupt controller."""
    controller = InterruptController(services.monitor, services.agent_logger)

    async def _main() -> int:
        abort_signal = AbortSignal()
        controller.install(asyncio.get_running_loop())
        controller.attach_abort_signal(abort_signal)
        try:
            return await body(abort_signal)
        finally:
            controller.attach_abort_signal(None)
            controller.uninstall()

    try:
        return asyncio.run(_main())
    except ProcessAborted as e:
        if e.user_interrupted or controller.state == STOPPING:
            print('\nStopped by user.', file=sys.stderr)
            return EXIT_INTERRUPTED
        raise


def cmd_run(args: argparse.Namespace) -> int:
    cwd = os.path.abspath(args.dir)
    services = RunnerServices.for_workspace(cwd)

    async def _body(abort_signal: AbortSignal) -> int:
        coordinator = CoordinatorService(
            cwd,
            services,
            abort_signal=abort_signal,
            output_logger=lambda _name, chunk: _write_chunk(chunk),
        )
        result = await coordinator.parse_and_execute(args.script, engine=args.engine, model=args.model)
        if abort_signal.aborted:
            return EXIT_INTERRUPTED
        return EXIT_OK if result.success else 1

    return _run_interruptible(services, _body)


def cmd_step(args: argparse.Namespace) -> int:
    cwd = os.path.abspath(args.dir)
    services = RunnerServices.for_workspace(cwd)
    config = load_agent_config(args.agent_id, cwd)
    prompt = build_step_prompt(load_agent_template(args.agent_id, cwd), extra_prompt=args.prompt or None)

    async def _body(abort_signal: AbortSignal) -> int:
        print(RULE)
        print(format_agent_log(args.agent_id, f"{config.name or config.id} started to work."))
        await execute_agent(
            args.agent_id,
            prompt,
            services=services,
            working_dir=cwd,
            agent_config=config,
            engine=args.engine,
            model=args.model,
            model_reasoning_effort=args.reasoning,
            on_stdout=_write_chunk,
            on_stderr=_write_chunk,
            abort_signal=abort_signal,
            display_prompt=args.prompt or f"{args.agent_id} (template only)",
        )
        print()
        print(format_agent_log(args.agent_id, f"{config.name or config.id} has completed their work."))
        print(RULE)
        return EXIT_OK

    return _run_interruptible(services, _body)


def cmd_workflow(args: argparse.Namespace) -> int:
    cwd = os.path.abspath(args.dir)
    services = RunnerServices.for_workspace(cwd)

    async def _body(abort_signal: AbortSignal) -> int:
        result = await run_workflow(
            cwd,
            args.template,
            services,
            abort_signal=abort_signal,
            engine=args.engine,
            stdout_logger=_write_chunk,
            stderr_logger=_write_chunk,
        )
        if result.stopped_at_checkpoint:
            print(f"\n⏸  Workflow paused at checkpoint: {result.checkpoint_reason}")
            print('   Run `codemachine workflow` again to resume.')
        else:
            print(f"\n✅ Workflow complete ({len(result.executed_steps)} step(s) executed)")
        return EXIT_OK

    return _run_interruptible(services, _body)


def _task_request(tasks_path: str, ready: List[Task]) -> str:
    listing = '\n'.join(f"- {t.id}: {t.name}" if t.name else f"- {t.id}" for t in ready)
    return (
        f"Complete the following tasks from {tasks_path}:\n{listing}\n\n"
        'Set "done": true on each task in that file once it is finished.'
    )


def cmd_retry(args: argparse.Namespace) -> int:
    cwd = os.path.abspath(args.dir)
    tasks_path = get_tasks_path(cwd)
    services = RunnerServices.for_workspace(cwd)
    config = load_agent_config(args.agent_id, cwd)
    template = load_agent_template(args.agent_id, cwd)

    async def _body(abort_signal: AbortSignal) -> int:
        async def _orchestrate(ready: List[Task]) -> None:
            request = _task_request(tasks_path, ready)
            print(RULE)
            print(format_agent_log(args.agent_id, f"{config.name or config.id} picked up {len(ready)} task(s)."))
            await execute_agent(
                args.agent_id,
                build_step_prompt(template, extra_prompt=request),
                services=services,
                working_dir=cwd,
                agent_config=config,
                engine=args.engine,
                on_stdout=_write_chunk,
                on_stderr=_write_chunk,
                abort_signal=abort_signal,
                display_prompt=f"Tasks: {', '.join(t.id for t in ready)}",
            )
            print()

        rounds = await retry_until_done(tasks_path, _orchestrate, max_rounds=args.max_rounds)
        print(f"\n✅ All tasks done ({rounds} round(s))")
        return EXIT_OK

    return _run_interruptible(services, _body)


def cmd_agents(args: argparse.Namespace) -> int:
    monitor = AgentMonitor.for_workspace(os.path.abspath(args.dir))
    if args.agents_command == 'logs':
        return show_agent_logs(monitor, args.agent_id, follow=args.follow)
    cleaned = monitor.cleanup_stale_agents()
    if cleaned:
        logger.info(f"Marked {cleaned} orphaned agent(s) as failed")
    list_agents(monitor)
    return EXIT_OK


# ============================================================================
# ENTRY POINT
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-d', '--dir', default=os.getcwd(), help='Workspace directory (default: current directory)')

    parser = argparse.ArgumentParser(
        prog='codemachine',
        description='Run and monitor coding agents',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    agents = subparsers.add_parser('agents', parents=[common], help='List agents as a tree')
    agents_sub = agents.add_subparsers(dest='agents_command')
    logs = agents_sub.add_parser('logs', help="Show an agent's log")
    logs.add_argument('agent_id', type=int)
    logs.add_argument('--follow', '-f', action='store_true', help='Keep streaming while the agent runs')

    run = subparsers.add_parser('run', parents=[common], help='Run an orchestration script')
    run.add_argument('script', help="e.g. \"planner 'plan it' && coder 'build it' & tester 'test it'\"")
    run.add_argument('--engine', help='Engine override for every agent')
    run.add_argument('--model', help='Model override for every agent')

    step = subparsers.add_parser('step', parents=[common], help='Run a single agent from the catalog')
    step.add_argument('agent_id')
    step.add_argument('prompt', nargs='?', default='', help='Appended as a [REQUEST] section')
    step.add_argument('--engine', help='Engine override')
    step.add_argument('--model', help='Model override')
    step.add_argument('--reasoning', choices=['low', 'medium', 'high'], help='Reasoning effort override')

    workflow = subparsers.add_parser('workflow', parents=[common], help='Run the workflow template (resumes)')
    workflow.add_argument('--template', help='Template path (default: the active template)')
    workflow.add_argument('--engine', help='Engine override for every step')

    retry = subparsers.add_parser('retry', parents=[common], help='Hand ready tasks from plan/tasks.json to an agent until all are done')
    retry.add_argument('agent_id', help='Catalog agent that works on the tasks')
    retry.add_argument('--engine', help='Engine override')
    retry.add_argument('--max-rounds', type=int, default=20, help='Give up after this many rounds (default: 20)')

    return parser


COMMANDS = {
    'agents': cmd_agents,
    'run': cmd_run,
    'step': cmd_step,
    'workflow': cmd_workflow,
    'retry': cmd_retry,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, dispatch the command and map failures to exit codes."""
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, stream=sys.stderr)
    args = build_parser().parse_args(argv)

    try:
        return COMMANDS[args.command](args)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except USER_FACING_ERRORS as e:
        _report_failure(e)
        return EXIT_CRASHED


if __name__ == '__main__':
    sys.exit(main())
