"""
Test fixtures for codemachine.

Provides a scripted in-process engine and helpers that lay out a workspace
(agent catalog, prompt files, workflow templates, behavior signals).
"""

import json
import os
from typing import Callable, Dict, List, Optional

from codemachine.agent_logger import AgentLogger
from codemachine.config import get_agents_config_path, get_behavior_file, get_cm_root
from codemachine.engines import Engine, EngineMetadata, EngineRegistry, EngineRunOptions, EngineRunResult
from codemachine.locks import LogLockService
from codemachine.monitor import AgentMonitor
from codemachine.runner import RunnerServices


class FakeEngine(Engine):
    """
    Engine whose behavior is a Python callable instead of a subprocess.

    The handler receives the run options and returns the agent's stdout (or
    raises to simulate a failing agent). Output is streamed through
    on_data in one chunk, like a real engine would.
    """

    def __init__(
        self,
        handler: Optional[Callable[[EngineRunOptions], str]] = None,
        engine_id: str = 'fake',
        authenticated: bool = True,
        order: int = 0,
    ):
        self.metadata = EngineMetadata(id=engine_id, name=f"Fake {engine_id}", cli_binary=engine_id, order=order)
        self.handler = handler or (lambda options: 'ok\n')
        self.authenticated = authenticated
        self.calls: List[EngineRunOptions] = []
        self.auth_checks = 0

    async def is_authenticated(self) -> bool:
        self.auth_checks += 1
        return self.authenticated

    async def run(self, options: EngineRunOptions) -> EngineRunResult:
        self.calls.append(options)
        if options.abort_signal is not None:
            options.abort_signal.raise_if_aborted()
        output = self.handler(options)
        if output and options.on_data is not None:
            options.on_data(output)
        return EngineRunResult(stdout=output)

    @property
    def prompts(self) -> List[str]:
        return [c.prompt for c in self.calls]


def create_workspace(base_dir: str, agents: Dict[str, str]) -> str:
    """
    Create a workspace with an agent catalog.

    Args:
        base_dir: Workspace root
        agents: Agent id -> prompt template text (one prompt file per agent)

    Returns:
        The workspace path
    """
    prompts_dir = os.path.join(base_dir, 'prompts')
    os.makedirs(prompts_dir, exist_ok=True)
    catalog = []
    for agent_id, prompt in agents.items():
        with open(os.path.join(prompts_dir, f"{agent_id}.md"), 'w') as f:
            f.write(prompt)
        catalog.append({'id': agent_id, 'name': agent_id.capitalize(), 'promptPath': f"prompts/{agent_id}.md"})

    catalog_path = get_agents_config_path(base_dir)
    os.makedirs(os.path.dirname(catalog_path), exist_ok=True)
    with open(catalog_path, 'w') as f:
        json.dump(catalog, f, indent=2)
    return base_dir


def module_step(agent_id: str, **extra) -> dict:
    step = {
        'type': 'module',
        'agentId': agent_id,
        'agentName': agent_id.capitalize(),
        'promptPath': f"prompts/{agent_id}.md",
    }
    step.update(extra)
    return step


def write_template(base_dir: str, steps: List[dict], name: str = 'test') -> str:
    templates_dir = os.path.join(get_cm_root(base_dir), 'templates')
    os.makedirs(templates_dir, exist_ok=True)
    path = os.path.join(templates_dir, f"{name}.json")
    with open(path, 'w') as f:
        json.dump({'name': name, 'steps': steps}, f, indent=2)
    return path


def write_behavior(base_dir: str, action: str, **fields) -> None:
    """Write a behavior signal the way an agent would during its run."""
    path = get_behavior_file(base_dir)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(dict(action=action, **fields), f)


def make_services(base_dir: str, engine: Engine, monitoring: bool = True) -> RunnerServices:
    registry = EngineRegistry()
    registry.register(engine)
    return RunnerServices(
        engines=registry,
        monitor=AgentMonitor.for_workspace(base_dir) if monitoring else None,
        agent_logger=AgentLogger(LogLockService()) if monitoring else None,
    )
