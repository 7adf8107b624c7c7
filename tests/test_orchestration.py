"""
Tests for orchestration.py: script parsing, prompt composition, plan
execution and the coordinator summary.
"""

import asyncio
import os
import shutil
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from codemachine.config import PARENT_AGENT_ENV
from codemachine.process import USER_INTERRUPTED, AbortSignal, ProcessAborted
from codemachine.orchestration import (
    AgentCommand,
    AgentExecutionResult,
    CommandSyntaxError,
    CoordinatorService,
    OrchestrationExecutor,
    OrchestrationParser,
    OrchestrationResult,
    build_composite_prompt,
    load_input_files,
    smart_split,
)

from fixtures import FakeEngine, create_workspace, make_services

AGENTS = {name: f"PROMPT:{name}" for name in ('frontend', 'backend', 'tests', 'docs')}


def _agent_of(prompt: str) -> str:
    for name in AGENTS:
        if f"PROMPT:{name}" in prompt:
            return name
    return '?'


def _failing(*names):
    def handler(options):
        agent = _agent_of(options.prompt)
        if agent in names:
            raise RuntimeError(f"{agent} exploded")
        return f"{agent} done\n"
    return handler


class TestOrchestrationParser:
    parser = OrchestrationParser()

    def test_sequential_groups(self):
        plan = self.parser.parse("frontend 'build ui' && backend 'build api'")

        assert [g.mode for g in plan.groups] == ['sequential', 'sequential']
        assert plan.groups[0].commands == [AgentCommand(name='frontend', prompt='build ui')]
        assert plan.groups[1].commands[0].prompt == 'build api'

    def test_parallel_group(self):
        plan = self.parser.parse("frontend 'a' & backend \"b\" & tests 'c'")

        assert len(plan.groups) == 1
        assert plan.groups[0].mode == 'parallel'
        assert [c.name for c in plan.groups[0].commands] == ['frontend', 'backend', 'tests']

    def test_mixed_script(self):
        plan = self.parser.parse("docs 'outline' && frontend 'x' & backend 'y' && tests 'z'")

        assert [(g.mode, len(g.commands)) for g in plan.groups] == [
            ('sequential', 1), ('parallel', 2), ('sequential', 1),
        ]

    def test_operators_inside_quotes_are_literal(self):
        plan = self.parser.parse("docs 'explain && and & operators' && tests 'run'")

        assert len(plan.groups) == 2
        assert plan.groups[0].commands[0].prompt == 'explain && and & operators'

    def test_unquoted_prompt(self):
        command = self.parser.parse_command('docs write the readme')

        assert command == AgentCommand(name='docs', prompt='write the readme')

    def test_enhanced_syntax(self):
        command = self.parser.parse_command(
            "tests[input:plan.md;notes.md,tail:50,retries:2] 'cover the parser'")

        assert command.name == 'tests'
        assert command.input == ['plan.md', 'notes.md']
        assert command.tail == 50
        assert command.options == {'retries': '2'}
        assert command.prompt == 'cover the parser'

    def test_enhanced_prompt_option_wins(self):
        command = self.parser.parse_command("docs[prompt:\"from option\"] 'trailing'")

        assert command.prompt == 'from option'

    def test_empty_brackets_run_template_only(self):
        command = self.parser.parse_command('docs[]')

        assert command == AgentCommand(name='docs')

    @pytest.mark.parametrize("script", ['', '   '])
    def test_empty_script(self, script):
        with pytest.raises(CommandSyntaxError, match='cannot be empty'):
            self.parser.parse(script)

    @pytest.mark.parametrize("script", ['docs', "docs 'x' && ", "docs 'x' & & tests 'y'"])
    def test_invalid_commands(self, script):
        with pytest.raises(CommandSyntaxError, match='Invalid command syntax'):
            self.parser.parse(script)

    def test_smart_split(self):
        assert smart_split("a 'x;y';b", ';') == ["a 'x;y'", 'b']


class TestPromptComposition:
    @pytest.fixture
    def temp_dir(self):
        temp_dir = tempfile.mkdtemp(prefix="test_orchestration_")
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    def test_load_input_files(self, temp_dir):
        with open(os.path.join(temp_dir, 'notes.md'), 'w') as f:
            f.write('remember the milk')

        content = load_input_files(['notes.md', 'missing.md'], temp_dir)

        assert '=== File: notes.md ===\nremember the milk\n' in content
        assert '=== File: missing.md (FAILED TO LOAD) ===\nError:' in content
        assert content.index('notes.md') < content.index('missing.md')

    def test_composite_prompt_sections(self):
        prompt = build_composite_prompt('FILES', 'TEMPLATE', 'REQUEST TEXT')

        assert prompt == '[INPUT FILES]\nFILES\n\n[SYSTEM]\nTEMPLATE\n\n[REQUEST]\nREQUEST TEXT'

    def test_composite_prompt_skips_empty_sections(self):
        assert build_composite_prompt('', 'TEMPLATE') == '[SYSTEM]\nTEMPLATE\n'
        assert build_composite_prompt('  ', '', 'only this') == '[REQUEST]\nonly this'


class TestOrchestrationExecutor:
    @pytest.fixture
    def workspace(self):
        temp_dir = tempfile.mkdtemp(prefix="test_orchestration_")
        create_workspace(temp_dir, AGENTS)
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    def _execute(self, workspace, engine, script, **kwargs):
        services = make_services(workspace, engine)
        executor = OrchestrationExecutor(workspace, services, **kwargs)
        result = asyncio.run(executor.execute(OrchestrationParser().parse(script)))
        return result, services

    def test_sequential_failure_stops_the_plan(self, workspace):
        engine = FakeEngine(_failing('backend'))

        result, services = self._execute(workspace, engine, "frontend 'a' && backend 'b' && tests 'c'")

        assert [r.name for r in result.results] == ['frontend', 'backend']
        assert [r.success for r in result.results] == [True, False]
        assert not result.success
        assert [_agent_of(p) for p in engine.prompts] == ['frontend', 'backend']
        failed = result.results[1]
        assert failed.error == 'backend exploded'
        assert services.monitor.get_agent(failed.agent_id).status == 'failed'

    def test_parallel_failures_are_isolated(self, workspace):
        engine = FakeEngine(_failing('backend'))

        result, _ = self._execute(workspace, engine, "frontend 'a' & backend 'b' & tests 'c' && docs 'd'")

        assert [r.name for r in result.results] == ['frontend', 'backend', 'tests', 'docs']
        assert [r.success for r in result.results] == [True, False, True, True]
        assert not result.success
        assert sorted(_agent_of(p) for p in engine.prompts) == ['backend', 'docs', 'frontend', 'tests']

    def test_results_carry_monitoring_ids(self, workspace):
        result, services = self._execute(workspace, FakeEngine(), "frontend 'a' & backend 'b'")

        assert result.success
        ids = [r.agent_id for r in result.results]
        assert len(set(ids)) == 2
        names = {services.monitor.get_agent(i).name for i in ids}
        assert names == {'frontend', 'backend'}

    def test_prompt_includes_inputs_template_and_request(self, workspace):
        with open(os.path.join(workspace, 'api.md'), 'w') as f:
            f.write('GET /users')
        engine = FakeEngine()

        self._execute(workspace, engine, "backend[input:api.md] 'implement it'")

        prompt = engine.prompts[0]
        assert prompt.startswith('[INPUT FILES]\n')
        assert '=== File: api.md ===\nGET /users' in prompt
        assert prompt.index('[SYSTEM]\nPROMPT:backend') < prompt.index('[REQUEST]\nimplement it')

    def test_tail_trims_output_and_suppresses_streaming(self, workspace):
        streamed = []
        engine = FakeEngine(lambda options: 'l1\nl2\nl3\nl4')

        result, _ = self._execute(
            workspace, engine, "docs[tail:2] 'x' && tests 'y'",
            output_logger=lambda name, chunk: streamed.append(name))

        docs, tests = result.results
        assert docs.output == 'l3\nl4'
        assert docs.tail_applied == 2
        assert tests.output == 'l1\nl2\nl3\nl4'
        assert tests.tail_applied is None
        assert streamed == ['tests']

    def test_short_output_is_not_marked_as_trimmed(self, workspace):
        result, _ = self._execute(workspace, FakeEngine(lambda options: 'one line'), "docs[tail:5] 'x'")

        assert result.results[0].output == 'one line'
        assert result.results[0].tail_applied is None

    def test_unknown_agent_becomes_failed_result(self, workspace):
        engine = FakeEngine()

        result, _ = self._execute(workspace, engine, "designer 'draw'")

        assert not result.success
        assert result.results[0].agent_id == 0
        assert 'designer' in result.results[0].error
        assert engine.calls == []

    def test_children_attach_to_parent(self, workspace):
        services = make_services(workspace, FakeEngine())
        parent = services.monitor.register(name='coordinator', prompt='coordinate')
        executor = OrchestrationExecutor(workspace, services, parent_id=parent)

        asyncio.run(executor.execute(OrchestrationParser().parse("frontend 'a' & backend 'b'")))

        assert sorted(a.name for a in services.monitor.get_children(parent)) == ['backend', 'frontend']

    def test_abort_skips_remaining_groups(self, workspace):
        abort_signal = AbortSignal()

        def handler(options):
            if _agent_of(options.prompt) == 'frontend':
                abort_signal.abort(USER_INTERRUPTED)
                raise ProcessAborted(USER_INTERRUPTED)
            return 'done\n'
        engine = FakeEngine(handler)

        result, services = self._execute(
            workspace, engine, "frontend 'a' & backend 'b' && tests 'c'", abort_signal=abort_signal)

        assert [r.name for r in result.results] == ['frontend', 'backend']
        assert not result.success
        assert services.monitor.query_agents(name='tests') == []
        assert 'tests' not in [_agent_of(p) for p in engine.prompts]

    def test_abort_stops_sequential_group(self, workspace):
        abort_signal = AbortSignal()
        abort_signal.abort(USER_INTERRUPTED)
        services = make_services(workspace, FakeEngine())
        executor = OrchestrationExecutor(workspace, services, abort_signal=abort_signal)

        results = asyncio.run(executor.execute_sequential([AgentCommand(name='docs', prompt='x')]))

        assert results == []
        assert services.monitor.get_all_agents() == []

    def test_failed_result_uses_its_own_monitoring_id(self, workspace):
        engine = FakeEngine()
        services = make_services(workspace, engine)
        other_parent = services.monitor.register(name='coordinator', prompt='elsewhere')

        def handler(options):
            # Another coordinator starts a same-named agent while this one runs
            services.monitor.register(name='docs', prompt='newer', parent_id=other_parent)
            raise RuntimeError('docs exploded')
        engine.handler = handler

        result = asyncio.run(OrchestrationExecutor(workspace, services).execute(OrchestrationParser().parse("docs 'x'")))

        record = services.monitor.get_agent(result.results[0].agent_id)
        assert record.parent_id is None
        assert record.status == 'failed'
        assert record.error == 'docs exploded'

    def test_standalone_id_recovery_ignores_other_parents(self, workspace):
        services = make_services(workspace, FakeEngine())
        root_docs = services.monitor.register(name='docs', prompt='standalone')
        parent = services.monitor.register(name='coordinator', prompt='elsewhere')
        services.monitor.register(name='docs', prompt='child', parent_id=parent)

        assert OrchestrationExecutor(workspace, services)._recover_agent_id('docs') == root_docs
        assert OrchestrationExecutor(workspace, services, parent_id=parent)._recover_agent_id('docs') > root_docs


class TestCoordinatorService:
    @pytest.fixture
    def workspace(self, monkeypatch):
        monkeypatch.delenv(PARENT_AGENT_ENV, raising=False)
        temp_dir = tempfile.mkdtemp(prefix="test_coordinator_")
        create_workspace(temp_dir, AGENTS)
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    def test_standalone_session(self, workspace):
        lines = []
        service = CoordinatorService(workspace, make_services(workspace, FakeEngine()), echo=lines.append)

        result = asyncio.run(service.parse_and_execute("docs 'write'"))

        assert result.parent_id is None
        assert lines[0] == 'Coordination running as standalone session'
        assert 'Succeeded: 1' in lines

    def test_parent_from_environment(self, workspace, monkeypatch):
        services = make_services(workspace, FakeEngine())
        parent = services.monitor.register(name='coordinator', prompt='coordinate')
        services.monitor.complete(parent)
        monkeypatch.setenv(PARENT_AGENT_ENV, str(parent))
        lines = []

        result = asyncio.run(CoordinatorService(workspace, services, echo=lines.append).parse_and_execute("docs 'x'"))

        assert result.parent_id == parent
        assert lines[0] == f"Coordination under parent agent ID: {parent}"
        assert services.monitor.get_agent(result.results[0].agent_id).parent_id == parent

    def test_parent_inferred_from_active_agents(self, workspace):
        services = make_services(workspace, FakeEngine())
        services.monitor.register(name='old', prompt='p')
        newest = services.monitor.register(name='new', prompt='p')

        assert CoordinatorService(workspace, services).resolve_parent_id() == newest

    def test_syntax_error_runs_nothing(self, workspace):
        engine = FakeEngine()
        service = CoordinatorService(workspace, make_services(workspace, engine), echo=lambda line: None)

        with pytest.raises(CommandSyntaxError):
            asyncio.run(service.parse_and_execute('docs'))
        assert engine.calls == []

    def test_print_summary(self, workspace):
        lines = []
        service = CoordinatorService(workspace, make_services(workspace, FakeEngine()), echo=lines.append)
        result = OrchestrationResult(parent_id=None, success=False, results=[
            AgentExecutionResult(name='docs', agent_id=3, success=True, prompt='p' * 100, input=['a.md', 'b.md'],
                                 tail_applied=10),
            AgentExecutionResult(name='tests', agent_id=4, success=False, error='boom'),
        ])

        service.print_summary(result)

        assert 'Total agents: 2' in lines
        assert 'Succeeded: 1' in lines
        assert 'Failed: 1' in lines
        assert '  1. docs - Completed (ID: 3)' in lines
        assert '     Input: a.md, b.md' in lines
        assert '     Prompt: ' + 'p' * 77 + '...' in lines
        assert '     (Output limited to last 10 lines)' in lines
        assert '  2. tests - Failed (ID: 4)' in lines
        assert '     Error: boom' in lines
        assert lines[-1] == 'List all agents: codemachine agents'
