"""
codemachine core

Runs coding agents (external CLI tools) as monitored subprocesses.

Modules:
- process: Subprocess spawning with streaming, timeouts and cancellation
- locks: Advisory cross-process file locks (log files, monitoring database)
- monitor_db / monitor: Hierarchical agent registry in SQLite
- agent_logger: Per-agent append-only log files
- engines: Engine registry, CLI engine adapter and auth cache
- runner: Execute one agent with monitoring, logging and memory
- step_executor: Execute one workflow step
- loop: Behavior signals and loop/rewind decisions
- workflow: Template-driven workflow runner with resume
- orchestration: Ad-hoc `&` / `&&` agent scripts
- retry: Dependency-aware retry over tasks.json
- cleanup: Interrupt and crash handling
"""

from .process import (
    USER_INTERRUPTED,
    ProcessError,
    SpawnFailure,
    NonZeroExit,
    ProcessTimeout,
    ProcessAborted,
    AbortSignal,
    ProcessResult,
    spawn,
    kill_all_active_processes,
    get_active_process_count,
)

from .locks import (
    FileLock,
    LogLockService,
    RegistryLockService,
)

from .monitor_db import (
    AGENT_STATUSES,
    AGENT_TERMINAL_STATUSES,
    AgentRecord,
    Telemetry,
)

from .monitor import (
    AgentMonitor,
    AgentTreeNode,
    is_process_alive,
)

from .agent_logger import AgentLogger

from .memory import (
    MemoryEntry,
    MemoryStore,
)

from .engines import (
    EngineNotFoundError,
    EngineAuthError,
    Engine,
    EngineMetadata,
    EngineRunOptions,
    EngineRunResult,
    EngineDefinition,
    CliEngine,
    EngineRegistry,
    AuthCache,
    create_default_registry,
    resolve_engine,
    ensure_engine_auth,
)

from .templates import (
    TemplateError,
    LoopBehaviorConfig,
    TriggerBehaviorConfig,
    ModuleStep,
    UiStep,
    WorkflowTemplate,
    load_template,
)

from .tracking import (
    TrackingState,
    load_tracking,
    save_tracking,
)

from .agents_config import (
    AgentNotFoundError,
    AgentDefinition,
    load_agent_config,
    load_agent_template,
)

from .runner import (
    RunnerServices,
    AgentExecutionOutput,
    execute_agent,
)

from .step_executor import execute_step

from .loop import (
    BehaviorSignal,
    LoopDecision,
    LoopController,
    RunState,
    evaluate_loop_behavior,
)

from .workflow import (
    WorkflowRunner,
    WorkflowRunResult,
    run_workflow,
)

from .orchestration import (
    CommandSyntaxError,
    AgentCommand,
    CommandGroup,
    ExecutionPlan,
    AgentExecutionResult,
    OrchestrationResult,
    OrchestrationParser,
    OrchestrationExecutor,
    CoordinatorService,
)

from .retry import (
    Task,
    retry,
    retry_until_done,
)

from .cleanup import InterruptController

__version__ = '0.1.0'

__all__ = [
    # Process
    'USER_INTERRUPTED',
    'ProcessError',
    'SpawnFailure',
    'NonZeroExit',
    'ProcessTimeout',
    'ProcessAborted',
    'AbortSignal',
    'ProcessResult',
    'spawn',
    'kill_all_active_processes',
    'get_active_process_count',
    # Locks
    'FileLock',
    'LogLockService',
    'RegistryLockService',
    # Monitoring
    'AGENT_STATUSES',
    'AGENT_TERMINAL_STATUSES',
    'AgentRecord',
    'Telemetry',
    'AgentMonitor',
    'AgentTreeNode',
    'is_process_alive',
    'AgentLogger',
    # Memory
    'MemoryEntry',
    'MemoryStore',
    # Engines
    'EngineNotFoundError',
    'EngineAuthError',
    'Engine',
    'EngineMetadata',
    'EngineRunOptions',
    'EngineRunResult',
    'EngineDefinition',
    'CliEngine',
    'EngineRegistry',
    'AuthCache',
    'create_default_registry',
    'resolve_engine',
    'ensure_engine_auth',
    # Templates and tracking
    'TemplateError',
    'LoopBehaviorConfig',
    'TriggerBehaviorConfig',
    'ModuleStep',
    'UiStep',
    'WorkflowTemplate',
    'load_template',
    'TrackingState',
    'load_tracking',
    'save_tracking',
    # Agent catalog
    'AgentNotFoundError',
    'AgentDefinition',
    'load_agent_config',
    'load_agent_template',
    # Execution
    'RunnerServices',
    'AgentExecutionOutput',
    'execute_agent',
    'execute_step',
    'BehaviorSignal',
    'LoopDecision',
    'LoopController',
    'RunState',
    'evaluate_loop_behavior',
    'WorkflowRunner',
    'WorkflowRunResult',
    'run_workflow',
    # Orchestration
    'CommandSyntaxError',
    'AgentCommand',
    'CommandGroup',
    'ExecutionPlan',
    'AgentExecutionResult',
    'OrchestrationResult',
    'OrchestrationParser',
    'OrchestrationExecutor',
    'CoordinatorService',
    # Retry
    'Task',
    'retry',
    'retry_until_done',
    # Cleanup
    'InterruptController',
]
