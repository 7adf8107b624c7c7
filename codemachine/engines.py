"""
Engine Module

Uniform adapter contract over vendor agent CLIs:
- Engine: abstract `run(options)` / `is_authenticated()` contract
- CliEngine: data-driven adapter (binary + argument template, prompt on stdin)
- EngineRegistry: explicit registry ordered by engine priority
- AuthCache: TTL cache in front of authentication probes
- resolve_engine / ensure_engine_auth: engine selection policy

Engine definitions are plain data (built-ins plus .codemachine/engines.json);
no user code is imported or executed.
"""

import json
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import AUTH_CACHE_TTL_SECONDS, get_engines_config_path
from .monitor_db import Telemetry
from .process import AbortSignal, NonZeroExit, spawn

logger = logging.getLogger(__name__)

__all__ = [
    'EngineMetadata',
    'EngineRunOptions',
    'EngineRunResult',
    'Engine',
    'EngineDefinition',
    'CliEngine',
    'EngineRegistry',
    'AuthCache',
    'EngineNotFoundError',
    'EngineAuthError',
    'BUILTIN_ENGINES',
    'parse_telemetry_line',
    'load_engine_definitions',
    'create_default_registry',
    'resolve_engine',
    'ensure_engine_auth',
]


class EngineNotFoundError(Exception):
    pass


class EngineAuthError(Exception):
    pass


# ============================================================================
# CONTRACT
# ============================================================================


@dataclass
class EngineMetadata:
    id: str
    name: str
    cli_binary: str
    install_command: str = ''
    default_model: Optional[str] = None
    default_model_reasoning_effort: Optional[str] = None
    order: int = 100


@dataclass
class EngineRunOptions:
    prompt: str
    working_dir: str
    model: Optional[str] = None
    model_reasoning_effort: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    on_data: Optional[Callable[[str], None]] = None
    on_error_data: Optional[Callable[[str], None]] = None
    on_telemetry: Optional[Callable[[Telemetry], None]] = None
    abort_signal: Optional[AbortSignal] = None
    timeout: Optional[int] = None


@dataclass
class EngineRunResult:
    stdout: str
    stderr: str = ''


class Engine(ABC):
    """An agent CLI adapter. Implementations must stream through on_data/on_error_data."""

    metadata: EngineMetadata

    @abstractmethod
    async def is_authenticated(self) -> bool:
        ...

    @abstractmethod
    async def run(self, options: EngineRunOptions) -> EngineRunResult:
        """Run the agent; raise on non-zero exit, abort or timeout."""
        ...


# ============================================================================
# DATA-DRIVEN CLI ENGINE
# ============================================================================


class EngineDefinition(BaseModel):
    """Engine definition as stored in engines.json (camelCase keys)."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    cli_binary: str = Field(alias='cliBinary')
    install_command: str = Field(default='', alias='installCommand')
    default_model: Optional[str] = Field(default=None, alias='defaultModel')
    default_model_reasoning_effort: Optional[str] = Field(default=None, alias='defaultModelReasoningEffort')
    order: int = 100
    args: List[str] = Field(default_factory=list)
    model_args: List[str] = Field(default_factory=list, alias='modelArgs')
    reasoning_args: List[str] = Field(default_factory=list, alias='reasoningArgs')
    auth_env: Optional[str] = Field(default=None, alias='authEnv')


BUILTIN_ENGINES: List[EngineDefinition] = [
    EngineDefinition(
        id='claude',
        name='Claude Code',
        cli_binary='claude',
        install_command='npm install -g @anthropic-ai/claude-code',
        default_model='sonnet',
        order=1,
        args=['--print', '--dangerously-skip-permissions'],
        model_args=['--model', '{model}'],
    ),
    EngineDefinition(
        id='cursor',
        name='Cursor Agent',
        cli_binary='cursor-agent',
        install_command='curl https://cursor.com/install -fsS | bash',
        default_model='auto',
        order=2,
        args=['-p', '--output-format', 'text'],
        model_args=['--model', '{model}'],
    ),
]


def parse_telemetry_line(line: str) -> Optional[Telemetry]:
    """
    Extract usage numbers from a JSON output line, if it carries any.

    Understands `{"usage": {...}, "total_cost_usd": ...}` result events as
    well as camelCase `{"usage": {"tokensIn": ..}}` payloads.
    """
    line = line.strip()
    if not line.startswith('{'):
        return None
    try:
        data = json.loads(line)
    except ValueError:
        return None
    usage = data.get('usage') if isinstance(data, dict) else None
    if not isinstance(usage, dict):
        return None

    def _pick(*keys):
        for key in keys:
            if usage.get(key) is not None:
                return usage[key]
        return None

    cache_read = _pick('cache_read_input_tokens', 'cacheReadTokens')
    cache_creation = _pick('cache_creation_input_tokens', 'cacheCreationTokens')
    cached = _pick('cached_input_tokens', 'cached')
    if cached is None and (cache_read is not None or cache_creation is not None):
        cached = (cache_read or 0) + (cache_creation or 0)
    cost = data.get('total_cost_usd', usage.get('cost'))
    return Telemetry(
        tokens_in=int(_pick('input_tokens', 'tokensIn') or 0),
        tokens_out=int(_pick('output_tokens', 'tokensOut') or 0),
        cached=cached,
        cost=cost,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
    )


class CliEngine(Engine):
    """Runs a vendor CLI with the prompt on stdin and streams its output."""

    def __init__(self, definition: EngineDefinition):
        self.definition = definition
        self.metadata = EngineMetadata(
            id=definition.id,
            name=definition.name,
            cli_binary=definition.cli_binary,
            install_command=definition.install_command,
            default_model=definition.default_model,
            default_model_reasoning_effort=definition.default_model_reasoning_effort,
            order=definition.order,
        )

    def build_args(self, model: Optional[str], reasoning_effort: Optional[str]) -> List[str]:
        args = list(self.definition.args)
        if model:
            args += [a.replace('{model}', model) for a in self.definition.model_args]
        if reasoning_effort:
            args += [a.replace('{reasoning_effort}', reasoning_effort) for a in self.definition.reasoning_args]
        return args

    async def is_authenticated(self) -> bool:
        if shutil.which(self.definition.cli_binary) is None:
            return False
        if self.definition.auth_env and not os.getenv(self.definition.auth_env):
            return False
        return True

    async def run(self, options: EngineRunOptions) -> EngineRunResult:
        pending = ['']

        def _on_stdout(chunk: str) -> None:
            if options.on_telemetry is not None:
                lines = (pending[0] + chunk).split('\n')
                pending[0] = lines.pop()
                for line in lines:
                    telemetry = parse_telemetry_line(line)
                    if telemetry is not None:
                        options.on_telemetry(telemetry)
            if options.on_data is not None:
                options.on_data(chunk)

        result = await spawn(
            self.definition.cli_binary,
            self.build_args(options.model, options.model_reasoning_effort),
            cwd=options.working_dir,
            env=options.env,
            stdin_input=options.prompt,
            on_stdout=_on_stdout,
            on_stderr=options.on_error_data,
            signal=options.abort_signal,
            timeout=options.timeout,
            install_hint=self.definition.install_command or None,
        )
        if options.on_telemetry is not None and pending[0]:
            telemetry = parse_telemetry_line(pending[0])
            if telemetry is not None:
                options.on_telemetry(telemetry)

        if result.exit_code != 0:
            raise NonZeroExit(self.definition.cli_binary, result.exit_code, result.stdout, result.stderr)
        return EngineRunResult(stdout=result.stdout, stderr=result.stderr)


# ============================================================================
# REGISTRY
# ============================================================================


class EngineRegistry:
    def __init__(self):
        self._engines: Dict[str, Engine] = {}

    def register(self, engine: Engine) -> None:
        if engine.metadata.id in self._engines:
            logger.debug(f"Replacing engine definition '{engine.metadata.id}'")
        self._engines[engine.metadata.id] = engine

    def get(self, engine_id: str) -> Optional[Engine]:
        return self._engines.get(engine_id)

    def get_all(self) -> List[Engine]:
        return sorted(self._engines.values(), key=lambda e: e.metadata.order)

    def get_all_ids(self) -> List[str]:
        return [e.metadata.id for e in self.get_all()]

    def get_default(self) -> Optional[Engine]:
        engines = self.get_all()
        return engines[0] if engines else None

    def clear(self) -> None:
        self._engines.clear()


def load_engine_definitions(path: str) -> List[EngineDefinition]:
    """Read extra/overriding engine definitions; a missing file yields none."""
    if not os.path.exists(path):
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
        items = raw.get('engines', []) if isinstance(raw, dict) else raw
        return [EngineDefinition.model_validate(item) for item in items]
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Invalid engine configuration {path}: {e}")
        raise


def create_default_registry(cwd: Optional[str] = None) -> EngineRegistry:
    registry = EngineRegistry()
    for definition in BUILTIN_ENGINES:
        registry.register(CliEngine(definition))
    if cwd is not None:
        for definition in load_engine_definitions(get_engines_config_path(cwd)):
            registry.register(CliEngine(definition))
    return registry


# ============================================================================
# AUTHENTICATION AND SELECTION
# ============================================================================


class AuthCache:
    """Caches authentication probes per engine id for `ttl` seconds."""

    def __init__(self, ttl: float = AUTH_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, tuple] = {}

    async def is_authenticated(self, engine: Engine) -> bool:
        now = self.clock()
        cached = self._entries.get(engine.metadata.id)
        if cached is not None and now - cached[1] < self.ttl:
            return cached[0]
        result = await engine.is_authenticated()
        self._entries[engine.metadata.id] = (result, now)
        return result

    def invalidate(self, engine_id: Optional[str] = None) -> None:
        if engine_id is None:
            self._entries.clear()
        else:
            self._entries.pop(engine_id, None)


async def _is_authenticated(engine: Engine, auth_cache: Optional[AuthCache]) -> bool:
    if auth_cache is not None:
        return await auth_cache.is_authenticated(engine)
    return await engine.is_authenticated()


async def resolve_engine(
    registry: EngineRegistry,
    override: Optional[str] = None,
    configured: Optional[str] = None,
    auth_cache: Optional[AuthCache] = None,
) -> Engine:
    """
    Pick the engine for a run.

    Order: authenticated explicit override > configured engine > first
    authenticated engine by order > registry default.

    Raises:
        EngineNotFoundError: Unknown engine id, or no engines registered
    """
    if override:
        engine = registry.get(override)
        if engine is None:
            raise EngineNotFoundError(
                f"Unknown engine type: {override}. Available engines: {', '.join(registry.get_all_ids())}"
            )
        if await _is_authenticated(engine, auth_cache):
            return engine
        logger.warning(
            f"{engine.metadata.name} override is not authenticated; "
            f"falling back to first authenticated engine by order"
        )
    elif configured:
        engine = registry.get(configured)
        if engine is None:
            raise EngineNotFoundError(
                f"Unknown engine type: {configured}. Available engines: {', '.join(registry.get_all_ids())}"
            )
        return engine

    for engine in registry.get_all():
        if await _is_authenticated(engine, auth_cache):
            return engine

    engine = registry.get_default()
    if engine is None:
        raise EngineNotFoundError('No engines registered. Please install at least one engine.')
    return engine


async def ensure_engine_auth(engine: Engine, auth_cache: Optional[AuthCache] = None) -> None:
    if not await _is_authenticated(engine, auth_cache):
        logger.error(
            f"{engine.metadata.name} authentication required. "
            f"Make sure '{engine.metadata.cli_binary}' is installed and logged in."
        )
        raise EngineAuthError(f"{engine.metadata.name} authentication required")
