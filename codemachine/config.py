"""
Configuration Module for codemachine

Environment-driven settings and the on-disk layout of a workspace's
`.codemachine/` directory.
"""

import os
import logging

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

CM_DIRNAME = '.codemachine'

# CODEMACHINE_AGENT_TIMEOUT: per-step agent timeout in milliseconds (default 10 minutes)
DEFAULT_AGENT_TIMEOUT_MS = 600000

# Set on every spawned agent so nested `codemachine run` calls attach to their parent
PARENT_AGENT_ENV = 'CODEMACHINE_PARENT_AGENT_ID'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_LEVEL = os.getenv('CODEMACHINE_LOG_LEVEL', 'INFO').upper()

LOCK_STALE_MS = int(os.getenv('CODEMACHINE_LOCK_STALE_MS', '30000'))
AUTH_CACHE_TTL_SECONDS = float(os.getenv('CODEMACHINE_AUTH_CACHE_TTL', '300'))

# Trailing slice of agent output persisted to memory
MEMORY_SLICE_CHARS = 2000

# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    'CM_DIRNAME',
    'DEFAULT_AGENT_TIMEOUT_MS',
    'PARENT_AGENT_ENV',
    'LOG_FORMAT',
    'LOG_LEVEL',
    'LOCK_STALE_MS',
    'AUTH_CACHE_TTL_SECONDS',
    'MEMORY_SLICE_CHARS',
    'get_agent_timeout_ms',
    'get_parent_agent_id',
    'debug_loops_enabled',
    'get_cm_root',
    'get_logs_dir',
    'get_registry_db_path',
    'get_memory_dir',
    'get_behavior_file',
    'get_tracking_path',
    'get_agents_config_path',
    'get_engines_config_path',
    'get_tasks_path',
]


# ============================================================================
# RUNTIME LOOKUPS
# ============================================================================


def get_agent_timeout_ms() -> int:
    """Read CODEMACHINE_AGENT_TIMEOUT, falling back to the 10 minute default."""
    raw = os.getenv('CODEMACHINE_AGENT_TIMEOUT')
    if not raw:
        return DEFAULT_AGENT_TIMEOUT_MS
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid CODEMACHINE_AGENT_TIMEOUT={raw!r}")
        return DEFAULT_AGENT_TIMEOUT_MS


def get_parent_agent_id():
    """Return the parent agent id injected by a spawning agent, if any."""
    raw = os.getenv(PARENT_AGENT_ENV)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {PARENT_AGENT_ENV}={raw!r}")
        return None


def debug_loops_enabled() -> bool:
    return os.getenv('CODEMACHINE_DEBUG_LOOPS') == '1'


# ============================================================================
# WORKSPACE LAYOUT
# ============================================================================


def get_cm_root(cwd: str) -> str:
    return os.path.join(os.path.abspath(cwd), CM_DIRNAME)


def get_logs_dir(cwd: str) -> str:
    return os.path.join(get_cm_root(cwd), 'logs')


def get_registry_db_path(cwd: str) -> str:
    """Path to the shared monitoring database (created on demand)."""
    logs_dir = get_logs_dir(cwd)
    os.makedirs(logs_dir, exist_ok=True)
    return os.path.join(logs_dir, 'registry.db')


def get_memory_dir(cwd: str) -> str:
    return os.path.join(get_cm_root(cwd), 'memory')


def get_behavior_file(cwd: str) -> str:
    """Out-of-band signal file an agent writes to request loop/stop/trigger/checkpoint."""
    return os.path.join(get_memory_dir(cwd), 'behavior.json')


def get_tracking_path(cm_root: str) -> str:
    return os.path.join(cm_root, 'template.json')


def get_agents_config_path(cwd: str) -> str:
    return os.path.join(get_cm_root(cwd), 'agents', 'agents-config.json')


def get_engines_config_path(cwd: str) -> str:
    return os.path.join(get_cm_root(cwd), 'engines.json')


def get_tasks_path(cwd: str) -> str:
    return os.path.join(get_cm_root(cwd), 'plan', 'tasks.json')
