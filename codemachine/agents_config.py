"""
Agent catalog (.codemachine/agents/agents-config.json).

The catalog maps agent ids to their prompt template and preferred
engine/model. It is plain JSON validated with pydantic:

    [
      {"id": "planner", "name": "Planner", "promptPath": "prompts/planner.md",
       "engine": "claude", "model": "opus"}
    ]
"""

import json
import logging
import os
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import get_agents_config_path

logger = logging.getLogger(__name__)


class AgentNotFoundError(Exception):
    pass


class AgentDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    prompt_path: str = Field(alias='promptPath')
    model: Optional[str] = None
    model_reasoning_effort: Optional[Literal['low', 'medium', 'high']] = Field(default=None, alias='modelReasoningEffort')
    engine: Optional[str] = None


def load_agent_catalog(cwd: str) -> List[AgentDefinition]:
    """All catalog entries; a missing catalog is an empty one."""
    path = get_agents_config_path(cwd)
    if not os.path.exists(path):
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
        items = raw.get('agents', []) if isinstance(raw, dict) else raw
        return [AgentDefinition.model_validate(item) for item in items]
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Invalid agent catalog {path}: {e}")
        raise


def list_agents(cwd: str) -> List[AgentDefinition]:
    return load_agent_catalog(cwd)


def load_agent_config(agent_id: str, cwd: str) -> AgentDefinition:
    """
    Look up one agent.

    Raises:
        AgentNotFoundError: The id is not in the catalog
    """
    for agent in load_agent_catalog(cwd):
        if agent.id == agent_id:
            return agent
    raise AgentNotFoundError(f"Unknown agent id: {agent_id}")


def resolve_prompt_path(prompt_path: str, cwd: str) -> str:
    return prompt_path if os.path.isabs(prompt_path) else os.path.join(os.path.abspath(cwd), prompt_path)


def load_agent_template(agent_id: str, cwd: str) -> str:
    agent = load_agent_config(agent_id, cwd)
    with open(resolve_prompt_path(agent.prompt_path, cwd), 'r', encoding='utf-8') as f:
        return f.read()
