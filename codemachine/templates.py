"""
Workflow template schema and loader.

Templates are JSON documents validated with pydantic; steps are either
executable `module` steps or display-only `ui` steps:

    {
      "name": "default",
      "steps": [
        {"type": "module", "agentId": "plan", "agentName": "Planner",
         "promptPath": "prompts/plan.md", "executeOnce": true},
        {"type": "ui", "text": "Review phase"},
        {"type": "module", "agentId": "review", "agentName": "Reviewer",
         "promptPath": "prompts/review.md",
         "module": {"id": "review-loop",
                    "behavior": {"type": "loop", "action": "stepBack",
                                 "steps": 1, "maxIterations": 3}}}
      ]
    }
"""

import json
import logging
import os
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import get_cm_root
from .tracking import get_active_template

logger = logging.getLogger(__name__)


class TemplateError(Exception):
    pass


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LoopBehaviorConfig(_Schema):
    type: Literal['loop'] = 'loop'
    action: Literal['stepBack'] = 'stepBack'
    steps: int = Field(gt=0)
    trigger: Optional[str] = None
    max_iterations: Optional[int] = Field(default=None, gt=0, alias='maxIterations')
    skip: List[str] = Field(default_factory=list)


class TriggerBehaviorConfig(_Schema):
    type: Literal['trigger'] = 'trigger'
    action: Literal['mainAgentCall'] = 'mainAgentCall'
    trigger_agent_id: Optional[str] = Field(default=None, alias='triggerAgentId')


ModuleBehavior = Union[LoopBehaviorConfig, TriggerBehaviorConfig]


class ModuleConfig(_Schema):
    id: Optional[str] = None
    behavior: Optional[ModuleBehavior] = None


class ModuleStep(_Schema):
    type: Literal['module'] = 'module'
    agent_id: str = Field(alias='agentId')
    agent_name: str = Field(alias='agentName')
    prompt_path: str = Field(alias='promptPath')
    model: Optional[str] = None
    model_reasoning_effort: Optional[Literal['low', 'medium', 'high']] = Field(default=None, alias='modelReasoningEffort')
    engine: Optional[str] = None
    execute_once: bool = Field(default=False, alias='executeOnce')
    not_completed_fallback: Optional[str] = Field(default=None, alias='notCompletedFallback')
    module: Optional[ModuleConfig] = None

    @property
    def module_id(self) -> str:
        """Identity used for loop counters and skip lists."""
        if self.module is not None and self.module.id:
            return self.module.id
        return self.agent_id

    @property
    def behavior(self) -> Optional[ModuleBehavior]:
        return self.module.behavior if self.module is not None else None


class UiStep(_Schema):
    type: Literal['ui']
    text: str


WorkflowStep = Union[ModuleStep, UiStep]


class WorkflowTemplate(_Schema):
    name: str
    steps: List[WorkflowStep] = Field(default_factory=list)

    @property
    def module_steps(self) -> List[ModuleStep]:
        return [s for s in self.steps if isinstance(s, ModuleStep)]


def parse_template(data: dict, source: str = '<template>') -> WorkflowTemplate:
    try:
        return WorkflowTemplate.model_validate(data)
    except ValidationError as e:
        raise TemplateError(f"Invalid workflow template {source}: {e}") from e


def load_template(path: str) -> WorkflowTemplate:
    """
    Load and validate a workflow template file.

    Raises:
        TemplateError: Missing file, invalid JSON or schema violation
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise TemplateError(f"Workflow template not found: {path}") from e
    except ValueError as e:
        raise TemplateError(f"Workflow template {path} is not valid JSON: {e}") from e
    return parse_template(data, source=path)


def resolve_template_path(cwd: str, template_path: Optional[str] = None) -> str:
    """
    Find the template to run: the explicit path, else the tracking file's active template.

    The active template may be a path relative to cwd or a name under
    .codemachine/templates/ (with or without the .json suffix).
    """
    if template_path:
        path = template_path if os.path.isabs(template_path) else os.path.join(cwd, template_path)
        if not os.path.exists(path):
            raise TemplateError(f"Workflow template not found: {path}")
        return os.path.abspath(path)

    active = get_active_template(get_cm_root(cwd))
    if not active:
        raise TemplateError('No workflow template specified and no active template recorded')

    templates_dir = os.path.join(get_cm_root(cwd), 'templates')
    candidates = [
        active if os.path.isabs(active) else os.path.join(cwd, active),
        os.path.join(templates_dir, active),
        os.path.join(templates_dir, f"{active}.json"),
    ]
    for candidate in candidates:
        if os.path.isfile(candidate):
            return os.path.abspath(candidate)
    raise TemplateError(f"Active template '{active}' could not be found")
