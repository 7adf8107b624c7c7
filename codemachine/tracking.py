"""
Workflow step tracking (.codemachine/template.json).

The tracking file records which template is active and which step indices
completed or were started but never finished, so an interrupted run can
resume where it stopped:

    {
      "activeTemplate": "default.json",
      "lastUpdated": "2026-01-04T12:00:00",
      "completedSteps": [0, 1],
      "notCompletedSteps": [2],
      "resumeFromLastStep": true
    }

Writes go to a temp file in the same directory followed by os.replace, so the
file is valid JSON even if the process dies mid-write.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import get_tracking_path

logger = logging.getLogger(__name__)

__all__ = [
    'TrackingState',
    'load_tracking',
    'save_tracking',
    'get_completed_steps',
    'mark_step_completed',
    'clear_completed_steps',
    'get_not_completed_steps',
    'mark_step_started',
    'remove_from_not_completed',
    'clear_not_completed_steps',
    'get_resume_start_index',
    'get_active_template',
    'set_active_template',
    'has_template_changed',
]


def _now() -> str:
    return datetime.now().isoformat()


def _normalize(values: Iterable[int]) -> List[int]:
    return sorted(set(int(v) for v in values))


class TrackingState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active_template: str = Field(default='', alias='activeTemplate')
    last_updated: str = Field(default_factory=_now, alias='lastUpdated')
    completed_steps: List[int] = Field(default_factory=list, alias='completedSteps')
    not_completed_steps: List[int] = Field(default_factory=list, alias='notCompletedSteps')
    resume_from_last_step: bool = Field(default=True, alias='resumeFromLastStep')

    @field_validator('completed_steps', 'not_completed_steps')
    @classmethod
    def _dedup_sorted(cls, value: List[int]) -> List[int]:
        return _normalize(value)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


def resume_start_index(state: TrackingState) -> int:
    if state.resume_from_last_step and state.not_completed_steps:
        return min(state.not_completed_steps)
    return 0


# ============================================================================
# FILE ACCESS
# ============================================================================


def load_tracking(cm_root: str) -> TrackingState:
    """Read the tracking file; a missing or corrupt file yields the default state."""
    path = get_tracking_path(cm_root)
    if not os.path.exists(path):
        return TrackingState()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return TrackingState.model_validate(json.load(f))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning(f"Tracking file {path} is unreadable, starting fresh: {e}")
        return TrackingState()


def save_tracking(cm_root: str, state: TrackingState) -> None:
    os.makedirs(cm_root, exist_ok=True)
    path = get_tracking_path(cm_root)
    state.last_updated = _now()
    fd, tmp_path = tempfile.mkstemp(dir=cm_root, prefix='.template-', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(state.to_json(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _update(cm_root: str, mutate) -> TrackingState:
    state = load_tracking(cm_root)
    mutate(state)
    state.completed_steps = _normalize(state.completed_steps)
    state.not_completed_steps = _normalize(state.not_completed_steps)
    save_tracking(cm_root, state)
    return state


# ============================================================================
# COMPLETED STEPS
# ============================================================================


def get_completed_steps(cm_root: str) -> List[int]:
    return load_tracking(cm_root).completed_steps


def mark_step_completed(cm_root: str, index: int) -> None:
    def _mutate(state: TrackingState) -> None:
        state.completed_steps.append(index)
        state.not_completed_steps = [i for i in state.not_completed_steps if i != index]
    _update(cm_root, _mutate)


def clear_completed_steps(cm_root: str) -> None:
    _update(cm_root, lambda state: setattr(state, 'completed_steps', []))


# ============================================================================
# NOT COMPLETED (STARTED) STEPS
# ============================================================================


def get_not_completed_steps(cm_root: str) -> List[int]:
    return load_tracking(cm_root).not_completed_steps


def mark_step_started(cm_root: str, index: int) -> None:
    _update(cm_root, lambda state: state.not_completed_steps.append(index))


def remove_from_not_completed(cm_root: str, index: int) -> None:
    def _mutate(state: TrackingState) -> None:
        state.not_completed_steps = [i for i in state.not_completed_steps if i != index]
    _update(cm_root, _mutate)


def clear_not_completed_steps(cm_root: str) -> None:
    _update(cm_root, lambda state: setattr(state, 'not_completed_steps', []))


def get_resume_start_index(cm_root: str) -> int:
    """min(notCompletedSteps) when resuming is enabled and something was left unfinished, else 0."""
    return resume_start_index(load_tracking(cm_root))


# ============================================================================
# ACTIVE TEMPLATE
# ============================================================================


def get_active_template(cm_root: str) -> Optional[str]:
    active = load_tracking(cm_root).active_template
    return active or None


def has_template_changed(cm_root: str, template_name: str) -> bool:
    """True when no template is recorded yet or a different one is active."""
    active = get_active_template(cm_root)
    return active is None or active != template_name


def set_active_template(cm_root: str, template_name: str) -> None:
    """Record the active template; switching templates forgets step progress of the old one."""
    def _mutate(state: TrackingState) -> None:
        if state.active_template != template_name:
            if state.active_template:
                logger.info(f"Active template changed from {state.active_template} to {template_name}, resetting step tracking")
            state.completed_steps = []
            state.not_completed_steps = []
        state.active_template = template_name
    _update(cm_root, _mutate)
