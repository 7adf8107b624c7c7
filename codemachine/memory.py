"""
Agent memory store.

Each agent's recent outputs are kept in .codemachine/memory/<agent>.json as a
JSON array of entries. Steps can fold an agent's memory back into the next
prompt, and triggered agents write to it without reading.
"""

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)


class MemoryEntry(BaseModel):
    """One remembered output of an agent."""
    agent_id: str
    content: str
    timestamp: str

    @field_validator('agent_id', 'content')
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError('must not be empty')
        return value

    @field_validator('timestamp')
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        datetime.fromisoformat(value)
        return value


def sanitize_agent_id(agent_id: str) -> str:
    return re.sub(r'[^A-Za-z0-9_-]+', '-', agent_id.lower())


class MemoryStore:
    """
    JSON-file backed memory, one file per agent.

    Usage:
        store = MemoryStore(get_memory_dir(cwd))
        store.append(MemoryEntry(agent_id='planner', content=out, timestamp=now))
        store.latest('planner')
    """

    def __init__(self, memory_dir: str):
        self.memory_dir = os.path.abspath(memory_dir)

    def _path(self, agent_id: str) -> str:
        return os.path.join(self.memory_dir, f"{sanitize_agent_id(agent_id)}.json")

    def _read(self, agent_id: str) -> List[MemoryEntry]:
        path = self._path(agent_id)
        if not os.path.exists(path):
            return []
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            return [MemoryEntry(**item) for item in raw]
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable memory file {path}: {e}")
            return []

    def append(self, entry: MemoryEntry) -> None:
        entries = self._read(entry.agent_id)
        entries.append(entry)
        os.makedirs(self.memory_dir, exist_ok=True)
        path = self._path(entry.agent_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.memory_dir, prefix='.memory-', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump([e.model_dump() for e in entries], f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def remember(self, agent_id: str, output: str, limit: int) -> Optional[MemoryEntry]:
        """Append the trailing `limit` characters of an agent's output; empty output is skipped."""
        content = output[-limit:]
        if not content.strip():
            return None
        entry = MemoryEntry(agent_id=agent_id, content=content, timestamp=datetime.now().isoformat())
        self.append(entry)
        return entry

    def list(self, agent_id: str) -> List[MemoryEntry]:
        return sorted(self._read(agent_id), key=lambda e: e.timestamp)

    def latest(self, agent_id: str) -> Optional[MemoryEntry]:
        entries = self.list(agent_id)
        return entries[-1] if entries else None

    def summary(self, agent_id: str, limit: int = 5) -> str:
        entries = self.list(agent_id)[-limit:]
        return '\n\n'.join(f"[{e.timestamp}]\n{e.content}" for e in entries)
