from __future__ import annotations

"""Per-run key/value store threaded through node invocations."""

import asyncio
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

NODE_PREFIX = "node:"
STATE_PREFIX = "state:"
CONTEXT_PREFIX = "ctx:"


def node_key(node_id: bytes) -> str:
    return f"{NODE_PREFIX}{node_id.hex()}"


class ExecutionContext(BaseModel):
    """Shared mutable state for one run. Writes are serialized, reads see a snapshot."""

    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self.data = {**self.data, key: value}

    async def update(self, values: Dict[str, Any]) -> None:
        async with self._lock:
            self.data = {**self.data, **values}

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def output_of(self, node_id: bytes, default: Any = None) -> Any:
        return self.data.get(node_key(node_id), default)

    def has_output(self, node_id: bytes) -> bool:
        return node_key(node_id) in self.data

    def snapshot(self) -> Dict[str, Any]:
        return dict(self.data)

    def clone(self, **overrides: Any) -> "ExecutionContext":
        """Shallow copy with its own lock."""
        fields = {"run_id": self.run_id, "workflow_id": self.workflow_id, "data": dict(self.data)}
        fields.update(overrides)
        return ExecutionContext(**fields)


def compute_state_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compute a minimal diff between two context snapshots.
    """
    diff: Dict[str, Any] = {"added": {}, "updated": {}, "removed": []}

    for key, value in after.items():
        if key not in before:
            diff["added"][key] = value
        elif before[key] != value:
            diff["updated"][key] = {"from": before[key], "to": value}

    diff["removed"] = [key for key in before if key not in after]
    return diff
