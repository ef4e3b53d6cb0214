from __future__ import annotations

"""Adapter kinds and the three capability interfaces."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional, Tuple

from nibble.engine.exceptions import InvalidAdapter

if TYPE_CHECKING:
    from nibble.core import Nibble
    from nibble.engine.channels import CancelToken, EventChannel
    from nibble.engine.context import ExecutionContext

logger = logging.getLogger(__name__)


class AdapterKind(str, Enum):
    AGENT = "Agent"
    OFF_CHAIN_CONNECTOR = "OffChainConnector"
    ON_CHAIN_CONNECTOR = "OnChainConnector"
    CONDITION = "Condition"
    EVALUATION = "Evaluation"
    FHE_GATE = "FHEGate"
    LISTENER = "Listener"


INVOCABLE_KINDS = frozenset(
    {AdapterKind.AGENT, AdapterKind.OFF_CHAIN_CONNECTOR, AdapterKind.ON_CHAIN_CONNECTOR}
)
GATING_KINDS = frozenset({AdapterKind.CONDITION, AdapterKind.EVALUATION, AdapterKind.FHE_GATE})
LINK_KINDS = GATING_KINDS | {AdapterKind.LISTENER}


@dataclass
class GateScope:
    """What a gate sees about the link it guards."""

    link_id: bytes
    previous: Any = None
    next_steps: List[str] = field(default_factory=list)


@dataclass(kw_only=True)
class Adapter:
    kind: ClassVar[AdapterKind]

    id: bytes
    name: str
    encrypted: bool = False

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise InvalidAdapter(f"{self.kind.value} name must not be empty")

    def references(self) -> List[Tuple[AdapterKind, bytes]]:
        """Other adapters this one needs at run time."""
        return []

    def describe(self) -> Dict[str, Any]:
        return {"id": self.id.hex(), "name": self.name, "kind": self.kind.value, "encrypted": self.encrypted}


class Invocable(Adapter):
    async def invoke(self, ctx: "ExecutionContext", input: Any, nibble: "Nibble") -> Any:
        raise NotImplementedError


class Gating(Adapter):
    async def check(self, ctx: "ExecutionContext", nibble: "Nibble", scope: GateScope) -> bool:
        raise NotImplementedError


class EventSource(Adapter):
    def spawn(
        self, sink: "EventChannel", cancel: "CancelToken", nibble: "Nibble"
    ) -> "asyncio.Task[int]":
        raise NotImplementedError


def flatten_input(input: Any) -> Dict[str, Any]:
    """
    Merge a node input into one flat mapping.

    Node inputs are `{predecessor_hex: output}`; dict outputs are merged in
    so their fields can be addressed directly, anything else stays under
    its predecessor key.
    """
    if not isinstance(input, dict):
        return {}
    merged: Dict[str, Any] = {}
    for key, value in input.items():
        if isinstance(value, dict):
            merged.update(value)
        else:
            merged[key] = value
    return merged


def render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def check_range(label: str, value: Optional[float], low: float, high: float) -> None:
    if value is not None and not low <= value <= high:
        raise InvalidAdapter(f"{label} must be within [{low}, {high}], got {value}")
