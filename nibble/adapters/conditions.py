from __future__ import annotations

"""Conditions: probe a value, then run a predicate over it."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

from nibble.adapters.base import AdapterKind, Gating, GateScope
from nibble.adapters.connectors import send_http
from nibble.engine.context import CONTEXT_PREFIX, STATE_PREFIX
from nibble.engine.exceptions import ChainError, InvalidAdapter, UnknownAdapter
from nibble.engine.predicates import apply_predicate, is_safe_expression
from nibble.engine.registry import predicate_registry

if TYPE_CHECKING:
    from nibble.core import Nibble
    from nibble.engine.context import ExecutionContext

logger = logging.getLogger(__name__)


class TimeComparison(str, Enum):
    BEFORE = "Before"
    AFTER = "After"


class LogicalOperator(str, Enum):
    AND = "And"
    OR = "Or"
    NOT = "Not"


@dataclass
class OnChainProbe:
    address: str
    function_signature: str
    args: List[Any] = field(default_factory=list)
    return_type: Optional[str] = None


@dataclass
class OffChainProbe:
    url: str
    params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None


@dataclass
class InternalStateProbe:
    field: str


@dataclass
class ContextProbe:
    """Reads `key` from the run context; without a key, the previous node's output."""

    key: Optional[str] = None


@dataclass
class TimeProbe:
    time: time
    comparison: TimeComparison = TimeComparison.AFTER


@dataclass
class CompositeProbe:
    operator: LogicalOperator
    condition_ids: List[bytes] = field(default_factory=list)


ConditionKind = Union[
    OnChainProbe, OffChainProbe, InternalStateProbe, ContextProbe, TimeProbe, CompositeProbe
]


@dataclass(kw_only=True)
class Condition(Gating):
    kind = AdapterKind.CONDITION

    probe: ConditionKind
    predicate: Optional[str] = None
    expression: Optional[str] = None
    expected: Any = None

    def validate(self) -> None:
        super().validate()
        if self.predicate and self.expression:
            raise InvalidAdapter("Use either a registered predicate or an expression, not both")
        if self.predicate and self.predicate not in predicate_registry:
            raise InvalidAdapter(f"Predicate '{self.predicate}' is not registered")
        if self.expression and not is_safe_expression(self.expression):
            raise InvalidAdapter(f"Expression '{self.expression}' is not allowed")
        if isinstance(self.probe, CompositeProbe):
            if not self.probe.condition_ids:
                raise InvalidAdapter("Composite condition needs at least one sub-condition")
            if self.probe.operator == LogicalOperator.NOT and len(self.probe.condition_ids) != 1:
                raise InvalidAdapter("Not operator must have exactly one sub-condition")
            if self.id in self.probe.condition_ids:
                raise InvalidAdapter("Composite condition cannot contain itself")

    def references(self) -> List[Tuple[AdapterKind, bytes]]:
        if isinstance(self.probe, CompositeProbe):
            return [(AdapterKind.CONDITION, cid) for cid in self.probe.condition_ids]
        return []

    async def probe_value(self, ctx: "ExecutionContext", nibble: "Nibble", scope: GateScope) -> Any:
        probe = self.probe
        if isinstance(probe, OnChainProbe):
            try:
                return await nibble.contracts.call(
                    probe.address, probe.function_signature, probe.args, probe.return_type
                )
            except ChainError:
                raise
            except Exception as exc:
                raise ChainError(f"Call to {probe.function_signature} failed: {exc}") from exc
        if isinstance(probe, OffChainProbe):
            response = await send_http(
                nibble.http, "GET", probe.url, params=probe.params, headers=probe.headers
            )
            try:
                return response.json()
            except ValueError:
                return response.text
        if isinstance(probe, InternalStateProbe):
            return ctx.get(f"{STATE_PREFIX}{probe.field}")
        if isinstance(probe, ContextProbe):
            if probe.key is None:
                return scope.previous
            if probe.key in ctx:
                return ctx.get(probe.key)
            return ctx.get(f"{CONTEXT_PREFIX}{probe.key}")
        if isinstance(probe, TimeProbe):
            now = datetime.now().time()
            if probe.comparison == TimeComparison.BEFORE:
                return now < probe.time
            return now > probe.time
        raise InvalidAdapter(f"Unsupported probe {type(probe).__name__}")

    async def _check_composite(
        self, ctx: "ExecutionContext", nibble: "Nibble", scope: GateScope
    ) -> bool:
        probe = self.probe
        results: List[bool] = []
        for condition_id in probe.condition_ids:
            try:
                sub = nibble.registry.lookup(AdapterKind.CONDITION, condition_id)
            except UnknownAdapter:
                logger.warning("Composite '%s' references a missing condition", self.name)
                return False
            results.append(await sub.check(ctx, nibble, scope))
        if probe.operator == LogicalOperator.AND:
            return all(results)
        if probe.operator == LogicalOperator.OR:
            return any(results)
        return not results[0]

    async def check(self, ctx: "ExecutionContext", nibble: "Nibble", scope: GateScope) -> bool:
        if isinstance(self.probe, CompositeProbe):
            result = await self._check_composite(ctx, nibble, scope)
        else:
            value = await self.probe_value(ctx, nibble, scope)
            result = apply_predicate(self.predicate, self.expression, value, self.expected)
        logger.debug("Condition '%s' -> %s", self.name, result)
        return result

    def describe(self) -> Dict[str, Any]:
        summary = super().describe()
        summary.update({"probe": type(self.probe).__name__, "predicate": self.predicate or self.expression})
        return summary
