from __future__ import annotations

"""Registries for adapters, predicates and result transforms."""

import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Set

from nibble.adapters.base import Adapter, AdapterKind
from nibble.engine.exceptions import InvalidAdapter, UnknownAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Catalog of adapters keyed by kind and id.

    `local` holds adapters created in this session, `saved` holds adapters
    hydrated from persisted state. Lookups consult local first.
    """

    def __init__(self) -> None:
        self._local: Dict[AdapterKind, Dict[bytes, Adapter]] = {kind: {} for kind in AdapterKind}
        self._saved: Dict[AdapterKind, Dict[bytes, Adapter]] = {kind: {} for kind in AdapterKind}
        self._retired: Set[bytes] = set()
        self._lock = Lock()

    def _kind_of(self, adapter_id: bytes) -> Optional[AdapterKind]:
        for kind in AdapterKind:
            if adapter_id in self._local[kind] or adapter_id in self._saved[kind]:
                return kind
        return None

    def add(self, adapter: Adapter) -> Adapter:
        adapter.validate()
        with self._lock:
            if self._kind_of(adapter.id) is not None:
                raise InvalidAdapter(f"Adapter id '{adapter.id.hex()}' is already in use")
            self._local[adapter.kind][adapter.id] = adapter
        logger.info("Registered %s '%s' (%s)", adapter.kind.value, adapter.name, adapter.id.hex()[:12])
        return adapter

    def hydrate(self, adapter: Adapter) -> Adapter:
        """Install an adapter restored from persisted state."""
        adapter.validate()
        with self._lock:
            self._saved[adapter.kind][adapter.id] = adapter
        return adapter

    def lookup(self, kind: AdapterKind, adapter_id: bytes) -> Adapter:
        with self._lock:
            adapter = self._local[kind].get(adapter_id) or self._saved[kind].get(adapter_id)
        if adapter is None:
            raise UnknownAdapter(kind.value, adapter_id)
        return adapter

    def find(self, adapter_id: bytes) -> Adapter:
        with self._lock:
            kind = self._kind_of(adapter_id)
        if kind is None:
            raise UnknownAdapter(None, adapter_id)
        return self.lookup(kind, adapter_id)

    def iter(self, kind: AdapterKind) -> List[Adapter]:
        """Live adapters of one kind; retired ones are hidden."""
        with self._lock:
            merged = {**self._saved[kind], **self._local[kind]}
            return [a for a in merged.values() if a.id not in self._retired]

    def all(self) -> List[Adapter]:
        adapters: List[Adapter] = []
        for kind in AdapterKind:
            adapters.extend(self.iter(kind))
        return adapters

    def retire(self, adapter_id: bytes) -> None:
        """Soft delete: the adapter keeps resolving for workflows that use it."""
        self.find(adapter_id)
        with self._lock:
            self._retired.add(adapter_id)
        logger.info("Retired adapter %s", adapter_id.hex()[:12])

    def is_retired(self, adapter_id: bytes) -> bool:
        with self._lock:
            return adapter_id in self._retired

    def discard(self, adapter_id: bytes) -> None:
        """Hard delete of a local adapter nothing persisted refers to."""
        with self._lock:
            kind = self._kind_of(adapter_id)
            if kind is None or adapter_id not in self._local[kind]:
                raise UnknownAdapter(kind.value if kind else None, adapter_id)
            del self._local[kind][adapter_id]

    def __contains__(self, adapter_id: object) -> bool:
        if not isinstance(adapter_id, bytes):
            return False
        with self._lock:
            return self._kind_of(adapter_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(self._local[k]) + len(self._saved[k]) for k in AdapterKind)


class FunctionRegistry:
    """Dictionary-backed table of named callables, filled via decorator."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._functions: Dict[str, Callable[..., Any]] = {}
        self._lock = Lock()

    def register(self, name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            with self._lock:
                self._functions[name] = func
            logger.debug("Registered %s '%s'", self.label, name)
            return func

        return decorator

    def get(self, name: str) -> Callable[..., Any]:
        if name not in self._functions:
            raise KeyError(f"{self.label.capitalize()} '{name}' is not registered")
        return self._functions[name]

    def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        return self.get(name)(*args, **kwargs)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def all(self) -> Dict[str, Callable[..., Any]]:
        return dict(self._functions)


predicate_registry = FunctionRegistry("predicate")
transform_registry = FunctionRegistry("transform")
