from __future__ import annotations

"""Workflow definitions: nodes, gated links and their validity rules."""

import heapq
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from nibble.adapters.base import INVOCABLE_KINDS, LINK_KINDS, Adapter, AdapterKind
from nibble.engine.exceptions import (
    CyclicWorkflow,
    DanglingReference,
    InvalidAdapter,
    PersistenceError,
    WrongCapability,
)
from nibble.engine.identity import from_hex, generate_id
from nibble.engine.registry import AdapterRegistry

logger = logging.getLogger(__name__)

# Node kinds are the invocable adapter kinds.
NodeKind = AdapterKind


def _resolve_references(registry: AdapterRegistry, adapter: Adapter) -> None:
    """Resolve every adapter reachable through `references()`, rejecting loops."""
    path = [adapter.id]
    pending = [iter(adapter.references())]
    resolved: Set[bytes] = set()
    while pending:
        step = next(pending[-1], None)
        if step is None:
            pending.pop()
            resolved.add(path.pop())
            continue
        kind, ref = step
        if ref in path:
            raise InvalidAdapter(
                f"References of '{adapter.name}' loop back through {ref.hex()[:12]}"
            )
        sub = registry.lookup(kind, ref)
        if ref not in resolved:
            path.append(ref)
            pending.append(iter(sub.references()))


@dataclass
class NibbleRef:
    """Lightweight pointer back to the owning Nibble."""

    name: str
    nibble_id: Optional[bytes] = None


@dataclass
class WorkflowNode:
    id: bytes
    adapter_id: bytes
    kind: AdapterKind


@dataclass
class WorkflowLink:
    id: bytes
    from_node: bytes
    to_node: bytes
    adapter_id: bytes
    kind: AdapterKind

    @property
    def is_listener(self) -> bool:
        return self.kind == AdapterKind.LISTENER


@dataclass
class Workflow:
    id: bytes
    name: str
    nodes: List[WorkflowNode] = field(default_factory=list)
    links: List[WorkflowLink] = field(default_factory=list)
    dependent_workflow_ids: List[bytes] = field(default_factory=list)
    encrypted: bool = False
    nibble_ref: Optional[NibbleRef] = None
    owner: bytes = b""
    handle: Optional[str] = None

    # Building ---------------------------------------------------------------

    def add_node(self, registry: AdapterRegistry, adapter_id: bytes) -> WorkflowNode:
        adapter = registry.find(adapter_id)
        if adapter.kind not in INVOCABLE_KINDS:
            raise WrongCapability(adapter_id, adapter.kind.value, "invocable")
        node = WorkflowNode(id=generate_id(self.owner), adapter_id=adapter_id, kind=adapter.kind)
        self.nodes.append(node)
        return node

    def add_link(
        self,
        registry: AdapterRegistry,
        from_node: bytes,
        to_node: bytes,
        adapter_id: bytes,
    ) -> WorkflowLink:
        self.node(from_node)
        self.node(to_node)
        adapter = registry.find(adapter_id)
        if adapter.kind not in LINK_KINDS:
            raise WrongCapability(adapter_id, adapter.kind.value, "gating or a listener")
        link = WorkflowLink(
            id=generate_id(self.owner),
            from_node=from_node,
            to_node=to_node,
            adapter_id=adapter_id,
            kind=adapter.kind,
        )
        self.links.append(link)
        return link

    def clear(self) -> None:
        """Empty the graph and take a fresh identity."""
        self.nodes = []
        self.links = []
        self.handle = None
        self.id = generate_id(self.owner)

    # Queries ----------------------------------------------------------------

    def node(self, node_id: bytes) -> WorkflowNode:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise DanglingReference(f"Node '{node_id.hex()}' is not part of workflow '{self.name}'")

    def _dependency_links(self) -> Iterable[WorkflowLink]:
        return (link for link in self.links if not link.is_listener)

    def inbound_links(self, node_id: bytes) -> List[WorkflowLink]:
        return [link for link in self.links if link.to_node == node_id]

    def predecessors(self, node_id: bytes) -> List[bytes]:
        seen: List[bytes] = []
        for link in self._dependency_links():
            if link.to_node == node_id and link.from_node not in seen:
                seen.append(link.from_node)
        return seen

    def successors(self, node_id: bytes) -> List[bytes]:
        seen: List[bytes] = []
        for link in self._dependency_links():
            if link.from_node == node_id and link.to_node not in seen:
                seen.append(link.to_node)
        return seen

    def descendants(self, node_id: bytes) -> Set[bytes]:
        found: Set[bytes] = set()
        stack = list(self.successors(node_id))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self.successors(current))
        return found

    def is_event_driven(self, node_id: bytes) -> bool:
        """True when the node is only reached through listener links."""
        inbound = self.inbound_links(node_id)
        return bool(inbound) and all(link.is_listener for link in inbound)

    def uses_adapter(self, adapter_id: bytes) -> bool:
        return any(n.adapter_id == adapter_id for n in self.nodes) or any(
            l.adapter_id == adapter_id for l in self.links
        )

    # Validation -------------------------------------------------------------

    def topological_order(self) -> List[bytes]:
        """Kahn's algorithm over non-listener links; ties go to the earlier-added node."""
        position = {node.id: index for index, node in enumerate(self.nodes)}
        indegree = {node.id: 0 for node in self.nodes}
        edges: Dict[bytes, List[bytes]] = {node.id: [] for node in self.nodes}
        for link in self._dependency_links():
            if link.from_node not in position or link.to_node not in position:
                raise DanglingReference(f"Link '{link.id.hex()}' points outside the workflow")
            edges[link.from_node].append(link.to_node)
            indegree[link.to_node] += 1

        ready = [position[node_id] for node_id, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[bytes] = []
        while ready:
            node_id = self.nodes[heapq.heappop(ready)].id
            order.append(node_id)
            for target in edges[node_id]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    heapq.heappush(ready, position[target])

        if len(order) != len(self.nodes):
            stuck = [n.id.hex()[:12] for n in self.nodes if n.id not in order]
            raise CyclicWorkflow(f"Workflow '{self.name}' has a cycle through {', '.join(stuck)}")
        return order

    def validate(self, registry: AdapterRegistry) -> List[bytes]:
        """Check every structural invariant and return the execution order."""
        node_ids = {node.id for node in self.nodes}
        for link in self.links:
            for endpoint in (link.from_node, link.to_node):
                if endpoint not in node_ids:
                    raise DanglingReference(
                        f"Link '{link.id.hex()}' references unknown node '{endpoint.hex()}'"
                    )

        for node in self.nodes:
            adapter = registry.find(node.adapter_id)
            if adapter.kind not in INVOCABLE_KINDS or adapter.kind != node.kind:
                raise WrongCapability(node.adapter_id, adapter.kind.value, "invocable")
            _resolve_references(registry, adapter)

        for link in self.links:
            adapter = registry.find(link.adapter_id)
            if adapter.kind not in LINK_KINDS or adapter.kind != link.kind:
                raise WrongCapability(link.adapter_id, adapter.kind.value, "gating or a listener")
            _resolve_references(registry, adapter)

        if self.id in self.dependent_workflow_ids:
            raise CyclicWorkflow(f"Workflow '{self.name}' depends on itself")

        return self.topological_order()

    # Metadata ---------------------------------------------------------------

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "nodes": [
                {"id": n.id.hex(), "adapter_type": n.kind.value, "adapter_id": n.adapter_id.hex()}
                for n in self.nodes
            ],
            "links": [
                {
                    "id": l.id.hex(),
                    "from_node": l.from_node.hex(),
                    "to_node": l.to_node.hex(),
                    "adapter_id": l.adapter_id.hex(),
                    "adapter_type": l.kind.value,
                }
                for l in self.links
            ],
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_metadata(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_metadata(
        cls,
        metadata: Dict[str, Any],
        *,
        workflow_id: bytes,
        name: str,
        encrypted: bool = False,
        owner: bytes = b"",
        nibble_ref: Optional[NibbleRef] = None,
    ) -> "Workflow":
        try:
            nodes = [
                WorkflowNode(
                    id=from_hex(entry["id"]),
                    adapter_id=from_hex(entry["adapter_id"]),
                    kind=AdapterKind(entry["adapter_type"]),
                )
                for entry in metadata.get("nodes", [])
            ]
            links = [
                WorkflowLink(
                    id=from_hex(entry["id"]),
                    from_node=from_hex(entry["from_node"]),
                    to_node=from_hex(entry["to_node"]),
                    adapter_id=from_hex(entry["adapter_id"]),
                    kind=AdapterKind(entry["adapter_type"]),
                )
                for entry in metadata.get("links", [])
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Malformed workflow metadata: {exc}") from exc

        if any(node.kind not in INVOCABLE_KINDS for node in nodes):
            raise PersistenceError("Workflow metadata lists a node with a non-invocable adapter type")
        if any(link.kind not in LINK_KINDS for link in links):
            raise PersistenceError("Workflow metadata lists a link with an unsupported adapter type")

        return cls(
            id=workflow_id,
            name=name,
            nodes=nodes,
            links=links,
            encrypted=encrypted,
            owner=owner,
            nibble_ref=nibble_ref,
        )

    @classmethod
    def from_json(cls, payload: bytes, **kwargs: Any) -> "Workflow":
        try:
            metadata = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise PersistenceError("Workflow metadata is not valid JSON") from exc
        if not isinstance(metadata, dict):
            raise PersistenceError("Workflow metadata must be a JSON object")
        return cls.from_metadata(metadata, **kwargs)
