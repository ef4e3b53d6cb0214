from __future__ import annotations

"""In-memory catalog of workflows and the entry point for running them."""

import asyncio
import logging
from threading import Lock
from typing import TYPE_CHECKING, Dict, List, Optional

from nibble.engine.context import ExecutionContext
from nibble.engine.exceptions import CyclicWorkflow, NibbleError, UnknownWorkflow
from nibble.engine.executor import ExecutionEngine, RunResult
from nibble.engine.identity import generate_id
from nibble.engine.persistence import PersistenceGateway, PersistReceipt
from nibble.engine.workflow import Workflow

if TYPE_CHECKING:
    from nibble.core import Nibble

logger = logging.getLogger(__name__)


class WorkflowManager:
    def __init__(self, nibble: "Nibble", engine: Optional[ExecutionEngine] = None) -> None:
        self.nibble = nibble
        self.engine = engine or ExecutionEngine()
        self.gateway = PersistenceGateway(nibble.blob_store, nibble.registry_client, nibble.cipher)
        self._workflows: Dict[bytes, Workflow] = {}
        self._run_locks: Dict[bytes, asyncio.Lock] = {}
        self._lock = Lock()

    # Catalog ----------------------------------------------------------------

    def create(self, name: str, encrypted: bool = False) -> Workflow:
        if not name or not name.strip():
            raise ValueError("Workflow name must not be empty")
        owner = self.nibble.owner.principal
        workflow = Workflow(
            id=generate_id(owner),
            name=name,
            encrypted=encrypted,
            owner=owner,
            nibble_ref=self.nibble.ref(),
        )
        return self.register(workflow)

    def register(self, workflow: Workflow) -> Workflow:
        with self._lock:
            self._workflows[workflow.id] = workflow
        logger.info("Registered workflow '%s' (%s)", workflow.name, workflow.id.hex()[:12])
        return workflow

    def get(self, workflow_id: bytes) -> Workflow:
        with self._lock:
            if workflow_id not in self._workflows:
                raise UnknownWorkflow(workflow_id)
            return self._workflows[workflow_id]

    def list(self) -> List[Workflow]:
        with self._lock:
            return list(self._workflows.values())

    def _depends_on(self, start: bytes, target: bytes) -> bool:
        """True when `target` is reachable from `start` through dependent links."""
        seen = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            workflow = self._workflows.get(current)
            if workflow is not None:
                stack.extend(workflow.dependent_workflow_ids)
        return False

    def add_dependency(self, workflow_id: bytes, dependent_id: bytes) -> None:
        """Schedule `dependent_id` after every successful run of `workflow_id`."""
        workflow = self.get(workflow_id)
        self.get(dependent_id)
        if workflow_id == dependent_id:
            raise CyclicWorkflow(f"Workflow '{workflow.name}' cannot depend on itself")
        with self._lock:
            if self._depends_on(dependent_id, workflow_id):
                raise CyclicWorkflow(
                    f"Adding {dependent_id.hex()[:12]} after '{workflow.name}' would create a cycle"
                )
            if dependent_id not in workflow.dependent_workflow_ids:
                workflow.dependent_workflow_ids.append(dependent_id)

    def _check_dependents(self, workflow_id: bytes) -> None:
        """Walk every workflow reachable through dependent links and reject loops."""
        path = [workflow_id]
        pending = [iter(list(self.get(workflow_id).dependent_workflow_ids))]
        finished = set()
        while pending:
            dependent_id = next(pending[-1], None)
            if dependent_id is None:
                pending.pop()
                finished.add(path.pop())
                continue
            if dependent_id in path:
                raise CyclicWorkflow(
                    f"Workflow {dependent_id.hex()[:12]} is part of a dependency cycle"
                )
            dependent = self.get(dependent_id)
            if dependent_id not in finished:
                path.append(dependent_id)
                pending.append(iter(list(dependent.dependent_workflow_ids)))

    def validate(self, workflow_id: bytes) -> None:
        workflow = self.get(workflow_id)
        workflow.validate(self.nibble.registry)
        self._check_dependents(workflow_id)

    # Execution --------------------------------------------------------------

    def _run_lock(self, workflow_id: bytes) -> asyncio.Lock:
        with self._lock:
            return self._run_locks.setdefault(workflow_id, asyncio.Lock())

    async def execute(
        self,
        workflow_id: bytes,
        context: Optional[ExecutionContext] = None,
        *,
        serialize: bool = True,
    ) -> RunResult:
        """Run a workflow, then each dependent workflow once if it succeeded."""
        workflow = self.get(workflow_id)
        try:
            self.validate(workflow_id)
        except NibbleError as exc:
            return self.engine.reject(workflow, exc, context)

        if serialize:
            async with self._run_lock(workflow_id):
                result = await self.engine.execute(workflow, self.nibble, context)
        else:
            result = await self.engine.execute(workflow, self.nibble, context)

        if not result.ok:
            if workflow.dependent_workflow_ids:
                logger.info(
                    "Skipping %d dependent workflow(s) of '%s' after %s",
                    len(workflow.dependent_workflow_ids),
                    workflow.name,
                    result.status.value,
                )
            return result

        for dependent_id in list(workflow.dependent_workflow_ids):
            child = await self.execute(dependent_id, result.context.clone(), serialize=serialize)
            result.dependents.append(child)
        return result

    # Persistence ------------------------------------------------------------

    async def persist(self, workflow_id: bytes) -> PersistReceipt:
        self.validate(workflow_id)
        return await self.gateway.persist(self.get(workflow_id), self.nibble.owner)

    async def load(
        self, handle: str, *, workflow_id: bytes, name: str, encrypted: bool = False
    ) -> Workflow:
        """Hydrate a persisted workflow into the catalog."""
        workflow = await self.gateway.hydrate(
            handle,
            self.nibble.owner,
            workflow_id=workflow_id,
            name=name,
            encrypted=encrypted,
            nibble_ref=self.nibble.ref(),
        )
        return self.register(workflow)

    async def remove(self, workflow_id: bytes) -> str:
        """Stop listeners, retract the registry entry and drop the workflow."""
        workflow = self.get(workflow_id)
        await self.engine.stop_listeners(workflow_id)
        tx_hash = await self.gateway.remove(workflow)
        with self._lock:
            self._workflows.pop(workflow_id, None)
            self._run_locks.pop(workflow_id, None)
            for other in self._workflows.values():
                if workflow_id in other.dependent_workflow_ids:
                    other.dependent_workflow_ids.remove(workflow_id)
        return tx_hash

    async def shutdown(self) -> None:
        await self.engine.shutdown()
        logger.info("Workflow manager shut down")
