from __future__ import annotations

"""Workflow execution engine with step logs, context diffs and listener supervision."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from nibble import config
from nibble.adapters.base import AdapterKind, GateScope
from nibble.engine.channels import CLOSED, CancelToken, EventChannel
from nibble.engine.context import ExecutionContext, compute_state_diff, node_key
from nibble.engine.exceptions import Cancelled, GateDenied, InvokeError, NibbleError
from nibble.engine.workflow import Workflow, WorkflowLink, WorkflowNode

if TYPE_CHECKING:
    from nibble.core import Nibble

logger = logging.getLogger(__name__)


class StepLog(BaseModel):
    timestamp: datetime
    node: str
    adapter: str
    trigger: str = "run"
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    state_diff: Dict[str, Any]
    duration_ms: float

    model_config = ConfigDict(from_attributes=True)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    GATE_DENIED = "gate_denied"
    CANCELLED = "cancelled"


@dataclass
class RunResult:
    run_id: str
    workflow_id: bytes
    status: RunStatus
    context: ExecutionContext
    log: List[StepLog] = field(default_factory=list)
    error: Optional[NibbleError] = None
    dependents: List["RunResult"] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass
class _ListenerTasks:
    producer: "asyncio.Task[int]"
    consumer: "asyncio.Task[None]"
    channel: EventChannel


@dataclass
class _ListenerGroup:
    cancel: CancelToken = field(default_factory=CancelToken)
    links: Dict[bytes, _ListenerTasks] = field(default_factory=dict)


class ExecutionEngine:
    """Runs workflows in topological order, gating every inbound link."""

    def __init__(self, join_timeout: float = 5.0, max_runs: int = config.MAX_RUNS) -> None:
        self.join_timeout = join_timeout
        self.max_runs = max_runs
        self._run_contexts: Dict[str, ExecutionContext] = {}
        self._run_workflows: Dict[str, str] = {}
        self._run_logs: Dict[str, List[StepLog]] = {}
        self._run_status: Dict[str, RunStatus] = {}
        self._run_errors: Dict[str, Optional[str]] = {}
        self._run_started_at: Dict[str, datetime] = {}
        self._run_finished_at: Dict[str, Optional[datetime]] = {}
        self._run_events: Dict[str, int] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._listeners: Dict[bytes, _ListenerGroup] = {}
        self._lock = Lock()

    # Runs -------------------------------------------------------------------

    def _prepare_run(
        self, workflow: Workflow, context: Optional[ExecutionContext], run_id: Optional[str]
    ) -> Tuple[ExecutionContext, str]:
        rid = run_id or str(uuid4())
        ctx = context or ExecutionContext()
        ctx.run_id = rid
        ctx.workflow_id = workflow.id.hex()
        with self._lock:
            self._run_contexts[rid] = ctx
            self._run_workflows[rid] = workflow.id.hex()
            self._run_logs[rid] = []
            self._run_status[rid] = RunStatus.RUNNING
            self._run_errors[rid] = None
            self._run_started_at[rid] = datetime.now(timezone.utc)
            self._run_finished_at[rid] = None
            self._run_events[rid] = 0
            self._subscribers.setdefault(rid, [])
            self._evict_finished_runs()
        return ctx, rid

    def _evict_finished_runs(self) -> None:
        """Drop the oldest finished runs beyond `max_runs`. Caller holds the lock."""
        excess = len(self._run_status) - self.max_runs
        if excess <= 0:
            return
        finished = [
            rid
            for rid, status in self._run_status.items()
            if status not in (RunStatus.PENDING, RunStatus.RUNNING)
        ]
        for rid in finished[:excess]:
            for store in (
                self._run_contexts,
                self._run_workflows,
                self._run_logs,
                self._run_status,
                self._run_errors,
                self._run_started_at,
                self._run_finished_at,
                self._run_events,
                self._subscribers,
            ):
                store.pop(rid, None)
        logger.debug("Evicted %d finished run(s)", min(excess, len(finished)))

    async def execute(
        self,
        workflow: Workflow,
        nibble: "Nibble",
        context: Optional[ExecutionContext] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """Execute every node once in dependency order. Failures are recorded, not raised."""
        ctx, rid = self._prepare_run(workflow, context, run_id)
        logger.info("Run %s started for workflow '%s'", rid, workflow.name)

        try:
            order = workflow.validate(nibble.registry)
        except NibbleError as exc:
            logger.warning("Run %s rejected: %s", rid, exc)
            return self._finish(rid, workflow, RunStatus.FAILED, exc)

        try:
            return await self._run_nodes(workflow, order, ctx, nibble, rid)
        except asyncio.CancelledError:
            self._finish(rid, workflow, RunStatus.CANCELLED, Cancelled(f"Run {rid} was cancelled"))
            raise

    async def _run_nodes(
        self,
        workflow: Workflow,
        order: List[bytes],
        ctx: ExecutionContext,
        nibble: "Nibble",
        rid: str,
    ) -> RunResult:
        for node_id in order:
            node = workflow.node(node_id)
            try:
                await self._open_links(workflow, node, ctx, nibble, rid)
            except GateDenied as exc:
                self._append_log(rid, node, "run", False, exc, {}, 0.0)
                return self._finish(rid, workflow, RunStatus.GATE_DENIED, exc)
            except Exception as exc:
                error = exc if isinstance(exc, NibbleError) else InvokeError(node.id, exc)
                logger.exception("Gate before node %s failed: %s", node.id.hex()[:12], exc)
                self._append_log(rid, node, "run", False, error, {}, 0.0)
                return self._finish(rid, workflow, RunStatus.FAILED, error)

            if workflow.is_event_driven(node_id):
                self._append_log(rid, node, "run", True, None, {}, 0.0, skipped=True)
                continue

            try:
                await self.execute_node(
                    workflow, node_id, self._gather_input(workflow, node_id, ctx), ctx, nibble, rid
                )
            except InvokeError as exc:
                return self._finish(rid, workflow, RunStatus.FAILED, exc)

        return self._finish(rid, workflow, RunStatus.COMPLETED, None)

    def reject(
        self,
        workflow: Workflow,
        error: NibbleError,
        context: Optional[ExecutionContext] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """Record a run that was refused before any node was touched."""
        _, rid = self._prepare_run(workflow, context, run_id)
        logger.warning("Run %s rejected: %s", rid, error)
        return self._finish(rid, workflow, RunStatus.FAILED, error)

    async def execute_node(
        self,
        workflow: Workflow,
        node_id: bytes,
        input: Any,
        ctx: ExecutionContext,
        nibble: "Nibble",
        run_id: Optional[str] = None,
        trigger: str = "run",
    ) -> Any:
        """Invoke a single node and store its output at `node:<hex>`."""
        node = workflow.node(node_id)
        adapter = nibble.registry.lookup(node.kind, node.adapter_id)
        before = ctx.snapshot()
        started_at = datetime.now(timezone.utc)
        try:
            output = await adapter.invoke(ctx, input, nibble)
            await ctx.set(node_key(node.id), output)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, InvokeError) else InvokeError(node.id, exc)
            duration_ms = (datetime.now(timezone.utc) - started_at).total_seconds() * 1000
            logger.exception("Node '%s' (%s) failed: %s", adapter.name, node.id.hex()[:12], exc)
            if run_id:
                self._append_log(run_id, node, trigger, False, error, {}, duration_ms)
            raise error from exc

        duration_ms = (datetime.now(timezone.utc) - started_at).total_seconds() * 1000
        if run_id:
            diff = compute_state_diff(before, ctx.snapshot())
            self._append_log(run_id, node, trigger, True, None, diff, duration_ms)
        return output

    def _gather_input(self, workflow: Workflow, node_id: bytes, ctx: ExecutionContext) -> Any:
        inputs = {
            pred.hex(): ctx.output_of(pred)
            for pred in workflow.predecessors(node_id)
            if ctx.has_output(pred)
        }
        return inputs or None

    def _next_steps(self, workflow: Workflow, node_id: bytes, nibble: "Nibble") -> List[str]:
        pending = {node_id} | workflow.descendants(node_id)
        steps = []
        for node in workflow.nodes:
            if node.id in pending:
                adapter = nibble.registry.lookup(node.kind, node.adapter_id)
                steps.append(f"{adapter.name} ({node.kind.value})")
        return steps

    async def _open_links(
        self,
        workflow: Workflow,
        node: WorkflowNode,
        ctx: ExecutionContext,
        nibble: "Nibble",
        run_id: str,
    ) -> None:
        """Spawn inbound listeners and check inbound gates, in link order."""
        for link in workflow.inbound_links(node.id):
            if link.is_listener:
                self._ensure_listener(workflow, link, ctx, nibble, run_id)
                continue
            gate = nibble.registry.lookup(link.kind, link.adapter_id)
            scope = GateScope(
                link_id=link.id,
                previous=ctx.output_of(link.from_node),
                next_steps=self._next_steps(workflow, node.id, nibble),
            )
            if not await gate.check(ctx, nibble, scope):
                raise GateDenied(link.id, f"{link.kind.value} '{gate.name}' returned false")

    # Listeners --------------------------------------------------------------

    def _ensure_listener(
        self,
        workflow: Workflow,
        link: WorkflowLink,
        ctx: ExecutionContext,
        nibble: "Nibble",
        run_id: str,
    ) -> None:
        with self._lock:
            group = self._listeners.setdefault(workflow.id, _ListenerGroup())
            if link.id in group.links:
                return
        listener = nibble.registry.lookup(AdapterKind.LISTENER, link.adapter_id)
        channel = EventChannel()
        producer = listener.spawn(channel, group.cancel, nibble)
        producer.add_done_callback(lambda task: self._on_listener_done(task, channel, link))
        consumer = asyncio.create_task(
            self._consume(workflow, link, channel, ctx, nibble, run_id),
            name=f"listener-sink-{link.id.hex()[:8]}",
        )
        with self._lock:
            group.links[link.id] = _ListenerTasks(producer=producer, consumer=consumer, channel=channel)
        logger.info(
            "Spawned listener '%s' on link %s -> node %s",
            listener.name,
            link.id.hex()[:12],
            link.to_node.hex()[:12],
        )

    @staticmethod
    def _on_listener_done(task: "asyncio.Task[int]", channel: EventChannel, link: WorkflowLink) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Listener on link %s crashed: %s", link.id.hex()[:12], task.exception())
        channel.close()

    async def _consume(
        self,
        workflow: Workflow,
        link: WorkflowLink,
        channel: EventChannel,
        ctx: ExecutionContext,
        nibble: "Nibble",
        run_id: str,
    ) -> None:
        while True:
            event = await channel.receive()
            if event is CLOSED:
                break
            with self._lock:
                if run_id in self._run_events:
                    self._run_events[run_id] += 1
            try:
                await self.execute_node(
                    workflow, link.to_node, event, ctx.clone(), nibble, run_id, trigger="listener"
                )
            except NibbleError as exc:
                logger.warning("Listener-triggered node %s failed: %s", link.to_node.hex()[:12], exc)

    def listener_count(self, workflow_id: bytes) -> int:
        with self._lock:
            group = self._listeners.get(workflow_id)
            return len(group.links) if group else 0

    async def stop_listeners(self, workflow_id: bytes) -> None:
        """Signal the workflow's cancel token and join its listener tasks."""
        with self._lock:
            group = self._listeners.pop(workflow_id, None)
        if group is None:
            return
        group.cancel.cancel()
        tasks: List[asyncio.Task] = []
        for entry in group.links.values():
            tasks.extend([entry.producer, entry.consumer])
        done, pending = await asyncio.wait(tasks, timeout=self.join_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info(
            "Stopped %d listener(s) for workflow %s", len(group.links), workflow_id.hex()[:12]
        )

    async def shutdown(self) -> None:
        with self._lock:
            workflow_ids = list(self._listeners)
        for workflow_id in workflow_ids:
            await self.stop_listeners(workflow_id)

    # Bookkeeping ------------------------------------------------------------

    def _finish(
        self,
        run_id: str,
        workflow: Workflow,
        status: RunStatus,
        error: Optional[NibbleError],
    ) -> RunResult:
        finished_at = datetime.now(timezone.utc)
        with self._lock:
            self._run_status[run_id] = status
            self._run_finished_at[run_id] = finished_at
            if error is not None:
                self._run_errors[run_id] = str(error)
            ctx = self._run_contexts[run_id]
            log = list(self._run_logs[run_id])
        logger.info("Run %s finished with status %s", run_id, status.value)
        self._broadcast(run_id, {"type": "status", "data": status.value, "state": ctx.snapshot()})
        self._broadcast(run_id, None)
        return RunResult(
            run_id=run_id, workflow_id=workflow.id, status=status, context=ctx, log=log, error=error
        )

    def _append_log(
        self,
        run_id: str,
        node: WorkflowNode,
        trigger: str,
        success: bool,
        error: Optional[BaseException],
        state_diff: Dict[str, Any],
        duration_ms: float,
        skipped: bool = False,
    ) -> None:
        error_type = None
        if error is not None:
            error_type = getattr(error, "kind", None) if isinstance(error, InvokeError) else type(error).__name__
        entry = StepLog(
            timestamp=datetime.now(timezone.utc),
            node=node.id.hex(),
            adapter=node.kind.value,
            trigger=trigger,
            success=success,
            skipped=skipped,
            error=str(error) if error is not None else None,
            error_type=error_type,
            state_diff=state_diff,
            duration_ms=duration_ms,
        )
        with self._lock:
            if run_id in self._run_logs:
                self._run_logs[run_id].append(entry)
        self._broadcast(run_id, {"type": "log", "data": entry.model_dump(mode="json")})

    def get_context(self, run_id: str) -> ExecutionContext:
        with self._lock:
            if run_id not in self._run_contexts:
                raise KeyError(f"Run '{run_id}' not found")
            return self._run_contexts[run_id]

    def get_timestamps(self, run_id: str) -> Tuple[Optional[datetime], Optional[datetime]]:
        with self._lock:
            if run_id not in self._run_contexts:
                raise KeyError(f"Run '{run_id}' not found")
            return self._run_started_at.get(run_id), self._run_finished_at.get(run_id)

    def get_log(self, run_id: str) -> List[StepLog]:
        with self._lock:
            return list(self._run_logs.get(run_id, []))

    def get_status(self, run_id: str) -> RunStatus:
        with self._lock:
            if run_id not in self._run_status:
                raise KeyError(f"Run '{run_id}' not found")
            return self._run_status[run_id]

    def get_run_error(self, run_id: str) -> Optional[str]:
        with self._lock:
            return self._run_errors.get(run_id)

    def get_listener_events(self, run_id: str) -> int:
        with self._lock:
            return self._run_events.get(run_id, 0)

    def list_runs(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            result: List[Dict[str, Any]] = []
            for run_id, status in list(self._run_status.items())[-limit:]:
                result.append(
                    {
                        "run_id": run_id,
                        "workflow_id": self._run_workflows.get(run_id),
                        "status": status.value,
                        "started_at": self._run_started_at.get(run_id),
                        "finished_at": self._run_finished_at.get(run_id),
                        "last_error": self._run_errors.get(run_id),
                    }
                )
            return result

    def subscribe(self, run_id: str) -> asyncio.Queue:
        """Subscribe to step and status events for a run."""
        with self._lock:
            if run_id not in self._run_logs:
                raise KeyError(f"Run '{run_id}' not found")
            queue: asyncio.Queue = asyncio.Queue()
            self._subscribers.setdefault(run_id, []).append(queue)
            return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            if run_id in self._subscribers:
                self._subscribers[run_id] = [q for q in self._subscribers[run_id] if q is not queue]
                if not self._subscribers[run_id]:
                    self._subscribers.pop(run_id, None)

    def _broadcast(self, run_id: str, event: Any) -> None:
        with self._lock:
            queues = list(self._subscribers.get(run_id, []))
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Subscriber queue full for run %s", run_id)
