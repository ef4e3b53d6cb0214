from __future__ import annotations

"""FastAPI routes for adapters, workflows, runs and persistence."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from nibble.core import Nibble
from nibble.engine.context import ExecutionContext
from nibble.engine.exceptions import NibbleError, PersistenceError
from nibble.engine.executor import RunResult, RunStatus
from nibble.engine.identity import from_hex
from nibble.engine.workflow import Workflow

router = APIRouter()


def get_nibble(request: Request) -> Nibble:
    return request.app.state.nibble


def _parse_id(value: str) -> bytes:
    try:
        return from_hex(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, KeyError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


class WorkflowCreateRequest(BaseModel):
    name: str
    encrypted: bool = False


class WorkflowCreateResponse(BaseModel):
    workflow_id: str


class NodeCreateRequest(BaseModel):
    adapter_id: str


class LinkCreateRequest(BaseModel):
    from_node: str
    to_node: str
    adapter_id: str


class DependencyRequest(BaseModel):
    dependent_id: str


class CreatedResponse(BaseModel):
    id: str


class WorkflowSummaryResponse(BaseModel):
    workflow_id: str
    name: str
    encrypted: bool
    node_count: int
    link_count: int
    handle: Optional[str] = None


class WorkflowDetailResponse(WorkflowSummaryResponse):
    nodes: List[Dict[str, Any]]
    links: List[Dict[str, Any]]
    dependent_workflow_ids: List[str]


class WorkflowRunRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    serialize: bool = True


class RunResponse(BaseModel):
    run_id: str
    workflow_id: str
    status: RunStatus
    context: Dict[str, Any]
    execution_log: List[Dict[str, Any]]
    error: Optional[str] = None
    error_type: Optional[str] = None
    dependents: List["RunResponse"] = Field(default_factory=list)


RunResponse.model_rebuild()


class RunStateResponse(BaseModel):
    run_id: str
    context: Dict[str, Any]
    execution_log: List[Dict[str, Any]]
    status: RunStatus
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None
    listener_events: int = 0


class RunSummaryResponse(BaseModel):
    run_id: str
    workflow_id: Optional[str]
    status: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None


class RunListResponse(BaseModel):
    runs: List[RunSummaryResponse]


class PersistResponse(BaseModel):
    workflow_id: str
    handle: str
    transaction_hash: str
    encrypted: bool


class RemoveResponse(BaseModel):
    transaction_hash: str


class AdapterRemoveResponse(BaseModel):
    adapter_id: str
    retired: bool


def _summary(workflow: Workflow) -> Dict[str, Any]:
    return {
        "workflow_id": workflow.id.hex(),
        "name": workflow.name,
        "encrypted": workflow.encrypted,
        "node_count": len(workflow.nodes),
        "link_count": len(workflow.links),
        "handle": workflow.handle,
    }


def _run_response(result: RunResult) -> RunResponse:
    return RunResponse(
        run_id=result.run_id,
        workflow_id=result.workflow_id.hex(),
        status=result.status,
        context=result.context.snapshot(),
        execution_log=[entry.model_dump(mode="json") for entry in result.log],
        error=str(result.error) if result.error else None,
        error_type=type(result.error).__name__ if result.error else None,
        dependents=[_run_response(child) for child in result.dependents],
    )


# Adapters -------------------------------------------------------------------


@router.get("/adapters", response_model=List[Dict[str, Any]])
def list_adapters(nibble: Nibble = Depends(get_nibble)) -> List[Dict[str, Any]]:
    """List live adapters of every kind."""
    return [adapter.describe() for adapter in nibble.adapters()]


@router.get("/adapters/{adapter_id}", response_model=Dict[str, Any])
def get_adapter(adapter_id: str, nibble: Nibble = Depends(get_nibble)) -> Dict[str, Any]:
    try:
        return nibble.registry.find(_parse_id(adapter_id)).describe()
    except KeyError as exc:
        raise _http_error(exc) from exc


@router.delete("/adapters/{adapter_id}", response_model=AdapterRemoveResponse)
def remove_adapter(adapter_id: str, nibble: Nibble = Depends(get_nibble)) -> AdapterRemoveResponse:
    """Delete an adapter, or retire it when a workflow still uses it."""
    try:
        retired = nibble.remove_adapter(_parse_id(adapter_id))
    except KeyError as exc:
        raise _http_error(exc) from exc
    return AdapterRemoveResponse(adapter_id=adapter_id, retired=retired)


# Workflows ------------------------------------------------------------------


@router.post("/workflows", response_model=WorkflowCreateResponse)
def create_workflow(
    payload: WorkflowCreateRequest, nibble: Nibble = Depends(get_nibble)
) -> WorkflowCreateResponse:
    try:
        workflow = nibble.workflows.create(payload.name, encrypted=payload.encrypted)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return WorkflowCreateResponse(workflow_id=workflow.id.hex())


@router.get("/workflows", response_model=List[WorkflowSummaryResponse])
def list_workflows(nibble: Nibble = Depends(get_nibble)) -> List[WorkflowSummaryResponse]:
    return [WorkflowSummaryResponse(**_summary(w)) for w in nibble.workflows.list()]


@router.get("/workflows/{workflow_id}", response_model=WorkflowDetailResponse)
def get_workflow(workflow_id: str, nibble: Nibble = Depends(get_nibble)) -> WorkflowDetailResponse:
    try:
        workflow = nibble.workflows.get(_parse_id(workflow_id))
    except KeyError as exc:
        raise _http_error(exc) from exc
    metadata = workflow.to_metadata()
    return WorkflowDetailResponse(
        **_summary(workflow),
        nodes=metadata["nodes"],
        links=metadata["links"],
        dependent_workflow_ids=[d.hex() for d in workflow.dependent_workflow_ids],
    )


@router.post("/workflows/{workflow_id}/nodes", response_model=CreatedResponse)
def add_node(
    workflow_id: str, payload: NodeCreateRequest, nibble: Nibble = Depends(get_nibble)
) -> CreatedResponse:
    try:
        workflow = nibble.workflows.get(_parse_id(workflow_id))
        node = workflow.add_node(nibble.registry, _parse_id(payload.adapter_id))
    except (KeyError, ValueError) as exc:
        raise _http_error(exc) from exc
    return CreatedResponse(id=node.id.hex())


@router.post("/workflows/{workflow_id}/links", response_model=CreatedResponse)
def add_link(
    workflow_id: str, payload: LinkCreateRequest, nibble: Nibble = Depends(get_nibble)
) -> CreatedResponse:
    try:
        workflow = nibble.workflows.get(_parse_id(workflow_id))
        link = workflow.add_link(
            nibble.registry,
            _parse_id(payload.from_node),
            _parse_id(payload.to_node),
            _parse_id(payload.adapter_id),
        )
    except (KeyError, ValueError) as exc:
        raise _http_error(exc) from exc
    return CreatedResponse(id=link.id.hex())


@router.post("/workflows/{workflow_id}/dependencies", response_model=WorkflowSummaryResponse)
def add_dependency(
    workflow_id: str, payload: DependencyRequest, nibble: Nibble = Depends(get_nibble)
) -> WorkflowSummaryResponse:
    try:
        parent = _parse_id(workflow_id)
        nibble.workflows.add_dependency(parent, _parse_id(payload.dependent_id))
        workflow = nibble.workflows.get(parent)
    except (KeyError, ValueError) as exc:
        raise _http_error(exc) from exc
    return WorkflowSummaryResponse(**_summary(workflow))


@router.post("/workflows/{workflow_id}/run", response_model=RunResponse)
async def run_workflow(
    workflow_id: str, payload: WorkflowRunRequest, nibble: Nibble = Depends(get_nibble)
) -> RunResponse:
    """Run a workflow to completion and return its context and step log."""
    try:
        result = await nibble.workflows.execute(
            _parse_id(workflow_id),
            ExecutionContext(data=payload.context),
            serialize=payload.serialize,
        )
    except KeyError as exc:
        raise _http_error(exc) from exc
    return _run_response(result)


@router.post("/workflows/{workflow_id}/persist", response_model=PersistResponse)
async def persist_workflow(workflow_id: str, nibble: Nibble = Depends(get_nibble)) -> PersistResponse:
    try:
        receipt = await nibble.workflows.persist(_parse_id(workflow_id))
    except (KeyError, ValueError, NibbleError) as exc:
        raise _http_error(exc) from exc
    return PersistResponse(
        workflow_id=receipt.workflow_id.hex(),
        handle=receipt.handle,
        transaction_hash=receipt.transaction_hash,
        encrypted=receipt.encrypted,
    )


@router.delete("/workflows/{workflow_id}", response_model=RemoveResponse)
async def remove_workflow(workflow_id: str, nibble: Nibble = Depends(get_nibble)) -> RemoveResponse:
    try:
        tx_hash = await nibble.workflows.remove(_parse_id(workflow_id))
    except (KeyError, NibbleError) as exc:
        raise _http_error(exc) from exc
    return RemoveResponse(transaction_hash=tx_hash)


# Runs -----------------------------------------------------------------------


@router.get("/runs", response_model=RunListResponse)
def list_runs(limit: int = 50, nibble: Nibble = Depends(get_nibble)) -> RunListResponse:
    engine = nibble.workflows.engine
    runs = [
        RunSummaryResponse(
            run_id=entry["run_id"],
            workflow_id=entry.get("workflow_id"),
            status=entry["status"],
            started_at=entry["started_at"].isoformat() if entry.get("started_at") else None,
            finished_at=entry["finished_at"].isoformat() if entry.get("finished_at") else None,
            last_error=entry.get("last_error"),
        )
        for entry in engine.list_runs(limit=limit)
    ]
    return RunListResponse(runs=runs)


@router.get("/runs/{run_id}", response_model=RunStateResponse)
def get_run(run_id: str, nibble: Nibble = Depends(get_nibble)) -> RunStateResponse:
    """Retrieve context, step log and status for a run."""
    engine = nibble.workflows.engine
    try:
        ctx = engine.get_context(run_id)
        status_value = engine.get_status(run_id)
        started_at, finished_at = engine.get_timestamps(run_id)
    except KeyError as exc:
        raise _http_error(exc) from exc
    return RunStateResponse(
        run_id=run_id,
        context=ctx.snapshot(),
        execution_log=[entry.model_dump(mode="json") for entry in engine.get_log(run_id)],
        status=status_value,
        started_at=started_at.isoformat() if started_at else None,
        finished_at=finished_at.isoformat() if finished_at else None,
        last_error=engine.get_run_error(run_id),
        listener_events=engine.get_listener_events(run_id),
    )


@router.websocket("/runs/{run_id}/stream")
async def stream_run(websocket: WebSocket, run_id: str) -> None:
    """Stream step and status events for a run."""
    engine = websocket.app.state.nibble.workflows.engine
    await websocket.accept()
    try:
        queue = engine.subscribe(run_id)
        for entry in engine.get_log(run_id):
            await websocket.send_json({"type": "log", "data": entry.model_dump(mode="json")})
        await websocket.send_json(
            {
                "type": "status",
                "data": engine.get_status(run_id).value,
                "state": engine.get_context(run_id).snapshot(),
            }
        )
    except KeyError:
        await websocket.close(code=4404, reason="Run not found")
        return

    try:
        if engine.get_timestamps(run_id)[1] is not None:
            return
        while True:
            event = await queue.get()
            if event is None:
                break
            await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    finally:
        engine.unsubscribe(run_id, queue)
        try:
            await websocket.close()
        except RuntimeError:
            pass
