import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from nibble.engine.context import node_key
from nibble.main import app

OPENAI = {"provider": "OpenAI", "api_key": "sk-test", "model": "gpt-4o-mini"}
DATA_URL = "https://api.example.com/data"


@pytest.fixture
def client(nibble):
    original = app.state.nibble
    app.state.nibble = nibble
    with TestClient(app) as test_client:
        yield test_client
    app.state.nibble = original


@pytest.fixture
def linear(client, nibble, routes, open_gate):
    """Two-node workflow built through the API: fetch -> echo."""
    routes.add_json(DATA_URL, {"x": 1})
    fetch = nibble.add_off_chain_connector(name="fetch", url=DATA_URL)
    echo = nibble.add_agent(name="echo", llm=OPENAI, system_prompt="x={{x}}")

    workflow_id = client.post("/workflows", json={"name": "api-flow"}).json()["workflow_id"]
    first = client.post(f"/workflows/{workflow_id}/nodes", json={"adapter_id": fetch.id.hex()}).json()["id"]
    second = client.post(f"/workflows/{workflow_id}/nodes", json={"adapter_id": echo.id.hex()}).json()["id"]
    link = client.post(
        f"/workflows/{workflow_id}/links",
        json={"from_node": first, "to_node": second, "adapter_id": open_gate.id.hex()},
    )
    assert link.status_code == 200
    return workflow_id, first, second


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "nibble": "test-nibble"}


def test_workflow_create_and_run(client, linear):
    workflow_id, first, second = linear

    run_resp = client.post(f"/workflows/{workflow_id}/run", json={})
    assert run_resp.status_code == 200
    run = run_resp.json()
    assert run["status"] == "completed"
    assert run["error"] is None
    assert run["context"][f"node:{first}"] == {"x": 1}
    assert run["context"][f"node:{second}"] == "x=1"
    assert [entry["node"] for entry in run["execution_log"]] == [first, second]

    state_resp = client.get(f"/runs/{run['run_id']}")
    assert state_resp.status_code == 200
    state = state_resp.json()
    assert state["status"] == "completed"
    assert state["finished_at"] is not None
    assert len(state["execution_log"]) == 2

    runs = client.get("/runs").json()["runs"]
    assert [r["run_id"] for r in runs] == [run["run_id"]]


def test_workflow_detail(client, linear):
    workflow_id, first, second = linear

    detail = client.get(f"/workflows/{workflow_id}").json()

    assert detail["name"] == "api-flow"
    assert detail["node_count"] == 2 and detail["link_count"] == 1
    assert [n["id"] for n in detail["nodes"]] == [first, second]
    assert detail["links"][0]["adapter_type"] == "Condition"
    assert [w["workflow_id"] for w in client.get("/workflows").json()] == [workflow_id]


def test_run_reports_gate_denial(client, nibble, linear, closed_gate):
    workflow_id, first, second = linear
    client.post(
        f"/workflows/{workflow_id}/links",
        json={"from_node": first, "to_node": second, "adapter_id": closed_gate.id.hex()},
    )

    run = client.post(f"/workflows/{workflow_id}/run", json={}).json()

    assert run["status"] == "gate_denied"
    assert run["error_type"] == "GateDenied"
    assert f"node:{second}" not in run["context"]


def test_run_with_initial_context(client, nibble):
    echo = nibble.add_agent(name="echo", llm=OPENAI, system_prompt="hi {{who}}")
    workflow_id = client.post("/workflows", json={"name": "ctx"}).json()["workflow_id"]
    node = client.post(f"/workflows/{workflow_id}/nodes", json={"adapter_id": echo.id.hex()}).json()["id"]

    run = client.post(f"/workflows/{workflow_id}/run", json={"context": {"state:flag": True}}).json()

    assert run["context"]["state:flag"] is True
    assert run["context"][node_key(bytes.fromhex(node))] == "hi {{who}}"


def test_not_found_and_bad_requests(client, nibble, open_gate):
    missing = "00" * 32
    assert client.get(f"/workflows/{missing}").status_code == 404
    assert client.post(f"/workflows/{missing}/run", json={}).status_code == 404
    assert client.get("/workflows/not-hex").status_code == 400
    assert client.get("/runs/unknown").status_code == 404
    assert client.get(f"/adapters/{missing}").status_code == 404
    assert client.post("/workflows", json={"name": " "}).status_code == 400

    workflow_id = client.post("/workflows", json={"name": "w"}).json()["workflow_id"]
    unknown = client.post(f"/workflows/{workflow_id}/nodes", json={"adapter_id": missing})
    assert unknown.status_code == 404
    wrong_kind = client.post(f"/workflows/{workflow_id}/nodes", json={"adapter_id": open_gate.id.hex()})
    assert wrong_kind.status_code == 400
    self_dep = client.post(f"/workflows/{workflow_id}/dependencies", json={"dependent_id": workflow_id})
    assert self_dep.status_code == 400


def test_dependencies_run_after_parent(client, nibble):
    first = nibble.add_agent(name="first", llm=OPENAI, system_prompt="one")
    second = nibble.add_agent(name="second", llm=OPENAI, system_prompt="two")
    parent = client.post("/workflows", json={"name": "parent"}).json()["workflow_id"]
    child = client.post("/workflows", json={"name": "child"}).json()["workflow_id"]
    client.post(f"/workflows/{parent}/nodes", json={"adapter_id": first.id.hex()})
    client.post(f"/workflows/{child}/nodes", json={"adapter_id": second.id.hex()})

    summary = client.post(f"/workflows/{parent}/dependencies", json={"dependent_id": child})
    run = client.post(f"/workflows/{parent}/run", json={}).json()

    assert summary.status_code == 200
    assert [d["workflow_id"] for d in run["dependents"]] == [child]
    assert run["dependents"][0]["status"] == "completed"


def test_persist_and_remove(client, linear, registry_client):
    workflow_id, _, _ = linear

    persisted = client.post(f"/workflows/{workflow_id}/persist")
    assert persisted.status_code == 200
    assert persisted.json()["handle"].startswith("mem://")
    assert bytes.fromhex(workflow_id) in registry_client.workflows

    removed = client.delete(f"/workflows/{workflow_id}")
    assert removed.status_code == 200
    assert removed.json()["transaction_hash"].startswith("0x")
    assert client.get(f"/workflows/{workflow_id}").status_code == 404


def test_adapter_listing_and_removal(client, nibble, linear):
    spare = nibble.add_agent(name="spare", llm=OPENAI)

    names = {a["name"] for a in client.get("/adapters").json()}
    assert {"fetch", "echo", "always", "spare"} <= names
    assert client.get(f"/adapters/{spare.id.hex()}").json()["kind"] == "Agent"

    removed = client.delete(f"/adapters/{spare.id.hex()}")
    assert removed.json() == {"adapter_id": spare.id.hex(), "retired": False}
    assert client.delete(f"/adapters/{spare.id.hex()}").status_code == 404

    in_use = next(a for a in nibble.adapters() if a.name == "fetch")
    assert client.delete(f"/adapters/{in_use.id.hex()}").json()["retired"] is True


def test_stream_replays_finished_run(client, linear):
    workflow_id, _, _ = linear
    run_id = client.post(f"/workflows/{workflow_id}/run", json={}).json()["run_id"]

    with client.websocket_connect(f"/runs/{run_id}/stream") as websocket:
        events = [websocket.receive_json() for _ in range(3)]

    assert [e["type"] for e in events] == ["log", "log", "status"]
    assert events[-1]["data"] == "completed"


def test_stream_unknown_run(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/runs/unknown/stream") as websocket:
            websocket.receive_json()
