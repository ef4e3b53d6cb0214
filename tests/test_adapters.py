import json

import httpx
import pytest

from nibble.adapters.agents import Agent, ContextParser
from nibble.adapters.base import AdapterKind
from nibble.adapters.connectors import GraphQLShape, RestShape, auth_headers
from nibble.engine.context import ExecutionContext
from nibble.engine.exceptions import (
    AdapterTimeout,
    ChainError,
    DecodeError,
    HttpError,
    InvalidAdapter,
    UnknownAdapter,
)
from nibble.engine.predicates import evaluate_expression, is_safe_expression
from nibble.engine.registry import AdapterRegistry, FunctionRegistry
from nibble.services.chain import GasPolicy

OPENAI = {"provider": "OpenAI", "api_key": "sk-test", "model": "gpt-4o-mini"}
API_URL = "https://api.example.com/items"


# Off-chain connectors -------------------------------------------------------


def test_rest_post_merges_payload_and_auth(nibble):
    connector = nibble.add_off_chain_connector(
        name="create",
        url=API_URL,
        method="post",
        auth={"access_token": "tok"},
        shape=RestShape(base_payload={"a": 1, "b": 0}),
    )

    method, kwargs = connector.build_request({"upstream": {"b": 2}})

    assert method == "POST"
    assert kwargs["headers"] == {"Authorization": "Bearer tok"}
    assert kwargs["json"] == {"a": 1, "b": 2}
    assert "params" not in kwargs


def test_rest_get_moves_payload_into_params(nibble):
    connector = nibble.add_off_chain_connector(
        name="search", url=API_URL, params={"q": "x"}, shape=RestShape(base_payload={"page": 1})
    )

    method, kwargs = connector.build_request(None)

    assert method == "GET"
    assert kwargs["params"] == {"q": "x", "page": 1}
    assert "json" not in kwargs


def test_graphql_is_always_posted(nibble):
    connector = nibble.add_off_chain_connector(
        name="gql",
        url=API_URL,
        shape=GraphQLShape(query="query($id: ID!) { item(id: $id) { name } }", variables={"id": 1}),
    )

    method, kwargs = connector.build_request({"upstream": {"limit": 5}})

    assert method == "POST"
    assert kwargs["json"]["variables"] == {"id": 1, "limit": 5}
    assert kwargs["json"]["query"].startswith("query(")


def test_auth_headers():
    assert auth_headers(None) == {}
    assert auth_headers({"api_key": "k"}) == {"x-api-key": "k"}
    assert auth_headers({"api_key": "k", "api_key_header": "X-Token"}) == {"X-Token": "k"}


@pytest.mark.asyncio
async def test_invoke_applies_transform(nibble, routes):
    routes.add_json(API_URL, [{"id": 1}, {"id": 2}])
    connector = nibble.add_off_chain_connector(
        name="list", url=API_URL, headers={"Accept": "application/json"}, transform="first"
    )

    assert await connector.invoke(ExecutionContext(), None, nibble) == {"id": 1}
    assert routes.requests[-1].headers["accept"] == "application/json"


@pytest.mark.asyncio
async def test_invoke_sends_json_body(nibble, routes):
    routes.add(API_URL, lambda request: httpx.Response(201, json=json.loads(request.content)))
    connector = nibble.add_off_chain_connector(name="echo", url=API_URL, method="PUT")

    assert await connector.invoke(ExecutionContext(), {"up": {"name": "n"}}, nibble) == {"name": "n"}


@pytest.mark.asyncio
async def test_invoke_error_mapping(nibble, routes):
    connector = nibble.add_off_chain_connector(name="c", url=API_URL)

    routes.add_text(API_URL, "<html>", status_code=200)
    with pytest.raises(DecodeError):
        await connector.invoke(ExecutionContext(), None, nibble)

    routes.add_text(API_URL, "nope", status_code=503)
    with pytest.raises(HttpError) as excinfo:
        await connector.invoke(ExecutionContext(), None, nibble)
    assert excinfo.value.status_code == 503

    def slow(request):
        raise httpx.ReadTimeout("slow", request=request)

    routes.add(API_URL, slow)
    with pytest.raises(AdapterTimeout):
        await connector.invoke(ExecutionContext(), None, nibble)


def test_connector_validation(nibble):
    with pytest.raises(InvalidAdapter):
        nibble.add_off_chain_connector(name="c", url=API_URL, method="FETCH")
    with pytest.raises(InvalidAdapter):
        nibble.add_off_chain_connector(name="c", url=API_URL, transform="missing")
    with pytest.raises(InvalidAdapter):
        nibble.add_off_chain_connector(name="c", url="")
    with pytest.raises(InvalidAdapter):
        nibble.add_off_chain_connector(name="c", url=API_URL, timeout=0)


# On-chain connectors --------------------------------------------------------


@pytest.mark.asyncio
async def test_on_chain_method_call(nibble, contracts):
    connector = nibble.add_on_chain_connector(
        name="mint", address="0xabc", abi=[{"name": "mint"}], method_name="mint", args=[1], chain_id=1
    )

    first = await connector.invoke(ExecutionContext(), None, nibble)
    second = await connector.invoke(ExecutionContext(), [5], nibble)

    assert first == {"transaction_hash": "0x" + "0" * 63 + "1", "status": 1}
    assert second["transaction_hash"].endswith("2")
    request = contracts.sent[0]
    assert request.to == "0xabc" and request.method == "mint" and request.args == [1]
    assert request.gas == GasPolicy()
    assert contracts.sent[1].args == [5]


@pytest.mark.asyncio
async def test_on_chain_deployment(nibble, contracts):
    connector = nibble.add_on_chain_connector(name="deploy", abi=[{}], bytecode="0x6080")

    result = await connector.invoke(ExecutionContext(), None, nibble)

    assert result["contract_address"] == "0x" + "ab" * 20
    assert contracts.sent[0].to is None
    assert contracts.sent[0].data == "0x6080"


@pytest.mark.asyncio
async def test_on_chain_failures(nibble, contracts):
    unconfigured = nibble.add_on_chain_connector(name="empty")
    with pytest.raises(ChainError):
        await unconfigured.invoke(ExecutionContext(), None, nibble)

    connector = nibble.add_on_chain_connector(
        name="mint", address="0xabc", abi=[{}], method_name="mint"
    )
    contracts.status = 0
    with pytest.raises(ChainError):
        await connector.invoke(ExecutionContext(), None, nibble)

    contracts.error = RuntimeError("rpc down")
    with pytest.raises(ChainError):
        await connector.invoke(ExecutionContext(), None, nibble)


# Agents ---------------------------------------------------------------------


def test_objectives_are_kept_in_priority_order(nibble):
    agent = nibble.add_agent(name="planner", llm=OPENAI)
    for description, priority in (("low", 3), ("high", 9), ("mid", 5)):
        agent.add_objective(description, priority)

    assert [o.description for o in agent.objectives] == ["high", "mid", "low"]
    with pytest.raises(InvalidAdapter):
        agent.add_objective("too much", 11)


@pytest.mark.asyncio
async def test_generate_objectives_parses_reply(nibble, llm):
    agent = nibble.add_agent(name="planner", llm=OPENAI, role="community manager")
    llm.queue(
        "Objective: Grow audience, Priority: 8\n"
        "some chatter\n"
        "Objective: Post hourly, Priority: 12\n"
        "Objective: Reply to mentions, Priority: 4"
    )

    generated = await agent.generate_objectives(nibble, "launch week")

    assert [o.description for o in generated] == ["Grow audience", "Reply to mentions"]
    assert all(o.generated for o in agent.objectives)
    assert [o.priority for o in agent.objectives] == [8, 4]
    assert "community manager" in llm.prompts[0]


def test_agent_rejects_out_of_range_sampling(nibble):
    with pytest.raises(InvalidAdapter):
        nibble.add_agent(name="hot", llm={**OPENAI, "temperature": 5})
    with pytest.raises(InvalidAdapter):
        nibble.add_agent(name="", llm=OPENAI)


def test_prompt_without_placeholders_appends_input():
    agent = Agent(id=b"\x01" * 32, name="a", llm=OPENAI, system_prompt="Summarize")

    assert agent.compose_prompt({"ab": {"text": "hi"}}) == 'Summarize\n{"ab": {"text": "hi"}}'
    assert agent.compose_prompt(None) == "Summarize"
    assert agent.compose_prompt("raw") == "Summarize\nraw"


def test_prompt_placeholders_left_alone_when_missing():
    agent = Agent(id=b"\x01" * 32, name="a", llm=OPENAI, system_prompt="{{x}} and {{y}}")

    assert agent.compose_prompt({"up": {"x": [1, 2]}}) == "[1, 2] and {{y}}"


def test_context_parser_projects_and_checks_input():
    parser = ContextParser(required_fields=["text"], expected_format={"text": "string"})
    agent = Agent(id=b"\x01" * 32, name="a", llm=OPENAI, system_prompt="Read", context_parser=parser)

    assert agent.compose_prompt({"up": {"text": "hi", "lang": "en"}}) == 'Read\n{"text": "hi"}'
    with pytest.raises(DecodeError):
        agent.compose_prompt({"up": {"lang": "en"}})
    with pytest.raises(DecodeError):
        ContextParser(expected_format={"count": "number"}).parse({"up": {"count": "x"}})


def test_agent_describe(nibble):
    agent = nibble.add_agent(name="writer", llm=OPENAI, role="writer")
    agent.add_objective("ship", 7)

    summary = agent.describe()

    assert summary["kind"] == "Agent"
    assert summary["provider"] == "OpenAI"
    assert summary["objectives"] == [{"description": "ship", "priority": 7, "generated": False}]


# Registries -----------------------------------------------------------------


def test_adapter_registry_lookups():
    registry = AdapterRegistry()
    agent = registry.add(Agent(id=b"\x01" * 32, name="a", llm=OPENAI))

    assert registry.lookup(AdapterKind.AGENT, agent.id) is agent
    assert agent.id in registry and len(registry) == 1
    with pytest.raises(UnknownAdapter):
        registry.lookup(AdapterKind.CONDITION, agent.id)
    with pytest.raises(InvalidAdapter):
        registry.add(Agent(id=b"\x01" * 32, name="again", llm=OPENAI))

    saved = registry.hydrate(Agent(id=b"\x02" * 32, name="saved", llm=OPENAI))
    assert registry.find(saved.id) is saved
    assert {a.name for a in registry.iter(AdapterKind.AGENT)} == {"a", "saved"}
    with pytest.raises(UnknownAdapter):
        registry.discard(saved.id)


def test_function_registry():
    registry = FunctionRegistry("scorer")

    @registry.register("double")
    def double(value):
        return value * 2

    assert "double" in registry
    assert registry.call("double", 4) == 8
    with pytest.raises(KeyError):
        registry.get("triple")


# Expressions ----------------------------------------------------------------


@pytest.mark.parametrize(
    "expression, value, expected, result",
    [
        ("value > expected", 3, 2, True),
        ("value.get('score', 0) >= 0.5", {"score": 0.4}, None, False),
        ("len(value) == 2 and value[0] == 'a'", ["a", "b"], None, True),
        ("value['missing']", {}, None, False),
        ("value >", 1, None, False),
        ("__import__('os').system('true')", 1, None, False),
        ("value.__class__", 1, None, False),
    ],
)
def test_evaluate_expression(expression, value, expected, result):
    assert evaluate_expression(expression, value, expected) is result


def test_is_safe_expression():
    assert is_safe_expression("value.lower().startswith('ok')")
    assert not is_safe_expression("open('/etc/passwd')")
    assert not is_safe_expression("lambda: 1")
