import json

import httpx
import pytest
from pydantic import ValidationError

from nibble.engine.exceptions import AdapterTimeout, DecodeError, LLMError
from nibble.services.llm import (
    ClaudeConfig,
    CustomLLMConfig,
    HttpLLMInvoker,
    OllamaConfig,
    OpenAIConfig,
    coerce_result,
    parse_llm_config,
    walk_path,
)


def _invoker(routes) -> HttpLLMInvoker:
    return HttpLLMInvoker(httpx.AsyncClient(transport=httpx.MockTransport(routes)))


@pytest.mark.asyncio
async def test_openai_chat_completion(routes):
    routes.add_json(
        "https://api.openai.com/v1/chat/completions",
        {"choices": [{"message": {"role": "assistant", "content": "hi there"}}]},
    )
    config = OpenAIConfig(api_key="sk-1", model="gpt-4o-mini", system_prompt="be brief")

    assert await _invoker(routes).invoke(config, "hello") == "hi there"

    request = routes.requests[-1]
    body = json.loads(request.content)
    assert request.headers["authorization"] == "Bearer sk-1"
    assert body["model"] == "gpt-4o-mini"
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hello"},
    ]


@pytest.mark.asyncio
async def test_claude_messages(routes):
    routes.add_json(
        "https://api.anthropic.com/v1/messages",
        {"content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": ", world"}]},
    )
    config = ClaudeConfig(api_key="ak", model="claude-test", top_k=5)

    assert await _invoker(routes).invoke(config, "greet") == "Hello, world"

    request = routes.requests[-1]
    body = json.loads(request.content)
    assert request.headers["x-api-key"] == "ak"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert body["top_k"] == 5
    assert "top_p" not in body


@pytest.mark.asyncio
async def test_ollama_stream_is_concatenated(routes):
    stream = b'{"response": "Hel"}\n\n{"response": "lo"}\n{"response": "", "done": true}\n'
    routes.add("http://localhost:11434/api/generate", lambda request: httpx.Response(200, content=stream))
    config = OllamaConfig(model="llama3")

    assert await _invoker(routes).invoke(config, "hi") == "Hello"
    assert json.loads(routes.requests[-1].content)["stream"] is True


@pytest.mark.asyncio
async def test_ollama_bad_line(routes):
    routes.add("http://localhost:11434/api/generate", lambda request: httpx.Response(200, content=b"oops\n"))

    with pytest.raises(DecodeError):
        await _invoker(routes).invoke(OllamaConfig(model="llama3"), "hi")


@pytest.mark.asyncio
async def test_custom_endpoint_fills_prompt_and_walks_path(routes):
    url = "https://llm.example.com/generate"
    routes.add(
        url,
        lambda request: httpx.Response(
            200, json={"data": {"items": [{"text": json.loads(request.content)["input"]["q"]}]}}
        ),
    )
    config = CustomLLMConfig(
        url=url, body={"input": {"q": "Q: {{prompt}}"}}, result_path="data.items.0.text"
    )

    assert await _invoker(routes).invoke(config, "why?") == "Q: why?"


@pytest.mark.asyncio
async def test_custom_endpoint_result_type(routes):
    url = "https://llm.example.com/score"
    routes.add_json(url, {"result": 42})

    number = CustomLLMConfig(url=url, result_type="number")
    text = CustomLLMConfig(url=url, result_type="string")

    assert await _invoker(routes).invoke(number, "x") == "42"
    with pytest.raises(DecodeError):
        await _invoker(routes).invoke(text, "x")


@pytest.mark.asyncio
async def test_transport_errors_are_mapped(routes):
    url = "https://api.openai.com/v1/chat/completions"
    config = OpenAIConfig(api_key="sk", model="m")

    routes.add_text(url, "rate limited", status_code=429)
    with pytest.raises(LLMError):
        await _invoker(routes).invoke(config, "x")

    def slow(request):
        raise httpx.ReadTimeout("slow", request=request)

    routes.add(url, slow)
    with pytest.raises(AdapterTimeout):
        await _invoker(routes).invoke(config, "x")

    routes.add_text(url, "not json")
    with pytest.raises(DecodeError):
        await _invoker(routes).invoke(config, "x")


def test_parse_llm_config_dispatches_on_provider():
    assert isinstance(parse_llm_config({"provider": "Claude", "api_key": "k", "model": "m"}), ClaudeConfig)
    assert isinstance(parse_llm_config({"provider": "Other", "url": "https://x"}), CustomLLMConfig)
    with pytest.raises(ValidationError):
        parse_llm_config({"provider": "OpenAI", "api_key": "k", "model": "m", "top_p": 2})
    with pytest.raises(ValidationError):
        parse_llm_config({"provider": "Mystery"})


def test_walk_path_and_coerce():
    payload = {"choices": [{"text": "a"}]}
    assert walk_path(payload, "choices.0.text") == "a"
    assert walk_path(payload, "") == payload
    with pytest.raises(DecodeError):
        walk_path(payload, "choices.3.text")

    assert coerce_result([1, 2], "array") == "[1, 2]"
    assert coerce_result(True, "boolean") == "true"
    with pytest.raises(DecodeError):
        coerce_result(True, "number")
