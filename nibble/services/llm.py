from __future__ import annotations

"""LLM provider configs and the HTTP invoker that dispatches on them."""

import json
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Protocol, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter

from nibble import config as settings
from nibble.engine.exceptions import AdapterTimeout, DecodeError, LLMError

logger = logging.getLogger(__name__)


class OpenAIConfig(BaseModel):
    provider: Literal["OpenAI"] = "OpenAI"
    api_key: str
    model: str
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(256, gt=0)
    top_p: float = Field(1.0, ge=0, le=1)
    frequency_penalty: float = Field(0.0, ge=-2, le=2)
    presence_penalty: float = Field(0.0, ge=-2, le=2)
    system_prompt: Optional[str] = None
    base_url: str = "https://api.openai.com/v1"


class ClaudeConfig(BaseModel):
    provider: Literal["Claude"] = "Claude"
    api_key: str
    model: str
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(1024, gt=0)
    top_k: Optional[int] = Field(None, gt=0)
    top_p: Optional[float] = Field(None, ge=0, le=1)
    system_prompt: Optional[str] = None
    base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"


class OllamaConfig(BaseModel):
    provider: Literal["Ollama"] = "Ollama"
    model: str
    api_key: Optional[str] = None
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(256, gt=0)
    top_p: float = Field(1.0, ge=0, le=1)
    base_url: str = "http://localhost:11434"


class CustomLLMConfig(BaseModel):
    """Generic POST endpoint; `{{prompt}}` placeholders in `body` are replaced."""

    provider: Literal["Other"] = "Other"
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    result_path: str = "result"
    result_type: Literal["string", "number", "boolean", "array", "object"] = "string"


LLMConfig = Annotated[
    Union[OpenAIConfig, ClaudeConfig, OllamaConfig, CustomLLMConfig],
    Field(discriminator="provider"),
]

_config_adapter: TypeAdapter = TypeAdapter(LLMConfig)


def parse_llm_config(data: Dict[str, Any]) -> LLMConfig:
    return _config_adapter.validate_python(data)


class LLMInvoker(Protocol):
    async def invoke(self, config: LLMConfig, prompt: str) -> str: ...


def walk_path(payload: Any, path: str) -> Any:
    """Follow a dotted path through dicts and lists (`choices.0.text`)."""
    current = payload
    for part in path.split(".") if path else []:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise DecodeError(f"Path '{path}' not found in response (stopped at '{part}')")
    return current


_RESULT_TYPES = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def coerce_result(value: Any, result_type: str) -> str:
    expected = _RESULT_TYPES[result_type]
    if result_type == "number" and isinstance(value, bool):
        raise DecodeError("Expected number, got boolean")
    if not isinstance(value, expected):
        raise DecodeError(f"Expected {result_type}, got {type(value).__name__}")
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _fill_prompt(template: Any, prompt: str) -> Any:
    if isinstance(template, str):
        return template.replace("{{prompt}}", prompt)
    if isinstance(template, dict):
        return {key: _fill_prompt(value, prompt) for key, value in template.items()}
    if isinstance(template, list):
        return [_fill_prompt(item, prompt) for item in template]
    return template


class HttpLLMInvoker:
    """Calls OpenAI, Claude, Ollama or a custom endpoint depending on the config."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    async def invoke(self, config: LLMConfig, prompt: str) -> str:
        try:
            if isinstance(config, OpenAIConfig):
                return await self._openai(config, prompt)
            if isinstance(config, ClaudeConfig):
                return await self._claude(config, prompt)
            if isinstance(config, OllamaConfig):
                return await self._ollama(config, prompt)
            if isinstance(config, CustomLLMConfig):
                return await self._custom(config, prompt)
        except httpx.TimeoutException as exc:
            raise AdapterTimeout(f"{config.provider} request timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise LLMError(
                f"{config.provider} returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"{config.provider} request failed: {exc}") from exc
        raise LLMError(f"Unsupported LLM provider {type(config).__name__}")

    async def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Any:
        response = await self._client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise DecodeError(f"Non-JSON response from {url}") from exc

    async def _openai(self, config: OpenAIConfig, prompt: str) -> str:
        messages: List[Dict[str, str]] = []
        if config.system_prompt:
            messages.append({"role": "system", "content": config.system_prompt})
        messages.append({"role": "user", "content": prompt})
        body = await self._post_json(
            f"{config.base_url}/chat/completions",
            {
                "model": config.model,
                "messages": messages,
                "temperature": config.temperature,
                "max_tokens": config.max_tokens,
                "top_p": config.top_p,
                "frequency_penalty": config.frequency_penalty,
                "presence_penalty": config.presence_penalty,
            },
            {"Authorization": f"Bearer {config.api_key}"},
        )
        content = walk_path(body, "choices.0.message.content")
        return content if isinstance(content, str) else ""

    async def _claude(self, config: ClaudeConfig, prompt: str) -> str:
        payload: Dict[str, Any] = {
            "model": config.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if config.system_prompt:
            payload["system"] = config.system_prompt
        if config.top_k is not None:
            payload["top_k"] = config.top_k
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        body = await self._post_json(
            f"{config.base_url}/messages",
            payload,
            {"x-api-key": config.api_key, "anthropic-version": config.anthropic_version},
        )
        blocks = body.get("content", []) if isinstance(body, dict) else []
        return "".join(
            block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"
        )

    async def _ollama(self, config: OllamaConfig, prompt: str) -> str:
        headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        payload = {
            "model": config.model,
            "prompt": prompt,
            "stream": True,
            "options": {
                "temperature": config.temperature,
                "num_predict": config.max_tokens,
                "top_p": config.top_p,
            },
        }
        parts: List[str] = []
        async with self._client.stream(
            "POST", f"{config.base_url}/api/generate", json=payload, headers=headers
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    chunk = json.loads(line)
                except ValueError as exc:
                    raise DecodeError(f"Malformed Ollama stream line: {line[:80]}") from exc
                parts.append(chunk.get("response", ""))
                if chunk.get("done"):
                    break
        return "".join(parts)

    async def _custom(self, config: CustomLLMConfig, prompt: str) -> str:
        body = _fill_prompt(config.body, prompt) if config.body is not None else {"prompt": prompt}
        response = await self._client.request(
            config.method.upper(), config.url, json=body, headers=config.headers
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise DecodeError(f"Non-JSON response from {config.url}") from exc
        return coerce_result(walk_path(payload, config.result_path), config.result_type)
