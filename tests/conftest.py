import itertools
from collections import deque
from typing import Any, Callable, Dict, List

import httpx
import pytest

from nibble.adapters.conditions import Condition, ContextProbe
from nibble.core import Nibble
from nibble.services.chain import Receipt
from nibble.services.cipher import Wallet
from nibble.services.memory import MemoryBlobStore, MemoryRegistryClient


# Fakes ---------------------------------------------------------------------


class FakeLLM:
    """Echoes the prompt back unless replies were queued."""

    def __init__(self) -> None:
        self.prompts: List[str] = []
        self.replies: deque = deque()

    def queue(self, *replies: Any) -> None:
        self.replies.extend(replies)

    async def invoke(self, config, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.replies:
            reply = self.replies.popleft()
            if isinstance(reply, Exception):
                raise reply
            return reply
        return prompt


class FakeContractCaller:
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.sent: List[Any] = []
        self.results: Dict[str, Any] = {}
        self.log_batches: deque = deque()
        self.events: List[Dict[str, Any]] = []
        self.status = 1
        self.error: Exception = None
        self._counter = itertools.count(1)

    async def call(self, address, method, args, return_abi=None):
        self.calls.append((address, method, list(args), return_abi))
        if self.error:
            raise self.error
        result = self.results.get(method)
        return result(args) if callable(result) else result

    async def send(self, request):
        self.sent.append(request)
        if self.error:
            raise self.error
        number = next(self._counter)
        return Receipt(
            transaction_hash=f"0x{number:064x}",
            status=self.status,
            contract_address="0x" + "ab" * 20 if request.to is None else None,
            events=list(self.events),
        )

    async def deploy(self, abi, bytecode, args):
        return "0x" + "cd" * 20

    async def get_logs(self, address, event_signature, abi):
        if self.error:
            raise self.error
        if self.log_batches:
            return self.log_batches.popleft()
        return []


class HttpRoutes:
    """Dispatches httpx.MockTransport requests to handlers keyed by URL (query stripped)."""

    def __init__(self) -> None:
        self.handlers: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, url: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handlers[url] = handler

    def add_json(self, url: str, payload: Any, status_code: int = 200) -> None:
        self.add(url, lambda request: httpx.Response(status_code, json=payload))

    def add_text(self, url: str, text: str, status_code: int = 200) -> None:
        self.add(url, lambda request: httpx.Response(status_code, text=text))

    def hits(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).split("?")[0] == url]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(str(request.url).split("?")[0])
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)


# Fixtures ------------------------------------------------------------------


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def contracts() -> FakeContractCaller:
    return FakeContractCaller()


@pytest.fixture
def routes() -> HttpRoutes:
    return HttpRoutes()


@pytest.fixture
def wallet() -> Wallet:
    return Wallet.generate()


@pytest.fixture
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def registry_client() -> MemoryRegistryClient:
    return MemoryRegistryClient()


@pytest.fixture
def nibble(llm, contracts, routes, wallet, blob_store, registry_client) -> Nibble:
    return Nibble(
        "test-nibble",
        wallet,
        llm=llm,
        contracts=contracts,
        blob_store=blob_store,
        registry_client=registry_client,
        http=httpx.AsyncClient(transport=httpx.MockTransport(routes)),
    )


@pytest.fixture
def open_gate(nibble) -> Condition:
    return nibble.add_condition(name="always", probe=ContextProbe(), predicate="always")


@pytest.fixture
def closed_gate(nibble) -> Condition:
    return nibble.add_condition(name="never", probe=ContextProbe(), predicate="never")
