from __future__ import annotations

"""Off-chain (HTTP) and on-chain (contract) connectors."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

import httpx

from nibble.adapters.base import AdapterKind, Invocable, flatten_input
from nibble.engine.exceptions import (
    AdapterTimeout,
    ChainError,
    DecodeError,
    HttpError,
    InvalidAdapter,
)
from nibble.engine.registry import transform_registry
from nibble.services.chain import Eip1559Request, GasPolicy

if TYPE_CHECKING:
    from nibble.core import Nibble
    from nibble.engine.context import ExecutionContext

logger = logging.getLogger(__name__)

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"}
BODYLESS_METHODS = {"GET", "HEAD", "DELETE"}


@dataclass
class RestShape:
    base_payload: Optional[Dict[str, Any]] = None


@dataclass
class GraphQLShape:
    query: str
    variables: Optional[Dict[str, Any]] = None


ConnectorShape = Union[RestShape, GraphQLShape]


def auth_headers(auth: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Translate an auth bag into request headers."""
    if not auth:
        return {}
    headers: Dict[str, str] = {}
    if auth.get("access_token"):
        headers["Authorization"] = f"Bearer {auth['access_token']}"
    if auth.get("api_key"):
        headers[auth.get("api_key_header", "x-api-key")] = auth["api_key"]
    return headers


async def send_http(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request and map transport failures onto adapter errors."""
    if timeout is not None:
        kwargs["timeout"] = timeout
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise AdapterTimeout(f"{method} {url} timed out") from exc
    except httpx.HTTPError as exc:
        raise HttpError(f"{method} {url} failed: {exc}") from exc
    if not response.is_success:
        raise HttpError(
            f"{method} {url} returned {response.status_code}", status_code=response.status_code
        )
    return response


def decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise DecodeError(f"Response from {response.request.url} is not JSON") from exc


@dataclass(kw_only=True)
class OffChainConnector(Invocable):
    kind = AdapterKind.OFF_CHAIN_CONNECTOR

    url: str
    method: str = "GET"
    headers: Optional[Dict[str, str]] = None
    params: Optional[Dict[str, Any]] = None
    auth: Optional[Dict[str, str]] = None
    shape: ConnectorShape = field(default_factory=RestShape)
    transform: Optional[str] = None
    timeout: Optional[float] = None

    def validate(self) -> None:
        super().validate()
        if not self.url:
            raise InvalidAdapter(f"Connector '{self.name}' has no url")
        if self.method.upper() not in HTTP_METHODS:
            raise InvalidAdapter(f"Unsupported HTTP method '{self.method}'")
        if self.transform and self.transform not in transform_registry:
            raise InvalidAdapter(f"Transform '{self.transform}' is not registered")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidAdapter("Connector timeout must be positive")

    def build_request(self, input: Any) -> Tuple[str, Dict[str, Any]]:
        """Method plus httpx request kwargs for the given node input."""
        method = self.method.upper()
        headers = {**(self.headers or {}), **auth_headers(self.auth)}
        params = dict(self.params or {})
        overrides = flatten_input(input)
        kwargs: Dict[str, Any] = {"headers": headers}

        if isinstance(self.shape, GraphQLShape):
            method = "POST"
            variables = {**(self.shape.variables or {}), **overrides}
            kwargs["json"] = {"query": self.shape.query, "variables": variables}
        else:
            payload = {**(self.shape.base_payload or {}), **overrides}
            if method in BODYLESS_METHODS:
                params.update(payload)
            elif payload:
                kwargs["json"] = payload
        if params:
            kwargs["params"] = params
        return method, kwargs

    async def invoke(self, ctx: "ExecutionContext", input: Any, nibble: "Nibble") -> Any:
        method, kwargs = self.build_request(input)
        response = await send_http(nibble.http, method, self.url, timeout=self.timeout, **kwargs)
        data = decode_json(response)
        if self.transform:
            return transform_registry.call(self.transform, data)
        return data

    def describe(self) -> Dict[str, Any]:
        summary = super().describe()
        summary.update(
            {
                "method": self.method.upper(),
                "url": self.url,
                "shape": "GraphQL" if isinstance(self.shape, GraphQLShape) else "REST",
            }
        )
        return summary


@dataclass(kw_only=True)
class OnChainConnector(Invocable):
    kind = AdapterKind.ON_CHAIN_CONNECTOR

    chain: str = "ethereum"
    chain_id: Optional[int] = None
    address: Optional[str] = None
    abi: Optional[List[Dict[str, Any]]] = None
    bytecode: Optional[str] = None
    method_name: Optional[str] = None
    args: List[Any] = field(default_factory=list)
    gas: Optional[GasPolicy] = None

    @property
    def is_method_call(self) -> bool:
        return bool(self.address and self.abi and self.method_name)

    @property
    def is_deployment(self) -> bool:
        return bool(self.abi and self.bytecode)

    def build_request(self, input: Any) -> Eip1559Request:
        args = list(input) if isinstance(input, list) else list(self.args)
        gas = self.gas or GasPolicy()
        if self.is_method_call:
            return Eip1559Request(
                to=self.address,
                method=self.method_name,
                args=args,
                abi=self.abi,
                chain_id=self.chain_id,
                gas=gas,
            )
        if self.is_deployment:
            return Eip1559Request(
                to=None, args=args, abi=self.abi, data=self.bytecode, chain_id=self.chain_id, gas=gas
            )
        raise ChainError(
            f"Connector '{self.name}' needs address, abi and method_name, or abi and bytecode"
        )

    async def invoke(self, ctx: "ExecutionContext", input: Any, nibble: "Nibble") -> Any:
        request = self.build_request(input)
        try:
            receipt = await nibble.contracts.send(request)
        except ChainError:
            raise
        except Exception as exc:
            raise ChainError(f"Transaction from '{self.name}' failed: {exc}") from exc

        if not receipt.succeeded:
            raise ChainError(f"Transaction {receipt.transaction_hash} reverted")
        if request.to is None:
            if not receipt.contract_address:
                raise ChainError(f"Deployment {receipt.transaction_hash} returned no address")
            logger.info("Connector '%s' deployed %s", self.name, receipt.contract_address)
            return {
                "contract_address": receipt.contract_address,
                "transaction_hash": receipt.transaction_hash,
            }
        return {"transaction_hash": receipt.transaction_hash, "status": receipt.status}

    def describe(self) -> Dict[str, Any]:
        summary = super().describe()
        summary.update({"chain": self.chain, "address": self.address, "method_name": self.method_name})
        return summary
