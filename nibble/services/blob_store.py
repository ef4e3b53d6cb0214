from __future__ import annotations

"""Content-addressed storage providers for workflow metadata blobs."""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from nibble import config
from nibble.engine.exceptions import PersistenceError
from nibble.services.memory import MemoryBlobStore

logger = logging.getLogger(__name__)

IPFS_SCHEME = "ipfs://"


class BlobStore(Protocol):
    async def put(self, data: bytes) -> str: ...

    async def get(self, handle: str) -> bytes: ...


def _strip_scheme(handle: str) -> str:
    return handle[len(IPFS_SCHEME):] if handle.startswith(IPFS_SCHEME) else handle


class _HttpBlobStore:
    """Shared plumbing: one AsyncClient, uniform error mapping."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PersistenceError(
                f"Blob store returned {exc.response.status_code} for {method} {url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Blob store request failed for {method} {url}: {exc}") from exc
        return response

    @staticmethod
    def _field(response: httpx.Response, name: str) -> str:
        try:
            value = response.json()[name]
        except (ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"Blob store response is missing '{name}'") from exc
        if not isinstance(value, str):
            raise PersistenceError(f"Blob store field '{name}' is not a string")
        return value


class InfuraBlobStore(_HttpBlobStore):
    def __init__(
        self,
        project_id: str,
        project_secret: str,
        api_url: str = "https://ipfs.infura.io:5001",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(client)
        self.api_url = api_url.rstrip("/")
        self._auth = httpx.BasicAuth(project_id, project_secret)

    async def put(self, data: bytes) -> str:
        response = await self._request(
            "POST",
            f"{self.api_url}/api/v0/add",
            files={"file": ("metadata", data)},
            auth=self._auth,
        )
        return IPFS_SCHEME + self._field(response, "Hash")

    async def get(self, handle: str) -> bytes:
        response = await self._request(
            "POST",
            f"{self.api_url}/api/v0/cat",
            params={"arg": _strip_scheme(handle)},
            auth=self._auth,
        )
        return response.content


class PinataBlobStore(_HttpBlobStore):
    def __init__(
        self,
        api_key: str,
        secret_api_key: str,
        api_url: str = "https://api.pinata.cloud",
        gateway_url: str = "https://gateway.pinata.cloud/ipfs",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(client)
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self._headers = {
            "pinata_api_key": api_key,
            "pinata_secret_api_key": secret_api_key,
        }

    async def put(self, data: bytes) -> str:
        response = await self._request(
            "POST",
            f"{self.api_url}/pinning/pinFileToIPFS",
            files={"file": ("metadata", data)},
            headers=self._headers,
        )
        return self._field(response, "IpfsHash")

    async def get(self, handle: str) -> bytes:
        response = await self._request("GET", f"{self.gateway_url}/{_strip_scheme(handle)}")
        return response.content


class CustomBlobStore(_HttpBlobStore):
    """POSTs the raw bytes to an arbitrary endpoint that answers with `{"Hash": ...}`."""

    def __init__(
        self,
        api_url: str,
        headers: Optional[Dict[str, str]] = None,
        gateway_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(client)
        self.api_url = api_url
        self.headers = dict(headers or {})
        self.gateway_url = gateway_url.rstrip("/") if gateway_url else None

    async def put(self, data: bytes) -> str:
        response = await self._request("POST", self.api_url, content=data, headers=self.headers)
        return self._field(response, "Hash")

    async def get(self, handle: str) -> bytes:
        if not self.gateway_url:
            raise PersistenceError("Custom blob store has no gateway_url for retrieval")
        response = await self._request(
            "GET", f"{self.gateway_url}/{_strip_scheme(handle)}", headers=self.headers
        )
        return response.content


def create_blob_store(
    provider: str, settings: Dict[str, str], client: Optional[httpx.AsyncClient] = None
) -> BlobStore:
    """Build a store from a provider name and its settings map."""
    provider = provider.lower()
    try:
        if provider == "infura":
            return InfuraBlobStore(settings["project_id"], settings["project_secret"], client=client)
        if provider == "pinata":
            return PinataBlobStore(settings["api_key"], settings["secret_api_key"], client=client)
        if provider == "custom":
            headers = {k: v for k, v in settings.items() if k not in ("api_url", "gateway_url")}
            return CustomBlobStore(
                settings["api_url"],
                headers=headers,
                gateway_url=settings.get("gateway_url"),
                client=client,
            )
    except KeyError as exc:
        raise ValueError(f"Missing '{exc.args[0]}' for blob provider '{provider}'") from exc
    if provider == "memory":
        return MemoryBlobStore()
    raise ValueError(f"Unknown blob provider '{provider}'")
