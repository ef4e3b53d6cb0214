from __future__ import annotations

"""Listeners: long-running tasks that push events into a channel."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from nibble import config
from nibble.adapters.base import AdapterKind, EventSource
from nibble.adapters.connectors import send_http
from nibble.engine.exceptions import InvalidAdapter

if TYPE_CHECKING:
    from nibble.core import Nibble
    from nibble.engine.channels import CancelToken, EventChannel

logger = logging.getLogger(__name__)


@dataclass
class ContractProbe:
    """Contract read performed on every timer tick."""

    address: str
    function_signature: str
    return_type: str = "uint256"
    args: List[Any] = field(default_factory=list)


@dataclass
class HttpProbe:
    url: str
    method: str = "GET"
    params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None
    response_type: str = "JSON"


@dataclass
class OnChainSource:
    address: str
    event_signature: str
    abi: Optional[List[Dict[str, Any]]] = None
    chain: str = "ethereum"
    poll_interval: float = config.ONCHAIN_POLL_SECONDS


@dataclass
class WebhookSource:
    webhook_url: str
    sns_verification: bool = False
    headers: Optional[Dict[str, str]] = None
    poll_interval: float = config.WEBHOOK_POLL_SECONDS


@dataclass
class TimerSource:
    interval: float
    on_chain: Optional[ContractProbe] = None
    off_chain: Optional[HttpProbe] = None


ListenerKind = Union[OnChainSource, WebhookSource, TimerSource]


def coerce_return(value: Any, return_type: str) -> Any:
    """Normalize a contract return value by its ABI type."""
    if return_type.startswith(("uint", "int")):
        return str(int(value))
    if return_type == "bool":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1")
        return bool(value)
    if return_type == "string":
        return str(value)
    return value


@dataclass(kw_only=True)
class Listener(EventSource):
    kind = AdapterKind.LISTENER

    source: ListenerKind
    repetitions: int = 0

    def validate(self) -> None:
        super().validate()
        if self.repetitions < 0:
            raise InvalidAdapter("repetitions must be >= 0")
        if self.interval <= 0:
            raise InvalidAdapter("Listener interval must be positive")
        if isinstance(self.source, TimerSource) and self.source.on_chain and self.source.off_chain:
            raise InvalidAdapter("Timer listener takes either an on-chain or an off-chain probe")

    @property
    def interval(self) -> float:
        if isinstance(self.source, TimerSource):
            return self.source.interval
        return self.source.poll_interval

    def spawn(
        self, sink: "EventChannel", cancel: "CancelToken", nibble: "Nibble"
    ) -> "asyncio.Task[int]":
        return asyncio.create_task(
            self.run(sink, cancel, nibble), name=f"listener-{self.name}-{self.id.hex()[:8]}"
        )

    async def run(self, sink: "EventChannel", cancel: "CancelToken", nibble: "Nibble") -> int:
        """Poll until cancelled or until `repetitions` events were sent; returns the count."""
        sent = 0
        timer = isinstance(self.source, TimerSource)
        logger.info("Listener '%s' started (every %ss)", self.name, self.interval)
        while not cancel.cancelled:
            if timer and not await cancel.sleep(self.interval):
                break
            try:
                events = await self.poll(nibble)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Listener '%s' poll failed, retrying: %s", self.name, exc)
                events = []
            for event in events:
                if cancel.cancelled:
                    break
                sink.send(event)
                sent += 1
                if self.repetitions and sent >= self.repetitions:
                    logger.info("Listener '%s' reached %d repetitions", self.name, sent)
                    return sent
            if not timer and not await cancel.sleep(self.interval):
                break
        logger.info("Listener '%s' cancelled after %d events", self.name, sent)
        return sent

    async def poll(self, nibble: "Nibble") -> List[Any]:
        """One polling cycle; returns the events to forward."""
        source = self.source
        if isinstance(source, OnChainSource):
            return list(
                await nibble.contracts.get_logs(source.address, source.event_signature, source.abi)
            )
        if isinstance(source, WebhookSource):
            return await self._poll_webhook(nibble, source)
        return [await self._tick(nibble, source)]

    async def _poll_webhook(self, nibble: "Nibble", source: WebhookSource) -> List[Any]:
        response = await send_http(nibble.http, "GET", source.webhook_url, headers=source.headers)
        if not response.content.strip():
            return []
        try:
            body = response.json()
        except ValueError:
            body = response.text
        if not source.sns_verification:
            return [body]
        if not isinstance(body, dict):
            logger.warning("Listener '%s' got a non-SNS payload", self.name)
            return []

        message_type = body.get("Type")
        if message_type == "SubscriptionConfirmation":
            subscribe_url = body.get("SubscribeURL")
            if subscribe_url:
                await send_http(nibble.http, "GET", subscribe_url)
                logger.info("Listener '%s' confirmed SNS subscription", self.name)
            return []
        if message_type == "Notification":
            message = body.get("Message")
            if isinstance(message, str):
                try:
                    return [json.loads(message)]
                except ValueError:
                    return [message]
            return [message]
        if message_type == "UnsubscribeConfirmation":
            logger.info("Listener '%s' received an SNS unsubscribe confirmation", self.name)
            return []
        logger.warning("Listener '%s' ignoring SNS message type %s", self.name, message_type)
        return []

    async def _tick(self, nibble: "Nibble", source: TimerSource) -> Any:
        if source.on_chain is not None:
            probe = source.on_chain
            value = await nibble.contracts.call(
                probe.address, probe.function_signature, probe.args, probe.return_type
            )
            return coerce_return(value, probe.return_type)
        if source.off_chain is not None:
            probe = source.off_chain
            response = await send_http(
                nibble.http,
                probe.method.upper(),
                probe.url,
                params=probe.params,
                headers=probe.headers,
            )
            if probe.response_type.upper() == "JSON":
                try:
                    return response.json()
                except ValueError:
                    return response.text
            return response.text
        return datetime.now().isoformat()

    def describe(self) -> Dict[str, Any]:
        summary = super().describe()
        summary.update(
            {"source": type(self.source).__name__, "repetitions": self.repetitions, "interval": self.interval}
        )
        return summary
