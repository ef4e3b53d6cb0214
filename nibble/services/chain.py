from __future__ import annotations

"""Chain-facing collaborators: contract calls, transactions and the Nibble registry."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from nibble import config
from nibble.engine.exceptions import ChainError

logger = logging.getLogger(__name__)


@dataclass
class GasPolicy:
    max_fee_per_gas: int = config.DEFAULT_MAX_FEE_PER_GAS
    max_priority_fee_per_gas: int = config.DEFAULT_MAX_PRIORITY_FEE_PER_GAS
    gas_limit: int = config.DEFAULT_GAS_LIMIT
    nonce: Optional[int] = None


@dataclass
class Eip1559Request:
    """
    A transaction ready for signing.

    `to=None` marks a contract deployment; `data` then carries the bytecode.
    """

    to: Optional[str]
    method: Optional[str] = None
    args: List[Any] = field(default_factory=list)
    abi: Optional[List[Dict[str, Any]]] = None
    data: Optional[str] = None
    chain_id: Optional[int] = None
    value: int = 0
    gas: GasPolicy = field(default_factory=GasPolicy)


@dataclass
class Receipt:
    transaction_hash: str
    status: int = 1
    contract_address: Optional[str] = None
    block_number: Optional[int] = None
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ContractCaller(Protocol):
    """RPC transport bound to a single signer."""

    async def call(
        self,
        address: str,
        method: str,
        args: Sequence[Any],
        return_abi: Optional[str] = None,
    ) -> Any: ...

    async def send(self, request: Eip1559Request) -> Receipt: ...

    async def deploy(
        self, abi: List[Dict[str, Any]], bytecode: str, args: Sequence[Any]
    ) -> str: ...

    async def get_logs(
        self, address: str, event_signature: str, abi: Optional[List[Dict[str, Any]]]
    ) -> List[Any]:
        """Decoded events emitted since the previous poll of this filter."""
        ...


class UnconfiguredContractCaller:
    """Placeholder transport for nibbles that run without a chain RPC."""

    async def _fail(self, *args: Any, **kwargs: Any) -> Any:
        raise ChainError("No chain RPC transport is configured")

    call = _fail
    send = _fail
    deploy = _fail
    get_logs = _fail


class SerializedContractCaller:
    """Wraps a caller so only one transaction per signer is outstanding."""

    def __init__(self, inner: ContractCaller) -> None:
        self.inner = inner
        self._tx_lock = asyncio.Lock()

    async def call(self, address, method, args, return_abi=None):
        return await self.inner.call(address, method, args, return_abi)

    async def send(self, request: Eip1559Request) -> Receipt:
        async with self._tx_lock:
            return await self.inner.send(request)

    async def deploy(self, abi, bytecode, args) -> str:
        async with self._tx_lock:
            return await self.inner.deploy(abi, bytecode, args)

    async def get_logs(self, address, event_signature, abi):
        return await self.inner.get_logs(address, event_signature, abi)


# Registry ------------------------------------------------------------------


class ContractRole(str, Enum):
    STORAGE = "Storage"
    LISTENERS = "Listeners"
    CONDITIONS = "Conditions"
    EVALUATIONS = "Evaluations"
    AGENTS = "Agents"
    CONNECTORS = "Connectors"
    ACCESS_CONTROL = "AccessControl"


# Order in which the factory returns the deployed addresses.
DEPLOYMENT_ORDER = (
    ContractRole.STORAGE,
    ContractRole.LISTENERS,
    ContractRole.CONDITIONS,
    ContractRole.EVALUATIONS,
    ContractRole.AGENTS,
    ContractRole.CONNECTORS,
    ContractRole.ACCESS_CONTROL,
)


@dataclass
class NibbleDeployment:
    contracts: Dict[ContractRole, str]
    nibble_id: bytes
    count: int

    @classmethod
    def from_factory_output(
        cls, addresses: Sequence[str], nibble_id: bytes, count: int
    ) -> "NibbleDeployment":
        if len(addresses) != len(DEPLOYMENT_ORDER):
            raise ChainError(
                f"Factory returned {len(addresses)} addresses, expected {len(DEPLOYMENT_ORDER)}"
            )
        return cls(
            contracts=dict(zip(DEPLOYMENT_ORDER, addresses)),
            nibble_id=nibble_id,
            count=count,
        )


@dataclass
class WorkflowRecord:
    id: bytes
    metadata: str
    encrypted: bool


class RegistryClient(Protocol):
    async def deploy_nibble(self) -> NibbleDeployment: ...

    async def add_or_modify_workflow(self, record: WorkflowRecord) -> str: ...

    async def remove_workflow(self, workflow_id: bytes) -> str: ...


class ContractRegistryClient:
    """Registry client that talks to the Nibble factory and storage contracts."""

    def __init__(
        self,
        caller: ContractCaller,
        factory_address: str,
        storage_address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> None:
        self.caller = caller
        self.factory_address = factory_address
        self.storage_address = storage_address
        self.chain_id = chain_id

    def _gas(self) -> GasPolicy:
        return GasPolicy(gas_limit=config.REGISTRY_GAS_LIMIT)

    async def _submit(self, to: str, method: str, args: List[Any]) -> Receipt:
        request = Eip1559Request(
            to=to, method=method, args=args, chain_id=self.chain_id, gas=self._gas()
        )
        try:
            receipt = await self.caller.send(request)
        except ChainError:
            raise
        except Exception as exc:
            raise ChainError(f"{method} failed: {exc}") from exc
        if not receipt.succeeded:
            raise ChainError(f"{method} reverted in {receipt.transaction_hash}")
        return receipt

    async def deploy_nibble(self) -> NibbleDeployment:
        receipt = await self._submit(self.factory_address, "deployFromFactory", [])
        if not receipt.events:
            raise ChainError("No transaction logs received.")
        addresses, nibble_id, count = receipt.events[0]["args"]
        deployment = NibbleDeployment.from_factory_output(addresses, nibble_id, int(count))
        self.storage_address = deployment.contracts[ContractRole.STORAGE]
        logger.info("Deployed nibble %s (count=%s)", nibble_id.hex(), count)
        return deployment

    def _storage(self) -> str:
        if not self.storage_address:
            raise ChainError("No contracts found. Load or create a Nibble.")
        return self.storage_address

    async def add_or_modify_workflow(self, record: WorkflowRecord) -> str:
        receipt = await self._submit(
            self._storage(),
            "addOrModifyWorkflow",
            [(record.id, record.metadata, record.encrypted)],
        )
        return receipt.transaction_hash

    async def remove_workflow(self, workflow_id: bytes) -> str:
        receipt = await self._submit(self._storage(), "removeWorkflow", [workflow_id])
        return receipt.transaction_hash
