from __future__ import annotations

"""The Nibble bundle: owner wallet, adapter catalog, collaborators and workflows."""

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx

from nibble import config
from nibble.adapters.agents import Agent
from nibble.adapters.base import Adapter
from nibble.adapters.conditions import Condition
from nibble.adapters.connectors import OffChainConnector, OnChainConnector
from nibble.adapters.evaluations import Evaluation
from nibble.adapters.fhe_gates import FHEGate
from nibble.adapters.listeners import Listener
from nibble.engine.identity import generate_id
from nibble.engine.manager import WorkflowManager
from nibble.engine.registry import AdapterRegistry
from nibble.engine.workflow import NibbleRef
from nibble.services.blob_store import BlobStore, create_blob_store
from nibble.services.chain import (
    ContractCaller,
    NibbleDeployment,
    RegistryClient,
    SerializedContractCaller,
    UnconfiguredContractCaller,
)
from nibble.services.cipher import EciesCipher, MetadataCipher, Wallet
from nibble.services.llm import HttpLLMInvoker, LLMInvoker
from nibble.services.memory import MemoryRegistryClient

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=Adapter)


class Nibble:
    """
    Named bundle of adapters and workflows.

    Adapters and the engine receive the Nibble explicitly when they need
    its collaborators; workflows only keep a `NibbleRef`.
    """

    def __init__(
        self,
        name: str,
        owner: Wallet,
        *,
        llm: LLMInvoker,
        contracts: ContractCaller,
        blob_store: BlobStore,
        registry_client: RegistryClient,
        http: Optional[httpx.AsyncClient] = None,
        cipher: Optional[MetadataCipher] = None,
        registry: Optional[AdapterRegistry] = None,
    ) -> None:
        if not name or not name.strip():
            raise ValueError("Nibble name must not be empty")
        self.name = name
        self.owner = owner
        self.llm = llm
        self.contracts = SerializedContractCaller(contracts)
        self.blob_store = blob_store
        self.registry_client = registry_client
        self.http = http or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)
        self.cipher = cipher or EciesCipher()
        self.registry = registry or AdapterRegistry()
        self.deployment: Optional[NibbleDeployment] = None
        self.workflows = WorkflowManager(self)

    @classmethod
    def from_config(cls) -> "Nibble":
        """Build a Nibble from environment settings."""
        owner = Wallet.from_hex(config.OWNER_PRIVATE_KEY) if config.OWNER_PRIVATE_KEY else Wallet.generate()
        http = httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)
        provider_settings: Dict[str, Dict[str, str]] = {
            "infura": {"project_id": config.INFURA_PROJECT_ID, "project_secret": config.INFURA_PROJECT_SECRET},
            "pinata": {"api_key": config.PINATA_API_KEY, "secret_api_key": config.PINATA_SECRET_API_KEY},
            "custom": {"api_url": config.CUSTOM_BLOB_URL},
        }
        return cls(
            config.NIBBLE_NAME,
            owner,
            llm=HttpLLMInvoker(http),
            contracts=UnconfiguredContractCaller(),
            blob_store=create_blob_store(
                config.BLOB_PROVIDER, provider_settings.get(config.BLOB_PROVIDER, {}), client=http
            ),
            registry_client=MemoryRegistryClient(),
            http=http,
        )

    @property
    def id(self) -> Optional[bytes]:
        return self.deployment.nibble_id if self.deployment else None

    def ref(self) -> NibbleRef:
        return NibbleRef(name=self.name, nibble_id=self.id)

    def new_id(self) -> bytes:
        return generate_id(self.owner.principal)

    # Adapters ---------------------------------------------------------------

    def add(self, adapter_cls: Type[A], **fields: Any) -> A:
        """Create an adapter with a fresh id and add it to the catalog."""
        adapter = adapter_cls(id=self.new_id(), **fields)
        self.registry.add(adapter)
        return adapter

    def add_agent(self, **fields: Any) -> Agent:
        return self.add(Agent, **fields)

    def add_off_chain_connector(self, **fields: Any) -> OffChainConnector:
        return self.add(OffChainConnector, **fields)

    def add_on_chain_connector(self, **fields: Any) -> OnChainConnector:
        return self.add(OnChainConnector, **fields)

    def add_condition(self, **fields: Any) -> Condition:
        return self.add(Condition, **fields)

    def add_evaluation(self, **fields: Any) -> Evaluation:
        return self.add(Evaluation, **fields)

    def add_fhe_gate(self, **fields: Any) -> FHEGate:
        return self.add(FHEGate, **fields)

    def add_listener(self, **fields: Any) -> Listener:
        return self.add(Listener, **fields)

    def remove_adapter(self, adapter_id: bytes) -> bool:
        """
        Drop an adapter from the catalog.

        Adapters that a workflow still uses are retired instead so they
        keep resolving; returns True when the adapter was only retired.
        """
        if any(w.uses_adapter(adapter_id) for w in self.workflows.list()):
            self.registry.retire(adapter_id)
            return True
        self.registry.discard(adapter_id)
        return False

    def adapters(self) -> List[Adapter]:
        return self.registry.all()

    # Lifecycle --------------------------------------------------------------

    async def deploy(self) -> NibbleDeployment:
        """Deploy the Nibble's contract set through the registry factory."""
        self.deployment = await self.registry_client.deploy_nibble()
        logger.info(
            "Nibble '%s' deployed as %s (count=%d)",
            self.name,
            self.deployment.nibble_id.hex(),
            self.deployment.count,
        )
        return self.deployment

    async def aclose(self) -> None:
        await self.workflows.shutdown()
        await self.http.aclose()
