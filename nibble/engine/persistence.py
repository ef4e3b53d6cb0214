from __future__ import annotations

"""Writes workflow metadata to blob storage and registers the handle on the registry."""

import logging
from dataclasses import dataclass
from typing import Optional

from nibble.engine.exceptions import ChainError, PersistenceError
from nibble.engine.workflow import NibbleRef, Workflow
from nibble.services.blob_store import BlobStore
from nibble.services.chain import RegistryClient, WorkflowRecord
from nibble.services.cipher import EciesCipher, MetadataCipher, Wallet

logger = logging.getLogger(__name__)


@dataclass
class PersistReceipt:
    workflow_id: bytes
    handle: str
    transaction_hash: str
    encrypted: bool


class PersistenceGateway:
    def __init__(
        self,
        blob_store: BlobStore,
        registry_client: RegistryClient,
        cipher: Optional[MetadataCipher] = None,
    ) -> None:
        self.blob_store = blob_store
        self.registry_client = registry_client
        self.cipher = cipher or EciesCipher()

    def encode(self, workflow: Workflow, owner: Wallet) -> bytes:
        payload = workflow.to_json()
        if workflow.encrypted:
            payload = self.cipher.encrypt(payload, owner)
        return payload

    def decode(self, payload: bytes, owner: Wallet, encrypted: bool) -> bytes:
        if not encrypted:
            return payload
        try:
            return self.cipher.decrypt(payload, owner)
        except ValueError as exc:
            raise PersistenceError(f"Could not decrypt workflow metadata: {exc}") from exc

    async def persist(self, workflow: Workflow, owner: Wallet) -> PersistReceipt:
        """Upload the metadata blob, then point the registry entry at it."""
        payload = self.encode(workflow, owner)
        try:
            handle = await self.blob_store.put(payload)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Blob upload for '{workflow.name}' failed: {exc}") from exc

        record = WorkflowRecord(id=workflow.id, metadata=handle, encrypted=workflow.encrypted)
        try:
            tx_hash = await self.registry_client.add_or_modify_workflow(record)
        except (ChainError, PersistenceError) as exc:
            raise PersistenceError(f"Registry write for '{workflow.name}' failed: {exc}") from exc

        workflow.handle = handle
        logger.info(
            "Persisted workflow '%s' (%s) -> %s in %s",
            workflow.name,
            workflow.id.hex()[:12],
            handle,
            tx_hash,
        )
        return PersistReceipt(
            workflow_id=workflow.id, handle=handle, transaction_hash=tx_hash, encrypted=workflow.encrypted
        )

    async def remove(self, workflow: Workflow) -> str:
        """Retract the registry entry, then empty the graph under a fresh id."""
        old_id = workflow.id
        try:
            tx_hash = await self.registry_client.remove_workflow(old_id)
        except (ChainError, PersistenceError) as exc:
            raise PersistenceError(f"Registry removal for '{workflow.name}' failed: {exc}") from exc
        workflow.clear()
        logger.info("Removed workflow %s in %s", old_id.hex()[:12], tx_hash)
        return tx_hash

    async def hydrate(
        self,
        handle: str,
        owner: Wallet,
        *,
        workflow_id: bytes,
        name: str,
        encrypted: bool,
        nibble_ref: Optional[NibbleRef] = None,
    ) -> Workflow:
        try:
            payload = await self.blob_store.get(handle)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Blob download for '{handle}' failed: {exc}") from exc
        plaintext = self.decode(payload, owner, encrypted)
        workflow = Workflow.from_json(
            plaintext,
            workflow_id=workflow_id,
            name=name,
            encrypted=encrypted,
            owner=owner.principal,
            nibble_ref=nibble_ref,
        )
        workflow.handle = handle
        return workflow
