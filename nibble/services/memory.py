from __future__ import annotations

"""In-process blob store and registry, used when no chain or IPFS node is configured."""

import hashlib
import logging
from threading import Lock
from typing import Dict, List, Optional

from nibble.engine.exceptions import PersistenceError
from nibble.engine.identity import generate_id
from nibble.services.chain import DEPLOYMENT_ORDER, NibbleDeployment, WorkflowRecord

logger = logging.getLogger(__name__)


class MemoryBlobStore:
    """Content-addressed dictionary; handles look like `mem://<sha256>`."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = Lock()

    async def put(self, data: bytes) -> str:
        handle = "mem://" + hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[handle] = bytes(data)
        return handle

    async def get(self, handle: str) -> bytes:
        with self._lock:
            if handle not in self._blobs:
                raise PersistenceError(f"Blob '{handle}' not found")
            return self._blobs[handle]

    def __len__(self) -> int:
        return len(self._blobs)


class MemoryRegistryClient:
    """Registry double that records workflow entries and returns synthetic tx hashes."""

    def __init__(self) -> None:
        self.workflows: Dict[bytes, WorkflowRecord] = {}
        self.removed: List[bytes] = []
        self.deployment: Optional[NibbleDeployment] = None
        self._nonce = 0
        self._lock = Lock()

    def _tx_hash(self, *parts: bytes) -> str:
        with self._lock:
            self._nonce += 1
            nonce = self._nonce
        digest = hashlib.sha256(nonce.to_bytes(8, "big"))
        for part in parts:
            digest.update(part)
        return "0x" + digest.hexdigest()

    async def deploy_nibble(self) -> NibbleDeployment:
        nibble_id = generate_id(b"memory-registry")
        addresses = [
            "0x" + hashlib.sha256(nibble_id + role.value.encode()).hexdigest()[:40]
            for role in DEPLOYMENT_ORDER
        ]
        self.deployment = NibbleDeployment.from_factory_output(addresses, nibble_id, 1)
        return self.deployment

    async def add_or_modify_workflow(self, record: WorkflowRecord) -> str:
        with self._lock:
            self.workflows[record.id] = record
        logger.debug("Registered workflow %s -> %s", record.id.hex(), record.metadata)
        return self._tx_hash(record.id, record.metadata.encode())

    async def remove_workflow(self, workflow_id: bytes) -> str:
        with self._lock:
            self.workflows.pop(workflow_id, None)
            self.removed.append(workflow_id)
        return self._tx_hash(workflow_id)
