"""Custom exceptions for the workflow engine."""

from __future__ import annotations

from typing import Optional


class NibbleError(Exception):
    """Base class for every error surfaced by the engine."""


# Build-time validation -----------------------------------------------------


class UnknownAdapter(NibbleError, KeyError):
    """Raised when a referenced adapter is not in the catalog."""

    def __init__(self, kind: Optional[str], adapter_id: bytes) -> None:
        self.kind = kind
        self.adapter_id = adapter_id
        label = kind or "adapter"
        super().__init__(f"{label} '{adapter_id.hex()}' is not registered")

    def __str__(self) -> str:
        return self.args[0]


class UnknownWorkflow(NibbleError, KeyError):
    """Raised when a workflow id is not known to the manager."""

    def __init__(self, workflow_id: bytes) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id.hex()}' not found")

    def __str__(self) -> str:
        return self.args[0]


class WrongCapability(NibbleError, ValueError):
    """Raised when an adapter is used where another capability is required."""

    def __init__(self, adapter_id: bytes, kind: str, required: str) -> None:
        self.adapter_id = adapter_id
        self.kind = kind
        self.required = required
        super().__init__(
            f"Adapter '{adapter_id.hex()}' of kind {kind} is not {required}"
        )


class CyclicWorkflow(NibbleError, ValueError):
    """Raised when the node graph or the dependency graph has a cycle."""


class DanglingReference(NibbleError, ValueError):
    """Raised when a link points at a node that is not in the workflow."""


class InvalidAdapter(NibbleError, ValueError):
    """Raised when adapter attributes fall outside their validated ranges."""


# Runtime -------------------------------------------------------------------


class GateDenied(NibbleError):
    """A gating adapter evaluated to false on an inbound link."""

    def __init__(self, link_id: bytes, reason: str = "gate returned false") -> None:
        self.link_id = link_id
        self.reason = reason
        super().__init__(f"Link '{link_id.hex()}' denied: {reason}")


class AdapterError(NibbleError):
    """Failure raised from adapter work. Subclasses name the kind."""


class HttpError(AdapterError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ChainError(AdapterError):
    pass


class DecodeError(AdapterError):
    pass


class LLMError(AdapterError):
    pass


class AdapterTimeout(AdapterError):
    pass


class InvokeError(NibbleError):
    """Wraps an adapter failure with the node it happened on."""

    def __init__(self, node_id: bytes, cause: BaseException) -> None:
        self.node_id = node_id
        self.cause = cause
        self.kind = cause.__class__.__name__
        super().__init__(f"Node '{node_id.hex()}' failed ({self.kind}): {cause}")


class PersistenceError(NibbleError):
    """Blob upload, blob retrieval or registry write failed."""


class Cancelled(NibbleError):
    """The workflow was cancelled while work was in flight."""
