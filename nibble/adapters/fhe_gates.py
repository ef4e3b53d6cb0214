from __future__ import annotations

"""FHE gates: run a ciphertext operation on a contract and check the result."""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict

from nibble.adapters.base import AdapterKind, Gating, GateScope
from nibble.engine.exceptions import ChainError, InvalidAdapter

if TYPE_CHECKING:
    from nibble.core import Nibble
    from nibble.engine.context import ExecutionContext

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class FHEGate(Gating):
    kind = AdapterKind.FHE_GATE

    key: str
    contract_address: str
    operation: str
    chain: str = "ethereum"

    def validate(self) -> None:
        super().validate()
        if not self.contract_address or not self.operation:
            raise InvalidAdapter(f"FHE gate '{self.name}' needs a contract address and an operation")

    async def check(self, ctx: "ExecutionContext", nibble: "Nibble", scope: GateScope) -> bool:
        try:
            cipher = await nibble.contracts.call(self.contract_address, self.operation, [self.key])
            valid = await nibble.contracts.call(self.contract_address, "isValid", [cipher], "bool")
        except ChainError:
            raise
        except Exception as exc:
            raise ChainError(f"FHE gate '{self.name}' call failed: {exc}") from exc
        logger.debug("FHE gate '%s' %s -> %s", self.name, self.operation, valid)
        return bool(valid)

    def describe(self) -> Dict[str, Any]:
        summary = super().describe()
        summary.update({"contract_address": self.contract_address, "operation": self.operation})
        return summary
