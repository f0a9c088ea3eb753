from __future__ import annotations

import logging
from dataclasses import dataclass

from paysweep.adapters.ledger import LedgerClient
from paysweep.domain.errors import LedgerRejectedError, TransientNetworkError
from paysweep.domain.ledger import ResourceClass, ResourceLevels

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegationResult:
    resource_class: ResourceClass
    amount: int
    success: bool
    transaction_id: str | None = None
    error: str | None = None


class ResourceDelegator:
    """Lends execution capacity to source addresses. Never raises on ledger errors."""

    def __init__(self, ledger: LedgerClient, *, energy_target: int, bandwidth_target: int) -> None:
        self.ledger = ledger
        self.targets = {
            ResourceClass.ENERGY: energy_target,
            ResourceClass.BANDWIDTH: bandwidth_target,
        }

    def check_resources(self, address: str) -> ResourceLevels | None:
        try:
            return self.ledger.get_account_resources(address)
        except (TransientNetworkError, LedgerRejectedError) as exc:
            logger.warning(
                "resource_check_failed", extra={"extra": {"address": address, "error": str(exc)}}
            )
            return None

    def delegate(self, address: str, resource_class: ResourceClass, amount: int) -> DelegationResult:
        try:
            tx_id = self.ledger.delegate_resource(address, resource_class, amount)
        except (TransientNetworkError, LedgerRejectedError) as exc:
            logger.warning(
                "resource_delegation_failed",
                extra={
                    "extra": {
                        "address": address,
                        "resource": resource_class.value,
                        "amount": amount,
                        "error": str(exc),
                    }
                },
            )
            return DelegationResult(resource_class, amount, success=False, error=str(exc))
        logger.info(
            "resource_delegated",
            extra={
                "extra": {
                    "address": address,
                    "resource": resource_class.value,
                    "amount": amount,
                    "transaction_id": tx_id,
                }
            },
        )
        return DelegationResult(resource_class, amount, success=True, transaction_id=tx_id)

    def ensure_resources(self, address: str) -> list[DelegationResult]:
        levels = self.check_resources(address)
        results: list[DelegationResult] = []
        for resource_class, target in self.targets.items():
            current = levels.level(resource_class) if levels is not None else 0
            if target <= 0 or current >= target:
                continue
            results.append(self.delegate(address, resource_class, target - current))
        return results
