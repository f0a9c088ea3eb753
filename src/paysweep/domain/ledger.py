from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class ConfirmationState(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class ResourceClass(StrEnum):
    ENERGY = "ENERGY"
    BANDWIDTH = "BANDWIDTH"


@dataclass(frozen=True)
class ExternalTransfer:
    transaction_id: str
    from_address: str
    to_address: str
    asset_contract_id: str
    atomic_amount: int
    block_timestamp: datetime
    confirmation_state: ConfirmationState = ConfirmationState.CONFIRMED
    memo: str | None = None


@dataclass(frozen=True)
class ResourceLevels:
    energy: int
    bandwidth: int

    def level(self, resource_class: ResourceClass) -> int:
        if resource_class is ResourceClass.ENERGY:
            return self.energy
        return self.bandwidth


@dataclass(frozen=True)
class GeneratedAccount:
    address: str
    credential: str

    def __repr__(self) -> str:
        return f"GeneratedAccount(address={self.address!r}, credential='***')"
