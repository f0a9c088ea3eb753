from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from paysweep.domain.intent import IntentStatus, PaymentIntent


@dataclass(frozen=True)
class IntentEvent:
    intent_id: str
    event_type: str
    payload: dict[str, Any]
    ts: datetime


@dataclass(frozen=True)
class UnmatchedTransferRecord:
    transaction_id: str
    to_address: str
    atomic_amount: int
    memo: str | None
    seen_count: int
    first_seen_at: datetime
    last_seen_at: datetime


class IntentsRepoProtocol(Protocol):
    def insert(self, intent: PaymentIntent) -> None: ...

    def get(self, intent_id: str) -> PaymentIntent | None: ...

    def find_one(self, **filters: object) -> PaymentIntent | None: ...

    def find_many(
        self,
        *,
        statuses: Iterable[IntentStatus] | None = None,
        destination_address: str | None = None,
        limit: int | None = None,
    ) -> list[PaymentIntent]: ...

    def external_transaction_ids(self, transaction_ids: Iterable[str]) -> set[str]: ...

    def consolidation_transaction_ids(self, transaction_ids: Iterable[str]) -> set[str]: ...

    def intake_addresses(self, addresses: Iterable[str], *, exclude: str | None = None) -> set[str]: ...

    def update_conditional(
        self,
        intent_id: str,
        expected_status: IntentStatus,
        patch: Mapping[str, object],
        *,
        increment: Mapping[str, int] | None = None,
        allow_override: bool = False,
    ) -> bool: ...

    def record_event(self, intent_id: str, event_type: str, payload: Mapping[str, Any]) -> None: ...

    def list_events(self, intent_id: str) -> list[IntentEvent]: ...


class AuditRepoProtocol(Protocol):
    def record_unmatched(
        self, *, transaction_id: str, to_address: str, atomic_amount: int, memo: str | None
    ) -> int: ...

    def clear_unmatched(self, transaction_id: str) -> None: ...

    def list_unmatched(self) -> list[UnmatchedTransferRecord]: ...

    def record_cycle(self, cycle_id: str, counts: Mapping[str, int], errors: list[str]) -> None: ...

    def load_cycle(self, cycle_id: str) -> dict[str, object] | None: ...

    def claim_admin_trigger(self, name: str, now: datetime, min_interval_seconds: float) -> float | None: ...
