from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from paysweep.domain.intent import IntentStatus, PaymentIntent
from paysweep.persistence.interfaces.intents_repo import IntentEvent, UnmatchedTransferRecord
from paysweep.persistence.uow import UnitOfWorkFactory


class IntentStore:
    """Durable intent store; every call runs in its own short transaction.

    Short transactions keep the SQLite write lock free while the engine waits on
    the ledger, so the scheduled loop and an admin-triggered cycle can interleave.
    """

    def __init__(self, db_path: str) -> None:
        self._uow = UnitOfWorkFactory(db_path)
        self._read_uow = UnitOfWorkFactory(db_path, read_only=True)

    def insert(self, intent: PaymentIntent) -> None:
        with self._uow() as uow:
            uow.intents.insert(intent)
            uow.intents.record_event(
                intent.intent_id,
                "intent_created",
                {"expected_amount": str(intent.expected_amount), "memo": intent.memo},
            )

    def get(self, intent_id: str) -> PaymentIntent | None:
        with self._read_uow() as uow:
            return uow.intents.get(intent_id)

    def find_one(self, **filters: object) -> PaymentIntent | None:
        with self._read_uow() as uow:
            return uow.intents.find_one(**filters)

    def find_many(
        self,
        *,
        statuses: Iterable[IntentStatus] | None = None,
        destination_address: str | None = None,
        limit: int | None = None,
    ) -> list[PaymentIntent]:
        with self._read_uow() as uow:
            return uow.intents.find_many(
                statuses=statuses, destination_address=destination_address, limit=limit
            )

    def external_transaction_ids(self, transaction_ids: Iterable[str]) -> set[str]:
        with self._read_uow() as uow:
            return uow.intents.external_transaction_ids(transaction_ids)

    def consolidation_transaction_ids(self, transaction_ids: Iterable[str]) -> set[str]:
        with self._read_uow() as uow:
            return uow.intents.consolidation_transaction_ids(transaction_ids)

    def intake_addresses(self, addresses: Iterable[str], *, exclude: str | None = None) -> set[str]:
        with self._read_uow() as uow:
            return uow.intents.intake_addresses(addresses, exclude=exclude)

    def update_conditional(
        self,
        intent_id: str,
        expected_status: IntentStatus,
        patch: Mapping[str, object],
        *,
        increment: Mapping[str, int] | None = None,
        allow_override: bool = False,
        event_type: str | None = None,
        event_payload: Mapping[str, Any] | None = None,
    ) -> bool:
        """Conditional update; the journey event is written only when the update applied."""

        with self._uow() as uow:
            applied = uow.intents.update_conditional(
                intent_id,
                expected_status,
                patch,
                increment=increment,
                allow_override=allow_override,
            )
            if applied and event_type is not None:
                uow.intents.record_event(intent_id, event_type, event_payload or {})
            return applied

    def record_event(self, intent_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        with self._uow() as uow:
            uow.intents.record_event(intent_id, event_type, payload)

    def list_events(self, intent_id: str) -> list[IntentEvent]:
        with self._read_uow() as uow:
            return uow.intents.list_events(intent_id)

    def record_unmatched(
        self, *, transaction_id: str, to_address: str, atomic_amount: int, memo: str | None
    ) -> int:
        with self._uow() as uow:
            return uow.audit.record_unmatched(
                transaction_id=transaction_id,
                to_address=to_address,
                atomic_amount=atomic_amount,
                memo=memo,
            )

    def clear_unmatched(self, transaction_id: str) -> None:
        with self._uow() as uow:
            uow.audit.clear_unmatched(transaction_id)

    def list_unmatched(self) -> list[UnmatchedTransferRecord]:
        with self._read_uow() as uow:
            return uow.audit.list_unmatched()

    def record_cycle(self, cycle_id: str, counts: Mapping[str, int], errors: list[str]) -> None:
        with self._uow() as uow:
            uow.audit.record_cycle(cycle_id, counts, errors)

    def load_cycle(self, cycle_id: str) -> dict[str, object] | None:
        with self._read_uow() as uow:
            return uow.audit.load_cycle(cycle_id)

    def claim_admin_trigger(self, name: str, now: datetime, min_interval_seconds: float) -> float | None:
        with self._uow() as uow:
            return uow.audit.claim_admin_trigger(name, now, min_interval_seconds)
