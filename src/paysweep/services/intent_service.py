from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from paysweep.adapters.ledger import LedgerClient
from paysweep.config import IntakeMode
from paysweep.domain.amounts import parse_amount
from paysweep.domain.errors import IllegalTransitionError, IntentNotFoundError
from paysweep.domain.intent import IntentStatus, PaymentIntent, new_intent_id
from paysweep.persistence.intent_store import IntentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreatedIntent:
    intent_id: str
    destination_address: str
    expected_amount: Decimal
    memo: str | None


class IntentService:
    """Intake and administrative operations on payment intents."""

    def __init__(
        self,
        store: IntentStore,
        ledger: LedgerClient,
        *,
        custody_address: str,
        intake_mode: IntakeMode = IntakeMode.INTERMEDIATE,
        asset_decimals: int = 6,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.custody_address = custody_address
        self.intake_mode = intake_mode
        self.asset_decimals = asset_decimals
        self._clock = clock or (lambda: datetime.now(UTC))

    def create_intent(
        self,
        expected_amount: Decimal | str,
        memo: str | None = None,
        *,
        order_id: str | None = None,
        description: str | None = None,
        callback_url: str | None = None,
    ) -> CreatedIntent:
        amount = parse_amount(expected_amount, decimals=self.asset_decimals)
        memo = memo.strip() if memo and memo.strip() else None
        if self.intake_mode is IntakeMode.CUSTODY:
            if memo is None:
                logger.warning(
                    "custody_intent_without_memo",
                    extra={"extra": {"expected_amount": str(amount)}},
                )
            destination, credential = self.custody_address, None
        else:
            account = self.ledger.generate_account()
            destination, credential = account.address, account.credential

        now = self._clock()
        intent = PaymentIntent(
            intent_id=new_intent_id(),
            destination_address=destination,
            expected_amount=amount,
            status=IntentStatus.PENDING,
            created_at=now,
            updated_at=now,
            memo=memo,
            source_credential=credential,
            order_id=order_id,
            description=description,
            callback_url=callback_url,
        )
        self.store.insert(intent)
        logger.info(
            "intent_created",
            extra={
                "extra": {
                    "intent_id": intent.intent_id,
                    "destination_address": destination,
                    "expected_amount": str(amount),
                    "intake_mode": self.intake_mode.value,
                }
            },
        )
        return CreatedIntent(intent.intent_id, destination, amount, memo)

    def get_intent(self, intent_id: str) -> dict[str, Any]:
        intent = self.store.get(intent_id)
        if intent is None:
            raise IntentNotFoundError(f"unknown intent {intent_id}")
        return intent.public_view()

    def list_intents(self, *, status: IntentStatus | None = None, limit: int = 100) -> list[dict[str, Any]]:
        statuses = [status] if status is not None else None
        return [intent.public_view() for intent in self.store.find_many(statuses=statuses, limit=limit)]

    def intent_events(self, intent_id: str) -> list[dict[str, Any]]:
        return [
            {"event_type": event.event_type, "payload": event.payload, "ts": event.ts.isoformat()}
            for event in self.store.list_events(intent_id)
        ]

    def override_failed(self, intent_id: str, reason: str) -> dict[str, Any]:
        """Operator override: put a failed intent back in line for consolidation."""

        intent = self.store.get(intent_id)
        if intent is None:
            raise IntentNotFoundError(f"unknown intent {intent_id}")
        if intent.status is not IntentStatus.FAILED or intent.external_transaction_id is None:
            raise IllegalTransitionError(intent.status.value, IntentStatus.FUNDS_RECEIVED.value)
        applied = self.store.update_conditional(
            intent_id,
            IntentStatus.FAILED,
            {
                "status": IntentStatus.FUNDS_RECEIVED,
                "consolidation_attempts": 0,
                "activation_attempts": 0,
                "last_error": None,
            },
            allow_override=True,
            event_type="failed_override",
            event_payload={"reason": reason},
        )
        if not applied:
            raise IllegalTransitionError(intent.status.value, IntentStatus.FUNDS_RECEIVED.value)
        logger.warning("intent_failed_override", extra={"extra": {"intent_id": intent_id, "reason": reason}})
        return self.get_intent(intent_id)
