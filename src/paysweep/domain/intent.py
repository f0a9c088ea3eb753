from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from paysweep.domain.errors import IllegalTransitionError

CUSTODY_SELF_TRANSFER_SKIPPED = "CUSTODY_SELF_TRANSFER_SKIPPED"


class IntentStatus(StrEnum):
    PENDING = "pending"
    FUNDS_RECEIVED = "funds_received"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING: frozenset(
        {IntentStatus.FUNDS_RECEIVED, IntentStatus.COMPLETED, IntentStatus.FAILED}
    ),
    IntentStatus.FUNDS_RECEIVED: frozenset({IntentStatus.COMPLETED, IntentStatus.FAILED}),
    IntentStatus.COMPLETED: frozenset(),
    IntentStatus.FAILED: frozenset(),
}

# Operator-only path out of the terminal failed state.
OVERRIDE_TRANSITION = (IntentStatus.FAILED, IntentStatus.FUNDS_RECEIVED)


def can_transition(current: IntentStatus, target: IntentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: IntentStatus, target: IntentStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)


def ensure_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def new_intent_id() -> str:
    return f"pi_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    destination_address: str
    expected_amount: Decimal
    status: IntentStatus
    created_at: datetime
    updated_at: datetime
    memo: str | None = None
    source_credential: str | None = None
    external_transaction_id: str | None = None
    consolidation_transaction_id: str | None = None
    pending_consolidation_tx_id: str | None = None
    account_activated: bool = False
    activation_attempts: int = 0
    consolidation_attempts: int = 0
    order_id: str | None = None
    description: str | None = None
    callback_url: str | None = None
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (IntentStatus.COMPLETED, IntentStatus.FAILED)

    def public_view(self) -> dict[str, Any]:
        """Serializable view of the intent with the source credential removed."""

        payload = asdict(self)
        payload.pop("source_credential", None)
        payload["status"] = self.status.value
        payload["expected_amount"] = str(self.expected_amount)
        payload["created_at"] = ensure_utc(self.created_at).isoformat()
        payload["updated_at"] = ensure_utc(self.updated_at).isoformat()
        return payload
