from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal

from paysweep.adapters.ledger import LedgerClient
from paysweep.domain.errors import LedgerRejectedError, TransientNetworkError
from paysweep.domain.intent import PaymentIntent
from paysweep.persistence.intent_store import IntentStore
from paysweep.services.poll import poll_until

logger = logging.getLogger(__name__)


class AccountActivator:
    """Makes sure an address exists on the ledger before it has to transact."""

    def __init__(
        self,
        ledger: LedgerClient,
        store: IntentStore,
        *,
        activation_amount: Decimal,
        activation_amount_max: Decimal,
        poll_interval_seconds: float,
        poll_max_attempts: int,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.activation_amount = activation_amount
        self.activation_amount_max = activation_amount_max
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_max_attempts = poll_max_attempts
        self.sleep_fn = sleep_fn

    def amount_for_attempt(self, prior_attempts: int) -> Decimal:
        return min(self.activation_amount * (prior_attempts + 1), self.activation_amount_max)

    def ensure_active(self, address: str, *, intent: PaymentIntent | None = None) -> bool:
        try:
            if self.ledger.account_exists(address):
                self._mark_activated(intent)
                return True
        except TransientNetworkError as exc:
            logger.warning(
                "activation_check_failed",
                extra={"extra": {"address": address, "error": str(exc)}},
            )
            return False

        prior_attempts = intent.activation_attempts if intent is not None else 0
        amount = self.amount_for_attempt(prior_attempts)
        if intent is not None:
            self.store.update_conditional(
                intent.intent_id,
                intent.status,
                {},
                increment={"activation_attempts": 1},
                event_type="activation_attempted",
                event_payload={"amount": str(amount), "attempt": prior_attempts + 1},
            )

        try:
            tx_id = self.ledger.send_native(
                address,
                amount,
                idempotency_key=(
                    f"activate:{intent.intent_id}:{prior_attempts + 1}" if intent is not None else None
                ),
            )
        except (TransientNetworkError, LedgerRejectedError) as exc:
            logger.warning(
                "activation_send_failed",
                extra={"extra": {"address": address, "amount": str(amount), "error": str(exc)}},
            )
            return False

        logger.info(
            "activation_sent",
            extra={"extra": {"address": address, "amount": str(amount), "transaction_id": tx_id}},
        )
        outcome = poll_until(
            lambda: self.ledger.account_exists(address),
            interval_seconds=self.poll_interval_seconds,
            max_attempts=self.poll_max_attempts,
            sleep_fn=self.sleep_fn,
            label="account_activation",
        )
        if not outcome.confirmed:
            logger.warning(
                "activation_not_observed",
                extra={"extra": {"address": address, "attempts": outcome.attempts}},
            )
            return False

        self._mark_activated(intent)
        logger.info("account_activated", extra={"extra": {"address": address}})
        return True

    def _mark_activated(self, intent: PaymentIntent | None) -> None:
        if intent is None or intent.account_activated:
            return
        self.store.update_conditional(intent.intent_id, intent.status, {"account_activated": True})
