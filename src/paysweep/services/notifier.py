from __future__ import annotations

import logging

import httpx

from paysweep.domain.intent import PaymentIntent
from paysweep.persistence.intent_store import IntentStore

logger = logging.getLogger(__name__)


class CallbackNotifier:
    """Best-effort merchant callback when an intent completes."""

    def __init__(
        self,
        store: IntentStore,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.store = store
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)

    def close(self) -> None:
        self._client.close()

    def notify_completed(self, intent_id: str) -> bool:
        intent = self.store.get(intent_id)
        if intent is None or not intent.callback_url:
            return False
        return self._post(intent)

    def _post(self, intent: PaymentIntent) -> bool:
        body = {
            "intent_id": intent.intent_id,
            "order_id": intent.order_id,
            "status": intent.status.value,
            "amount": str(intent.expected_amount),
            "external_transaction_id": intent.external_transaction_id,
            "consolidation_transaction_id": intent.consolidation_transaction_id,
        }
        try:
            response = self._client.post(str(intent.callback_url), json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "callback_delivery_failed",
                extra={"extra": {"intent_id": intent.intent_id, "error_type": type(exc).__name__}},
            )
            self.store.record_event(
                intent.intent_id, "callback_failed", {"error_type": type(exc).__name__}
            )
            return False
        logger.info(
            "callback_delivered",
            extra={"extra": {"intent_id": intent.intent_id, "status_code": response.status_code}},
        )
        self.store.record_event(
            intent.intent_id, "callback_delivered", {"status_code": response.status_code}
        )
        return True
