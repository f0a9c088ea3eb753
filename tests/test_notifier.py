from __future__ import annotations

import json

import httpx

from paysweep.domain.intent import IntentStatus
from paysweep.services.notifier import CallbackNotifier


def test_completed_intent_is_posted_to_callback(store, make_intent) -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    intent = make_intent(
        "10",
        status=IntentStatus.COMPLETED,
        order_id="ord-9",
        callback_url="https://merchant.test/hooks/paid",
        external_transaction_id="in-1",
        consolidation_transaction_id="out-1",
    )
    notifier = CallbackNotifier(store, transport=httpx.MockTransport(handler))

    assert notifier.notify_completed(intent.intent_id)
    notifier.close()

    assert posted == [
        {
            "intent_id": intent.intent_id,
            "order_id": "ord-9",
            "status": "completed",
            "amount": "10",
            "external_transaction_id": "in-1",
            "consolidation_transaction_id": "out-1",
        }
    ]
    assert store.list_events(intent.intent_id)[-1].event_type == "callback_delivered"


def test_callback_failures_are_recorded_not_raised(store, make_intent) -> None:
    intent = make_intent(status=IntentStatus.COMPLETED, callback_url="https://merchant.test/down")
    notifier = CallbackNotifier(
        store, transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )

    assert not notifier.notify_completed(intent.intent_id)

    event = store.list_events(intent.intent_id)[-1]
    assert event.event_type == "callback_failed"
    assert event.payload == {"error_type": "HTTPStatusError"}


def test_intents_without_callback_are_skipped(store, make_intent) -> None:
    calls: list[httpx.Request] = []
    intent = make_intent(status=IntentStatus.COMPLETED)
    notifier = CallbackNotifier(store, transport=httpx.MockTransport(calls.append))

    assert not notifier.notify_completed(intent.intent_id)
    assert not notifier.notify_completed("pi_unknown")
    assert calls == []
