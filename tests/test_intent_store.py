from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from paysweep.domain.errors import IllegalTransitionError
from paysweep.domain.intent import IntentStatus
from paysweep.persistence.intent_store import IntentStore
from paysweep.persistence.uow import UnitOfWorkFactory


def test_insert_and_get_roundtrip_preserves_fields(store, make_intent) -> None:
    intent = make_intent("12.5", memo="order-7", order_id="A-7", callback_url="http://merchant/cb")

    loaded = store.get(intent.intent_id)

    assert loaded == intent
    assert store.list_events(intent.intent_id)[0].event_type == "intent_created"


def test_find_many_orders_oldest_first(store, make_intent) -> None:
    base = datetime(2026, 1, 1, tzinfo=UTC)
    newer = make_intent(created_at=base + timedelta(minutes=5))
    older = make_intent(created_at=base)
    make_intent(status=IntentStatus.COMPLETED, created_at=base - timedelta(days=1))

    pending = store.find_many(statuses=[IntentStatus.PENDING])

    assert [i.intent_id for i in pending] == [older.intent_id, newer.intent_id]
    assert store.find_many(statuses=[]) == []


def test_conditional_update_requires_expected_status(store, make_intent) -> None:
    intent = make_intent()

    assert store.update_conditional(
        intent.intent_id,
        IntentStatus.PENDING,
        {"status": IntentStatus.FUNDS_RECEIVED, "external_transaction_id": "tx-1"},
    )
    assert not store.update_conditional(
        intent.intent_id,
        IntentStatus.PENDING,
        {"status": IntentStatus.FUNDS_RECEIVED, "external_transaction_id": "tx-1"},
    )
    assert store.get(intent.intent_id).status is IntentStatus.FUNDS_RECEIVED


def test_conditional_update_rejects_illegal_transition(store, make_intent) -> None:
    intent = make_intent(status=IntentStatus.COMPLETED)

    with pytest.raises(IllegalTransitionError):
        store.update_conditional(intent.intent_id, IntentStatus.COMPLETED, {"status": IntentStatus.PENDING})


def test_external_transaction_id_is_unique_across_intents(store, make_intent) -> None:
    first = make_intent()
    second = make_intent()

    assert store.update_conditional(
        first.intent_id, IntentStatus.PENDING, {"external_transaction_id": "tx-shared"}
    )
    assert not store.update_conditional(
        second.intent_id, IntentStatus.PENDING, {"external_transaction_id": "tx-shared"}
    )
    assert store.get(second.intent_id).external_transaction_id is None
    assert store.external_transaction_ids(["tx-shared", "tx-other"]) == {"tx-shared"}


def test_own_sweep_lookups(store, make_intent) -> None:
    swept = make_intent(
        status=IntentStatus.COMPLETED,
        external_transaction_id="in-1",
        consolidation_transaction_id="out-1",
    )
    make_intent(status=IntentStatus.FUNDS_RECEIVED, pending_consolidation_tx_id="out-2")
    custody = make_intent(destination="TCustodyWallet0000000000000000001")

    assert store.consolidation_transaction_ids(["out-1", "out-2", "in-1"]) == {"out-1", "out-2"}
    assert store.intake_addresses(
        [swept.destination_address, custody.destination_address, "TPayer"],
        exclude=custody.destination_address,
    ) == {swept.destination_address}


def test_admin_trigger_claim_is_shared_through_the_database(store, db_path) -> None:
    now = datetime(2026, 3, 1, tzinfo=UTC)

    assert store.claim_admin_trigger("cycle", now, 30) is None
    assert IntentStore(db_path).claim_admin_trigger("cycle", now + timedelta(seconds=5), 30) == 25
    assert store.claim_admin_trigger("cycle", now - timedelta(hours=1), 30) is None


def test_consolidation_id_is_set_at_most_once(store, make_intent) -> None:
    intent = make_intent(status=IntentStatus.FUNDS_RECEIVED)

    assert store.update_conditional(
        intent.intent_id, IntentStatus.FUNDS_RECEIVED, {"consolidation_transaction_id": "out-1"}
    )
    assert not store.update_conditional(
        intent.intent_id, IntentStatus.FUNDS_RECEIVED, {"consolidation_transaction_id": "out-2"}
    )
    with pytest.raises(ValueError, match="cannot be cleared"):
        store.update_conditional(
            intent.intent_id, IntentStatus.FUNDS_RECEIVED, {"consolidation_transaction_id": None}
        )
    assert store.get(intent.intent_id).consolidation_transaction_id == "out-1"


def test_immutable_columns_cannot_be_patched(store, make_intent) -> None:
    intent = make_intent()

    with pytest.raises(ValueError, match="cannot be updated"):
        store.update_conditional(intent.intent_id, IntentStatus.PENDING, {"expected_amount": "99"})


def test_increment_counts_and_event_written_only_when_applied(store, make_intent) -> None:
    intent = make_intent(status=IntentStatus.FUNDS_RECEIVED)

    store.update_conditional(
        intent.intent_id,
        IntentStatus.FUNDS_RECEIVED,
        {"last_error": "boom"},
        increment={"consolidation_attempts": 1},
        event_type="consolidation_attempt_failed",
    )
    store.update_conditional(
        intent.intent_id,
        IntentStatus.PENDING,
        {},
        increment={"consolidation_attempts": 1},
        event_type="should_not_exist",
    )

    loaded = store.get(intent.intent_id)
    assert loaded.consolidation_attempts == 1
    assert loaded.last_error == "boom"
    assert [e.event_type for e in store.list_events(intent.intent_id)] == [
        "intent_created",
        "consolidation_attempt_failed",
    ]


def test_override_transition_needs_explicit_flag(store, make_intent) -> None:
    intent = make_intent(status=IntentStatus.FAILED, external_transaction_id="tx-9")

    with pytest.raises(IllegalTransitionError):
        store.update_conditional(
            intent.intent_id, IntentStatus.FAILED, {"status": IntentStatus.FUNDS_RECEIVED}
        )
    assert store.update_conditional(
        intent.intent_id,
        IntentStatus.FAILED,
        {"status": IntentStatus.FUNDS_RECEIVED},
        allow_override=True,
    )


def test_unmatched_transfers_count_sightings(store) -> None:
    assert store.record_unmatched(transaction_id="in-1", to_address="TA", atomic_amount=5, memo=None) == 1
    assert store.record_unmatched(transaction_id="in-1", to_address="TA", atomic_amount=5, memo=None) == 2

    records = store.list_unmatched()
    assert [(r.transaction_id, r.seen_count) for r in records] == [("in-1", 2)]

    store.clear_unmatched("in-1")
    assert store.list_unmatched() == []


def test_cycle_audit_is_persisted(store) -> None:
    store.record_cycle("cyc_1", {"matched": 2, "errors": 1}, ["x: boom"])

    assert store.load_cycle("cyc_1")["counts"] == {"errors": 1, "matched": 2}
    assert store.load_cycle("missing") is None


def test_read_only_unit_of_work_blocks_writes(db_path, make_intent) -> None:
    intent = make_intent()
    factory = UnitOfWorkFactory(db_path, read_only=True)

    with pytest.raises(PermissionError):
        with factory() as uow:
            uow.intents.update_conditional(intent.intent_id, IntentStatus.PENDING, {"last_error": "x"})


def test_unit_of_work_rolls_back_on_error(db_path, make_intent, store) -> None:
    intent = make_intent()
    factory = UnitOfWorkFactory(db_path)

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.intents.update_conditional(intent.intent_id, IntentStatus.PENDING, {"last_error": "x"})
            raise RuntimeError("abort")

    assert store.get(intent.intent_id).last_error is None


def test_schema_uses_partial_unique_index(db_path, make_intent) -> None:
    make_intent()
    conn = sqlite3.connect(db_path)
    try:
        sql = conn.execute(
            "SELECT sql FROM sqlite_master WHERE name = 'idx_payment_intents_external_tx_unique'"
        ).fetchone()[0]
    finally:
        conn.close()
    assert "WHERE external_transaction_id IS NOT NULL" in sql
