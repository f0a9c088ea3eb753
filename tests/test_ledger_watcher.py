from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from paysweep.domain.errors import TransferListingTruncatedError, TransientNetworkError
from paysweep.domain.intent import CUSTODY_SELF_TRANSFER_SKIPPED, IntentStatus, PaymentIntent
from paysweep.domain.ledger import ConfirmationState, ExternalTransfer
from paysweep.services.ledger_watcher import LedgerWatcher, match_transfers

CUSTODY = "TCustodyWallet0000000000000000001"
CONTRACT = "TAssetContract000000000000000001"


def _watcher(fake_ledger, store, **kwargs) -> LedgerWatcher:
    return LedgerWatcher(
        fake_ledger,
        store,
        custody_address=CUSTODY,
        asset_contract_id=CONTRACT,
        **kwargs,
    )


def _transfer(
    tx_id: str, to: str, atomic: int, *, memo=None, contract=CONTRACT, at=None, state=None, sender="TPayer"
):
    return ExternalTransfer(
        transaction_id=tx_id,
        from_address=sender,
        to_address=to,
        asset_contract_id=contract,
        atomic_amount=atomic,
        block_timestamp=at or datetime(2026, 3, 1, tzinfo=UTC),
        confirmation_state=state or ConfirmationState.CONFIRMED,
        memo=memo,
    )


def _pending(intent_id: str, address: str, amount: str, *, memo=None, minute: int = 0) -> PaymentIntent:
    created = datetime(2026, 3, 1, tzinfo=UTC) - timedelta(hours=1) + timedelta(minutes=minute)
    return PaymentIntent(
        intent_id=intent_id,
        destination_address=address,
        expected_amount=Decimal(amount),
        status=IntentStatus.PENDING,
        created_at=created,
        updated_at=created,
        memo=memo,
    )


def test_match_requires_exact_amount_and_known_asset() -> None:
    intents = [_pending("pi_a", "TAddrA", "10")]
    report = match_transfers(
        [
            _transfer("t1", "TAddrA", 9_999_999),
            _transfer("t2", "TAddrA", 10_000_000, contract="TOtherToken"),
            _transfer("t3", "TStranger", 10_000_000),
            _transfer("t4", "TAddrA", 10_000_000, state=ConfirmationState.PENDING),
        ],
        intents,
        custody_address=CUSTODY,
        asset_contract_id=CONTRACT,
        asset_decimals=6,
    )
    assert report.pairs == []
    assert [t.transaction_id for t in report.unmatched] == ["t1"]
    assert sorted(t.transaction_id for t in report.ignored) == ["t2", "t3", "t4"]


def test_memo_wins_over_age_when_it_selects_one_candidate() -> None:
    intents = [
        _pending("pi_old", CUSTODY, "25", memo="order-1", minute=0),
        _pending("pi_new", CUSTODY, "25", memo="order-2", minute=5),
    ]
    report = match_transfers(
        [_transfer("t1", CUSTODY, 25_000_000, memo="order-2")],
        intents,
        custody_address=CUSTODY,
        asset_contract_id=CONTRACT,
        asset_decimals=6,
    )
    assert [(p.intent.intent_id, p.by_memo) for p in report.pairs] == [("pi_new", True)]


def test_oldest_candidate_wins_without_memo_and_each_intent_matches_once() -> None:
    intents = [
        _pending("pi_new", CUSTODY, "25", minute=5),
        _pending("pi_old", CUSTODY, "25", minute=0),
    ]
    report = match_transfers(
        [
            _transfer("t2", CUSTODY, 25_000_000, at=datetime(2026, 3, 1, 0, 2, tzinfo=UTC)),
            _transfer("t1", CUSTODY, 25_000_000, at=datetime(2026, 3, 1, 0, 1, tzinfo=UTC)),
            _transfer("t3", CUSTODY, 25_000_000, at=datetime(2026, 3, 1, 0, 3, tzinfo=UTC)),
        ],
        intents,
        custody_address=CUSTODY,
        asset_contract_id=CONTRACT,
        asset_decimals=6,
    )
    assert [(p.transfer.transaction_id, p.intent.intent_id) for p in report.pairs] == [
        ("t1", "pi_old"),
        ("t2", "pi_new"),
    ]
    assert [t.transaction_id for t in report.unmatched] == ["t3"]


def test_transfers_from_intake_addresses_are_sweeps_not_payments() -> None:
    intents = [_pending("pi_custody", CUSTODY, "10")]
    report = match_transfers(
        [
            _transfer("sweep", CUSTODY, 10_000_000, sender="TIntake1"),
            _transfer("paid", CUSTODY, 10_000_000, at=datetime(2026, 3, 1, 0, 1, tzinfo=UTC)),
        ],
        intents,
        custody_address=CUSTODY,
        asset_contract_id=CONTRACT,
        asset_decimals=6,
        own_sources={"TIntake1"},
    )
    assert [t.transaction_id for t in report.own_transfers] == ["sweep"]
    assert [(p.transfer.transaction_id, p.intent.intent_id) for p in report.pairs] == [("paid", "pi_custody")]
    assert report.unmatched == []


def test_stored_consolidation_ids_count_as_recorded(fake_ledger, store, make_intent) -> None:
    make_intent(
        "10",
        status=IntentStatus.COMPLETED,
        external_transaction_id="in-1",
        consolidation_transaction_id="out-done",
    )
    make_intent("10", status=IntentStatus.FUNDS_RECEIVED, pending_consolidation_tx_id="out-pending")
    custody_intent = make_intent("10", destination=CUSTODY)
    transfers = [
        _transfer("out-done", CUSTODY, 10_000_000, sender="TRelay"),
        _transfer("out-pending", CUSTODY, 10_000_000, sender="TRelay"),
    ]

    report = _watcher(fake_ledger, store).match(transfers, [custody_intent])

    assert sorted(t.transaction_id for t in report.already_matched) == ["out-done", "out-pending"]
    assert report.pairs == []


def test_custody_is_polled_only_for_pending_custody_intents(fake_ledger, store, make_intent) -> None:
    intent = make_intent("10")
    watcher = _watcher(fake_ledger, store)

    watcher.run()
    make_intent("2", destination=CUSTODY)
    watcher.run()

    polled = [args[0] for args in fake_ledger.calls_to("list_recent_asset_transfers")]
    assert polled == [intent.destination_address, CUSTODY, intent.destination_address]


def test_run_moves_matched_intent_to_funds_received(fake_ledger, store, make_intent) -> None:
    intent = make_intent("10")
    transfer = fake_ledger.add_transfer(intent.destination_address, 10_000_000)

    result = _watcher(fake_ledger, store).run()

    loaded = store.get(intent.intent_id)
    assert result.matched == [intent.intent_id]
    assert loaded.status is IntentStatus.FUNDS_RECEIVED
    assert loaded.external_transaction_id == transfer.transaction_id
    assert "funds_received" in [e.event_type for e in store.list_events(intent.intent_id)]


def test_custody_payment_completes_with_sentinel(fake_ledger, store, make_intent) -> None:
    intent = make_intent("3", destination=CUSTODY, memo="inv-3")
    fake_ledger.add_transfer(CUSTODY, 3_000_000, memo="inv-3")

    _watcher(fake_ledger, store).run()

    loaded = store.get(intent.intent_id)
    assert loaded.status is IntentStatus.COMPLETED
    assert loaded.consolidation_transaction_id == CUSTODY_SELF_TRANSFER_SKIPPED


def test_rerun_over_same_window_is_idempotent(fake_ledger, store, make_intent) -> None:
    intent = make_intent("10")
    fake_ledger.add_transfer(intent.destination_address, 10_000_000)
    watcher = _watcher(fake_ledger, store, overlap=timedelta(hours=1))

    first = watcher.run()
    second = watcher.run()

    assert first.matched == [intent.intent_id]
    assert second.matched == []
    assert second.conflicts == 0
    assert [e.event_type for e in store.list_events(intent.intent_id)].count("funds_received") == 1


def test_unmatched_transfer_is_recorded_and_logged_once(fake_ledger, store, make_intent, caplog) -> None:
    intent = make_intent("10")
    stray = fake_ledger.add_transfer(intent.destination_address, 7_000_000)
    watcher = _watcher(fake_ledger, store, overlap=timedelta(hours=1))

    with caplog.at_level(logging.WARNING, logger="paysweep.services.ledger_watcher"):
        watcher.run()
        watcher.run()

    assert store.get(intent.intent_id).status is IntentStatus.PENDING
    records = store.list_unmatched()
    assert [(r.transaction_id, r.seen_count) for r in records] == [(stray.transaction_id, 2)]
    warnings = [r for r in caplog.records if r.getMessage() == "unmatched_transfer_recorded"]
    assert len(warnings) == 1


def test_failed_pull_keeps_checkpoint(fake_ledger, store, make_intent) -> None:
    make_intent("10")
    base = datetime.now(UTC)
    ticks = iter([base + timedelta(minutes=1), base + timedelta(minutes=2)])
    watcher = _watcher(fake_ledger, store, clock=lambda: next(ticks))

    watcher.run()
    assert watcher.checkpoint == base + timedelta(minutes=1)

    fake_ledger.failures["list_recent_asset_transfers"] = TransientNetworkError("indexer down")
    with pytest.raises(TransientNetworkError):
        watcher.run()
    assert watcher.checkpoint == base + timedelta(minutes=1)


def test_truncated_pull_matches_partial_batch_and_holds_checkpoint(fake_ledger, store, make_intent) -> None:
    intent = make_intent("10")
    waiting = make_intent("4")
    started = datetime.now(UTC)
    read_through = started - timedelta(minutes=10)
    partial = _transfer("t-early", intent.destination_address, 10_000_000, at=read_through)
    fake_ledger.failures["list_recent_asset_transfers"] = TransferListingTruncatedError(
        intent.destination_address, [partial], read_through
    )
    watcher = _watcher(fake_ledger, store, clock=lambda: started)

    result = watcher.run()

    assert result.matched == [intent.intent_id]
    assert watcher.checkpoint == read_through

    del fake_ledger.failures["list_recent_asset_transfers"]
    watcher.run()
    assert fake_ledger.calls_to("list_recent_asset_transfers")[-1] == (
        waiting.destination_address,
        read_through - timedelta(seconds=30),
    )


def test_initial_checkpoint_is_bounded_by_lookback(fake_ledger, store) -> None:
    watcher = _watcher(fake_ledger, store, max_lookback=timedelta(hours=24))
    now = datetime(2026, 3, 1, 12, tzinfo=UTC)

    ancient = _pending("pi_a", "TAddrA", "1")
    ancient = replace(ancient, created_at=now - timedelta(days=10))
    recent = _pending("pi_b", "TAddrB", "1")

    assert watcher.initial_checkpoint([], now) == now
    assert watcher.initial_checkpoint([ancient], now) == now - timedelta(hours=24)
    assert watcher.initial_checkpoint([recent], now) == recent.created_at


def test_reconcile_intent_leaves_global_checkpoint(fake_ledger, store, make_intent) -> None:
    target = make_intent("4")
    other = make_intent("4")
    fake_ledger.add_transfer(target.destination_address, 4_000_000)
    fake_ledger.add_transfer(other.destination_address, 4_000_000)
    watcher = _watcher(fake_ledger, store)

    pair = watcher.reconcile_intent(target)

    assert pair is not None
    assert pair.intent.intent_id == target.intent_id
    assert watcher.checkpoint is None
    assert store.get(target.intent_id).status is IntentStatus.FUNDS_RECEIVED
    assert store.get(other.intent_id).status is IntentStatus.PENDING
    assert fake_ledger.calls_to("list_recent_asset_transfers")[0][0] == target.destination_address


@given(
    st.lists(st.tuples(st.sampled_from(["TAddrA", "TAddrB", CUSTODY]), st.integers(1, 3)), max_size=8),
    st.lists(st.tuples(st.sampled_from(["TAddrA", "TAddrB", CUSTODY]), st.integers(1, 3)), max_size=8),
)
def test_matching_pairs_are_exact_and_one_to_one(intent_specs, transfer_specs) -> None:
    intents = [
        _pending(f"pi_{n:02d}", address, str(amount), minute=n)
        for n, (address, amount) in enumerate(intent_specs)
    ]
    transfers = [
        _transfer(f"t{n:02d}", address, amount * 1_000_000, at=datetime(2026, 3, 1, 0, n, tzinfo=UTC))
        for n, (address, amount) in enumerate(transfer_specs)
    ]

    report = match_transfers(
        transfers,
        intents,
        custody_address=CUSTODY,
        asset_contract_id=CONTRACT,
        asset_decimals=6,
    )

    matched_intents = [pair.intent.intent_id for pair in report.pairs]
    assert len(matched_intents) == len(set(matched_intents))
    for pair in report.pairs:
        assert pair.transfer.to_address == pair.intent.destination_address
        assert pair.transfer.atomic_amount == int(pair.intent.expected_amount) * 1_000_000
    assert len(report.pairs) + len(report.unmatched) + len(report.ignored) == len(transfers)
