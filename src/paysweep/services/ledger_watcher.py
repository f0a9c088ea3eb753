from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from paysweep.adapters.ledger import LedgerClient
from paysweep.domain.amounts import to_atomic_units
from paysweep.domain.errors import (
    LedgerRejectedError,
    TransferListingTruncatedError,
    TransientNetworkError,
)
from paysweep.domain.intent import (
    CUSTODY_SELF_TRANSFER_SKIPPED,
    IntentStatus,
    PaymentIntent,
    ensure_utc,
)
from paysweep.domain.ledger import ConfirmationState, ExternalTransfer
from paysweep.persistence.intent_store import IntentStore
from paysweep.services.notifier import CallbackNotifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchedPair:
    transfer: ExternalTransfer
    intent: PaymentIntent
    by_memo: bool = False


@dataclass(frozen=True)
class MatchReport:
    pairs: list[MatchedPair] = field(default_factory=list)
    unmatched: list[ExternalTransfer] = field(default_factory=list)
    already_matched: list[ExternalTransfer] = field(default_factory=list)
    ignored: list[ExternalTransfer] = field(default_factory=list)
    own_transfers: list[ExternalTransfer] = field(default_factory=list)


@dataclass(frozen=True)
class WatchResult:
    pulled: int
    matched: list[str]
    unmatched: int
    conflicts: int


def _age_key(intent: PaymentIntent) -> tuple[datetime, str]:
    return ensure_utc(intent.created_at), intent.intent_id


def match_transfers(
    transfers: Iterable[ExternalTransfer],
    open_intents: Iterable[PaymentIntent],
    *,
    custody_address: str,
    asset_contract_id: str,
    asset_decimals: int,
    already_recorded: set[str] | frozenset[str] = frozenset(),
    own_sources: set[str] | frozenset[str] = frozenset(),
) -> MatchReport:
    """Pair observed transfers with pending intents.

    Candidates share the destination address and the exact atomic amount. A
    memo equal to exactly one candidate's memo wins; otherwise the oldest
    candidate does. Amount-only matching can credit the wrong intent when two
    payers send the same amount to a shared address without a memo.

    Transfers sent from one of our own intake addresses are consolidation
    sweeps, never payments.
    """

    pending = sorted(
        (intent for intent in open_intents if intent.status is IntentStatus.PENDING),
        key=_age_key,
    )
    tracked = {intent.destination_address for intent in pending}
    expected_atomic = {
        intent.intent_id: to_atomic_units(intent.expected_amount, decimals=asset_decimals)
        for intent in pending
    }
    consumed: set[str] = set()
    seen: set[str] = set()
    report = MatchReport()

    ordered = sorted(transfers, key=lambda t: (ensure_utc(t.block_timestamp), t.transaction_id))
    for transfer in ordered:
        if transfer.transaction_id in seen:
            continue
        seen.add(transfer.transaction_id)
        if transfer.transaction_id in already_recorded:
            report.already_matched.append(transfer)
            continue
        if transfer.from_address in own_sources and transfer.from_address != custody_address:
            report.own_transfers.append(transfer)
            continue
        if (
            transfer.to_address not in tracked
            or transfer.asset_contract_id != asset_contract_id
            or transfer.confirmation_state is not ConfirmationState.CONFIRMED
        ):
            report.ignored.append(transfer)
            continue

        candidates = [
            intent
            for intent in pending
            if intent.intent_id not in consumed
            and intent.destination_address == transfer.to_address
            and expected_atomic[intent.intent_id] == transfer.atomic_amount
        ]
        if not candidates:
            report.unmatched.append(transfer)
            continue

        chosen = candidates[0]
        by_memo = False
        if transfer.memo:
            memo_hits = [intent for intent in candidates if intent.memo == transfer.memo]
            if len(memo_hits) == 1:
                chosen = memo_hits[0]
                by_memo = True
        consumed.add(chosen.intent_id)
        report.pairs.append(MatchedPair(transfer=transfer, intent=chosen, by_memo=by_memo))
    return report


class LedgerWatcher:
    """Pulls incoming transfers since the checkpoint and moves matched intents forward."""

    def __init__(
        self,
        ledger: LedgerClient,
        store: IntentStore,
        *,
        custody_address: str,
        asset_contract_id: str,
        asset_decimals: int = 6,
        max_lookback: timedelta = timedelta(hours=24),
        overlap: timedelta = timedelta(seconds=30),
        notifier: CallbackNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.custody_address = custody_address
        self.asset_contract_id = asset_contract_id
        self.asset_decimals = asset_decimals
        self.max_lookback = max_lookback
        self.overlap = overlap
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(UTC))
        self._checkpoint: datetime | None = None
        self.pulled_through: datetime | None = None

    @property
    def checkpoint(self) -> datetime | None:
        return self._checkpoint

    def initial_checkpoint(self, open_intents: Iterable[PaymentIntent], now: datetime) -> datetime:
        floor = now - self.max_lookback
        created = [ensure_utc(intent.created_at) for intent in open_intents]
        if not created:
            return now
        return max(min(created), floor)

    def tracked_addresses(self, open_intents: Iterable[PaymentIntent]) -> list[str]:
        return sorted({intent.destination_address for intent in open_intents})

    def pull(self, since: datetime, addresses: Iterable[str]) -> list[ExternalTransfer]:
        """Collect transfers for every address.

        A truncated listing keeps its partial batch and sets ``pulled_through`` to the
        newest block time read, so the checkpoint cannot move past unread transfers.
        """

        transfers: dict[str, ExternalTransfer] = {}
        self.pulled_through = None
        for address in addresses:
            try:
                batch = self.ledger.list_recent_asset_transfers(address, since)
            except TransferListingTruncatedError as exc:
                batch = exc.transfers
                through = ensure_utc(exc.through)
                if self.pulled_through is None or through < self.pulled_through:
                    self.pulled_through = through
            except (TransientNetworkError, LedgerRejectedError) as exc:
                logger.warning(
                    "ledger_pull_failed",
                    extra={"extra": {"address": address, "since": since.isoformat(), "error": str(exc)}},
                )
                raise TransientNetworkError(f"transfer listing failed for {address}") from exc
            for transfer in batch:
                transfers.setdefault(transfer.transaction_id, transfer)
        return list(transfers.values())

    def match(
        self, transfers: Iterable[ExternalTransfer], open_intents: Iterable[PaymentIntent]
    ) -> MatchReport:
        transfers = list(transfers)
        tx_ids = [t.transaction_id for t in transfers]
        recorded = self.store.external_transaction_ids(tx_ids)
        recorded |= self.store.consolidation_transaction_ids(tx_ids)
        own_sources = self.store.intake_addresses(
            (t.from_address for t in transfers), exclude=self.custody_address
        )
        return match_transfers(
            transfers,
            open_intents,
            custody_address=self.custody_address,
            asset_contract_id=self.asset_contract_id,
            asset_decimals=self.asset_decimals,
            already_recorded=recorded,
            own_sources=own_sources,
        )

    def run(self) -> WatchResult:
        open_intents = self.store.find_many(statuses=[IntentStatus.PENDING])
        started = self._clock()
        if self._checkpoint is None:
            self._checkpoint = self.initial_checkpoint(open_intents, started)
        since = self._checkpoint - self.overlap

        transfers = self.pull(since, self.tracked_addresses(open_intents))
        self._checkpoint = started if self.pulled_through is None else self.pulled_through

        report = self.match(transfers, open_intents)
        matched, conflicts = self.apply(report.pairs)
        for transfer in report.unmatched:
            self._record_unmatched(transfer)
        logger.info(
            "ledger_watch_completed",
            extra={
                "extra": {
                    "pulled": len(transfers),
                    "matched": len(matched),
                    "unmatched": len(report.unmatched),
                    "already_matched": len(report.already_matched),
                    "own_transfers": len(report.own_transfers),
                    "truncated": self.pulled_through is not None,
                    "conflicts": conflicts,
                }
            },
        )
        return WatchResult(
            pulled=len(transfers),
            matched=matched,
            unmatched=len(report.unmatched),
            conflicts=conflicts,
        )

    def reconcile_intent(self, intent: PaymentIntent) -> MatchedPair | None:
        """Targeted pull and match for one pending intent; the global checkpoint is untouched."""

        if intent.status is not IntentStatus.PENDING:
            return None
        since = ensure_utc(intent.created_at) - self.overlap
        transfers = self.pull(since, [intent.destination_address])
        neighbours = self.store.find_many(
            statuses=[IntentStatus.PENDING], destination_address=intent.destination_address
        )
        report = self.match(transfers, neighbours)
        for pair in report.pairs:
            if pair.intent.intent_id == intent.intent_id:
                matched, _ = self.apply([pair])
                return pair if matched else None
        return None

    def apply(self, pairs: Iterable[MatchedPair]) -> tuple[list[str], int]:
        matched: list[str] = []
        conflicts = 0
        for pair in pairs:
            intent, transfer = pair.intent, pair.transfer
            to_custody = intent.destination_address == self.custody_address
            patch: dict[str, object] = {"external_transaction_id": transfer.transaction_id}
            if to_custody:
                patch["status"] = IntentStatus.COMPLETED
                patch["consolidation_transaction_id"] = CUSTODY_SELF_TRANSFER_SKIPPED
            else:
                patch["status"] = IntentStatus.FUNDS_RECEIVED
            applied = self.store.update_conditional(
                intent.intent_id,
                IntentStatus.PENDING,
                patch,
                event_type="funds_received",
                event_payload={
                    "transaction_id": transfer.transaction_id,
                    "from_address": transfer.from_address,
                    "atomic_amount": transfer.atomic_amount,
                    "by_memo": pair.by_memo,
                    "custody": to_custody,
                },
            )
            if not applied:
                conflicts += 1
                logger.warning(
                    "intent_match_conflict",
                    extra={
                        "extra": {
                            "intent_id": intent.intent_id,
                            "transaction_id": transfer.transaction_id,
                        }
                    },
                )
                continue
            matched.append(intent.intent_id)
            self.store.clear_unmatched(transfer.transaction_id)
            logger.info(
                "intent_funds_matched",
                extra={
                    "extra": {
                        "intent_id": intent.intent_id,
                        "transaction_id": transfer.transaction_id,
                        "by_memo": pair.by_memo,
                        "status": patch["status"].value,
                    }
                },
            )
            if to_custody and self.notifier is not None:
                self.notifier.notify_completed(intent.intent_id)
        return matched, conflicts

    def _record_unmatched(self, transfer: ExternalTransfer) -> None:
        seen = self.store.record_unmatched(
            transaction_id=transfer.transaction_id,
            to_address=transfer.to_address,
            atomic_amount=transfer.atomic_amount,
            memo=transfer.memo,
        )
        if seen == 1:
            logger.warning(
                "unmatched_transfer_recorded",
                extra={
                    "extra": {
                        "transaction_id": transfer.transaction_id,
                        "to_address": transfer.to_address,
                        "atomic_amount": transfer.atomic_amount,
                        "memo": transfer.memo,
                    }
                },
            )
