from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from paysweep.domain.errors import IntentNotFoundError, RateLimitedError, TransientNetworkError
from paysweep.domain.intent import IntentStatus
from paysweep.logging_context import with_cycle_context
from paysweep.persistence.intent_store import IntentStore
from paysweep.services.fund_consolidator import (
    ConsolidationOutcome,
    ConsolidationResult,
    FundConsolidator,
)
from paysweep.services.ledger_watcher import LedgerWatcher

logger = logging.getLogger(__name__)

ADMIN_TRIGGER = "trigger_cycle_now"


def new_cycle_id(prefix: str = "cyc") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


@dataclass
class CycleSummary:
    cycle_id: str
    matched: int = 0
    unmatched: int = 0
    consolidated: int = 0
    awaiting: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def successes(self) -> int:
        return self.matched + self.consolidated

    @property
    def failures(self) -> int:
        return len(self.errors) + self.failed

    def counts(self) -> dict[str, int]:
        return {
            "matched": self.matched,
            "unmatched": self.unmatched,
            "consolidated": self.consolidated,
            "awaiting": self.awaiting,
            "failed": self.failed,
            "errors": len(self.errors),
        }

    def record(self, result: ConsolidationResult) -> None:
        if result.outcome is ConsolidationOutcome.COMPLETED:
            self.consolidated += 1
        elif result.outcome is ConsolidationOutcome.AWAITING_FUNDS:
            self.awaiting += 1
        elif result.outcome is ConsolidationOutcome.FAILED:
            self.failed += 1
        elif result.outcome in (ConsolidationOutcome.RETRY_SCHEDULED, ConsolidationOutcome.TRANSIENT):
            self.errors.append(f"{result.intent_id}: {result.error}")


class CycleBackoff:
    """Wait between cycles: base interval, doubled per all-failure cycle up to a cap."""

    def __init__(self, base_seconds: float, max_multiplier: int) -> None:
        self.base_seconds = base_seconds
        self.max_multiplier = max_multiplier
        self.consecutive_failures = 0

    @property
    def current_wait(self) -> float:
        if self.consecutive_failures == 0:
            return self.base_seconds
        return self.base_seconds * min(2**self.consecutive_failures, self.max_multiplier)

    def record(self, summary: CycleSummary) -> float:
        if summary.successes == 0 and summary.failures > 0:
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 0
        return self.current_wait


class ReconciliationScheduler:
    def __init__(
        self,
        watcher: LedgerWatcher,
        consolidator: FundConsolidator,
        store: IntentStore,
        *,
        base_interval_seconds: float = 60.0,
        backoff_max_multiplier: int = 5,
        admin_trigger_min_interval_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.watcher = watcher
        self.consolidator = consolidator
        self.store = store
        self.backoff = CycleBackoff(base_interval_seconds, backoff_max_multiplier)
        self.admin_trigger_min_interval_seconds = admin_trigger_min_interval_seconds
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stop = threading.Event()

    def run_cycle(self) -> CycleSummary:
        summary = CycleSummary(cycle_id=new_cycle_id())
        with with_cycle_context(summary.cycle_id, run_id=self.run_id):
            try:
                watch = self.watcher.run()
                summary.matched = len(watch.matched)
                summary.unmatched = watch.unmatched
            except TransientNetworkError as exc:
                summary.errors.append(f"watch: {exc}")
                logger.warning("cycle_watch_failed", extra={"extra": {"error": str(exc)}})

            for intent in self.store.find_many(statuses=[IntentStatus.FUNDS_RECEIVED]):
                if intent.consolidation_transaction_id is not None:
                    continue
                summary.record(self._consolidate_one(intent.intent_id))

            self.store.record_cycle(summary.cycle_id, summary.counts(), summary.errors)
            logger.info("cycle_completed", extra={"extra": summary.counts()})
        return summary

    def _consolidate_one(self, intent_id: str) -> ConsolidationResult:
        try:
            return self.consolidator.consolidate(intent_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "intent_processing_failed",
                extra={"extra": {"intent_id": intent_id, "error_type": type(exc).__name__}},
            )
            return ConsolidationResult(
                intent_id, ConsolidationOutcome.TRANSIENT, error=f"{type(exc).__name__}: {exc}"
            )

    def trigger_cycle_now(self) -> CycleSummary:
        """Admin-triggered cycle, rate limited through the state DB so separate processes share the limit."""

        retry_after = self.store.claim_admin_trigger(
            ADMIN_TRIGGER, self._clock(), self.admin_trigger_min_interval_seconds
        )
        if retry_after is not None:
            logger.warning(
                "admin_trigger_rate_limited", extra={"extra": {"retry_after_seconds": retry_after}}
            )
            raise RateLimitedError(retry_after)
        logger.info("admin_cycle_triggered", extra={"extra": {"run_id": self.run_id}})
        return self.run_cycle()

    def force_reconcile(self, intent_id: str) -> CycleSummary:
        intent = self.store.get(intent_id)
        if intent is None:
            raise IntentNotFoundError(f"unknown intent {intent_id}")
        summary = CycleSummary(cycle_id=new_cycle_id("force"))
        with with_cycle_context(summary.cycle_id, run_id=self.run_id):
            if intent.is_terminal:
                logger.info(
                    "force_reconcile_terminal",
                    extra={"extra": {"intent_id": intent_id, "status": intent.status.value}},
                )
                return summary

            if intent.status is IntentStatus.PENDING:
                try:
                    if self.watcher.reconcile_intent(intent) is not None:
                        summary.matched = 1
                except TransientNetworkError as exc:
                    summary.errors.append(f"watch: {exc}")
                    logger.warning("force_reconcile_watch_failed", extra={"extra": {"error": str(exc)}})
                refreshed = self.store.get(intent_id)
                intent = refreshed if refreshed is not None else intent

            if intent.status is IntentStatus.FUNDS_RECEIVED:
                summary.record(self._consolidate_one(intent_id))

            self.store.record_cycle(summary.cycle_id, summary.counts(), summary.errors)
            logger.info(
                "force_reconcile_completed",
                extra={"extra": {"intent_id": intent_id, **summary.counts()}},
            )
        return summary

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_forever(
        self,
        *,
        max_cycles: int | None = None,
        on_cycle: Callable[[CycleSummary], None] | None = None,
    ) -> int:
        """Run cycles until ``stop()`` or ``max_cycles``; returns the number of cycles run.

        ``stop()`` is honoured between cycles and during the wait; a cycle already
        in flight finishes its current ledger calls first.
        """

        cycles = 0
        logger.info(
            "scheduler_started",
            extra={"extra": {"run_id": self.run_id, "base_interval_seconds": self.backoff.base_seconds}},
        )
        while not self._stop.is_set():
            try:
                summary = self.run_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.exception("cycle_failed", extra={"extra": {"error_type": type(exc).__name__}})
                summary = CycleSummary(cycle_id=new_cycle_id(), errors=[f"cycle: {exc}"])
            cycles += 1
            wait_seconds = self.backoff.record(summary)
            if on_cycle is not None:
                on_cycle(summary)
            if max_cycles is not None and cycles >= max_cycles:
                break
            logger.info(
                "scheduler_waiting",
                extra={
                    "extra": {
                        "wait_seconds": wait_seconds,
                        "consecutive_failures": self.backoff.consecutive_failures,
                    }
                },
            )
            if self._stop.wait(wait_seconds):
                break
        logger.info("scheduler_stopped", extra={"extra": {"cycles": cycles}})
        return cycles
