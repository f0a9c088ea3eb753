from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import StrEnum

from paysweep.adapters.ledger import LedgerClient
from paysweep.domain.amounts import to_atomic_units
from paysweep.domain.errors import (
    AccountNotActivatedError,
    ConfigurationError,
    ConsolidationExhaustedError,
    ConsolidationTimeoutError,
    InsufficientBalanceObserved,
    InsufficientExecutionResourceError,
    LedgerRejectedError,
    TransientNetworkError,
)
from paysweep.domain.intent import CUSTODY_SELF_TRANSFER_SKIPPED, IntentStatus, PaymentIntent
from paysweep.domain.ledger import ConfirmationState
from paysweep.logging_context import with_intent_context
from paysweep.persistence.intent_store import IntentStore
from paysweep.services.account_activator import AccountActivator
from paysweep.services.notifier import CallbackNotifier
from paysweep.services.poll import PollStatus, poll_until
from paysweep.services.resource_delegator import ResourceDelegator

logger = logging.getLogger(__name__)

# Failures that spend one unit of the per-intent attempt budget.
_COUNTED_ERRORS = (
    AccountNotActivatedError,
    InsufficientExecutionResourceError,
    ConsolidationTimeoutError,
    LedgerRejectedError,
    ConfigurationError,
)


class ConsolidationOutcome(StrEnum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    AWAITING_FUNDS = "awaiting_funds"
    RETRY_SCHEDULED = "retry_scheduled"
    TRANSIENT = "transient"
    FAILED = "failed"


@dataclass(frozen=True)
class ConsolidationResult:
    intent_id: str
    outcome: ConsolidationOutcome
    transaction_id: str | None = None
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.outcome is ConsolidationOutcome.COMPLETED


@dataclass(frozen=True)
class ConsolidationPolicy:
    max_attempts: int = 5
    native_fee_floor: Decimal = Decimal("5")
    native_top_up_amount: Decimal = Decimal("10")
    transfer_poll_interval_seconds: float = 5.0
    transfer_poll_max_attempts: int = 12
    native_poll_interval_seconds: float = 5.0
    native_poll_max_attempts: int = 20
    asset_decimals: int = 6


class FundConsolidator:
    def __init__(
        self,
        ledger: LedgerClient,
        store: IntentStore,
        activator: AccountActivator,
        delegator: ResourceDelegator,
        *,
        custody_address: str,
        policy: ConsolidationPolicy | None = None,
        notifier: CallbackNotifier | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.activator = activator
        self.delegator = delegator
        self.custody_address = custody_address
        self.policy = policy or ConsolidationPolicy()
        self.notifier = notifier
        self.sleep_fn = sleep_fn

    def consolidate(self, intent: PaymentIntent | str) -> ConsolidationResult:
        intent_id = intent if isinstance(intent, str) else intent.intent_id
        with with_intent_context(intent_id):
            current = self.store.get(intent_id)
            if (
                current is None
                or current.status is not IntentStatus.FUNDS_RECEIVED
                or current.consolidation_transaction_id is not None
            ):
                return ConsolidationResult(intent_id, ConsolidationOutcome.SKIPPED)
            try:
                if current.consolidation_attempts >= self.policy.max_attempts:
                    raise ConsolidationExhaustedError(
                        f"{current.consolidation_attempts} consolidation attempts already spent"
                    )
                return self._attempt(current)
            except ConsolidationExhaustedError as exc:
                return self._mark_failed(current, exc)

    def _attempt(self, current: PaymentIntent) -> ConsolidationResult:
        try:
            return self._run_steps(current)
        except InsufficientBalanceObserved as exc:
            logger.info("consolidation_awaiting_funds", extra={"extra": {"detail": str(exc)}})
            return ConsolidationResult(
                current.intent_id, ConsolidationOutcome.AWAITING_FUNDS, error=str(exc)
            )
        except TransientNetworkError as exc:
            logger.warning("consolidation_transient_error", extra={"extra": {"error": str(exc)}})
            return ConsolidationResult(current.intent_id, ConsolidationOutcome.TRANSIENT, error=str(exc))
        except _COUNTED_ERRORS as exc:
            self._record_failed_attempt(current, exc)
            return ConsolidationResult(
                current.intent_id,
                ConsolidationOutcome.RETRY_SCHEDULED,
                transaction_id=getattr(exc, "transaction_id", None),
                error=f"{type(exc).__name__}: {exc}",
            )

    def _run_steps(self, current: PaymentIntent) -> ConsolidationResult:
        address = current.destination_address
        if address == self.custody_address:
            return self._finalize(current, CUSTODY_SELF_TRANSFER_SKIPPED)

        if current.pending_consolidation_tx_id:
            resumed = self._resume_pending(current, current.pending_consolidation_tx_id)
            if resumed is not None:
                return resumed
            current = replace(current, pending_consolidation_tx_id=None)

        if not current.source_credential:
            raise ConfigurationError("intent has no source credential to sign with")

        if not self.activator.ensure_active(address, intent=current):
            raise AccountNotActivatedError(f"address {address} could not be activated")

        atomic_amount = to_atomic_units(current.expected_amount, decimals=self.policy.asset_decimals)
        balance = self.ledger.get_asset_balance(address)
        if balance < atomic_amount:
            raise InsufficientBalanceObserved(
                f"balance {balance} below expected {atomic_amount} at {address}"
            )

        self.delegator.ensure_resources(address)
        self._ensure_native_fee(current)

        tx_id = self.ledger.send_asset(
            current.source_credential,
            self.custody_address,
            atomic_amount,
            idempotency_key=f"consolidate:{current.intent_id}:{current.consolidation_attempts + 1}",
        )
        self.store.update_conditional(
            current.intent_id,
            IntentStatus.FUNDS_RECEIVED,
            {"pending_consolidation_tx_id": tx_id},
            event_type="consolidation_submitted",
            event_payload={"transaction_id": tx_id, "atomic_amount": atomic_amount},
        )
        logger.info(
            "consolidation_submitted",
            extra={"extra": {"transaction_id": tx_id, "atomic_amount": atomic_amount}},
        )
        return self._await_confirmation(current, tx_id)

    def _resume_pending(self, current: PaymentIntent, tx_id: str) -> ConsolidationResult | None:
        state = self.ledger.get_transaction(tx_id)
        if state is ConfirmationState.CONFIRMED:
            return self._finalize(current, tx_id)
        if state is ConfirmationState.PENDING:
            return self._await_confirmation(current, tx_id)
        logger.warning(
            "consolidation_transfer_dropped",
            extra={"extra": {"transaction_id": tx_id, "state": state.value}},
        )
        self.store.update_conditional(
            current.intent_id,
            IntentStatus.FUNDS_RECEIVED,
            {"pending_consolidation_tx_id": None},
            event_type="consolidation_transfer_dropped",
            event_payload={"transaction_id": tx_id, "state": state.value},
        )
        return None

    def _ensure_native_fee(self, current: PaymentIntent) -> None:
        address = current.destination_address
        floor = self.policy.native_fee_floor
        if self.ledger.get_native_balance(address) >= floor:
            return
        top_up = self.policy.native_top_up_amount
        tx_id = self.ledger.send_native(
            address,
            top_up,
            idempotency_key=f"topup:{current.intent_id}:{current.consolidation_attempts + 1}",
        )
        logger.info(
            "native_top_up_sent",
            extra={"extra": {"address": address, "amount": str(top_up), "transaction_id": tx_id}},
        )
        outcome = poll_until(
            lambda: self.ledger.get_native_balance(address),
            is_done=lambda balance: balance >= floor,
            interval_seconds=self.policy.native_poll_interval_seconds,
            max_attempts=self.policy.native_poll_max_attempts,
            sleep_fn=self.sleep_fn,
            label="native_top_up",
        )
        if not outcome.confirmed:
            raise InsufficientExecutionResourceError(
                f"native balance at {address} stayed below {floor} after top-up {tx_id}"
            )

    def _await_confirmation(self, current: PaymentIntent, tx_id: str) -> ConsolidationResult:
        outcome = poll_until(
            lambda: self.ledger.get_transaction(tx_id),
            is_done=lambda state: state is ConfirmationState.CONFIRMED,
            abort_when=lambda state: state is ConfirmationState.FAILED,
            interval_seconds=self.policy.transfer_poll_interval_seconds,
            max_attempts=self.policy.transfer_poll_max_attempts,
            sleep_fn=self.sleep_fn,
            label="consolidation_confirmation",
        )
        if outcome.confirmed:
            return self._finalize(current, tx_id)
        if outcome.status is PollStatus.ABORTED:
            self.store.update_conditional(
                current.intent_id,
                IntentStatus.FUNDS_RECEIVED,
                {"pending_consolidation_tx_id": None},
            )
            raise LedgerRejectedError(f"consolidation transfer {tx_id} failed on the ledger")
        raise ConsolidationTimeoutError(tx_id, outcome.attempts)

    def _finalize(self, current: PaymentIntent, tx_id: str) -> ConsolidationResult:
        applied = self.store.update_conditional(
            current.intent_id,
            IntentStatus.FUNDS_RECEIVED,
            {
                "status": IntentStatus.COMPLETED,
                "consolidation_transaction_id": tx_id,
                "pending_consolidation_tx_id": None,
                "last_error": None,
            },
            event_type="consolidated",
            event_payload={"transaction_id": tx_id},
        )
        if not applied:
            logger.warning("consolidation_finalize_conflict", extra={"extra": {"transaction_id": tx_id}})
            return ConsolidationResult(current.intent_id, ConsolidationOutcome.SKIPPED, transaction_id=tx_id)
        logger.info("intent_consolidated", extra={"extra": {"transaction_id": tx_id}})
        if self.notifier is not None:
            self.notifier.notify_completed(current.intent_id)
        return ConsolidationResult(current.intent_id, ConsolidationOutcome.COMPLETED, transaction_id=tx_id)

    def _record_failed_attempt(self, current: PaymentIntent, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        self.store.update_conditional(
            current.intent_id,
            IntentStatus.FUNDS_RECEIVED,
            {"last_error": error},
            increment={"consolidation_attempts": 1},
            event_type="consolidation_attempt_failed",
            event_payload={"error": error, "attempt": current.consolidation_attempts + 1},
        )
        logger.warning(
            "consolidation_attempt_failed",
            extra={
                "extra": {
                    "attempt": current.consolidation_attempts + 1,
                    "max_attempts": self.policy.max_attempts,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            },
        )
        if current.consolidation_attempts + 1 >= self.policy.max_attempts:
            raise ConsolidationExhaustedError(
                f"giving up after {current.consolidation_attempts + 1} attempts; last error {error}"
            ) from exc

    def _mark_failed(self, current: PaymentIntent, exc: ConsolidationExhaustedError) -> ConsolidationResult:
        applied = self.store.update_conditional(
            current.intent_id,
            IntentStatus.FUNDS_RECEIVED,
            {"status": IntentStatus.FAILED, "last_error": str(exc)},
            event_type="consolidation_exhausted",
            event_payload={"error": str(exc)},
        )
        logger.error(
            "consolidation_exhausted",
            extra={"extra": {"error": str(exc), "applied": applied}},
        )
        return ConsolidationResult(current.intent_id, ConsolidationOutcome.FAILED, error=str(exc))
