from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from paysweep.adapters.ledger import LedgerClient
from paysweep.adapters.trongrid_http import TronGridLedgerClient
from paysweep.config import Settings
from paysweep.persistence.intent_store import IntentStore
from paysweep.services.account_activator import AccountActivator
from paysweep.services.fund_consolidator import ConsolidationPolicy, FundConsolidator
from paysweep.services.intent_service import IntentService
from paysweep.services.ledger_watcher import LedgerWatcher
from paysweep.services.notifier import CallbackNotifier
from paysweep.services.reconciliation_scheduler import ReconciliationScheduler
from paysweep.services.resource_delegator import ResourceDelegator


@dataclass(frozen=True)
class Engine:
    settings: Settings
    ledger: LedgerClient
    store: IntentStore
    intents: IntentService
    scheduler: ReconciliationScheduler
    notifier: CallbackNotifier

    def close(self) -> None:
        self.notifier.close()
        self.ledger.close()


def build_ledger_client(settings: Settings) -> LedgerClient:
    settings.validate_runtime()
    return TronGridLedgerClient(
        api_url=settings.ledger_api_url,
        signer_url=str(settings.signer_url),
        asset_contract_id=str(settings.asset_contract_id),
        custody_address=str(settings.custody_address),
        api_key=settings.ledger_api_key.get_secret_value() if settings.ledger_api_key else None,
        signer_token=settings.signer_token.get_secret_value() if settings.signer_token else None,
        asset_decimals=settings.asset_decimals,
        timeout_seconds=settings.ledger_timeout_seconds,
        retry_attempts=settings.ledger_retry_attempts,
        retry_base_delay_ms=settings.ledger_retry_base_delay_ms,
        retry_max_delay_ms=settings.ledger_retry_max_delay_ms,
    )


def build_engine(
    settings: Settings,
    *,
    ledger: LedgerClient | None = None,
    sleep_fn: Callable[[float], None] | None = None,
) -> Engine:
    """Wire every component around one ledger client and one state database."""

    settings.validate_runtime()
    ledger = ledger or build_ledger_client(settings)
    custody = str(settings.custody_address)
    store = IntentStore(settings.state_db_path)
    notifier = CallbackNotifier(store, timeout_seconds=settings.callback_timeout_seconds)
    activator = AccountActivator(
        ledger,
        store,
        activation_amount=settings.activation_amount_native,
        activation_amount_max=settings.activation_amount_max_native,
        poll_interval_seconds=settings.activation_poll_interval_seconds,
        poll_max_attempts=settings.activation_poll_max_attempts,
        sleep_fn=sleep_fn,
    )
    delegator = ResourceDelegator(
        ledger, energy_target=settings.energy_target, bandwidth_target=settings.bandwidth_target
    )
    consolidator = FundConsolidator(
        ledger,
        store,
        activator,
        delegator,
        custody_address=custody,
        policy=ConsolidationPolicy(
            max_attempts=settings.max_consolidation_attempts,
            native_fee_floor=settings.native_fee_floor,
            native_top_up_amount=settings.native_top_up_amount,
            transfer_poll_interval_seconds=settings.transfer_poll_interval_seconds,
            transfer_poll_max_attempts=settings.transfer_poll_max_attempts,
            native_poll_interval_seconds=settings.native_poll_interval_seconds,
            native_poll_max_attempts=settings.native_poll_max_attempts,
            asset_decimals=settings.asset_decimals,
        ),
        notifier=notifier,
        sleep_fn=sleep_fn,
    )
    watcher = LedgerWatcher(
        ledger,
        store,
        custody_address=custody,
        asset_contract_id=str(settings.asset_contract_id),
        asset_decimals=settings.asset_decimals,
        max_lookback=timedelta(hours=settings.watcher_max_lookback_hours),
        overlap=timedelta(seconds=settings.watcher_overlap_seconds),
        notifier=notifier,
    )
    scheduler = ReconciliationScheduler(
        watcher,
        consolidator,
        store,
        base_interval_seconds=settings.cycle_base_interval_seconds,
        backoff_max_multiplier=settings.backoff_max_multiplier,
        admin_trigger_min_interval_seconds=settings.admin_trigger_min_interval_seconds,
    )
    intents = IntentService(
        store,
        ledger,
        custody_address=custody,
        intake_mode=settings.intake_mode,
        asset_decimals=settings.asset_decimals,
    )
    return Engine(
        settings=settings,
        ledger=ledger,
        store=store,
        intents=intents,
        scheduler=scheduler,
        notifier=notifier,
    )
