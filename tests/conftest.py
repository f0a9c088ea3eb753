from __future__ import annotations

import os
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from paysweep.adapters.ledger import LedgerClient
from paysweep.config import Settings
from paysweep.domain.intent import IntentStatus, PaymentIntent
from paysweep.domain.ledger import (
    ConfirmationState,
    ExternalTransfer,
    GeneratedAccount,
    ResourceClass,
    ResourceLevels,
)
from paysweep.engine import build_engine
from paysweep.persistence.intent_store import IntentStore

CUSTODY = "TCustodyWallet0000000000000000001"
CONTRACT = "TAssetContract000000000000000001"


class FakeLedger(LedgerClient):
    """In-memory ledger that records every call made against it."""

    def __init__(self, custody: str = CUSTODY) -> None:
        self.custody = custody
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.existing: set[str] = {custody}
        self.asset_balances: dict[str, int] = {}
        self.native_balances: dict[str, Decimal] = {}
        self.resources: dict[str, ResourceLevels] = {}
        self.transfers: list[ExternalTransfer] = []
        self.tx_states: dict[str, list[ConfirmationState]] = {}
        self.confirmation_script: list[ConfirmationState] = [ConfirmationState.CONFIRMED]
        self.credentials: dict[str, str] = {}
        self.failures: dict[str, Exception] = {}
        self.activate_on_native_send = True
        self.credit_native_on_send = True
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq:060d}"

    def _record(self, method: str, *args: object) -> None:
        self.calls.append((method, args))
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def calls_to(self, method: str) -> list[tuple[object, ...]]:
        return [args for name, args in self.calls if name == method]

    def add_transfer(
        self,
        to_address: str,
        atomic_amount: int,
        *,
        memo: str | None = None,
        tx_id: str | None = None,
        contract: str = CONTRACT,
        at: datetime | None = None,
    ) -> ExternalTransfer:
        transfer = ExternalTransfer(
            transaction_id=tx_id or self._next_id("in"),
            from_address="TPayer",
            to_address=to_address,
            asset_contract_id=contract,
            atomic_amount=atomic_amount,
            block_timestamp=at or datetime.now(UTC),
            memo=memo,
        )
        self.transfers.append(transfer)
        self.asset_balances[to_address] = self.asset_balances.get(to_address, 0) + atomic_amount
        return transfer

    def get_asset_balance(self, address: str) -> int:
        self._record("get_asset_balance", address)
        return self.asset_balances.get(address, 0)

    def get_native_balance(self, address: str) -> Decimal:
        self._record("get_native_balance", address)
        return self.native_balances.get(address, Decimal("0"))

    def account_exists(self, address: str) -> bool:
        self._record("account_exists", address)
        return address in self.existing

    def send_native(
        self, to_address: str, amount: Decimal, *, idempotency_key: str | None = None
    ) -> str:
        self._record("send_native", to_address, amount, idempotency_key)
        if self.activate_on_native_send:
            self.existing.add(to_address)
        if self.credit_native_on_send:
            self.native_balances[to_address] = self.native_balances.get(to_address, Decimal("0")) + amount
        return self._next_id("nat")

    def send_asset(
        self,
        from_credential: str,
        to_address: str,
        atomic_amount: int,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        self._record("send_asset", from_credential, to_address, atomic_amount, idempotency_key)
        tx_id = self._next_id("out")
        self.tx_states[tx_id] = list(self.confirmation_script)
        source = self.credentials.get(from_credential)
        if source is not None:
            self.asset_balances[source] = self.asset_balances.get(source, 0) - atomic_amount
            self.transfers.append(
                ExternalTransfer(
                    transaction_id=tx_id,
                    from_address=source,
                    to_address=to_address,
                    asset_contract_id=CONTRACT,
                    atomic_amount=atomic_amount,
                    block_timestamp=datetime.now(UTC),
                )
            )
        return tx_id

    def get_transaction(self, transaction_id: str) -> ConfirmationState:
        self._record("get_transaction", transaction_id)
        states = self.tx_states.get(transaction_id)
        if not states:
            return ConfirmationState.NOT_FOUND
        if len(states) > 1:
            return states.pop(0)
        return states[0]

    def delegate_resource(self, receiver: str, resource_class: ResourceClass, amount: int) -> str:
        self._record("delegate_resource", receiver, resource_class, amount)
        return self._next_id("dlg")

    def get_account_resources(self, address: str) -> ResourceLevels:
        self._record("get_account_resources", address)
        return self.resources.get(address, ResourceLevels(energy=0, bandwidth=0))

    def list_recent_asset_transfers(self, address: str, since: datetime) -> list[ExternalTransfer]:
        self._record("list_recent_asset_transfers", address, since)
        return [t for t in self.transfers if t.to_address == address and t.block_timestamp >= since]

    def generate_account(self) -> GeneratedAccount:
        self._record("generate_account")
        address = f"TIntake{len(self.credentials) + 1:026d}"
        credential = f"cred-{len(self.credentials) + 1}"
        self.credentials[credential] = address
        return GeneratedAccount(address=address, credential=credential)


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys = {field.alias for field in Settings.model_fields.values() if field.alias}
    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_lock_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PAYSWEEP_LOCK_DIR", str(tmp_path / "locks"))


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "state.db")


@pytest.fixture
def store(db_path: str) -> IntentStore:
    return IntentStore(db_path)


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def settings(db_path: str) -> Settings:
    return Settings(
        STATE_DB_PATH=db_path,
        CUSTODY_ADDRESS=CUSTODY,
        ASSET_CONTRACT_ID=CONTRACT,
        SIGNER_URL="http://signer.test",
        CYCLE_BASE_INTERVAL_SECONDS=60,
        MAX_CONSOLIDATION_ATTEMPTS=3,
    )


@pytest.fixture
def engine(settings: Settings, fake_ledger: FakeLedger):
    built = build_engine(settings, ledger=fake_ledger, sleep_fn=lambda _seconds: None)
    yield built
    built.close()


@pytest.fixture
def make_intent(store: IntentStore, fake_ledger: FakeLedger):
    counter = {"n": 0}

    def _make(
        amount: str = "10",
        *,
        memo: str | None = None,
        destination: str | None = None,
        status: IntentStatus = IntentStatus.PENDING,
        created_at: datetime | None = None,
        **fields: object,
    ) -> PaymentIntent:
        counter["n"] += 1
        if destination is None:
            account = fake_ledger.generate_account()
            destination, credential = account.address, account.credential
        else:
            credential = None if destination == CUSTODY else f"cred-{destination}"
            if credential is not None:
                fake_ledger.credentials[credential] = destination
        created = created_at or datetime.now(UTC)
        intent = PaymentIntent(
            intent_id=f"pi_test_{counter['n']:04d}",
            destination_address=destination,
            expected_amount=Decimal(amount),
            status=status,
            created_at=created,
            updated_at=created,
            memo=memo,
            source_credential=fields.pop("source_credential", credential),
            **fields,
        )
        store.insert(intent)
        return intent

    return _make
