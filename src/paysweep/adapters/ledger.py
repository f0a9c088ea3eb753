from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal

from paysweep.domain.ledger import (
    ConfirmationState,
    ExternalTransfer,
    GeneratedAccount,
    ResourceClass,
    ResourceLevels,
)


class LedgerClient(ABC):
    """Everything the engine needs from the external ledger.

    Implementations raise ``TransientNetworkError`` for retryable failures and
    ``LedgerRejectedError`` when the ledger or signer refuses a request.
    Amounts passed to ``send_asset`` are atomic units; native amounts are human units.
    """

    @abstractmethod
    def get_asset_balance(self, address: str) -> int:
        """Return the tracked asset balance of ``address`` in atomic units."""
        raise NotImplementedError

    @abstractmethod
    def get_native_balance(self, address: str) -> Decimal:
        raise NotImplementedError

    @abstractmethod
    def account_exists(self, address: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def send_native(
        self, to_address: str, amount: Decimal, *, idempotency_key: str | None = None
    ) -> str:
        """Send native currency from the operator wallet; return the transaction id."""
        raise NotImplementedError

    @abstractmethod
    def send_asset(
        self,
        from_credential: str,
        to_address: str,
        atomic_amount: int,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> ConfirmationState:
        raise NotImplementedError

    @abstractmethod
    def delegate_resource(self, receiver: str, resource_class: ResourceClass, amount: int) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_account_resources(self, address: str) -> ResourceLevels:
        raise NotImplementedError

    @abstractmethod
    def list_recent_asset_transfers(self, address: str, since: datetime) -> list[ExternalTransfer]:
        """Incoming transfers of the tracked asset to ``address`` since ``since``, oldest first."""
        raise NotImplementedError

    def generate_account(self) -> GeneratedAccount:
        raise NotImplementedError

    def close(self) -> None:
        return None
