from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

import httpx

from paysweep.adapters.ledger import LedgerClient
from paysweep.domain.amounts import NATIVE_DECIMALS, from_atomic_units, to_atomic_units
from paysweep.domain.errors import (
    ConfigurationError,
    LedgerRejectedError,
    TransferListingTruncatedError,
    TransientNetworkError,
)
from paysweep.domain.ledger import (
    ConfirmationState,
    ExternalTransfer,
    GeneratedAccount,
    ResourceClass,
    ResourceLevels,
)
from paysweep.services.retry import RetryAttempt, retry_with_backoff

logger = logging.getLogger(__name__)

_TRANSFER_PAGE_LIMIT = 100
_MAX_TRANSFER_PAGES = 20
_FEE_LIMIT_NATIVE = Decimal("100")


class LedgerErrorKind(StrEnum):
    TRANSIENT = "transient"
    REJECTED = "rejected"
    FATAL = "fatal"


def classify_ledger_error(exc: BaseException) -> LedgerErrorKind:
    if isinstance(exc, httpx.TimeoutException):
        return LedgerErrorKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return LedgerErrorKind.TRANSIENT
        return LedgerErrorKind.REJECTED
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.LocalProtocolError)):
        return LedgerErrorKind.FATAL
    if isinstance(exc, httpx.TransportError):
        return LedgerErrorKind.TRANSIENT
    return LedgerErrorKind.FATAL


def _is_write_safe_to_retry(exc: BaseException) -> bool:
    # Only failures where the signer cannot have acted on the request.
    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
        return True
    return (
        isinstance(exc, httpx.HTTPStatusError)
        and exc.response is not None
        and exc.response.status_code == 429
    )


class _RetryableRequestError(RuntimeError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


def decode_memo(raw_hex: object) -> str | None:
    """Best-effort utf-8 decode of a transaction's hex ``raw_data.data`` field."""

    if not isinstance(raw_hex, str) or not raw_hex:
        return None
    try:
        text = bytes.fromhex(raw_hex).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    text = text.strip()
    return text or None


def _ms_to_datetime(value: object) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


class TronGridLedgerClient(LedgerClient):
    """Reads from a TronGrid-compatible API; writes through a signer gateway holding keys."""

    def __init__(
        self,
        *,
        api_url: str,
        signer_url: str,
        asset_contract_id: str,
        custody_address: str,
        api_key: str | None = None,
        signer_token: str | None = None,
        asset_decimals: int = 6,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        retry_base_delay_ms: int = 500,
        retry_max_delay_ms: int = 4000,
        transport: httpx.BaseTransport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        if not asset_contract_id:
            raise ConfigurationError("asset contract id is required")
        self.asset_contract_id = asset_contract_id
        self.custody_address = custody_address
        self.asset_decimals = asset_decimals
        self._retry_attempts = retry_attempts
        self._retry_base_delay_ms = retry_base_delay_ms
        self._retry_max_delay_ms = retry_max_delay_ms
        self._sleep_fn = sleep_fn
        timeout = httpx.Timeout(timeout=timeout_seconds, connect=5.0)
        read_headers = {"TRON-PRO-API-KEY": api_key} if api_key else {}
        signer_headers = {"Authorization": f"Bearer {signer_token}"} if signer_token else {}
        self._reader = httpx.Client(
            base_url=api_url, timeout=timeout, headers=read_headers, transport=transport
        )
        self._signer = httpx.Client(
            base_url=signer_url, timeout=timeout, headers=signer_headers, transport=transport
        )

    def __enter__(self) -> TronGridLedgerClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self._reader.close()
        self._signer.close()

    # transport

    def _on_retry(self, path: str) -> Callable[[RetryAttempt], None]:
        def _log(attempt: RetryAttempt) -> None:
            logger.info(
                "ledger_request_retry",
                extra={
                    "extra": {
                        "path": path,
                        "attempt": attempt.attempt,
                        "delay_ms": attempt.delay_ms,
                        "error_type": attempt.error_type,
                    }
                },
            )

        return _log

    @staticmethod
    def _retry_after(exc: Exception) -> str | None:
        cause = exc.cause if isinstance(exc, _RetryableRequestError) else exc
        response = getattr(cause, "response", None)
        if response is None:
            return None
        return response.headers.get("Retry-After")

    @staticmethod
    def _decode(response: httpx.Response, path: str) -> dict[str, Any]:
        payload = response.json()
        if not isinstance(payload, dict):
            raise LedgerRejectedError(f"unexpected payload shape from {path}")
        return payload

    def _translate(self, exc: Exception, path: str) -> Exception:
        kind = classify_ledger_error(exc)
        status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
        if kind is LedgerErrorKind.TRANSIENT:
            return TransientNetworkError(f"ledger request failed path={path}: {type(exc).__name__}")
        return LedgerRejectedError(
            f"ledger request {kind.value} path={path} status={status}", status_code=status
        )

    def _read(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        def _call() -> dict[str, Any]:
            response = self._reader.request(method, path, **kwargs)
            response.raise_for_status()
            return self._decode(response, path)

        def _retryable(exc: Exception) -> bool:
            return classify_ledger_error(exc) is LedgerErrorKind.TRANSIENT

        try:
            return retry_with_backoff(
                lambda: self._guard(_call, _retryable),
                max_attempts=self._retry_attempts,
                base_delay_ms=self._retry_base_delay_ms,
                max_delay_ms=self._retry_max_delay_ms,
                retry_on_exceptions=(_RetryableRequestError,),
                retry_after_getter=self._retry_after,
                on_retry=self._on_retry(path),
                sleep_fn=self._sleep_fn,
            )
        except _RetryableRequestError as exc:
            raise self._translate(exc.cause, path) from exc.cause
        except httpx.HTTPError as exc:
            raise self._translate(exc, path) from exc
        except ValueError as exc:
            raise LedgerRejectedError(f"malformed ledger response path={path}") from exc

    def _write(self, path: str, body: dict[str, Any], *, idempotency_key: str | None) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key or uuid.uuid4().hex}

        def _call() -> dict[str, Any]:
            response = self._signer.post(path, json=body, headers=headers)
            response.raise_for_status()
            return self._decode(response, path)

        try:
            return retry_with_backoff(
                lambda: self._guard(_call, _is_write_safe_to_retry),
                max_attempts=self._retry_attempts,
                base_delay_ms=self._retry_base_delay_ms,
                max_delay_ms=self._retry_max_delay_ms,
                retry_on_exceptions=(_RetryableRequestError,),
                retry_after_getter=self._retry_after,
                on_retry=self._on_retry(path),
                sleep_fn=self._sleep_fn,
            )
        except _RetryableRequestError as exc:
            raise self._translate(exc.cause, path) from exc.cause
        except httpx.HTTPError as exc:
            raise self._translate(exc, path) from exc
        except ValueError as exc:
            raise LedgerRejectedError(f"malformed signer response path={path}") from exc

    @staticmethod
    def _guard(call: Callable[[], dict[str, Any]], retryable: Callable[[Exception], bool]) -> dict[str, Any]:
        try:
            return call()
        except httpx.HTTPError as exc:
            if retryable(exc):
                raise _RetryableRequestError(exc) from exc
            raise

    @staticmethod
    def _transaction_id(payload: dict[str, Any], path: str) -> str:
        tx_id = payload.get("transaction_id") or payload.get("txid")
        if not isinstance(tx_id, str) or not tx_id:
            raise LedgerRejectedError(f"signer response without transaction id path={path}")
        return tx_id

    # reads

    def _account(self, address: str) -> dict[str, Any] | None:
        payload = self._read("GET", f"/v1/accounts/{address}")
        data = payload.get("data") or []
        if not isinstance(data, list) or not data:
            return None
        first = data[0]
        return first if isinstance(first, dict) else None

    def account_exists(self, address: str) -> bool:
        return self._account(address) is not None

    def get_native_balance(self, address: str) -> Decimal:
        account = self._account(address)
        if account is None:
            return Decimal("0")
        return from_atomic_units(int(account.get("balance") or 0), decimals=NATIVE_DECIMALS)

    def get_asset_balance(self, address: str) -> int:
        account = self._account(address)
        if account is None:
            return 0
        total = 0
        for holding in account.get("trc20") or []:
            if isinstance(holding, dict) and self.asset_contract_id in holding:
                total += int(holding[self.asset_contract_id])
        return total

    def get_account_resources(self, address: str) -> ResourceLevels:
        payload = self._read(
            "POST", "/wallet/getaccountresource", json={"address": address, "visible": True}
        )
        energy = int(payload.get("EnergyLimit", 0)) - int(payload.get("EnergyUsed", 0))
        staked_net = int(payload.get("NetLimit", 0)) - int(payload.get("NetUsed", 0))
        free_net = int(payload.get("freeNetLimit", 0)) - int(payload.get("freeNetUsed", 0))
        return ResourceLevels(energy=max(0, energy), bandwidth=max(0, staked_net) + max(0, free_net))

    def get_transaction(self, transaction_id: str) -> ConfirmationState:
        payload = self._read(
            "POST", "/wallet/gettransactionbyid", json={"value": transaction_id, "visible": True}
        )
        if not payload:
            return ConfirmationState.NOT_FOUND
        ret = payload.get("ret") or []
        if not ret or not isinstance(ret[0], dict) or "contractRet" not in ret[0]:
            return ConfirmationState.PENDING
        if ret[0]["contractRet"] != "SUCCESS":
            return ConfirmationState.FAILED
        info = self._read(
            "POST", "/wallet/gettransactioninfobyid", json={"value": transaction_id}
        )
        if not info.get("blockNumber"):
            return ConfirmationState.PENDING
        receipt = info.get("receipt") or {}
        if isinstance(receipt, dict) and receipt.get("result") not in (None, "SUCCESS"):
            return ConfirmationState.FAILED
        return ConfirmationState.CONFIRMED

    def _fetch_memo(self, transaction_id: str) -> str | None:
        try:
            payload = self._read(
                "POST", "/wallet/gettransactionbyid", json={"value": transaction_id, "visible": True}
            )
        except (TransientNetworkError, LedgerRejectedError) as exc:
            logger.debug(
                "memo_lookup_failed",
                extra={"extra": {"transaction_id": transaction_id, "error": str(exc)}},
            )
            return None
        raw_data = payload.get("raw_data") or {}
        return decode_memo(raw_data.get("data") if isinstance(raw_data, dict) else None)

    def list_recent_asset_transfers(self, address: str, since: datetime) -> list[ExternalTransfer]:
        params: dict[str, Any] = {
            "limit": _TRANSFER_PAGE_LIMIT,
            "min_timestamp": int(since.timestamp() * 1000),
            "contract_address": self.asset_contract_id,
            "only_to": "true",
            "only_confirmed": "true",
            "order_by": "block_timestamp,asc",
        }
        transfers: list[ExternalTransfer] = []
        for _ in range(_MAX_TRANSFER_PAGES):
            payload = self._read("GET", f"/v1/accounts/{address}/transactions/trc20", params=params)
            for item in payload.get("data") or []:
                transfer = self._parse_transfer(item)
                if transfer is not None and transfer.to_address == address:
                    transfers.append(transfer)
            fingerprint = (payload.get("meta") or {}).get("fingerprint")
            if not fingerprint:
                break
            params["fingerprint"] = fingerprint
        else:
            through = max((t.block_timestamp for t in transfers), default=since)
            logger.warning(
                "transfer_listing_truncated",
                extra={
                    "extra": {
                        "address": address,
                        "pages": _MAX_TRANSFER_PAGES,
                        "through": through.isoformat(),
                    }
                },
            )
            raise TransferListingTruncatedError(address, transfers, through)
        return transfers

    def _parse_transfer(self, item: object) -> ExternalTransfer | None:
        if not isinstance(item, dict):
            return None
        token_info = item.get("token_info") or {}
        contract = token_info.get("address") if isinstance(token_info, dict) else None
        try:
            tx_id = str(item["transaction_id"])
            return ExternalTransfer(
                transaction_id=tx_id,
                from_address=str(item.get("from", "")),
                to_address=str(item["to"]),
                asset_contract_id=str(contract or ""),
                atomic_amount=int(item["value"]),
                block_timestamp=_ms_to_datetime(item["block_timestamp"]),
                confirmation_state=ConfirmationState.CONFIRMED,
                memo=self._fetch_memo(tx_id),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("transfer_parse_skipped", extra={"extra": {"item": item}})
            return None

    # writes

    def send_native(
        self, to_address: str, amount: Decimal, *, idempotency_key: str | None = None
    ) -> str:
        path = "/v1/native-transfers"
        payload = self._write(
            path,
            {
                "from": self.custody_address,
                "to": to_address,
                "amount": to_atomic_units(amount, decimals=NATIVE_DECIMALS),
            },
            idempotency_key=idempotency_key,
        )
        return self._transaction_id(payload, path)

    def send_asset(
        self,
        from_credential: str,
        to_address: str,
        atomic_amount: int,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        path = "/v1/asset-transfers"
        payload = self._write(
            path,
            {
                "credential": from_credential,
                "to": to_address,
                "contract": self.asset_contract_id,
                "amount": int(atomic_amount),
                "fee_limit": to_atomic_units(_FEE_LIMIT_NATIVE, decimals=NATIVE_DECIMALS),
            },
            idempotency_key=idempotency_key,
        )
        return self._transaction_id(payload, path)

    def delegate_resource(self, receiver: str, resource_class: ResourceClass, amount: int) -> str:
        path = "/v1/delegations"
        payload = self._write(
            path,
            {
                "owner": self.custody_address,
                "receiver": receiver,
                "resource": resource_class.value,
                "amount": int(amount),
                "lock": False,
            },
            idempotency_key=None,
        )
        return self._transaction_id(payload, path)

    def generate_account(self) -> GeneratedAccount:
        path = "/v1/accounts"
        payload = self._write(path, {}, idempotency_key=None)
        address = payload.get("address")
        credential = payload.get("private_key") or payload.get("credential")
        if not isinstance(address, str) or not isinstance(credential, str):
            raise LedgerRejectedError("signer returned an incomplete account")
        return GeneratedAccount(address=address, credential=credential)
