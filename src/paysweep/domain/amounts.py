from __future__ import annotations

from decimal import Decimal, InvalidOperation

ASSET_DECIMALS = 6
NATIVE_DECIMALS = 6


def quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def parse_amount(value: Decimal | str | int, *, decimals: int = ASSET_DECIMALS) -> Decimal:
    """Parse a human-unit amount and reject anything finer than the asset precision."""

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"amount must be a positive number: {value!r}")
    quantized = amount.quantize(quantum(decimals))
    if quantized != amount:
        raise ValueError(f"amount {value!r} exceeds {decimals} decimal places")
    return quantized


def to_atomic_units(amount: Decimal, *, decimals: int = ASSET_DECIMALS) -> int:
    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"amount {amount} exceeds {decimals} decimal places")
    return int(scaled)


def from_atomic_units(atomic: int, *, decimals: int = ASSET_DECIMALS) -> Decimal:
    return Decimal(int(atomic)).scaleb(-decimals).quantize(quantum(decimals))
