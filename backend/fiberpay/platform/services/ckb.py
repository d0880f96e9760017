from __future__ import annotations

from decimal import Decimal, ROUND_DOWN


SHANNON_DECIMALS = 8
SHANNON_PER_CKB = 10**SHANNON_DECIMALS


def ckb_to_shannon(amount: Decimal | str | int) -> int:
    value = Decimal(amount)
    if value.is_nan():
        raise ValueError("amount is NaN")
    if value < 0:
        raise ValueError("amount must be non-negative")

    minor = (value * SHANNON_PER_CKB).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return int(minor)


def shannon_to_ckb(amount: int) -> Decimal:
    if amount < 0:
        raise ValueError("amount must be non-negative")

    return Decimal(amount) / SHANNON_PER_CKB


def format_shannon(amount: int | str, decimals: int = 4) -> str:
    value = from_hex(amount) if isinstance(amount, str) else amount
    quantum = Decimal(1).scaleb(-decimals)
    return str(shannon_to_ckb(value).quantize(quantum, rounding=ROUND_DOWN))


def to_hex(value: int) -> str:
    if value < 0:
        raise ValueError("value must be non-negative")
    return hex(value)


def from_hex(value: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"invalid hex quantity: {value!r}")
    return int(value, 16)
