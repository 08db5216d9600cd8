"""Cent-precision money helpers.

Every amount that crosses a module boundary is a ``Decimal`` with exactly two
fractional digits. Arithmetic results are rounded right after each step.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Sequence, TypeVar, Union

from pokerledger.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_EPSILON = Decimal("0.01")

MoneyLike = Union[Decimal, int, str, float]

K = TypeVar("K")


def to_money(value: MoneyLike) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary value")
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError("Not a monetary amount", {"value": value}) from exc


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for value in values:
        total = round2(total + value)
    return total


def split_evenly(total: MoneyLike, participants: Sequence[K]) -> dict[K, Decimal]:
    """Split ``total`` into cent shares, one per participant.

    Leftover cents are handed out one at a time in input order, so the first
    participants may pay one cent more and the shares always add up to the total.
    """
    if not participants:
        raise ValueError("participants must not be empty")

    amount = to_money(total)
    n = len(participants)
    base_share = (amount / n).quantize(CENT, rounding=ROUND_DOWN)

    shares = [base_share for _ in participants]
    remainder = round2(amount - base_share * n)

    idx = 0
    step = CENT if remainder > 0 else -CENT
    while remainder != 0:
        shares[idx] += step
        remainder -= step
        idx = (idx + 1) % n

    return {participant: share for participant, share in zip(participants, shares)}
