from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence, TypeVar

from pokerledger.db.models import ParticipantBalance, Transfer
from pokerledger.errors import ValidationError
from pokerledger.logging import get_logger
from pokerledger.money import DEFAULT_EPSILON, ZERO, money_sum, round2

K = TypeVar("K")

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Match:
    debtor: int
    creditor: int
    amount: Decimal


def match_greedy(
    debts: Sequence[Decimal],
    credits: Sequence[Decimal],
    epsilon: Decimal = DEFAULT_EPSILON,
) -> tuple[list[Match], Decimal, Decimal]:
    """Two-pointer matching over already sorted, positive amounts.

    Returns the matches as indexes into the inputs together with the unmatched
    debt and credit left over. The inputs are never mutated.
    """
    matches: list[Match] = []
    i, j = 0, 0
    remaining_debt = debts[0] if debts else ZERO
    remaining_credit = credits[0] if credits else ZERO

    while i < len(debts) and j < len(credits):
        amount = min(remaining_debt, remaining_credit)
        if amount > epsilon:
            matches.append(Match(debtor=i, creditor=j, amount=round2(amount)))

        remaining_debt = round2(remaining_debt - amount)
        remaining_credit = round2(remaining_credit - amount)

        if remaining_debt < epsilon:
            i += 1
            remaining_debt = debts[i] if i < len(debts) else ZERO
        if remaining_credit < epsilon:
            j += 1
            remaining_credit = credits[j] if j < len(credits) else ZERO

    residual_debt = money_sum(debts[i + 1:]) + (remaining_debt if i < len(debts) else ZERO)
    residual_credit = money_sum(credits[j + 1:]) + (remaining_credit if j < len(credits) else ZERO)
    return matches, round2(residual_debt), round2(residual_credit)


def partition(
    balances: Sequence[tuple[K, Decimal]],
    epsilon: Decimal = DEFAULT_EPSILON,
) -> tuple[list[tuple[K, Decimal]], list[tuple[K, Decimal]]]:
    """Split signed balances into debtors and creditors, largest first.

    ``sorted`` is stable, so equal amounts keep their input order.
    """
    debtors = [(key, round2(-balance)) for key, balance in balances if balance < -epsilon]
    creditors = [(key, round2(balance)) for key, balance in balances if balance > epsilon]
    debtors.sort(key=lambda x: x[1], reverse=True)
    creditors.sort(key=lambda x: x[1], reverse=True)
    return debtors, creditors


def check_balanced(balances: Sequence[ParticipantBalance], epsilon: Decimal = DEFAULT_EPSILON) -> None:
    total = money_sum(b.balance for b in balances)
    if abs(total) >= epsilon:
        raise ValidationError("Balances do not sum to zero", {"total": total, "participants": len(balances)})


def settle(balances: Sequence[ParticipantBalance], epsilon: Decimal = DEFAULT_EPSILON) -> list[Transfer]:
    names = {b.participant_id: b.name for b in balances}
    debtors, creditors = partition([(b.participant_id, b.balance) for b in balances], epsilon)

    matches, residual_debt, residual_credit = match_greedy(
        [amount for _, amount in debtors],
        [amount for _, amount in creditors],
        epsilon,
    )
    if residual_debt >= epsilon or residual_credit >= epsilon:
        log.warning(
            "netting.unbalanced_input",
            residual_debt=str(residual_debt),
            residual_credit=str(residual_credit),
        )

    transfers: list[Transfer] = []
    for match in matches:
        debtor_id = debtors[match.debtor][0]
        creditor_id = creditors[match.creditor][0]
        transfers.append(
            Transfer(
                from_participant=debtor_id,
                to_participant=creditor_id,
                amount=match.amount,
                from_name=names.get(debtor_id),
                to_name=names.get(creditor_id),
            )
        )
    return transfers
