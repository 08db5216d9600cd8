from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Optional, Sequence

from pokerledger.db.models import EntryType, Expense, ExpenseRef, ExpenseSplit, LedgerEntry, new_entry, new_id
from pokerledger.db.store import LedgerStore
from pokerledger.errors import ValidationError
from pokerledger.logging import get_logger
from pokerledger.money import ZERO, MoneyLike, money_sum, round2, split_evenly, to_money

# Custom splits may be off by a couple of cents from the typed total.
SPLIT_TOLERANCE = Decimal("0.02")

log = get_logger(__name__)


def equal_splits(total: MoneyLike, participant_ids: Sequence[str]) -> list[ExpenseSplit]:
    if not participant_ids:
        raise ValidationError("Expense must be split between at least one participant")
    shares = split_evenly(total, participant_ids)
    return [ExpenseSplit(participant_id=pid, amount=share) for pid, share in shares.items()]


def custom_splits(total: MoneyLike, amounts: Mapping[str, MoneyLike]) -> list[ExpenseSplit]:
    if not amounts:
        raise ValidationError("Expense must be split between at least one participant")
    amount = to_money(total)
    splits = [ExpenseSplit(participant_id=pid, amount=to_money(value)) for pid, value in amounts.items()]
    drift = round2(amount - money_sum(split.amount for split in splits))
    if abs(drift) > SPLIT_TOLERANCE:
        raise ValidationError("Splits do not add up to the expense total", {"total": amount, "drift": drift})
    splits[0].amount = round2(splits[0].amount + drift)
    if any(split.amount < ZERO for split in splits):
        raise ValidationError("Split amounts must not be negative")
    return splits


def build_expense_entries(expense: Expense) -> list[LedgerEntry]:
    if expense.total_amount <= ZERO:
        raise ValidationError("Expense total must be positive", {"total": expense.total_amount})
    if not expense.splits:
        raise ValidationError("Expense must be split between at least one participant")

    source = ExpenseRef(expense.id)
    entries = [
        new_entry(
            expense.paid_by,
            expense.total_amount,
            EntryType.EXPENSE,
            source,
            f"Paid expense: {expense.description}",
        )
    ]
    for split in expense.splits:
        entries.append(
            new_entry(
                split.participant_id,
                -split.amount,
                EntryType.EXPENSE,
                source,
                f"Expense share: {expense.description}",
            )
        )
    return entries


async def record_expense(
    store: LedgerStore,
    description: str,
    total_amount: MoneyLike,
    paid_by: str,
    splits: Sequence[ExpenseSplit],
    game_id: Optional[str] = None,
) -> Expense:
    expense = Expense(
        id=new_id(),
        description=description.strip(),
        total_amount=to_money(total_amount),
        paid_by=paid_by,
        splits=list(splits),
        game_id=game_id,
    )
    await store.insert_expense(expense, build_expense_entries(expense))
    log.info("expense.recorded", expense_id=expense.id, total=str(expense.total_amount), splits=len(expense.splits))
    return expense


async def delete_expense(store: LedgerStore, expense_id: str) -> None:
    await store.delete_expense(expense_id)
    log.info("expense.deleted", expense_id=expense_id)
