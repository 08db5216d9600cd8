from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Mapping, Optional

from pokerledger.db.models import LedgerEntry, ParticipantBalance
from pokerledger.db.store import LedgerStore
from pokerledger.money import ZERO, round2


def balance_map(entries: Iterable[LedgerEntry]) -> dict[str, Decimal]:
    """Sum entries per participant.

    Participants without entries are absent rather than zero. Entries whose
    source no longer exists are counted like any other.
    """
    totals: dict[str, Decimal] = {}
    for entry in entries:
        totals[entry.participant_id] = totals.get(entry.participant_id, ZERO) + entry.amount
    return {participant_id: round2(total) for participant_id, total in totals.items()}


def aggregate_balances(
    entries: Iterable[LedgerEntry],
    names: Optional[Mapping[str, str]] = None,
) -> list[ParticipantBalance]:
    names = names or {}
    return [
        ParticipantBalance(
            participant_id=participant_id,
            name=names.get(participant_id, participant_id),
            balance=balance,
        )
        for participant_id, balance in sorted(balance_map(entries).items())
    ]


async def load_balances(store: LedgerStore, names: Optional[Mapping[str, str]] = None) -> list[ParticipantBalance]:
    entries = await store.list_ledger_entries()
    return aggregate_balances(entries, names)
