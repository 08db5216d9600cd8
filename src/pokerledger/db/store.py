"""Storage contract shared by the PostgreSQL repository and the in-memory store."""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol, Sequence

from pokerledger.db.models import (
    Expense,
    Game,
    LedgerEntry,
    PaymentStatus,
    Settlement,
    SettlementItem,
    SourceRef,
    Transfer,
)
from pokerledger.errors import ValidationError
from pokerledger.money import ZERO, money_sum


class LedgerStore(Protocol):
    def transaction(self) -> AsyncContextManager[object]: ...

    async def insert_ledger_entries(self, entries: Sequence[LedgerEntry]) -> None: ...

    async def delete_ledger_entries_by_source(self, source: SourceRef) -> None: ...

    async def list_ledger_entries(self) -> list[LedgerEntry]: ...

    async def get_active_settlement(self) -> Optional[Settlement]: ...

    async def replace_active_settlement(self, transfers: Sequence[Transfer]) -> Settlement: ...

    async def get_settlement_item(self, item_id: str, *, lock: bool = False) -> Optional[SettlementItem]: ...

    async def set_item_paid_at(self, item_id: str, paid_at: Optional[datetime]) -> None: ...

    async def upsert_player(self, participant_id: str, name: str) -> None: ...

    async def player_names(self) -> dict[str, str]: ...

    async def insert_expense(self, expense: Expense, entries: Sequence[LedgerEntry]) -> None: ...

    async def delete_expense(self, expense_id: str) -> None: ...

    async def list_expenses(self) -> list[Expense]: ...

    async def insert_game(self, game: Game, entries: Sequence[LedgerEntry]) -> None: ...

    async def list_finished_games(self) -> list[Game]: ...

    async def set_game_player_payment_status(self, game_player_ids: Sequence[str], status: PaymentStatus) -> None: ...


def validate_batch(entries: Sequence[LedgerEntry]) -> None:
    """Reject batches that could not have come from one balanced event."""
    if not entries:
        raise ValidationError("Ledger batch must not be empty")
    total = money_sum(entry.amount for entry in entries)
    if total != ZERO:
        raise ValidationError(
            "Ledger batch does not net to zero",
            {"total": total, "entries": len(entries)},
        )
