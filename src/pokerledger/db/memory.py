from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Optional, Sequence

from pokerledger.db.models import (
    Expense,
    ExpenseRef,
    Game,
    GameStatus,
    LedgerEntry,
    PaymentStatus,
    Settlement,
    SettlementItem,
    SettlementStatus,
    SourceRef,
    Transfer,
    new_id,
    utc_now,
)
from pokerledger.db.store import validate_batch
from pokerledger.errors import NotFoundError
from pokerledger.logging import get_logger


class InMemoryLedgerStore:
    """Dict-backed ledger store.

    ``transaction()`` snapshots the whole state and restores it if the block
    raises, so multi-step writes are all-or-nothing here as well.
    """

    def __init__(self) -> None:
        self.entries: dict[str, LedgerEntry] = {}
        self.settlements: dict[str, Settlement] = {}
        self.players: dict[str, str] = {}
        self.games: dict[str, Game] = {}
        self.expenses: dict[str, Expense] = {}
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(f"memstore_tx_{id(self)}", default=False)
        self._log = get_logger(__name__)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            snapshot = self._snapshot()
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                self._log.info("memstore.rollback")
                raise
            finally:
                self._in_transaction.reset(token)

    def _snapshot(self) -> tuple:
        return (
            dict(self.entries),
            copy.deepcopy(self.settlements),
            dict(self.players),
            copy.deepcopy(self.games),
            copy.deepcopy(self.expenses),
        )

    def _restore(self, snapshot: tuple) -> None:
        self.entries, self.settlements, self.players, self.games, self.expenses = snapshot

    async def insert_ledger_entries(self, entries: Sequence[LedgerEntry]) -> None:
        validate_batch(entries)
        updated = dict(self.entries)
        for entry in entries:
            updated[entry.id] = entry
        self.entries = updated

    async def delete_ledger_entries_by_source(self, source: SourceRef) -> None:
        self.entries = {key: entry for key, entry in self.entries.items() if entry.source != source}

    async def list_ledger_entries(self) -> list[LedgerEntry]:
        return sorted(self.entries.values(), key=lambda e: e.created_at)

    async def get_active_settlement(self) -> Optional[Settlement]:
        active = [s for s in self.settlements.values() if s.status == SettlementStatus.ACTIVE]
        if not active:
            return None
        latest = max(active, key=lambda s: s.created_at)
        return copy.deepcopy(latest)

    async def replace_active_settlement(self, transfers: Sequence[Transfer]) -> Settlement:
        settlement_id = new_id()
        settlement = Settlement(
            id=settlement_id,
            created_at=utc_now(),
            status=SettlementStatus.ACTIVE,
            items=[
                SettlementItem(
                    id=new_id(),
                    settlement_id=settlement_id,
                    from_participant_id=t.from_participant,
                    to_participant_id=t.to_participant,
                    amount=t.amount,
                    from_name=t.from_name,
                    to_name=t.to_name,
                )
                for t in transfers
            ],
        )

        updated = copy.deepcopy(self.settlements)
        for existing in updated.values():
            if existing.status == SettlementStatus.ACTIVE:
                existing.status = SettlementStatus.REPLACED
        updated[settlement_id] = settlement
        self.settlements = updated
        return copy.deepcopy(settlement)

    async def get_settlement_item(self, item_id: str, *, lock: bool = False) -> Optional[SettlementItem]:
        item = self._find_item(item_id)
        return copy.deepcopy(item) if item is not None else None

    async def set_item_paid_at(self, item_id: str, paid_at: Optional[datetime]) -> None:
        item = self._find_item(item_id)
        if item is None:
            raise NotFoundError("Settlement item not found", {"item_id": item_id})
        item.paid_at = paid_at

    async def upsert_player(self, participant_id: str, name: str) -> None:
        self.players[participant_id] = name

    async def player_names(self) -> dict[str, str]:
        return dict(self.players)

    async def insert_expense(self, expense: Expense, entries: Sequence[LedgerEntry]) -> None:
        validate_batch(entries)
        async with self.transaction():
            self.expenses[expense.id] = copy.deepcopy(expense)
            await self.insert_ledger_entries(entries)

    async def delete_expense(self, expense_id: str) -> None:
        async with self.transaction():
            await self.delete_ledger_entries_by_source(ExpenseRef(expense_id))
            self.expenses.pop(expense_id, None)

    async def list_expenses(self) -> list[Expense]:
        expenses = sorted(self.expenses.values(), key=lambda e: e.created_at, reverse=True)
        return copy.deepcopy(expenses)

    async def insert_game(self, game: Game, entries: Sequence[LedgerEntry]) -> None:
        async with self.transaction():
            for player in game.players:
                await self.upsert_player(player.participant_id, player.name)
            self.games[game.id] = copy.deepcopy(game)
            if entries:
                await self.insert_ledger_entries(entries)

    async def list_finished_games(self) -> list[Game]:
        games = [g for g in self.games.values() if g.status == GameStatus.FINISHED]
        return copy.deepcopy(sorted(games, key=lambda g: (g.date, g.id)))

    async def set_game_player_payment_status(self, game_player_ids: Sequence[str], status: PaymentStatus) -> None:
        wanted = set(game_player_ids)
        players = [p for game in self.games.values() for p in game.players if p.id in wanted]
        if len(players) != len(wanted):
            raise NotFoundError("Game player not found", {"game_player_ids": sorted(wanted)})
        for player in players:
            player.payment_status = status

    def _find_item(self, item_id: str) -> Optional[SettlementItem]:
        for settlement in self.settlements.values():
            for item in settlement.items:
                if item.id == item_id:
                    return item
        return None
