from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

import asyncpg

from pokerledger.db.models import (
    SOURCE_KINDS,
    EntryType,
    Expense,
    ExpenseRef,
    ExpenseSplit,
    Game,
    GamePlayer,
    GameStatus,
    PaymentStatus,
    LedgerEntry,
    Settlement,
    SettlementItem,
    SettlementStatus,
    SourceRef,
    Transfer,
    new_id,
    parse_source_ref,
    utc_now,
)
from pokerledger.db.store import validate_batch
from pokerledger.errors import NotFoundError, PersistenceError
from pokerledger.logging import get_logger, sql_logger


class Database:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._conn: ContextVar[asyncpg.Connection | None] = ContextVar(f"db_conn_{id(self)}", default=None)
        self._log = get_logger(__name__)

    async def connect(self) -> None:
        if self._pool is None:
            # asyncpg expects a plain postgresql/postgres scheme, without "+asyncpg"
            dsn = self._dsn.replace("+asyncpg", "")
            self._pool = await asyncpg.create_pool(dsn)
            self._log.info("db.pool.created")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._log.info("db.pool.closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        current = self._conn.get()
        if current is not None:
            async with current.transaction():
                yield current
            return

        await self._ensure_pool()
        assert self._pool
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                token = self._conn.set(conn)
                try:
                    yield conn
                finally:
                    self._conn.reset(token)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        executor = await self._executor()
        sql_logger.info("sql.fetch", query=query, args=args)
        return await executor.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        executor = await self._executor()
        sql_logger.info("sql.fetchrow", query=query, args=args)
        return await executor.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        executor = await self._executor()
        sql_logger.info("sql.fetchval", query=query, args=args)
        return await executor.fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        executor = await self._executor()
        sql_logger.info("sql.execute", query=query, args=args)
        return await executor.execute(query, *args)

    async def executemany(self, command: str, args: Iterable[Iterable[Any]]) -> None:
        executor = await self._executor()
        sql_logger.info("sql.executemany", query=command)
        await executor.executemany(command, args)

    async def _executor(self) -> asyncpg.Connection | asyncpg.Pool:
        current = self._conn.get()
        if current is not None:
            return current
        await self._ensure_pool()
        assert self._pool
        return self._pool

    async def _ensure_pool(self) -> None:
        if self._pool is None:
            await self.connect()


def _source_types(source: SourceRef) -> list[str]:
    return [entry_type.value for entry_type, kind in SOURCE_KINDS.items() if isinstance(source, kind)]


def _entry_from_row(row: Any) -> LedgerEntry:
    entry_type = EntryType(row["entry_type"])
    return LedgerEntry(
        id=row["id"],
        participant_id=row["participant_id"],
        amount=row["amount"],
        entry_type=entry_type,
        source=parse_source_ref(entry_type, row["source_ref"]),
        description=row["description"],
        created_at=row["created_at"],
    )


def _item_from_row(row: Any) -> SettlementItem:
    return SettlementItem(
        id=row["id"],
        settlement_id=row["settlement_id"],
        from_participant_id=row["from_participant_id"],
        to_participant_id=row["to_participant_id"],
        amount=row["amount"],
        paid_at=row["paid_at"],
        from_name=row.get("from_name"),
        to_name=row.get("to_name"),
    )


_ITEM_SELECT = """
    SELECT si.*, fp.name AS from_name, tp.name AS to_name
    FROM settlement_items si
    LEFT JOIN players fp ON fp.id = si.from_participant_id
    LEFT JOIN players tp ON tp.id = si.to_participant_id
"""


class PostgresLedgerRepository:
    def __init__(self, db: Database) -> None:
        self.db = db
        self._log = get_logger(__name__)

    def transaction(self):
        return self.db.transaction()

    async def insert_ledger_entries(self, entries: Sequence[LedgerEntry]) -> None:
        validate_batch(entries)
        async with self.db.transaction():
            await self.db.executemany(
                """
                INSERT INTO ledger_entries (id, participant_id, amount, entry_type, source_ref, description, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                (
                    (
                        entry.id,
                        entry.participant_id,
                        entry.amount,
                        entry.entry_type.value,
                        entry.source_ref,
                        entry.description,
                        entry.created_at,
                    )
                    for entry in entries
                ),
            )
        self._log.info("ledger.entries.inserted", count=len(entries))

    async def delete_ledger_entries_by_source(self, source: SourceRef) -> None:
        status = await self.db.execute(
            "DELETE FROM ledger_entries WHERE source_ref = $1 AND entry_type = ANY($2::text[])",
            source.key,
            _source_types(source),
        )
        self._log.info("ledger.entries.deleted", source_ref=source.key, status=status)

    async def list_ledger_entries(self) -> list[LedgerEntry]:
        rows = await self.db.fetch("SELECT * FROM ledger_entries ORDER BY created_at, id")
        return [_entry_from_row(row) for row in rows]

    async def get_active_settlement(self) -> Optional[Settlement]:
        row = await self.db.fetchrow(
            """
            SELECT * FROM settlements
            WHERE status = 'active'
            ORDER BY created_at DESC
            LIMIT 1
            """
        )
        if row is None:
            return None
        items = await self.db.fetch(
            _ITEM_SELECT + " WHERE si.settlement_id = $1 ORDER BY si.position",
            row["id"],
        )
        return Settlement(
            id=row["id"],
            created_at=row["created_at"],
            status=SettlementStatus(row["status"]),
            items=[_item_from_row(item) for item in items],
        )

    async def replace_active_settlement(self, transfers: Sequence[Transfer]) -> Settlement:
        settlement_id = new_id()
        async with self.db.transaction():
            await self.db.execute("UPDATE settlements SET status = 'replaced' WHERE status = 'active'")
            row = await self.db.fetchrow(
                """
                INSERT INTO settlements (id, status)
                VALUES ($1, 'active')
                RETURNING *
                """,
                settlement_id,
            )
            if row is None:
                raise PersistenceError("Settlement insert returned no row", {"settlement_id": settlement_id})

            items = [
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
            ]
            if items:
                await self.db.executemany(
                    """
                    INSERT INTO settlement_items (id, settlement_id, position, from_participant_id, to_participant_id, amount)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    (
                        (item.id, settlement_id, position, item.from_participant_id, item.to_participant_id, item.amount)
                        for position, item in enumerate(items)
                    ),
                )

        return Settlement(
            id=settlement_id,
            created_at=row["created_at"],
            status=SettlementStatus.ACTIVE,
            items=items,
        )

    async def get_settlement_item(self, item_id: str, *, lock: bool = False) -> Optional[SettlementItem]:
        query = _ITEM_SELECT + " WHERE si.id = $1"
        if lock:
            query += " FOR UPDATE OF si"
        row = await self.db.fetchrow(query, item_id)
        return _item_from_row(row) if row is not None else None

    async def set_item_paid_at(self, item_id: str, paid_at: Optional[datetime]) -> None:
        updated = await self.db.fetchval(
            "UPDATE settlement_items SET paid_at = $1 WHERE id = $2 RETURNING id",
            paid_at,
            item_id,
        )
        if updated is None:
            raise NotFoundError("Settlement item not found", {"item_id": item_id})

    async def upsert_player(self, participant_id: str, name: str) -> None:
        await self.db.execute(
            """
            INSERT INTO players (id, name)
            VALUES ($1, $2)
            ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name
            """,
            participant_id,
            name,
        )

    async def player_names(self) -> dict[str, str]:
        rows = await self.db.fetch("SELECT id, name FROM players")
        return {row["id"]: row["name"] for row in rows}

    async def insert_expense(self, expense: Expense, entries: Sequence[LedgerEntry]) -> None:
        validate_batch(entries)
        async with self.db.transaction():
            await self.db.execute(
                """
                INSERT INTO expenses (id, description, total_amount, paid_by_player_id, game_id, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                expense.id,
                expense.description,
                expense.total_amount,
                expense.paid_by,
                expense.game_id,
                expense.created_at,
            )
            await self.db.executemany(
                """
                INSERT INTO expense_splits (id, expense_id, player_id, amount)
                VALUES ($1, $2, $3, $4)
                """,
                ((new_id(), expense.id, split.participant_id, split.amount) for split in expense.splits),
            )
            await self.insert_ledger_entries(entries)

    async def delete_expense(self, expense_id: str) -> None:
        async with self.db.transaction():
            await self.delete_ledger_entries_by_source(ExpenseRef(expense_id))
            # splits cascade
            await self.db.execute("DELETE FROM expenses WHERE id = $1", expense_id)

    async def list_expenses(self) -> list[Expense]:
        rows = await self.db.fetch(
            """
            SELECT e.*, s.player_id AS split_player_id, s.amount AS split_amount
            FROM expenses e
            LEFT JOIN expense_splits s ON s.expense_id = e.id
            ORDER BY e.created_at DESC, e.id, s.id
            """
        )
        expenses: dict[str, Expense] = {}
        for row in rows:
            expense = expenses.get(row["id"])
            if expense is None:
                expense = Expense(
                    id=row["id"],
                    description=row["description"],
                    total_amount=row["total_amount"],
                    paid_by=row["paid_by_player_id"],
                    splits=[],
                    game_id=row["game_id"],
                    created_at=row["created_at"],
                )
                expenses[row["id"]] = expense
            if row["split_player_id"] is not None:
                expense.splits.append(ExpenseSplit(participant_id=row["split_player_id"], amount=row["split_amount"]))
        return list(expenses.values())

    async def insert_game(self, game: Game, entries: Sequence[LedgerEntry]) -> None:
        async with self.db.transaction():
            await self.db.executemany(
                """
                INSERT INTO players (id, name)
                VALUES ($1, $2)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name
                """,
                ((player.participant_id, player.name) for player in game.players),
            )
            await self.db.execute(
                """
                INSERT INTO games (id, name, date, status)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE
                    SET name = EXCLUDED.name,
                        date = EXCLUDED.date,
                        status = EXCLUDED.status
                """,
                game.id,
                game.name,
                game.date,
                game.status.value,
            )
            await self.db.executemany(
                """
                INSERT INTO game_players (id, game_id, player_id, initial_buyin, total_rebuys, cash_out, payment_status)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE
                    SET initial_buyin = EXCLUDED.initial_buyin,
                        total_rebuys = EXCLUDED.total_rebuys,
                        cash_out = EXCLUDED.cash_out
                """,
                (
                    (
                        player.id,
                        game.id,
                        player.participant_id,
                        player.initial_buyin,
                        player.total_rebuys,
                        player.cash_out,
                        player.payment_status.value,
                    )
                    for player in game.players
                ),
            )
            if entries:
                await self.insert_ledger_entries(entries)

    async def list_finished_games(self) -> list[Game]:
        rows = await self.db.fetch(
            """
            SELECT g.id AS game_id, g.name AS game_name, g.date AS game_date, g.status AS game_status,
                   gp.id AS game_player_id, gp.player_id, p.name AS player_name,
                   gp.initial_buyin, gp.total_rebuys, gp.cash_out, gp.payment_status
            FROM games g
            JOIN game_players gp ON gp.game_id = g.id
            JOIN players p ON p.id = gp.player_id
            WHERE g.status = 'finished'
            ORDER BY g.date, g.id, gp.id
            """
        )
        games: dict[str, Game] = {}
        for row in rows:
            game = games.get(row["game_id"])
            if game is None:
                game = Game(
                    id=row["game_id"],
                    date=row["game_date"],
                    players=[],
                    status=GameStatus(row["game_status"]),
                    name=row["game_name"],
                )
                games[row["game_id"]] = game
            game.players.append(
                GamePlayer(
                    id=row["game_player_id"],
                    participant_id=row["player_id"],
                    name=row["player_name"],
                    initial_buyin=row["initial_buyin"],
                    total_rebuys=row["total_rebuys"],
                    cash_out=row["cash_out"],
                    payment_status=PaymentStatus(row["payment_status"]),
                )
            )
        return list(games.values())

    async def set_game_player_payment_status(self, game_player_ids: Sequence[str], status: PaymentStatus) -> None:
        wanted = sorted(set(game_player_ids))
        payment_date = utc_now() if status == PaymentStatus.PAID else None
        async with self.db.transaction():
            rows = await self.db.fetch(
                """
                UPDATE game_players
                SET payment_status = $1, payment_date = $2
                WHERE id = ANY($3::text[])
                RETURNING id
                """,
                status.value,
                payment_date,
                wanted,
            )
            if len(rows) != len(wanted):
                raise NotFoundError("Game player not found", {"game_player_ids": wanted})
        self._log.info("game_players.payment_status", status=status.value, count=len(rows))
