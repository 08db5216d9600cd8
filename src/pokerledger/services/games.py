from __future__ import annotations

from pokerledger.db.models import EntryType, Game, GameRef, GameStatus, LedgerEntry, new_entry
from pokerledger.db.store import LedgerStore
from pokerledger.errors import ValidationError
from pokerledger.logging import get_logger
from pokerledger.money import ZERO, money_sum

log = get_logger(__name__)


def build_game_entries(game: Game) -> list[LedgerEntry]:
    """Credit each player's cash-out and debit what they put in."""
    if game.status != GameStatus.FINISHED:
        raise ValidationError("Only finished games can be booked", {"game_id": game.id, "status": game.status.value})

    unbalanced = money_sum(player.net_result for player in game.players)
    if unbalanced != ZERO:
        raise ValidationError("Game results do not balance", {"game_id": game.id, "difference": unbalanced})

    source = GameRef(game.id)
    label = game.name or game.date.isoformat()
    entries: list[LedgerEntry] = []
    for player in game.players:
        if player.cash_out:
            entries.append(
                new_entry(player.participant_id, player.cash_out, EntryType.GAME_CREDIT, source, f"Cash-out: {label}")
            )
        if player.contributed:
            entries.append(
                new_entry(player.participant_id, -player.contributed, EntryType.GAME_DEBIT, source, f"Buy-ins: {label}")
            )
    return entries


async def record_game(store: LedgerStore, game: Game) -> list[LedgerEntry]:
    entries = build_game_entries(game)
    await store.insert_game(game, entries)
    log.info("game.recorded", game_id=game.id, entries=len(entries))
    return entries


async def reverse_game(store: LedgerStore, game_id: str) -> None:
    await store.delete_ledger_entries_by_source(GameRef(game_id))
    log.info("game.reversed", game_id=game_id)


async def register_player(store: LedgerStore, participant_id: str, name: str) -> None:
    await store.upsert_player(participant_id, name.strip())
    log.info("player.registered", participant_id=participant_id)
