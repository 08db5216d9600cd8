"""Payments owed per game, grouped by participant pair across games.

Each game is netted on its own before anything is aggregated: payment status
lives on the game player, so a debt from one game must never be blended with
a debt from another.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from pokerledger.db.models import Game, GamePlayer, GameStatus, PaymentStatus
from pokerledger.db.store import LedgerStore
from pokerledger.logging import get_logger
from pokerledger.money import DEFAULT_EPSILON, ZERO, money_sum
from pokerledger.services.netting import match_greedy, partition

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Participant:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class PaymentDetail:
    game_id: str
    game_name: Optional[str]
    game_date: date
    amount: Decimal
    game_player_id: str
    payment_status: PaymentStatus


@dataclass(slots=True)
class GameTransaction:
    from_participant: Participant
    to_participant: Participant
    total_amount: Decimal = ZERO
    details: list[PaymentDetail] = field(default_factory=list)


def game_payments(game: Game, epsilon: Decimal = DEFAULT_EPSILON) -> list[tuple[GamePlayer, GamePlayer, Decimal]]:
    """Greedy debtor/creditor matching restricted to one game."""
    debtors, creditors = partition([(player, player.net_result) for player in game.players], epsilon)
    matches, _, _ = match_greedy(
        [amount for _, amount in debtors],
        [amount for _, amount in creditors],
        epsilon,
    )
    return [(debtors[m.debtor][0], creditors[m.creditor][0], m.amount) for m in matches]


def aggregate_game_payments(games: Iterable[Game], epsilon: Decimal = DEFAULT_EPSILON) -> list[GameTransaction]:
    transactions: dict[tuple[str, str], GameTransaction] = {}

    for game in games:
        if game.status != GameStatus.FINISHED:
            continue
        for debtor, creditor, amount in game_payments(game, epsilon):
            key = (debtor.participant_id, creditor.participant_id)
            transaction = transactions.get(key)
            if transaction is None:
                transaction = GameTransaction(
                    from_participant=Participant(debtor.participant_id, debtor.name),
                    to_participant=Participant(creditor.participant_id, creditor.name),
                )
                transactions[key] = transaction
            transaction.details.append(
                PaymentDetail(
                    game_id=game.id,
                    game_name=game.name,
                    game_date=game.date,
                    amount=amount,
                    game_player_id=debtor.id,
                    payment_status=debtor.payment_status,
                )
            )

    for transaction in transactions.values():
        transaction.total_amount = money_sum(detail.amount for detail in transaction.details)

    return sorted(transactions.values(), key=lambda t: t.total_amount, reverse=True)


def filter_by_status(
    transactions: Sequence[GameTransaction],
    status: PaymentStatus,
) -> list[GameTransaction]:
    filtered: list[GameTransaction] = []
    for transaction in transactions:
        details = [detail for detail in transaction.details if detail.payment_status == status]
        if not details:
            continue
        filtered.append(
            GameTransaction(
                from_participant=transaction.from_participant,
                to_participant=transaction.to_participant,
                total_amount=money_sum(detail.amount for detail in details),
                details=details,
            )
        )
    return filtered


async def load_game_payments(
    store: LedgerStore,
    status: Optional[PaymentStatus] = None,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> list[GameTransaction]:
    transactions = aggregate_game_payments(await store.list_finished_games(), epsilon)
    if status is not None:
        transactions = filter_by_status(transactions, status)
    return transactions


async def set_payment_status(store: LedgerStore, game_player_ids: Sequence[str], status: PaymentStatus) -> None:
    await store.set_game_player_payment_status(game_player_ids, status)
    log.info("payments.status", status=status.value, game_players=len(game_player_ids))
