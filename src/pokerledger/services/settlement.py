"""Settlement lifecycle: generate, mark paid, unmark paid.

Each write runs inside ``store.transaction()`` so a storage failure leaves
the previous settlement and ledger untouched. Two concurrent ``generate``
calls are not coordinated here. On PostgreSQL the single-active unique index
decides: the second transaction's UPDATE does not see the row the first one
just inserted, so its INSERT fails with a unique violation and the first call
wins. The loser's error reaches the caller unchanged and its caller may retry.
The in-memory store serializes transactions, so there the later call wins.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping, Optional, Sequence

from pokerledger.config import Settings, get_settings
from pokerledger.db.models import (
    EntryType,
    ParticipantBalance,
    Settlement,
    SettlementItem,
    SettlementItemRef,
    new_entry,
    utc_now,
)
from pokerledger.db.store import LedgerStore
from pokerledger.errors import NotFoundError, SettlementStateError
from pokerledger.logging import get_logger
from pokerledger.money import DEFAULT_EPSILON, money_sum
from pokerledger.services.balances import load_balances
from pokerledger.services.netting import check_balanced, settle


class SettlementManager:
    def __init__(
        self,
        store: LedgerStore,
        epsilon: Decimal = DEFAULT_EPSILON,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.epsilon = epsilon
        self.clock = clock
        self._log = get_logger(__name__)

    async def active_settlement(self) -> Optional[Settlement]:
        return await self.store.get_active_settlement()

    async def generate(self, balances: Sequence[ParticipantBalance]) -> Settlement:
        check_balanced(balances, self.epsilon)
        transfers = settle(balances, self.epsilon)

        async with self.store.transaction():
            settlement = await self.store.replace_active_settlement(transfers)

        self._log.info(
            "settlement.generate",
            settlement_id=settlement.id,
            items=len(settlement.items),
            total=str(money_sum(t.amount for t in transfers)),
        )
        return settlement

    async def generate_from_ledger(self, names: Optional[Mapping[str, str]] = None) -> Settlement:
        if names is None:
            names = await self.store.player_names()
        return await self.generate(await load_balances(self.store, names))

    async def mark_paid(self, item_id: str) -> SettlementItem:
        async with self.store.transaction():
            item = await self._get_item(item_id)
            if item.is_paid:
                raise SettlementStateError("Settlement item is already paid", {"item_id": item_id})

            paid_at = self.clock()
            source = SettlementItemRef(item.id)
            to_label = item.to_name or item.to_participant_id
            from_label = item.from_name or item.from_participant_id
            await self.store.insert_ledger_entries(
                [
                    new_entry(
                        item.from_participant_id,
                        item.amount,
                        EntryType.SETTLEMENT,
                        source,
                        f"Payment to {to_label}",
                    ),
                    new_entry(
                        item.to_participant_id,
                        -item.amount,
                        EntryType.SETTLEMENT,
                        source,
                        f"Payment from {from_label}",
                    ),
                ]
            )
            await self.store.set_item_paid_at(item.id, paid_at)

        item.paid_at = paid_at
        self._log.info("settlement.item.paid", item_id=item.id, amount=str(item.amount))
        return item

    async def unmark_paid(self, item_id: str) -> SettlementItem:
        async with self.store.transaction():
            item = await self._get_item(item_id)
            if not item.is_paid:
                raise SettlementStateError("Settlement item is not paid", {"item_id": item_id})

            await self.store.delete_ledger_entries_by_source(SettlementItemRef(item.id))
            await self.store.set_item_paid_at(item.id, None)

        item.paid_at = None
        self._log.info("settlement.item.unpaid", item_id=item.id)
        return item

    async def _get_item(self, item_id: str) -> SettlementItem:
        item = await self.store.get_settlement_item(item_id, lock=True)
        if item is None:
            raise NotFoundError("Settlement item not found", {"item_id": item_id})
        return item


def build_settlement_manager(store: LedgerStore, settings: Optional[Settings] = None) -> SettlementManager:
    settings = settings or get_settings()
    return SettlementManager(store, epsilon=settings.settlement_epsilon)
