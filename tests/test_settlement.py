from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pokerledger.db.memory import InMemoryLedgerStore
from pokerledger.db.models import EntryType, ExpenseRef, ParticipantBalance, SettlementStatus, new_entry
from pokerledger.errors import NotFoundError, SettlementStateError, ValidationError
from pokerledger.services.balances import balance_map
from pokerledger.services.games import register_player
from pokerledger.services.settlement import SettlementManager

PAID_AT = datetime(2024, 6, 1, 20, 0, tzinfo=timezone.utc)


class FlakyStore(InMemoryLedgerStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_paid_at = False
        self.fail_replace = False

    async def set_item_paid_at(self, item_id, paid_at):
        if self.fail_paid_at:
            raise ConnectionError("storage unavailable")
        await super().set_item_paid_at(item_id, paid_at)

    async def replace_active_settlement(self, transfers):
        settlement = await super().replace_active_settlement(transfers)
        if self.fail_replace:
            raise ConnectionError("storage unavailable")
        return settlement


def balances(**amounts: str) -> list[ParticipantBalance]:
    return [ParticipantBalance(participant_id=pid, name=f"Player {pid}", balance=Decimal(v)) for pid, v in amounts.items()]


async def seed_expense(store: InMemoryLedgerStore, payer: str, debtor: str, amount: str) -> None:
    source = ExpenseRef(f"{payer}-{debtor}-{amount}")
    await store.insert_ledger_entries(
        [new_entry(payer, amount, EntryType.EXPENSE, source), new_entry(debtor, f"-{amount}", EntryType.EXPENSE, source)]
    )


def active_count(store: InMemoryLedgerStore) -> int:
    return sum(1 for s in store.settlements.values() if s.status == SettlementStatus.ACTIVE)


@pytest.mark.asyncio
async def test_generate_creates_pending_items():
    store = InMemoryLedgerStore()
    manager = SettlementManager(store, clock=lambda: PAID_AT)

    settlement = await manager.generate(balances(A="-30", B="-10", C="40"))

    assert settlement.status == SettlementStatus.ACTIVE
    assert [(i.from_participant_id, i.to_participant_id, i.amount) for i in settlement.items] == [
        ("A", "C", Decimal("30.00")),
        ("B", "C", Decimal("10.00")),
    ]
    assert all(i.paid_at is None for i in settlement.items)
    assert (await manager.active_settlement()).id == settlement.id


@pytest.mark.asyncio
async def test_generate_without_balances_yields_empty_settlement():
    manager = SettlementManager(InMemoryLedgerStore())

    settlement = await manager.generate([])

    assert settlement.status == SettlementStatus.ACTIVE
    assert settlement.items == []
    assert settlement.is_settled


@pytest.mark.asyncio
async def test_regenerate_replaces_previous_settlement():
    store = InMemoryLedgerStore()
    manager = SettlementManager(store)

    first = await manager.generate(balances(A="-5", B="5"))
    second = await manager.generate(balances(A="-7", B="7"))

    assert active_count(store) == 1
    assert store.settlements[first.id].status == SettlementStatus.REPLACED
    assert (await manager.active_settlement()).id == second.id


@pytest.mark.asyncio
async def test_generate_rejects_unbalanced_input_and_keeps_state():
    store = InMemoryLedgerStore()
    manager = SettlementManager(store)
    first = await manager.generate(balances(A="-5", B="5"))

    with pytest.raises(ValidationError):
        await manager.generate(balances(A="-50", B="30"))

    assert (await manager.active_settlement()).id == first.id


@pytest.mark.asyncio
async def test_generate_failure_keeps_previous_active():
    store = FlakyStore()
    manager = SettlementManager(store)
    first = await manager.generate(balances(A="-5", B="5"))

    store.fail_replace = True
    with pytest.raises(ConnectionError):
        await manager.generate(balances(A="-7", B="7"))

    assert active_count(store) == 1
    assert (await manager.active_settlement()).id == first.id


@pytest.mark.asyncio
async def test_mark_paid_appends_compensating_entries():
    store = InMemoryLedgerStore()
    await seed_expense(store, payer="B", debtor="A", amount="20")
    manager = SettlementManager(store, clock=lambda: PAID_AT)
    settlement = await manager.generate_from_ledger(names={"A": "Ana", "B": "Bo"})
    item = settlement.items[0]
    before = balance_map(await store.list_ledger_entries())

    paid = await manager.mark_paid(item.id)

    after = balance_map(await store.list_ledger_entries())
    assert paid.paid_at == PAID_AT
    assert after["A"] - before["A"] == Decimal("20.00")
    assert after["B"] - before["B"] == Decimal("-20.00")
    assert after == {"A": Decimal("0.00"), "B": Decimal("0.00")}

    compensating = [e for e in await store.list_ledger_entries() if e.entry_type == EntryType.SETTLEMENT]
    assert {(e.participant_id, e.amount, e.source_ref) for e in compensating} == {
        ("A", Decimal("20.00"), item.id),
        ("B", Decimal("-20.00"), item.id),
    }
    assert {e.description for e in compensating} == {"Payment to Bo", "Payment from Ana"}
    assert (await store.get_settlement_item(item.id)).paid_at == PAID_AT


@pytest.mark.asyncio
async def test_mark_paid_twice_is_rejected():
    store = InMemoryLedgerStore()
    manager = SettlementManager(store)
    item = (await manager.generate(balances(A="-20", B="20"))).items[0]
    await manager.mark_paid(item.id)

    with pytest.raises(SettlementStateError):
        await manager.mark_paid(item.id)

    assert len(await store.list_ledger_entries()) == 2


@pytest.mark.asyncio
async def test_unmark_paid_restores_ledger():
    store = InMemoryLedgerStore()
    await seed_expense(store, payer="B", debtor="A", amount="20")
    manager = SettlementManager(store)
    item = (await manager.generate_from_ledger()).items[0]
    before = {e.id for e in await store.list_ledger_entries()}

    await manager.mark_paid(item.id)
    unpaid = await manager.unmark_paid(item.id)

    assert unpaid.paid_at is None
    assert {e.id for e in await store.list_ledger_entries()} == before
    assert (await store.get_settlement_item(item.id)).paid_at is None


@pytest.mark.asyncio
async def test_unmark_pending_item_is_rejected():
    manager = SettlementManager(InMemoryLedgerStore())
    item = (await manager.generate(balances(A="-20", B="20"))).items[0]

    with pytest.raises(SettlementStateError):
        await manager.unmark_paid(item.id)


@pytest.mark.asyncio
async def test_unknown_item_is_not_found():
    manager = SettlementManager(InMemoryLedgerStore())
    with pytest.raises(NotFoundError):
        await manager.mark_paid("missing")


@pytest.mark.asyncio
async def test_mark_paid_failure_leaves_no_entries():
    store = FlakyStore()
    manager = SettlementManager(store)
    item = (await manager.generate(balances(A="-20", B="20"))).items[0]

    store.fail_paid_at = True
    with pytest.raises(ConnectionError):
        await manager.mark_paid(item.id)

    assert await store.list_ledger_entries() == []
    assert (await store.get_settlement_item(item.id)).paid_at is None


@pytest.mark.asyncio
async def test_unmark_paid_failure_keeps_entries():
    store = FlakyStore()
    manager = SettlementManager(store)
    item = (await manager.generate(balances(A="-20", B="20"))).items[0]
    await manager.mark_paid(item.id)

    store.fail_paid_at = True
    with pytest.raises(ConnectionError):
        await manager.unmark_paid(item.id)

    assert len(await store.list_ledger_entries()) == 2
    assert (await store.get_settlement_item(item.id)).paid_at is not None


@pytest.mark.asyncio
async def test_generate_from_ledger_uses_registered_names():
    store = InMemoryLedgerStore()
    await register_player(store, "A", "Ana")
    await register_player(store, "B", " Bo ")
    await seed_expense(store, payer="B", debtor="A", amount="20")
    manager = SettlementManager(store)

    item = (await manager.generate_from_ledger()).items[0]
    await manager.mark_paid(item.id)

    assert (item.from_name, item.to_name) == ("Ana", "Bo")
    descriptions = {e.description for e in await store.list_ledger_entries() if e.entry_type == EntryType.SETTLEMENT}
    assert descriptions == {"Payment to Bo", "Payment from Ana"}
