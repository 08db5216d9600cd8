from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from pokerledger.errors import ValidationError
from pokerledger.money import ZERO, MoneyLike, round2, to_money


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class EntryType(str, Enum):
    GAME_CREDIT = "game_credit"
    GAME_DEBIT = "game_debit"
    EXPENSE = "expense"
    SETTLEMENT = "settlement"


class SettlementStatus(str, Enum):
    ACTIVE = "active"
    REPLACED = "replaced"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class GameStatus(str, Enum):
    ONGOING = "ongoing"
    FINISHED = "finished"


@dataclass(frozen=True, slots=True)
class GameRef:
    game_id: str

    @property
    def key(self) -> str:
        return self.game_id


@dataclass(frozen=True, slots=True)
class ExpenseRef:
    expense_id: str

    @property
    def key(self) -> str:
        return self.expense_id


@dataclass(frozen=True, slots=True)
class SettlementItemRef:
    item_id: str

    @property
    def key(self) -> str:
        return self.item_id


SourceRef = Union[GameRef, ExpenseRef, SettlementItemRef]

SOURCE_KINDS: dict[EntryType, type] = {
    EntryType.GAME_CREDIT: GameRef,
    EntryType.GAME_DEBIT: GameRef,
    EntryType.EXPENSE: ExpenseRef,
    EntryType.SETTLEMENT: SettlementItemRef,
}


def parse_source_ref(entry_type: EntryType | str, key: Optional[str]) -> Optional[SourceRef]:
    if key is None:
        return None
    kind = SOURCE_KINDS[EntryType(entry_type)]
    return kind(key)


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    id: str
    participant_id: str
    amount: Decimal
    entry_type: EntryType
    source: Optional[SourceRef]
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        # Entries whose source was deleted are read back with source=None.
        if self.source is not None and not isinstance(self.source, SOURCE_KINDS[self.entry_type]):
            raise ValidationError(
                "Source reference does not match entry type",
                {"entry_type": self.entry_type.value, "source": type(self.source).__name__},
            )

    @property
    def source_ref(self) -> Optional[str]:
        return self.source.key if self.source is not None else None


def new_entry(
    participant_id: str,
    amount: MoneyLike,
    entry_type: EntryType,
    source: SourceRef,
    description: Optional[str] = None,
) -> LedgerEntry:
    if source is None:
        raise ValidationError("New ledger entries must reference their source", {"entry_type": entry_type.value})
    return LedgerEntry(
        id=new_id(),
        participant_id=participant_id,
        amount=to_money(amount),
        entry_type=entry_type,
        source=source,
        description=description,
        created_at=utc_now(),
    )


@dataclass(slots=True)
class ParticipantBalance:
    participant_id: str
    name: str
    balance: Decimal


@dataclass(frozen=True, slots=True)
class Transfer:
    from_participant: str
    to_participant: str
    amount: Decimal
    from_name: Optional[str] = None
    to_name: Optional[str] = None


@dataclass(slots=True)
class SettlementItem:
    id: str
    settlement_id: str
    from_participant_id: str
    to_participant_id: str
    amount: Decimal
    paid_at: Optional[datetime] = None
    from_name: Optional[str] = None
    to_name: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None


@dataclass(slots=True)
class Settlement:
    id: str
    created_at: datetime
    status: SettlementStatus
    items: list[SettlementItem] = field(default_factory=list)

    @property
    def pending_items(self) -> list[SettlementItem]:
        return [item for item in self.items if not item.is_paid]

    @property
    def is_settled(self) -> bool:
        return not self.pending_items


@dataclass(slots=True)
class GamePlayer:
    id: str
    participant_id: str
    name: str
    initial_buyin: Decimal
    total_rebuys: int = 0
    cash_out: Optional[Decimal] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING

    @property
    def contributed(self) -> Decimal:
        return round2(self.initial_buyin + self.initial_buyin * self.total_rebuys)

    @property
    def net_result(self) -> Decimal:
        cash_out = self.cash_out if self.cash_out is not None else ZERO
        return round2(cash_out - self.contributed)


@dataclass(slots=True)
class Game:
    id: str
    date: date
    players: list[GamePlayer]
    status: GameStatus = GameStatus.FINISHED
    name: Optional[str] = None


@dataclass(slots=True)
class ExpenseSplit:
    participant_id: str
    amount: Decimal


@dataclass(slots=True)
class Expense:
    id: str
    description: str
    total_amount: Decimal
    paid_by: str
    splits: list[ExpenseSplit]
    game_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
