from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pokerledger.config import Settings, get_settings
from pokerledger.db.repo import Database, PostgresLedgerRepository
from pokerledger.logging import configure_logging, get_logger
from pokerledger.services.settlement import SettlementManager, build_settlement_manager


@dataclass(slots=True)
class Ledger:
    db: Database
    repo: PostgresLedgerRepository
    settlements: SettlementManager


async def open_ledger(settings: Optional[Settings] = None) -> Ledger:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    db = Database(settings.database_url)
    await db.connect()
    repo = PostgresLedgerRepository(db)

    log = get_logger(__name__)
    log.info("ledger.open", epsilon=str(settings.settlement_epsilon))
    return Ledger(db=db, repo=repo, settlements=build_settlement_manager(repo, settings))


async def close_ledger(ledger: Ledger) -> None:
    await ledger.db.close()
    get_logger(__name__).info("ledger.close")
