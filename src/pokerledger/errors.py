from __future__ import annotations

from typing import Any, Mapping, Optional


class LedgerError(Exception):
    """Base class for every error raised by pokerledger."""

    def __init__(self, message: str, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(LedgerError):
    pass


class SettlementStateError(LedgerError):
    """The settlement item is already in the requested state."""


class NotFoundError(LedgerError):
    pass


class PersistenceError(LedgerError):
    pass
