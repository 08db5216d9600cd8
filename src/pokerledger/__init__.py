"""Ledger, balances and settlement for home poker groups."""
