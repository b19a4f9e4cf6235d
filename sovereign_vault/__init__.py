"""Sovereign Vault: an append-only, hash-chained ledger over a user's own records."""

__version__ = "0.1.0"
