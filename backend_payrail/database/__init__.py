"""
Persistence layer: SQLAlchemy models, the ledger store and in-transaction
ledger operations (balances, ledger records, webhook outbox).
"""

from backend_payrail.database.store import LedgerStore, compare_and_set, get_store, set_store

__all__ = ["LedgerStore", "compare_and_set", "get_store", "set_store"]
