"""Database package for online payments."""
from .connection import close_db, get_engine, get_session_factory, init_db
from .models import Base, TransactionRecord
from .store import SQLTransactionStore, TransactionStore

__all__ = [
    "Base",
    "TransactionRecord",
    "SQLTransactionStore",
    "TransactionStore",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
