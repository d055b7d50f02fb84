"""
Exchange Core - Storage Package.

TradingStorage is the persistence collaborator of the
simulation engines. InMemoryStorage is the default;
SqlAlchemyStorage persists to any async SQLAlchemy database.
"""

from .base import FUTURES_WALLET, SPOT_WALLET, TradingStorage
from .memory import InMemoryStorage
from .sql import SqlAlchemyStorage

__all__ = [
    "FUTURES_WALLET",
    "SPOT_WALLET",
    "TradingStorage",
    "InMemoryStorage",
    "SqlAlchemyStorage",
]
