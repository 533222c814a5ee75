"""Database package: models, connection management and the order store."""
from .connection import close_db, get_engine, get_session_factory, init_db
from .models import Base, BankTransferRequest, NotificationLog, Order
from .store import AlreadyExists, Created, OrderStore

__all__ = [
    "Base",
    "Order",
    "BankTransferRequest",
    "NotificationLog",
    "OrderStore",
    "Created",
    "AlreadyExists",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
]
