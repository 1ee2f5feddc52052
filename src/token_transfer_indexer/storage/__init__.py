"""Storage layer - Database schema and repositories."""

from token_transfer_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from token_transfer_indexer.storage.models import Base, TransferModel
from token_transfer_indexer.storage.repos import FrontierDTO, TransferDTO, TransferRepository

__all__ = [
    "Base",
    "DatabaseManager",
    "FrontierDTO",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
