"""Storage layer - Database schemas and repositories."""

from steal_token_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from steal_token_indexer.storage.models import (
    Base,
    BlockFailureModel,
    EntityModel,
    NotificationOutboxModel,
    ScanCursorModel,
    TransactionHistoryModel,
)
from steal_token_indexer.storage.repos import (
    BlockFailureDTO,
    BlockFailureRepository,
    EntityDTO,
    EntityRepository,
    NotificationDTO,
    NotificationOutboxRepository,
    ScanCursorRepository,
    TransactionHistoryDTO,
    TransactionHistoryRepository,
)

__all__ = [
    "Base",
    "BlockFailureDTO",
    "BlockFailureModel",
    "BlockFailureRepository",
    "DatabaseManager",
    "EntityDTO",
    "EntityModel",
    "EntityRepository",
    "NotificationDTO",
    "NotificationOutboxModel",
    "NotificationOutboxRepository",
    "ScanCursorModel",
    "ScanCursorRepository",
    "TransactionHistoryDTO",
    "TransactionHistoryModel",
    "TransactionHistoryRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
