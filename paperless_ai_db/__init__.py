# paperless_ai_db/__init__.py
"""Async data-access layer for the Paperless AI service."""
from paperless_ai_db.client import IsolationLevel, PaperlessClient, TransactionClient
from paperless_ai_db.db import close_engine, create_engine, drop_models, init_models
from paperless_ai_db.delegate import ModelDelegate, Operation
from paperless_ai_db.errors import (
    ClientError,
    ConstraintViolationError,
    ForeignKeyConstraintError,
    InitializationError,
    KnownRequestError,
    NullConstraintError,
    QueryValidationError,
    RecordNotFoundError,
    TransactionError,
    UniqueConstraintError,
    UnknownRequestError,
    WriteConflictError,
)
from paperless_ai_db.models import Permission, QueueStatus, UserRole

__all__ = [
    "ClientError",
    "ConstraintViolationError",
    "ForeignKeyConstraintError",
    "InitializationError",
    "IsolationLevel",
    "KnownRequestError",
    "ModelDelegate",
    "NullConstraintError",
    "Operation",
    "PaperlessClient",
    "Permission",
    "QueryValidationError",
    "QueueStatus",
    "RecordNotFoundError",
    "TransactionClient",
    "TransactionError",
    "UniqueConstraintError",
    "UnknownRequestError",
    "UserRole",
    "WriteConflictError",
    "close_engine",
    "create_engine",
    "drop_models",
    "init_models",
]
