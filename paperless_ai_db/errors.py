# paperless_ai_db/errors.py
"""Error taxonomy of the data-access layer and translation of driver errors."""
from typing import Any, Dict, Optional

from sqlalchemy import exc as sa_exc


class ClientError(Exception):
    code = "CLIENT_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.meta = meta or {}


class KnownRequestError(ClientError):
    code = "KNOWN_REQUEST_ERROR"


class RecordNotFoundError(KnownRequestError):
    code = "NOT_FOUND"


class ConstraintViolationError(KnownRequestError):
    code = "CONSTRAINT_VIOLATION"


class UniqueConstraintError(ConstraintViolationError):
    code = "UNIQUE_VIOLATION"


class ForeignKeyConstraintError(ConstraintViolationError):
    code = "FOREIGN_KEY_VIOLATION"


class NullConstraintError(ConstraintViolationError):
    code = "NULL_VIOLATION"


class WriteConflictError(KnownRequestError):
    """Serialization failure or deadlock; the transaction was rolled back."""

    code = "WRITE_CONFLICT"


class TransactionError(KnownRequestError):
    code = "TRANSACTION_ERROR"


class UnknownRequestError(ClientError):
    code = "UNKNOWN"


class QueryValidationError(ClientError):
    code = "VALIDATION_ERROR"


class InitializationError(ClientError):
    code = "INITIALIZATION_ERROR"


# SQLSTATE classes reported by PostgreSQL drivers
_UNIQUE_STATES = {"23505"}
_FOREIGN_KEY_STATES = {"23503"}
_NOT_NULL_STATES = {"23502"}
_CONFLICT_STATES = {"40001", "40P01"}


def _sqlstate(orig: Any) -> Optional[str]:
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return None


def _integrity_error(exc: sa_exc.IntegrityError) -> ConstraintViolationError:
    orig = exc.orig
    state = _sqlstate(orig)
    message = str(orig)
    lowered = message.lower()
    meta = {"detail": message}
    if state in _UNIQUE_STATES or "unique constraint" in lowered or "duplicate key" in lowered:
        return UniqueConstraintError(f"Unique constraint failed: {message}", meta=meta)
    if state in _FOREIGN_KEY_STATES or "foreign key" in lowered:
        return ForeignKeyConstraintError(f"Foreign key constraint failed: {message}", meta=meta)
    if state in _NOT_NULL_STATES or "not null" in lowered:
        return NullConstraintError(f"Null constraint violation: {message}", meta=meta)
    return ConstraintViolationError(f"Constraint violation: {message}", meta=meta)


def translate_error(exc: BaseException) -> BaseException:
    """
    Map a SQLAlchemy / driver exception onto the client error taxonomy.
    Anything that did not come from the database layer is returned as is.
    """
    if not isinstance(exc, sa_exc.SQLAlchemyError):
        return exc
    if isinstance(exc, sa_exc.IntegrityError):
        return _integrity_error(exc)
    if isinstance(exc, sa_exc.DBAPIError):
        state = _sqlstate(exc.orig)
        lowered = str(exc.orig).lower()
        conflict_markers = ("could not serialize", "deadlock", "database is locked")
        if state in _CONFLICT_STATES or any(marker in lowered for marker in conflict_markers):
            return WriteConflictError(f"Transaction failed due to a write conflict or deadlock: {exc.orig}")
    if isinstance(exc, sa_exc.StatementError) and exc.orig is not None and isinstance(exc.orig, LookupError):
        return QueryValidationError(str(exc.orig))
    return UnknownRequestError(f"{type(exc).__name__}: {exc}")
