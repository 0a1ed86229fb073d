# paperless_ai_db/client.py
"""The client facade: one delegate per table plus transaction and raw helpers."""
import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from paperless_ai_db.config import Settings, settings as default_settings
from paperless_ai_db.db import close_engine, create_engine, create_session_factory
from paperless_ai_db.delegate import ModelDelegate, Operation
from paperless_ai_db.errors import (
    ClientError,
    InitializationError,
    QueryValidationError,
    TransactionError,
    UnknownRequestError,
    translate_error,
)
from paperless_ai_db.metrics import record_failure, record_operation, record_transaction
from paperless_ai_db.models import (
    AiBot,
    AiProvider,
    AiUsageMetric,
    PaperlessInstance,
    ProcessedDocument,
    ProcessingQueue,
    Setting,
    User,
    UserAiBotAccess,
    UserAiProviderAccess,
    UserPaperlessInstanceAccess,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IsolationLevel(str, enum.Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


def _isolation(level: Union[IsolationLevel, str, None]) -> Optional[IsolationLevel]:
    if level is None or isinstance(level, IsolationLevel):
        return level
    try:
        return IsolationLevel(str(level).upper().replace("_", " "))
    except ValueError:
        raise QueryValidationError(f"Unknown isolation level {level!r}") from None


async def _acquire(session: AsyncSession, isolation_level: Optional[IsolationLevel] = None) -> None:
    """Check out a connection and open the transaction on it."""
    options = {"isolation_level": isolation_level.value} if isolation_level else None
    try:
        await session.connection(execution_options=options)
    except (sa_exc.DBAPIError, OSError) as exc:
        raise InitializationError(f"Can't reach database server: {exc}") from exc


def _raise_translated(operation: Optional[Operation], exc: BaseException) -> None:
    error = translate_error(exc)
    if isinstance(error, ClientError) and operation is not None:
        record_failure(operation.model, operation.action, error.code)
    if isinstance(error, UnknownRequestError):
        logger.exception("%s failed", operation or "transaction")
    if error is exc:
        raise exc
    raise error from exc


class _SessionRunner:
    """Runs every operation in its own session and transaction."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def run(self, operation: Operation) -> Any:
        record_operation(operation.model, operation.action)
        logger.debug("Running %s.%s", operation.model, operation.action)
        async with self._session_factory() as session:
            await _acquire(session)
            try:
                result = await operation.execute(session)
                await session.commit()
            except Exception as exc:
                _raise_translated(operation, exc)
        return result


class _TransactionRunner:
    """Runs operations on the session of an open interactive transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.closed = False

    async def run(self, operation: Operation) -> Any:
        if self.closed:
            raise TransactionError(
                f"Transaction already closed: {operation.model}.{operation.action} "
                "cannot run on a committed or rolled back transaction"
            )
        record_operation(operation.model, operation.action)
        try:
            return await operation.execute(self._session)
        except Exception as exc:
            _raise_translated(operation, exc)


class _ClientBase:
    setting: ModelDelegate
    user: ModelDelegate
    paperless_instance: ModelDelegate
    ai_provider: ModelDelegate
    ai_bot: ModelDelegate
    user_paperless_instance_access: ModelDelegate
    user_ai_provider_access: ModelDelegate
    user_ai_bot_access: ModelDelegate
    processed_document: ModelDelegate
    processing_queue: ModelDelegate
    ai_usage_metric: ModelDelegate

    def _bind(self, runner: Any) -> None:
        self._runner = runner
        self.setting = ModelDelegate(Setting, runner)
        self.user = ModelDelegate(User, runner)
        self.paperless_instance = ModelDelegate(PaperlessInstance, runner)
        self.ai_provider = ModelDelegate(AiProvider, runner)
        self.ai_bot = ModelDelegate(AiBot, runner)
        self.user_paperless_instance_access = ModelDelegate(UserPaperlessInstanceAccess, runner)
        self.user_ai_provider_access = ModelDelegate(UserAiProviderAccess, runner)
        self.user_ai_bot_access = ModelDelegate(UserAiBotAccess, runner)
        self.processed_document = ModelDelegate(ProcessedDocument, runner)
        self.processing_queue = ModelDelegate(ProcessingQueue, runner)
        self.ai_usage_metric = ModelDelegate(AiUsageMetric, runner)

    def execute_raw(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Operation:
        """Run a statement and return the number of affected rows."""

        async def run(session):
            result = await session.execute(sa.text(sql), params or {})
            return result.rowcount

        return Operation(self._runner, "raw", "execute_raw", run)

    def query_raw(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Operation:
        """Run a query and return its rows as dicts."""

        async def run(session):
            result = await session.execute(sa.text(sql), params or {})
            return [dict(row) for row in result.mappings().all()]

        return Operation(self._runner, "raw", "query_raw", run)


class TransactionClient(_ClientBase):
    """Delegates bound to one interactive transaction."""

    def __init__(self, runner: _TransactionRunner) -> None:
        self._bind(runner)


class PaperlessClient(_ClientBase):
    """
    Entry point of the data-access layer.

    Usage::

        async with PaperlessClient() as db:
            user = await db.user.find_unique({"username": "admin"})
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        engine: Optional[AsyncEngine] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        if engine is None:
            url = database_url or self.settings.database_url
            try:
                engine = create_engine(url, echo=self.settings.db_echo)
            except (sa_exc.ArgumentError, sa_exc.NoSuchModuleError, ImportError) as exc:
                raise InitializationError(f"Invalid database configuration: {exc}") from exc
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        self._bind(_SessionRunner(self._session_factory))

    async def connect(self) -> None:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
        except (sa_exc.SQLAlchemyError, OSError) as exc:
            raise InitializationError(f"Can't reach database server: {exc}") from exc
        logger.info("Connected to database")

    async def disconnect(self) -> None:
        await close_engine(self.engine)

    async def __aenter__(self) -> "PaperlessClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def transaction(
        self,
        operations: Union[Sequence[Operation], Callable[[TransactionClient], Awaitable[T]]],
        *,
        isolation_level: Union[IsolationLevel, str, None] = None,
        max_wait: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run several operations atomically.

        ``operations`` is either a list of not-yet-awaited operations, executed
        in order and returned as a list of results, or an async callback that
        receives a ``TransactionClient``; its return value is returned after
        commit. Any failure rolls the whole transaction back.
        """
        level = _isolation(isolation_level)
        max_wait = max_wait if max_wait is not None else self.settings.transaction_max_wait
        timeout = timeout if timeout is not None else self.settings.transaction_timeout
        if isinstance(operations, (list, tuple)):
            return await self._run_batch(list(operations), level, max_wait, timeout)
        if callable(operations):
            return await self._run_interactive(operations, level, max_wait, timeout)
        raise QueryValidationError("transaction expects a list of operations or an async callback")

    async def _begin(self, session: AsyncSession, level: Optional[IsolationLevel], max_wait: float) -> None:
        try:
            await asyncio.wait_for(_acquire(session, level), max_wait)
        except asyncio.TimeoutError as exc:
            raise TransactionError(
                f"Unable to start a transaction in the given time (max_wait={max_wait}s)"
            ) from exc

    async def _run_batch(
        self, operations: List[Operation], level: Optional[IsolationLevel], max_wait: float, timeout: float
    ) -> List[Any]:
        for operation in operations:
            if not isinstance(operation, Operation):
                raise QueryValidationError(f"transaction items must be operations, got {type(operation).__name__}")
        results: List[Any] = []
        state: Dict[str, Optional[Operation]] = {"current": None}

        async def run_all(session: AsyncSession) -> None:
            for operation in operations:
                state["current"] = operation
                record_operation(operation.model, operation.action)
                results.append(await operation.execute(session))
            state["current"] = None

        async with self._session_factory() as session:
            await self._begin(session, level, max_wait)
            try:
                try:
                    await asyncio.wait_for(run_all(session), timeout)
                except asyncio.TimeoutError as exc:
                    raise TransactionError(f"Transaction expired after {timeout}s and was rolled back") from exc
                await session.commit()
            except Exception as exc:
                await session.rollback()
                record_transaction("batch", "rolled_back")
                logger.info("Batch transaction rolled back")
                _raise_translated(state["current"], exc)
        record_transaction("batch", "committed")
        return results

    async def _run_interactive(
        self,
        callback: Callable[[TransactionClient], Awaitable[T]],
        level: Optional[IsolationLevel],
        max_wait: float,
        timeout: float,
    ) -> T:
        async with self._session_factory() as session:
            await self._begin(session, level, max_wait)
            runner = _TransactionRunner(session)
            try:
                try:
                    result = await asyncio.wait_for(callback(TransactionClient(runner)), timeout)
                except asyncio.TimeoutError as exc:
                    raise TransactionError(
                        f"Transaction expired after {timeout}s and was rolled back"
                    ) from exc
                runner.closed = True
                await session.commit()
            except Exception as exc:
                runner.closed = True
                await session.rollback()
                record_transaction("interactive", "rolled_back")
                logger.info("Interactive transaction rolled back: %s", exc)
                _raise_translated(None, exc)
        record_transaction("interactive", "committed")
        return result
