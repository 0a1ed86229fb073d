# paperless_ai_db/delegate.py
"""Per-model CRUD and aggregate operations."""
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from paperless_ai_db.aggregation import GroupByQuery, aggregate_columns, assemble, parse_aggregates
from paperless_ai_db.errors import QueryValidationError, RecordNotFoundError
from paperless_ai_db.query import FindQuery, ResultShape, build_where, equality_keys, model_info, require_unique
from paperless_ai_db.writes import RecordWriter, atomic_expression, plan_create, plan_update

logger = logging.getLogger(__name__)

T = TypeVar("T")
Filter = Optional[Dict[str, Any]]


class Operation(Generic[T]):
    """
    A database call that has not run yet.

    Awaiting it executes it through the runner it was created with; passing
    it to ``PaperlessClient.transaction([...])`` executes it inside a shared
    transaction instead.
    """

    __slots__ = ("_runner", "_fn", "model", "action")

    def __init__(self, runner: Any, model: str, action: str, fn: Callable[[Any], Awaitable[T]]) -> None:
        self._runner = runner
        self._fn = fn
        self.model = model
        self.action = action

    def __await__(self):
        return self._runner.run(self).__await__()

    async def execute(self, session: Any) -> T:
        return await self._fn(session)

    def __repr__(self) -> str:
        return f"<Operation {self.model}.{self.action}>"


class ModelDelegate:
    def __init__(self, model: type, runner: Any) -> None:
        self.model = model
        self.name = model.__name__
        self._info = model_info(model)
        self._runner = runner

    def _operation(self, action: str, fn: Callable[[Any], Awaitable[Any]]) -> Operation:
        return Operation(self._runner, self.name, action, fn)

    # -- reads ---------------------------------------------------------------

    def find_unique(self, where: Dict[str, Any], *, include: Filter = None, select: Filter = None) -> Operation:
        return self._unique_lookup("find_unique", where, include, select, raise_missing=False)

    def find_unique_or_raise(
        self, where: Dict[str, Any], *, include: Filter = None, select: Filter = None
    ) -> Operation:
        return self._unique_lookup("find_unique_or_raise", where, include, select, raise_missing=True)

    def _unique_lookup(self, action, where, include, select, raise_missing: bool) -> Operation:
        require_unique(self._info, where)
        clause = build_where(self.model, where)
        shape = ResultShape(self.model, include, select)

        async def run(session):
            result = await session.execute(sa.select(self.model).where(clause).options(*shape.options).limit(1))
            instance = result.scalars().first()
            if instance is None and raise_missing:
                raise RecordNotFoundError(f"No {self.name} found", meta={"model": self.name, "where": where})
            return shape.apply(instance)

        return self._operation(action, run)

    def find_many(
        self,
        where: Filter = None,
        *,
        order_by: Any = None,
        cursor: Filter = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Optional[Sequence[str]] = None,
        include: Filter = None,
        select: Filter = None,
    ) -> Operation:
        query = FindQuery(self.model, where, order_by, cursor, take, skip, distinct)
        shape = ResultShape(self.model, include, select)
        return self._operation("find_many", lambda session: self._fetch(session, query, shape))

    def find_first(
        self,
        where: Filter = None,
        *,
        order_by: Any = None,
        cursor: Filter = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Optional[Sequence[str]] = None,
        include: Filter = None,
        select: Filter = None,
    ) -> Operation:
        return self._first("find_first", where, order_by, cursor, take, skip, distinct, include, select, False)

    def find_first_or_raise(
        self,
        where: Filter = None,
        *,
        order_by: Any = None,
        cursor: Filter = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Optional[Sequence[str]] = None,
        include: Filter = None,
        select: Filter = None,
    ) -> Operation:
        return self._first("find_first_or_raise", where, order_by, cursor, take, skip, distinct, include, select, True)

    def _first(self, action, where, order_by, cursor, take, skip, distinct, include, select, raise_missing):
        # a negative take picks the last row instead of the first
        take = -1 if take is not None and take < 0 else 1
        query = FindQuery(self.model, where, order_by, cursor, take, skip, distinct)
        shape = ResultShape(self.model, include, select)

        async def run(session):
            rows = await self._fetch(session, query, shape)
            if not rows:
                if raise_missing:
                    raise RecordNotFoundError(f"No {self.name} found", meta={"model": self.name, "where": where})
                return None
            return rows[0]

        return self._operation(action, run)

    async def _fetch(self, session: Any, query: FindQuery, shape: ResultShape) -> List[Any]:
        stmt = await query.statement(session, paginate=not query.distinct)
        if stmt is None:
            return []
        result = await session.execute(stmt.options(*shape.options))
        rows = list(result.scalars().all())
        rows = query.finish(rows, key=lambda row: tuple(getattr(row, key) for key in query.distinct))
        return shape.apply_many(rows)

    # -- writes --------------------------------------------------------------

    def create(self, data: Dict[str, Any], *, include: Filter = None, select: Filter = None) -> Operation:
        plan = plan_create(self.model, data)
        shape = ResultShape(self.model, include, select)

        async def run(session):
            writer = RecordWriter(session)
            instance = await writer.create(plan)
            return shape.apply(await writer.reload(instance, shape.options))

        return self._operation("create", run)

    def create_many(self, data: Sequence[Dict[str, Any]], *, skip_duplicates: bool = False) -> Operation:
        if isinstance(data, dict) or not isinstance(data, (list, tuple)):
            raise QueryValidationError(f"create_many for {self.name} expects a list of dicts")
        plans = [plan_create(self.model, item) for item in data]
        if any(plan.has_relations for plan in plans):
            raise QueryValidationError(f"create_many for {self.name} does not support relation writes")
        table = self.model.__table__

        async def run(session):
            dialect = session.get_bind().dialect.name
            count = 0
            for plan in plans:
                stmt = _insert_statement(dialect, table, skip_duplicates).values(**plan.values)
                result = await session.execute(stmt)
                count += result.rowcount if skip_duplicates else 1
            if skip_duplicates and count < len(plans):
                logger.debug("%s.create_many skipped %d duplicate row(s)", self.name, len(plans) - count)
            return {"count": count}

        return self._operation("create_many", run)

    def update(
        self, where: Dict[str, Any], data: Dict[str, Any], *, include: Filter = None, select: Filter = None
    ) -> Operation:
        require_unique(self._info, where)
        clause = build_where(self.model, where)
        plan = plan_update(self.model, data)
        shape = ResultShape(self.model, include, select)

        async def run(session):
            writer = RecordWriter(session)
            instance = await writer.find_one(self.model, clause)
            if instance is None:
                raise RecordNotFoundError(
                    f"Record to update not found ({self.name})", meta={"model": self.name, "where": where}
                )
            instance = await writer.update(instance, plan)
            return shape.apply(await writer.reload(instance, shape.options))

        return self._operation("update", run)

    def update_many(self, where: Filter = None, data: Optional[Dict[str, Any]] = None) -> Operation:
        clause = build_where(self.model, where)
        plan = plan_update(self.model, data or {})
        if plan.has_relations:
            raise QueryValidationError(f"update_many for {self.name} does not support relation writes")
        values: Dict[str, Any] = dict(plan.values)
        for key, (op, operand) in plan.atomic.items():
            values[key] = atomic_expression(getattr(self.model, key), op, operand)

        async def run(session):
            if not values:
                count = await session.execute(sa.select(sa.func.count()).select_from(self.model).where(clause))
                return {"count": int(count.scalar_one())}
            stmt = (
                sa.update(self.model)
                .where(clause)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return {"count": result.rowcount}

        return self._operation("update_many", run)

    def upsert(
        self,
        where: Dict[str, Any],
        create: Dict[str, Any],
        update: Dict[str, Any],
        *,
        include: Filter = None,
        select: Filter = None,
    ) -> Operation:
        """
        Create the row matched by ``where`` or update it, atomically.

        Without relation writes this is one ``INSERT ... ON CONFLICT``
        statement. With them the insert runs in a savepoint, and losing the
        race to a concurrent insert falls back to updating that row.
        """
        require_unique(self._info, where)
        clause = build_where(self.model, where)
        create_plan = plan_create(self.model, create)
        update_plan = plan_update(self.model, update)
        shape = ResultShape(self.model, include, select)
        conflict_keys = None
        if not (create_plan.has_relations or update_plan.has_relations):
            conflict_keys = _conflict_keys(self._info, where, create_plan)

        async def run(session):
            dialect = session.get_bind().dialect.name
            if conflict_keys and dialect in ("postgresql", "sqlite"):
                await session.execute(_upsert_statement(dialect, self._info, create_plan, update_plan, conflict_keys))
                stmt = (
                    sa.select(self.model)
                    .where(clause)
                    .options(*shape.options)
                    .execution_options(populate_existing=True)
                )
                return shape.apply((await session.execute(stmt)).scalars().one())

            writer = RecordWriter(session)
            instance = await writer.find_one(self.model, clause)
            if instance is None:
                try:
                    async with session.begin_nested():
                        created = await writer.create(create_plan)
                except IntegrityError:
                    instance = await writer.find_one(self.model, clause)
                    if instance is None:
                        raise
                    logger.debug("%s.upsert: row created concurrently, updating it", self.name)
                else:
                    return shape.apply(await writer.reload(created, shape.options))
            instance = await writer.update(instance, update_plan)
            return shape.apply(await writer.reload(instance, shape.options))

        return self._operation("upsert", run)

    def delete(self, where: Dict[str, Any], *, include: Filter = None, select: Filter = None) -> Operation:
        require_unique(self._info, where)
        clause = build_where(self.model, where)
        shape = ResultShape(self.model, include, select)

        async def run(session):
            writer = RecordWriter(session)
            instance = await writer.find_one(self.model, clause, tuple(shape.options))
            if instance is None:
                raise RecordNotFoundError(
                    f"Record to delete does not exist ({self.name})", meta={"model": self.name, "where": where}
                )
            await session.execute(
                sa.delete(self.model).where(clause).execution_options(synchronize_session=False)
            )
            return shape.apply(instance)

        return self._operation("delete", run)

    def delete_many(self, where: Filter = None) -> Operation:
        clause = build_where(self.model, where)

        async def run(session):
            result = await session.execute(
                sa.delete(self.model).where(clause).execution_options(synchronize_session=False)
            )
            return {"count": result.rowcount}

        return self._operation("delete_many", run)

    # -- aggregates ----------------------------------------------------------

    def count(
        self,
        where: Filter = None,
        *,
        cursor: Filter = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        order_by: Any = None,
        select: Optional[Dict[str, bool]] = None,
    ) -> Operation:
        query = FindQuery(self.model, where, order_by, cursor, take, skip)
        if select is None:
            requested = parse_aggregates(self._info, count=True)
        else:
            requested = parse_aggregates(self._info, count=select)

        async def run(session):
            result = await self._aggregate(session, query, requested)
            return result["_count"]

        return self._operation("count", run)

    def aggregate(
        self,
        where: Filter = None,
        *,
        order_by: Any = None,
        cursor: Filter = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        count: Union[bool, Dict[str, bool], None] = None,
        avg: Optional[Dict[str, bool]] = None,
        sum: Optional[Dict[str, bool]] = None,
        min: Optional[Dict[str, bool]] = None,
        max: Optional[Dict[str, bool]] = None,
    ) -> Operation:
        query = FindQuery(self.model, where, order_by, cursor, take, skip)
        requested = parse_aggregates(self._info, count=count, avg=avg, sum=sum, min=min, max=max)
        if not requested:
            raise QueryValidationError(f"aggregate on {self.name} needs at least one of count, avg, sum, min, max")
        return self._operation("aggregate", lambda session: self._aggregate(session, query, requested))

    async def _aggregate(self, session: Any, query: FindQuery, requested: Dict[str, Any]) -> Dict[str, Any]:
        table = self.model.__table__
        stmt = await query.statement(session, *table.columns)
        if stmt is None:
            return assemble(None, aggregate_columns(table.columns, requested))
        rows = stmt.subquery()
        columns = aggregate_columns(rows.c, requested)
        result = await session.execute(sa.select(*[expr.label(label) for label, _, _, expr in columns]).select_from(rows))
        return assemble(result.mappings().one(), columns)

    def group_by(
        self,
        by: Union[str, Sequence[str]],
        *,
        where: Filter = None,
        having: Filter = None,
        order_by: Any = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        count: Union[bool, Dict[str, bool], None] = None,
        avg: Optional[Dict[str, bool]] = None,
        sum: Optional[Dict[str, bool]] = None,
        min: Optional[Dict[str, bool]] = None,
        max: Optional[Dict[str, bool]] = None,
    ) -> Operation:
        requested = parse_aggregates(self._info, count=count, avg=avg, sum=sum, min=min, max=max)
        query = GroupByQuery(self.model, by, where, having, order_by, take, skip, requested)

        async def run(session):
            result = await session.execute(query.statement())
            return query.rows(result.mappings().all())

        return self._operation("group_by", run)


def _insert_statement(dialect: str, table: sa.Table, skip_duplicates: bool) -> Any:
    if not skip_duplicates:
        return sa.insert(table)
    if dialect == "postgresql":
        return postgresql.insert(table).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(table).on_conflict_do_nothing()
    raise QueryValidationError(f"skip_duplicates is not supported on the {dialect} dialect")


def _conflict_keys(info: Any, where: Dict[str, Any], plan: Any) -> Optional[List[str]]:
    """The unique key an upsert insert would collide on, if it is exactly the lookup key."""
    keys = equality_keys(info, where)
    if set(where) != keys or keys not in info.unique_sets:
        return None
    for key in keys:
        value = where[key]["equals"] if isinstance(where[key], dict) else where[key]
        if key not in plan.values or plan.values[key] != value:
            return None
    return sorted(keys)


def _upsert_statement(dialect: str, info: Any, create_plan: Any, update_plan: Any, conflict_keys: List[str]) -> Any:
    table = info.model.__table__
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(table).values(**create_plan.values)
    index_elements = [info.columns[key] for key in conflict_keys]
    assignments: Dict[str, Any] = dict(update_plan.values)
    for key, (op, operand) in update_plan.atomic.items():
        assignments[key] = atomic_expression(table.c[key], op, operand)
    if not assignments:
        return stmt.on_conflict_do_nothing(index_elements=index_elements)
    for column in table.columns:
        # ON CONFLICT updates skip Python-side onupdate hooks
        if column.onupdate is not None and column.key not in assignments:
            assignments[column.key] = column.onupdate.arg(None)
    return stmt.on_conflict_do_update(index_elements=index_elements, set_=assignments)
