# paperless_ai_db/aggregation.py
"""count / aggregate / group_by compilation."""
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import sqlalchemy as sa

from paperless_ai_db.errors import QueryValidationError
from paperless_ai_db.query import (
    LOGICAL_KEYS,
    ModelInfo,
    as_list,
    build_where,
    model_info,
    scalar_predicate,
)

AGGREGATE_FUNCTIONS = {
    "_count": sa.func.count,
    "_avg": sa.func.avg,
    "_sum": sa.func.sum,
    "_min": sa.func.min,
    "_max": sa.func.max,
}
NUMERIC_ONLY = ("_avg", "_sum")

# (label, aggregate name, field or None, expression)
AggregateColumn = Tuple[str, str, Optional[str], Any]
Requested = Dict[str, Union[bool, List[str]]]


def parse_aggregates(
    info: ModelInfo,
    count: Any = None,
    avg: Any = None,
    sum: Any = None,
    min: Any = None,
    max: Any = None,
) -> Requested:
    requested: Requested = {}
    if count:
        if count is True:
            requested["_count"] = True
        else:
            requested["_count"] = _fields(info, "_count", count, allow_all=True)
    for name, spec in (("_avg", avg), ("_sum", sum), ("_min", min), ("_max", max)):
        if spec:
            requested[name] = _fields(info, name, spec)
    return requested


def _fields(info: ModelInfo, name: str, spec: Any, allow_all: bool = False) -> List[str]:
    if not isinstance(spec, dict):
        raise QueryValidationError(f"{name} for {info.name} must be True or a dict of fields")
    fields = []
    for key, enabled in spec.items():
        if not enabled:
            continue
        _check_aggregate_field(info, name, key, allow_all)
        fields.append(key)
    if not fields:
        raise QueryValidationError(f"{name} for {info.name} must select at least one field")
    return fields


def _check_aggregate_field(info: ModelInfo, name: str, key: str, allow_all: bool = False) -> None:
    if allow_all and key == "_all":
        return
    info.column(key)
    if name in NUMERIC_ONLY and not info.is_numeric(key):
        raise QueryValidationError(f"{name} is only available on numeric fields, not {info.name}.{key}")
    if name in ("_min", "_max") and info.is_json(key):
        raise QueryValidationError(f"{name} is not available on JSON field {info.name}.{key}")


def aggregate_columns(source: Mapping[str, Any], requested: Requested) -> List[AggregateColumn]:
    columns: List[AggregateColumn] = []
    for name, fields in requested.items():
        function = AGGREGATE_FUNCTIONS[name]
        if fields is True:
            columns.append((name, name, None, sa.func.count()))
            continue
        for key in fields:
            expr = sa.func.count() if key == "_all" else function(source[key])
            columns.append((f"{name}__{key}", name, key, expr))
    return columns


def _normalize(name: str, value: Any) -> Any:
    if name == "_count":
        return int(value or 0)
    if value is None:
        return None
    if name == "_avg":
        return float(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def assemble(row: Optional[Mapping[str, Any]], columns: Sequence[AggregateColumn]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for label, name, key, _ in columns:
        value = _normalize(name, row[label] if row is not None else None)
        if key is None:
            result[name] = value
        else:
            result.setdefault(name, {})[key] = value
    return result


def group_by_orderings(
    model: type, info: ModelInfo, by: Sequence[str], order_by: Any
) -> List[Any]:
    clauses = []
    for item in as_list(order_by):
        if not isinstance(item, dict) or not item:
            raise QueryValidationError(f"order_by entries for {info.name} must be non-empty dicts")
        for key, spec in item.items():
            if key in AGGREGATE_FUNCTIONS:
                if not isinstance(spec, dict) or not spec:
                    raise QueryValidationError(f"order_by {key} for {info.name} expects a dict of fields")
                for field, direction in spec.items():
                    _check_aggregate_field(info, key, field, allow_all=key == "_count")
                    expr = sa.func.count() if field == "_all" else AGGREGATE_FUNCTIONS[key](getattr(model, field))
                    clauses.append(_direction(expr, direction, info, field))
            elif key in info.columns:
                if key not in by:
                    raise QueryValidationError(
                        "Every field used for order_by must be included in the by-arguments of the query. "
                        f"Missing fields: {key}"
                    )
                clauses.append(_direction(getattr(model, key), spec, info, key))
            else:
                raise QueryValidationError(f"Unknown field {key!r} on {info.name}")
    return clauses


def _direction(expr: Any, direction: Any, info: ModelInfo, key: str) -> Any:
    if direction == "asc":
        return expr.asc()
    if direction == "desc":
        return expr.desc()
    raise QueryValidationError(f"Invalid sort order {direction!r} for {info.name}.{key}")


def build_having(model: type, info: ModelInfo, by: Sequence[str], having: Optional[Dict[str, Any]]) -> Any:
    """
    Compile a having filter. Plain predicates must target grouped fields;
    aggregate predicates (``{"tokens_used": {"_avg": {"gt": 10}}}``) may
    target any field.
    """
    if having is None:
        return None
    if not isinstance(having, dict):
        raise QueryValidationError(f"having for {info.name} must be a dict")
    clauses = []
    for key, value in having.items():
        if key in LOGICAL_KEYS:
            parts = [build_having(model, info, by, item) for item in as_list(value)]
            if key == "AND":
                clauses.append(sa.and_(sa.true(), *parts))
            elif key == "OR":
                clauses.append(sa.or_(sa.false(), *parts))
            else:
                clauses.append(sa.not_(sa.and_(sa.true(), *parts)))
            continue
        info.column(key)
        label = f"{info.name}.{key}"
        if isinstance(value, dict) and set(value) & set(AGGREGATE_FUNCTIONS):
            if set(value) - set(AGGREGATE_FUNCTIONS):
                raise QueryValidationError(f"Cannot mix aggregate and plain filters on {label} in having")
            for name, predicate in value.items():
                _check_aggregate_field(info, name, key)
                expr = AGGREGATE_FUNCTIONS[name](getattr(model, key))
                coerce = (lambda v, key=key: info.coerce(key, v)) if name in ("_min", "_max") else (lambda v: v)
                clauses.append(scalar_predicate(expr, predicate, label=f"{name}({label})", coerce=coerce))
            continue
        if key not in by:
            raise QueryValidationError(
                "Every field used in having filters must either be an aggregation filter "
                f"or be included in the selection of the query. Missing fields: {key}"
            )
        clauses.append(
            scalar_predicate(
                getattr(model, key), value, label=label, coerce=lambda v, key=key: info.coerce(key, v)
            )
        )
    return sa.and_(sa.true(), *clauses)


class GroupByQuery:
    def __init__(
        self,
        model: type,
        by: Union[str, Sequence[str]],
        where: Optional[Dict[str, Any]] = None,
        having: Optional[Dict[str, Any]] = None,
        order_by: Any = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        requested: Optional[Requested] = None,
    ) -> None:
        info = model_info(model)
        self.model = model
        self.by = [by] if isinstance(by, str) else list(by or [])
        if not self.by:
            raise QueryValidationError(f"group_by on {info.name} needs at least one field in by")
        for key in self.by:
            info.column(key)
            if info.is_json(key):
                raise QueryValidationError(f"Cannot group by JSON field {info.name}.{key}")
        self.where_clause = build_where(model, where)
        self.having_clause = build_having(model, info, self.by, having)
        self.order_clauses = group_by_orderings(model, info, self.by, order_by)
        for label, value in (("take", take), ("skip", skip)):
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                raise QueryValidationError(f"{label} for group_by must be a non-negative integer")
        if (take is not None or skip) and not self.order_clauses:
            raise QueryValidationError("group_by with take or skip requires order_by")
        self.take = take
        self.skip = skip or 0
        self.columns = aggregate_columns({key: getattr(model, key) for key in info.columns}, requested or {})

    def statement(self) -> sa.Select:
        model = self.model
        group_columns = [getattr(model, key) for key in self.by]
        stmt = (
            sa.select(*group_columns, *[expr.label(label) for label, _, _, expr in self.columns])
            .where(self.where_clause)
            .group_by(*group_columns)
        )
        if self.having_clause is not None:
            stmt = stmt.having(self.having_clause)
        if self.order_clauses:
            stmt = stmt.order_by(*self.order_clauses)
        if self.skip:
            stmt = stmt.offset(self.skip)
        if self.take is not None:
            stmt = stmt.limit(self.take)
        return stmt

    def rows(self, result_rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        grouped = []
        for row in result_rows:
            entry = {key: row[key] for key in self.by}
            entry.update(assemble(row, self.columns))
            grouped.append(entry)
        return grouped
