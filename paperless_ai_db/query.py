# paperless_ai_db/query.py
"""
Compilation of filter trees, orderings, cursor pagination and relation
loading into SQLAlchemy constructs.

Filters are plain dicts::

    {"OR": [{"name": {"contains": "inbox", "mode": "insensitive"}},
            {"owner": {"username": "alice"}}],
     "is_active": True}
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import RelationshipProperty, selectinload
from sqlalchemy.orm.interfaces import MANYTOONE

from paperless_ai_db.errors import QueryValidationError

LOGICAL_KEYS = ("AND", "OR", "NOT")
SCALAR_OPERATORS = frozenset(
    {"equals", "not", "in", "not_in", "lt", "lte", "gt", "gte", "contains", "starts_with", "ends_with", "mode"}
)
TEXT_OPERATORS = ("contains", "starts_with", "ends_with")
COMPARISONS = {
    "lt": lambda expr, value: expr < value,
    "lte": lambda expr, value: expr <= value,
    "gt": lambda expr, value: expr > value,
    "gte": lambda expr, value: expr >= value,
}

Ordering = Tuple[str, str, Optional[str]]


@dataclass(frozen=True)
class ModelInfo:
    model: type
    name: str
    columns: Dict[str, sa.Column]
    relationships: Dict[str, RelationshipProperty]
    primary_key: Tuple[str, ...]
    unique_sets: Tuple[FrozenSet[str], ...]

    def column(self, key: str) -> sa.Column:
        try:
            return self.columns[key]
        except KeyError:
            raise QueryValidationError(f"Unknown field {key!r} on {self.name}") from None

    def relationship(self, key: str) -> RelationshipProperty:
        try:
            return self.relationships[key]
        except KeyError:
            raise QueryValidationError(f"Unknown relation {key!r} on {self.name}") from None

    def is_numeric(self, key: str) -> bool:
        return isinstance(self.columns[key].type, (sa.Integer, sa.Numeric))

    def is_json(self, key: str) -> bool:
        return isinstance(self.columns[key].type, sa.JSON)

    def key_of(self, column: sa.Column) -> str:
        for key, candidate in self.columns.items():
            if candidate is column or candidate.name == column.name:
                return key
        raise KeyError(column.name)

    def coerce(self, key: str, value: Any) -> Any:
        """Validate enum values before they reach the driver."""
        enum_class = getattr(self.columns[key].type, "enum_class", None)
        if enum_class is None or value is None or isinstance(value, enum_class):
            return value
        try:
            return enum_class(value)
        except ValueError:
            allowed = ", ".join(member.value for member in enum_class)
            raise QueryValidationError(
                f"Invalid value {value!r} for {self.name}.{key}; expected one of: {allowed}"
            ) from None


@lru_cache(maxsize=None)
def model_info(model: type) -> ModelInfo:
    mapper = sa.inspect(model)
    columns = {prop.key: prop.columns[0] for prop in mapper.column_attrs}
    by_name = {column.name: key for key, column in columns.items()}
    primary_key = tuple(by_name[column.name] for column in mapper.primary_key)

    unique_sets: List[FrozenSet[str]] = [frozenset(primary_key)]
    for key, column in columns.items():
        if column.unique:
            unique_sets.append(frozenset([key]))
    for constraint in mapper.local_table.constraints:
        if isinstance(constraint, sa.UniqueConstraint):
            unique_sets.append(frozenset(by_name[column.name] for column in constraint.columns))

    deduped: List[FrozenSet[str]] = []
    for keys in unique_sets:
        if keys not in deduped:
            deduped.append(keys)

    return ModelInfo(
        model=model,
        name=model.__name__,
        columns=columns,
        relationships={rel.key: rel for rel in mapper.relationships},
        primary_key=primary_key,
        unique_sets=tuple(deduped),
    )


def relation_keys(info: ModelInfo, name: str) -> Tuple[str, str]:
    """Return ``(local_key, remote_key)`` attribute names joining a relation."""
    rel = info.relationship(name)
    local, remote = rel.local_remote_pairs[0]
    target = model_info(rel.mapper.class_)
    return info.key_of(local), target.key_of(remote)


def is_to_one(rel: RelationshipProperty) -> bool:
    return rel.direction is MANYTOONE


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def scalar_predicate(
    expr: Any,
    value: Any,
    *,
    label: str,
    coerce: Callable[[Any], Any] = lambda v: v,
    json: bool = False,
) -> Any:
    if not isinstance(value, dict):
        if json and value is not None:
            raise QueryValidationError(f"{label} is a JSON field and only supports null checks")
        return _equals(expr, coerce(value), insensitive=False)

    unknown = set(value) - SCALAR_OPERATORS
    if unknown:
        raise QueryValidationError(f"Unknown filter operator(s) {sorted(unknown)} for {label}")
    mode = value.get("mode", "default")
    if mode not in ("default", "insensitive"):
        raise QueryValidationError(f"Invalid mode {mode!r} for {label}")
    insensitive = mode == "insensitive"
    if json and (set(value) - {"equals", "not"} or any(v is not None for v in value.values() if not isinstance(v, dict))):
        raise QueryValidationError(f"{label} is a JSON field and only supports null checks")

    clauses = []
    for op, operand in value.items():
        if op == "mode":
            continue
        if op == "equals":
            clauses.append(_equals(expr, coerce(operand), insensitive))
        elif op == "not":
            if isinstance(operand, dict):
                clauses.append(sa.not_(scalar_predicate(expr, operand, label=label, coerce=coerce, json=json)))
            elif operand is None:
                clauses.append(expr.is_not(None))
            else:
                clauses.append(sa.not_(_equals(expr, coerce(operand), insensitive)))
        elif op in ("in", "not_in"):
            if not isinstance(operand, (list, tuple, set, frozenset)):
                raise QueryValidationError(f"{op!r} on {label} expects a list")
            values = [coerce(item) for item in operand]
            clause = expr.in_(values)
            clauses.append(clause if op == "in" else sa.not_(clause))
        elif op in COMPARISONS:
            if operand is None:
                raise QueryValidationError(f"{op!r} on {label} needs a value")
            clauses.append(COMPARISONS[op](expr, coerce(operand)))
        else:
            if not isinstance(operand, str):
                raise QueryValidationError(f"{op!r} on {label} expects a string")
            target = sa.func.lower(expr) if insensitive else expr
            needle = operand.lower() if insensitive else operand
            if op == "contains":
                clauses.append(target.contains(needle, autoescape=True))
            elif op == "starts_with":
                clauses.append(target.startswith(needle, autoescape=True))
            else:
                clauses.append(target.endswith(needle, autoescape=True))
    return sa.and_(sa.true(), *clauses)


def _equals(expr: Any, value: Any, insensitive: bool) -> Any:
    if value is None:
        return expr.is_(None)
    if insensitive and isinstance(value, str):
        return sa.func.lower(expr) == value.lower()
    return expr == value


def build_where(model: type, where: Optional[Dict[str, Any]]) -> Any:
    """Compile a filter tree into a boolean SQL expression."""
    if where is None:
        return sa.true()
    if not isinstance(where, dict):
        raise QueryValidationError(f"Filter for {model.__name__} must be a dict, got {type(where).__name__}")
    info = model_info(model)
    clauses = []
    for key, value in where.items():
        if key == "AND":
            clauses.append(sa.and_(sa.true(), *[build_where(model, item) for item in as_list(value)]))
        elif key == "OR":
            clauses.append(sa.or_(sa.false(), *[build_where(model, item) for item in as_list(value)]))
        elif key == "NOT":
            clauses.append(sa.not_(sa.and_(sa.true(), *[build_where(model, item) for item in as_list(value)])))
        elif key in info.columns:
            clauses.append(
                scalar_predicate(
                    getattr(model, key),
                    value,
                    label=f"{info.name}.{key}",
                    coerce=lambda v, key=key: info.coerce(key, v),
                    json=info.is_json(key),
                )
            )
        elif key in info.relationships:
            clauses.append(_relation_predicate(info, key, value))
        else:
            raise QueryValidationError(f"Unknown field {key!r} on {info.name}")
    return sa.and_(sa.true(), *clauses)


def _relation_predicate(info: ModelInfo, key: str, value: Any) -> Any:
    rel = info.relationships[key]
    attr = getattr(info.model, key)
    target = rel.mapper.class_

    if rel.uselist:
        if not isinstance(value, dict) or not value or set(value) - {"some", "none", "every"}:
            raise QueryValidationError(f"Filter on list relation {info.name}.{key} must use some/none/every")
        clauses = []
        if "some" in value:
            clauses.append(attr.any(build_where(target, value["some"])))
        if "none" in value:
            clauses.append(sa.not_(attr.any(build_where(target, value["none"]))))
        if "every" in value:
            clauses.append(sa.not_(attr.any(sa.not_(build_where(target, value["every"])))))
        return sa.and_(*clauses)

    if value is None:
        return attr == None  # noqa: E711
    if isinstance(value, dict) and set(value) & {"is", "is_not"}:
        if set(value) - {"is", "is_not"}:
            raise QueryValidationError(f"Cannot mix is/is_not with field filters on {info.name}.{key}")
        clauses = []
        if "is" in value:
            nested = value["is"]
            clauses.append(attr == None if nested is None else attr.has(build_where(target, nested)))  # noqa: E711
        if "is_not" in value:
            nested = value["is_not"]
            clauses.append(attr != None if nested is None else sa.not_(attr.has(build_where(target, nested))))  # noqa: E711
        return sa.and_(*clauses)
    return attr.has(build_where(target, value))


def equality_keys(info: ModelInfo, where: Dict[str, Any]) -> FrozenSet[str]:
    keys = set()
    for key, value in where.items():
        if key not in info.columns:
            continue
        if isinstance(value, dict):
            if set(value) != {"equals"}:
                continue
            value = value["equals"]
        if value is not None:
            keys.add(key)
    return frozenset(keys)


def require_unique(info: ModelInfo, where: Any, label: str = "where") -> None:
    """Unique lookups must pin down the primary key or a unique constraint."""
    if not isinstance(where, dict) or not where:
        raise QueryValidationError(f"{label} for {info.name} must be a non-empty dict")
    keys = equality_keys(info, where)
    if not any(unique <= keys for unique in info.unique_sets):
        options = " | ".join("(" + ", ".join(sorted(unique)) + ")" for unique in info.unique_sets)
        raise QueryValidationError(f"{label} for {info.name} must select a unique key: {options}")


def parse_order_by(model: type, order_by: Any) -> List[Ordering]:
    info = model_info(model)
    orderings: List[Ordering] = []
    for item in as_list(order_by):
        if not isinstance(item, dict) or not item:
            raise QueryValidationError(f"order_by entries for {info.name} must be non-empty dicts")
        for key, spec in item.items():
            info.column(key)
            if isinstance(spec, dict):
                direction, nulls = spec.get("sort"), spec.get("nulls")
            else:
                direction, nulls = spec, None
            if direction not in ("asc", "desc"):
                raise QueryValidationError(f"Invalid sort order {direction!r} for {info.name}.{key}")
            if nulls not in (None, "first", "last"):
                raise QueryValidationError(f"Invalid nulls position {nulls!r} for {info.name}.{key}")
            orderings.append((key, direction, nulls))
    return orderings


def null_position(direction: str, nulls: Optional[str]) -> str:
    """Where nulls sort; unset means nulls compare greater than any value."""
    if nulls:
        return nulls
    return "last" if direction == "asc" else "first"


def order_clauses(model: type, orderings: Sequence[Ordering], reverse: bool = False) -> List[Any]:
    clauses = []
    for key, direction, nulls in orderings:
        nulls = null_position(direction, nulls)
        if reverse:
            direction = "desc" if direction == "asc" else "asc"
            nulls = "last" if nulls == "first" else "first"
        attr = getattr(model, key)
        clause = attr.asc() if direction == "asc" else attr.desc()
        clauses.append(clause.nulls_first() if nulls == "first" else clause.nulls_last())
    return clauses


def _cursor_equals(attr: Any, value: Any) -> Any:
    return attr.is_(None) if value is None else attr == value


def cursor_predicate(model: type, orderings: Sequence[Ordering], values: Dict[str, Any], backwards: bool) -> Any:
    """Rows positioned at or after the cursor row (before it when ``backwards``)."""
    branches = [sa.and_(*[_cursor_equals(getattr(model, key), values[key]) for key, _, _ in orderings])]
    for index, (key, direction, nulls) in enumerate(orderings):
        ascending = (direction == "asc") != backwards
        nulls_first = (null_position(direction, nulls) == "first") != backwards
        attr, value = getattr(model, key), values[key]
        if value is None:
            step = attr.is_not(None) if nulls_first else sa.false()
        else:
            step = attr > value if ascending else attr < value
            if not nulls_first:
                step = sa.or_(step, attr.is_(None))
        prefix = [_cursor_equals(getattr(model, k), values[k]) for k, _, _ in orderings[:index]]
        branches.append(sa.and_(*prefix, step))
    return sa.or_(*branches)


def _check_int(value: Any, label: str, minimum: Optional[int] = None) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise QueryValidationError(f"{label} must be an integer")
    if minimum is not None and value < minimum:
        raise QueryValidationError(f"{label} must be >= {minimum}")
    return value


class FindQuery:
    """Validated filter + ordering + pagination for one model."""

    def __init__(
        self,
        model: type,
        where: Optional[Dict[str, Any]] = None,
        order_by: Any = None,
        cursor: Optional[Dict[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Optional[Sequence[str]] = None,
    ) -> None:
        self.model = model
        self.info = model_info(model)
        self.where_clause = build_where(model, where)
        self.orderings = parse_order_by(model, order_by)
        self.cursor_clause = None
        if cursor is not None:
            require_unique(self.info, cursor, "cursor")
            self.cursor_clause = build_where(model, cursor)
        take = _check_int(take, "take")
        self.skip = _check_int(skip, "skip", minimum=0) or 0
        self.backwards = take is not None and take < 0
        self.limit = abs(take) if take is not None else None
        self.distinct = []
        for key in as_list(distinct):
            self.info.column(key)
            self.distinct.append(key)

    def effective_orderings(self) -> List[Ordering]:
        orderings = list(self.orderings)
        if self.cursor_clause is not None or self.backwards:
            present = {key for key, _, _ in orderings}
            orderings.extend((key, "asc", None) for key in self.info.primary_key if key not in present)
        return orderings

    async def statement(self, session: Any, *entities: Any, paginate: bool = True) -> Optional[sa.Select]:
        """Build the SELECT; ``None`` when the cursor row does not exist."""
        model = self.model
        stmt = sa.select(*(entities or (model,))).where(self.where_clause)
        orderings = self.effective_orderings()
        if self.cursor_clause is not None:
            keys = [key for key, _, _ in orderings]
            lookup = sa.select(*[getattr(model, key) for key in keys]).where(self.cursor_clause).limit(1)
            row = (await session.execute(lookup)).first()
            if row is None:
                return None
            stmt = stmt.where(cursor_predicate(model, orderings, dict(zip(keys, row)), self.backwards))
        if orderings:
            stmt = stmt.order_by(*order_clauses(model, orderings, reverse=self.backwards))
        if paginate:
            if self.skip:
                stmt = stmt.offset(self.skip)
            if self.limit is not None:
                stmt = stmt.limit(self.limit)
        return stmt

    def finish(self, rows: List[Any], key: Callable[[Any], Tuple[Any, ...]]) -> List[Any]:
        """Apply distinct and in-memory pagination, restore requested order."""
        if self.distinct:
            seen = set()
            unique_rows = []
            for row in rows:
                marker = key(row)
                if marker not in seen:
                    seen.add(marker)
                    unique_rows.append(row)
            rows = unique_rows[self.skip:]
            if self.limit is not None:
                rows = rows[: self.limit]
        if self.backwards:
            rows = list(reversed(rows))
        return rows


class ResultShape:
    """Relation loading (``include``) or field projection (``select``)."""

    def __init__(self, model: type, include: Optional[Dict[str, Any]] = None, select: Optional[Dict[str, Any]] = None):
        if include and select:
            raise QueryValidationError("Use either include or select, not both")
        self.model = model
        self.select = select
        if select is not None:
            _validate_select(model, select)
            self.options = loader_options(model, _relations_in_select(model, select))
        else:
            self.options = loader_options(model, include or {})

    def apply(self, instance: Any) -> Any:
        if instance is None or self.select is None:
            return instance
        return project(instance, self.select)

    def apply_many(self, instances: List[Any]) -> List[Any]:
        return [self.apply(instance) for instance in instances]


def loader_options(model: type, include: Dict[str, Any], parent: Any = None) -> List[Any]:
    info = model_info(model)
    if not isinstance(include, dict):
        raise QueryValidationError(f"include for {info.name} must be a dict")
    options = []
    for key, spec in include.items():
        if spec is False or spec is None:
            continue
        rel = info.relationship(key)
        if not isinstance(spec, (bool, dict)):
            raise QueryValidationError(f"include entry {info.name}.{key} must be True or a dict")
        nested = spec if isinstance(spec, dict) else {}
        unknown = set(nested) - {"where", "include", "select"}
        if unknown:
            raise QueryValidationError(f"Unknown include option(s) {sorted(unknown)} for {info.name}.{key}")
        target = rel.mapper.class_
        attr = getattr(model, key)
        if nested.get("where") is not None:
            if not rel.uselist:
                raise QueryValidationError(f"where is only supported on list relations, not {info.name}.{key}")
            attr = attr.and_(build_where(target, nested["where"]))
        loader = selectinload(attr) if parent is None else parent.selectinload(attr)
        options.append(loader)
        if nested.get("include") and nested.get("select"):
            raise QueryValidationError(f"Use either include or select for {info.name}.{key}, not both")
        child = nested.get("include") or _relations_in_select(target, nested.get("select"))
        if child:
            options.extend(loader_options(target, child, loader))
    return options


def _relations_in_select(model: type, select: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not select:
        return {}
    info = model_info(model)
    return {key: spec for key, spec in select.items() if key in info.relationships and spec}


def _validate_select(model: type, select: Any) -> None:
    info = model_info(model)
    if not isinstance(select, dict) or not any(select.values()):
        raise QueryValidationError(f"select for {info.name} must name at least one field")
    for key, spec in select.items():
        if key in info.columns:
            if not isinstance(spec, bool):
                raise QueryValidationError(f"select entry {info.name}.{key} must be a boolean")
        elif key in info.relationships:
            if isinstance(spec, dict) and spec.get("select"):
                _validate_select(info.relationships[key].mapper.class_, spec["select"])
        else:
            raise QueryValidationError(f"Unknown field {key!r} on {info.name}")


def project(instance: Any, select: Dict[str, Any]) -> Dict[str, Any]:
    info = model_info(type(instance))
    projected: Dict[str, Any] = {}
    for key, spec in select.items():
        if not spec:
            continue
        value = getattr(instance, key)
        nested = spec.get("select") if isinstance(spec, dict) else None
        if key in info.relationships and nested:
            if isinstance(value, list):
                value = [project(item, nested) for item in value]
            elif value is not None:
                value = project(value, nested)
        projected[key] = value
    return projected
