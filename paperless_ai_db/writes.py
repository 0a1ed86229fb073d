# paperless_ai_db/writes.py
"""
Create/update payloads, including nested relation writes.

A payload is validated into a ``WritePlan`` before any SQL runs; the
``RecordWriter`` then executes the plan as explicit steps on one session:
to-one relations are resolved first (so their foreign keys are known), the
row itself is written, then to-many relations are applied against it.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa

from paperless_ai_db.errors import QueryValidationError, RecordNotFoundError
from paperless_ai_db.query import as_list, build_where, is_to_one, model_info, relation_keys, require_unique
from paperless_ai_db.schemas import create_schema, update_schema, validate_input

logger = logging.getLogger(__name__)

TO_ONE_CREATE_OPS = frozenset({"connect", "create", "connect_or_create"})
TO_ONE_UPDATE_OPS = TO_ONE_CREATE_OPS | {"disconnect", "update", "upsert"}
TO_MANY_CREATE_OPS = frozenset({"create", "connect", "connect_or_create"})
TO_MANY_UPDATE_OPS = TO_MANY_CREATE_OPS | {"disconnect", "upsert", "delete", "delete_many"}
NUMBER_OPERATIONS = ("set", "increment", "decrement", "multiply", "divide")


@dataclass
class WritePlan:
    model: type
    values: Dict[str, Any]
    atomic: Dict[str, Tuple[str, Any]] = field(default_factory=dict)
    to_one: List[Tuple[str, str, Any]] = field(default_factory=list)
    to_many: List[Tuple[str, str, Any]] = field(default_factory=list)

    @property
    def has_relations(self) -> bool:
        return bool(self.to_one or self.to_many)


def _split(model: type, data: Any, for_update: bool) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
    info = model_info(model)
    if not isinstance(data, dict):
        raise QueryValidationError(f"data for {info.name} must be a dict")
    scalars: Dict[str, Any] = {}
    relations: Dict[str, Dict[str, Any]] = {}
    for key, value in data.items():
        if key not in info.relationships:
            scalars[key] = value
            continue
        rel = info.relationships[key]
        if not isinstance(value, dict) or not value:
            raise QueryValidationError(f"Relation write {info.name}.{key} must be a dict of operations")
        if is_to_one(rel):
            allowed = TO_ONE_UPDATE_OPS if for_update else TO_ONE_CREATE_OPS
            if len(value) != 1:
                raise QueryValidationError(f"Relation write {info.name}.{key} takes exactly one operation")
        else:
            allowed = TO_MANY_UPDATE_OPS if for_update else TO_MANY_CREATE_OPS
        unknown = set(value) - allowed
        if unknown:
            raise QueryValidationError(f"Unsupported operation(s) {sorted(unknown)} on {info.name}.{key}")
        if is_to_one(rel):
            fk_key, _ = relation_keys(info, key)
            if fk_key in data:
                raise QueryValidationError(f"Cannot set both {info.name}.{fk_key} and the {key!r} relation")
        relations[key] = value
    return scalars, relations


def _split_atomic(model: type, scalars: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Tuple[str, Any]]]:
    info = model_info(model)
    plain: Dict[str, Any] = {}
    atomic: Dict[str, Tuple[str, Any]] = {}
    for key, value in scalars.items():
        if key in info.columns and info.is_numeric(key) and isinstance(value, dict):
            if len(value) != 1 or next(iter(value)) not in NUMBER_OPERATIONS:
                raise QueryValidationError(
                    f"Numeric update on {info.name}.{key} takes one of {', '.join(NUMBER_OPERATIONS)}"
                )
            ((op, operand),) = value.items()
            if op == "set":
                plain[key] = operand
                continue
            if isinstance(operand, bool) or not isinstance(operand, (int, float)):
                raise QueryValidationError(f"{op!r} on {info.name}.{key} expects a number")
            if op == "divide" and operand == 0:
                raise QueryValidationError(f"Cannot divide {info.name}.{key} by zero")
            atomic[key] = (op, operand)
        else:
            plain[key] = value
    return plain, atomic


def _require_nullable_fk(info, key: str, fk_key: str) -> None:
    if not info.columns[fk_key].nullable:
        raise QueryValidationError(f"Cannot disconnect {info.name}.{key}: {fk_key} is required")


def plan_create(model: type, data: Any, provided: frozenset = frozenset()) -> WritePlan:
    info = model_info(model)
    scalars, relations = _split(model, data, for_update=False)
    provided_keys = set(provided)
    to_one, to_many = [], []
    for name, ops in relations.items():
        rel = info.relationships[name]
        target = rel.mapper.class_
        if is_to_one(rel):
            ((op, payload),) = ops.items()
            to_one.append((name, op, _plan_to_one(info, name, target, op, payload)))
            provided_keys.add(relation_keys(info, name)[0])
        else:
            child_fk = relation_keys(info, name)[1]
            for op, payload in ops.items():
                to_many.append((name, op, _plan_to_many(target, op, payload, child_fk)))
    values = validate_input(create_schema(model, frozenset(provided_keys)), scalars, f"{info.name} create data")
    return WritePlan(model=model, values=values, to_one=to_one, to_many=to_many)


def plan_update(model: type, data: Any) -> WritePlan:
    info = model_info(model)
    scalars, relations = _split(model, data, for_update=True)
    plain, atomic = _split_atomic(model, scalars)
    to_one, to_many = [], []
    for name, ops in relations.items():
        rel = info.relationships[name]
        target = rel.mapper.class_
        if is_to_one(rel):
            ((op, payload),) = ops.items()
            to_one.append((name, op, _plan_to_one(info, name, target, op, payload)))
        else:
            child_fk = relation_keys(info, name)[1]
            for op, payload in ops.items():
                to_many.append((name, op, _plan_to_many(target, op, payload, child_fk)))
    values = validate_input(update_schema(model), plain, f"{info.name} update data")
    return WritePlan(model=model, values=values, atomic=atomic, to_one=to_one, to_many=to_many)


def _plan_to_one(info, name: str, target: type, op: str, payload: Any) -> Any:
    target_info = model_info(target)
    if op == "connect":
        require_unique(target_info, payload, f"{info.name}.{name} connect")
        return payload
    if op == "create":
        return plan_create(target, payload)
    if op == "connect_or_create":
        where, create = _where_and(payload, "create", f"{info.name}.{name} connect_or_create")
        require_unique(target_info, where, f"{info.name}.{name} connect_or_create")
        return where, plan_create(target, create)
    if op == "disconnect":
        if payload is not True:
            raise QueryValidationError(f"disconnect on {info.name}.{name} expects True")
        _require_nullable_fk(info, name, relation_keys(info, name)[0])
        return True
    if op == "update":
        return plan_update(target, payload)
    # upsert
    if not isinstance(payload, dict) or set(payload) != {"create", "update"}:
        raise QueryValidationError(f"upsert on {info.name}.{name} expects create and update")
    return plan_create(target, payload["create"]), plan_update(target, payload["update"])


def _plan_to_many(target: type, op: str, payload: Any, child_fk: str) -> Any:
    target_info = model_info(target)
    label = f"{target_info.name} ({op})"
    provided = frozenset([child_fk])
    if op == "create":
        return [plan_create(target, item, provided) for item in as_list(payload)]
    if op in ("connect", "disconnect", "delete"):
        items = as_list(payload)
        for where in items:
            require_unique(target_info, where, label)
        if op == "disconnect" and not target_info.columns[child_fk].nullable:
            raise QueryValidationError(f"Cannot disconnect {target_info.name}: {child_fk} is required")
        return items
    if op == "connect_or_create":
        planned = []
        for item in as_list(payload):
            where, create = _where_and(item, "create", label)
            require_unique(target_info, where, label)
            planned.append((where, plan_create(target, create, provided)))
        return planned
    if op == "upsert":
        planned = []
        for item in as_list(payload):
            if not isinstance(item, dict) or set(item) != {"where", "create", "update"}:
                raise QueryValidationError(f"{label} entries expect where, create and update")
            require_unique(target_info, item["where"], label)
            planned.append((item["where"], plan_create(target, item["create"], provided), plan_update(target, item["update"])))
        return planned
    # delete_many
    wheres = as_list(payload) or [{}]
    for where in wheres:
        build_where(target, where)
    return wheres


def _where_and(payload: Any, other: str, label: str) -> Tuple[Dict[str, Any], Any]:
    if not isinstance(payload, dict) or set(payload) != {"where", other}:
        raise QueryValidationError(f"{label} expects where and {other}")
    return payload["where"], payload[other]


def atomic_expression(column: Any, op: str, operand: Any) -> Any:
    if op == "increment":
        return column + operand
    if op == "decrement":
        return column - operand
    if op == "multiply":
        return column * operand
    return column / operand


def primary_key_clause(instance: Any) -> Any:
    model = type(instance)
    info = model_info(model)
    return sa.and_(*[getattr(model, key) == getattr(instance, key) for key in info.primary_key])


class RecordWriter:
    """Executes write plans on a single session."""

    def __init__(self, session: Any) -> None:
        self.session = session

    async def find_one(self, model: type, clause: Any, options: Tuple[Any, ...] = ()) -> Optional[Any]:
        result = await self.session.execute(sa.select(model).where(clause).options(*options).limit(1))
        return result.scalars().first()

    async def find_unique_or_raise(self, model: type, where: Dict[str, Any]) -> Any:
        instance = await self.find_one(model, build_where(model, where))
        if instance is None:
            raise RecordNotFoundError(f"No {model.__name__} found", meta={"where": where})
        return instance

    async def reload(self, instance: Any, options: List[Any]) -> Any:
        if not options:
            return instance
        stmt = (
            sa.select(type(instance))
            .where(primary_key_clause(instance))
            .options(*options)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalars().one()

    async def create(self, plan: WritePlan) -> Any:
        info = model_info(plan.model)
        values = dict(plan.values)
        for name, op, payload in plan.to_one:
            fk_key, remote_key = relation_keys(info, name)
            related = await self._resolve_to_one(info.relationships[name].mapper.class_, op, payload, None)
            values[fk_key] = getattr(related, remote_key) if related is not None else None
        instance = plan.model(**values)
        self.session.add(instance)
        await self.session.flush()
        logger.debug("Inserted %s", info.name)
        await self._apply_to_many(instance, plan)
        return instance

    async def update(self, instance: Any, plan: WritePlan) -> Any:
        model = type(instance)
        info = model_info(model)
        values = dict(plan.values)
        for name, op, payload in plan.to_one:
            fk_key, remote_key = relation_keys(info, name)
            target = info.relationships[name].mapper.class_
            related = await self._resolve_to_one(target, op, payload, getattr(instance, fk_key))
            values[fk_key] = getattr(related, remote_key) if related is not None else None
        for key, value in values.items():
            setattr(instance, key, value)
        for key, (op, operand) in plan.atomic.items():
            setattr(instance, key, atomic_expression(getattr(model, key), op, operand))
        await self.session.flush()
        if plan.atomic:
            await self.session.refresh(instance)
        await self._apply_to_many(instance, plan)
        return instance

    async def _resolve_to_one(self, target: type, op: str, payload: Any, current: Any) -> Optional[Any]:
        if op == "connect":
            return await self.find_unique_or_raise(target, payload)
        if op == "create":
            return await self.create(payload)
        if op == "connect_or_create":
            where, create_plan = payload
            existing = await self.find_one(target, build_where(target, where))
            return existing if existing is not None else await self.create(create_plan)
        if op == "disconnect":
            return None
        existing = None
        if current is not None:
            target_pk = model_info(target).primary_key[0]
            existing = await self.find_one(target, getattr(target, target_pk) == current)
        if op == "update":
            if existing is None:
                raise RecordNotFoundError(f"No connected {target.__name__} to update")
            return await self.update(existing, payload)
        create_plan, update_plan = payload
        if existing is not None:
            return await self.update(existing, update_plan)
        return await self.create(create_plan)

    async def _apply_to_many(self, parent: Any, plan: WritePlan) -> None:
        info = model_info(type(parent))
        for name, op, payload in plan.to_many:
            parent_key, child_fk = relation_keys(info, name)
            target = info.relationships[name].mapper.class_
            parent_value = getattr(parent, parent_key)
            fk_column = getattr(target, child_fk)

            def scoped(where: Dict[str, Any]) -> Any:
                return sa.and_(build_where(target, where), fk_column == parent_value)

            if op == "create":
                for child_plan in payload:
                    await self.create(replace(child_plan, values={**child_plan.values, child_fk: parent_value}))
            elif op == "connect":
                for where in payload:
                    child = await self.find_unique_or_raise(target, where)
                    setattr(child, child_fk, parent_value)
            elif op == "connect_or_create":
                for where, child_plan in payload:
                    child = await self.find_one(target, build_where(target, where))
                    if child is None:
                        await self.create(replace(child_plan, values={**child_plan.values, child_fk: parent_value}))
                    else:
                        setattr(child, child_fk, parent_value)
            elif op == "disconnect":
                for where in payload:
                    child = await self._scoped_or_raise(target, scoped(where), where)
                    setattr(child, child_fk, None)
            elif op == "upsert":
                for where, create_plan, update_plan in payload:
                    child = await self.find_one(target, scoped(where))
                    if child is None:
                        await self.create(replace(create_plan, values={**create_plan.values, child_fk: parent_value}))
                    else:
                        await self.update(child, update_plan)
            elif op == "delete":
                for where in payload:
                    child = await self._scoped_or_raise(target, scoped(where), where)
                    await self.session.execute(
                        sa.delete(target)
                        .where(primary_key_clause(child))
                        .execution_options(synchronize_session=False)
                    )
            else:
                for where in payload:
                    await self.session.execute(
                        sa.delete(target).where(scoped(where)).execution_options(synchronize_session=False)
                    )
        await self.session.flush()

    async def _scoped_or_raise(self, target: type, clause: Any, where: Dict[str, Any]) -> Any:
        child = await self.find_one(target, clause)
        if child is None:
            raise RecordNotFoundError(f"No related {target.__name__} found", meta={"where": where})
        return child
