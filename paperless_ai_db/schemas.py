# paperless_ai_db/schemas.py
"""Pydantic input models derived from the table definitions."""
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from paperless_ai_db.errors import QueryValidationError
from paperless_ai_db.query import model_info

_INPUT_CONFIG = ConfigDict(extra="forbid", arbitrary_types_allowed=True)


def _python_type(column) -> Any:
    hinted = column.info.get("python_type")
    if hinted is not None:
        return hinted
    enum_class = getattr(column.type, "enum_class", None)
    if enum_class is not None:
        return enum_class
    try:
        return column.type.python_type
    except NotImplementedError:
        return Any


def _has_default(column) -> bool:
    return column.default is not None or column.server_default is not None


@lru_cache(maxsize=None)
def create_schema(model: type, provided: FrozenSet[str] = frozenset()) -> Type[BaseModel]:
    """
    Input model for inserts. Non-nullable columns without a default are
    required unless listed in ``provided`` (filled in from a relation write).
    """
    fields: Dict[str, Any] = {}
    for key, column in model_info(model).columns.items():
        annotation = _python_type(column)
        if column.nullable:
            fields[key] = (Optional[annotation], None)
        elif _has_default(column) or key in provided:
            fields[key] = (annotation, None)
        else:
            fields[key] = (annotation, ...)
    return create_model(f"{model.__name__}CreateInput", __config__=_INPUT_CONFIG, **fields)


@lru_cache(maxsize=None)
def update_schema(model: type) -> Type[BaseModel]:
    fields: Dict[str, Any] = {}
    for key, column in model_info(model).columns.items():
        annotation = _python_type(column)
        fields[key] = (Optional[annotation] if column.nullable else annotation, None)
    return create_model(f"{model.__name__}UpdateInput", __config__=_INPUT_CONFIG, **fields)


def validate_input(schema: Type[BaseModel], data: Dict[str, Any], label: str) -> Dict[str, Any]:
    """Validate ``data`` and return only the fields the caller set."""
    try:
        validated = schema.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}" for error in exc.errors()
        )
        raise QueryValidationError(
            f"Invalid {label}: {problems}", meta={"errors": exc.errors(include_url=False)}
        ) from exc
    return validated.model_dump(exclude_unset=True)
