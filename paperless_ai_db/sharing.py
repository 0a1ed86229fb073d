# paperless_ai_db/sharing.py
"""
Sharing of owned resources (Paperless instances, AI providers, AI bots).

The owner of a resource always holds ``ADMIN``; everybody else holds whatever
their access row grants, or nothing.
"""
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Union

from paperless_ai_db.errors import QueryValidationError
from paperless_ai_db.models import Permission

logger = logging.getLogger(__name__)

_RANK = {Permission.READ: 1, Permission.WRITE: 2, Permission.ADMIN: 3}


class _Resource(NamedTuple):
    delegate: str
    access_delegate: str
    foreign_key: str


RESOURCES: Dict[str, _Resource] = {
    "paperless_instance": _Resource("paperless_instance", "user_paperless_instance_access", "paperless_instance_id"),
    "ai_provider": _Resource("ai_provider", "user_ai_provider_access", "ai_provider_id"),
    "ai_bot": _Resource("ai_bot", "user_ai_bot_access", "ai_bot_id"),
}


def _resource(kind: str) -> _Resource:
    try:
        return RESOURCES[kind]
    except KeyError:
        raise QueryValidationError(
            f"Unknown shareable resource {kind!r}; expected one of: {', '.join(RESOURCES)}"
        ) from None


def _permission(value: Union[Permission, str]) -> Permission:
    try:
        return Permission(value)
    except ValueError:
        raise QueryValidationError(f"Invalid permission {value!r}") from None


async def grant_access(
    client: Any,
    kind: str,
    user_id: str,
    resource_id: str,
    permission: Union[Permission, str] = Permission.READ,
) -> Any:
    """Share a resource with a user; granting again replaces the permission."""
    resource = _resource(kind)
    permission = _permission(permission)
    pair = {"user_id": user_id, resource.foreign_key: resource_id}
    access = await getattr(client, resource.access_delegate).upsert(
        where=pair,
        create={**pair, "permission": permission},
        update={"permission": permission},
    )
    logger.info("Granted %s on %s %s to user %s", permission.value, kind, resource_id, user_id)
    return access


async def revoke_access(client: Any, kind: str, user_id: str, resource_id: str) -> bool:
    resource = _resource(kind)
    result = await getattr(client, resource.access_delegate).delete_many(
        {"user_id": user_id, resource.foreign_key: resource_id}
    )
    return result["count"] > 0


async def list_access(client: Any, kind: str, resource_id: str) -> List[Any]:
    """Access rows of a resource with their users, oldest grant first."""
    resource = _resource(kind)
    return await getattr(client, resource.access_delegate).find_many(
        {resource.foreign_key: resource_id},
        order_by={"created_at": "asc"},
        include={"user": True},
    )


async def effective_permission(client: Any, kind: str, user_id: str, resource_id: str) -> Optional[Permission]:
    resource = _resource(kind)
    owned = await getattr(client, resource.delegate).find_unique({"id": resource_id}, select={"owner_id": True})
    if owned is None:
        return None
    if owned["owner_id"] == user_id:
        return Permission.ADMIN
    access = await getattr(client, resource.access_delegate).find_unique(
        {"user_id": user_id, resource.foreign_key: resource_id}
    )
    return access.permission if access is not None else None


async def has_permission(
    client: Any,
    kind: str,
    user_id: str,
    resource_id: str,
    required: Union[Permission, str] = Permission.READ,
) -> bool:
    granted = await effective_permission(client, kind, user_id, resource_id)
    if granted is None:
        return False
    return _RANK[granted] >= _RANK[_permission(required)]


def accessible_filter(user_id: str, minimum: Union[Permission, str] = Permission.READ) -> Dict[str, Any]:
    """
    ``where`` fragment matching resources the user owns or that are shared
    with them with at least ``minimum``. Works for every shareable model::

        await db.ai_bot.find_many({"AND": [accessible_filter(user_id), {"is_active": True}]})
    """
    required = _RANK[_permission(minimum)]
    allowed = [permission for permission, rank in _RANK.items() if rank >= required]
    return {
        "OR": [
            {"owner_id": user_id},
            {"shared_with": {"some": {"user_id": user_id, "permission": {"in": allowed}}}},
        ]
    }
