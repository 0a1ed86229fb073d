# paperless_ai_db/queue.py
"""Bookkeeping for the per-instance document processing queue."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from paperless_ai_db.config import settings as default_settings
from paperless_ai_db.models import QueueStatus

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _settings(client: Any):
    return getattr(client, "settings", None) or default_settings


async def _atomically(client: Any, fn: Callable[[Any], Awaitable[Any]]) -> Any:
    # transaction clients are already inside one
    if hasattr(client, "transaction"):
        return await client.transaction(fn)
    return await fn(client)


def retry_reset_data() -> Dict[str, Any]:
    return {
        "status": QueueStatus.PENDING.value,
        "attempts": 0,
        "last_error": None,
        "scheduled_for": _now(),
        "started_at": None,
        "completed_at": None,
    }


async def enqueue_document(
    client: Any,
    paperless_instance_id: str,
    paperless_id: int,
    *,
    priority: int = 0,
    scheduled_for: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> Any:
    """Queue a document once; an already queued document is returned unchanged."""
    pair = {"paperless_instance_id": paperless_instance_id, "paperless_id": paperless_id}
    data: Dict[str, Any] = {**pair, "priority": priority, "scheduled_for": scheduled_for or _now()}
    if max_attempts is not None:
        data["max_attempts"] = max_attempts
    return await client.processing_queue.upsert(where=pair, create=data, update={})


async def next_due_item(
    client: Any, paperless_instance_id: Optional[str] = None, now: Optional[datetime] = None
) -> Optional[Any]:
    """Highest priority pending item whose schedule has passed, oldest first."""
    where: Dict[str, Any] = {"status": QueueStatus.PENDING.value, "scheduled_for": {"lte": now or _now()}}
    if paperless_instance_id is not None:
        where["paperless_instance_id"] = paperless_instance_id
    return await client.processing_queue.find_first(
        where, order_by=[{"priority": "desc"}, {"created_at": "asc"}]
    )


async def mark_processing(client: Any, item_id: str) -> Optional[Any]:
    """
    Claim a pending item. Returns the updated item, or ``None`` when somebody
    else claimed it first.
    """
    claimed = await client.processing_queue.update_many(
        {"id": item_id, "status": QueueStatus.PENDING.value},
        {"status": QueueStatus.PROCESSING.value, "started_at": _now(), "completed_at": None},
    )
    if claimed["count"] == 0:
        logger.debug("Queue item %s was not pending, not claimed", item_id)
        return None
    return await client.processing_queue.find_unique({"id": item_id})


async def mark_completed(client: Any, item_id: str) -> Any:
    return await client.processing_queue.update(
        {"id": item_id},
        {"status": QueueStatus.COMPLETED.value, "completed_at": _now(), "last_error": None},
    )


async def mark_failed(
    client: Any, item_id: str, error: str, *, retry_delay_minutes: Optional[int] = None
) -> Any:
    """
    Record a failed attempt. The item goes back to pending, scheduled
    ``retry_delay * attempts`` minutes out, until ``max_attempts`` is reached;
    then it stays failed.
    """
    delay = retry_delay_minutes if retry_delay_minutes is not None else _settings(client).queue_retry_delay_minutes

    async def run(tx):
        item = await tx.processing_queue.find_unique_or_raise({"id": item_id})
        attempts = item.attempts + 1
        now = _now()
        data: Dict[str, Any] = {"attempts": {"increment": 1}, "last_error": error, "started_at": None}
        if attempts >= item.max_attempts:
            data.update(status=QueueStatus.FAILED.value, completed_at=now)
            logger.warning("Queue item %s failed permanently after %d attempts: %s", item_id, attempts, error)
        else:
            data.update(status=QueueStatus.PENDING.value, scheduled_for=now + timedelta(minutes=delay * attempts))
            logger.info("Queue item %s failed (attempt %d/%d), retrying", item_id, attempts, item.max_attempts)
        return await tx.processing_queue.update({"id": item_id}, data)

    return await _atomically(client, run)


async def reset_stuck_items(client: Any, *, stuck_after_minutes: Optional[int] = None) -> int:
    """Put items that have been processing for too long back to pending."""
    minutes = stuck_after_minutes if stuck_after_minutes is not None else _settings(client).queue_stuck_after_minutes
    result = await client.processing_queue.update_many(
        {"status": QueueStatus.PROCESSING.value, "started_at": {"lt": _now() - timedelta(minutes=minutes)}},
        {"status": QueueStatus.PENDING.value, "started_at": None},
    )
    if result["count"]:
        logger.info("Reset %d stuck queue item(s)", result["count"])
    return result["count"]


async def retry_failed(
    client: Any, paperless_instance_id: str, item_ids: Optional[Iterable[str]] = None
) -> int:
    where: Dict[str, Any] = {"paperless_instance_id": paperless_instance_id, "status": QueueStatus.FAILED.value}
    if item_ids is not None:
        where["id"] = {"in": list(item_ids)}
    result = await client.processing_queue.update_many(where, retry_reset_data())
    return result["count"]


async def delete_completed(
    client: Any, paperless_instance_id: str, *, older_than: Optional[datetime] = None
) -> int:
    where: Dict[str, Any] = {"paperless_instance_id": paperless_instance_id, "status": QueueStatus.COMPLETED.value}
    if older_than is not None:
        where["completed_at"] = {"lt": older_than}
    result = await client.processing_queue.delete_many(where)
    return result["count"]


async def queue_stats(client: Any, paperless_instance_id: Optional[str] = None) -> Dict[str, int]:
    """Item count per status; every status is present."""
    where = {"paperless_instance_id": paperless_instance_id} if paperless_instance_id is not None else None
    groups = await client.processing_queue.group_by("status", where=where, count=True)
    stats = {status.value: 0 for status in QueueStatus}
    for group in groups:
        stats[group["status"]] = group["_count"]
    return stats
