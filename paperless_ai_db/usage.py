# paperless_ai_db/usage.py
"""Token and cost accounting for AI calls."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def estimate_cost(
    prompt_tokens: int,
    completion_tokens: int,
    input_price_per_million: Optional[float],
    output_price_per_million: Optional[float],
) -> Optional[float]:
    """Cost from per-million-token prices, or ``None`` when a price is unknown."""
    if input_price_per_million is None or output_price_per_million is None:
        return None
    return (prompt_tokens * input_price_per_million + completion_tokens * output_price_per_million) / 1_000_000


async def record_usage(
    client: Any,
    *,
    user_id: str,
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    estimated_cost: Optional[float] = None,
    ai_bot_id: Optional[str] = None,
    document_id: Optional[str] = None,
) -> Any:
    metric = await client.ai_usage_metric.create(
        {
            "user_id": user_id,
            "provider": provider,
            "model": model,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
            "estimated_cost": estimated_cost,
            "ai_bot_id": ai_bot_id,
            "document_id": document_id,
        }
    )
    logger.debug("Recorded %d tokens on %s/%s for user %s", metric.total_tokens, provider, model, user_id)
    return metric


async def usage_summary(
    client: Any,
    *,
    user_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Usage grouped by provider and model::

        [{"provider": "openai", "model": "gpt-4o", "calls": 3,
          "prompt_tokens": 1200, "completion_tokens": 300, "total_tokens": 1500,
          "estimated_cost": 0.0042}]
    """
    where: Dict[str, Any] = {}
    if user_id is not None:
        where["user_id"] = user_id
    created: Dict[str, Any] = {}
    if since is not None:
        created["gte"] = since
    if until is not None:
        created["lt"] = until
    if created:
        where["created_at"] = created

    groups = await client.ai_usage_metric.group_by(
        ["provider", "model"],
        where=where or None,
        order_by=[{"provider": "asc"}, {"model": "asc"}],
        count=True,
        sum={"prompt_tokens": True, "completion_tokens": True, "total_tokens": True, "estimated_cost": True},
    )
    return [
        {
            "provider": group["provider"],
            "model": group["model"],
            "calls": group["_count"],
            "prompt_tokens": group["_sum"]["prompt_tokens"] or 0,
            "completion_tokens": group["_sum"]["completion_tokens"] or 0,
            "total_tokens": group["_sum"]["total_tokens"] or 0,
            "estimated_cost": group["_sum"]["estimated_cost"],
        }
        for group in groups
    ]
