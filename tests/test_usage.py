from datetime import datetime, timedelta, timezone

import pytest

from paperless_ai_db.usage import estimate_cost, record_usage, usage_summary


def test_estimate_cost():
    assert estimate_cost(1_000_000, 500_000, 2.5, 10.0) == pytest.approx(7.5)
    assert estimate_cost(100, 100, None, 10.0) is None


@pytest.mark.asyncio
async def test_record_usage_totals_tokens(client, alice):
    metric = await record_usage(
        client, user_id=alice.id, provider="openai", model="gpt-4o-mini", prompt_tokens=120, completion_tokens=30
    )
    assert metric.total_tokens == 150
    assert metric.ai_bot_id is None


@pytest.mark.asyncio
async def test_usage_summary(client, alice, bob):
    await record_usage(
        client, user_id=alice.id, provider="openai", model="gpt-4o", prompt_tokens=100, completion_tokens=50,
        estimated_cost=0.5,
    )
    await record_usage(
        client, user_id=alice.id, provider="openai", model="gpt-4o", prompt_tokens=200, completion_tokens=100,
        estimated_cost=1.0,
    )
    await record_usage(
        client, user_id=alice.id, provider="anthropic", model="claude", prompt_tokens=10, completion_tokens=5
    )
    await record_usage(
        client, user_id=bob.id, provider="openai", model="gpt-4o", prompt_tokens=1, completion_tokens=1
    )

    summary = await usage_summary(client, user_id=alice.id)
    assert summary == [
        {
            "provider": "anthropic",
            "model": "claude",
            "calls": 1,
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "total_tokens": 15,
            "estimated_cost": None,
        },
        {
            "provider": "openai",
            "model": "gpt-4o",
            "calls": 2,
            "prompt_tokens": 300,
            "completion_tokens": 150,
            "total_tokens": 450,
            "estimated_cost": pytest.approx(1.5),
        },
    ]

    everyone = await usage_summary(client)
    assert sum(row["calls"] for row in everyone) == 4

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    assert await usage_summary(client, since=later) == []
