import pytest
import pytest_asyncio

from paperless_ai_db.errors import QueryValidationError


@pytest_asyncio.fixture()
async def documents(client, instance):
    rows = [
        (1, "Invoice A", "openai", 100),
        (2, "Invoice B", "openai", 300),
        (3, "Letter", "anthropic", 50),
        (4, "Receipt", "anthropic", 150),
        (5, "Contract", "ollama", 0),
    ]
    await client.processed_document.create_many(
        [
            {
                "paperless_id": paperless_id,
                "title": title,
                "ai_provider": ai_provider,
                "tokens_used": tokens,
                "paperless_instance_id": instance.id,
                "original_title": title if paperless_id != 5 else None,
            }
            for paperless_id, title, ai_provider, tokens in rows
        ]
    )


@pytest.mark.asyncio
async def test_count(client, documents):
    assert await client.processed_document.count() == 5
    assert await client.processed_document.count({"ai_provider": "openai"}) == 2
    assert await client.processed_document.count(take=2) == 2
    assert await client.processed_document.count(skip=4) == 1
    counts = await client.processed_document.count(select={"_all": True, "original_title": True})
    assert counts == {"_all": 5, "original_title": 4}


@pytest.mark.asyncio
async def test_count_with_missing_cursor(client, documents):
    assert await client.processed_document.count(cursor={"id": "missing"}) == 0


@pytest.mark.asyncio
async def test_json_null_is_stored_as_sql_null(client, instance):
    await client.processed_document.create(
        {
            "paperless_id": 10,
            "title": "No changes",
            "ai_provider": "openai",
            "paperless_instance_id": instance.id,
            "changes": None,
        }
    )
    await client.processed_document.create(
        {
            "paperless_id": 11,
            "title": "Retitled",
            "ai_provider": "openai",
            "paperless_instance_id": instance.id,
            "changes": {"title": ["Scan 11", "Retitled"]},
        }
    )
    unchanged = await client.processed_document.find_many({"changes": None})
    assert [doc.paperless_id for doc in unchanged] == [10]
    changed = await client.processed_document.find_many({"changes": {"not": None}})
    assert [doc.paperless_id for doc in changed] == [11]
    assert await client.processed_document.count(select={"changes": True}) == {"changes": 1}

    await client.processed_document.update_many({"paperless_id": 11}, {"changes": None})
    assert await client.processed_document.count({"changes": None}) == 2


@pytest.mark.asyncio
async def test_aggregate(client, documents):
    result = await client.processed_document.aggregate(
        count=True,
        avg={"tokens_used": True},
        sum={"tokens_used": True},
        min={"tokens_used": True, "title": True},
        max={"tokens_used": True},
    )
    assert result == {
        "_count": 5,
        "_avg": {"tokens_used": 120.0},
        "_sum": {"tokens_used": 600},
        "_min": {"tokens_used": 0, "title": "Contract"},
        "_max": {"tokens_used": 300},
    }

    filtered = await client.processed_document.aggregate(
        {"ai_provider": "anthropic"}, sum={"tokens_used": True}
    )
    assert filtered == {"_sum": {"tokens_used": 200}}

    top_two = await client.processed_document.aggregate(
        order_by={"tokens_used": "desc"}, take=2, sum={"tokens_used": True}
    )
    assert top_two == {"_sum": {"tokens_used": 450}}

    empty = await client.processed_document.aggregate({"ai_provider": "none"}, count=True, sum={"tokens_used": True})
    assert empty == {"_count": 0, "_sum": {"tokens_used": None}}


@pytest.mark.asyncio
async def test_aggregate_validation(client):
    with pytest.raises(QueryValidationError):
        client.processed_document.aggregate(avg={"title": True})
    with pytest.raises(QueryValidationError):
        client.processed_document.aggregate(max={"changes": True})
    with pytest.raises(QueryValidationError):
        client.processed_document.aggregate()


@pytest.mark.asyncio
async def test_group_by(client, documents):
    groups = await client.processed_document.group_by(
        ["ai_provider"],
        count=True,
        sum={"tokens_used": True},
        order_by={"ai_provider": "asc"},
    )
    assert groups == [
        {"ai_provider": "anthropic", "_count": 2, "_sum": {"tokens_used": 200}},
        {"ai_provider": "ollama", "_count": 1, "_sum": {"tokens_used": 0}},
        {"ai_provider": "openai", "_count": 2, "_sum": {"tokens_used": 400}},
    ]

    busiest = await client.processed_document.group_by(
        "ai_provider",
        sum={"tokens_used": True},
        order_by={"_sum": {"tokens_used": "desc"}},
        take=1,
    )
    assert busiest == [{"ai_provider": "openai", "_sum": {"tokens_used": 400}}]

    heavy = await client.processed_document.group_by(
        "ai_provider",
        having={"tokens_used": {"_avg": {"gt": 90}}},
        order_by={"ai_provider": "asc"},
    )
    assert [group["ai_provider"] for group in heavy] == ["anthropic", "openai"]

    named = await client.processed_document.group_by(
        "ai_provider", where={"tokens_used": {"gt": 0}}, having={"ai_provider": {"starts_with": "o"}}
    )
    assert named == [{"ai_provider": "openai"}]


@pytest.mark.asyncio
async def test_group_by_rejects_fields_outside_by(client):
    with pytest.raises(QueryValidationError, match="order_by"):
        client.processed_document.group_by("ai_provider", order_by={"title": "asc"})
    with pytest.raises(QueryValidationError, match="having"):
        client.processed_document.group_by("ai_provider", having={"title": "Letter"})
    with pytest.raises(QueryValidationError):
        client.processed_document.group_by([])
    with pytest.raises(QueryValidationError):
        client.processed_document.group_by("ai_provider", take=1)
    with pytest.raises(QueryValidationError):
        client.processed_document.group_by("original_tags")
