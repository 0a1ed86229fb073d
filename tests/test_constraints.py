import pytest

from paperless_ai_db.errors import (
    ForeignKeyConstraintError,
    QueryValidationError,
    UniqueConstraintError,
)
from paperless_ai_db.models import Permission, UserRole


@pytest.mark.asyncio
async def test_user_defaults(client, alice):
    assert alice.role is UserRole.DEFAULT
    assert alice.is_active is True
    assert alice.must_change_password is False
    assert len(alice.id) == 36
    assert alice.created_at is not None


@pytest.mark.asyncio
async def test_username_is_unique(client, alice):
    with pytest.raises(UniqueConstraintError) as excinfo:
        await client.user.create({"username": "alice", "password_hash": "y"})
    assert excinfo.value.code == "UNIQUE_VIOLATION"
    assert await client.user.count() == 1


@pytest.mark.asyncio
async def test_resource_names_unique_per_owner(client, alice, bob, instance):
    with pytest.raises(UniqueConstraintError):
        await client.paperless_instance.create(
            {"name": "Home", "api_url": "https://other", "api_token": "t", "owner_id": alice.id}
        )
    # same name for another owner is fine
    other = await client.paperless_instance.create(
        {"name": "Home", "api_url": "https://other", "api_token": "t", "owner_id": bob.id}
    )
    assert other.owner_id == bob.id


@pytest.mark.asyncio
async def test_access_grant_unique_per_user_and_resource(client, bob, instance):
    data = {"user_id": bob.id, "paperless_instance_id": instance.id, "permission": Permission.READ}
    await client.user_paperless_instance_access.create(data)
    with pytest.raises(UniqueConstraintError):
        await client.user_paperless_instance_access.create(data)


@pytest.mark.asyncio
async def test_documents_and_queue_unique_per_instance(client, instance):
    doc = {
        "paperless_id": 7,
        "title": "Invoice",
        "ai_provider": "openai/gpt-4o-mini",
        "paperless_instance_id": instance.id,
    }
    created = await client.processed_document.create(doc)
    assert created.original_tags == []
    assert created.tokens_used == 0
    with pytest.raises(UniqueConstraintError):
        await client.processed_document.create(doc)

    item = {"paperless_id": 7, "paperless_instance_id": instance.id}
    queued = await client.processing_queue.create(item)
    assert queued.status == "pending"
    assert queued.max_attempts == 3
    with pytest.raises(UniqueConstraintError):
        await client.processing_queue.create(item)


@pytest.mark.asyncio
async def test_bot_with_dangling_provider_is_rejected(client, alice):
    with pytest.raises(ForeignKeyConstraintError) as excinfo:
        await client.ai_bot.create(
            {"name": "Tagger", "system_prompt": "tag", "owner_id": alice.id, "ai_provider_id": "missing"}
        )
    assert excinfo.value.code == "FOREIGN_KEY_VIOLATION"
    assert excinfo.value.__cause__ is not None


@pytest.mark.asyncio
async def test_deleting_user_cascades_to_owned_resources(client, alice, bob, instance, provider):
    await client.user_ai_provider_access.create({"user_id": bob.id, "ai_provider_id": provider.id})
    await client.processing_queue.create({"paperless_id": 1, "paperless_instance_id": instance.id})

    deleted = await client.user.delete({"id": alice.id})

    assert deleted.username == "alice"
    assert await client.paperless_instance.count() == 0
    assert await client.ai_provider.count() == 0
    assert await client.user_ai_provider_access.count() == 0
    assert await client.processing_queue.count() == 0
    assert await client.user.count() == 1


@pytest.mark.asyncio
async def test_provider_in_use_by_bot_cannot_be_deleted(client, alice, provider):
    await client.ai_bot.create(
        {"name": "Tagger", "system_prompt": "tag", "owner_id": alice.id, "ai_provider_id": provider.id}
    )
    with pytest.raises(ForeignKeyConstraintError):
        await client.ai_provider.delete({"id": provider.id})
    assert await client.ai_provider.count() == 1


@pytest.mark.asyncio
async def test_deleting_bot_keeps_usage_metrics(client, alice, provider):
    bot = await client.ai_bot.create(
        {"name": "Tagger", "system_prompt": "tag", "owner_id": alice.id, "ai_provider_id": provider.id}
    )
    metric = await client.ai_usage_metric.create(
        {"provider": "openai", "model": "gpt-4o-mini", "user_id": alice.id, "ai_bot_id": bot.id}
    )

    await client.ai_bot.delete({"id": bot.id})

    kept = await client.ai_usage_metric.find_unique_or_raise({"id": metric.id})
    assert kept.ai_bot_id is None


@pytest.mark.asyncio
async def test_invalid_input_rejected_before_round_trip(client, alice):
    with pytest.raises(QueryValidationError):
        await client.user.create({"username": "carol"})  # password_hash missing
    with pytest.raises(QueryValidationError):
        await client.user.create({"username": "carol", "password_hash": "x", "nickname": "c"})
    with pytest.raises(QueryValidationError) as excinfo:
        await client.user.create({"username": "carol", "password_hash": "x", "role": "ROOT"})
    assert excinfo.value.meta["errors"]
    with pytest.raises(QueryValidationError):
        await client.user.find_many({"role": "ROOT"})
