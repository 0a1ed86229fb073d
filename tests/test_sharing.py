import pytest

from paperless_ai_db import sharing
from paperless_ai_db.errors import QueryValidationError
from paperless_ai_db.models import Permission


@pytest.mark.asyncio
async def test_grant_upserts_permission(client, alice, bob, instance):
    access = await sharing.grant_access(client, "paperless_instance", bob.id, instance.id)
    assert access.permission is Permission.READ

    access = await sharing.grant_access(client, "paperless_instance", bob.id, instance.id, "WRITE")
    assert access.permission is Permission.WRITE
    assert await client.user_paperless_instance_access.count() == 1

    listed = await sharing.list_access(client, "paperless_instance", instance.id)
    assert [(row.user.username, row.permission) for row in listed] == [("bob", Permission.WRITE)]


@pytest.mark.asyncio
async def test_effective_permission(client, alice, bob, provider):
    assert await sharing.effective_permission(client, "ai_provider", alice.id, provider.id) is Permission.ADMIN
    assert await sharing.effective_permission(client, "ai_provider", bob.id, provider.id) is None
    assert await sharing.effective_permission(client, "ai_provider", bob.id, "missing") is None

    await sharing.grant_access(client, "ai_provider", bob.id, provider.id, Permission.WRITE)
    assert await sharing.has_permission(client, "ai_provider", bob.id, provider.id, "READ")
    assert await sharing.has_permission(client, "ai_provider", bob.id, provider.id, Permission.WRITE)
    assert not await sharing.has_permission(client, "ai_provider", bob.id, provider.id, Permission.ADMIN)

    assert await sharing.revoke_access(client, "ai_provider", bob.id, provider.id) is True
    assert await sharing.revoke_access(client, "ai_provider", bob.id, provider.id) is False
    assert not await sharing.has_permission(client, "ai_provider", bob.id, provider.id)


@pytest.mark.asyncio
async def test_accessible_filter(client, alice, bob, provider):
    own = await client.ai_bot.create(
        {"name": "Alice bot", "system_prompt": "x", "owner_id": alice.id, "ai_provider_id": provider.id}
    )
    shared = await client.ai_bot.create(
        {"name": "Shared bot", "system_prompt": "x", "owner_id": alice.id, "ai_provider_id": provider.id}
    )
    await client.ai_bot.create(
        {"name": "Private bot", "system_prompt": "x", "owner_id": alice.id, "ai_provider_id": provider.id}
    )
    await sharing.grant_access(client, "ai_bot", bob.id, shared.id)

    visible = await client.ai_bot.find_many(sharing.accessible_filter(bob.id), order_by={"name": "asc"})
    assert [bot.name for bot in visible] == ["Shared bot"]

    writable = await client.ai_bot.find_many(sharing.accessible_filter(bob.id, Permission.WRITE))
    assert writable == []

    mine = await client.ai_bot.find_many(sharing.accessible_filter(alice.id))
    assert own.id in {bot.id for bot in mine}
    assert len(mine) == 3


@pytest.mark.asyncio
async def test_unknown_resource_kind(client, bob):
    with pytest.raises(QueryValidationError):
        await sharing.grant_access(client, "document", bob.id, "1")
    with pytest.raises(QueryValidationError):
        sharing.accessible_filter(bob.id, "OWNER")
