from datetime import datetime, timezone

import pytest
import pytest_asyncio

from paperless_ai_db.errors import QueryValidationError, RecordNotFoundError
from paperless_ai_db.models import Permission, UserRole


@pytest_asyncio.fixture()
async def users(client):
    names = ["dave", "alice", "carol", "bob", "erin"]
    created = []
    for index, name in enumerate(names):
        created.append(
            await client.user.create(
                {
                    "username": name,
                    "password_hash": "x",
                    "role": UserRole.ADMIN if name in ("alice", "erin") else UserRole.DEFAULT,
                    "is_active": name != "carol",
                }
            )
        )
    return created


async def usernames(operation):
    return [row.username for row in await operation]


@pytest.mark.asyncio
async def test_find_unique_returns_none_when_missing(client):
    assert await client.user.find_unique({"username": "nobody"}) is None
    with pytest.raises(RecordNotFoundError) as excinfo:
        await client.user.find_unique_or_raise({"username": "nobody"})
    assert excinfo.value.code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_find_unique_requires_unique_key(client, instance):
    with pytest.raises(QueryValidationError):
        client.user.find_unique({"is_active": True})
    with pytest.raises(QueryValidationError):
        client.paperless_instance.find_unique({"name": "Home"})
    found = await client.paperless_instance.find_unique({"owner_id": instance.owner_id, "name": "Home"})
    assert found.id == instance.id


@pytest.mark.asyncio
async def test_scalar_filters(client, users):
    ordered = {"order_by": {"username": "asc"}}
    assert await usernames(client.user.find_many({"username": {"in": ["bob", "erin", "zed"]}}, **ordered)) == [
        "bob",
        "erin",
    ]
    assert await usernames(client.user.find_many({"username": {"not_in": ["bob", "erin"]}}, **ordered)) == [
        "alice",
        "carol",
        "dave",
    ]
    assert await usernames(client.user.find_many({"username": {"gte": "c", "lt": "e"}}, **ordered)) == [
        "carol",
        "dave",
    ]
    assert await usernames(client.user.find_many({"username": {"not": "alice"}, "role": "ADMIN"})) == ["erin"]
    assert await usernames(
        client.user.find_many({"username": {"contains": "AR", "mode": "insensitive"}})
    ) == ["carol"]
    assert await usernames(client.user.find_many({"username": {"starts_with": "d"}})) == ["dave"]
    assert await usernames(client.user.find_many({"username": {"ends_with": "in"}})) == ["erin"]


@pytest.mark.asyncio
async def test_logical_filters(client, users):
    where = {"OR": [{"username": "alice"}, {"is_active": False}], "NOT": {"username": "carol"}}
    assert await usernames(client.user.find_many(where)) == ["alice"]
    where = {"AND": [{"role": UserRole.ADMIN}, {"username": {"not": "erin"}}]}
    assert await usernames(client.user.find_many(where)) == ["alice"]


@pytest.mark.asyncio
async def test_unknown_filter_fields_are_rejected(client):
    with pytest.raises(QueryValidationError):
        client.user.find_many({"nickname": "x"})
    with pytest.raises(QueryValidationError):
        client.user.find_many({"username": {"like": "x"}})
    with pytest.raises(QueryValidationError):
        client.processed_document.find_many({"original_tags": ["a"]})


@pytest.mark.asyncio
async def test_relation_filters(client, alice, bob, instance):
    await client.user_paperless_instance_access.create(
        {"user_id": bob.id, "paperless_instance_id": instance.id, "permission": Permission.WRITE}
    )
    shared = await client.user.find_many(
        {"paperless_instance_access": {"some": {"permission": "WRITE"}}}
    )
    assert [user.username for user in shared] == ["bob"]

    owners = await client.user.find_many({"owned_paperless_instances": {"some": {}}})
    assert [user.username for user in owners] == ["alice"]
    without = await client.user.find_many({"owned_paperless_instances": {"none": {}}})
    assert [user.username for user in without] == ["bob"]

    by_owner = await client.paperless_instance.find_many({"owner": {"username": "alice"}})
    assert [row.id for row in by_owner] == [instance.id]
    by_owner = await client.paperless_instance.find_many({"owner": {"is_not": {"username": "alice"}}})
    assert by_owner == []


@pytest.mark.asyncio
async def test_order_skip_take(client, users):
    assert await usernames(client.user.find_many(order_by={"username": "desc"}, skip=1, take=2)) == [
        "dave",
        "carol",
    ]
    ordered = client.user.find_many(order_by=[{"role": "asc"}, {"username": "asc"}])
    assert await usernames(ordered) == ["alice", "erin", "bob", "carol", "dave"]


@pytest.mark.asyncio
async def test_cursor_pagination(client, users):
    page = client.user.find_many(cursor={"username": "bob"}, order_by={"username": "asc"}, take=2)
    assert await usernames(page) == ["bob", "carol"]

    page = client.user.find_many(cursor={"username": "bob"}, order_by={"username": "asc"}, take=2, skip=1)
    assert await usernames(page) == ["carol", "dave"]

    # cursor row that does not exist
    page = client.user.find_many(cursor={"username": "zed"}, order_by={"username": "asc"})
    assert await page == []


@pytest.mark.asyncio
async def test_negative_take(client, users):
    page = client.user.find_many(cursor={"username": "dave"}, order_by={"username": "asc"}, take=-2)
    assert await usernames(page) == ["carol", "dave"]

    last = client.user.find_many(order_by={"username": "asc"}, take=-2)
    assert await usernames(last) == ["dave", "erin"]

    newest = await client.user.find_first(order_by={"username": "asc"}, take=-1)
    assert newest.username == "erin"


@pytest.mark.asyncio
async def test_distinct(client, users):
    rows = await client.user.find_many(distinct=["role"], order_by={"username": "asc"})
    assert [(row.role, row.username) for row in rows] == [
        (UserRole.ADMIN, "alice"),
        (UserRole.DEFAULT, "bob"),
    ]
    rows = await client.user.find_many(distinct=["role"], order_by={"username": "asc"}, skip=1)
    assert [row.username for row in rows] == ["bob"]


@pytest.mark.asyncio
async def test_find_first(client, users):
    first = await client.user.find_first({"role": "DEFAULT"}, order_by={"username": "asc"})
    assert first.username == "bob"
    assert await client.user.find_first({"username": "zed"}) is None
    with pytest.raises(RecordNotFoundError):
        await client.user.find_first_or_raise({"username": "zed"})


@pytest.mark.asyncio
async def test_include_and_select(client, alice, bob, instance, provider):
    await client.user_paperless_instance_access.create({"user_id": bob.id, "paperless_instance_id": instance.id})

    loaded = await client.paperless_instance.find_unique(
        {"id": instance.id}, include={"owner": True, "shared_with": {"include": {"user": True}}}
    )
    assert loaded.owner.username == "alice"
    assert [access.user.username for access in loaded.shared_with] == ["bob"]

    filtered = await client.user.find_unique(
        {"id": alice.id}, include={"owned_ai_providers": {"where": {"name": "Other"}}}
    )
    assert filtered.owned_ai_providers == []

    projected = await client.user.find_unique(
        {"id": alice.id},
        select={"username": True, "owned_paperless_instances": {"select": {"name": True}}},
    )
    assert projected == {"username": "alice", "owned_paperless_instances": [{"name": "Home"}]}

    with pytest.raises(QueryValidationError):
        client.user.find_many(include={"owner": True})
    with pytest.raises(QueryValidationError):
        client.user.find_many(include={"owned_ai_bots": True}, select={"username": True})


@pytest.mark.asyncio
async def test_cursor_pagination_over_nullable_column(client, instance):
    items = [
        await client.processing_queue.create({"paperless_instance_id": instance.id, "paperless_id": number})
        for number in range(4)
    ]
    claimed = items[0].id
    await client.processing_queue.update({"id": claimed}, {"started_at": datetime.now(timezone.utc)})
    waiting = sorted(item.id for item in items[1:])

    # unset nulls position: nulls sort after values ascending
    page = await client.processing_queue.find_many(cursor={"id": waiting[0]}, order_by={"started_at": "asc"}, take=3)
    assert [row.id for row in page] == waiting

    page = await client.processing_queue.find_many(cursor={"id": waiting[0]}, order_by={"started_at": "asc"}, take=-2)
    assert [row.id for row in page] == [claimed, waiting[0]]

    page = await client.processing_queue.find_many(cursor={"id": waiting[1]}, order_by={"started_at": "desc"})
    assert [row.id for row in page] == [waiting[1], waiting[2], claimed]

    page = await client.processing_queue.find_many(
        cursor={"id": claimed}, order_by={"started_at": {"sort": "asc", "nulls": "first"}}
    )
    assert [row.id for row in page] == [claimed]
