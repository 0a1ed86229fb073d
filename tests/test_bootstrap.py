import pytest

from paperless_ai_db.bootstrap import (
    DEFAULT_SETTINGS,
    SALT_SETTING_KEY,
    BootstrapError,
    bootstrap_application,
    get_salt,
)
from paperless_ai_db.models import UserRole
from paperless_ai_db.passwords import verify_password


@pytest.mark.asyncio
async def test_bootstrap_creates_salt_admin_and_defaults(client, app_settings):
    await bootstrap_application(client, app_settings)

    salt = await get_salt(client)
    assert salt is not None and len(salt) == 30

    admin = await client.user.find_unique_or_raise({"username": "admin"})
    assert admin.role is UserRole.ADMIN
    assert admin.must_change_password is True
    assert verify_password("initial-secret", salt, admin.password_hash)

    for key, value in DEFAULT_SETTINGS.items():
        stored = await client.setting.find_unique_or_raise({"setting_key": key})
        assert stored.setting_value == value


@pytest.mark.asyncio
async def test_bootstrap_is_idempotent(client, app_settings):
    await bootstrap_application(client, app_settings)
    salt = await get_salt(client)
    await client.setting.update({"setting_key": "display.general.currency"}, {"setting_value": "USD"})

    await bootstrap_application(client, app_settings)

    assert await get_salt(client) == salt
    assert await client.user.count() == 1
    assert await client.setting.count() == len(DEFAULT_SETTINGS) + 1
    currency = await client.setting.find_unique({"setting_key": "display.general.currency"})
    assert currency.setting_value == "USD"


@pytest.mark.asyncio
async def test_bootstrap_without_initial_password(client, app_settings):
    no_password = app_settings.model_copy(update={"admin_initial_password": None})
    with pytest.raises(BootstrapError):
        await bootstrap_application(client, no_password)
    # nothing was written
    assert await client.setting.find_unique({"setting_key": SALT_SETTING_KEY}) is None


@pytest.mark.asyncio
async def test_bootstrap_skips_admin_when_users_exist(client, alice, app_settings):
    no_password = app_settings.model_copy(update={"admin_initial_password": None})
    await bootstrap_application(client, no_password)
    assert await client.user.find_unique({"username": "admin"}) is None
    assert await get_salt(client) is not None
