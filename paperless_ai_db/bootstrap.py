# paperless_ai_db/bootstrap.py
"""First-start initialisation: password salt, initial admin user, default settings."""
import logging
from typing import Dict, Optional

from paperless_ai_db.client import IsolationLevel, PaperlessClient, TransactionClient
from paperless_ai_db.config import Settings, settings as default_settings
from paperless_ai_db.errors import WriteConflictError
from paperless_ai_db.models import UserRole
from paperless_ai_db.passwords import generate_salt, hash_password

logger = logging.getLogger(__name__)

SALT_SETTING_KEY = "security.secrets.salt"

# section.group.setting -> stored value
DEFAULT_SETTINGS: Dict[str, str] = {
    "display.general.currency": "EUR",
    "ai.context.identity": "",
    "ai.pdf.maxSizeMb": "20",
    "security.sharing.mode": "BASIC",
}


class BootstrapError(Exception):
    pass


async def _ensure_salt(tx: TransactionClient) -> str:
    salt = await tx.setting.find_unique({"setting_key": SALT_SETTING_KEY})
    if salt is None:
        salt = await tx.setting.create({"setting_key": SALT_SETTING_KEY, "setting_value": generate_salt()})
        logger.info("Generated password salt")
    return salt.setting_value


async def _ensure_admin(tx: TransactionClient, salt: str, app_settings: Settings) -> None:
    if await tx.user.count() > 0:
        return
    password = app_settings.admin_initial_password
    if not password:
        raise BootstrapError(
            "No users exist and ADMIN_INITIAL_PASSWORD is not set. "
            "Set ADMIN_INITIAL_PASSWORD to create the initial admin user."
        )
    await tx.user.create(
        {
            "username": app_settings.admin_username,
            "password_hash": hash_password(password, salt),
            "role": UserRole.ADMIN,
            "must_change_password": True,
            "is_active": True,
        }
    )
    logger.info("Initial admin user %s created", app_settings.admin_username)


async def _ensure_default_settings(tx: TransactionClient) -> None:
    for key, value in DEFAULT_SETTINGS.items():
        if await tx.setting.find_unique({"setting_key": key}) is None:
            await tx.setting.create({"setting_key": key, "setting_value": value})
            logger.debug("Default setting %s=%r stored", key, value)


async def bootstrap_application(client: PaperlessClient, app_settings: Optional[Settings] = None) -> None:
    """
    Make sure the installation is usable.

    Runs in one SERIALIZABLE transaction. When a concurrent bootstrap wins the
    race the resulting write conflict is ignored, since the other run already
    created everything.

    Raises ``BootstrapError`` when no user exists and no initial admin
    password is configured.
    """
    app_settings = app_settings or client.settings or default_settings

    async def run(tx: TransactionClient) -> None:
        salt = await _ensure_salt(tx)
        await _ensure_admin(tx, salt, app_settings)
        await _ensure_default_settings(tx)

    try:
        await client.transaction(run, isolation_level=IsolationLevel.SERIALIZABLE)
    except WriteConflictError:
        logger.info("Bootstrap: concurrent transaction completed first, skipping")
        return
    logger.info("Bootstrap complete")


async def get_salt(client: PaperlessClient) -> Optional[str]:
    salt = await client.setting.find_unique({"setting_key": SALT_SETTING_KEY})
    return salt.setting_value if salt is not None else None
