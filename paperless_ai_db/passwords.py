# paperless_ai_db/passwords.py
"""Password hashing helpers (argon2 via pwdlib), peppered with the installation salt."""
import secrets
import string

from pwdlib import PasswordHash
from pwdlib.exceptions import UnknownHashError

SALT_LENGTH = 30
_SALT_ALPHABET = string.ascii_letters + string.digits

_password_hash = PasswordHash.recommended()


def generate_salt(length: int = SALT_LENGTH) -> str:
    return "".join(secrets.choice(_SALT_ALPHABET) for _ in range(length))


def hash_password(password: str, salt: str) -> str:
    """Argon2 hash of the password followed by the installation salt."""
    if not password:
        raise ValueError("Password must not be empty")
    return _password_hash.hash(f"{password}{salt}")


def verify_password(password: str, salt: str, password_hash: str) -> bool:
    try:
        return _password_hash.verify(f"{password}{salt}", password_hash)
    except UnknownHashError:
        return False
