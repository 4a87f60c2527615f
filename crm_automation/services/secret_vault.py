import base64
import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet, InvalidToken

from crm_automation.core.config import settings

_KEY_CONTEXT = b"crm-automation:webhook-secrets"


class SecretVaultError(ValueError):
    pass


def _fernet() -> Fernet:
    # HMAC-SHA256 gives the 32 bytes Fernet expects
    derived = hmac.new(settings.secret_key.encode("utf-8"), _KEY_CONTEXT, hashlib.sha256).digest()
    return Fernet(base64.urlsafe_b64encode(derived))


def encrypt_secret(plain_text: str) -> str:
    return _fernet().encrypt(plain_text.encode("utf-8")).decode("ascii")


def decrypt_secret(cipher_text: str) -> str:
    """Raises ``SecretVaultError`` when the token is malformed or SECRET_KEY changed."""
    try:
        return _fernet().decrypt(cipher_text.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as exc:
        raise SecretVaultError("Stored webhook secret cannot be decrypted") from exc


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_urlsafe(32)}"


def secret_hint(secret_value: str) -> str:
    if len(secret_value) <= 10:
        return "*" * len(secret_value)
    return f"{secret_value[:6]}...{secret_value[-4:]}"
