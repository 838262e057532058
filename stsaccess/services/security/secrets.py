from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from stsaccess.core.config import get_settings
from stsaccess.core.errors import CredentialEncryptionError


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Never fall back to plaintext storage when the master key is missing.
    source = (settings.credential_encryption_key or "").strip()
    if not source:
        raise CredentialEncryptionError("CREDENTIAL_ENCRYPTION_KEY is required to store credentials")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def encrypt_secret(secret: str) -> str:
    # Normalize cryptography return types to a concrete string for persistence typing.
    token = _build_fernet().encrypt(secret.encode("utf-8"))
    return str(token.decode("utf-8"))


def decrypt_secret(token: str) -> str:
    try:
        return _build_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        # A rotated master key leaves old rows unreadable; surface it instead of returning garbage.
        raise CredentialEncryptionError("Stored credential cannot be decrypted with the current key") from exc
