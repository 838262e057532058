from stsaccess.services.security.secrets import decrypt_secret, encrypt_secret

__all__ = [
    "decrypt_secret",
    "encrypt_secret",
]
