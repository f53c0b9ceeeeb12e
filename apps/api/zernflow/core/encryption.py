"""Fernet encryption for workspace credentials (messaging provider and AI keys)."""

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from zernflow.core.config import settings


class CredentialError(ValueError):
    """A stored credential could not be decrypted (wrong or rotated FERNET_KEY)."""


@lru_cache(maxsize=1)
def _fernet(key: str) -> Fernet:
    return Fernet(key.encode())


def get_fernet() -> Fernet:
    if not settings.FERNET_KEY:
        raise RuntimeError("FERNET_KEY is not configured; workspace credentials cannot be stored")
    return _fernet(settings.FERNET_KEY)


def encrypt_credential(plaintext: str) -> str:
    return get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_credential(ciphertext: str) -> str:
    try:
        return get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise CredentialError("Stored credential cannot be decrypted with the current FERNET_KEY") from exc
