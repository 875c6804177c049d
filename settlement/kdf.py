"""Per-user wallet key derivation.

The key is recomputed on every unlock from the user id, a normalized
identity claim and the salt stored with the wallet, so no key material is
persisted. Changing the identity claim (e.g. an email update) changes the
key; such flows must re-encrypt the wallet first.
"""
from __future__ import annotations

import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import MIN_KDF_ITERATIONS
from .envelope import KEY_LENGTH

SALT_LENGTH = 32


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


def new_salt() -> str:
    """Hex-encoded random salt, stored alongside the wallet."""
    return secrets.token_bytes(SALT_LENGTH).hex()


def derive_key(
    user_id: str,
    identity: str,
    salt: str,
    iterations: int = MIN_KDF_ITERATIONS,
) -> bytes:
    if not user_id:
        raise ValueError("user_id is required")
    if not identity or not identity.strip():
        raise ValueError("identity attribute is required")
    if not salt:
        raise ValueError("salt is required")
    if iterations < MIN_KDF_ITERATIONS:
        raise ValueError(f"iterations must be at least {MIN_KDF_ITERATIONS}")
    # Existing records were sealed with the hex text of the salt as KDF salt.
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    material = f"{user_id}:{normalize_identity(identity)}".encode("utf-8")
    return kdf.derive(material)
