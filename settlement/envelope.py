"""AES-256-GCM envelope for secrets held at rest."""
from __future__ import annotations

import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16


@dataclass(frozen=True)
class Sealed:
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes

    def to_hex(self) -> tuple[str, str, str]:
        return self.ciphertext.hex(), self.iv.hex(), self.auth_tag.hex()

    @classmethod
    def from_hex(cls, ciphertext: str, iv: str, auth_tag: str) -> "Sealed":
        try:
            return cls(bytes.fromhex(ciphertext), bytes.fromhex(iv), bytes.fromhex(auth_tag))
        except (TypeError, ValueError) as exc:
            raise AuthenticationFailure("Sealed fields are not valid hex") from exc


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise ValueError(f"key must be {KEY_LENGTH} bytes")


def encrypt(plaintext: bytes, key: bytes) -> Sealed:
    """Seal ``plaintext`` under ``key`` with a fresh random IV."""
    _check_key(key)
    iv = secrets.token_bytes(IV_LENGTH)
    sealed = AESGCM(bytes(key)).encrypt(iv, plaintext, None)
    return Sealed(ciphertext=sealed[:-TAG_LENGTH], iv=iv, auth_tag=sealed[-TAG_LENGTH:])


def decrypt(sealed: Sealed, key: bytes) -> bytes:
    _check_key(key)
    if len(sealed.iv) != IV_LENGTH or len(sealed.auth_tag) != TAG_LENGTH:
        raise AuthenticationFailure("Sealed value has malformed IV or tag")
    try:
        return AESGCM(bytes(key)).decrypt(sealed.iv, sealed.ciphertext + sealed.auth_tag, None)
    except InvalidTag as exc:
        raise AuthenticationFailure("Ciphertext failed authentication") from exc
