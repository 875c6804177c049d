"""Custodial wallet lifecycle: generate, seal, persist, unlock, export.

Each user owns one ``wallets`` row. The private key and its mnemonic are
sealed independently (two IV/tag pairs) under a key derived from the user's
identity attribute and a per-wallet salt. Plaintext keys only ever leave
this module as a ``LocalSigner`` or an explicit export, and never reach a
log line or exception message.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from eth_account import Account
from eth_utils import is_hex_address, to_checksum_address

from .audit import AuditLog
from .config import MIN_KDF_ITERATIONS
from .envelope import Sealed, decrypt, encrypt
from .errors import (
    AuthenticationFailure,
    DecryptionFailure,
    StoreError,
    WalletAccessError,
    WalletExists,
    WalletInconsistent,
    WalletNotFound,
    WalletPersistenceError,
)
from .kdf import derive_key, new_salt
from .signer import LocalSigner
from .store import Row, RowStore

logger = logging.getLogger(__name__)

Account.enable_unaudited_hdwallet_features()

WALLETS_TABLE = "wallets"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    candidate = value
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    return datetime.fromisoformat(candidate).astimezone(timezone.utc)


def normalize_address(address: str) -> str:
    if is_hex_address(address):
        return to_checksum_address(address)
    return address


def lookup_user_by_address(store: RowStore, address: str) -> Optional[str]:
    """Return the user id owning ``address``, if any wallet carries it."""
    for candidate in (normalize_address(address), address.lower()):
        row = store.select_one(WALLETS_TABLE, eq={"public_address": candidate})
        if row is not None:
            return str(row["user_id"])
    return None


@dataclass(frozen=True)
class WalletExport:
    address: str
    private_key: str
    mnemonic: Optional[str]

    def __repr__(self) -> str:
        return f"WalletExport(address={self.address})"


@dataclass(frozen=True)
class MigrationResult:
    address: str
    previous_address: Optional[str]


@dataclass
class SecurityAssessment:
    score: int
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class WalletStatus:
    has_wallet: bool
    is_encrypted: bool
    needs_migration: bool
    address: Optional[str]
    connected_at: Optional[str]

    @property
    def can_regenerate(self) -> bool:
        return self.needs_migration or not self.has_wallet


class WalletCustodyStore:
    def __init__(
        self,
        store: RowStore,
        audit: AuditLog,
        *,
        kdf_iterations: int = MIN_KDF_ITERATIONS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if kdf_iterations < MIN_KDF_ITERATIONS:
            raise ValueError(f"kdf_iterations must be at least {MIN_KDF_ITERATIONS}")
        self.store = store
        self.audit = audit
        self.kdf_iterations = kdf_iterations
        self._clock = clock

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------
    def _load(self, user_id: str) -> Optional[Row]:
        return self.store.select_one(WALLETS_TABLE, eq={"user_id": user_id})

    def _require_sealed(self, user_id: str) -> Row:
        record = self._load(user_id)
        if record is None:
            logger.info("Wallet access requested for user %s with no wallet on file", user_id)
            raise WalletNotFound("Wallet not found")
        if not record.get("encrypted_private_key"):
            logger.warning(
                "Wallet for user %s has address %s but no ciphertext; migration required",
                user_id,
                record.get("public_address"),
            )
            raise WalletInconsistent("Wallet requires migration")
        if not record.get("key_iv") or not record.get("key_auth_tag") or not record.get("encryption_salt"):
            logger.error("Wallet for user %s is missing IV, tag or salt", user_id)
            raise WalletInconsistent("Wallet record incomplete")
        return record

    def _seal_new_wallet(self, user_id: str, identity: str) -> Row:
        account, mnemonic = Account.create_with_mnemonic()
        salt = new_salt()
        key = derive_key(user_id, identity, salt, self.kdf_iterations)
        sealed_key = encrypt(("0x" + bytes(account.key).hex()).encode("utf-8"), key)
        sealed_mnemonic = encrypt(mnemonic.encode("utf-8"), key)
        key_ct, key_iv, key_tag = sealed_key.to_hex()
        mn_ct, mn_iv, mn_tag = sealed_mnemonic.to_hex()
        now = isoformat(self._clock())
        return {
            "user_id": user_id,
            "public_address": account.address,
            "encrypted_private_key": key_ct,
            "key_iv": key_iv,
            "key_auth_tag": key_tag,
            "encrypted_mnemonic": mn_ct,
            "mnemonic_iv": mn_iv,
            "mnemonic_auth_tag": mn_tag,
            "encryption_salt": salt,
            "kdf_iterations": self.kdf_iterations,
            "connected_at": now,
            "updated_at": now,
        }

    def _derive_for(self, record: Row, identity: str) -> bytes:
        iterations = int(record.get("kdf_iterations") or MIN_KDF_ITERATIONS)
        return derive_key(str(record["user_id"]), identity, str(record["encryption_salt"]), iterations)

    def _open_private_key(self, record: Row, key: bytes) -> LocalSigner:
        user_id = record["user_id"]
        try:
            sealed = Sealed.from_hex(
                record["encrypted_private_key"],
                record["key_iv"],
                record["key_auth_tag"],
            )
            plaintext = decrypt(sealed, key)
        except AuthenticationFailure as exc:
            logger.warning(
                "Wallet decryption failed for user %s (identity mismatch or tampered record)",
                user_id,
            )
            raise DecryptionFailure("Wallet decryption failed") from exc
        try:
            account = Account.from_key(plaintext.decode("utf-8"))
        except Exception:
            logger.error("Decrypted key for user %s is not a valid private key", user_id)
            raise WalletInconsistent("Wallet key is unusable") from None
        if account.address.lower() != str(record.get("public_address") or "").lower():
            logger.error("Decrypted key for user %s does not match the address on file", user_id)
            raise WalletInconsistent("Wallet key does not match address")
        return LocalSigner(account)

    def _open_mnemonic(self, record: Row, key: bytes) -> Optional[str]:
        if not (
            record.get("encrypted_mnemonic")
            and record.get("mnemonic_iv")
            and record.get("mnemonic_auth_tag")
        ):
            return None
        try:
            sealed = Sealed.from_hex(
                record["encrypted_mnemonic"],
                record["mnemonic_iv"],
                record["mnemonic_auth_tag"],
            )
            return decrypt(sealed, key).decode("utf-8")
        except AuthenticationFailure:
            logger.warning("Mnemonic for user %s failed authentication; exporting key only", record["user_id"])
            return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_wallet(self, user_id: str, identity: str) -> str:
        existing = self._load(user_id)
        if existing is not None:
            if existing.get("encrypted_private_key"):
                raise WalletExists("User already has an encrypted wallet")
            raise WalletInconsistent("Wallet requires migration")

        record = self._seal_new_wallet(user_id, identity)
        address = record["public_address"]
        try:
            self.store.insert(WALLETS_TABLE, record)
        except StoreError as exc:
            logger.error("Failed to persist wallet for user %s: %s", user_id, exc)
            self.audit.record(
                "wallet_creation_failed",
                user_id=user_id,
                wallet_address=address,
                success=False,
                error="persistence failed",
            )
            raise WalletPersistenceError("Failed to store encrypted wallet") from exc

        self.audit.record("wallet_created", user_id=user_id, wallet_address=address)
        logger.info("Created custodial wallet %s for user %s", address, user_id)
        return address

    def ensure_wallet(self, user_id: str, identity: str) -> tuple[str, bool]:
        """Return ``(address, created)``, creating the wallet on first use."""
        existing = self._load(user_id)
        if existing is not None:
            if existing.get("encrypted_private_key"):
                return str(existing["public_address"]), False
            raise WalletInconsistent("Wallet requires migration")
        return self.create_wallet(user_id, identity), True

    def migrate_wallet(self, user_id: str, identity: str) -> MigrationResult:
        """Replace a legacy (address-only) record with a freshly sealed wallet."""
        existing = self._load(user_id)
        if existing is None:
            raise WalletNotFound("Wallet not found")
        if existing.get("encrypted_private_key"):
            raise WalletExists("Encrypted wallet exists; rotation would orphan its balance")

        previous = existing.get("public_address")
        record = self._seal_new_wallet(user_id, identity)
        try:
            updated = self.store.update(
                WALLETS_TABLE,
                record,
                eq={"user_id": user_id, "encrypted_private_key": existing.get("encrypted_private_key")},
            )
        except StoreError as exc:
            updated = []
            logger.error("Failed to persist migrated wallet for user %s: %s", user_id, exc)
        if not updated:
            self.audit.record(
                "wallet_regeneration_failed",
                user_id=user_id,
                wallet_address=previous,
                success=False,
                error="persistence failed",
            )
            raise WalletPersistenceError("Failed to store migrated wallet")

        address = record["public_address"]
        self.audit.record(
            "wallet_regenerated",
            user_id=user_id,
            wallet_address=address,
            metadata={"previous_address": previous},
        )
        logger.warning("Migrated legacy wallet for user %s: %s -> %s", user_id, previous, address)
        return MigrationResult(address=address, previous_address=previous)

    # ------------------------------------------------------------------
    # Key access
    # ------------------------------------------------------------------
    def unlock_wallet(self, user_id: str, identity: str) -> LocalSigner:
        try:
            record = self._require_sealed(user_id)
            signer = self._open_private_key(record, self._derive_for(record, identity))
        except WalletAccessError as exc:
            self.audit.record(
                "wallet_unlock_failed",
                user_id=user_id,
                success=False,
                error=type(exc).__name__,
            )
            raise
        self.audit.record("wallet_unlocked", user_id=user_id, wallet_address=signer.address)
        return signer

    @contextmanager
    def signing_session(self, user_id: str, identity: str) -> Iterator[LocalSigner]:
        """Yield a signer for one transaction; the caller must not keep it."""
        signer: Optional[LocalSigner] = self.unlock_wallet(user_id, identity)
        try:
            yield signer
        finally:
            signer = None

    def export_wallet(self, user_id: str, identity: str) -> WalletExport:
        address: Optional[str] = None
        try:
            record = self._require_sealed(user_id)
            address = record.get("public_address")
            key = self._derive_for(record, identity)
            signer = self._open_private_key(record, key)
            mnemonic = self._open_mnemonic(record, key)
        except WalletAccessError as exc:
            self.audit.record(
                "wallet_export_failed",
                user_id=user_id,
                wallet_address=address,
                success=False,
                error=type(exc).__name__,
            )
            raise
        self.audit.record("wallet_exported", user_id=user_id, wallet_address=signer.address)
        logger.info("Exported wallet %s for user %s", signer.address, user_id)
        return WalletExport(
            address=signer.address,
            private_key="0x" + bytes(signer.account.key).hex(),
            mnemonic=mnemonic,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def wallet_status(self, user_id: str) -> WalletStatus:
        record = self._load(user_id)
        has_wallet = bool(record and record.get("public_address"))
        is_encrypted = bool(record and record.get("encrypted_private_key"))
        return WalletStatus(
            has_wallet=has_wallet,
            is_encrypted=is_encrypted,
            needs_migration=has_wallet and not is_encrypted,
            address=record.get("public_address") if record else None,
            connected_at=record.get("connected_at") if record else None,
        )

    def assess_security(self, public_address: str) -> SecurityAssessment:
        """Advisory score for a wallet; never used to gate access."""
        assessment = SecurityAssessment(score=100)
        record: Optional[Dict[str, Any]] = None
        for candidate in (normalize_address(public_address), public_address.lower()):
            record = self.store.select_one(WALLETS_TABLE, eq={"public_address": candidate})
            if record is not None:
                break

        if record is None:
            assessment.score -= 50
            assessment.issues.append("Wallet not found in system")
            assessment.recommendations.append("Register wallet with the platform for monitoring")
            return assessment

        if record.get("encrypted_private_key"):
            assessment.recommendations.append("Private key sealed with AES-256-GCM")
        else:
            assessment.score -= 30
            assessment.issues.append("Wallet not properly encrypted")
            assessment.recommendations.append("Migrate wallet to encrypted custody")

        if record.get("encryption_salt"):
            assessment.recommendations.append("Key derivation uses a per-wallet salt")
        else:
            assessment.score -= 20
            assessment.issues.append("No encryption salt found")

        connected_at = record.get("connected_at")
        if connected_at:
            try:
                age_days = (self._clock() - parse_iso8601(str(connected_at))).total_seconds() / 86400
            except ValueError:
                age_days = None
            if age_days is None:
                assessment.issues.append("Wallet creation time unreadable")
            elif age_days > 30:
                assessment.recommendations.append("Wallet has been stable for over 30 days")
            elif age_days > 7:
                assessment.recommendations.append("Wallet has been stable for over a week")
            else:
                assessment.recommendations.append("New wallet: ensure an export backup exists")

        assessment.score = max(0, assessment.score)
        return assessment
