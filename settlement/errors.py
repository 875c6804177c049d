"""Exception hierarchy shared by custody, sync and checkout code."""
from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    """Base class; ``status_code`` is what the HTTP adapter reports."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class StoreError(SettlementError):
    """Raised when the relational store rejects a read or write."""


class WalletAccessError(SettlementError):
    """Any failure to reach a user's signing key.

    Subclasses stay distinct for logs, but callers outside the service only
    ever see ``public_message``.
    """

    status_code = 403
    public_message = "Unable to access wallet"


class AuthenticationFailure(WalletAccessError):
    """Ciphertext did not authenticate under the supplied key."""


class DecryptionFailure(AuthenticationFailure):
    """The identity attribute does not match the one used at creation."""


class WalletNotFound(WalletAccessError):
    pass


class WalletInconsistent(WalletAccessError):
    """Address on file without ciphertext (legacy record awaiting migration)."""


class WalletExists(SettlementError):
    status_code = 409


class WalletPersistenceError(SettlementError):
    pass


class TransientFetchError(SettlementError):
    """Retryable RPC/network failure."""

    status_code = 503


class DecodeError(SettlementError):
    """Log data does not match the expected event ABI."""

    status_code = 502


class VendorIneligible(SettlementError):
    status_code = 422

    def __init__(self, vendor_id: str, reason: str) -> None:
        super().__init__(f"Vendor {vendor_id} cannot receive payments: {reason}")
        self.vendor_id = vendor_id
        self.reason = reason


class AllocationError(SettlementError):
    status_code = 422


class FeeRateMismatch(SettlementError):
    status_code = 409

    def __init__(self, expected_bps: int, onchain_bps: int) -> None:
        super().__init__(
            f"Platform fee mismatch: allocator uses {expected_bps} bps, contract enforces {onchain_bps} bps"
        )
        self.expected_bps = expected_bps
        self.onchain_bps = onchain_bps


class CursorConflict(SettlementError):
    """Another run holds the sync lease, or the cursor moved underneath us."""

    status_code = 409


class RateLimited(SettlementError):
    status_code = 429


class InsufficientFunds(SettlementError):
    """Buyer wallet cannot cover gas, token balance, or allowance."""

    status_code = 402
