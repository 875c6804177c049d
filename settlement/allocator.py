"""Split a cart into per-vendor payment instructions.

All arithmetic happens on integer token base units so the fee shown at
checkout is exactly what the contract computes:
``fee = subtotal * platformFeeBps / 10000`` with integer (floor) division.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from eth_utils import to_checksum_address

from .errors import AllocationError, FeeRateMismatch, VendorIneligible
from .store import RowStore

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
BPS_DENOMINATOR = 10_000


def to_base_units(amount: Decimal, decimals: int) -> int:
    try:
        scaled = Decimal(amount).scaleb(decimals)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise AllocationError(f"Invalid amount {amount!r}") from exc
    if not scaled.is_finite() or scaled < 0:
        raise AllocationError(f"Invalid amount {amount!r}")
    if scaled != scaled.to_integral_value():
        raise AllocationError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(int(units)).scaleb(-decimals)


def platform_fee_units(subtotal_units: int, fee_bps: int) -> int:
    return subtotal_units * fee_bps // BPS_DENOMINATOR


def to_unix_seconds(booking_date: Optional[datetime]) -> int:
    """Unix seconds for the contract; naive datetimes are taken as UTC."""
    if booking_date is None:
        return 0
    if booking_date.tzinfo is None:
        booking_date = booking_date.replace(tzinfo=timezone.utc)
    return int(booking_date.timestamp())


@dataclass(frozen=True)
class CartItem:
    vendor_id: str
    vendor_address: str
    unit_price: Decimal
    quantity: int
    booking_id: str
    service_name: str = ""
    booking_date: Optional[datetime] = None


@dataclass(frozen=True)
class AllocationLine:
    vendor_id: str
    vendor_address: str
    amount_units: int
    booking_id: str
    service_name: str
    booking_timestamp: int


@dataclass(frozen=True)
class VendorInstruction:
    vendor_id: str
    vendor_address: str
    amount: Decimal
    amount_units: int
    booking_ids: Tuple[str, ...]


@dataclass(frozen=True)
class Allocation:
    instructions: Tuple[VendorInstruction, ...]
    lines: Tuple[AllocationLine, ...]
    subtotal: Decimal
    platform_fee: Decimal
    total: Decimal
    subtotal_units: int
    platform_fee_units: int
    total_units: int
    fee_bps: int
    decimals: int


@dataclass
class _VendorGroup:
    items: List[CartItem] = field(default_factory=list)


class PaymentAllocator:
    def __init__(
        self,
        store: RowStore,
        *,
        fee_bps: int,
        decimals: int,
        whitelist: Optional[Callable[[str], bool]] = None,
    ) -> None:
        if fee_bps < 0 or fee_bps > BPS_DENOMINATOR:
            raise ValueError("fee_bps must be between 0 and 10000")
        self.store = store
        self.fee_bps = fee_bps
        self.decimals = decimals
        self.whitelist = whitelist

    def check_fee_rate(self, onchain_bps: int) -> None:
        if int(onchain_bps) != self.fee_bps:
            raise FeeRateMismatch(self.fee_bps, int(onchain_bps))

    def _eligible_address(self, vendor_id: str, items: Sequence[CartItem]) -> str:
        vendor = self.store.select_one("vendors", eq={"id": vendor_id})
        if vendor is None:
            raise VendorIneligible(vendor_id, "vendor not found")
        if not vendor.get("is_verified"):
            raise VendorIneligible(vendor_id, "vendor is not verified")
        on_file = vendor.get("wallet_address")
        if not on_file:
            raise VendorIneligible(vendor_id, "vendor has no wallet address configured")
        if not ADDRESS_PATTERN.match(str(on_file)):
            raise VendorIneligible(vendor_id, "vendor has invalid wallet address format")
        for item in items:
            asserted = item.vendor_address or ""
            if not ADDRESS_PATTERN.match(asserted):
                raise VendorIneligible(vendor_id, "payment address has invalid format")
            if asserted.lower() != str(on_file).lower():
                raise VendorIneligible(vendor_id, "payment address does not match vendor on file")
        address = to_checksum_address(str(on_file))
        if self.whitelist is not None and not self.whitelist(address):
            raise VendorIneligible(vendor_id, "vendor address is not whitelisted on-chain")
        return address

    def _line_units(self, item: CartItem) -> int:
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            raise AllocationError(f"Invalid quantity {item.quantity!r} for booking {item.booking_id}")
        return to_base_units(Decimal(item.unit_price), self.decimals) * item.quantity

    def allocate(self, items: Sequence[CartItem]) -> Allocation:
        if not items:
            raise AllocationError("Cart is empty")

        groups: Dict[str, _VendorGroup] = {}
        for item in items:
            groups.setdefault(item.vendor_id, _VendorGroup()).items.append(item)

        addresses: Dict[str, str] = {}
        for vendor_id, group in groups.items():
            addresses[vendor_id] = self._eligible_address(vendor_id, group.items)

        lines: List[AllocationLine] = []
        vendor_units: Dict[str, int] = {vendor_id: 0 for vendor_id in groups}
        for item in items:
            units = self._line_units(item)
            vendor_units[item.vendor_id] += units
            lines.append(
                AllocationLine(
                    vendor_id=item.vendor_id,
                    vendor_address=addresses[item.vendor_id],
                    amount_units=units,
                    booking_id=item.booking_id,
                    service_name=item.service_name,
                    booking_timestamp=to_unix_seconds(item.booking_date),
                )
            )

        instructions = tuple(
            VendorInstruction(
                vendor_id=vendor_id,
                vendor_address=addresses[vendor_id],
                amount=from_base_units(vendor_units[vendor_id], self.decimals),
                amount_units=vendor_units[vendor_id],
                booking_ids=tuple(item.booking_id for item in group.items),
            )
            for vendor_id, group in groups.items()
        )

        subtotal_units = sum(vendor_units.values())
        fee_units = platform_fee_units(subtotal_units, self.fee_bps)
        total_units = subtotal_units + fee_units
        logger.debug(
            "Allocated %s vendor(s): subtotal=%s fee=%s total=%s (base units)",
            len(instructions),
            subtotal_units,
            fee_units,
            total_units,
        )
        return Allocation(
            instructions=instructions,
            lines=tuple(lines),
            subtotal=from_base_units(subtotal_units, self.decimals),
            platform_fee=from_base_units(fee_units, self.decimals),
            total=from_base_units(total_units, self.decimals),
            subtotal_units=subtotal_units,
            platform_fee_units=fee_units,
            total_units=total_units,
            fee_bps=self.fee_bps,
            decimals=self.decimals,
        )
