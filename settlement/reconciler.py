"""Replays the ticketing contract's event log into the order/booking ledger."""
from __future__ import annotations

import logging
import socket
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .allocator import from_base_units
from .chain import ORDER_CREATED, TICKET_MINTED, ChainLogReader, OrderCreated, TicketMinted
from .cursor import SyncCursorStore
from .custody import isoformat, lookup_user_by_address, utcnow
from .errors import DecodeError, TransientFetchError
from .leases import SyncLeaseStore
from .store import Row, RowStore

logger = logging.getLogger(__name__)

ORDERS_TABLE = "orders"
BOOKINGS_TABLE = "bookings"
ORDER_ITEMS_TABLE = "order_items"


def order_key(order_id: int) -> str:
    return f"contract_{order_id}"


def format_amount(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


@dataclass
class SyncSummary:
    contract_address: str
    status: str = "ok"
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    head: Optional[int] = None
    orders_created: int = 0
    duplicate_orders: int = 0
    unresolved_buyers: int = 0
    tickets_attached: int = 0
    duplicate_tickets: int = 0
    unmatched_tickets: int = 0
    malformed_events: int = 0
    message: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.orders_created + self.tickets_attached

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["processed"] = self.processed
        return payload


class LedgerReconciler:
    """Single entry point for chain-to-ledger sync, whatever triggers it.

    Order of a run: lease, cursor, head, fetch ``[cursor+1, head]``, apply
    ``OrderCreated`` then ``TicketMinted`` events one atomic write at a time,
    advance the cursor, release the lease. Any fatal error leaves the cursor
    where it was; every per-event write is idempotent so the retry is safe.
    """

    def __init__(
        self,
        store: RowStore,
        reader: ChainLogReader,
        *,
        contract_address: str,
        token_decimals: int,
        cursor: Optional[SyncCursorStore] = None,
        leases: Optional[SyncLeaseStore] = None,
        confirmations: int = 0,
        max_block_span: Optional[int] = None,
        lease_seconds: int = 300,
        booking_resolver: Optional[Callable[[int], Optional[int]]] = None,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if confirmations < 0:
            raise ValueError("confirmations must be non-negative")
        if max_block_span is not None and max_block_span <= 0:
            raise ValueError("max_block_span must be positive")
        self.store = store
        self.reader = reader
        self.contract_address = contract_address
        self.token_decimals = token_decimals
        self.cursor = cursor or SyncCursorStore(store, clock=clock)
        self.leases = leases or SyncLeaseStore(store, clock=clock)
        self.confirmations = confirmations
        self.max_block_span = max_block_span
        self.lease_seconds = lease_seconds
        self.booking_resolver = booking_resolver
        self.owner = owner or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def run_once(self) -> SyncSummary:
        self.leases.acquire(self.contract_address, self.owner, self.lease_seconds)
        try:
            return self._sync()
        finally:
            self.leases.release(self.contract_address, self.owner)

    def run_forever(self, interval_seconds: int) -> None:
        logger.info(
            "Starting sync loop for %s with interval %s seconds",
            self.contract_address,
            interval_seconds,
        )
        try:
            while True:
                start = time.time()
                try:
                    self.run_once()
                except Exception as exc:
                    logger.exception("Sync run for %s failed: %s", self.contract_address, exc)
                elapsed = time.time() - start
                time.sleep(max(interval_seconds - elapsed, 0))
        except KeyboardInterrupt:
            logger.info("Sync loop stopped via keyboard interrupt")

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------
    def _sync(self) -> SyncSummary:
        summary = SyncSummary(contract_address=self.contract_address)
        last_block = self.cursor.get(self.contract_address)
        try:
            head = self.reader.latest_block()
        except TransientFetchError as exc:
            return self._skipped(summary, exc)

        summary.head = head
        safe_head = head - self.confirmations
        from_block = last_block + 1
        if from_block > safe_head:
            summary.status = "noop"
            summary.message = f"cursor {last_block} is at or past safe head {safe_head}"
            logger.debug("Sync for %s: %s", self.contract_address, summary.message)
            return summary

        to_block = safe_head
        if self.max_block_span is not None:
            to_block = min(to_block, from_block + self.max_block_span - 1)
        summary.from_block = from_block
        summary.to_block = to_block
        logger.info("Syncing %s blocks %s-%s (head %s)", self.contract_address, from_block, to_block, head)

        try:
            orders = self.reader.fetch_event_batch(self.contract_address, ORDER_CREATED, from_block, to_block)
            mints = self.reader.fetch_event_batch(self.contract_address, TICKET_MINTED, from_block, to_block)
        except TransientFetchError as exc:
            return self._skipped(summary, exc)

        if orders.rejected:
            first = orders.rejected[0]
            logger.error(
                "Aborting sync of %s: %s malformed OrderCreated log(s), first in tx %s: %s",
                self.contract_address,
                len(orders.rejected),
                first.transaction_hash,
                first.reason,
            )
            raise DecodeError(f"Malformed OrderCreated log at block {first.block_number}: {first.reason}")
        for rejected in mints.rejected:
            summary.malformed_events += 1
            logger.warning(
                "Skipping malformed TicketMinted log in tx %s (block %s): %s",
                rejected.transaction_hash,
                rejected.block_number,
                rejected.reason,
            )

        try:
            for order_event in orders.events:
                with self.store.atomic():
                    self._apply_order_created(order_event, summary)
            for mint_event in mints.events:
                # chain reads stay outside the store transaction
                chain_booking_id = self._resolve_chain_booking_id(mint_event.token_id)
                with self.store.atomic():
                    self._apply_ticket_minted(mint_event, chain_booking_id, summary)
        except TransientFetchError as exc:
            return self._skipped(summary, exc)

        self.cursor.advance(self.contract_address, to_block)
        logger.info(
            "Synced %s blocks %s-%s: %s order(s) created, %s ticket(s) attached, "
            "%s duplicate order(s), %s unresolved buyer(s), %s malformed",
            self.contract_address,
            from_block,
            to_block,
            summary.orders_created,
            summary.tickets_attached,
            summary.duplicate_orders,
            summary.unresolved_buyers,
            summary.malformed_events,
        )
        return summary

    def _skipped(self, summary: SyncSummary, exc: Exception) -> SyncSummary:
        summary.status = "skipped"
        summary.message = str(exc)
        logger.warning("Sync for %s skipped, cursor left unchanged: %s", self.contract_address, exc)
        return summary

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------
    def _apply_order_created(self, event: OrderCreated, summary: SyncSummary) -> None:
        key = order_key(event.order_id)
        if self.store.select_one(ORDERS_TABLE, eq={"transaction_hash": key}) is not None:
            summary.duplicate_orders += 1
            logger.debug("Order %s already recorded", key)
            return

        user_id = lookup_user_by_address(self.store, event.buyer)
        if user_id is None:
            summary.unresolved_buyers += 1
            logger.warning("No wallet on file for buyer %s of on-chain order %s", event.buyer, event.order_id)
            return

        now = isoformat(self._clock())
        self.store.insert(
            ORDERS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "total_amount": format_amount(from_base_units(event.total_amount, self.token_decimals)),
                "platform_fee_total": format_amount(from_base_units(event.platform_fee, self.token_decimals)),
                "wallet_address": event.buyer,
                "transaction_hash": key,
                "chain_transaction_hash": event.transaction_hash,
                "block_number": event.block_number,
                "status": "confirmed",
                "nft_batch_contract_address": self.contract_address,
                "nft_batch_id": str(event.order_id),
                "created_at": now,
                "updated_at": now,
            },
        )
        summary.orders_created += 1
        logger.info("Recorded on-chain order %s for user %s", event.order_id, user_id)

    def _resolve_chain_booking_id(self, token_id: int) -> Optional[int]:
        if self.booking_resolver is None:
            return None
        return self.reader.call(f"getTicketDetails({token_id})", self.booking_resolver, token_id)

    def _claim_booking(self, order: Row, chain_booking_id: Optional[int]) -> Optional[Row]:
        items = self.store.select(ORDER_ITEMS_TABLE, eq={"order_id": order["id"]}, order_by="position")
        if chain_booking_id is not None:
            for item in items:
                if item.get("chain_booking_id") is not None and int(item["chain_booking_id"]) == chain_booking_id:
                    booking = self.store.select_one(BOOKINGS_TABLE, eq={"id": item.get("booking_id")})
                    if booking and booking.get("status") == "pending" and not booking.get("nft_token_id"):
                        return booking
                    return None

        for item in items:
            booking = self.store.select_one(BOOKINGS_TABLE, eq={"id": item.get("booking_id")})
            if booking and booking.get("status") == "pending" and not booking.get("nft_token_id"):
                return booking
        return None

    def _apply_ticket_minted(
        self,
        event: TicketMinted,
        chain_booking_id: Optional[int],
        summary: SyncSummary,
    ) -> None:
        token = str(event.token_id)
        attached = self.store.select(
            BOOKINGS_TABLE,
            eq={"nft_contract_address": self.contract_address, "nft_token_id": token},
            limit=1,
        )
        if attached:
            summary.duplicate_tickets += 1
            logger.debug("Token %s already attached to booking %s", token, attached[0].get("id"))
            return

        order = self.store.select_one(
            ORDERS_TABLE,
            eq={"transaction_hash": order_key(event.order_id), "nft_batch_contract_address": self.contract_address},
        )
        if order is None:
            summary.unmatched_tickets += 1
            logger.info("TicketMinted %s references unknown order %s", token, event.order_id)
            return

        booking = self._claim_booking(order, chain_booking_id)
        if booking is None:
            summary.unmatched_tickets += 1
            logger.warning("No pending booking left on order %s for token %s", order["id"], token)
            return

        updated = self.store.update(
            BOOKINGS_TABLE,
            {
                "nft_contract_address": self.contract_address,
                "nft_token_id": token,
                "status": "confirmed",
                "updated_at": isoformat(self._clock()),
            },
            eq={"id": booking["id"], "status": "pending"},
        )
        if updated:
            summary.tickets_attached += 1
            logger.info("Attached token %s to booking %s", token, booking["id"])
        else:
            summary.duplicate_tickets += 1
