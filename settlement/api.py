"""HTTP API for custodial wallets, checkout quotes and sync triggers."""
from __future__ import annotations

import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .allocator import Allocation, CartItem, PaymentAllocator, from_base_units
from .chain import TRANSIENT_ERRORS
from .config import SettlementSettings
from .custody import WalletCustodyStore, isoformat, parse_iso8601, utcnow
from .errors import SettlementError, TransientFetchError, WalletAccessError
from .payment_client import PaymentClient
from .ratelimit import RateLimiter
from .reconciler import LedgerReconciler, format_amount
from .store import RowStore

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "sessions"
TX_HASH_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_session(
    store: RowStore,
    *,
    user_id: str,
    email: str,
    ttl_seconds: int = 3600,
    now: Optional[datetime] = None,
) -> str:
    """Create a bearer session for ``user_id`` and return the plaintext token."""
    token = secrets.token_urlsafe(32)
    issued = now or utcnow()
    store.insert(
        SESSIONS_TABLE,
        {
            "token_hash": hash_session_token(token),
            "user_id": user_id,
            "email": email,
            "issued_at": isoformat(issued),
            "expires_at": isoformat(issued + timedelta(seconds=ttl_seconds)),
        },
    )
    return token


class SessionUser(BaseModel):
    user_id: str
    email: str


class CartItemPayload(BaseModel):
    vendor_id: str = Field(min_length=1, max_length=128)
    vendor_address: str = Field(min_length=1, max_length=64)
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1, le=1000)
    booking_id: str = Field(min_length=1, max_length=128)
    service_name: str = Field(default="", max_length=256)
    booking_date: Optional[datetime] = None

    def to_cart_item(self) -> CartItem:
        return CartItem(
            vendor_id=self.vendor_id,
            vendor_address=self.vendor_address,
            unit_price=self.unit_price,
            quantity=self.quantity,
            booking_id=self.booking_id,
            service_name=self.service_name,
            booking_date=self.booking_date,
        )


class QuotePayload(BaseModel):
    items: List[CartItemPayload]

    @field_validator("items")
    @classmethod
    def validate_items(cls, value: List[CartItemPayload]) -> List[CartItemPayload]:
        if not value:
            raise ValueError("items must not be empty")
        if len(value) > 100:
            raise ValueError("items limit is 100 entries")
        return value


class VendorInstructionRecord(BaseModel):
    vendor_id: str
    vendor_address: str
    amount: str
    amount_units: str
    booking_ids: List[str]


class QuoteResponse(BaseModel):
    instructions: List[VendorInstructionRecord]
    subtotal: str
    platform_fee: str
    total: str
    total_units: str
    fee_bps: int


class EnsureWalletResponse(BaseModel):
    address: str
    created: bool


class WalletStatusResponse(BaseModel):
    has_wallet: bool
    is_encrypted: bool
    needs_migration: bool
    can_regenerate: bool
    address: Optional[str]
    connected_at: Optional[str]


class MigrateWalletResponse(BaseModel):
    address: str
    previous_address: Optional[str]


class ExportWalletResponse(BaseModel):
    address: str
    private_key: str
    mnemonic: Optional[str]
    remaining_exports: int


class SecurityResponse(BaseModel):
    address: str
    score: int
    issues: List[str]
    recommendations: List[str]


class SubmitOrderResponse(BaseModel):
    transaction_hash: Optional[str]
    dry_run: bool
    quote: QuoteResponse


class TransactionStatusResponse(BaseModel):
    transaction_hash: str
    status: str
    block_number: Optional[int]
    confirmations: int


class WalletBalanceResponse(BaseModel):
    address: str
    eth_balance: str
    token_balance: Optional[str]


def _quote_response(allocation: Allocation) -> QuoteResponse:
    return QuoteResponse(
        instructions=[
            VendorInstructionRecord(
                vendor_id=instruction.vendor_id,
                vendor_address=instruction.vendor_address,
                amount=str(instruction.amount),
                amount_units=str(instruction.amount_units),
                booking_ids=list(instruction.booking_ids),
            )
            for instruction in allocation.instructions
        ],
        subtotal=str(allocation.subtotal),
        platform_fee=str(allocation.platform_fee),
        total=str(allocation.total),
        total_units=str(allocation.total_units),
        fee_bps=allocation.fee_bps,
    )


def create_app(
    store: RowStore,
    custody: WalletCustodyStore,
    allocator: PaymentAllocator,
    settings: SettlementSettings,
    *,
    reconciler: Optional[LedgerReconciler] = None,
    onchain_fee_bps: Optional[Callable[[], int]] = None,
    payment_client: Optional[PaymentClient] = None,
    export_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    app = FastAPI(title="Ticket Settlement", version="1.0.0")

    limiter = export_limiter or RateLimiter(
        store,
        limit=settings.wallet_export_rate_limit,
        window_seconds=settings.wallet_export_rate_window_seconds,
    )

    def _provided_token(request: Request) -> Optional[str]:
        return request.headers.get("X-Admin-Token")

    def _provided_session_token(request: Request) -> Optional[str]:
        auth = request.headers.get("Authorization") or ""
        if auth.lower().startswith("bearer "):
            candidate = auth.split(" ", 1)[1].strip()
            if candidate:
                return candidate
        return None

    async def require_admin(request: Request) -> None:
        token = settings.api_admin_token
        if not token:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")
        if not secrets.compare_digest(_provided_token(request) or "", token):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")

    async def require_session(request: Request) -> SessionUser:
        provided = _provided_session_token(request)
        if not provided:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session token required")
        row = store.select_one(SESSIONS_TABLE, eq={"token_hash": hash_session_token(provided)})
        if row is None or not row.get("user_id") or not row.get("email"):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session token required")
        expires_at = row.get("expires_at")
        if expires_at:
            try:
                expired = parse_iso8601(str(expires_at)) <= utcnow()
            except ValueError:
                expired = True
            if expired:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")
        return SessionUser(user_id=str(row["user_id"]), email=str(row["email"]))

    @app.exception_handler(WalletAccessError)
    async def wallet_access_error_handler(_: Request, exc: WalletAccessError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(_: Request, exc: SettlementError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": isoformat(utcnow())}

    @app.post("/wallet/ensure", response_model=EnsureWalletResponse)
    def ensure_wallet(user: SessionUser = Depends(require_session)) -> EnsureWalletResponse:
        address, created = custody.ensure_wallet(user.user_id, user.email)
        return EnsureWalletResponse(address=address, created=created)

    @app.get("/wallet/status", response_model=WalletStatusResponse)
    def wallet_status(user: SessionUser = Depends(require_session)) -> WalletStatusResponse:
        current = custody.wallet_status(user.user_id)
        return WalletStatusResponse(
            has_wallet=current.has_wallet,
            is_encrypted=current.is_encrypted,
            needs_migration=current.needs_migration,
            can_regenerate=current.can_regenerate,
            address=current.address,
            connected_at=current.connected_at,
        )

    @app.post("/wallet/migrate", response_model=MigrateWalletResponse)
    def migrate_wallet(user: SessionUser = Depends(require_session)) -> MigrateWalletResponse:
        result = custody.migrate_wallet(user.user_id, user.email)
        return MigrateWalletResponse(address=result.address, previous_address=result.previous_address)

    @app.post("/wallet/export", response_model=ExportWalletResponse)
    def export_wallet(user: SessionUser = Depends(require_session)) -> ExportWalletResponse:
        remaining = limiter.hit(f"wallet_export:{user.user_id}")
        exported = custody.export_wallet(user.user_id, user.email)
        return ExportWalletResponse(
            address=exported.address,
            private_key=exported.private_key,
            mnemonic=exported.mnemonic,
            remaining_exports=remaining,
        )

    @app.get("/wallet/security", response_model=SecurityResponse)
    def wallet_security(user: SessionUser = Depends(require_session)) -> SecurityResponse:
        current = custody.wallet_status(user.user_id)
        if not current.address:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No wallet on file")
        assessment = custody.assess_security(current.address)
        return SecurityResponse(
            address=current.address,
            score=assessment.score,
            issues=assessment.issues,
            recommendations=assessment.recommendations,
        )

    @app.get("/wallet/balance", response_model=WalletBalanceResponse)
    def wallet_balance(user: SessionUser = Depends(require_session)) -> WalletBalanceResponse:
        if payment_client is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are not configured")
        current = custody.wallet_status(user.user_id)
        if not current.address:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No wallet on file")
        balances = payment_client.wallet_balances(current.address)
        token_balance = None
        if balances.token_units is not None:
            token_balance = format_amount(from_base_units(balances.token_units, allocator.decimals))
        return WalletBalanceResponse(
            address=balances.address,
            eth_balance=format_amount(from_base_units(balances.eth_wei, 18)),
            token_balance=token_balance,
        )

    def _allocate(payload: QuotePayload) -> Allocation:
        if onchain_fee_bps is not None:
            try:
                onchain = onchain_fee_bps()
            except TRANSIENT_ERRORS as exc:
                logger.warning("platformFeeBps read failed: %s", exc)
                raise TransientFetchError("Unable to read the on-chain platform fee") from exc
            allocator.check_fee_rate(onchain)
        try:
            return allocator.allocate([item.to_cart_item() for item in payload.items])
        except TRANSIENT_ERRORS as exc:
            logger.warning("Vendor whitelist lookup failed: %s", exc)
            raise TransientFetchError("Unable to verify vendor eligibility on-chain") from exc

    @app.post("/checkout/quote", response_model=QuoteResponse)
    def checkout_quote(
        payload: QuotePayload,
        _: SessionUser = Depends(require_session),
    ) -> QuoteResponse:
        return _quote_response(_allocate(payload))

    @app.post("/checkout/submit", response_model=SubmitOrderResponse)
    def checkout_submit(
        payload: QuotePayload,
        user: SessionUser = Depends(require_session),
    ) -> SubmitOrderResponse:
        if payment_client is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are not configured")
        allocation = _allocate(payload)
        try:
            tx_hash = payment_client.submit_order(custody, user.user_id, user.email, allocation)
        except TRANSIENT_ERRORS as exc:
            logger.warning("createOrder submission for user %s failed: %s", user.user_id, exc)
            raise TransientFetchError("Unable to submit the order transaction") from exc
        return SubmitOrderResponse(
            transaction_hash=tx_hash,
            dry_run=payment_client.dry_run,
            quote=_quote_response(allocation),
        )

    @app.get("/checkout/verify/{tx_hash}", response_model=TransactionStatusResponse)
    def checkout_verify(
        tx_hash: str,
        _: SessionUser = Depends(require_session),
    ) -> TransactionStatusResponse:
        if payment_client is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are not configured")
        if not TX_HASH_PATTERN.match(tx_hash):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid transaction hash")
        result = payment_client.verify_transaction(tx_hash)
        return TransactionStatusResponse(
            transaction_hash=result.transaction_hash,
            status=result.status,
            block_number=result.block_number,
            confirmations=result.confirmations,
        )

    @app.post("/admin/sync")
    def admin_sync(_: Any = Depends(require_admin)) -> Dict[str, Any]:
        if reconciler is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync is not configured")
        summary = reconciler.run_once()
        return summary.as_dict()

    return app


def run_api(app: FastAPI, settings: SettlementSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.install_signal_handlers = False
    server.run()


__all__ = ["create_app", "hash_session_token", "issue_session", "run_api"]
