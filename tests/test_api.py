from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
import requests
from eth_account import Account
from eth_utils import to_checksum_address

from settlement.allocator import PaymentAllocator
from settlement.api import create_app, hash_session_token, issue_session
from settlement.audit import AuditLog
from settlement.custody import WalletCustodyStore
from settlement.errors import CursorConflict
from settlement.payment_client import TransactionStatus, WalletBalances
from settlement.reconciler import SyncSummary
from settlement.store import JsonRowStore

VENDOR = to_checksum_address("0x" + "a1" * 20)


@pytest.fixture()
def anyio_backend():
    return "asyncio"


def build_settings(**overrides):
    defaults = dict(
        api_admin_token="secret",
        wallet_export_rate_limit=2,
        wallet_export_rate_window_seconds=3600,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


class FakeReconciler:
    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    def run_once(self):
        self.calls += 1
        if self.error:
            raise self.error
        return SyncSummary(contract_address="0xticket", from_block=1, to_block=10, head=10, orders_created=2)


class FakePaymentClient:
    dry_run = True

    def __init__(self):
        self.submitted = []

    def submit_order(self, custody, user_id, identity, allocation):
        with custody.signing_session(user_id, identity) as signer:
            self.submitted.append((signer.address, allocation.total_units))
        return None

    def verify_transaction(self, tx_hash):
        if tx_hash.endswith("aa"):
            return TransactionStatus(transaction_hash=tx_hash, status="confirmed", block_number=9, confirmations=2)
        return TransactionStatus(transaction_hash=tx_hash, status="pending")

    def wallet_balances(self, address):
        return WalletBalances(address=address, eth_wei=5 * 10**15, token_units=125 * 10**17)


def build_app(tmp_path: Path, **kwargs):
    store = JsonRowStore(tmp_path / "store.json")
    store.insert("vendors", {"id": "v-a", "wallet_address": VENDOR, "is_verified": True})
    custody = WalletCustodyStore(store, AuditLog(tmp_path / "audit.log"))
    allocator = PaymentAllocator(store, fee_bps=50, decimals=18)
    settings = kwargs.pop("settings", build_settings())
    app = create_app(store, custody, allocator, settings, **kwargs)
    token = issue_session(store, user_id="user-1", email="alice@example.com")
    return app, store, {"Authorization": f"Bearer {token}"}


def client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.anyio("asyncio")
async def test_health(tmp_path: Path):
    app, _, _ = build_app(tmp_path)
    async with client(app) as http:
        resp = await http.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.anyio("asyncio")
async def test_wallet_routes_require_session(tmp_path: Path):
    app, _, _ = build_app(tmp_path)
    async with client(app) as http:
        missing = await http.post("/wallet/ensure")
        bogus = await http.get("/wallet/status", headers={"Authorization": "Bearer nope"})
    assert missing.status_code == 401
    assert bogus.status_code == 401


def test_sessions_are_stored_hashed(tmp_path: Path):
    _, store, headers = build_app(tmp_path)
    token = headers["Authorization"].split(" ", 1)[1]

    row = store.select_one("sessions", eq={"token_hash": hash_session_token(token)})
    assert row["user_id"] == "user-1"
    assert token not in (tmp_path / "store.json").read_text()


@pytest.mark.anyio("asyncio")
async def test_ensure_status_and_export_flow(tmp_path: Path):
    app, _, headers = build_app(tmp_path)
    async with client(app) as http:
        created = await http.post("/wallet/ensure", headers=headers)
        again = await http.post("/wallet/ensure", headers=headers)
        status_resp = await http.get("/wallet/status", headers=headers)
        exported = await http.post("/wallet/export", headers=headers)
        security = await http.get("/wallet/security", headers=headers)

    assert created.status_code == 200
    assert created.json()["created"] is True
    assert again.json() == {"address": created.json()["address"], "created": False}
    assert status_resp.json()["is_encrypted"] is True
    assert status_resp.json()["can_regenerate"] is False
    body = exported.json()
    assert Account.from_key(body["private_key"]).address == created.json()["address"]
    assert body["remaining_exports"] == 1
    assert security.json()["score"] == 100


@pytest.mark.anyio("asyncio")
async def test_wallet_failures_share_one_generic_message(tmp_path: Path):
    app, store, headers = build_app(tmp_path)
    other = issue_session(store, user_id="user-1", email="mallory@example.com")
    async with client(app) as http:
        not_found = await http.post("/wallet/export", headers=headers)
        await http.post("/wallet/ensure", headers=headers)
        wrong_identity = await http.post("/wallet/export", headers={"Authorization": f"Bearer {other}"})

    assert not_found.status_code == 403
    assert wrong_identity.status_code == 403
    assert not_found.json() == wrong_identity.json() == {"detail": "Unable to access wallet"}


@pytest.mark.anyio("asyncio")
async def test_export_is_rate_limited(tmp_path: Path):
    app, _, headers = build_app(tmp_path, settings=build_settings(wallet_export_rate_limit=1))
    async with client(app) as http:
        await http.post("/wallet/ensure", headers=headers)
        first = await http.post("/wallet/export", headers=headers)
        second = await http.post("/wallet/export", headers=headers)

    assert first.status_code == 200
    assert second.status_code == 429


@pytest.mark.anyio("asyncio")
async def test_migrate_legacy_wallet(tmp_path: Path):
    app, store, headers = build_app(tmp_path)
    legacy = Account.create().address
    store.insert("wallets", {"user_id": "user-1", "public_address": legacy})
    async with client(app) as http:
        before = await http.get("/wallet/status", headers=headers)
        migrated = await http.post("/wallet/migrate", headers=headers)
        refused = await http.post("/wallet/migrate", headers=headers)

    assert before.json()["needs_migration"] is True
    assert migrated.json()["previous_address"] == legacy
    assert refused.status_code == 409


@pytest.mark.anyio("asyncio")
async def test_checkout_quote(tmp_path: Path):
    app, _, headers = build_app(tmp_path, onchain_fee_bps=lambda: 50)
    payload = {
        "items": [
            {"vendor_id": "v-a", "vendor_address": VENDOR, "unit_price": "60", "booking_id": "b1"},
            {"vendor_id": "v-a", "vendor_address": VENDOR, "unit_price": "20", "quantity": 2, "booking_id": "b2"},
        ]
    }
    async with client(app) as http:
        resp = await http.post("/checkout/quote", json=payload, headers=headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["fee_bps"] == 50
    assert body["instructions"][0]["booking_ids"] == ["b1", "b2"]
    assert body["total_units"] == str(1005 * 10**17)


@pytest.mark.anyio("asyncio")
async def test_checkout_quote_rejects_ineligible_vendor_and_fee_mismatch(tmp_path: Path):
    payload = {"items": [{"vendor_id": "v-a", "vendor_address": "0x" + "00" * 20, "unit_price": "1", "booking_id": "b1"}]}
    app, _, headers = build_app(tmp_path)
    async with client(app) as http:
        ineligible = await http.post("/checkout/quote", json=payload, headers=headers)
    assert ineligible.status_code == 422
    assert "does not match" in ineligible.json()["detail"]

    mismatched_app, _, mismatched_headers = build_app(tmp_path / "second", onchain_fee_bps=lambda: 100)
    payload["items"][0]["vendor_address"] = VENDOR
    async with client(mismatched_app) as http:
        mismatch = await http.post("/checkout/quote", json=payload, headers=mismatched_headers)
    assert mismatch.status_code == 409


@pytest.mark.anyio("asyncio")
async def test_checkout_quote_reports_unreachable_chain(tmp_path: Path):
    def unreachable() -> int:
        raise requests.ConnectionError("rpc down")

    app, _, headers = build_app(tmp_path, onchain_fee_bps=unreachable)
    payload = {"items": [{"vendor_id": "v-a", "vendor_address": VENDOR, "unit_price": "1", "booking_id": "b1"}]}
    async with client(app) as http:
        resp = await http.post("/checkout/quote", json=payload, headers=headers)
    assert resp.status_code == 503


@pytest.mark.anyio("asyncio")
async def test_checkout_submit_signs_with_custodial_wallet(tmp_path: Path):
    payments = FakePaymentClient()
    app, _, headers = build_app(tmp_path, payment_client=payments)
    payload = {"items": [{"vendor_id": "v-a", "vendor_address": VENDOR, "unit_price": "10", "booking_id": "b1"}]}
    async with client(app) as http:
        wallet = await http.post("/wallet/ensure", headers=headers)
        resp = await http.post("/checkout/submit", json=payload, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["dry_run"] is True
    assert payments.submitted == [(wallet.json()["address"], 1005 * 10**16)]


@pytest.mark.anyio("asyncio")
async def test_admin_sync(tmp_path: Path):
    reconciler = FakeReconciler()
    app, _, _ = build_app(tmp_path, reconciler=reconciler)
    async with client(app) as http:
        denied = await http.post("/admin/sync", headers={"X-Admin-Token": "wrong"})
        resp = await http.post("/admin/sync", headers={"X-Admin-Token": "secret"})

    assert denied.status_code == 401
    assert resp.status_code == 200
    assert resp.json()["orders_created"] == 2
    assert resp.json()["processed"] == 2
    assert reconciler.calls == 1


@pytest.mark.anyio("asyncio")
async def test_admin_sync_conflict(tmp_path: Path):
    app, _, _ = build_app(tmp_path, reconciler=FakeReconciler(error=CursorConflict("held by another runner")))
    async with client(app) as http:
        resp = await http.post("/admin/sync", headers={"X-Admin-Token": "secret"})
    assert resp.status_code == 409


@pytest.mark.anyio("asyncio")
async def test_checkout_verify_reports_transaction_status(tmp_path: Path):
    app, _, headers = build_app(tmp_path, payment_client=FakePaymentClient())
    async with client(app) as http:
        confirmed = await http.get("/checkout/verify/0x" + "aa" * 32, headers=headers)
        pending = await http.get("/checkout/verify/0x" + "bb" * 32, headers=headers)
        malformed = await http.get("/checkout/verify/0x1234", headers=headers)

    assert confirmed.json() == {
        "transaction_hash": "0x" + "aa" * 32,
        "status": "confirmed",
        "block_number": 9,
        "confirmations": 2,
    }
    assert pending.json()["status"] == "pending"
    assert malformed.status_code == 422


@pytest.mark.anyio("asyncio")
async def test_wallet_balance(tmp_path: Path):
    app, _, headers = build_app(tmp_path, payment_client=FakePaymentClient())
    async with client(app) as http:
        missing = await http.get("/wallet/balance", headers=headers)
        wallet = await http.post("/wallet/ensure", headers=headers)
        resp = await http.get("/wallet/balance", headers=headers)

    assert missing.status_code == 404
    assert resp.json() == {
        "address": wallet.json()["address"],
        "eth_balance": "0.005",
        "token_balance": "12.5",
    }


@pytest.mark.anyio("asyncio")
async def test_payment_routes_need_a_payment_client(tmp_path: Path):
    app, _, headers = build_app(tmp_path)
    async with client(app) as http:
        balance = await http.get("/wallet/balance", headers=headers)
        verify = await http.get("/checkout/verify/0x" + "aa" * 32, headers=headers)

    assert balance.status_code == 503
    assert verify.status_code == 503
