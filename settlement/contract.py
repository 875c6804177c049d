"""Ticketing contract and payment token bindings.

Only the functions the settlement backend touches are described here. Reads
go through ``ContractClient``; the single state-changing call (``createOrder``)
is encoded here and signed/submitted by ``PaymentClient``.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Optional, Sequence

from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from .allocator import Allocation
from .chain import call_with_retries

logger = logging.getLogger(__name__)


TICKET_CONTRACT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {
                "components": [
                    {"internalType": "address", "name": "vendor", "type": "address"},
                    {"internalType": "uint256", "name": "amount", "type": "uint256"},
                    {"internalType": "bool", "name": "isPaid", "type": "bool"},
                ],
                "internalType": "struct UniTick.VendorPayment[]",
                "name": "vendorPayments",
                "type": "tuple[]",
            },
            {"internalType": "string[]", "name": "serviceNames", "type": "string[]"},
            {"internalType": "uint256[]", "name": "bookingDates", "type": "uint256[]"},
            {"internalType": "string", "name": "metadataURI", "type": "string"},
        ],
        "name": "createOrder",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "platformFeeBps",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "vendor", "type": "address"}],
        "name": "isVendorWhitelisted",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "getTicketDetails",
        "outputs": [
            {
                "components": [
                    {"internalType": "uint256", "name": "bookingId", "type": "uint256"},
                    {"internalType": "uint256", "name": "orderId", "type": "uint256"},
                    {"internalType": "address", "name": "vendor", "type": "address"},
                    {"internalType": "uint256", "name": "amount", "type": "uint256"},
                    {"internalType": "uint256", "name": "tokenId", "type": "uint256"},
                    {"internalType": "string", "name": "serviceName", "type": "string"},
                    {"internalType": "uint256", "name": "bookingDate", "type": "uint256"},
                ],
                "internalType": "struct UniTick.TicketDetails",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "orderId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "buyer", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "totalAmount", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "platformFee", "type": "uint256"},
        ],
        "name": "OrderCreated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"indexed": True, "internalType": "uint256", "name": "orderId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "owner", "type": "address"},
        ],
        "name": "TicketMinted",
        "type": "event",
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "owner", "type": "address"},
            {"internalType": "address", "name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class ContractClient:
    """View reads retry transient RPC failures with the configured backoff."""

    def __init__(
        self,
        web3: Web3,
        ticket_address: str,
        token_address: Optional[str] = None,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.web3 = web3
        self.ticket_address = Web3.to_checksum_address(ticket_address)
        self.token_address = Web3.to_checksum_address(token_address) if token_address else None
        self.ticket = web3.eth.contract(address=self.ticket_address, abi=TICKET_CONTRACT_ABI)
        self.token = (
            web3.eth.contract(address=self.token_address, abi=ERC20_ABI) if self.token_address else None
        )
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _read(self, description: str, fn: Callable[..., Any], *args: Any) -> Any:
        return call_with_retries(
            description,
            fn,
            *args,
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            sleep=self._sleep,
        )

    def _require_token(self):
        if self.token is None:
            raise RuntimeError("TOKEN_CONTRACT_ADDRESS is not configured")
        return self.token

    def platform_fee_bps(self) -> int:
        return int(self._read("platformFeeBps", self.ticket.functions.platformFeeBps().call))

    def is_vendor_whitelisted(self, vendor_address: str) -> bool:
        call = self.ticket.functions.isVendorWhitelisted(Web3.to_checksum_address(vendor_address)).call
        return bool(self._read("isVendorWhitelisted", call))

    def ticket_booking_id(self, token_id: int) -> Optional[int]:
        """On-chain booking id for a minted ticket, or None if the call reverts.

        Single attempt; the sync loop wraps it in its own retry policy.
        """
        try:
            details = self.ticket.functions.getTicketDetails(int(token_id)).call()
        except ContractLogicError as exc:
            logger.warning("getTicketDetails(%s) reverted: %s", token_id, exc)
            return None
        return int(details[0])

    def token_decimals(self) -> int:
        return int(self._read("decimals", self._require_token().functions.decimals().call))

    def token_balance(self, owner: str) -> int:
        call = self._require_token().functions.balanceOf(Web3.to_checksum_address(owner)).call
        return int(self._read("balanceOf", call))

    def token_allowance(self, owner: str, spender: Optional[str] = None) -> int:
        token = self._require_token()
        spender_address = Web3.to_checksum_address(spender) if spender else self.ticket_address
        call = token.functions.allowance(Web3.to_checksum_address(owner), spender_address).call
        return int(self._read("allowance", call))

    def eth_balance(self, address: str) -> int:
        return int(self._read("eth_getBalance", self.web3.eth.get_balance, Web3.to_checksum_address(address)))

    def latest_block(self) -> int:
        return int(self._read("eth_blockNumber", lambda: self.web3.eth.block_number))

    def transaction_receipt(self, tx_hash: str) -> Optional[Mapping[str, Any]]:
        try:
            return self._read("eth_getTransactionReceipt", self.web3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None

    def build_create_order_call(self, allocation: Allocation, metadata_uri: str = "") -> str:
        """Calldata for ``createOrder``: one vendor payment per cart line."""
        vendor_payments: Sequence[tuple] = [
            (line.vendor_address, line.amount_units, False) for line in allocation.lines
        ]
        service_names = [line.service_name for line in allocation.lines]
        booking_dates = [line.booking_timestamp for line in allocation.lines]
        return self.ticket.encode_abi(
            "createOrder",
            args=[list(vendor_payments), service_names, booking_dates, metadata_uri],
        )
