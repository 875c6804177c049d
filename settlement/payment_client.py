"""Signs and submits checkout transactions from custodial wallets."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from web3 import Web3

from .allocator import Allocation
from .chain import build_web3
from .contract import ContractClient
from .custody import WalletCustodyStore
from .errors import InsufficientFunds
from .signer import Signer

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18


@dataclass(frozen=True)
class TransactionStatus:
    transaction_hash: str
    status: str
    block_number: Optional[int] = None
    confirmations: int = 0


@dataclass(frozen=True)
class WalletBalances:
    address: str
    eth_wei: int
    token_units: Optional[int]


class PaymentClient:
    def __init__(
        self,
        rpc_url: Optional[str],
        chain_id: int,
        contracts: ContractClient,
        *,
        web3: Optional[Web3] = None,
        min_gas_balance_eth: Decimal = Decimal("0.001"),
        dry_run: bool = True,
    ) -> None:
        if web3 is None:
            if not rpc_url:
                raise ValueError("rpc_url is required when no web3 instance is supplied")
            web3 = build_web3(rpc_url)
        self.web3 = web3
        self.chain_id = chain_id
        self.contracts = contracts
        self.min_gas_balance_wei = int(min_gas_balance_eth * WEI_PER_ETH)
        self.dry_run = dry_run

    def send_transaction(
        self,
        signer: Signer,
        *,
        to: str,
        value_wei: int = 0,
        data: Optional[str] = None,
    ) -> Optional[str]:
        if value_wei < 0:
            raise ValueError("value_wei must be non-negative")
        if value_wei == 0 and not data:
            logger.info("Skipping zero-value transaction to %s", to)
            return None

        if self.dry_run:
            logger.info(
                "Dry-run transaction: would send tx to %s (value=%s wei sender=%s data=%s)",
                to,
                value_wei,
                signer.address,
                "yes" if data else "no",
            )
            return None

        sender = signer.address
        try:
            to_checksum = Web3.to_checksum_address(to)
        except ValueError as exc:
            raise RuntimeError(f"Invalid recipient address {to}") from exc

        gas_price = self.web3.eth.gas_price
        nonce = self.web3.eth.get_transaction_count(sender, block_identifier="pending")
        estimate_payload: dict[str, Any] = {
            "from": sender,
            "to": to_checksum,
            "value": value_wei,
        }
        if data:
            estimate_payload["data"] = data
        try:
            gas_limit = int(self.web3.eth.estimate_gas(estimate_payload))
        except Exception as exc:  # pragma: no cover - estimation failures fall back to base gas
            logger.warning("Gas estimation for tx to %s failed, using fallback: %s", to_checksum, exc)
            gas_limit = 21_000 if not data else 500_000
        gas_limit = max(21_000, gas_limit)

        tx: dict[str, Any] = {
            "chainId": self.chain_id,
            "nonce": nonce,
            "to": to_checksum,
            "value": value_wei,
            "gas": gas_limit,
        }
        if data:
            tx["data"] = data

        try:
            priority_fee: Optional[int] = int(self.web3.eth.max_priority_fee)
        except Exception as exc:  # pragma: no cover - legacy nodes without eth_maxPriorityFeePerGas
            logger.debug("max_priority_fee unavailable, using legacy gas price: %s", exc)
            priority_fee = None
        if priority_fee is not None:
            max_fee = max(gas_price, priority_fee) * 2
            tx.update(
                {
                    "maxPriorityFeePerGas": priority_fee,
                    "maxFeePerGas": max_fee,
                }
            )
        else:
            tx["gasPrice"] = gas_price * 2

        raw_tx = signer.sign_transaction(tx)
        tx_hash = Web3.to_hex(self.web3.eth.send_raw_transaction(raw_tx))
        logger.info("Submitted tx %s to %s (value=%s wei)", tx_hash, to_checksum, value_wei)
        return tx_hash

    def check_funds(self, address: str, allocation: Allocation) -> None:
        """Raise ``InsufficientFunds`` unless ``address`` can pay gas and the order total."""
        eth_balance = self.contracts.eth_balance(address)
        if eth_balance < self.min_gas_balance_wei:
            raise InsufficientFunds(
                f"Wallet holds {Decimal(eth_balance) / WEI_PER_ETH} ETH; "
                f"{Decimal(self.min_gas_balance_wei) / WEI_PER_ETH} ETH is needed for gas"
            )
        if self.contracts.token is None:
            return
        token_balance = self.contracts.token_balance(address)
        if token_balance < allocation.total_units:
            raise InsufficientFunds(
                f"Token balance {token_balance} is below the order total {allocation.total_units}"
            )
        allowance = self.contracts.token_allowance(address)
        if allowance < allocation.total_units:
            raise InsufficientFunds(
                f"Token allowance {allowance} is below the order total {allocation.total_units}; approve first"
            )

    def submit_order(
        self,
        custody: WalletCustodyStore,
        user_id: str,
        identity: str,
        allocation: Allocation,
        metadata_uri: str = "",
    ) -> Optional[str]:
        """Sign ``createOrder`` for ``allocation`` with the buyer's custodial key."""
        data = self.contracts.build_create_order_call(allocation, metadata_uri)
        with custody.signing_session(user_id, identity) as signer:
            if not self.dry_run:
                self.check_funds(signer.address, allocation)
            tx_hash = self.send_transaction(signer, to=self.contracts.ticket_address, data=data)
        logger.info(
            "createOrder for user %s with %s line(s), total %s: tx=%s",
            user_id,
            len(allocation.lines),
            allocation.total,
            tx_hash or "dry-run",
        )
        return tx_hash

    def verify_transaction(self, tx_hash: str) -> TransactionStatus:
        """Receipt-based status: ``pending`` until mined, then ``confirmed`` or ``failed``."""
        candidate = tx_hash if tx_hash.startswith("0x") else "0x" + tx_hash
        receipt = self.contracts.transaction_receipt(candidate)
        if receipt is None:
            return TransactionStatus(transaction_hash=candidate, status="pending")
        block_number = receipt.get("blockNumber")
        confirmations = 0
        if block_number is not None:
            head = self.contracts.latest_block()
            confirmations = max(int(head) - int(block_number) + 1, 0)
        status = "confirmed" if int(receipt.get("status", 0)) == 1 else "failed"
        if status == "failed":
            logger.warning("Transaction %s reverted in block %s", candidate, block_number)
        return TransactionStatus(
            transaction_hash=candidate,
            status=status,
            block_number=int(block_number) if block_number is not None else None,
            confirmations=confirmations,
        )

    def wallet_balances(self, address: str) -> WalletBalances:
        token_units = self.contracts.token_balance(address) if self.contracts.token is not None else None
        return WalletBalances(
            address=address,
            eth_wei=self.contracts.eth_balance(address),
            token_units=token_units,
        )
