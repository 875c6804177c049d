"""CLI entrypoint for the settlement backend."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from typing import Optional, Sequence

from .allocator import PaymentAllocator
from .api import create_app, run_api
from .audit import AuditLog
from .chain import TRANSIENT_ERRORS, ChainLogReader, build_web3
from .config import SettlementSettings, settings
from .contract import ContractClient
from .custody import WalletCustodyStore
from .errors import SettlementError, TransientFetchError
from .payment_client import PaymentClient
from .reconciler import LedgerReconciler
from .store import JsonRowStore


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def resolve_token_decimals(contracts: Optional[ContractClient], config: SettlementSettings) -> int:
    logger = logging.getLogger(__name__)
    if contracts is None or contracts.token is None:
        return config.token_decimals
    try:
        decimals = contracts.token_decimals()
    except (TransientFetchError, *TRANSIENT_ERRORS) as exc:
        logger.warning(
            "Unable to read token decimals, falling back to TOKEN_DECIMALS=%s: %s",
            config.token_decimals,
            exc,
        )
        return config.token_decimals
    if decimals != config.token_decimals:
        logger.warning("Token reports %s decimals; TOKEN_DECIMALS is %s", decimals, config.token_decimals)
    return decimals


def build_reconciler(
    store: JsonRowStore,
    contracts: Optional[ContractClient],
    reader: ChainLogReader,
    config: SettlementSettings,
    token_decimals: int,
) -> Optional[LedgerReconciler]:
    if contracts is None:
        return None
    return LedgerReconciler(
        store,
        reader,
        contract_address=contracts.ticket_address,
        token_decimals=token_decimals,
        confirmations=config.sync_confirmations,
        max_block_span=config.sync_max_block_span,
        lease_seconds=config.sync_lease_seconds,
        booking_resolver=contracts.ticket_booking_id,
    )


def run_sync_once(reconciler: Optional[LedgerReconciler]) -> int:
    """One sync pass for ``--once``; 0 on success, 1 if skipped or failed, 2 if unconfigured."""
    logger = logging.getLogger(__name__)
    if reconciler is None:
        logger.error("Cannot sync without TICKET_CONTRACT_ADDRESS")
        return 2
    try:
        summary = reconciler.run_once()
    except SettlementError as exc:
        logger.error("Sync run failed: %s", exc)
        return 1
    print(json.dumps(summary.as_dict(), indent=2, sort_keys=True))
    return 0 if summary.status != "skipped" else 1


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ticket settlement backend")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single chain sync, print the JSON summary and exit",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting settlement backend (dry-run=%s)", settings.payment_dry_run)

    store = JsonRowStore(settings.store_path)
    audit = AuditLog(settings.audit_log_path)
    web3 = build_web3(settings.eth_rpc_url, settings.rpc_timeout_seconds)
    reader = ChainLogReader(
        web3,
        max_retries=settings.rpc_max_retries,
        backoff_seconds=settings.rpc_backoff_seconds,
    )

    contracts: Optional[ContractClient] = None
    if settings.ticket_contract_address:
        contracts = ContractClient(
            web3,
            settings.ticket_contract_address,
            settings.token_contract_address,
            max_retries=settings.rpc_max_retries,
            backoff_seconds=settings.rpc_backoff_seconds,
        )
    else:
        logger.warning("TICKET_CONTRACT_ADDRESS not set; chain sync and fee checks are disabled")

    token_decimals = resolve_token_decimals(contracts, settings)
    reconciler = build_reconciler(store, contracts, reader, settings, token_decimals)

    if args.once:
        return run_sync_once(reconciler)

    custody = WalletCustodyStore(store, audit, kdf_iterations=settings.wallet_kdf_iterations)
    allocator = PaymentAllocator(
        store,
        fee_bps=settings.platform_fee_bps,
        decimals=token_decimals,
        whitelist=contracts.is_vendor_whitelisted if contracts else None,
    )
    payment_client: Optional[PaymentClient] = None
    if contracts is not None:
        payment_client = PaymentClient(
            None,
            settings.eth_chain_id,
            contracts,
            web3=web3,
            min_gas_balance_eth=settings.min_gas_balance_eth,
            dry_run=settings.payment_dry_run,
        )
    app = create_app(
        store,
        custody,
        allocator,
        settings,
        reconciler=reconciler,
        onchain_fee_bps=contracts.platform_fee_bps if contracts else None,
        payment_client=payment_client,
    )
    api_thread = threading.Thread(
        target=run_api,
        name="settlement-api",
        args=(app, settings),
        daemon=True,
    )
    api_thread.start()
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)

    if reconciler is None:
        try:
            api_thread.join()
        except KeyboardInterrupt:
            logger.info("Stopped via keyboard interrupt")
        return 0

    reconciler.run_forever(settings.sync_interval_seconds)
    return 0


if __name__ == "__main__":
    sys.exit(main())
