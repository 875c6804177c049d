"""Typed reads of the ticketing contract's event log."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Mapping, Sequence, Type, TypeVar

import requests
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3RPCError
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

from .errors import DecodeError, TransientFetchError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (requests.RequestException, Web3RPCError, OSError)


def build_web3(rpc_url: str, timeout_seconds: float = 10.0) -> Web3:
    web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
    # Base and other rollups return oversized extraData on some nodes
    web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


def call_with_retries(
    description: str,
    fn: Callable[..., Any],
    *args: Any,
    max_retries: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Run ``fn`` with exponential backoff on transient RPC errors.

    Reverts are not retried. Exhausting the retries raises ``TransientFetchError``.
    """
    attempt = 0
    while True:
        try:
            return fn(*args)
        except ContractLogicError:
            raise
        except TRANSIENT_ERRORS as exc:
            attempt += 1
            if attempt > max_retries:
                raise TransientFetchError(f"{description} failed after {attempt} attempts: {exc}") from exc
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                description,
                attempt,
                max_retries + 1,
                delay,
                exc,
            )
            sleep(delay)


@dataclass(frozen=True)
class OrderCreated:
    order_id: int
    buyer: str
    total_amount: int
    platform_fee: int
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass(frozen=True)
class TicketMinted:
    token_id: int
    order_id: int
    owner: str
    block_number: int
    transaction_hash: str
    log_index: int


EventRecord = TypeVar("EventRecord", OrderCreated, TicketMinted)


@dataclass(frozen=True)
class EventSpec(Generic[EventRecord]):
    name: str
    signature: str
    indexed_types: Sequence[str]
    data_types: Sequence[str]
    record_type: Type[EventRecord]

    @property
    def topic(self) -> bytes:
        return keccak(text=self.signature)

    @property
    def topic_hex(self) -> str:
        return "0x" + self.topic.hex()


ORDER_CREATED: EventSpec[OrderCreated] = EventSpec(
    name="OrderCreated",
    signature="OrderCreated(uint256,address,uint256,uint256)",
    indexed_types=("uint256", "address"),
    data_types=("uint256", "uint256"),
    record_type=OrderCreated,
)

TICKET_MINTED: EventSpec[TicketMinted] = EventSpec(
    name="TicketMinted",
    signature="TicketMinted(uint256,uint256,address)",
    indexed_types=("uint256", "uint256", "address"),
    data_types=(),
    record_type=TicketMinted,
)


@dataclass(frozen=True)
class RejectedLog:
    block_number: Any
    transaction_hash: Any
    log_index: Any
    reason: str


@dataclass
class EventBatch(Generic[EventRecord]):
    events: List[EventRecord] = field(default_factory=list)
    rejected: List[RejectedLog] = field(default_factory=list)


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        return bytes.fromhex(text)
    raise DecodeError(f"Unexpected log field type {type(value).__name__}")


def _as_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return "0x" + _as_bytes(value).hex()


def _normalize(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return to_checksum_address(value)
    return value


def decode_log(spec: EventSpec[EventRecord], log: Mapping[str, Any]) -> EventRecord:
    """Decode one raw log into ``spec.record_type`` or raise ``DecodeError``."""
    try:
        topics = [_as_bytes(topic) for topic in log["topics"]]
        if not topics or topics[0] != spec.topic:
            raise DecodeError(f"Log is not a {spec.name} event")
        if len(topics) != 1 + len(spec.indexed_types):
            raise DecodeError(
                f"{spec.name} expects {len(spec.indexed_types)} indexed topics, got {len(topics) - 1}"
            )
        indexed = []
        for abi_type, topic in zip(spec.indexed_types, topics[1:]):
            if len(topic) != 32:
                raise DecodeError(f"{spec.name} topic is {len(topic)} bytes, expected 32")
            indexed.append(_normalize(abi_type, decode([abi_type], topic)[0]))

        data = _as_bytes(log.get("data") or b"")
        if len(data) != 32 * len(spec.data_types):
            raise DecodeError(
                f"{spec.name} data is {len(data)} bytes, expected {32 * len(spec.data_types)}"
            )
        values = []
        if spec.data_types:
            decoded = decode(list(spec.data_types), data)
            values = [_normalize(abi_type, value) for abi_type, value in zip(spec.data_types, decoded)]

        block_number = int(log["blockNumber"])
        transaction_hash = _as_hex(log["transactionHash"])
        log_index = int(log.get("logIndex") or 0)
    except DecodeError:
        raise
    except (DecodingError, KeyError, TypeError, ValueError) as exc:
        raise DecodeError(f"Malformed {spec.name} log: {exc}") from exc

    return spec.record_type(
        *indexed,
        *values,
        block_number=block_number,
        transaction_hash=transaction_hash,
        log_index=log_index,
    )


class ChainLogReader:
    """Fetches contract logs with bounded retries; holds no sync state."""

    def __init__(
        self,
        web3: Any,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.web3 = web3
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def call(self, description: str, fn: Callable[..., Any], *args: Any) -> Any:
        return call_with_retries(
            description,
            fn,
            *args,
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            sleep=self._sleep,
        )

    def latest_block(self) -> int:
        return int(self.call("eth_blockNumber", lambda: self.web3.eth.block_number))

    def fetch_raw_logs(
        self,
        contract_address: str,
        spec: EventSpec[Any],
        from_block: int,
        to_block: int,
    ) -> List[Mapping[str, Any]]:
        if from_block < 0:
            raise ValueError("from_block must not be negative")
        if from_block > to_block:
            return []
        params = {
            "address": to_checksum_address(contract_address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [spec.topic_hex],
        }
        logs = self.call(f"eth_getLogs {spec.name}", self.web3.eth.get_logs, params)
        return [log for log in logs if not log.get("removed")]

    def fetch_event_batch(
        self,
        contract_address: str,
        spec: EventSpec[EventRecord],
        from_block: int,
        to_block: int,
    ) -> EventBatch[EventRecord]:
        """Decode every log in range, collecting malformed ones instead of raising."""
        batch: EventBatch[EventRecord] = EventBatch()
        for log in self.fetch_raw_logs(contract_address, spec, from_block, to_block):
            try:
                batch.events.append(decode_log(spec, log))
            except DecodeError as exc:
                batch.rejected.append(
                    RejectedLog(
                        block_number=log.get("blockNumber"),
                        transaction_hash=log.get("transactionHash"),
                        log_index=log.get("logIndex"),
                        reason=str(exc),
                    )
                )
        batch.events.sort(key=lambda event: (event.block_number, event.log_index))
        return batch

    def fetch_events(
        self,
        contract_address: str,
        spec: EventSpec[EventRecord],
        from_block: int,
        to_block: int,
    ) -> List[EventRecord]:
        batch = self.fetch_event_batch(contract_address, spec, from_block, to_block)
        if batch.rejected:
            first = batch.rejected[0]
            raise DecodeError(
                f"{len(batch.rejected)} malformed {spec.name} log(s); first at block "
                f"{first.block_number}: {first.reason}"
            )
        return batch.events
