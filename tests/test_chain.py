from typing import Any, Dict, List, Optional

import pytest
import requests
from eth_abi import encode

from settlement.chain import (
    ORDER_CREATED,
    TICKET_MINTED,
    ChainLogReader,
    OrderCreated,
    TicketMinted,
    decode_log,
)
from settlement.errors import DecodeError, TransientFetchError

CONTRACT = "0x" + "11" * 20
BUYER = "0x" + "ab" * 20


def topic(abi_type: str, value: Any) -> bytes:
    return encode([abi_type], [value])


def order_log(order_id: int, total: int, fee: int, *, block: int = 5, index: int = 0, buyer: str = BUYER) -> Dict[str, Any]:
    return {
        "address": CONTRACT,
        "topics": [ORDER_CREATED.topic, topic("uint256", order_id), topic("address", buyer)],
        "data": encode(["uint256", "uint256"], [total, fee]),
        "blockNumber": block,
        "transactionHash": bytes.fromhex("aa" * 32),
        "logIndex": index,
    }


def mint_log(token_id: int, order_id: int, *, block: int = 6, index: int = 1) -> Dict[str, Any]:
    return {
        "address": CONTRACT,
        "topics": [
            TICKET_MINTED.topic,
            topic("uint256", token_id),
            topic("uint256", order_id),
            topic("address", BUYER),
        ],
        "data": b"",
        "blockNumber": block,
        "transactionHash": "0x" + "bb" * 32,
        "logIndex": index,
    }


class FakeEth:
    def __init__(self, logs: Optional[List[Dict[str, Any]]] = None, block_number: int = 10):
        self.logs = logs or []
        self._block_number = block_number
        self.failures: List[Exception] = []
        self.calls: List[Dict[str, Any]] = []

    @property
    def block_number(self) -> int:
        if self.failures:
            raise self.failures.pop(0)
        return self._block_number

    def get_logs(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.calls.append(params)
        if self.failures:
            raise self.failures.pop(0)
        wanted = params["topics"][0]
        return [
            log
            for log in self.logs
            if "0x" + log["topics"][0].hex() == wanted
            and params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]
        ]


class FakeWeb3:
    def __init__(self, eth: FakeEth):
        self.eth = eth


def build_reader(eth: FakeEth, retries: int = 2) -> ChainLogReader:
    return ChainLogReader(FakeWeb3(eth), max_retries=retries, backoff_seconds=0.01, sleep=lambda _: None)


def test_decode_order_created():
    event = decode_log(ORDER_CREATED, order_log(7, 100 * 10**18, 5 * 10**17))

    assert isinstance(event, OrderCreated)
    assert event.order_id == 7
    assert event.buyer.lower() == BUYER
    assert event.total_amount == 100 * 10**18
    assert event.platform_fee == 5 * 10**17
    assert event.transaction_hash == "0x" + "aa" * 32


def test_decode_ticket_minted():
    event = decode_log(TICKET_MINTED, mint_log(42, 7))

    assert isinstance(event, TicketMinted)
    assert (event.token_id, event.order_id) == (42, 7)
    assert event.transaction_hash == "0x" + "bb" * 32


def test_decode_rejects_wrong_shapes():
    log = order_log(7, 1, 1)

    with pytest.raises(DecodeError):
        decode_log(TICKET_MINTED, log)
    with pytest.raises(DecodeError):
        decode_log(ORDER_CREATED, {**log, "topics": log["topics"][:2]})
    with pytest.raises(DecodeError):
        decode_log(ORDER_CREATED, {**log, "data": log["data"][:32]})
    with pytest.raises(DecodeError):
        decode_log(ORDER_CREATED, {key: value for key, value in log.items() if key != "blockNumber"})


def test_empty_range_is_not_an_error():
    eth = FakeEth([order_log(1, 1, 0)])
    reader = build_reader(eth)

    assert reader.fetch_events(CONTRACT, ORDER_CREATED, 11, 10) == []
    assert eth.calls == []


def test_fetch_events_filters_by_topic_and_orders_by_position():
    eth = FakeEth(
        [
            order_log(2, 10, 0, block=7, index=3),
            mint_log(1, 1, block=6),
            order_log(1, 10, 0, block=7, index=1),
            order_log(3, 10, 0, block=3),
        ]
    )
    reader = build_reader(eth)

    events = reader.fetch_events(CONTRACT, ORDER_CREATED, 1, 10)

    assert [event.order_id for event in events] == [3, 1, 2]
    assert eth.calls[0]["fromBlock"] == 1
    assert eth.calls[0]["toBlock"] == 10


def test_removed_logs_are_dropped():
    eth = FakeEth([{**order_log(1, 10, 0), "removed": True}, order_log(2, 10, 0)])

    events = build_reader(eth).fetch_events(CONTRACT, ORDER_CREATED, 0, 10)

    assert [event.order_id for event in events] == [2]


def test_batch_collects_malformed_logs_and_strict_fetch_raises():
    broken = order_log(9, 10, 0)
    broken["data"] = b"\x00" * 10
    eth = FakeEth([order_log(1, 10, 0), broken])
    reader = build_reader(eth)

    batch = reader.fetch_event_batch(CONTRACT, ORDER_CREATED, 0, 10)
    assert [event.order_id for event in batch.events] == [1]
    assert len(batch.rejected) == 1

    with pytest.raises(DecodeError):
        reader.fetch_events(CONTRACT, ORDER_CREATED, 0, 10)


def test_transient_errors_are_retried_then_surface():
    eth = FakeEth([order_log(1, 10, 0)])
    eth.failures = [requests.ConnectionError("reset")]
    reader = build_reader(eth)

    assert reader.latest_block() == 10

    eth.failures = [requests.Timeout("slow")] * 3
    with pytest.raises(TransientFetchError):
        reader.fetch_events(CONTRACT, ORDER_CREATED, 0, 10)
