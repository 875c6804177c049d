"""Per-contract sync cursor stored in the ``sync_status`` table."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from .custody import isoformat, utcnow
from .errors import CursorConflict
from .store import RowStore

logger = logging.getLogger(__name__)

SYNC_STATUS_TABLE = "sync_status"


class SyncCursorStore:
    def __init__(self, store: RowStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    @staticmethod
    def _key(contract_address: str) -> str:
        return contract_address.lower()

    def get(self, contract_address: str) -> int:
        """Last fully processed block; 0 when the contract was never synced."""
        row = self.store.select_one(SYNC_STATUS_TABLE, eq={"contract_address": self._key(contract_address)})
        if row is None:
            return 0
        return int(row.get("last_block") or 0)

    def advance(self, contract_address: str, block_number: int) -> int:
        current = self.get(contract_address)
        if block_number < current:
            raise CursorConflict(
                f"Cursor for {contract_address} is at {current}; refusing to move back to {block_number}"
            )
        if block_number == current:
            return current
        self.store.upsert(
            SYNC_STATUS_TABLE,
            {
                "contract_address": self._key(contract_address),
                "last_block": int(block_number),
                "updated_at": isoformat(self._clock()),
            },
            on_conflict="contract_address",
        )
        logger.debug("Advanced sync cursor for %s to %s", contract_address, block_number)
        return int(block_number)
