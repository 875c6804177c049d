"""TTL leases that keep two sync runs off the same contract cursor."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .custody import isoformat, parse_iso8601, utcnow
from .errors import CursorConflict
from .store import RowStore

logger = logging.getLogger(__name__)

SYNC_LEASES_TABLE = "sync_leases"


class SyncLeaseStore:
    def __init__(self, store: RowStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def _active(self, row: Optional[Dict[str, Any]], now: datetime) -> bool:
        if not row or not row.get("owner") or row.get("released_at"):
            return False
        expires_at = row.get("expires_at")
        if not isinstance(expires_at, str):
            return False
        try:
            return parse_iso8601(expires_at) > now
        except ValueError:
            return False

    def current(self, contract_address: str) -> Optional[Dict[str, Any]]:
        row = self.store.select_one(SYNC_LEASES_TABLE, eq={"contract_address": contract_address.lower()})
        if self._active(row, self._clock()):
            return row
        return None

    def acquire(self, contract_address: str, owner: str, lease_seconds: int) -> Dict[str, Any]:
        """Take (or refresh) the lease; raises ``CursorConflict`` if someone else holds it."""
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        key = contract_address.lower()
        now = self._clock()
        with self.store.atomic():
            existing = self.store.select_one(SYNC_LEASES_TABLE, eq={"contract_address": key})
            if self._active(existing, now) and existing.get("owner") != owner:
                raise CursorConflict(
                    f"Sync for {contract_address} is held by {existing.get('owner')} until {existing.get('expires_at')}"
                )
            record = self.store.upsert(
                SYNC_LEASES_TABLE,
                {
                    "contract_address": key,
                    "owner": owner,
                    "acquired_at": isoformat(now),
                    "expires_at": isoformat(now + timedelta(seconds=lease_seconds)),
                    "released_at": None,
                },
                on_conflict="contract_address",
            )
        logger.debug("Sync lease for %s acquired by %s", contract_address, owner)
        return record

    def release(self, contract_address: str, owner: str) -> bool:
        updated = self.store.update(
            SYNC_LEASES_TABLE,
            {"released_at": isoformat(self._clock())},
            eq={"contract_address": contract_address.lower(), "owner": owner, "released_at": None},
        )
        return bool(updated)
