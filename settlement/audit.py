"""Append-only audit trail for custodial wallet operations."""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def record(
        self,
        action: str,
        *,
        user_id: str,
        wallet_address: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "user_id": user_id,
            "wallet_address": wallet_address,
            "success": success,
        }
        if error:
            entry["error"] = error
        if metadata:
            entry["metadata"] = metadata
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    json.dump(entry, handle, separators=(",", ":"))
                    handle.write("\n")
        except Exception as exc:  # pragma: no cover - audit logging best effort
            logger.error("Failed to append audit log for %s: %s", action, exc)
