from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

logger = logging.getLogger("parcel.events")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"parcel.{name}")


def log_event(
    category: str,
    action: str,
    outcome: str,
    reason: str = "",
    metadata: Mapping[str, Any] | None = None,
    level: int = logging.INFO,
) -> None:
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "category": category,
        "action": action,
        "outcome": outcome,
        "reason": reason,
        "metadata": dict(metadata) if metadata else {},
    }
    logger.log(level, json.dumps(entry, default=str))
