from __future__ import annotations
from typing import Any, Dict
from datetime import datetime, timezone
import json
import logging

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

_LOGGER = logging.getLogger("observability.events")


def configure_logging(level: str = "INFO"):
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    else:
        logging.getLogger().setLevel(level)


def structured_log(event: str, correlation_id: str, data: Dict[str, Any]):
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "cid": correlation_id,
        "data": data,
    }
    _LOGGER.info(json.dumps(record, default=str))
