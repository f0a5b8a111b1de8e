"""Runtime configuration for the connect-volunteers bot.

Every policy constant (timeouts, retry counts, cool-down window) is read from
the environment so deployments can tune it without code changes. A ``.env``
file next to the process is honoured through python-dotenv.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

ENV_PREFIX = "CONNECT_VOLUNTEERS_BOT_"


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return max(0.0, float(raw))
    except ValueError:
        return default


def _int(name: str, default: int, minimum: int = 0) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    ack_timeout_seconds: float = 120.0
    cooldown_seconds: float = 600.0
    max_offer_rounds: int = 3
    # extra scans after a lost CAS during matching
    cas_retries: int = 1
    # read-modify-CAS attempts for dispatch-side updates
    mutation_retries: int = 3
    egress_url: Optional[str] = None
    egress_max_attempts: int = 5
    egress_backoff_seconds: float = 0.5
    # how long processed event ids and delivered intents are remembered
    dedup_retention_seconds: float = 86400.0
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        ack_timeout_seconds=_float("ACK_TIMEOUT_SECONDS", 120.0),
        cooldown_seconds=_float("COOLDOWN_SECONDS", 600.0),
        max_offer_rounds=_int("MAX_OFFER_ROUNDS", 3, minimum=1),
        cas_retries=_int("CAS_RETRIES", 1),
        mutation_retries=_int("MUTATION_RETRIES", 3, minimum=1),
        egress_url=_env("EGRESS_URL"),
        egress_max_attempts=_int("EGRESS_MAX_ATTEMPTS", 5, minimum=1),
        egress_backoff_seconds=_float("EGRESS_BACKOFF_SECONDS", 0.5),
        dedup_retention_seconds=_float("DEDUP_RETENTION_SECONDS", 86400.0),
        database_url=os.getenv("DATABASE_URL") or os.getenv("DATABASE_URL_DEV"),
        log_level=(_env("LOG_LEVEL") or "INFO").upper(),
    )
