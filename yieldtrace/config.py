"""
Runtime settings for YieldTrace.

Everything is read from the environment (optionally seeded from a .env file).
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Blend backstop LP token (BLND:USDC comet pool share)
DEFAULT_LP_TOKEN_ADDRESS = "CDMHROXQ75GEMEJ4LJCT4TUFKY7PH5Z7V5RCVS4KKGU2CQLQRN35DKFT"
# BLND, paid out by pool emission claims
DEFAULT_EMISSION_TOKEN_ADDRESS = "CD25MNVTZDL4Y3XBCPCJXGXATV5WUHHOWMYFF4YBEGU5FCPGMYTVG5JY"


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    max_concurrent_reads: int = 8
    query_timeout_seconds: float = 20.0
    price_lookback_days: int = 365
    snapshot_lookback_days: int = 365
    cache_ttl_seconds: int = 300
    lp_token_address: str = DEFAULT_LP_TOKEN_ADDRESS
    emission_token_address: str = DEFAULT_EMISSION_TOKEN_ADDRESS
    strict_invariants: bool = False
    log_level: str = "INFO"


def _int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if not value > 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    load_dotenv()

    settings = Settings(
        database_url=os.getenv("DATABASE_URL") or None,
        redis_url=os.getenv("REDIS_URL") or None,
        db_pool_min=_int("DB_POOL_MIN", 1, minimum=1),
        db_pool_max=_int("DB_POOL_MAX", 10, minimum=1),
        max_concurrent_reads=_int("MAX_CONCURRENT_READS", 8, minimum=1),
        query_timeout_seconds=_float("QUERY_TIMEOUT_SECONDS", 20.0),
        price_lookback_days=_int("PRICE_LOOKBACK_DAYS", 365),
        snapshot_lookback_days=_int("SNAPSHOT_LOOKBACK_DAYS", 365),
        cache_ttl_seconds=_int("CACHE_TTL_SECONDS", 300),
        lp_token_address=os.getenv("LP_TOKEN_ADDRESS") or DEFAULT_LP_TOKEN_ADDRESS,
        emission_token_address=os.getenv("EMISSION_TOKEN_ADDRESS") or DEFAULT_EMISSION_TOKEN_ADDRESS,
        strict_invariants=_bool("STRICT_INVARIANTS", False),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )

    if settings.db_pool_min > settings.db_pool_max:
        raise ValueError("DB_POOL_MIN cannot exceed DB_POOL_MAX")

    return settings
