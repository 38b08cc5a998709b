# settings.py — environment configuration for the balance guard service

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------
# Explorer networks
# ---------------------------------
EXPLORER_URLS: Dict[str, str] = {
    "testnet": "https://floripa.azorescan.com/api",
    "mainnet": "https://azorescan.com/api",
}

NATIVE_SYMBOLS: Dict[str, str] = {
    "testnet": "AZE-t",
    "mainnet": "AZE",
}
NATIVE_DECIMALS = 18

EXPO_PUSH_URL = "https://api.expo.dev/v2/push/send"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    lowered = raw.strip().lower()
    if lowered in {"none", "off", "unlimited"}:
        return None
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    explorer_urls: Dict[str, str] = field(default_factory=lambda: dict(EXPLORER_URLS))
    chain_timeout_seconds: float = 10.0
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl_seconds: int = 86400
    cache_max_staleness_seconds: float = 3600.0
    data_dir: Path = Path("secure")
    durable_database_url: str = "sqlite:///./secure/balances.db"
    durable_max_entries: Optional[int] = None
    session_tier_capacity: int = 512
    change_threshold_percent: float = 0.01
    detector_interval_seconds: float = 60.0
    detector_concurrency: int = 8
    detector_cycle_timeout_seconds: Optional[float] = 30.0
    enable_detector: bool = True
    expo_push_url: str = EXPO_PUSH_URL
    notify_sound_min_interval_seconds: float = 2.0
    notify_dedupe_ttl_seconds: float = 3600.0
    admin_password_hash: str = ""
    log_file: Optional[str] = None
    log_level: str = "INFO"
    emergency_window_seconds: float = 3600.0

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "balance_guard.db"


def load_settings() -> Settings:
    data_dir = Path(os.getenv("DATA_DIR", "secure")).expanduser()
    urls = dict(EXPLORER_URLS)
    urls["testnet"] = os.getenv("AZORESCAN_TESTNET_URL", urls["testnet"]).strip()
    urls["mainnet"] = os.getenv("AZORESCAN_MAINNET_URL", urls["mainnet"]).strip()
    cycle_timeout = _env_float("DETECTOR_CYCLE_TIMEOUT_SECONDS", 30.0)
    return Settings(
        explorer_urls=urls,
        chain_timeout_seconds=_env_float("CHAIN_TIMEOUT_SECONDS", 10.0),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0").strip(),
        cache_ttl_seconds=_env_int("BALANCE_CACHE_TTL_SECONDS", 86400) or 86400,
        cache_max_staleness_seconds=_env_float("BALANCE_CACHE_MAX_STALENESS_SECONDS", 3600.0),
        data_dir=data_dir,
        durable_database_url=os.getenv(
            "DURABLE_DATABASE_URL", f"sqlite:///{data_dir / 'balances.db'}"
        ).strip(),
        durable_max_entries=_env_int("DURABLE_MAX_ENTRIES", None),
        session_tier_capacity=_env_int("SESSION_TIER_CAPACITY", 512) or 512,
        change_threshold_percent=_env_float("CHANGE_THRESHOLD_PERCENT", 0.01),
        detector_interval_seconds=_env_float("DETECTOR_INTERVAL_SECONDS", 60.0),
        detector_concurrency=_env_int("DETECTOR_CONCURRENCY", 8) or 8,
        detector_cycle_timeout_seconds=cycle_timeout if cycle_timeout > 0 else None,
        enable_detector=_env_bool("ENABLE_DETECTOR", True),
        expo_push_url=os.getenv("EXPO_PUSH_URL", EXPO_PUSH_URL).strip(),
        notify_sound_min_interval_seconds=_env_float("NOTIFY_SOUND_MIN_INTERVAL_SECONDS", 2.0),
        notify_dedupe_ttl_seconds=_env_float("NOTIFY_DEDUPE_TTL_SECONDS", 3600.0),
        admin_password_hash=os.getenv("ADMIN_PASSWORD_HASH", "").strip(),
        log_file=os.getenv("LOG_FILE") or str(data_dir / "balance_guard.log"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        emergency_window_seconds=_env_float("EMERGENCY_WINDOW_SECONDS", 3600.0),
    )
