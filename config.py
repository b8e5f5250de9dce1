from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Set

from dotenv import load_dotenv

# ================== ENV helpers ==================

def _getenv_str(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return v.strip() if v is not None else default

def _getenv_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        try:
            return int(float(v))
        except ValueError:
            return default

def _getenv_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default

def _getenv_ids(name: str) -> List[str]:
    raw = os.getenv(name, "") or ""
    return [p for p in (x.strip() for x in raw.split(",")) if p]

def _getenv_usernames(name: str) -> Set[str]:
    return {p.lstrip("@").lower() for p in _getenv_ids(name)}


@dataclass
class Settings:
    telegram_token: str = ""
    admin_ids: List[str] = field(default_factory=list)
    broadcast_chat_id: str = ""
    allowed_user_ids: Set[int] = field(default_factory=set)
    allowed_usernames: Set[str] = field(default_factory=set)
    acl_deny_message: str = ""

    ozon_client_id: str = ""
    ozon_api_key: str = ""
    ozon_api_base_url: str = "https://api-seller.ozon.ru"
    http_timeout_s: float = 25.0
    http_retry_attempts: int = 3
    http_retry_backoff_s: float = 1.7

    data_dir: Path = Path("./data")

    draft_ttl_minutes: int = 30
    draft_poll_interval_s: float = 10.0
    draft_poll_attempts: int = 1000
    draft_recreate_attempts: int = 1000
    draft_recreate_delay_s: float = 3.0

    supply_poll_interval_s: float = 10.0
    max_ready_days: int = 28
    default_window_days: int = 28

    order_id_attempts: int = 5
    order_id_delay_ms: int = 1000
    order_id_stale_hours: float = 2.0
    order_id_recovery_interval_s: int = 600
    pending_cleanup_interval_s: int = 900
    pending_summary_interval_s: int = 300

    cancel_poll_attempts: int = 10
    cancel_poll_delay_ms: int = 1500

    tz_name: str = "Europe/Moscow"
    log_level: str = "INFO"

    @property
    def orders_file(self) -> Path:
        return self.data_dir / "supply_orders.json"

    @property
    def sessions_file(self) -> Path:
        return self.data_dir / "wizard_sessions.json"

    @property
    def credentials_file(self) -> Path:
        return self.data_dir / "user_credentials.json"


def load_settings() -> Settings:
    load_dotenv()
    allowed_ids = {int(x) for x in _getenv_ids("ALLOWED_USER_IDS") if x.lstrip("-").isdigit()}
    return Settings(
        telegram_token=_getenv_str("TELEGRAM_BOT_TOKEN"),
        admin_ids=_getenv_ids("TELEGRAM_ADMIN_IDS"),
        broadcast_chat_id=_getenv_str("TELEGRAM_BOT_ADMIN"),
        allowed_user_ids=allowed_ids,
        allowed_usernames=_getenv_usernames("ALLOWED_USERNAMES"),
        acl_deny_message=_getenv_str("ACL_DENY_MESSAGE"),
        ozon_client_id=_getenv_str("OZON_CLIENT_ID"),
        ozon_api_key=_getenv_str("OZON_API_KEY"),
        ozon_api_base_url=_getenv_str("OZON_API_BASE_URL", "https://api-seller.ozon.ru"),
        http_timeout_s=_getenv_float("HTTP_TIMEOUT_S", 25.0),
        http_retry_attempts=_getenv_int("HTTP_RETRY_ATTEMPTS", 3),
        http_retry_backoff_s=_getenv_float("HTTP_RETRY_BACKOFF_S", 1.7),
        data_dir=Path(_getenv_str("DATA_DIR", "./data")).resolve(),
        draft_ttl_minutes=_getenv_int("SUPPLY_DRAFT_TTL_MINUTES", 30),
        draft_poll_interval_s=_getenv_float("SUPPLY_DRAFT_POLL_INTERVAL_S", 10.0),
        draft_poll_attempts=_getenv_int("SUPPLY_DRAFT_POLL_ATTEMPTS", 1000),
        draft_recreate_attempts=_getenv_int("SUPPLY_DRAFT_RECREATE_ATTEMPTS", 1000),
        draft_recreate_delay_s=_getenv_float("SUPPLY_DRAFT_RECREATE_DELAY_S", 3.0),
        supply_poll_interval_s=_getenv_float("SUPPLY_POLL_INTERVAL_S", 10.0),
        max_ready_days=_getenv_int("SUPPLY_MAX_READY_DAYS", 28),
        default_window_days=_getenv_int("SUPPLY_DEFAULT_WINDOW_DAYS", 28),
        order_id_attempts=_getenv_int("ORDER_ID_ATTEMPTS", 5),
        order_id_delay_ms=_getenv_int("ORDER_ID_DELAY_MS", 1000),
        order_id_stale_hours=_getenv_float("ORDER_ID_STALE_HOURS", 2.0),
        order_id_recovery_interval_s=_getenv_int("ORDER_ID_RECOVERY_INTERVAL_S", 600),
        pending_cleanup_interval_s=_getenv_int("PENDING_CLEANUP_INTERVAL_S", 900),
        pending_summary_interval_s=_getenv_int("PENDING_SUMMARY_INTERVAL_S", 300),
        cancel_poll_attempts=_getenv_int("CANCEL_POLL_ATTEMPTS", 10),
        cancel_poll_delay_ms=_getenv_int("CANCEL_POLL_DELAY_MS", 1500),
        tz_name=_getenv_str("TZ_NAME", "Europe/Moscow"),
        log_level=_getenv_str("LOG_LEVEL", "INFO").upper(),
    )
