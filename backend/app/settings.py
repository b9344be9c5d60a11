from __future__ import annotations

import os
from dataclasses import dataclass

from backend.app.models import MessageType

ALL_MESSAGE_TYPES = (
    MessageType.new_order,
    MessageType.no_answer,
    MessageType.shipped,
    MessageType.rejected_offer,
    MessageType.reminder,
)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _message_types_env(name: str) -> frozenset[MessageType]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return frozenset(ALL_MESSAGE_TYPES)
    allowed = {item.value: item for item in ALL_MESSAGE_TYPES}
    return frozenset(
        allowed[item.strip()] for item in raw.split(",") if item.strip() in allowed
    )


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    check_interval_seconds: int
    reminder_delay_hours: int
    rejected_offer_delay_hours: int
    min_resend_minutes: int
    reminder_resend_minutes: int
    enabled_message_types: frozenset[MessageType]
    source_max_retries: int
    source_retry_base_delay_ms: int
    transport_max_retries: int
    transport_retry_base_delay_ms: int
    retry_max_delay_ms: int
    circuit_failure_threshold: int
    circuit_cooldown_seconds: int
    row_cache_ttl_seconds: int
    registration_cache_ttl_hours: int
    send_when_disconnected: bool
    stuck_cycle_seconds: int
    automation_autostart: bool
    google_spreadsheet_id: str
    google_spreadsheet_url: str
    google_service_account_key: str
    google_sheet_range: str
    whatsapp_gateway_url: str
    whatsapp_gateway_token: str
    message_templates_path: str
    company_name: str
    support_phone: str
    tracking_base_url: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/order_notifier.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    check_interval_seconds = _clamp(_int_env("CHECK_INTERVAL_SECONDS", 30), 10, 3600)
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        check_interval_seconds=check_interval_seconds,
        reminder_delay_hours=_clamp(_int_env("REMINDER_DELAY_HOURS", 24), 1, 168),
        rejected_offer_delay_hours=_clamp(_int_env("REJECTED_OFFER_DELAY_HOURS", 48), 1, 336),
        min_resend_minutes=max(0, _int_env("MIN_RESEND_MINUTES", 30)),
        reminder_resend_minutes=max(0, _int_env("REMINDER_RESEND_MINUTES", 720)),
        enabled_message_types=_message_types_env("ENABLED_MESSAGE_TYPES"),
        source_max_retries=max(0, _int_env("SOURCE_MAX_RETRIES", 3)),
        source_retry_base_delay_ms=max(0, _int_env("SOURCE_RETRY_BASE_DELAY_MS", 2000)),
        transport_max_retries=max(0, _int_env("TRANSPORT_MAX_RETRIES", 2)),
        transport_retry_base_delay_ms=max(0, _int_env("TRANSPORT_RETRY_BASE_DELAY_MS", 3000)),
        retry_max_delay_ms=max(0, _int_env("RETRY_MAX_DELAY_MS", 30000)),
        circuit_failure_threshold=max(1, _int_env("CIRCUIT_FAILURE_THRESHOLD", 5)),
        circuit_cooldown_seconds=max(1, _int_env("CIRCUIT_COOLDOWN_SECONDS", 60)),
        row_cache_ttl_seconds=max(0, _int_env("ROW_CACHE_TTL_SECONDS", 5)),
        registration_cache_ttl_hours=max(0, _int_env("REGISTRATION_CACHE_TTL_HOURS", 24)),
        send_when_disconnected=_bool_env("SEND_WHEN_DISCONNECTED", True),
        stuck_cycle_seconds=max(
            60, _int_env("STUCK_CYCLE_SECONDS", max(check_interval_seconds * 3, 300))
        ),
        automation_autostart=_bool_env("AUTOMATION_AUTOSTART", False),
        google_spreadsheet_id=os.getenv("GOOGLE_SPREADSHEET_ID", "").strip(),
        google_spreadsheet_url=os.getenv("GOOGLE_SPREADSHEET_URL", "").strip(),
        google_service_account_key=os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY", "").strip(),
        google_sheet_range=os.getenv("GOOGLE_SHEET_RANGE", "A:P").strip() or "A:P",
        whatsapp_gateway_url=os.getenv("WHATSAPP_GATEWAY_URL", "").strip().rstrip("/"),
        whatsapp_gateway_token=os.getenv("WHATSAPP_GATEWAY_TOKEN", "").strip(),
        message_templates_path=os.getenv("MESSAGE_TEMPLATES_PATH", "").strip(),
        company_name=os.getenv("COMPANY_NAME", "متجر مصر أونلاين").strip(),
        support_phone=os.getenv("SUPPORT_PHONE", "01000000000").strip(),
        tracking_base_url=os.getenv("TRACKING_BASE_URL", "https://track.example.com").strip(),
    )
