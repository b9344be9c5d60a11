from __future__ import annotations

import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.utcnow()


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageType(str, Enum):
    new_order = "newOrder"
    no_answer = "noAnswer"
    shipped = "shipped"
    rejected_offer = "rejectedOffer"
    reminder = "reminder"
    unknown = "unknown"


class QueueName(str, Enum):
    message = "message"
    reminder = "reminder"
    rejected_offer = "rejected-offer"


class HealthVerdict(str, Enum):
    healthy = "healthy"
    degraded = "degraded"
    critical = "critical"


class OrderRow(BaseModel):
    order_id: str = ""
    name: str = ""
    phone_raw: str = ""
    whatsapp_raw: str = ""
    status: str = ""
    total_price: Optional[Decimal] = None
    product_name: Optional[str] = None
    row_index: Optional[int] = None
    order_date: str = ""
    governorate: Optional[str] = None
    area: Optional[str] = None
    address: Optional[str] = None
    order_details: Optional[str] = None
    quantity: Optional[str] = None
    notes: Optional[str] = None
    source_channel: Optional[str] = None


class CanonicalPhone(BaseModel):
    raw: str
    normalized: str = ""
    country_code: Optional[str] = None
    is_valid: bool
    validation_errors: list[str] = Field(default_factory=list)


class PhoneAnalysis(BaseModel):
    original: str
    cleaned: str
    formatted: str
    is_valid: bool
    validation_errors: list[str] = Field(default_factory=list)
    country_code: Optional[str] = None
    country_name: Optional[str] = None
    national_number: Optional[str] = None
    is_egyptian: bool = False
    suggestions: list[str] = Field(default_factory=list)


class EgyptianValidation(BaseModel):
    original: str
    is_valid: bool
    national_number: str
    final_format: Optional[str] = None
    errors: list[str] = Field(default_factory=list)


class TwoNumberResult(BaseModel):
    preferred_number: Optional[str] = None
    alternative_number: Optional[str] = None
    source: str = "none"
    is_valid: bool
    processing_log: list[str] = Field(default_factory=list)


class StatusHistoryEntry(BaseModel):
    order_id: str
    last_status: str
    observed_at_ms: int
    changed_at_ms: int


class DuplicateLedgerEntry(BaseModel):
    key: str
    last_sent_at_ms: int


class DispatchJob(BaseModel):
    id: str
    order_id: str
    phone: str
    message_type: MessageType
    rendered_message: str
    customer_name: str = ""
    expected_status: Optional[str] = None
    created_at_ms: int
    attempts: int = 0
    last_error: Optional[str] = None


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class EngineStatus(BaseModel):
    is_running: bool
    cycle_in_progress: bool
    check_interval_seconds: int
    last_cycle_at_ms: Optional[int] = None
    next_cycle_at_ms: Optional[int] = None
    last_error: Optional[str] = None


class RowError(BaseModel):
    row_index: Optional[int] = None
    order_id: str = ""
    message_type: Optional[MessageType] = None
    reason: str
    detail: str = ""


class CycleReport(BaseModel):
    started_at_ms: int
    finished_at_ms: Optional[int] = None
    duration_ms: float = 0.0
    fetch_failed: bool = False
    total_rows: int = 0
    new_orders: int = 0
    status_changes: int = 0
    unchanged: int = 0
    dispatched: int = 0
    suppressed: int = 0
    invalid_rows: int = 0
    invalid_phones: int = 0
    not_registered: int = 0
    unknown_statuses: int = 0
    terminal: int = 0
    disabled: int = 0
    enqueue_failures: int = 0
    reminders_scheduled: int = 0
    errors: list[RowError] = Field(default_factory=list)


class ServiceHealth(BaseModel):
    status: HealthVerdict
    circuit_state: Optional[str] = None
    detail: Optional[str] = None


class HealthReport(BaseModel):
    overall: HealthVerdict
    services: dict[str, ServiceHealth] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)
    checked_at_ms: int


class PhoneAnalyzeRequest(BaseModel):
    number: str = Field(default="", max_length=64)


class PhoneProcessRequest(BaseModel):
    phone: str = Field(default="", max_length=64)
    whatsapp_number: str = Field(default="", max_length=64)


class ResetTrackingResponse(BaseModel):
    status_history_cleared: int
    duplicate_ledger_cleared: int


class EngineActionResponse(BaseModel):
    status: str
    engine: EngineStatus
