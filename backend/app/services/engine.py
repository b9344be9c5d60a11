from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from backend.app.errors import (
    ConfigurationError,
    CycleAlreadyRunningError,
    DispatchQueueError,
    NotifierError,
    UnknownStatusError,
)
from backend.app.models import (
    CanonicalPhone,
    CycleReport,
    DispatchJob,
    EngineStatus,
    HealthReport,
    HealthVerdict,
    MessageType,
    OrderRow,
    RowError,
    ServiceHealth,
    StatusHistoryEntry,
    now_ms,
)
from backend.app.observability import PerformanceStatsCollector
from backend.app.services.cache import TTLCache
from backend.app.services.dispatch import DispatchQueue
from backend.app.services.message_types import (
    is_terminal_status,
    normalize_status,
    resolve_message_type,
    status_label,
)
from backend.app.services.phone import canonicalize_row_phone
from backend.app.services.resilience import CircuitState, ResilienceWrapper, RetryPolicy, worst_verdict
from backend.app.services.sheets import OrderSource
from backend.app.services.templates import (
    build_template_variables,
    load_message_templates,
    render_message,
    require_template,
)
from backend.app.services.transport import ConnectionStatus, MessagingTransport
from backend.app.settings import ALL_MESSAGE_TYPES, Settings
from backend.app.store import DuplicatePreventionLedger, StatusHistoryStore, ledger_key, new_id

logger = logging.getLogger("order_notifier.engine")

ROWS_CACHE_KEY = "rows"
FAILURE_BACKOFF_CAP_SECONDS = 60
MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000


@dataclass(frozen=True)
class EngineConfig:
    check_interval_seconds: int = 30
    reminder_delay_hours: int = 24
    rejected_offer_delay_hours: int = 48
    min_resend_minutes: int = 30
    reminder_resend_minutes: int = 720
    enabled_message_types: frozenset[MessageType] = frozenset(ALL_MESSAGE_TYPES)
    send_when_disconnected: bool = True
    stuck_cycle_seconds: int = 300
    row_cache_ttl_seconds: int = 5
    registration_cache_ttl_seconds: int = 24 * 3600
    source_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(3, 2000))
    transport_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(2, 3000))
    company_name: str = "متجر مصر أونلاين"
    support_phone: str = "01000000000"
    tracking_base_url: str = "https://track.example.com"

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            check_interval_seconds=settings.check_interval_seconds,
            reminder_delay_hours=settings.reminder_delay_hours,
            rejected_offer_delay_hours=settings.rejected_offer_delay_hours,
            min_resend_minutes=settings.min_resend_minutes,
            reminder_resend_minutes=settings.reminder_resend_minutes,
            enabled_message_types=settings.enabled_message_types,
            send_when_disconnected=settings.send_when_disconnected,
            stuck_cycle_seconds=settings.stuck_cycle_seconds,
            row_cache_ttl_seconds=settings.row_cache_ttl_seconds,
            registration_cache_ttl_seconds=settings.registration_cache_ttl_hours * 3600,
            source_policy=RetryPolicy(
                max_retries=settings.source_max_retries,
                base_delay_ms=settings.source_retry_base_delay_ms,
                max_delay_ms=settings.retry_max_delay_ms,
            ),
            transport_policy=RetryPolicy(
                max_retries=settings.transport_max_retries,
                base_delay_ms=settings.transport_retry_base_delay_ms,
                max_delay_ms=settings.retry_max_delay_ms,
            ),
            company_name=settings.company_name,
            support_phone=settings.support_phone,
            tracking_base_url=settings.tracking_base_url,
        )


class ReconciliationEngine:
    """Polls the order source and turns status transitions into dispatch jobs.

    One cycle runs at a time. Timer ticks that land while a cycle is in flight
    are skipped; manual runs are refused with CycleAlreadyRunningError.
    """

    def __init__(
        self,
        *,
        source: OrderSource,
        transport: MessagingTransport,
        queue: DispatchQueue,
        resilience: ResilienceWrapper,
        history: Optional[StatusHistoryStore] = None,
        ledger: Optional[DuplicatePreventionLedger] = None,
        config: Optional[EngineConfig] = None,
        templates: Optional[dict[MessageType, str]] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or EngineConfig()
        self._source = source
        self._transport = transport
        self._queue = queue
        self._resilience = resilience
        self.history = history or StatusHistoryStore()
        self.ledger = ledger or DuplicatePreventionLedger()
        self.templates = templates if templates is not None else load_message_templates()
        self._clock = clock
        self.row_cache = TTLCache(self.config.row_cache_ttl_seconds)
        self.registration_cache = TTLCache(self.config.registration_cache_ttl_seconds)
        self.phone_cache = TTLCache(self.config.row_cache_ttl_seconds)
        self.stats = PerformanceStatsCollector(
            {
                "rows": self.row_cache,
                "phones": self.phone_cache,
                "registration": self.registration_cache,
            }
        )

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._timer: Optional[threading.Thread] = None
        self._cycle_started_at_ms: Optional[int] = None
        self._last_cycle_at_ms: Optional[int] = None
        self._next_cycle_at_ms: Optional[int] = None
        self._last_error: Optional[str] = None
        self._last_report: Optional[CycleReport] = None
        self._last_row_summary: dict[str, Any] = {}

        queue.set_precheck(self.is_job_current)

    # lifecycle

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._stop_event is not None and not self._stop_event.is_set()

    def start(self) -> EngineStatus:
        with self._state_lock:
            if self._stop_event is not None and not self._stop_event.is_set():
                return self._status_locked()
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._next_cycle_at_ms = self._clock()
            self._timer = threading.Thread(
                target=self._timer_loop,
                args=(stop_event,),
                name="reconciliation-timer",
                daemon=True,
            )
            self._timer.start()
            logger.info(
                "engine_started check_interval_seconds=%s", self.config.check_interval_seconds
            )
            return self._status_locked()

    def stop(self) -> EngineStatus:
        with self._state_lock:
            if self._stop_event is not None:
                self._stop_event.set()
            self._stop_event = None
            self._timer = None
            self._next_cycle_at_ms = None
            logger.info("engine_stopped cycle_in_progress=%s", self._cycle_started_at_ms is not None)
            return self._status_locked()

    def _timer_loop(self, stop_event: threading.Event) -> None:
        delay_seconds = 0.0
        while not stop_event.wait(delay_seconds):
            succeeded = self._run_scheduled_cycle()
            delay_seconds = self._next_delay_seconds(succeeded)
            with self._state_lock:
                if not stop_event.is_set():
                    self._next_cycle_at_ms = self._clock() + int(delay_seconds * 1000)

    def _next_delay_seconds(self, succeeded: bool) -> float:
        interval = self.config.check_interval_seconds
        if succeeded:
            return float(interval)
        return float(min(interval * 2, FAILURE_BACKOFF_CAP_SECONDS))

    def _run_scheduled_cycle(self) -> bool:
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("cycle_skipped reason=already_running")
            return True
        try:
            report = self._execute_cycle()
            return not report.fetch_failed
        except Exception:
            logger.exception("cycle_crashed")
            return False
        finally:
            self._cycle_lock.release()

    def _acquire_manual_cycle(self) -> None:
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleAlreadyRunningError("a reconciliation cycle is already running")

    def _run_manual_cycle_locked(self) -> CycleReport:
        """Fresh-read cycle; the caller holds ``_cycle_lock``."""
        self.row_cache.delete(ROWS_CACHE_KEY)
        return self._execute_cycle()

    def run_once_now(self) -> CycleReport:
        self._acquire_manual_cycle()
        try:
            return self._run_manual_cycle_locked()
        finally:
            self._cycle_lock.release()

    # status

    def _status_locked(self) -> EngineStatus:
        return EngineStatus(
            is_running=self._stop_event is not None and not self._stop_event.is_set(),
            cycle_in_progress=self._cycle_started_at_ms is not None,
            check_interval_seconds=self.config.check_interval_seconds,
            last_cycle_at_ms=self._last_cycle_at_ms,
            next_cycle_at_ms=self._next_cycle_at_ms,
            last_error=self._last_error,
        )

    def status(self) -> EngineStatus:
        with self._state_lock:
            return self._status_locked()

    @property
    def last_report(self) -> Optional[CycleReport]:
        with self._state_lock:
            return self._last_report

    # cycle

    def _execute_cycle(self) -> CycleReport:
        started_at_ms = self._clock()
        perf_start = time.perf_counter()
        with self._state_lock:
            self._cycle_started_at_ms = started_at_ms
        report = CycleReport(started_at_ms=started_at_ms)
        try:
            try:
                rows = self._fetch_rows()
            except Exception as exc:
                report.fetch_failed = True
                report.errors.append(
                    RowError(reason=_fetch_failure_reason(exc), detail=str(exc))
                )
                if isinstance(exc, NotifierError):
                    logger.error("cycle_fetch_failed error=%s", exc)
                else:
                    logger.exception("cycle_fetch_failed")
                with self._state_lock:
                    self._last_error = f"{type(exc).__name__}: {exc}"
                return self._finish_cycle(report, perf_start)

            report.total_rows = len(rows)
            connection = self._connection_status()
            for row in rows:
                try:
                    self._process_row(row, report, connection)
                except Exception as exc:
                    self._row_error(report, row, "unexpected_error", str(exc))
                    logger.exception(
                        "row_failed order_id=%s row_index=%s", row.order_id, row.row_index
                    )
            with self._state_lock:
                self._last_error = None
                self._last_row_summary = self._summarize(rows, report)
            return self._finish_cycle(report, perf_start)
        finally:
            with self._state_lock:
                self._cycle_started_at_ms = None

    def _finish_cycle(self, report: CycleReport, perf_start: float) -> CycleReport:
        report.finished_at_ms = self._clock()
        report.duration_ms = round((time.perf_counter() - perf_start) * 1000.0, 2)
        self.stats.record_cycle(
            report.duration_ms, dispatched=report.dispatched, suppressed=report.suppressed
        )
        with self._state_lock:
            self._last_report = report
            self._last_cycle_at_ms = report.finished_at_ms
        logger.info(
            "cycle_complete rows=%s new=%s changed=%s dispatched=%s suppressed=%s errors=%s "
            "duration_ms=%.2f",
            report.total_rows,
            report.new_orders,
            report.status_changes,
            report.dispatched,
            report.suppressed,
            len(report.errors),
            report.duration_ms,
        )
        return report

    def _fetch_rows(self) -> list[OrderRow]:
        cached = self.row_cache.get(ROWS_CACHE_KEY)
        if cached is not None:
            return cached
        rows = self._resilience.execute_with_retry(
            self._fetch_from_source,
            "fetch_rows",
            self.config.source_policy,
            dependency="source",
        )
        self.row_cache.set(ROWS_CACHE_KEY, rows)
        return rows

    def _fetch_from_source(self) -> list[OrderRow]:
        self.stats.record_api_call("source_fetch")
        return self._source.fetch_rows()

    def _connection_status(self) -> ConnectionStatus:
        try:
            return self._transport.connection_status()
        except Exception as exc:
            logger.warning("transport_status_failed error=%s", exc)
            return ConnectionStatus(is_connected=False, session_exists=False)

    def _row_error(
        self,
        report: CycleReport,
        row: OrderRow,
        reason: str,
        detail: str,
        message_type: Optional[MessageType] = None,
    ) -> None:
        report.errors.append(
            RowError(
                row_index=row.row_index,
                order_id=row.order_id,
                message_type=message_type,
                reason=reason,
                detail=detail,
            )
        )

    def _min_interval_ms(self, message_type: MessageType) -> int:
        if message_type == MessageType.reminder:
            return self.config.reminder_resend_minutes * MS_PER_MINUTE
        return self.config.min_resend_minutes * MS_PER_MINUTE

    def _process_row(
        self, row: OrderRow, report: CycleReport, connection: ConnectionStatus
    ) -> None:
        now = self._clock()
        order_id = row.order_id.strip()
        if (
            not order_id
            or not row.name.strip()
            or not (row.phone_raw.strip() or row.whatsapp_raw.strip())
        ):
            report.invalid_rows += 1
            self._row_error(report, row, "missing_fields", "row needs an order id, a name and a phone")
            return

        phone = self._canonical_phone(row)
        if not phone.is_valid:
            report.invalid_phones += 1
            self._row_error(report, row, "invalid_phone", "; ".join(phone.validation_errors))
            return

        status = normalize_status(row.status)
        entry = self.history.get(order_id)
        is_new = entry is None
        if entry is not None and entry.last_status == status:
            report.unchanged += 1
            self.history.touch(order_id, now)
            return
        if is_new:
            report.new_orders += 1
        else:
            report.status_changes += 1

        message_type = resolve_message_type(status)
        if message_type == MessageType.unknown:
            self.history.record(order_id, status, now)
            if is_terminal_status(status):
                report.terminal += 1
                logger.info("order_final order_id=%s status=%s", order_id, status)
                return
            report.unknown_statuses += 1
            error = UnknownStatusError(status)
            self._row_error(report, row, "unknown_status", str(error), MessageType.unknown)
            logger.warning("unknown_status order_id=%s status=%r", order_id, status)
            return

        if message_type not in self.config.enabled_message_types:
            report.disabled += 1
            self.history.record(order_id, status, now)
            return

        if not self._is_registered(row, phone, connection, report, message_type):
            return

        key = ledger_key(order_id, message_type)
        if self.ledger.should_suppress(key, now, self._min_interval_ms(message_type)):
            report.suppressed += 1
            self.history.record(order_id, status, now)
            logger.info(
                "dispatch_suppressed order_id=%s message_type=%s key=%s",
                order_id,
                message_type.value,
                key,
            )
            return

        try:
            job = self._build_job(row, phone, message_type, status, now)
        except ConfigurationError as exc:
            self._row_error(report, row, "template_missing", str(exc), message_type)
            return

        delay_ms = 0
        if message_type == MessageType.rejected_offer:
            delay_ms = self.config.rejected_offer_delay_hours * MS_PER_HOUR
        try:
            self._queue.enqueue(job, delay_ms=delay_ms)
        except DispatchQueueError as exc:
            report.enqueue_failures += 1
            self._row_error(report, row, "enqueue_failed", str(exc), message_type)
            logger.error(
                "enqueue_failed order_id=%s message_type=%s error=%s",
                order_id,
                message_type.value,
                exc,
            )
            return

        self.ledger.record(key, now)
        self.history.record(order_id, status, now)
        report.dispatched += 1

        if message_type == MessageType.new_order:
            self._schedule_reminder(row, phone, status, now, report)

    def _canonical_phone(self, row: OrderRow) -> CanonicalPhone:
        key = f"{row.phone_raw}|{row.whatsapp_raw}"
        cached = self.phone_cache.get(key)
        if cached is not None:
            return cached
        phone = canonicalize_row_phone(row.phone_raw, row.whatsapp_raw)
        self.phone_cache.set(key, phone)
        return phone

    def _is_registered(
        self,
        row: OrderRow,
        phone: CanonicalPhone,
        connection: ConnectionStatus,
        report: CycleReport,
        message_type: MessageType,
    ) -> bool:
        if not connection.is_connected:
            if self.config.send_when_disconnected:
                return True
            report.not_registered += 1
            self._row_error(
                report, row, "transport_disconnected", "registration unknown", message_type
            )
            return False

        registered = self.registration_cache.get(phone.normalized)
        if registered is None:
            try:
                registered = self._resilience.execute_with_retry(
                    lambda: self._check_registration(phone.normalized),
                    f"is_registered:{row.order_id}",
                    self.config.transport_policy,
                    dependency="transport",
                )
            except NotifierError as exc:
                logger.warning(
                    "registration_check_failed order_id=%s error=%s", row.order_id, exc
                )
                if self.config.send_when_disconnected:
                    return True
                report.not_registered += 1
                self._row_error(report, row, "registration_unknown", str(exc), message_type)
                return False
            self.registration_cache.set(phone.normalized, registered)

        if not registered:
            report.not_registered += 1
            self._row_error(
                report, row, "not_registered", f"{phone.normalized} has no WhatsApp account", message_type
            )
            return False
        return True

    def _check_registration(self, phone: str) -> bool:
        self.stats.record_api_call("registration_check")
        return bool(self._transport.is_registered(phone))

    def _build_job(
        self,
        row: OrderRow,
        phone: CanonicalPhone,
        message_type: MessageType,
        status: str,
        now: int,
    ) -> DispatchJob:
        template = require_template(self.templates, message_type)
        variables = build_template_variables(
            row,
            phone=phone.normalized,
            company_name=self.config.company_name,
            support_phone=self.config.support_phone,
            tracking_base_url=self.config.tracking_base_url,
            now=datetime.fromtimestamp(now / 1000),
        )
        delayed = message_type in (MessageType.rejected_offer, MessageType.reminder)
        return DispatchJob(
            id=new_id("job"),
            order_id=row.order_id.strip(),
            phone=phone.normalized,
            message_type=message_type,
            rendered_message=render_message(template, variables),
            customer_name=row.name.strip(),
            expected_status=status if delayed else None,
            created_at_ms=now,
        )

    def _schedule_reminder(
        self,
        row: OrderRow,
        phone: CanonicalPhone,
        status: str,
        now: int,
        report: CycleReport,
    ) -> None:
        if MessageType.reminder not in self.config.enabled_message_types:
            return
        key = ledger_key(row.order_id.strip(), MessageType.reminder)
        if self.ledger.should_suppress(key, now, self._min_interval_ms(MessageType.reminder)):
            return
        try:
            job = self._build_job(row, phone, MessageType.reminder, status, now)
            self._queue.enqueue(job, delay_ms=self.config.reminder_delay_hours * MS_PER_HOUR)
        except (ConfigurationError, DispatchQueueError) as exc:
            logger.warning("reminder_not_scheduled order_id=%s error=%s", row.order_id, exc)
            return
        self.ledger.record(key, now)
        report.reminders_scheduled += 1

    def is_job_current(self, job: DispatchJob) -> bool:
        entry = self.history.get(job.order_id)
        return entry is not None and entry.last_status == job.expected_status

    def _summarize(self, rows: list[OrderRow], report: CycleReport) -> dict[str, Any]:
        statuses = Counter(status_label(row.status) for row in rows)
        invalid = report.invalid_rows + report.invalid_phones
        return {
            "processing": {
                "total_orders": report.total_rows,
                "valid_orders": report.total_rows - invalid,
                "invalid_orders": invalid,
                "egyptian_numbers": report.total_rows - invalid,
            },
            "phone_numbers": {
                "valid": report.total_rows - invalid,
                "invalid": report.invalid_phones,
                "missing_fields": report.invalid_rows,
            },
            "order_statuses": dict(statuses),
        }

    # maintenance

    def reset_status_history(self) -> int:
        self.row_cache.clear()
        return self.history.reset()

    def reset_duplicate_prevention(self) -> int:
        return self.ledger.reset()

    def reset_message_tracking(self) -> dict[str, int]:
        return {
            "status_history_cleared": self.reset_status_history(),
            "duplicate_ledger_cleared": self.reset_duplicate_prevention(),
        }

    def force_process_new_orders(self) -> tuple[int, CycleReport]:
        self._acquire_manual_cycle()
        try:
            pending = [
                entry.order_id
                for entry in self.history.entries()
                if resolve_message_type(entry.last_status) == MessageType.new_order
            ]
            self.ledger.clear_message_type(MessageType.new_order)
            forgotten = self.history.forget(pending)
            logger.info("force_new_orders forgotten=%s", forgotten)
            return forgotten, self._run_manual_cycle_locked()
        finally:
            self._cycle_lock.release()

    # observability

    def get_status_history(self) -> list[StatusHistoryEntry]:
        return self.history.entries()

    def get_detailed_stats(self) -> dict[str, Any]:
        with self._state_lock:
            summary = dict(self._last_row_summary)
            report = self._last_report
        if not summary:
            summary = {
                "processing": {
                    "total_orders": 0,
                    "valid_orders": 0,
                    "invalid_orders": 0,
                    "egyptian_numbers": 0,
                },
                "phone_numbers": {"valid": 0, "invalid": 0, "missing_fields": 0},
                "order_statuses": {},
            }
        summary["tracked_orders"] = len(self.history)
        summary["last_cycle"] = report.model_dump(mode="json") if report else None
        return summary

    def get_performance_stats(self) -> dict[str, Any]:
        snapshot = self.stats.snapshot()
        resilience = self._resilience.get_stats()
        snapshot["resilience"] = {
            "total_retries": resilience["total_retries"],
            "failed_retries": resilience["failed_retries"],
            "circuit_breaker_state": resilience["circuit_breaker_state"],
        }
        return snapshot

    def get_duplicate_prevention_stats(self) -> dict[str, Any]:
        stats = self.ledger.stats()
        stats["min_resend_minutes"] = self.config.min_resend_minutes
        stats["reminder_resend_minutes"] = self.config.reminder_resend_minutes
        return stats

    def _transport_probe(self) -> Optional[str]:
        connection = self._transport.connection_status()
        if connection.is_connected:
            return None
        if connection.session_exists:
            return "session exists but is not connected"
        return "not connected; registration checks are skipped"

    def perform_health_check(self) -> HealthReport:
        report = self._resilience.perform_health_check(
            {
                "source": self._source.check_configuration,
                "transport": self._transport_probe,
            }
        )
        now = self._clock()
        with self._state_lock:
            started_at_ms = self._cycle_started_at_ms
            running = self._stop_event is not None and not self._stop_event.is_set()
            last_error = self._last_error

        engine = ServiceHealth(status=HealthVerdict.healthy)
        if started_at_ms is not None and now - started_at_ms > self.config.stuck_cycle_seconds * 1000:
            elapsed = (now - started_at_ms) // 1000
            engine = ServiceHealth(
                status=HealthVerdict.critical,
                detail=f"last cycle has not completed in {elapsed} seconds",
            )
            report.recommendations.append(
                f"last cycle has not completed in {elapsed} seconds; inspect the source and transport"
            )
        elif last_error:
            engine = ServiceHealth(status=HealthVerdict.degraded, detail=last_error)
            report.recommendations.append("the last cycle could not fetch rows; check the source")
        elif not running:
            engine = ServiceHealth(status=HealthVerdict.degraded, detail="engine is stopped")
            report.recommendations.append("start the automation to resume polling")
        report.services["engine"] = engine
        report.overall = worst_verdict(*(item.status for item in report.services.values()))
        return report

    def metrics_gauges(self) -> dict[str, float]:
        performance = self.stats.snapshot()
        return {
            "engine_running": 1.0 if self.is_running else 0.0,
            "cycles_total": performance["total_processing_cycles"],
            "dispatched_total": performance["total_dispatched"],
            "suppressed_total": performance["total_suppressed"],
            "api_calls_total": performance["total_api_calls"],
            "cache_hits_total": performance["cache_hits"],
            "cache_misses_total": performance["cache_misses"],
            "status_history_entries": len(self.history),
            "duplicate_ledger_entries": len(self.ledger),
            "circuit_open": (
                1.0 if self._resilience.circuit_breaker_state() == CircuitState.open else 0.0
            ),
        }


def _fetch_failure_reason(exc: BaseException) -> str:
    if isinstance(exc, ConfigurationError):
        return "configuration"
    if isinstance(exc, NotifierError):
        return "source_unavailable"
    return "fetch_failed"
