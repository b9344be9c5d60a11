from __future__ import annotations

from decimal import Decimal

import pytest

from backend.app.errors import ConfigurationError, CycleAlreadyRunningError
from backend.app.models import HealthVerdict, MessageType, QueueName
from backend.app.services.engine import EngineConfig, ReconciliationEngine
from backend.app.services.resilience import RetryPolicy


def test_new_order_then_status_change(engine, fake_source, queue, make_row) -> None:
    fake_source.rows = [make_row("A1", status="")]
    assert engine.history.get("A1") is None

    first = engine.run_once_now()
    assert first.total_rows == 1
    assert first.new_orders == 1
    assert first.dispatched == 1
    assert first.reminders_scheduled == 1
    assert first.errors == []
    assert engine.ledger.get("A1_newOrder") is not None
    assert engine.ledger.get("reminder_A1") is not None
    assert engine.history.get("A1").last_status == ""
    [job] = queue.pending(QueueName.message)
    assert job.message_type == MessageType.new_order
    assert job.phone == "201012345678"
    assert job.expected_status is None

    fake_source.rows = [make_row("A1", status="تم الشحن")]
    second = engine.run_once_now()
    assert second.new_orders == 0
    assert second.status_changes == 1
    assert second.dispatched == 1
    assert engine.ledger.get("A1_shipped") is not None
    assert engine.history.get("A1").last_status == "تم الشحن"
    assert [job.message_type for job in queue.pending(QueueName.message)] == [
        MessageType.new_order,
        MessageType.shipped,
    ]

    third = engine.run_once_now()
    assert third.unchanged == 1
    assert third.dispatched == 0


def test_reminder_is_skipped_once_the_order_moves_on(
    engine, fake_source, fake_transport, queue, fake_clock, make_row
) -> None:
    fake_source.rows = [make_row("A1", status="")]
    engine.run_once_now()
    [reminder] = queue.pending(QueueName.reminder)
    assert reminder.expected_status == ""

    fake_source.rows = [make_row("A1", status="تم التأكيد")]
    engine.run_once_now()

    fake_clock.advance(hours=24)
    assert queue.process_due() == 3
    assert len(fake_transport.sent) == 2
    assert queue.stats()["reminder"].skipped == 1


def test_reminder_is_sent_when_status_is_unchanged(
    engine, fake_source, fake_transport, queue, fake_clock, make_row
) -> None:
    fake_source.rows = [make_row("A1", status="", total_price=Decimal("300"))]
    engine.run_once_now()
    queue.process_due()
    fake_clock.advance(hours=24)

    assert queue.process_due() == 1
    assert queue.stats()["reminder"].completed == 1
    _, message = fake_transport.sent[-1]
    assert "A1" in message
    assert "300" in message


def test_duplicate_send_is_suppressed_within_window(engine, fake_source, fake_clock, make_row) -> None:
    fake_source.rows = [make_row("A1", status="")]
    engine.run_once_now()

    engine.reset_status_history()
    repeated = engine.run_once_now()
    assert repeated.new_orders == 1
    assert repeated.suppressed == 1
    assert repeated.dispatched == 0
    assert engine.history.get("A1") is not None

    fake_clock.advance(minutes=31)
    engine.reset_status_history()
    later = engine.run_once_now()
    assert later.dispatched == 1
    assert later.reminders_scheduled == 0
    assert engine.ledger.stats_by_type() == {"newOrder": 1, "reminder": 1}


def test_same_order_twice_in_one_cycle_is_processed_in_order(engine, fake_source, make_row) -> None:
    fake_source.rows = [make_row("A1", status=""), make_row("A1", status="تم الشحن")]
    report = engine.run_once_now()
    assert report.new_orders == 1
    assert report.status_changes == 1
    assert report.dispatched == 2
    assert engine.history.get("A1").last_status == "تم الشحن"


def test_unknown_status_is_reported_once(engine, fake_source, make_row) -> None:
    fake_source.rows = [make_row("A1", status="حالة غريبة")]
    report = engine.run_once_now()
    assert report.unknown_statuses == 1
    assert report.dispatched == 0
    [error] = report.errors
    assert error.reason == "unknown_status"
    assert error.message_type == MessageType.unknown
    assert engine.history.get("A1").last_status == "حالة غريبة"

    again = engine.run_once_now()
    assert again.unchanged == 1
    assert again.errors == []


def test_terminal_status_is_not_an_error(engine, fake_source, make_row) -> None:
    fake_source.rows = [make_row("A1", status="تم التوصيل")]
    report = engine.run_once_now()
    assert report.terminal == 1
    assert report.unknown_statuses == 0
    assert report.errors == []
    assert report.dispatched == 0


def test_invalid_rows_are_skipped_without_history(engine, fake_source, make_row) -> None:
    fake_source.rows = [
        make_row("A1", phone="0212345"),
        make_row("B2", name="  "),
        make_row("", phone="01012345678"),
        make_row("C3", phone="", whatsapp=""),
    ]
    report = engine.run_once_now()
    assert report.invalid_phones == 1
    assert report.invalid_rows == 3
    assert [error.reason for error in report.errors] == [
        "invalid_phone",
        "missing_fields",
        "missing_fields",
        "missing_fields",
    ]
    assert len(engine.history) == 0


def test_whatsapp_column_is_preferred(engine, fake_source, queue, make_row) -> None:
    fake_source.rows = [make_row("A1", phone="01012345678", whatsapp="+20 111 222 3334")]
    engine.run_once_now()
    [job] = queue.pending(QueueName.message)
    assert job.phone == "201112223334"


def test_rejected_offer_is_delayed(engine, fake_source, fake_transport, queue, fake_clock, make_row) -> None:
    fake_source.rows = [make_row("A1", status="مرفوض", total_price=Decimal("250"), product_name="Serum")]
    report = engine.run_once_now()
    assert report.dispatched == 1
    assert report.reminders_scheduled == 0
    [job] = queue.pending(QueueName.rejected_offer)
    assert job.expected_status == "مرفوض"

    assert queue.process_due() == 0
    fake_clock.advance(hours=48)
    assert queue.process_due() == 1
    _, message = fake_transport.sent[0]
    assert "200" in message
    assert "Serum" in message


def test_rejected_offer_is_dropped_if_order_recovers(
    engine, fake_source, fake_transport, queue, fake_clock, make_row
) -> None:
    fake_source.rows = [make_row("A1", status="مرفوض")]
    engine.run_once_now()
    fake_source.rows = [make_row("A1", status="تم الشحن")]
    engine.run_once_now()

    fake_clock.advance(hours=48)
    queue.process_due()
    assert len(fake_transport.sent) == 1
    assert queue.stats()["rejected-offer"].skipped == 1
    assert queue.stats()["message"].completed == 1


def test_disabled_message_types_only_update_history(
    fake_source, fake_transport, queue, resilience, fake_clock, make_row
) -> None:
    engine = ReconciliationEngine(
        source=fake_source,
        transport=fake_transport,
        queue=queue,
        resilience=resilience,
        config=EngineConfig(
            enabled_message_types=frozenset({MessageType.shipped}),
            row_cache_ttl_seconds=0,
        ),
        clock=fake_clock,
    )
    fake_source.rows = [make_row("A1", status="")]
    report = engine.run_once_now()
    assert report.disabled == 1
    assert report.dispatched == 0
    assert queue.pending() == []
    assert engine.history.get("A1") is not None


def test_unregistered_number_is_skipped_and_cached(engine, fake_source, fake_transport, make_row) -> None:
    fake_transport.unregistered = {"201012345678"}
    fake_source.rows = [make_row("A1")]

    report = engine.run_once_now()
    assert report.not_registered == 1
    assert report.errors[0].reason == "not_registered"
    assert engine.history.get("A1") is None

    engine.run_once_now()
    assert fake_transport.registration_calls == 1


def test_disconnected_transport_still_enqueues(engine, fake_source, fake_transport, make_row) -> None:
    fake_transport.connected = False
    fake_source.rows = [make_row("A1")]
    report = engine.run_once_now()
    assert report.dispatched == 1
    assert fake_transport.registration_calls == 0


def test_enqueue_failure_leaves_state_untouched(engine, fake_source, queue, make_row) -> None:
    queue.close()
    fake_source.rows = [make_row("A1")]
    report = engine.run_once_now()
    assert report.enqueue_failures == 1
    assert report.errors[0].reason == "enqueue_failed"
    assert engine.history.get("A1") is None
    assert engine.ledger.get("A1_newOrder") is None


def test_missing_template_is_reported(engine, fake_source, make_row) -> None:
    engine.templates[MessageType.shipped] = ""
    fake_source.rows = [make_row("A1", status="تم الشحن")]
    report = engine.run_once_now()
    assert report.errors[0].reason == "template_missing"
    assert engine.history.get("A1") is None


def test_transient_fetch_failure_is_retried(engine, fake_source, make_row) -> None:
    fake_source.failures_remaining = 1
    fake_source.rows = [make_row("A1")]
    report = engine.run_once_now()
    assert not report.fetch_failed
    assert fake_source.fetch_calls == 2
    assert report.dispatched == 1


def test_fetch_failure_is_surfaced(engine, fake_source) -> None:
    fake_source.failures_remaining = 5
    report = engine.run_once_now()
    assert report.fetch_failed
    assert report.errors[0].reason == "source_unavailable"
    assert "RetryExhaustedError" in engine.status().last_error

    fake_source.failures_remaining = 0
    fake_source.error = ConfigurationError("GOOGLE_SERVICE_ACCOUNT_KEY is not configured")
    report = engine.run_once_now()
    assert report.errors[0].reason == "configuration"

    health = engine.perform_health_check()
    assert health.services["engine"].status == HealthVerdict.degraded
    assert "ConfigurationError" in health.services["engine"].detail

    fake_source.error = None
    engine.run_once_now()
    assert engine.status().last_error is None


def test_failure_backoff_is_capped(engine) -> None:
    assert engine._next_delay_seconds(True) == 30.0
    assert engine._next_delay_seconds(False) == 60.0


def test_manual_run_is_refused_while_a_cycle_is_running(engine, fake_source, make_row) -> None:
    observed: list[str] = []

    def reenter() -> None:
        if observed:
            return
        assert engine.status().cycle_in_progress
        with pytest.raises(CycleAlreadyRunningError):
            engine.run_once_now()
        with pytest.raises(CycleAlreadyRunningError):
            engine.force_process_new_orders()
        observed.append("refused")

    fake_source.on_fetch = reenter
    fake_source.rows = [make_row("A1")]
    report = engine.run_once_now()
    assert observed == ["refused"]
    assert report.dispatched == 1
    assert not engine.status().cycle_in_progress


def test_stuck_cycle_is_reported_as_critical(engine, fake_source, fake_clock) -> None:
    reports = []

    def stall() -> None:
        fake_clock.advance(ms=301_000)
        reports.append(engine.perform_health_check())

    fake_source.on_fetch = stall
    engine.run_once_now()

    [health] = reports
    assert health.overall == HealthVerdict.critical
    assert health.services["engine"].status == HealthVerdict.critical
    assert "301 seconds" in health.services["engine"].detail


def test_stopped_engine_is_degraded(engine) -> None:
    health = engine.perform_health_check()
    assert health.overall == HealthVerdict.degraded
    assert health.services["engine"].detail == "engine is stopped"
    assert health.services["source"].status == HealthVerdict.healthy


def test_start_and_stop(engine) -> None:
    started = engine.start()
    assert started.is_running
    assert started.next_cycle_at_ms is not None
    assert engine.start().is_running

    stopped = engine.stop()
    assert not stopped.is_running
    assert stopped.next_cycle_at_ms is None
    assert not engine.is_running


def test_empty_fetch_keeps_history(engine, fake_source, make_row) -> None:
    fake_source.rows = [make_row("A1")]
    engine.run_once_now()
    fake_source.rows = []
    report = engine.run_once_now()
    assert report.total_rows == 0
    assert engine.history.get("A1") is not None


def test_force_process_new_orders_resends_pending_orders(engine, fake_source, make_row) -> None:
    fake_source.rows = [make_row("A1", status=""), make_row("B2", status="تم الشحن")]
    engine.run_once_now()

    forgotten, report = engine.force_process_new_orders()
    assert forgotten == 1
    assert report.new_orders == 1
    assert report.unchanged == 1
    assert report.dispatched == 1
    assert report.reminders_scheduled == 0


def test_force_process_new_orders_refused_leaves_state_untouched(engine, fake_source, make_row) -> None:
    fake_source.rows = [make_row("A1", status="")]
    engine.run_once_now()
    ledger_before = engine.get_duplicate_prevention_stats()["total_entries"]
    history_before = engine.get_status_history()
    fetches_before = fake_source.fetch_calls

    engine._cycle_lock.acquire()
    try:
        with pytest.raises(CycleAlreadyRunningError):
            engine.force_process_new_orders()
    finally:
        engine._cycle_lock.release()

    assert engine.get_duplicate_prevention_stats()["total_entries"] == ledger_before
    assert engine.get_status_history() == history_before
    assert engine.history.get("A1") is not None
    assert fake_source.fetch_calls == fetches_before


def test_reset_message_tracking(engine, fake_source, make_row) -> None:
    fake_source.rows = [make_row("A1"), make_row("B2", phone="01198765432")]
    engine.run_once_now()
    assert engine.reset_message_tracking() == {
        "status_history_cleared": 2,
        "duplicate_ledger_cleared": 4,
    }
    assert engine.get_status_history() == []
    assert engine.get_duplicate_prevention_stats()["total_entries"] == 0


def test_detailed_and_performance_stats(engine, fake_source, make_row) -> None:
    fake_source.rows = [
        make_row("A1", status=""),
        make_row("B2", status="تم الشحن", phone="01198765432"),
        make_row("C3", status="لم يرد", phone="0212345"),
    ]
    engine.run_once_now()

    stats = engine.get_detailed_stats()
    assert stats["processing"]["total_orders"] == 3
    assert stats["processing"]["invalid_orders"] == 1
    assert stats["phone_numbers"]["invalid"] == 1
    assert stats["order_statuses"] == {"غير محدد": 1, "تم الشحن": 1, "لم يرد": 1}
    assert stats["tracked_orders"] == 2
    assert stats["last_cycle"]["dispatched"] == 2

    performance = engine.get_performance_stats()
    assert performance["total_processing_cycles"] == 1
    assert performance["total_dispatched"] == 2
    assert performance["api_calls"]["source_fetch"] == 1
    assert performance["api_calls"]["registration_check"] == 2
    assert set(performance["caches"]) == {"rows", "phones", "registration"}
    assert performance["resilience"]["circuit_breaker_state"] == "closed"

    gauges = engine.metrics_gauges()
    assert gauges["dispatched_total"] == 2
    assert gauges["status_history_entries"] == 2
    assert gauges["engine_running"] == 0.0


def test_manual_run_bypasses_row_cache(fake_source, fake_transport, queue, resilience, fake_clock) -> None:
    engine = ReconciliationEngine(
        source=fake_source,
        transport=fake_transport,
        queue=queue,
        resilience=resilience,
        config=EngineConfig(row_cache_ttl_seconds=60, source_policy=RetryPolicy(0, 0)),
        clock=fake_clock,
    )
    engine.run_once_now()
    engine.run_once_now()
    assert fake_source.fetch_calls == 2

    assert engine._run_scheduled_cycle()
    assert fake_source.fetch_calls == 2


def test_phone_validation_is_cached_between_cycles(
    fake_source, fake_transport, queue, resilience, fake_clock, make_row
) -> None:
    engine = ReconciliationEngine(
        source=fake_source,
        transport=fake_transport,
        queue=queue,
        resilience=resilience,
        config=EngineConfig(row_cache_ttl_seconds=60, source_policy=RetryPolicy(0, 0)),
        clock=fake_clock,
    )
    fake_source.rows = [make_row("A1"), make_row("B2", phone="0212345")]
    first = engine.run_once_now()
    second = engine.run_once_now()

    assert first.invalid_phones == second.invalid_phones == 1
    phones = engine.get_performance_stats()["caches"]["phones"]
    assert phones["misses"] == 2
    assert phones["hits"] == 2
    assert phones["size"] == 2
