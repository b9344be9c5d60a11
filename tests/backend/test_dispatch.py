from __future__ import annotations

import pytest

from backend.app.errors import DispatchQueueError, TransientNetworkError, ValidationError
from backend.app.models import DispatchJob, MessageType, QueueName
from backend.app.services.dispatch import queue_for

HOUR = 3_600_000


def _job(order_id: str = "A1", message_type: MessageType = MessageType.new_order, **extra) -> DispatchJob:
    return DispatchJob(
        id=f"job_{order_id}_{message_type.value}",
        order_id=order_id,
        phone="201012345678",
        message_type=message_type,
        rendered_message=f"hello {order_id}",
        created_at_ms=0,
        **extra,
    )


def test_queue_for_routes_by_message_type() -> None:
    assert queue_for(MessageType.new_order) == QueueName.message
    assert queue_for(MessageType.shipped) == QueueName.message
    assert queue_for(MessageType.reminder) == QueueName.reminder
    assert queue_for(MessageType.rejected_offer) == QueueName.rejected_offer


def test_immediate_job_is_sent_when_processed(queue, fake_transport) -> None:
    assert queue.enqueue(_job()) == QueueName.message
    assert queue.stats()["message"].waiting == 1

    assert queue.process_due() == 1
    assert fake_transport.sent == [("201012345678", "hello A1")]
    stats = queue.stats()["message"]
    assert stats.waiting == 0
    assert stats.completed == 1


def test_delayed_job_waits_until_due(queue, fake_transport, fake_clock) -> None:
    queue.enqueue(_job(message_type=MessageType.rejected_offer), delay_ms=48 * HOUR)
    assert queue.process_due() == 0
    assert [job.order_id for job in queue.pending(QueueName.rejected_offer)] == ["A1"]

    fake_clock.advance(hours=47)
    assert queue.process_due() == 0
    fake_clock.advance(hours=1)
    assert queue.process_due() == 1
    assert len(fake_transport.sent) == 1
    assert queue.stats()["rejected-offer"].completed == 1


def test_jobs_run_in_due_order(queue, fake_transport, fake_clock) -> None:
    queue.enqueue(_job("late", MessageType.reminder), delay_ms=2 * HOUR)
    queue.enqueue(_job("early", MessageType.reminder), delay_ms=HOUR)
    queue.enqueue(_job("now"))

    queue.process_due(fake_clock() + 3 * HOUR)
    assert [message for _, message in fake_transport.sent] == ["hello now", "hello early", "hello late"]


def test_precheck_skips_stale_delayed_jobs(queue, fake_transport, fake_clock) -> None:
    queue.set_precheck(lambda job: job.order_id != "moved")
    queue.enqueue(_job("moved", MessageType.reminder, expected_status=""), delay_ms=HOUR)
    queue.enqueue(_job("same", MessageType.reminder, expected_status=""), delay_ms=HOUR)
    fake_clock.advance(hours=1)

    assert queue.process_due() == 2
    assert [message for _, message in fake_transport.sent] == ["hello same"]
    stats = queue.stats()["reminder"]
    assert stats.skipped == 1
    assert stats.completed == 1


def test_failed_send_is_recorded(queue, fake_transport) -> None:
    fake_transport.send_error = TransientNetworkError("gateway returned 503 for /send")
    queue.enqueue(_job())
    queue.process_due()

    assert queue.stats()["message"].failed == 1
    failures = queue.recent_failures()
    assert len(failures) == 1
    assert failures[0].attempts == 1
    assert "503" in failures[0].last_error

    fake_transport.send_error = ValidationError("gateway rejected /send with status 400")
    queue.enqueue(_job("B2"))
    queue.process_due()
    assert queue.stats()["message"].failed == 2


def test_closed_queue_refuses_jobs(queue) -> None:
    queue.close()
    with pytest.raises(DispatchQueueError):
        queue.enqueue(_job())
    assert not queue.is_running
