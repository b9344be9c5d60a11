from __future__ import annotations

import heapq
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional

from backend.app.errors import DispatchQueueError, NotifierError, RetryExhaustedError
from backend.app.models import DispatchJob, MessageType, QueueName, QueueStats, now_ms
from backend.app.services.resilience import ResilienceWrapper, RetryPolicy
from backend.app.services.transport import MessagingTransport

logger = logging.getLogger("order_notifier.dispatch")

RECENT_FAILURES_LIMIT = 20


@dataclass(order=True)
class _ScheduledJob:
    due_at_ms: int
    sequence: int
    queue: QueueName = field(compare=False)
    job: DispatchJob = field(compare=False)


def queue_for(message_type: MessageType) -> QueueName:
    if message_type == MessageType.reminder:
        return QueueName.reminder
    if message_type == MessageType.rejected_offer:
        return QueueName.rejected_offer
    return QueueName.message


class DispatchQueue:
    """Delayed job queue that sends rendered messages through the transport.

    Jobs carrying ``expected_status`` are re-checked through ``precheck`` when
    they come due and dropped as skipped if the order has moved on.
    """

    def __init__(
        self,
        *,
        transport: MessagingTransport,
        resilience: ResilienceWrapper,
        send_policy: Optional[RetryPolicy] = None,
        precheck: Optional[Callable[[DispatchJob], bool]] = None,
        clock: Callable[[], int] = now_ms,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._transport = transport
        self._resilience = resilience
        self._send_policy = send_policy
        self._precheck = precheck
        self._clock = clock
        self.poll_interval_seconds = poll_interval_seconds
        self._lock = Lock()
        self._heap: list[_ScheduledJob] = []
        self._sequence = itertools.count()
        self._stats = {queue: QueueStats() for queue in QueueName}
        self._recent_failures: deque[DispatchJob] = deque(maxlen=RECENT_FAILURES_LIMIT)
        self._closed = False
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def set_precheck(self, precheck: Optional[Callable[[DispatchJob], bool]]) -> None:
        self._precheck = precheck

    def enqueue(self, job: DispatchJob, delay_ms: int = 0) -> QueueName:
        queue = queue_for(job.message_type)
        due_at_ms = self._clock() + max(0, delay_ms)
        with self._lock:
            if self._closed:
                raise DispatchQueueError("dispatch queue is closed")
            heapq.heappush(
                self._heap,
                _ScheduledJob(
                    due_at_ms=due_at_ms,
                    sequence=next(self._sequence),
                    queue=queue,
                    job=job,
                ),
            )
            self._stats[queue].waiting += 1
        logger.info(
            "job_enqueued queue=%s order_id=%s message_type=%s delay_ms=%s",
            queue.value,
            job.order_id,
            job.message_type.value,
            delay_ms,
        )
        return queue

    def process_due(self, now: Optional[int] = None) -> int:
        current = self._clock() if now is None else now
        processed = 0
        while True:
            with self._lock:
                if not self._heap or self._heap[0].due_at_ms > current:
                    break
                item = heapq.heappop(self._heap)
                stats = self._stats[item.queue]
                stats.waiting -= 1
                stats.active += 1
            self._run(item)
            processed += 1
        return processed

    def _finish(self, item: _ScheduledJob, outcome: str) -> None:
        with self._lock:
            stats = self._stats[item.queue]
            stats.active -= 1
            setattr(stats, outcome, getattr(stats, outcome) + 1)

    def _run(self, item: _ScheduledJob) -> None:
        job = item.job
        if job.expected_status is not None and self._precheck and not self._precheck(job):
            logger.info(
                "job_skipped queue=%s order_id=%s message_type=%s reason=status_changed",
                item.queue.value,
                job.order_id,
                job.message_type.value,
            )
            self._finish(item, "skipped")
            return

        label = f"send:{job.order_id}:{job.message_type.value}"
        try:
            self._resilience.execute_with_retry(
                lambda: self._transport.send(job.phone, job.rendered_message),
                label,
                self._send_policy,
                dependency="transport",
            )
        except Exception as exc:
            attempts = exc.attempts if isinstance(exc, RetryExhaustedError) else 1
            failed = job.model_copy(update={"attempts": attempts, "last_error": str(exc)})
            with self._lock:
                self._recent_failures.append(failed)
            if isinstance(exc, NotifierError):
                logger.error(
                    "job_failed queue=%s order_id=%s message_type=%s attempts=%s error=%s",
                    item.queue.value,
                    job.order_id,
                    job.message_type.value,
                    attempts,
                    exc,
                )
            else:
                logger.exception(
                    "job_crashed queue=%s order_id=%s message_type=%s",
                    item.queue.value,
                    job.order_id,
                    job.message_type.value,
                )
            self._finish(item, "failed")
            return
        logger.info(
            "job_completed queue=%s order_id=%s message_type=%s",
            item.queue.value,
            job.order_id,
            job.message_type.value,
        )
        self._finish(item, "completed")

    def stats(self) -> dict[str, QueueStats]:
        with self._lock:
            return {queue.value: stats.model_copy() for queue, stats in self._stats.items()}

    def pending(self, queue: Optional[QueueName] = None) -> list[DispatchJob]:
        with self._lock:
            items = sorted(self._heap)
        return [item.job for item in items if queue is None or item.queue == queue]

    def recent_failures(self) -> list[DispatchJob]:
        with self._lock:
            return list(self._recent_failures)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._closed = False
            self._stop_event.clear()
            self._worker = threading.Thread(
                target=self._worker_loop,
                name="dispatch-queue",
                daemon=True,
            )
            self._worker.start()
        logger.info("dispatch_worker_started poll_interval_seconds=%s", self.poll_interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
        self._worker = None
        logger.info("dispatch_worker_stopped")

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.stop()

    def _worker_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval_seconds):
            try:
                self.process_due()
            except Exception:
                logger.exception("dispatch_worker_iteration_failed")
