from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Any, Optional

from fastapi import Request

if TYPE_CHECKING:
    from backend.app.services.cache import TTLCache

logger = logging.getLogger("order_notifier")

METRIC_PREFIX = "order_notifier"

ENGINE_GAUGE_HELP = {
    "engine_running": "1 while the polling timer is active",
    "cycles_total": "Completed reconciliation cycles",
    "dispatched_total": "Jobs handed to the dispatch queue",
    "suppressed_total": "Sends blocked by the duplicate ledger",
    "api_calls_total": "Remote calls to the order source and transport",
    "cache_hits_total": "Row and registration cache hits",
    "cache_misses_total": "Row and registration cache misses",
    "status_history_entries": "Orders with a recorded status",
    "duplicate_ledger_entries": "Keys in the duplicate ledger",
    "circuit_open": "1 while any dependency circuit is open",
}


@dataclass
class RequestTotals:
    requests_total: int
    requests_5xx: int
    requests_denied: int
    total_latency_ms: float

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.requests_total if self.requests_total else 0.0


class MetricsRegistry:
    """HTTP request counters, labelled by method and route template."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._requests_denied = 0
        self._total_latency_ms = 0.0
        self._by_route: dict[tuple[str, str, int], int] = {}

    def record(self, *, method: str, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            self._total_latency_ms += latency_ms
            if status_code >= 500:
                self._requests_5xx += 1
            elif status_code in (401, 403):
                self._requests_denied += 1
            key = (method, route, status_code)
            self._by_route[key] = self._by_route.get(key, 0) + 1

    def totals(self) -> RequestTotals:
        with self._lock:
            return RequestTotals(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                requests_denied=self._requests_denied,
                total_latency_ms=self._total_latency_ms,
            )

    def to_prometheus(self, engine_gauges: Optional[dict[str, float]] = None) -> str:
        totals = self.totals()
        lines: list[str] = []

        def metric(name: str, kind: str, help_text: str, value: str) -> None:
            lines.append(f"# HELP {METRIC_PREFIX}_{name} {help_text}")
            lines.append(f"# TYPE {METRIC_PREFIX}_{name} {kind}")
            lines.append(f"{METRIC_PREFIX}_{name} {value}")

        metric("requests_total", "counter", "Total HTTP requests", str(totals.requests_total))
        metric("requests_5xx_total", "counter", "Total 5xx HTTP requests", str(totals.requests_5xx))
        metric(
            "requests_denied_total",
            "counter",
            "Requests rejected with 401 or 403",
            str(totals.requests_denied),
        )
        metric(
            "request_avg_latency_ms",
            "gauge",
            "Average request latency ms",
            f"{totals.avg_latency_ms:.2f}",
        )
        with self._lock:
            routes = sorted(self._by_route.items())
        for (method, route, status_code), count in routes:
            lines.append(
                f"{METRIC_PREFIX}_route_requests_total"
                f'{{method="{method}",route="{route}",status="{status_code}"}} {count}'
            )
        for name, value in sorted((engine_gauges or {}).items()):
            metric(name, "gauge", ENGINE_GAUGE_HELP.get(name, name), f"{value:g}")
        return "\n".join(lines) + "\n"


class PerformanceStatsCollector:
    """Aggregates cycle timings, remote call counts and cache stats."""

    def __init__(self, caches: Optional[dict[str, "TTLCache"]] = None) -> None:
        self._lock = Lock()
        self._caches = dict(caches or {})
        self._reset()

    def _reset(self) -> None:
        self._total_cycles = 0
        self._last_processing_ms = 0.0
        self._avg_processing_ms = 0.0
        self._total_dispatched = 0
        self._total_suppressed = 0
        self._api_calls: dict[str, int] = {}

    def record_cycle(self, duration_ms: float, *, dispatched: int = 0, suppressed: int = 0) -> None:
        with self._lock:
            self._total_cycles += 1
            self._last_processing_ms = duration_ms
            self._avg_processing_ms += (duration_ms - self._avg_processing_ms) / self._total_cycles
            self._total_dispatched += dispatched
            self._total_suppressed += suppressed

    def record_api_call(self, kind: str) -> None:
        with self._lock:
            self._api_calls[kind] = self._api_calls.get(kind, 0) + 1

    def reset(self) -> None:
        with self._lock:
            self._reset()
        for cache in self._caches.values():
            cache.reset_stats()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            data: dict[str, Any] = {
                "total_processing_cycles": self._total_cycles,
                "last_processing_time_ms": round(self._last_processing_ms, 2),
                "avg_processing_time_ms": round(self._avg_processing_ms, 2),
                "total_dispatched": self._total_dispatched,
                "total_suppressed": self._total_suppressed,
                "api_calls": dict(self._api_calls),
                "total_api_calls": sum(self._api_calls.values()),
            }
        caches: dict[str, Any] = {}
        hints: list[str] = []
        hits = misses = 0
        for name, cache in sorted(self._caches.items()):
            stats = cache.stats()
            hits += stats.hits
            misses += stats.misses
            caches[name] = stats.as_dict()
            hints.extend(f"{name}: {hint}" for hint in cache.tuning_hints())
        data["caches"] = caches
        data["cache_hits"] = hits
        data["cache_misses"] = misses
        data["cache_hit_ratio"] = round(hits / (hits + misses), 4) if hits + misses else 0.0
        data["tuning_hints"] = hints
        return data


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template if isinstance(template, str) else "unmatched"


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception:
        logger.exception("request_failed method=%s path=%s", request.method, request.url.path)
        raise
    finally:
        latency_ms = (time.perf_counter() - start) * 1000.0
        route = _route_template(request)
        metrics.record(
            method=request.method,
            route=route,
            status_code=status_code,
            latency_ms=latency_ms,
        )
        logger.info(
            "request_complete method=%s route=%s status=%s latency_ms=%.2f",
            request.method,
            route,
            status_code,
            latency_ms,
        )
