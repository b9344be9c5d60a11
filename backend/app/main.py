from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from backend.app.auth import AuthContext, require_roles
from backend.app.errors import CycleAlreadyRunningError
from backend.app.models import (
    CycleReport,
    EgyptianValidation,
    EngineActionResponse,
    EngineStatus,
    HealthReport,
    PhoneAnalysis,
    PhoneAnalyzeRequest,
    PhoneProcessRequest,
    QueueStats,
    ResetTrackingResponse,
    StatusHistoryEntry,
    TwoNumberResult,
)
from backend.app.observability import MetricsRegistry, configure_logging, logger, observe_request
from backend.app.persistence import SqlitePersistence
from backend.app.services.dispatch import DispatchQueue
from backend.app.services.engine import EngineConfig, ReconciliationEngine
from backend.app.services.phone import (
    analyze_phone_number,
    process_two_numbers,
    validate_egyptian_number,
)
from backend.app.services.resilience import ResilienceWrapper, RetryPolicy
from backend.app.services.sheets import GoogleSheetsSource, OrderSource
from backend.app.services.templates import load_message_templates
from backend.app.services.transport import HttpGatewayTransport, MessagingTransport
from backend.app.settings import Settings, load_settings
from backend.app.store import DuplicatePreventionLedger, StatusHistoryStore

READ_ROLES = ("admin", "operator", "viewer")
WRITE_ROLES = ("admin", "operator")


def create_app(
    *,
    source: Optional[OrderSource] = None,
    transport: Optional[MessagingTransport] = None,
    resilience: Optional[ResilienceWrapper] = None,
) -> FastAPI:
    configure_logging()
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    config = EngineConfig.from_settings(settings)
    resilience = resilience or ResilienceWrapper(
        default_policy=RetryPolicy(max_delay_ms=settings.retry_max_delay_ms),
        failure_threshold=settings.circuit_failure_threshold,
        cooldown_ms=settings.circuit_cooldown_seconds * 1000,
    )
    transport = transport or HttpGatewayTransport(
        settings.whatsapp_gateway_url, settings.whatsapp_gateway_token
    )
    queue = DispatchQueue(
        transport=transport,
        resilience=resilience,
        send_policy=config.transport_policy,
    )
    engine = ReconciliationEngine(
        source=source or GoogleSheetsSource.from_settings(settings),
        transport=transport,
        queue=queue,
        resilience=resilience,
        history=StatusHistoryStore(persistence=persistence),
        ledger=DuplicatePreventionLedger(persistence=persistence),
        config=config,
        templates=load_message_templates(settings.message_templates_path or None),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        queue.start()
        if settings.automation_autostart:
            engine.start()
        yield
        engine.stop()
        queue.stop()

    app = FastAPI(title="Order Status Notifier API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.persistence = persistence
    app.state.metrics = MetricsRegistry()
    app.state.resilience = resilience
    app.state.queue = queue
    app.state.engine = engine

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    logger.info(
        "app_created env=%s persistence=%s autostart=%s",
        settings.app_env,
        settings.persistence_enabled,
        settings.automation_autostart,
    )
    return app


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_queue(request: Request) -> DispatchQueue:
    return request.app.state.queue


def get_resilience(request: Request) -> ResilienceWrapper:
    return request.app.state.resilience


def _run_manual_cycle(engine: ReconciliationEngine) -> CycleReport:
    try:
        report = engine.run_once_now()
    except CycleAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if report.fetch_failed:
        detail = report.errors[0].detail if report.errors else "row fetch failed"
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
    return report


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = request.app.state.persistence
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus(get_engine(request).metrics_gauges()))

    @router.get("/automation/status", response_model=EngineStatus)
    def automation_status(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> EngineStatus:
        return get_engine(request).status()

    @router.post("/automation/start", response_model=EngineActionResponse)
    def automation_start(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> EngineActionResponse:
        get_queue(request).start()
        return EngineActionResponse(status="started", engine=get_engine(request).start())

    @router.post("/automation/stop", response_model=EngineActionResponse)
    def automation_stop(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> EngineActionResponse:
        return EngineActionResponse(status="stopped", engine=get_engine(request).stop())

    @router.post("/automation/force-process", response_model=CycleReport)
    def force_process(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> CycleReport:
        return _run_manual_cycle(get_engine(request))

    @router.post("/automation/force-process-new-orders")
    def force_process_new_orders(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> dict[str, Any]:
        engine = get_engine(request)
        try:
            forgotten, report = engine.force_process_new_orders()
        except CycleAlreadyRunningError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return {"orders_requeued": forgotten, "report": report.model_dump(mode="json")}

    @router.get("/automation/stats")
    def automation_stats(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> dict[str, Any]:
        return get_engine(request).get_detailed_stats()

    @router.get("/automation/performance")
    def automation_performance(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> dict[str, Any]:
        return get_engine(request).get_performance_stats()

    @router.get("/automation/health-check", response_model=HealthReport)
    def automation_health_check(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> HealthReport:
        return get_engine(request).perform_health_check()

    @router.get("/automation/status-history", response_model=list[StatusHistoryEntry])
    def status_history(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[StatusHistoryEntry]:
        return get_engine(request).get_status_history()

    @router.delete("/automation/status-history")
    def reset_status_history(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> dict[str, int]:
        return {"cleared": get_engine(request).reset_status_history()}

    @router.post("/automation/reset-tracking", response_model=ResetTrackingResponse)
    def reset_tracking(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> ResetTrackingResponse:
        return ResetTrackingResponse(**get_engine(request).reset_message_tracking())

    @router.get("/duplicate-prevention")
    def duplicate_prevention_stats(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> dict[str, Any]:
        return get_engine(request).get_duplicate_prevention_stats()

    @router.delete("/duplicate-prevention")
    def reset_duplicate_prevention(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> dict[str, int]:
        return {"cleared": get_engine(request).reset_duplicate_prevention()}

    @router.get("/queue/stats", response_model=dict[str, QueueStats])
    def queue_stats(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> dict[str, QueueStats]:
        return get_queue(request).stats()

    @router.get("/resilience/stats")
    def resilience_stats(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> dict[str, Any]:
        return get_resilience(request).get_stats()

    @router.post("/resilience/reset")
    def resilience_reset(
        request: Request,
        _: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> dict[str, str]:
        get_resilience(request).reset_stats()
        return {"status": "reset"}

    @router.post("/phone/analyze", response_model=PhoneAnalysis)
    def phone_analyze(
        payload: PhoneAnalyzeRequest,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> PhoneAnalysis:
        return analyze_phone_number(payload.number)

    @router.post("/phone/process", response_model=TwoNumberResult)
    def phone_process(
        payload: PhoneProcessRequest,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> TwoNumberResult:
        return process_two_numbers(payload.phone, payload.whatsapp_number)

    @router.post("/phone/validate-egyptian", response_model=EgyptianValidation)
    def phone_validate_egyptian(
        payload: PhoneAnalyzeRequest,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> EgyptianValidation:
        return validate_egyptian_number(payload.number)

    return router
