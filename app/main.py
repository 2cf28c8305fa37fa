from contextlib import asynccontextmanager
from typing import Any, Callable, cast

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

import app.core.logging_config  # noqa: F401  configures structlog on import
from app import db
from app.api import agents, approvals, circuit_breaker, stream
from app.core.circuit_breaker import CircuitBreakerRegistry, CircuitStateStore
from app.core.config import Settings, settings
from app.core.errors import init_sentry
from app.core.exceptions import AgentOpsError
from app.core.health_check import HealthCheck
from app.core.scheduler import start_scheduler, stop_scheduler
from app.middleware.context import RequestContextMiddleware
from app.services.agent_registry import get_agent
from app.services.event_stream import EventBroadcaster
from app.services.executor import AgentExecutor, RetryPolicy
from app.services.notifications import WhatsAppNotifier, make_circuit_alert_listener
from app.services.run_store import RunRecorder, make_circuit_event_listener

logger = structlog.get_logger(__name__)


def build_components(
    target: FastAPI,
    session_factory: Callable[[], Session],
    config: Settings = settings,
    retry_policy: RetryPolicy | None = None,
) -> AgentExecutor:
    """Wire breakers, recorder, notifier and executor onto target.state."""
    broadcaster = EventBroadcaster()

    store = None
    if config.CIRCUIT_BREAKER_PERSIST and db.is_configured():
        store = CircuitStateStore(session_factory)

    breakers = CircuitBreakerRegistry(
        failure_threshold=config.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=config.CIRCUIT_RECOVERY_TIMEOUT_SECONDS,
        store=store,
    )
    recorder = RunRecorder(session_factory, broadcaster)
    notifier = WhatsAppNotifier.from_settings(config)

    breakers.add_listener(make_circuit_event_listener(recorder))
    breakers.add_listener(make_circuit_alert_listener(notifier))

    executor = AgentExecutor(
        breakers,
        recorder,
        lambda agent_id: get_agent(agent_id, session_factory, broadcaster, config),
        retry_policy=retry_policy or RetryPolicy.from_settings(config),
    )

    target.state.broadcaster = broadcaster
    target.state.breakers = breakers
    target.state.recorder = recorder
    target.state.notifier = notifier
    target.state.executor = executor
    target.state.session_factory = session_factory
    return executor


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Agent ops API starting",
        environment=settings.ENVIRONMENT,
        datastore=db.is_configured(),
        scheduler=settings.RUN_SCHEDULER,
    )
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    executor = build_components(app, db.session_factory)

    if settings.RUN_SCHEDULER and db.is_configured():
        start_scheduler(executor, db.session_factory, app.state.broadcaster)
    else:
        logger.info("Scheduler not started in this process")

    try:
        yield
    finally:
        stop_scheduler()
        logger.info("Agent ops API stopped")


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_PREFIX}/openapi.json", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))
app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


@app.exception_handler(AgentOpsError)
async def agent_ops_error_handler(request: Request, exc: AgentOpsError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Fixed paths first so /agents/{agent_id}/metrics cannot capture them
app.include_router(approvals.router, prefix=f"{settings.API_PREFIX}/agents/approvals", tags=["approvals"])
app.include_router(circuit_breaker.router, prefix=f"{settings.API_PREFIX}/agents/admin", tags=["admin"])
app.include_router(stream.router, prefix=f"{settings.API_PREFIX}/agents", tags=["stream"])
app.include_router(agents.router, prefix=f"{settings.API_PREFIX}/agents", tags=["agents"])


@app.get("/")
def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME}"}


@app.get("/health")
def health(request: Request):
    """Liveness plus datastore and circuit summary. 503 when critical."""
    report = HealthCheck.check_overall_health(request.app.state.breakers)
    status_code = 503 if report["status"] == "critical" else 200
    return JSONResponse(status_code=status_code, content=report)
