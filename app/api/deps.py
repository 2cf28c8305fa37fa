from typing import Optional

from fastapi import Header, HTTPException, Request, status

from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import settings
from app.core.exceptions import AgentOpsError
from app.services.event_stream import EventBroadcaster
from app.services.executor import AgentExecutor
from app.services.notifications import WhatsAppNotifier


# Components built once in the lifespan (app.main) and kept on app.state.
# Tests swap them through app.dependency_overrides.

def get_breakers(request: Request) -> CircuitBreakerRegistry:
    return request.app.state.breakers


def get_executor(request: Request) -> AgentExecutor:
    return request.app.state.executor


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_notifier(request: Request) -> WhatsAppNotifier:
    return request.app.state.notifier


def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """
    Guard for scheduled triggers: Authorization: Bearer <CRON_SECRET>.
    Open when no secret is configured.
    """
    if not settings.CRON_SECRET:
        return
    if authorization != f"Bearer {settings.CRON_SECRET}":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def http_error(error: AgentOpsError) -> HTTPException:
    """Map a domain error to the HTTP status it carries."""
    return HTTPException(status_code=error.status_code, detail=error.message)
