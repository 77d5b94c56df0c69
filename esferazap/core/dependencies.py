import logging

from fastapi import Depends, Request

from esferazap.core.config import settings
from esferazap.core.exceptions import AuthenticationRequiredError, RateLimitExceededError, TenantAccessDeniedError
from esferazap.services.audit import AuditLogger
from esferazap.services.event_bridge import EventBridge
from esferazap.services.rate_limiter import FixedWindowRateLimiter, RateLimitInfo
from esferazap.services.session_manager import SessionManager
from esferazap.services.tenant_guard import TenantGuard

logger = logging.getLogger(__name__)


def get_session_manager(request: Request) -> SessionManager:
    """FastAPI зависимость: менеджер сессий, созданный в lifespan."""
    return request.app.state.session_manager


def get_event_bridge(request: Request) -> EventBridge:
    return request.app.state.event_bridge


def get_tenant_guard(request: Request) -> TenantGuard:
    return request.app.state.tenant_guard


def get_rate_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.rate_limiter


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


async def get_current_tenant(request: Request) -> str:
    """
    Идентификатор тенанта аутентифицированного запроса.

    Аутентификацию выполняет шлюз перед сервисом и передаёт тенанта
    в заголовке settings.TENANT_HEADER.
    """
    tenant_id = request.headers.get(settings.TENANT_HEADER)
    if not tenant_id:
        raise AuthenticationRequiredError(settings.TENANT_HEADER)
    return tenant_id


async def enforce_rate_limit(
    tenant_id: str = Depends(get_current_tenant),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> RateLimitInfo:
    info = await limiter.check_rate_limit(tenant_id)
    if not info.allowed:
        raise RateLimitExceededError(tenant_id, info.retry_after)
    return info


async def require_bot_access(
    bot_id: str,
    request: Request,
    tenant_id: str = Depends(get_current_tenant),
    _rate_limit: RateLimitInfo = Depends(enforce_rate_limit),
    guard: TenantGuard = Depends(get_tenant_guard),
    audit: AuditLogger = Depends(get_audit_logger),
) -> str:
    """Пропускает запрос дальше, только если бот принадлежит тенанту. Возвращает bot_id."""
    audit.log_action(tenant_id, request.method, request.url.path, bot_id)
    if not await guard.can_access_bot(tenant_id, bot_id):
        logger.warning(f"Tenant {tenant_id} denied access to bot {bot_id}")
        raise TenantAccessDeniedError(tenant_id, f"bot:{bot_id}")
    return bot_id


async def require_session_access(
    session_id: str,
    request: Request,
    tenant_id: str = Depends(get_current_tenant),
    _rate_limit: RateLimitInfo = Depends(enforce_rate_limit),
    guard: TenantGuard = Depends(get_tenant_guard),
    audit: AuditLogger = Depends(get_audit_logger),
) -> str:
    audit.log_action(tenant_id, request.method, request.url.path)
    if not await guard.can_access_session(tenant_id, session_id):
        logger.warning(f"Tenant {tenant_id} denied access to session {session_id}")
        raise TenantAccessDeniedError(tenant_id, f"session:{session_id}")
    return session_id
