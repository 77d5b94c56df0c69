import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from esferazap.core.config import settings
from esferazap.core.logging_config import setup_logging
from esferazap.services.audit import AuditLogger
from esferazap.services.event_bridge import EventBridge
from esferazap.services.persistence import SessionPersistence
from esferazap.services.rate_limiter import FixedWindowRateLimiter
from esferazap.services.session_manager import SessionManager
from esferazap.services.storage import create_storage
from esferazap.services.tenant_guard import TenantGuard

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, storage=None, **manager_options) -> None:
    """
    Собирает сервисы ядра и кладёт их в `app.state`.

    Порядок подписки задаёт порядок доставки: сначала запись в хранилище,
    затем аудит. manager_options передаются в SessionManager.
    """
    storage = storage or create_storage()
    event_bridge = EventBridge()

    persistence = SessionPersistence(storage)
    persistence.attach(event_bridge)
    audit_logger = AuditLogger()
    audit_logger.attach(event_bridge)

    session_manager = SessionManager(storage, event_bridge, **manager_options)

    app.state.storage = storage
    app.state.event_bridge = event_bridge
    app.state.session_manager = session_manager
    app.state.audit_logger = audit_logger
    app.state.tenant_guard = TenantGuard(storage, session_lookup=session_manager.find_by_session_id)
    app.state.rate_limiter = FixedWindowRateLimiter(
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Асинхронный контекстный менеджер для управления жизненным циклом FastAPI приложения.

    При старте (до `yield`):
    1. Настраивает логирование (`setup_logging()`).
    2. Собирает хранилище, EventBridge, менеджер сессий и Tenant Guard.
    3. Инициализирует хранилище (пул Redis для STORAGE_BACKEND=redis).

    При остановке (после `yield`):
    1. Закрывает все WhatsApp-сессии и отменяет переподключения.
    2. Закрывает хранилище.
    """
    # --- Startup ---
    setup_logging()
    logger.info("Application startup sequence initiated.")

    if not hasattr(app.state, "session_manager"):
        build_services(app)
    await app.state.storage.init()

    logger.info("Application startup sequence completed.")
    yield
    # --- Shutdown ---
    logger.info("Application shutdown sequence initiated.")

    try:
        await app.state.session_manager.shutdown()
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error(f"Error shutting down session manager: {e}", exc_info=True)
    await app.state.storage.close()

    logger.info("Application shutdown sequence completed.")
