import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from esferazap.core.lifespan import lifespan
from esferazap.core.config import settings
from esferazap.core.exceptions import (
    AuthenticationRequiredError,
    BotNotFoundError,
    ProviderConfigurationError,
    ProviderRequestError,
    RateLimitExceededError,
    SessionNotConnectedError,
    SessionNotFoundError,
    TenantAccessDeniedError,
    WhatsAppServiceError,
)
# Импорты роутеров
from esferazap.api.routers import webhook_api, whatsapp_api

# Настройка логирования вызывается в lifespan, но можно получить логгер здесь
logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (AuthenticationRequiredError, status.HTTP_401_UNAUTHORIZED, "Authentication required"),
    (TenantAccessDeniedError, status.HTTP_403_FORBIDDEN, "Access denied"),
    (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded"),
    (BotNotFoundError, status.HTTP_404_NOT_FOUND, "Not found"),
    (SessionNotFoundError, status.HTTP_404_NOT_FOUND, "Not found"),
    (SessionNotConnectedError, status.HTTP_409_CONFLICT, "Session not connected"),
    (ProviderConfigurationError, status.HTTP_400_BAD_REQUEST, "Provider misconfigured"),
    (ProviderRequestError, status.HTTP_502_BAD_GATEWAY, "Provider request failed"),
)


async def whatsapp_error_handler(request: Request, exc: WhatsAppServiceError) -> JSONResponse:
    """Переводит иерархию WhatsAppServiceError в JSON ответы."""
    for error_cls, status_code, title in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            break
    else:
        status_code, title = status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal error"
        logger.error(f"Unhandled service error on {request.method} {request.url.path}: {exc}")

    body = {"error": title, "message": exc.message, "code": exc.error_code}
    headers = None
    if isinstance(exc, RateLimitExceededError):
        body["retryAfter"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        lifespan=lifespan
    )

    # Подключение роутеров
    application.include_router(whatsapp_api.router, prefix=settings.API_PREFIX)
    application.include_router(webhook_api.router, prefix=settings.API_PREFIX)
    application.add_exception_handler(WhatsAppServiceError, whatsapp_error_handler)

    @application.get("/", tags=["Root"])
    async def read_root():
        logger.info("Root endpoint was called.")
        return {"message": f"Welcome to {settings.PROJECT_NAME} v{settings.PROJECT_VERSION}"}

    return application


app = create_app()

# Для локального запуска (uvicorn esferazap.main:app --reload)
if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Uvicorn server for {settings.PROJECT_NAME} on http://{settings.SERVER_HOST}:{settings.SERVER_PORT}")
    uvicorn.run(
        "esferazap.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG # Включаем reload только в DEBUG режиме
    )
