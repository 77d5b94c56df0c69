"""
EsferaZap Exception Hierarchy

- WhatsAppServiceError: базовое исключение для всех ошибок сервиса
- Ошибки сессий: бот/сессия не найдены, сессия не подключена
- Ошибки провайдеров: конфигурация, сбой HTTP запроса
- Ошибки доступа: чужой тенант, превышен лимит запросов
"""

from typing import Optional, Dict, Any


class WhatsAppServiceError(Exception):
    """
    Base exception for all EsferaZap service errors

    Provides consistent error interface with context information
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize service error

        Args:
            message: Human-readable error description
            error_code: Machine-readable error identifier
            context: Additional error context information
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "WHATSAPP_SERVICE_ERROR"
        self.context = context or {}

    def __str__(self) -> str:
        """String representation with context"""
        if self.context:
            return f"{self.message} (Code: {self.error_code}, Context: {self.context})"
        return f"{self.message} (Code: {self.error_code})"


class BotNotFoundError(WhatsAppServiceError):
    """Raised when a bot id does not resolve to a stored bot"""

    def __init__(self, bot_id: str):
        super().__init__(f"Bot '{bot_id}' not found", "BOT_NOT_FOUND", {"bot_id": bot_id})
        self.bot_id = bot_id


class SessionNotFoundError(WhatsAppServiceError):
    """Raised when no live session exists for a bot"""

    def __init__(self, bot_id: str):
        super().__init__(
            f"No WhatsApp session found for bot '{bot_id}'", "SESSION_NOT_FOUND", {"bot_id": bot_id}
        )
        self.bot_id = bot_id


class SessionNotConnectedError(WhatsAppServiceError):
    """
    Raised when a send is attempted on a session that is not connected

    Never retried silently: the caller must see it.
    """

    def __init__(self, bot_id: str, status: Optional[str] = None):
        message = f"WhatsApp session for bot '{bot_id}' is not connected"
        if status:
            message = f"{message} (current status: {status})"
        super().__init__(message, "SESSION_NOT_CONNECTED", {"bot_id": bot_id, "status": status})
        self.bot_id = bot_id
        self.status = status


class ProviderNotFoundError(WhatsAppServiceError):
    """Raised when a provider identifier is not registered and no fallback is allowed"""

    def __init__(self, provider_name: str, available: Optional[list] = None):
        super().__init__(
            f"WhatsApp provider '{provider_name}' not found",
            "PROVIDER_NOT_FOUND",
            {"available": available or []},
        )
        self.provider_name = provider_name


class ProviderConfigurationError(WhatsAppServiceError):
    """Raised when provider credentials or server URL are missing"""

    def __init__(self, provider_name: str, reason: str):
        super().__init__(
            f"Provider '{provider_name}' is misconfigured: {reason}",
            "PROVIDER_CONFIGURATION_ERROR",
            {"provider": provider_name},
        )
        self.provider_name = provider_name
        self.reason = reason


class ProviderRequestError(WhatsAppServiceError):
    """Raised when a provider backend rejects or fails a request"""

    def __init__(self, provider_name: str, reason: str, status_code: Optional[int] = None):
        super().__init__(
            f"Provider '{provider_name}' request failed: {reason}",
            "PROVIDER_REQUEST_ERROR",
            {"provider": provider_name, "status_code": status_code},
        )
        self.provider_name = provider_name
        self.status_code = status_code


class AuthenticationRequiredError(WhatsAppServiceError):
    """Raised when a request reaches the service without a tenant identity"""

    def __init__(self, header: str):
        super().__init__("Authentication required", "AUTHENTICATION_REQUIRED", {"header": header})
        self.header = header


class TenantAccessDeniedError(WhatsAppServiceError):
    """Raised when a tenant operates on a bot or session it does not own"""

    def __init__(self, tenant_id: str, resource: str):
        super().__init__(
            "You do not have permission to access this bot",
            "ACCESS_DENIED",
            {"tenant_id": tenant_id, "resource": resource},
        )
        self.tenant_id = tenant_id
        self.resource = resource


class RateLimitExceededError(WhatsAppServiceError):
    """Raised when a tenant exceeds its request quota for the current window"""

    def __init__(self, tenant_id: str, retry_after: int):
        super().__init__(
            "Too many requests, please try again later",
            "RATE_LIMIT_EXCEEDED",
            {"tenant_id": tenant_id, "retry_after": retry_after},
        )
        self.tenant_id = tenant_id
        self.retry_after = retry_after
