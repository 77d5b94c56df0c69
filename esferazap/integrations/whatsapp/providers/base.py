"""
Base WhatsApp Provider

Общий контракт для всех WhatsApp бэкендов (Baileys, Evolution API,
Meta Business, Twilio) и базовый класс живого соединения сессии.

Адаптер отвечает за собственную аутентификацию и переводит ответы
провайдера в общие типы результатов. Соединение (ProviderConnection)
принадлежит ровно одной сессии и доставляет сырые события провайдера
менеджеру сессий строго по одному, в порядке поступления.
"""

import asyncio
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from esferazap.core.config import settings
from esferazap.core.exceptions import (
    ProviderConfigurationError,
    ProviderRequestError,
    SessionNotConnectedError,
)

logger = logging.getLogger(__name__)

MISSING_CREDENTIALS_MESSAGE = "Credenciais não configuradas"


class ProviderType(str, Enum):
    BAILEYS = "baileys"
    EVOLUTION_API = "evolution_api"
    META_BUSINESS = "meta_business"
    TWILIO = "twilio"
    WPPCONNECT = "wppconnect"
    VENOM = "venom"


class QRStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class BotConnectionConfig:
    """Неизменяемая конфигурация подключения бота. Менеджер сессий её только читает."""
    provider: str
    api_key: Optional[str] = None
    access_token: Optional[str] = None
    phone_number_id: Optional[str] = None
    business_account_id: Optional[str] = None
    server_url: Optional[str] = None
    instance_id: Optional[str] = None
    webhook_secret: Optional[str] = None


@dataclass
class QRCodeResult:
    qr_code: Optional[str]
    status: QRStatus
    message: Optional[str] = None
    expires: Optional[datetime] = None

    @classmethod
    def error(cls, message: str) -> "QRCodeResult":
        return cls(qr_code=None, status=QRStatus.ERROR, message=message)


@dataclass
class ConnectionCheck:
    connected: bool
    status: str


@dataclass
class ProviderResult:
    success: bool
    message_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InboundMessage:
    sender: str
    text: str
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None


class ProviderEventType(str, Enum):
    QR = "qr"
    OPEN = "open"
    CLOSE = "close"
    MESSAGE = "message"


@dataclass
class ProviderEvent:
    """Сырое событие провайдера до нормализации в доменное событие."""
    type: ProviderEventType
    qr_code: Optional[str] = None
    expires: Optional[datetime] = None
    logged_out: bool = False
    reason: Optional[str] = None
    messages: List[InboundMessage] = field(default_factory=list)

    @classmethod
    def qr(cls, qr_code: str, expires: Optional[datetime] = None) -> "ProviderEvent":
        return cls(type=ProviderEventType.QR, qr_code=qr_code, expires=expires)

    @classmethod
    def open(cls) -> "ProviderEvent":
        return cls(type=ProviderEventType.OPEN)

    @classmethod
    def close(cls, logged_out: bool = False, reason: Optional[str] = None) -> "ProviderEvent":
        return cls(type=ProviderEventType.CLOSE, logged_out=logged_out, reason=reason)

    @classmethod
    def message(cls, messages: List[InboundMessage]) -> "ProviderEvent":
        return cls(type=ProviderEventType.MESSAGE, messages=messages)


EventCallback = Callable[[ProviderEvent], Awaitable[None]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def verify_sha256_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """Проверяет подпись вида `sha256=<hex>` (HMAC-SHA256 от сырого тела)."""
    if not signature:
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


class ProviderConnection(ABC):
    """
    Живое соединение одной сессии с бэкендом WhatsApp.

    Принадлежит ровно одной сессии. После close() никаких событий
    больше не доставляет. Отправка разрешена только после события
    `open`, за которым не последовало `close`.
    """

    def __init__(
        self,
        provider: "BaseWhatsAppProvider",
        bot_id: str,
        session_id: str,
        on_event: EventCallback,
    ):
        self.provider = provider
        self.bot_id = bot_id
        self.session_id = session_id
        self._on_event = on_event
        self._emit_lock = asyncio.Lock()
        self._closed = False
        self._is_open = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_open(self) -> bool:
        return self._is_open and not self._closed

    @abstractmethod
    async def start(self) -> None:
        """Начинает подключение. Ошибки конфигурации выбрасываются как ProviderConfigurationError."""

    async def _close_transport(self) -> None:
        """Хук для освобождения транспорта (сокет, фоновые задачи)."""

    async def close(self) -> None:
        """Закрывает соединение. Повторный вызов ничего не делает."""
        if self._closed:
            return
        self._closed = True
        self._is_open = False
        logger.debug(f"Closing {self.provider.name} connection for bot {self.bot_id} (session {self.session_id})")
        await self._close_transport()

    async def emit(self, event: ProviderEvent) -> None:
        """
        Доставляет событие менеджеру сессий.

        События сериализуются через lock, поэтому обрабатываются строго
        в порядке поступления. События закрытого соединения отбрасываются.
        """
        if self._closed:
            logger.debug(f"Dropping '{event.type.value}' from closed connection {self.session_id}")
            return
        async with self._emit_lock:
            if self._closed:
                logger.debug(f"Dropping '{event.type.value}' from closed connection {self.session_id}")
                return
            if event.type == ProviderEventType.OPEN:
                self._is_open = True
            elif event.type == ProviderEventType.CLOSE:
                self._is_open = False
            await self._on_event(event)

    async def send_message(self, to: str, content: str) -> ProviderResult:
        if not self.is_open:
            raise SessionNotConnectedError(self.bot_id)
        return await self.provider.send_message(to, content)


class BaseWhatsAppProvider(ABC):
    """
    Abstract base class for WhatsApp providers

    Контракт:
    - generate_qr_code() никогда не выбрасывает исключений, ошибки приходят как status=error
    - check_connection() ничего не меняет в состоянии сессии
    - send_message() падает громко, молча сообщения не теряются
    - validate_webhook() проверяет подлинность входящего вебхука
    """

    name: str = "base"

    def __init__(
        self,
        config: BotConnectionConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        bot_id: Optional[str] = None,
    ):
        self.config = config
        self.bot_id = bot_id
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.WHATSAPP_HTTP_TIMEOUT)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def missing_credentials(self) -> List[str]:
        """Список незаполненных полей конфигурации, без которых провайдер не работает."""
        return []

    def require_credentials(self) -> None:
        missing = self.missing_credentials()
        if missing:
            raise ProviderConfigurationError(self.name, f"missing {', '.join(missing)}")

    def _raise_for_response(self, response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        logger.error(
            "%s %s failed. Status: %s, Response: %s",
            self.name, action, response.status_code, response.text[:500]
        )
        raise ProviderRequestError(self.name, f"{action} returned HTTP {response.status_code}", response.status_code)

    @abstractmethod
    async def generate_qr_code(self) -> QRCodeResult:
        pass

    @abstractmethod
    async def check_connection(self) -> ConnectionCheck:
        pass

    @abstractmethod
    async def send_message(self, to: str, content: str) -> ProviderResult:
        pass

    @abstractmethod
    def validate_webhook(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        url: Optional[str] = None,
    ) -> bool:
        pass

    def parse_webhook(self, payload: Any) -> List[ProviderEvent]:
        """Переводит тело вебхука в сырые события. По умолчанию провайдер вебхуков не шлёт."""
        return []

    @abstractmethod
    def create_connection(self, bot_id: str, session_id: str, on_event: EventCallback) -> ProviderConnection:
        pass


class GatewayConnection(ProviderConnection):
    """
    Соединение для REST-шлюзов (Evolution API, Twilio).

    Постоянного сокета нет: при старте запрашивается код сопряжения,
    дальнейшие события (open/close/message) приходят через вебхуки.
    """

    async def start(self) -> None:
        self.provider.require_credentials()
        if self.closed:
            return
        result = await self.provider.generate_qr_code()
        if self.closed:
            return
        if result.status == QRStatus.CONNECTED:
            await self.emit(ProviderEvent.open())
        elif result.status == QRStatus.PENDING and result.qr_code:
            await self.emit(ProviderEvent.qr(result.qr_code, expires=result.expires))
        else:
            raise ProviderRequestError(self.provider.name, result.message or "QR code unavailable")
