"""
WhatsApp Session Manager

Единственный владелец карты сессий (bot_id -> Session). На каждого бота
не более одной живой сессии; переходы состояний выполняются только по
событиям провайдера и проверяются по таблице ALLOWED_TRANSITIONS.

Состояния: disconnected -> connecting -> qr_required -> connected.
Восстанавливаемое закрытие планирует одну попытку переподключения через
фиксированную задержку, выход из аккаунта (logged out) завершает сессию.
"""

import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from esferazap.core.config import settings
from esferazap.core.exceptions import (
    BotNotFoundError,
    ProviderConfigurationError,
    ProviderRequestError,
    SessionNotConnectedError,
    SessionNotFoundError,
)
from esferazap.integrations.whatsapp.providers import (
    BaseWhatsAppProvider,
    ConnectionCheck,
    ProviderConnection,
    ProviderEvent,
    ProviderEventType,
    ProviderResult,
    WhatsAppProviderFactory,
)
from esferazap.integrations.whatsapp.providers.base import utc_now
from esferazap.services.event_bridge import DomainEvent, DomainEventType, EventBridge
from esferazap.services.storage import BaseStorage

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_REQUIRED = "qr_required"
    CONNECTED = "connected"


ALLOWED_TRANSITIONS = {
    SessionStatus.DISCONNECTED: {SessionStatus.CONNECTING},
    SessionStatus.CONNECTING: {SessionStatus.QR_REQUIRED, SessionStatus.CONNECTED, SessionStatus.DISCONNECTED},
    # qr_required -> qr_required: ротация QR
    SessionStatus.QR_REQUIRED: {SessionStatus.QR_REQUIRED, SessionStatus.CONNECTED, SessionStatus.DISCONNECTED},
    SessionStatus.CONNECTED: {SessionStatus.CONNECTING, SessionStatus.DISCONNECTED},
}

# Статус ответа generate-qr для каждого состояния сессии
_PAIRING_STATUS = {
    SessionStatus.QR_REQUIRED: "pending",
    SessionStatus.CONNECTED: "connected",
    SessionStatus.CONNECTING: "connecting",
    SessionStatus.DISCONNECTED: "error",
}

TRANSIENT_START_ERRORS = (ProviderRequestError, httpx.HTTPError, OSError, asyncio.TimeoutError)


@dataclass
class Session:
    bot_id: str
    session_id: str
    provider: str
    status: SessionStatus = SessionStatus.DISCONNECTED
    qr_code: Optional[str] = None
    expires: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    client: Optional[ProviderConnection] = field(default=None, repr=False)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "botId": self.bot_id,
            "sessionId": self.session_id,
            "provider": self.provider,
            "status": self.status.value,
            "qrCode": self.qr_code,
            "expires": self.expires.isoformat() if self.expires else None,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
            "lastError": self.last_error,
            "createdAt": self.created_at.isoformat(),
        }


class SessionManager:
    """
    Управляет жизненным циклом WhatsApp-сессий ботов.

    Все мутации карты сессий проходят через методы этого класса.
    Доменные события публикуются в EventBridge, хранилище и UI
    подписываются на них сами.
    """

    def __init__(
        self,
        storage: BaseStorage,
        event_bridge: EventBridge,
        provider_factory=WhatsAppProviderFactory,
        reconnect_delay: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        qr_wait_timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.storage = storage
        self.events = event_bridge
        self.provider_factory = provider_factory
        self.reconnect_delay = settings.WHATSAPP_RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        self.max_reconnect_attempts = (
            settings.WHATSAPP_MAX_RECONNECT_ATTEMPTS if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self.qr_wait_timeout = settings.WHATSAPP_QR_WAIT_TIMEOUT if qr_wait_timeout is None else qr_wait_timeout

        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=settings.WHATSAPP_HTTP_TIMEOUT)

        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}
        self._reconnect_attempts: Dict[str, int] = {}
        self._pairing_waiters: Dict[str, asyncio.Future] = {}

    # --- Read-only views ---

    def get_session(self, bot_id: str) -> Optional[Session]:
        return self._sessions.get(bot_id)

    def find_by_session_id(self, session_id: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.session_id == session_id:
                return session
        return None

    def list_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def reconnect_pending(self, bot_id: str) -> bool:
        task = self._reconnect_tasks.get(bot_id)
        return task is not None and not task.done()

    def _lock_for(self, bot_id: str) -> asyncio.Lock:
        if bot_id not in self._locks:
            self._locks[bot_id] = asyncio.Lock()
        return self._locks[bot_id]

    def _is_current(self, bot_id: str, session_id: str) -> bool:
        session = self._sessions.get(bot_id)
        return session is not None and session.session_id == session_id

    async def _build_provider(self, bot_id: str) -> BaseWhatsAppProvider:
        bot = await self.storage.get_bot(bot_id)
        if not bot:
            raise BotNotFoundError(bot_id)
        return self.provider_factory.create_provider(
            bot.connection_config(), bot_id=bot_id, http_client=self._http_client
        )

    # --- Lifecycle operations ---

    async def create_session(self, bot_id: str, reconnect: bool = False) -> Session:
        """
        Создаёт новую сессию для бота, заменяя существующую.

        Старый клиент закрывается до замены записи в карте, его поздние
        события игнорируются. Ошибка конфигурации провайдера завершает
        сессию и пробрасывается, временные сбои при старте обрабатываются
        как восстанавливаемое закрытие.

        Args:
            bot_id: Идентификатор бота
            reconnect: True, если вызов сделан политикой переподключения

        Raises:
            BotNotFoundError: бот не найден в хранилище
            ProviderConfigurationError: не хватает учётных данных провайдера
        """
        provider = await self._build_provider(bot_id)
        if not reconnect:
            self._reconnect_attempts.pop(bot_id, None)
            self._cancel_reconnect(bot_id)

        async with self._lock_for(bot_id):
            await self._teardown(bot_id)
            session_id = str(uuid.uuid4())
            session = Session(bot_id=bot_id, session_id=session_id, provider=provider.name)
            session.client = provider.create_connection(
                bot_id, session_id, functools.partial(self._on_provider_event, bot_id, session_id)
            )
            self._pairing_waiters[session_id] = asyncio.get_running_loop().create_future()
            self._sessions[bot_id] = session

        logger.info(f"Created WhatsApp session {session_id} for bot {bot_id} via {provider.name}")
        await self._transition(session, SessionStatus.CONNECTING)

        try:
            await session.client.start()
        except ProviderConfigurationError as e:
            session.last_error = e.reason
            logger.error(f"Provider configuration error for bot {bot_id}: {e}")
            if self._is_current(bot_id, session_id):
                await session.client.close()
                await self._end_session(session, reason="configuration_error")
            raise
        except TRANSIENT_START_ERRORS as e:
            session.last_error = str(e)
            logger.warning(f"Failed to start WhatsApp session {session_id} for bot {bot_id}: {e}")
            if self._is_current(bot_id, session_id) and not session.client.closed:
                await session.client.emit(ProviderEvent.close(reason="start_failed"))

        if not self._is_current(bot_id, session_id):
            # Заменена другим create_session, пока start() был в процессе
            await session.client.close()
            logger.info(f"WhatsApp session {session_id} for bot {bot_id} was replaced while starting")
            return self._sessions.get(bot_id) or session
        return session

    async def generate_qr_code(self, bot_id: str) -> Dict[str, Any]:
        """
        Принудительно пересоздаёт сессию и ждёт первый QR (или open).

        Ошибки провайдера не выбрасываются, а возвращаются как status=error.

        Returns:
            Dict: {qrCode, status, sessionId, message, expires}
        """
        try:
            session = await self.create_session(bot_id)
        except ProviderConfigurationError as e:
            return {"qrCode": None, "status": "error", "sessionId": None, "message": e.reason, "expires": None}

        waiter = self._pairing_waiters.get(session.session_id)
        if waiter is not None and not waiter.done():
            try:
                await asyncio.wait_for(asyncio.shield(waiter), timeout=self.qr_wait_timeout)
            except asyncio.TimeoutError:
                logger.info(f"No pairing event within {self.qr_wait_timeout}s for bot {bot_id}")
        return self.pairing_payload(session)

    def pairing_payload(self, session: Session) -> Dict[str, Any]:
        status = _PAIRING_STATUS[session.status]
        payload: Dict[str, Any] = {
            "qrCode": session.qr_code,
            "status": status,
            "sessionId": session.session_id,
            "expires": session.expires.isoformat() if session.expires else None,
        }
        if status == "pending":
            payload["message"] = "Escaneie o QR Code com seu WhatsApp"
        elif status == "connected":
            payload["message"] = "WhatsApp conectado"
        elif status == "connecting":
            payload["message"] = "QR Code ainda não disponível, tente novamente em instantes"
        else:
            payload["message"] = session.last_error or "Falha ao conectar com o provedor"
        return payload

    def get_qr(self, bot_id: str) -> Dict[str, Any]:
        session = self._sessions.get(bot_id)
        if session is None:
            raise SessionNotFoundError(bot_id)
        return self.pairing_payload(session)

    async def send_message(self, bot_id: str, to: str, content: str) -> ProviderResult:
        """
        Отправляет текст через сессию бота.

        Raises:
            SessionNotConnectedError: нет сессии или она не в состоянии connected
        """
        session = self._sessions.get(bot_id)
        if session is None or session.client is None:
            raise SessionNotConnectedError(bot_id)
        if session.status != SessionStatus.CONNECTED:
            raise SessionNotConnectedError(bot_id, session.status.value)
        result = await session.client.send_message(to, content)
        logger.info(f"Message sent from bot {bot_id} to {to} (id={result.message_id})")
        return result

    async def disconnect_session(self, bot_id: str) -> bool:
        """Закрывает клиент и удаляет сессию. Возвращает, существовала ли сессия."""
        self._cancel_reconnect(bot_id)
        self._reconnect_attempts.pop(bot_id, None)
        async with self._lock_for(bot_id):
            session = await self._teardown(bot_id)
        if session is None:
            return False
        session.status = SessionStatus.DISCONNECTED
        session.qr_code = None
        logger.info(f"WhatsApp session {session.session_id} for bot {bot_id} disconnected by request")
        await self.events.publish(DomainEvent(
            type=DomainEventType.SESSION_ENDED,
            bot_id=bot_id,
            session_id=session.session_id,
            status=SessionStatus.DISCONNECTED.value,
            reason="disconnected",
        ))
        return True

    async def remove_bot(self, bot_id: str) -> bool:
        """Вызывается при удалении бота: закрывает сессию и удаляет её сохранённое состояние."""
        existed = await self.disconnect_session(bot_id)
        await self.storage.delete_whatsapp_session(bot_id)
        self._locks.pop(bot_id, None)
        return existed

    async def check_connection(self, bot_id: str) -> ConnectionCheck:
        """Опрос провайдера без изменения состояния сессии."""
        session = self._sessions.get(bot_id)
        if session is not None and session.client is not None:
            return await session.client.provider.check_connection()
        provider = await self._build_provider(bot_id)
        return await provider.check_connection()

    async def handle_webhook(
        self,
        bot_id: str,
        raw_body: bytes,
        payload: Any,
        signature: Optional[str] = None,
        url: Optional[str] = None,
    ) -> bool:
        """
        Проверяет подпись вебхука и передаёт его события текущему клиенту бота.

        Returns:
            bool: False, если подпись не прошла проверку
        """
        session = self._sessions.get(bot_id)
        if session is not None and session.client is not None:
            client = session.client
            provider = client.provider
        else:
            client = None
            provider = await self._build_provider(bot_id)

        if not provider.validate_webhook(raw_body, signature, url):
            logger.warning(f"Rejected webhook for bot {bot_id}: invalid signature")
            return False

        events = provider.parse_webhook(payload)
        if client is None:
            if events:
                logger.info(f"Dropping {len(events)} webhook event(s) for bot {bot_id} without active session")
            return True
        for event in events:
            await client.emit(event)
        return True

    async def shutdown(self) -> None:
        """Закрывает все сессии и отменяет отложенные переподключения."""
        for bot_id in list(self._reconnect_tasks):
            self._cancel_reconnect(bot_id)
        for bot_id in list(self._sessions):
            session = await self._teardown(bot_id)
            if session is not None:
                await self.events.publish(DomainEvent(
                    type=DomainEventType.SESSION_ENDED,
                    bot_id=bot_id,
                    session_id=session.session_id,
                    status=SessionStatus.DISCONNECTED.value,
                    reason="shutdown",
                ))
        if self._owns_http_client:
            await self._http_client.aclose()
        logger.info("Session manager shut down")

    # --- Internal state handling ---

    async def _teardown(self, bot_id: str) -> Optional[Session]:
        session = self._sessions.get(bot_id)
        if session is None:
            return None
        if session.client is not None:
            try:
                await session.client.close()
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error(f"Error closing client of session {session.session_id}: {e}", exc_info=True)
        if self._sessions.get(bot_id) is session:
            del self._sessions[bot_id]
        self._resolve_waiter(session.session_id)
        return session

    def _resolve_waiter(self, session_id: str) -> None:
        waiter = self._pairing_waiters.pop(session_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def _transition(self, session: Session, new_status: SessionStatus) -> bool:
        old_status = session.status
        if new_status not in ALLOWED_TRANSITIONS[old_status]:
            logger.warning(
                f"Ignoring illegal transition {old_status.value} -> {new_status.value} "
                f"for bot {session.bot_id} (session {session.session_id})"
            )
            return False
        session.status = new_status
        if new_status != SessionStatus.QR_REQUIRED:
            session.qr_code = None
            session.expires = None
        if old_status != new_status:
            logger.info(f"Bot {session.bot_id} session {session.session_id}: {old_status.value} -> {new_status.value}")
            await self.events.publish(DomainEvent(
                type=DomainEventType.STATUS_CHANGED,
                bot_id=session.bot_id,
                session_id=session.session_id,
                status=new_status.value,
            ))
        return True

    async def _on_provider_event(self, bot_id: str, session_id: str, event: ProviderEvent) -> None:
        session = self._sessions.get(bot_id)
        if session is None or session.session_id != session_id:
            logger.warning(f"Ignoring stale '{event.type.value}' event for bot {bot_id} from session {session_id}")
            return

        if event.type == ProviderEventType.QR:
            await self._handle_qr(session, event)
        elif event.type == ProviderEventType.OPEN:
            await self._handle_open(session)
        elif event.type == ProviderEventType.CLOSE:
            await self._handle_close(session, event)
        elif event.type == ProviderEventType.MESSAGE:
            await self._handle_messages(session, event)

    async def _handle_qr(self, session: Session, event: ProviderEvent) -> None:
        if not await self._transition(session, SessionStatus.QR_REQUIRED):
            return
        session.qr_code = event.qr_code
        session.expires = event.expires
        await self.events.publish(DomainEvent(
            type=DomainEventType.QR_UPDATED,
            bot_id=session.bot_id,
            session_id=session.session_id,
            status=session.status.value,
            qr_code=session.qr_code,
            expires=session.expires,
        ))
        self._resolve_waiter(session.session_id)

    async def _handle_open(self, session: Session) -> None:
        if not await self._transition(session, SessionStatus.CONNECTED):
            return
        session.last_seen = utc_now()
        session.last_error = None
        self._reconnect_attempts.pop(session.bot_id, None)
        await self.events.publish(DomainEvent(
            type=DomainEventType.CONNECTED,
            bot_id=session.bot_id,
            session_id=session.session_id,
            status=session.status.value,
        ))
        self._resolve_waiter(session.session_id)

    async def _handle_messages(self, session: Session, event: ProviderEvent) -> None:
        if session.status != SessionStatus.CONNECTED:
            logger.warning(f"Ignoring messages for bot {session.bot_id} in state {session.status.value}")
            return
        if not event.messages:
            return
        await self.events.publish(DomainEvent(
            type=DomainEventType.MESSAGE,
            bot_id=session.bot_id,
            session_id=session.session_id,
            messages=list(event.messages),
        ))

    async def _handle_close(self, session: Session, event: ProviderEvent) -> None:
        if not await self._transition(session, SessionStatus.DISCONNECTED):
            return
        if event.reason:
            session.last_error = event.reason
        self._resolve_waiter(session.session_id)
        if session.client is not None:
            await session.client.close()

        if event.logged_out:
            logger.info(f"Bot {session.bot_id} logged out of WhatsApp, session {session.session_id} removed")
            await self._end_session(session, reason="logged_out")
            return

        attempts = self._reconnect_attempts.get(session.bot_id, 0)
        if self.max_reconnect_attempts and attempts >= self.max_reconnect_attempts:
            logger.warning(
                f"Bot {session.bot_id}: giving up after {attempts} reconnection attempts"
            )
            await self._end_session(session, reason="max_reconnect_attempts")
            return
        self._schedule_reconnect(session, attempts + 1)

    async def _end_session(self, session: Session, reason: str) -> None:
        if self._sessions.get(session.bot_id) is session:
            del self._sessions[session.bot_id]
        self._resolve_waiter(session.session_id)
        session.status = SessionStatus.DISCONNECTED
        session.qr_code = None
        await self.events.publish(DomainEvent(
            type=DomainEventType.SESSION_ENDED,
            bot_id=session.bot_id,
            session_id=session.session_id,
            status=SessionStatus.DISCONNECTED.value,
            reason=reason,
        ))

    # --- Reconnection ---

    def _schedule_reconnect(self, session: Session, attempt: int) -> None:
        self._cancel_reconnect(session.bot_id)
        self._reconnect_attempts[session.bot_id] = attempt
        logger.info(
            f"Scheduling reconnection of bot {session.bot_id} in {self.reconnect_delay}s "
            f"(attempt {attempt}/{self.max_reconnect_attempts or 'unlimited'})"
        )
        self._reconnect_tasks[session.bot_id] = asyncio.create_task(
            self._reconnect_after_delay(session.bot_id, session.session_id),
            name=f"whatsapp-reconnect-{session.bot_id}",
        )

    def _cancel_reconnect(self, bot_id: str) -> None:
        task = self._reconnect_tasks.pop(bot_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_after_delay(self, bot_id: str, session_id: str) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if self._reconnect_tasks.get(bot_id) is asyncio.current_task():
            del self._reconnect_tasks[bot_id]
        session = self._sessions.get(bot_id)
        if session is None or session.session_id != session_id or session.status != SessionStatus.DISCONNECTED:
            logger.info(f"Skipping reconnection of bot {bot_id}: session {session_id} is no longer current")
            return
        try:
            await self.create_session(bot_id, reconnect=True)
        except BotNotFoundError:
            logger.warning(f"Bot {bot_id} was deleted, dropping its session")
            await self._end_session(session, reason="bot_deleted")
        except ProviderConfigurationError as e:
            # create_session already ended the session
            logger.warning(f"Reconnection of bot {bot_id} stopped: {e}")
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error(f"Reconnection of bot {bot_id} failed: {e}", exc_info=True)
