"""
Baileys WhatsApp Provider

Self-hosted мост на базе Baileys. Живое соединение держится через
Socket.IO (события `qr`, `connection.update`, `messages.upsert`),
REST API моста используется для запроса QR, проверки статуса и отправки.
Этот же адаптер обслуживает wppconnect и venom.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import socketio

from esferazap.core.config import settings
from esferazap.core.exceptions import ProviderRequestError
from esferazap.integrations.whatsapp.qr import ensure_data_url
from esferazap.integrations.whatsapp.providers.base import (
    MISSING_CREDENTIALS_MESSAGE,
    BaseWhatsAppProvider,
    ConnectionCheck,
    EventCallback,
    InboundMessage,
    ProviderConnection,
    ProviderEvent,
    ProviderResult,
    QRCodeResult,
    QRStatus,
    utc_now,
    verify_sha256_signature,
)

logger = logging.getLogger(__name__)

QR_TTL = timedelta(minutes=2)
# DisconnectReason.loggedOut в Baileys
LOGGED_OUT_STATUS_CODE = 401


def extract_message_text(message: Dict[str, Any]) -> Optional[str]:
    """Достаёт текст из conversation или extendedTextMessage.text"""
    if not isinstance(message, dict):
        return None
    if message.get("conversation"):
        return message["conversation"]
    extended = message.get("extendedTextMessage") or {}
    return extended.get("text")


def _disconnect_status_code(update: Dict[str, Any]) -> Optional[int]:
    if update.get("statusCode") is not None:
        return int(update["statusCode"])
    last_disconnect = update.get("lastDisconnect") or {}
    error = last_disconnect.get("error") or {}
    output = error.get("output") or {}
    code = output.get("statusCode")
    return int(code) if code is not None else None


class BaileysProvider(BaseWhatsAppProvider):
    """Adapter for a self-hosted Baileys bridge"""

    name = "baileys"

    @property
    def server_url(self) -> str:
        return (self.config.server_url or settings.BAILEYS_SERVER_URL or "").rstrip("/")

    @property
    def session_key(self) -> Optional[str]:
        return self.config.instance_id or self.bot_id

    def auth_headers(self) -> Dict[str, str]:
        api_key = self.config.api_key
        if not api_key and settings.BAILEYS_API_KEY:
            api_key = settings.BAILEYS_API_KEY.get_secret_value()
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.server_url:
            missing.append("server_url")
        if not self.session_key:
            missing.append("instance_id")
        return missing

    async def generate_qr_code(self) -> QRCodeResult:
        if self.missing_credentials():
            return QRCodeResult.error(MISSING_CREDENTIALS_MESSAGE)
        try:
            response = await self.http_client.post(
                f"{self.server_url}/api/sessions",
                json={"sessionId": self.session_key},
                headers=self.auth_headers(),
            )
            if not response.is_success:
                return QRCodeResult.error(f"Erro ao gerar QR Code: HTTP {response.status_code}")
            data = response.json()
            if data.get("connected"):
                return QRCodeResult(qr_code=None, status=QRStatus.CONNECTED, message="WhatsApp conectado")
            qr = data.get("qr")
            if not qr:
                return QRCodeResult.error("Servidor Baileys não retornou QR Code")
            return QRCodeResult(
                qr_code=ensure_data_url(qr),
                status=QRStatus.PENDING,
                message="Escaneie o QR Code com seu WhatsApp",
                expires=utc_now() + QR_TTL,
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Baileys QR generation failed for {self.session_key}: {e}")
            return QRCodeResult.error(f"Erro ao conectar com servidor Baileys: {e}")

    async def check_connection(self) -> ConnectionCheck:
        if self.missing_credentials():
            return ConnectionCheck(connected=False, status=MISSING_CREDENTIALS_MESSAGE)
        try:
            response = await self.http_client.get(
                f"{self.server_url}/api/sessions/{self.session_key}",
                headers=self.auth_headers(),
            )
            if not response.is_success:
                return ConnectionCheck(connected=False, status=f"HTTP {response.status_code}")
            data = response.json()
            connected = bool(data.get("connected"))
            return ConnectionCheck(connected=connected, status="connected" if connected else "disconnected")
        except (httpx.HTTPError, ValueError) as e:
            return ConnectionCheck(connected=False, status=f"Erro: {e}")

    async def send_message(self, to: str, content: str) -> ProviderResult:
        self.require_credentials()
        try:
            response = await self.http_client.post(
                f"{self.server_url}/api/messages/text",
                json={"sessionId": self.session_key, "to": to, "text": content},
                headers=self.auth_headers(),
            )
        except httpx.HTTPError as e:
            raise ProviderRequestError(self.name, f"send failed: {e}")
        self._raise_for_response(response, "send_message")
        data = response.json() if response.content else {}
        message_id = data.get("messageId") or (data.get("key") or {}).get("id")
        logger.debug("Message sent successfully to %s via Baileys", to)
        return ProviderResult(success=True, message_id=message_id, raw=data)

    def validate_webhook(self, payload: bytes, signature: Optional[str] = None, url: Optional[str] = None) -> bool:
        if not self.config.webhook_secret:
            return True
        return verify_sha256_signature(self.config.webhook_secret, payload, signature)

    def translate(self, event_name: str, data: Any) -> List[ProviderEvent]:
        """Переводит событие моста (Socket.IO или вебхук) в сырые события провайдера."""
        if event_name == "qr":
            qr = data.get("qr") if isinstance(data, dict) else data
            if not qr:
                return []
            return [ProviderEvent.qr(ensure_data_url(qr), expires=utc_now() + QR_TTL)]

        if event_name == "connection.update":
            if not isinstance(data, dict):
                return []
            events = []
            if data.get("qr"):
                events.append(ProviderEvent.qr(ensure_data_url(data["qr"]), expires=utc_now() + QR_TTL))
            connection = data.get("connection")
            if connection == "open":
                events.append(ProviderEvent.open())
            elif connection == "close":
                status_code = _disconnect_status_code(data)
                events.append(ProviderEvent.close(
                    logged_out=status_code == LOGGED_OUT_STATUS_CODE,
                    reason=f"status_code={status_code}" if status_code is not None else None,
                ))
            return events

        if event_name == "messages.upsert":
            raw_messages = data.get("messages", []) if isinstance(data, dict) else data or []
            messages = []
            for raw in raw_messages:
                key = raw.get("key") or {}
                if key.get("fromMe"):
                    continue
                text = extract_message_text(raw.get("message") or {})
                if not text or not key.get("remoteJid"):
                    continue
                timestamp = raw.get("messageTimestamp")
                messages.append(InboundMessage(
                    sender=key["remoteJid"],
                    text=text,
                    message_id=key.get("id"),
                    timestamp=utc_now() if timestamp is None else _from_epoch(timestamp),
                ))
            return [ProviderEvent.message(messages)] if messages else []

        logger.debug(f"Ignoring unknown Baileys event '{event_name}'")
        return []

    def parse_webhook(self, payload: Any) -> List[ProviderEvent]:
        if not isinstance(payload, dict):
            return []
        return self.translate(payload.get("event", ""), payload.get("data"))

    def create_connection(self, bot_id: str, session_id: str, on_event: EventCallback) -> "BaileysConnection":
        return BaileysConnection(self, bot_id, session_id, on_event)


def _from_epoch(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return utc_now()


class BaileysConnection(ProviderConnection):
    """Socket.IO соединение с мостом Baileys для одной сессии"""

    provider: BaileysProvider

    def __init__(self, provider: BaileysProvider, bot_id: str, session_id: str, on_event: EventCallback):
        super().__init__(provider, bot_id, session_id, on_event)
        self.sio: Optional[socketio.AsyncClient] = None

    async def start(self) -> None:
        self.provider.require_credentials()
        if self.closed:
            return
        # Переподключением управляет менеджер сессий, а не клиент Socket.IO
        self.sio = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._setup_handlers()
        try:
            await self.sio.connect(
                self.provider.server_url,
                socketio_path=settings.BAILEYS_SOCKETIO_PATH,
                headers=self.provider.auth_headers(),
                auth={"sessionId": self.provider.session_key},
                wait_timeout=settings.WHATSAPP_HTTP_TIMEOUT,
            )
        except socketio.exceptions.ConnectionError as e:
            raise ProviderRequestError(self.provider.name, f"Socket.IO connection failed: {e}")
        if self.closed:
            # Сессию заменили, пока шло подключение
            await self.sio.disconnect()
            return
        logger.info(f"Connected to Baileys bridge at {self.provider.server_url} for bot {self.bot_id}")
        await self.sio.emit("session:start", {"sessionId": self.provider.session_key})

    def _setup_handlers(self) -> None:
        for event_name in ("qr", "connection.update", "messages.upsert"):
            self.sio.on(event_name, self._make_handler(event_name))
        self.sio.on("disconnect", self._on_transport_disconnect)

    def _make_handler(self, event_name: str):
        async def handler(data=None):
            if isinstance(data, dict) and data.get("sessionId") not in (None, self.provider.session_key):
                return
            for event in self.provider.translate(event_name, data):
                await self.emit(event)
        return handler

    async def _on_transport_disconnect(self, *args):
        if self.closed:
            return
        logger.warning(f"Socket.IO transport to Baileys bridge lost for bot {self.bot_id}")
        await self.emit(ProviderEvent.close(reason="transport_disconnected"))

    async def _close_transport(self) -> None:
        try:
            if self.sio and self.sio.connected:
                await self.sio.disconnect()
        except (ConnectionError, OSError, AttributeError) as e:
            logger.error("Error during Socket.IO disconnect: %s", e)
