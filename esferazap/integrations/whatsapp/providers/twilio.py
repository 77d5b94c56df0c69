"""
Twilio WhatsApp Provider

Сопряжение через sandbox: в QR кодируется ссылка wa.me с командой
`join <instance>`. Первое входящее сообщение `join ...` открывает
сессию, остальные входящие приходят обычными сообщениями.
"""

import base64
import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, quote

import httpx

from esferazap.core.config import settings
from esferazap.core.exceptions import ProviderRequestError
from esferazap.integrations.whatsapp.qr import render_qr_data_url
from esferazap.integrations.whatsapp.providers.base import (
    MISSING_CREDENTIALS_MESSAGE,
    BaseWhatsAppProvider,
    ConnectionCheck,
    EventCallback,
    GatewayConnection,
    InboundMessage,
    ProviderEvent,
    ProviderResult,
    QRCodeResult,
    QRStatus,
    utc_now,
    verify_sha256_signature,
)

logger = logging.getLogger(__name__)

QR_TTL = timedelta(hours=24)
WHATSAPP_PREFIX = "whatsapp:"


def _with_prefix(number: str) -> str:
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"


def compute_twilio_signature(auth_token: str, url: str, params: Dict[str, str]) -> str:
    """base64(HMAC-SHA1(auth_token, url + отсортированные пары ключ+значение))"""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


class TwilioProvider(BaseWhatsAppProvider):
    """Adapter for Twilio WhatsApp messaging"""

    name = "twilio"

    @property
    def account_sid(self) -> Optional[str]:
        return self.config.instance_id

    @property
    def sender_number(self) -> str:
        return self.config.phone_number_id or settings.TWILIO_SANDBOX_NUMBER

    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.account_sid or "", self.config.api_key or "")

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.account_sid:
            missing.append("instance_id")
        if not self.config.api_key:
            missing.append("api_key")
        return missing

    async def generate_qr_code(self) -> QRCodeResult:
        if not self.account_sid:
            return QRCodeResult.error(MISSING_CREDENTIALS_MESSAGE)
        number = settings.TWILIO_SANDBOX_NUMBER.lstrip("+")
        link = f"https://wa.me/{number}?text={quote(f'join {self.account_sid}')}"
        return QRCodeResult(
            qr_code=render_qr_data_url(link),
            status=QRStatus.PENDING,
            message="Escaneie e envie a mensagem para ativar o sandbox",
            expires=utc_now() + QR_TTL,
        )

    async def check_connection(self) -> ConnectionCheck:
        if self.missing_credentials():
            return ConnectionCheck(connected=False, status=MISSING_CREDENTIALS_MESSAGE)
        try:
            response = await self.http_client.get(f"{settings.TWILIO_API_URL}/Accounts.json", auth=self._auth())
            if response.is_success:
                return ConnectionCheck(connected=True, status="connected")
            return ConnectionCheck(connected=False, status=f"HTTP {response.status_code}")
        except httpx.HTTPError as e:
            return ConnectionCheck(connected=False, status=f"Erro: {e}")

    async def send_message(self, to: str, content: str) -> ProviderResult:
        self.require_credentials()
        try:
            response = await self.http_client.post(
                f"{settings.TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json",
                data={
                    "From": _with_prefix(self.sender_number),
                    "To": _with_prefix(to),
                    "Body": content,
                },
                auth=self._auth(),
            )
        except httpx.HTTPError as e:
            raise ProviderRequestError(self.name, f"send failed: {e}")
        self._raise_for_response(response, "send_message")
        data = response.json()
        return ProviderResult(success=True, message_id=data.get("sid"), raw=data)

    def validate_webhook(self, payload: bytes, signature: Optional[str] = None, url: Optional[str] = None) -> bool:
        secret = self.config.webhook_secret or self.config.api_key
        if not secret:
            return True
        if not signature:
            return False
        if url:
            try:
                params = dict(parse_qsl(payload.decode("utf-8"), keep_blank_values=True))
            except UnicodeDecodeError:
                logger.warning("Twilio webhook body is not valid UTF-8")
                return False
            expected = compute_twilio_signature(secret, url, params)
            if hmac.compare_digest(expected, signature):
                return True
        return verify_sha256_signature(secret, payload, signature)

    def parse_webhook(self, payload: Any) -> List[ProviderEvent]:
        if not isinstance(payload, dict) or not payload.get("From"):
            return []
        body = str(payload.get("Body", "")).strip()
        if body.lower().startswith("join "):
            return [ProviderEvent.open()]
        sender = payload["From"]
        if sender.startswith(WHATSAPP_PREFIX):
            sender = sender[len(WHATSAPP_PREFIX):]
        return [ProviderEvent.message([
            InboundMessage(sender=sender, text=body, message_id=payload.get("MessageSid"), timestamp=utc_now())
        ])]

    def create_connection(self, bot_id: str, session_id: str, on_event: EventCallback) -> GatewayConnection:
        return GatewayConnection(self, bot_id, session_id, on_event)
