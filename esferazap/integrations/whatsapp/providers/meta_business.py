"""
Meta WhatsApp Business (Cloud API) Provider

У Cloud API нет QR-сопряжения: вместо него в QR кодируется ссылка на
OAuth-диалог Meta. Если у бота уже есть валидный access token, сессия
открывается сразу после проверки учётных данных.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from esferazap.core.config import settings
from esferazap.core.exceptions import ProviderConfigurationError, ProviderRequestError
from esferazap.integrations.whatsapp.qr import render_qr_data_url
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

QR_TTL = timedelta(minutes=10)
OAUTH_SCOPES = "whatsapp_business_management,whatsapp_business_messaging"
MAX_RATE_LIMIT_RETRIES = 3


class MetaBusinessProvider(BaseWhatsAppProvider):
    """Adapter for the Meta WhatsApp Cloud API"""

    name = "meta_business"
    retry_base_delay: float = 1.0

    @property
    def graph_url(self) -> str:
        return f"{settings.META_GRAPH_URL.rstrip('/')}/{settings.META_GRAPH_VERSION}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.access_token}"}

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.config.access_token:
            missing.append("access_token")
        if not self.config.phone_number_id:
            missing.append("phone_number_id")
        return missing

    def oauth_url(self) -> Optional[str]:
        if not settings.META_APP_ID or not settings.META_REDIRECT_URI:
            return None
        query = urlencode({
            "client_id": settings.META_APP_ID,
            "redirect_uri": settings.META_REDIRECT_URI,
            "scope": OAUTH_SCOPES,
        })
        return f"https://www.facebook.com/{settings.META_GRAPH_VERSION}/dialog/oauth?{query}"

    async def generate_qr_code(self) -> QRCodeResult:
        url = self.oauth_url()
        if not url:
            return QRCodeResult.error("Meta App ID ou Redirect URI não configurados")
        return QRCodeResult(
            qr_code=render_qr_data_url(url),
            status=QRStatus.PENDING,
            message="Escaneie para autorizar o WhatsApp Business",
            expires=utc_now() + QR_TTL,
        )

    async def check_connection(self) -> ConnectionCheck:
        if self.missing_credentials():
            return ConnectionCheck(connected=False, status=MISSING_CREDENTIALS_MESSAGE)
        try:
            response = await self.http_client.get(
                f"{self.graph_url}/{self.config.phone_number_id}",
                headers=self._headers(),
            )
            if response.is_success:
                return ConnectionCheck(connected=True, status="connected")
            return ConnectionCheck(connected=False, status=f"HTTP {response.status_code}")
        except httpx.HTTPError as e:
            return ConnectionCheck(connected=False, status=f"Erro: {e}")

    async def send_message(self, to: str, content: str) -> ProviderResult:
        """
        Отправляет текст через Cloud API.

        На HTTP 429 делает до MAX_RATE_LIMIT_RETRIES повторов с
        экспоненциальной задержкой (1s, 2s, 4s).
        """
        self.require_credentials()
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": content},
        }
        url = f"{self.graph_url}/{self.config.phone_number_id}/messages"
        attempt = 0
        while True:
            try:
                response = await self.http_client.post(url, json=payload, headers=self._headers())
            except httpx.HTTPError as e:
                raise ProviderRequestError(self.name, f"send failed: {e}")
            if response.status_code == 429 and attempt < MAX_RATE_LIMIT_RETRIES:
                delay = self.retry_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(f"Meta rate limit hit sending to {to}, retry {attempt}/{MAX_RATE_LIMIT_RETRIES} in {delay}s")
                await asyncio.sleep(delay)
                continue
            break
        self._raise_for_response(response, "send_message")
        data = response.json()
        messages = data.get("messages") or [{}]
        return ProviderResult(success=True, message_id=messages[0].get("id"), raw=data)

    def validate_webhook(self, payload: bytes, signature: Optional[str] = None, url: Optional[str] = None) -> bool:
        if not self.config.webhook_secret:
            return True
        return verify_sha256_signature(self.config.webhook_secret, payload, signature)

    def parse_webhook(self, payload: Any) -> List[ProviderEvent]:
        if not isinstance(payload, dict):
            return []
        messages = []
        for entry in payload.get("entry", []):
            for change in entry.get("changes", []):
                value = change.get("value") or {}
                for raw in value.get("messages", []):
                    if raw.get("type") != "text":
                        continue
                    timestamp = raw.get("timestamp")
                    messages.append(InboundMessage(
                        sender=raw.get("from", ""),
                        text=(raw.get("text") or {}).get("body", ""),
                        message_id=raw.get("id"),
                        timestamp=datetime.fromtimestamp(int(timestamp), tz=timezone.utc) if timestamp else utc_now(),
                    ))
        return [ProviderEvent.message(messages)] if messages else []

    def create_connection(self, bot_id: str, session_id: str, on_event: EventCallback) -> "MetaBusinessConnection":
        return MetaBusinessConnection(self, bot_id, session_id, on_event)


class MetaBusinessConnection(ProviderConnection):
    """
    Сессия Cloud API.

    С токеном: проверка учётных данных и сразу `open`.
    Без токена: QR со ссылкой на OAuth-диалог.
    """

    provider: MetaBusinessProvider

    async def start(self) -> None:
        if self.closed:
            return
        if not self.provider.missing_credentials():
            check = await self.provider.check_connection()
            if self.closed:
                return
            if not check.connected:
                raise ProviderRequestError(self.provider.name, f"credentials check failed: {check.status}")
            await self.emit(ProviderEvent.open())
            return
        result = await self.provider.generate_qr_code()
        if result.status != QRStatus.PENDING:
            raise ProviderConfigurationError(self.provider.name, result.message or MISSING_CREDENTIALS_MESSAGE)
        await self.emit(ProviderEvent.qr(result.qr_code, expires=result.expires))
