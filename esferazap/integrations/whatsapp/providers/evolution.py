"""
Evolution API WhatsApp Provider

Hosted REST-шлюз. QR запрашивается через /instance/connect, статус
сессии и входящие сообщения приходят вебхуками (QRCODE_UPDATED,
CONNECTION_UPDATE, MESSAGES_UPSERT).
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx

from esferazap.core.exceptions import ProviderRequestError
from esferazap.integrations.whatsapp.qr import ensure_data_url
from esferazap.integrations.whatsapp.providers.baileys import extract_message_text
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

QR_TTL = timedelta(minutes=5)


class EvolutionAPIProvider(BaseWhatsAppProvider):
    """Adapter for Evolution API instances"""

    name = "evolution_api"

    @property
    def server_url(self) -> str:
        return (self.config.server_url or "").rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"apikey": self.config.api_key or "", "Content-Type": "application/json"}

    def missing_credentials(self) -> List[str]:
        required = {
            "server_url": self.config.server_url,
            "instance_id": self.config.instance_id,
            "api_key": self.config.api_key,
        }
        return [name for name, value in required.items() if not value]

    async def generate_qr_code(self) -> QRCodeResult:
        if self.missing_credentials():
            return QRCodeResult.error(MISSING_CREDENTIALS_MESSAGE)
        try:
            response = await self.http_client.get(
                f"{self.server_url}/instance/connect/{self.config.instance_id}",
                headers=self._headers(),
            )
            if not response.is_success:
                return QRCodeResult.error(f"Erro ao gerar QR Code: HTTP {response.status_code}")
            data = response.json()
            if (data.get("instance") or {}).get("state") == "open":
                return QRCodeResult(qr_code=None, status=QRStatus.CONNECTED, message="WhatsApp conectado")
            qr = data.get("base64") or data.get("qrcode") or data.get("code")
            if isinstance(qr, dict):
                qr = qr.get("base64") or qr.get("code")
            if not qr:
                return QRCodeResult.error("Evolution API não retornou QR Code")
            return QRCodeResult(
                qr_code=ensure_data_url(qr),
                status=QRStatus.PENDING,
                message="Escaneie o QR Code com seu WhatsApp",
                expires=utc_now() + QR_TTL,
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Evolution API QR generation failed for {self.config.instance_id}: {e}")
            return QRCodeResult.error(f"Erro ao conectar com Evolution API: {e}")

    async def check_connection(self) -> ConnectionCheck:
        if self.missing_credentials():
            return ConnectionCheck(connected=False, status=MISSING_CREDENTIALS_MESSAGE)
        try:
            response = await self.http_client.get(
                f"{self.server_url}/instance/fetchInstances",
                headers=self._headers(),
            )
            if not response.is_success:
                return ConnectionCheck(connected=False, status=f"HTTP {response.status_code}")
            for item in response.json():
                instance = item.get("instance", item)
                name = instance.get("instanceName") or instance.get("name")
                if name != self.config.instance_id:
                    continue
                state = instance.get("state") or instance.get("connectionStatus") or "unknown"
                return ConnectionCheck(connected=state == "open", status=state)
            return ConnectionCheck(connected=False, status="instance_not_found")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            return ConnectionCheck(connected=False, status=f"Erro: {e}")

    async def send_message(self, to: str, content: str) -> ProviderResult:
        self.require_credentials()
        try:
            response = await self.http_client.post(
                f"{self.server_url}/message/sendText/{self.config.instance_id}",
                json={"number": to, "text": content},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise ProviderRequestError(self.name, f"send failed: {e}")
        self._raise_for_response(response, "send_message")
        data = response.json() if response.content else {}
        return ProviderResult(success=True, message_id=(data.get("key") or {}).get("id"), raw=data)

    def validate_webhook(self, payload: bytes, signature: Optional[str] = None, url: Optional[str] = None) -> bool:
        if not self.config.webhook_secret:
            return True
        return verify_sha256_signature(self.config.webhook_secret, payload, signature)

    def parse_webhook(self, payload: Any) -> List[ProviderEvent]:
        if not isinstance(payload, dict):
            return []
        event = str(payload.get("event", "")).upper().replace(".", "_")
        data = payload.get("data") or {}

        if event == "QRCODE_UPDATED":
            qrcode = data.get("qrcode") or {}
            qr = qrcode.get("base64") or qrcode.get("code") if isinstance(qrcode, dict) else qrcode
            return [ProviderEvent.qr(ensure_data_url(qr), expires=utc_now() + QR_TTL)] if qr else []

        if event == "CONNECTION_UPDATE":
            state = data.get("state")
            if state == "open":
                return [ProviderEvent.open()]
            if state == "close":
                status_reason = data.get("statusReason")
                return [ProviderEvent.close(logged_out=status_reason == 401, reason=f"status_reason={status_reason}")]
            return []

        if event == "MESSAGES_UPSERT":
            items = data if isinstance(data, list) else [data]
            messages = []
            for item in items:
                key = item.get("key") or {}
                text = extract_message_text(item.get("message") or {})
                if key.get("fromMe") or not text or not key.get("remoteJid"):
                    continue
                messages.append(InboundMessage(sender=key["remoteJid"], text=text, message_id=key.get("id"), timestamp=utc_now()))
            return [ProviderEvent.message(messages)] if messages else []

        logger.debug(f"Ignoring Evolution API webhook event '{event}'")
        return []

    def create_connection(self, bot_id: str, session_id: str, on_event: EventCallback) -> GatewayConnection:
        return GatewayConnection(self, bot_id, session_id, on_event)
