from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField

# --- Pydantic Models (API Layer) for WhatsApp sessions ---


class QRCodeResponse(BaseModel):
    qrCode: Optional[str] = None
    status: str
    sessionId: Optional[str] = None
    message: Optional[str] = None
    expires: Optional[str] = None


class SessionStatusResponse(BaseModel):
    botId: str
    sessionId: Optional[str] = None
    provider: Optional[str] = None
    status: str
    qrCode: Optional[str] = None
    expires: Optional[str] = None
    lastSeen: Optional[str] = None
    lastError: Optional[str] = None
    createdAt: Optional[str] = None
    reconnectPending: bool = False


class DisconnectResponse(BaseModel):
    message: str


class ConnectionCheckResponse(BaseModel):
    botId: str
    connected: bool
    status: str


class SendMessageRequest(BaseModel):
    to: str = PydanticField(..., min_length=1, description="Recipient phone number or WhatsApp JID")
    content: str = PydanticField(..., min_length=1, description="Plain UTF-8 text")


class SendMessageResponse(BaseModel):
    success: bool
    messageId: Optional[str] = None
    raw: Dict[str, Any] = PydanticField(default_factory=dict)

    model_config = ConfigDict(extra="allow")


class WebhookAck(BaseModel):
    status: str = "received"
