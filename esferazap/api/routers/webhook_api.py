import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from esferazap.core.config import settings
from esferazap.core.dependencies import get_session_manager
from esferazap.services.session_manager import SessionManager
from esferazap.api.schemas.whatsapp_schemas import WebhookAck

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["Webhooks"])

SIGNATURE_HEADERS = ("X-Hub-Signature-256", "X-Twilio-Signature", "X-Webhook-Signature")


def _parse_body(raw_body: bytes, content_type: str) -> Any:
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Webhook body is not valid UTF-8")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body is not valid UTF-8")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=True))
    try:
        return json.loads(text or "{}")
    except json.JSONDecodeError:
        logger.warning("Webhook body is neither JSON nor form data")
        return None


def _signature(request: Request) -> Optional[str]:
    for header in SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


@router.get("/whatsapp/{bot_id}", response_class=PlainTextResponse)
async def verify_webhook(
    bot_id: str,
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Рукопожатие верификации вебхука Meta: вернуть hub.challenge при совпадении токена."""
    expected = settings.WEBHOOK_VERIFY_TOKEN.get_secret_value() if settings.WEBHOOK_VERIFY_TOKEN else None
    if hub_mode == "subscribe" and expected and hub_verify_token == expected:
        logger.info(f"Webhook verified for bot {bot_id}")
        return hub_challenge or ""
    logger.warning(f"Webhook verification failed for bot {bot_id}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verification failed")


@router.post("/whatsapp/{bot_id}", response_model=WebhookAck)
async def receive_webhook(
    bot_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
):
    """Входящий вебхук провайдера. Подпись проверяется адаптером бота."""
    raw_body = await request.body()
    payload = _parse_body(raw_body, request.headers.get("content-type", ""))
    accepted = await manager.handle_webhook(
        bot_id,
        raw_body,
        payload,
        signature=_signature(request),
        url=str(request.url),
    )
    if not accepted:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    return {"status": "received"}
