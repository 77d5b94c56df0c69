import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from esferazap.core.dependencies import (
    get_event_bridge,
    get_session_manager,
    require_bot_access,
    require_session_access,
)
from esferazap.core.exceptions import SessionNotFoundError
from esferazap.services.event_bridge import EventBridge, EventStream
from esferazap.services.session_manager import SessionManager
from esferazap.api.schemas.whatsapp_schemas import (
    ConnectionCheckResponse,
    DisconnectResponse,
    QRCodeResponse,
    SendMessageRequest,
    SendMessageResponse,
    SessionStatusResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/whatsapp", tags=["WhatsApp"])

KEEP_ALIVE_INTERVAL = 30.0  # секунды


@router.get("/qr/{bot_id}", response_model=QRCodeResponse)
async def get_qr_code(
    bot_id: str = Depends(require_bot_access),
    manager: SessionManager = Depends(get_session_manager),
):
    """Текущий QR-код и статус сессии бота. 404, если сессии нет."""
    try:
        return manager.get_qr(bot_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="WhatsApp session not found")


@router.post("/generate-qr/{bot_id}", response_model=QRCodeResponse)
async def generate_qr_code(
    bot_id: str = Depends(require_bot_access),
    manager: SessionManager = Depends(get_session_manager),
):
    """Пересоздаёт сессию и возвращает новый код сопряжения."""
    logger.info(f"QR code generation requested for bot {bot_id}")
    return await manager.generate_qr_code(bot_id)


@router.post("/connect/{bot_id}", response_model=SessionStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def connect_bot(
    bot_id: str = Depends(require_bot_access),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await manager.create_session(bot_id)
    return {**session.snapshot(), "reconnectPending": manager.reconnect_pending(bot_id)}


@router.post("/disconnect/{bot_id}", response_model=DisconnectResponse)
async def disconnect_bot(
    bot_id: str = Depends(require_bot_access),
    manager: SessionManager = Depends(get_session_manager),
):
    if not await manager.disconnect_session(bot_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="WhatsApp session not found")
    return {"message": "WhatsApp session disconnected"}


@router.get("/status/{bot_id}", response_model=SessionStatusResponse)
async def get_session_status(
    bot_id: str = Depends(require_bot_access),
    manager: SessionManager = Depends(get_session_manager),
):
    session = manager.get_session(bot_id)
    if session is None:
        return {"botId": bot_id, "status": "disconnected", "reconnectPending": False}
    return {**session.snapshot(), "reconnectPending": manager.reconnect_pending(bot_id)}


@router.get("/check/{bot_id}", response_model=ConnectionCheckResponse)
async def check_provider_connection(
    bot_id: str = Depends(require_bot_access),
    manager: SessionManager = Depends(get_session_manager),
):
    """Опрос провайдера без изменения состояния сессии."""
    check = await manager.check_connection(bot_id)
    return {"botId": bot_id, "connected": check.connected, "status": check.status}


@router.post("/send/{bot_id}", response_model=SendMessageResponse)
async def send_message(
    body: SendMessageRequest,
    bot_id: str = Depends(require_bot_access),
    manager: SessionManager = Depends(get_session_manager),
):
    result = await manager.send_message(bot_id, body.to, body.content)
    return {"success": result.success, "messageId": result.message_id, "raw": result.raw}


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse)
async def get_session_by_id(
    session_id: str = Depends(require_session_access),
    manager: SessionManager = Depends(get_session_manager),
):
    session = manager.find_by_session_id(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="WhatsApp session is not active")
    return {**session.snapshot(), "reconnectPending": manager.reconnect_pending(session.bot_id)}


# --- SSE Stream Logic ---
async def session_event_stream(stream: EventStream, bot_id: str) -> AsyncGenerator[str, None]:
    """
    Генератор SSE с доменными событиями бота.
    Включает механизм keep-alive.
    """
    try:
        yield "event: connected\ndata: {\"message\": \"SSE connection established\"}\n\n"
        while True:
            try:
                event = await asyncio.wait_for(stream.get(), timeout=KEEP_ALIVE_INTERVAL)
            except asyncio.TimeoutError:
                yield "event: heartbeat\ndata: {\"type\": \"heartbeat\"}\n\n"
                continue
            yield f"event: {event.type.value}\ndata: {json.dumps(event.to_dict())}\n\n"
    except asyncio.CancelledError:
        logger.info(f"SSE connection for bot {bot_id} closed by client.")
        raise
    finally:
        stream.close()
        logger.info(f"SSE stream for bot {bot_id} finished.")


@router.get("/events/{bot_id}", summary="Connect to bot session event stream")
async def session_events(
    bot_id: str = Depends(require_bot_access),
    event_bridge: EventBridge = Depends(get_event_bridge),
):
    logger.info(f"SSE connection requested for bot {bot_id}")
    stream = event_bridge.open_stream(bot_id)
    return StreamingResponse(session_event_stream(stream, bot_id), media_type="text/event-stream")
