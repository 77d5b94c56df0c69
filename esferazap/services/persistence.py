"""
Write-through persistence of session state.

Подписчик EventBridge, который сразу записывает каждое изменение
статуса/QR в хранилище, чтобы внешние поллеры видели актуальное состояние.
"""

import logging
from typing import Callable, List

from esferazap.integrations.whatsapp.providers.base import utc_now
from esferazap.services.event_bridge import DomainEvent, DomainEventType, EventBridge
from esferazap.services.storage import BaseStorage, StoredMessage, WhatsAppSessionRecord

logger = logging.getLogger(__name__)


class SessionPersistence:
    """Переносит доменные события в хранилище ботов и сессий"""

    def __init__(self, storage: BaseStorage):
        self.storage = storage
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self, event_bridge: EventBridge) -> None:
        handlers = {
            DomainEventType.STATUS_CHANGED: self.on_status_changed,
            DomainEventType.QR_UPDATED: self.on_qr_updated,
            DomainEventType.CONNECTED: self.on_connected,
            DomainEventType.SESSION_ENDED: self.on_session_ended,
            DomainEventType.MESSAGE: self.on_message,
        }
        for event_type, handler in handlers.items():
            self._unsubscribers.append(event_bridge.subscribe(event_type, handler))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def _upsert_session(self, event: DomainEvent, **updates) -> None:
        record = await self.storage.get_whatsapp_session(event.bot_id)
        if record is None or record.session_id != event.session_id:
            await self.storage.create_whatsapp_session(WhatsAppSessionRecord(
                bot_id=event.bot_id,
                session_id=event.session_id,
                **updates,
            ))
            return
        await self.storage.update_whatsapp_session(event.bot_id, **updates)

    async def on_status_changed(self, event: DomainEvent) -> None:
        updates = {"status": event.status}
        if event.status != "qr_required":
            updates["qr_code"] = None
        await self._upsert_session(event, **updates)
        await self.storage.update_bot(event.bot_id, **updates)

    async def on_qr_updated(self, event: DomainEvent) -> None:
        await self._upsert_session(event, status=event.status, qr_code=event.qr_code)
        await self.storage.update_bot(event.bot_id, status=event.status, qr_code=event.qr_code)

    async def on_connected(self, event: DomainEvent) -> None:
        now = utc_now()
        await self._upsert_session(event, status="connected", qr_code=None, last_seen=now)
        await self.storage.update_bot(event.bot_id, status="connected", qr_code=None, last_active=now)

    async def on_session_ended(self, event: DomainEvent) -> None:
        await self.storage.delete_whatsapp_session(event.bot_id)
        await self.storage.update_bot(event.bot_id, status="disconnected", qr_code=None)
        logger.debug(f"Persisted end of session {event.session_id} for bot {event.bot_id} ({event.reason})")

    async def on_message(self, event: DomainEvent) -> None:
        for message in event.messages:
            await self.storage.create_message(StoredMessage(
                bot_id=event.bot_id,
                sender=message.sender,
                content=message.text,
                message_id=message.message_id,
                created_at=message.timestamp or utc_now(),
            ))
        await self.storage.update_bot(event.bot_id, last_active=utc_now())
