"""
Event Bridge: pub/sub между менеджером сессий и потребителями событий.

Доставка синхронная внутри процесса и не более одного раза:
publish() по очереди вызывает подписчиков в порядке подписки и ждёт
каждого. Пропущенные события не хранятся и не переигрываются.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from esferazap.integrations.whatsapp.providers.base import InboundMessage

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class DomainEventType(str, Enum):
    CONNECTED = "connected"
    QR_UPDATED = "qr-updated"
    SESSION_ENDED = "session-ended"
    MESSAGE = "message"
    STATUS_CHANGED = "status-changed"


@dataclass
class DomainEvent:
    type: DomainEventType
    bot_id: str
    session_id: Optional[str] = None
    status: Optional[str] = None
    qr_code: Optional[str] = None
    expires: Optional[datetime] = None
    reason: Optional[str] = None
    messages: List[InboundMessage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Форма, в которой событие уходит наружу (SSE, аудит)."""
        data: Dict[str, Any] = {"type": self.type.value, "botId": self.bot_id}
        if self.session_id is not None:
            data["sessionId"] = self.session_id
        if self.status is not None:
            data["status"] = self.status
        if self.type == DomainEventType.QR_UPDATED:
            data["qrCode"] = self.qr_code
            data["expires"] = self.expires.isoformat() if self.expires else None
        if self.reason:
            data["reason"] = self.reason
        if self.messages:
            data["messages"] = [
                {
                    "from": m.sender,
                    "text": m.text,
                    "messageId": m.message_id,
                    "timestamp": m.timestamp.isoformat() if m.timestamp else None,
                }
                for m in self.messages
            ]
        return data


EventHandler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


class EventBridge:
    """In-process publish/subscribe for domain events"""

    def __init__(self):
        self._subscribers: List[Tuple[str, EventHandler]] = []

    def subscribe(self, event_type: Union[DomainEventType, str], handler: EventHandler) -> Callable[[], None]:
        """
        Подписывает обработчик на тип события (или на все через "*").

        Returns:
            Callable: функция отписки
        """
        key = event_type.value if isinstance(event_type, DomainEventType) else event_type
        entry = (key, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: DomainEvent) -> None:
        # Снимок списка: подписка/отписка во время доставки не влияет на текущее событие
        for key, handler in list(self._subscribers):
            if key != ALL_EVENTS and key != event.type.value:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error(
                    f"Event handler {getattr(handler, '__qualname__', handler)} failed on "
                    f"'{event.type.value}' for bot {event.bot_id}: {e}",
                    exc_info=True,
                )

    def open_stream(self, bot_id: Optional[str] = None, max_queue_size: int = 100) -> "EventStream":
        """Подписка-очередь для SSE/long-poll потребителей. Закрывается через close()."""
        return EventStream(self, bot_id, max_queue_size)


class EventStream:
    """
    Очередь событий одного потребителя.

    Если потребитель не успевает и очередь заполнена, новые события
    отбрасываются.
    """

    def __init__(self, bridge: EventBridge, bot_id: Optional[str], max_queue_size: int):
        self.bot_id = bot_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._unsubscribe = bridge.subscribe(ALL_EVENTS, self._enqueue)

    def _enqueue(self, event: DomainEvent) -> None:
        if self.bot_id is not None and event.bot_id != self.bot_id:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event stream queue full for bot {self.bot_id}, dropping '{event.type.value}'")

    async def get(self) -> DomainEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._unsubscribe()

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> DomainEvent:
        return await self.get()
