"""Audit logging of tenant actions and session lifecycle events."""

import logging
from typing import Optional

from esferazap.services.event_bridge import ALL_EVENTS, DomainEvent, EventBridge

logger = logging.getLogger("esferazap.audit")


class AuditLogger:
    """Пишет в лог каждое доменное событие и каждое действие тенанта"""

    def attach(self, event_bridge: EventBridge):
        return event_bridge.subscribe(ALL_EVENTS, self.on_event)

    def on_event(self, event: DomainEvent) -> None:
        details = f"session={event.session_id}"
        if event.status:
            details += f" status={event.status}"
        if event.reason:
            details += f" reason={event.reason}"
        if event.messages:
            details += f" messages={len(event.messages)}"
        logger.info(f"[AUDIT] bot={event.bot_id} event={event.type.value} {details}")

    def log_action(self, tenant_id: Optional[str], method: str, path: str, bot_id: Optional[str] = None) -> None:
        logger.info(f"[AUDIT] tenant={tenant_id} {method} {path} bot={bot_id}")
