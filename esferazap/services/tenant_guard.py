"""
Tenant Isolation Guard

Бот и его сессия доступны только тенанту-владельцу (bot.user_id).
"""

import logging
from typing import Callable, Optional

from esferazap.services.storage import BaseStorage

logger = logging.getLogger(__name__)


class TenantGuard:
    """Проверки принадлежности ботов и сессий тенанту"""

    def __init__(self, storage: BaseStorage, session_lookup: Optional[Callable] = None):
        """
        Args:
            storage: Хранилище ботов и сессий
            session_lookup: Поиск живой сессии по session_id (SessionManager.find_by_session_id)
        """
        self.storage = storage
        self.session_lookup = session_lookup

    async def can_access_bot(self, tenant_id: str, bot_id: str) -> bool:
        if not tenant_id:
            return False
        bot = await self.storage.get_bot(bot_id)
        if not bot:
            logger.debug(f"Access check for unknown bot {bot_id} by tenant {tenant_id}")
            return False
        return str(bot.user_id) == str(tenant_id)

    async def can_access_session(self, tenant_id: str, session_id: str) -> bool:
        bot_id = await self._resolve_session_bot(session_id)
        if bot_id is None:
            return False
        return await self.can_access_bot(tenant_id, bot_id)

    async def _resolve_session_bot(self, session_id: str) -> Optional[str]:
        if self.session_lookup is not None:
            live = self.session_lookup(session_id)
            if live is not None:
                return live.bot_id
        record = await self.storage.get_whatsapp_session_by_session_id(session_id)
        return record.bot_id if record else None
