"""
Tests for TenantGuard ownership checks
"""

import pytest

from esferazap.services.storage import WhatsAppSessionRecord
from esferazap.services.tenant_guard import TenantGuard


class LiveSession:
    def __init__(self, bot_id, session_id):
        self.bot_id = bot_id
        self.session_id = session_id


@pytest.fixture
def guard(storage):
    live = {"live-1": LiveSession("b1", "live-1")}
    return TenantGuard(storage, session_lookup=live.get)


class TestCanAccessBot:
    """Bot ownership"""

    @pytest.mark.asyncio
    async def test_owner_has_access(self, guard):
        assert await guard.can_access_bot("tenant-1", "b1") is True

    @pytest.mark.asyncio
    async def test_other_tenant_is_denied(self, guard):
        assert await guard.can_access_bot("tenant-2", "b1") is False

    @pytest.mark.asyncio
    async def test_unknown_bot_is_denied(self, guard):
        assert await guard.can_access_bot("tenant-1", "missing") is False

    @pytest.mark.asyncio
    async def test_empty_tenant_is_denied(self, guard):
        assert await guard.can_access_bot("", "b1") is False


class TestCanAccessSession:
    """Session ownership resolves through the owning bot"""

    @pytest.mark.asyncio
    async def test_live_session_lookup(self, guard):
        assert await guard.can_access_session("tenant-1", "live-1") is True
        assert await guard.can_access_session("tenant-2", "live-1") is False

    @pytest.mark.asyncio
    async def test_persisted_session_lookup(self, guard, storage):
        await storage.create_whatsapp_session(WhatsAppSessionRecord(bot_id="b2", session_id="stored-1"))

        assert await guard.can_access_session("tenant-2", "stored-1") is True
        assert await guard.can_access_session("tenant-1", "stored-1") is False

    @pytest.mark.asyncio
    async def test_unknown_session_is_denied(self, guard):
        assert await guard.can_access_session("tenant-1", "nope") is False

    @pytest.mark.asyncio
    async def test_without_live_lookup(self, storage):
        guard = TenantGuard(storage)
        await storage.create_whatsapp_session(WhatsAppSessionRecord(bot_id="b1", session_id="s1"))

        assert await guard.can_access_session("tenant-1", "s1") is True
