"""
Хранилище ботов, WhatsApp-сессий и входящих сообщений.

Ядро работает только через интерфейс BaseStorage. Есть две реализации:
- MemoryStorage: словари в памяти процесса (разработка, тесты)
- RedisStorage: хеши Redis, по одному на бота и на сессию
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError

from esferazap.core.config import settings
from esferazap.integrations.whatsapp.providers.base import BotConnectionConfig, utc_now

logger = logging.getLogger(__name__)


@dataclass
class BotRecord:
    id: str
    user_id: str
    name: str = ""
    whatsapp_provider: str = "baileys"
    api_key: Optional[str] = None
    access_token: Optional[str] = None
    phone_number_id: Optional[str] = None
    business_account_id: Optional[str] = None
    server_url: Optional[str] = None
    instance_id: Optional[str] = None
    webhook_secret: Optional[str] = None
    status: str = "disconnected"
    qr_code: Optional[str] = None
    last_active: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def connection_config(self) -> BotConnectionConfig:
        return BotConnectionConfig(
            provider=self.whatsapp_provider,
            api_key=self.api_key,
            access_token=self.access_token,
            phone_number_id=self.phone_number_id,
            business_account_id=self.business_account_id,
            server_url=self.server_url,
            instance_id=self.instance_id,
            webhook_secret=self.webhook_secret,
        )


@dataclass
class WhatsAppSessionRecord:
    bot_id: str
    session_id: str
    status: str = "disconnected"
    qr_code: Optional[str] = None
    last_seen: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class StoredMessage:
    bot_id: str
    sender: str
    content: str
    message_id: Optional[str] = None
    direction: str = "inbound"
    created_at: datetime = field(default_factory=utc_now)


_DATETIME_FIELDS = {"last_active", "created_at", "last_seen"}


def _to_mapping(values: Dict[str, Any]) -> Dict[str, str]:
    mapping = {}
    for key, value in values.items():
        if value is None:
            continue
        mapping[key] = value.isoformat() if isinstance(value, datetime) else str(value)
    return mapping


def _from_mapping(record_cls, data: Dict[str, str]):
    known = {f.name for f in fields(record_cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            continue
        kwargs[key] = datetime.fromisoformat(value) if key in _DATETIME_FIELDS and value else value
    return record_cls(**kwargs)


class BaseStorage(ABC):
    """Интерфейс хранилища, которым пользуется ядро"""

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        pass

    @abstractmethod
    async def create_bot(self, bot: BotRecord) -> BotRecord:
        pass

    @abstractmethod
    async def update_bot(self, bot_id: str, **updates: Any) -> Optional[BotRecord]:
        pass

    @abstractmethod
    async def delete_bot(self, bot_id: str) -> bool:
        pass

    @abstractmethod
    async def get_whatsapp_session(self, bot_id: str) -> Optional[WhatsAppSessionRecord]:
        pass

    @abstractmethod
    async def get_whatsapp_session_by_session_id(self, session_id: str) -> Optional[WhatsAppSessionRecord]:
        pass

    @abstractmethod
    async def create_whatsapp_session(self, record: WhatsAppSessionRecord) -> WhatsAppSessionRecord:
        pass

    @abstractmethod
    async def update_whatsapp_session(self, bot_id: str, **updates: Any) -> Optional[WhatsAppSessionRecord]:
        pass

    @abstractmethod
    async def delete_whatsapp_session(self, bot_id: str) -> bool:
        pass

    @abstractmethod
    async def create_message(self, message: StoredMessage) -> StoredMessage:
        pass


class MemoryStorage(BaseStorage):
    """In-memory storage, state is lost on restart"""

    def __init__(self):
        self.bots: Dict[str, BotRecord] = {}
        self.sessions: Dict[str, WhatsAppSessionRecord] = {}
        self.messages: List[StoredMessage] = []

    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        return self.bots.get(bot_id)

    async def create_bot(self, bot: BotRecord) -> BotRecord:
        self.bots[bot.id] = bot
        return bot

    async def update_bot(self, bot_id: str, **updates: Any) -> Optional[BotRecord]:
        bot = self.bots.get(bot_id)
        if not bot:
            return None
        for key, value in updates.items():
            setattr(bot, key, value)
        return bot

    async def delete_bot(self, bot_id: str) -> bool:
        return self.bots.pop(bot_id, None) is not None

    async def get_whatsapp_session(self, bot_id: str) -> Optional[WhatsAppSessionRecord]:
        return self.sessions.get(bot_id)

    async def get_whatsapp_session_by_session_id(self, session_id: str) -> Optional[WhatsAppSessionRecord]:
        for record in self.sessions.values():
            if record.session_id == session_id:
                return record
        return None

    async def create_whatsapp_session(self, record: WhatsAppSessionRecord) -> WhatsAppSessionRecord:
        self.sessions[record.bot_id] = record
        return record

    async def update_whatsapp_session(self, bot_id: str, **updates: Any) -> Optional[WhatsAppSessionRecord]:
        record = self.sessions.get(bot_id)
        if not record:
            return None
        for key, value in updates.items():
            setattr(record, key, value)
        return record

    async def delete_whatsapp_session(self, bot_id: str) -> bool:
        return self.sessions.pop(bot_id, None) is not None

    async def create_message(self, message: StoredMessage) -> StoredMessage:
        self.messages.append(message)
        return message


class RedisStorage(BaseStorage):
    """
    Redis storage.

    Ключи:
    - {prefix}bot:{bot_id} - хеш бота
    - {prefix}whatsapp_session:{bot_id} - хеш сессии
    - {prefix}whatsapp_session_index:{session_id} - bot_id владельца сессии
    - {prefix}messages:{bot_id} - список входящих сообщений (JSON)

    В каждый хеш при записи добавляется 'last_updated_utc'.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, key_prefix: Optional[str] = None):
        self._redis = redis_client
        self._pool: Optional[redis.ConnectionPool] = None
        self.key_prefix = key_prefix if key_prefix is not None else settings.REDIS_KEY_PREFIX

    async def init(self) -> None:
        """Инициализирует пул соединений Redis и проверяет соединение."""
        if self._redis is not None:
            return
        try:
            self._pool = redis.ConnectionPool.from_url(settings.REDIS_URL, decode_responses=True)
            self._redis = redis.Redis.from_pool(self._pool)
            await self._redis.ping()
            logger.info("Redis storage initialized successfully.")
        except RedisConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
            raise

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._pool = None
            logger.info("Redis storage closed.")

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisStorage is not initialized, call init() first")
        return self._redis

    def _bot_key(self, bot_id: str) -> str:
        return f"{self.key_prefix}bot:{bot_id}"

    def _session_key(self, bot_id: str) -> str:
        return f"{self.key_prefix}whatsapp_session:{bot_id}"

    def _session_index_key(self, session_id: str) -> str:
        return f"{self.key_prefix}whatsapp_session_index:{session_id}"

    def _messages_key(self, bot_id: str) -> str:
        return f"{self.key_prefix}messages:{bot_id}"

    async def _write_hash(self, key: str, values: Dict[str, Any]) -> None:
        mapping = _to_mapping(values)
        mapping["last_updated_utc"] = utc_now().isoformat()
        await self.client.hset(key, mapping=mapping)
        cleared = [k for k, v in values.items() if v is None]
        if cleared:
            await self.client.hdel(key, *cleared)

    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        data = await self.client.hgetall(self._bot_key(bot_id))
        return _from_mapping(BotRecord, data) if data else None

    async def create_bot(self, bot: BotRecord) -> BotRecord:
        await self._write_hash(self._bot_key(bot.id), asdict(bot))
        return bot

    async def update_bot(self, bot_id: str, **updates: Any) -> Optional[BotRecord]:
        if not await self.client.exists(self._bot_key(bot_id)):
            return None
        await self._write_hash(self._bot_key(bot_id), updates)
        return await self.get_bot(bot_id)

    async def delete_bot(self, bot_id: str) -> bool:
        return bool(await self.client.delete(self._bot_key(bot_id)))

    async def get_whatsapp_session(self, bot_id: str) -> Optional[WhatsAppSessionRecord]:
        data = await self.client.hgetall(self._session_key(bot_id))
        return _from_mapping(WhatsAppSessionRecord, data) if data else None

    async def get_whatsapp_session_by_session_id(self, session_id: str) -> Optional[WhatsAppSessionRecord]:
        bot_id = await self.client.get(self._session_index_key(session_id))
        if not bot_id:
            return None
        record = await self.get_whatsapp_session(bot_id)
        if record and record.session_id == session_id:
            return record
        return None

    async def create_whatsapp_session(self, record: WhatsAppSessionRecord) -> WhatsAppSessionRecord:
        previous = await self.get_whatsapp_session(record.bot_id)
        if previous and previous.session_id != record.session_id:
            await self.client.delete(self._session_index_key(previous.session_id))
        await self.client.delete(self._session_key(record.bot_id))
        await self._write_hash(self._session_key(record.bot_id), asdict(record))
        await self.client.set(self._session_index_key(record.session_id), record.bot_id)
        return record

    async def update_whatsapp_session(self, bot_id: str, **updates: Any) -> Optional[WhatsAppSessionRecord]:
        if not await self.client.exists(self._session_key(bot_id)):
            return None
        await self._write_hash(self._session_key(bot_id), updates)
        return await self.get_whatsapp_session(bot_id)

    async def delete_whatsapp_session(self, bot_id: str) -> bool:
        record = await self.get_whatsapp_session(bot_id)
        if record:
            await self.client.delete(self._session_index_key(record.session_id))
        return bool(await self.client.delete(self._session_key(bot_id)))

    async def create_message(self, message: StoredMessage) -> StoredMessage:
        await self.client.rpush(self._messages_key(message.bot_id), json.dumps(_to_mapping(asdict(message))))
        return message


def create_storage(backend: Optional[str] = None) -> BaseStorage:
    """Возвращает хранилище по STORAGE_BACKEND ("memory" | "redis")."""
    backend = (backend or settings.STORAGE_BACKEND).lower()
    if backend == "redis":
        logger.info("Using Redis storage backend")
        return RedisStorage()
    if backend != "memory":
        logger.warning(f"Unknown storage backend '{backend}', using in-memory storage")
    logger.info("Using in-memory storage backend")
    return MemoryStorage()
