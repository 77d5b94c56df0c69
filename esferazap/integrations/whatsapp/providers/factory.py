"""
WhatsApp Provider Factory

Сопоставляет идентификатор провайдера из конфигурации бота с адаптером.
Неизвестные идентификаторы не приводят к ошибке: используется адаптер
по умолчанию (WHATSAPP_DEFAULT_PROVIDER), чтобы дашборд оставался рабочим.
"""

import logging
from typing import List, Optional, Type

import httpx

from esferazap.core.config import settings
from esferazap.core.exceptions import ProviderConfigurationError, ProviderNotFoundError
from esferazap.integrations.whatsapp.providers.base import (
    BaseWhatsAppProvider,
    BotConnectionConfig,
    ProviderType,
)
from esferazap.integrations.whatsapp.providers.baileys import BaileysProvider
from esferazap.integrations.whatsapp.providers.evolution import EvolutionAPIProvider
from esferazap.integrations.whatsapp.providers.meta_business import MetaBusinessProvider
from esferazap.integrations.whatsapp.providers.twilio import TwilioProvider

logger = logging.getLogger(__name__)


class WhatsAppProviderFactory:
    """
    Factory class for creating WhatsApp provider adapters

    Supports:
    - Provider registry management
    - Fallback to the default adapter for unknown identifiers
    """

    _PROVIDER_REGISTRY = {
        ProviderType.BAILEYS.value: BaileysProvider,
        ProviderType.EVOLUTION_API.value: EvolutionAPIProvider,
        ProviderType.META_BUSINESS.value: MetaBusinessProvider,
        ProviderType.TWILIO.value: TwilioProvider,
        # wppconnect и venom работают через тот же self-hosted мост
        ProviderType.WPPCONNECT.value: BaileysProvider,
        ProviderType.VENOM.value: BaileysProvider,
    }

    @classmethod
    def get_provider_class(cls, provider_name: Optional[str], strict: bool = False) -> Type[BaseWhatsAppProvider]:
        """
        Resolve provider class by name

        Args:
            provider_name: Provider identifier from bot configuration
            strict: Raise instead of falling back to the default adapter

        Raises:
            ProviderNotFoundError: If strict and provider not registered
        """
        key = (provider_name or "").strip().lower()
        if key in cls._PROVIDER_REGISTRY:
            return cls._PROVIDER_REGISTRY[key]
        if strict:
            raise ProviderNotFoundError(key, cls.get_available_providers())

        default_key = settings.WHATSAPP_DEFAULT_PROVIDER
        logger.warning(f"Unknown WhatsApp provider '{provider_name}', falling back to '{default_key}'")
        return cls._PROVIDER_REGISTRY.get(default_key, BaileysProvider)

    @classmethod
    def create_provider(
        cls,
        config: BotConnectionConfig,
        bot_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> BaseWhatsAppProvider:
        """
        Create provider adapter for a bot configuration

        Args:
            config: Bot connection configuration
            bot_id: Bot identifier, used as default session key by self-hosted bridges
            http_client: Shared HTTP client (a private one is created lazily otherwise)

        Returns:
            Configured provider adapter
        """
        provider_class = cls.get_provider_class(config.provider)
        return provider_class(config, http_client=http_client, bot_id=bot_id)

    @classmethod
    def get_available_providers(cls) -> List[str]:
        """Get list of available provider names"""
        return list(cls._PROVIDER_REGISTRY.keys())

    @classmethod
    def register_provider(cls, name: str, provider_class: type) -> None:
        """
        Register new WhatsApp provider

        Args:
            name: Provider name
            provider_class: Provider class (must inherit from BaseWhatsAppProvider)
        """
        if not isinstance(provider_class, type) or not issubclass(provider_class, BaseWhatsAppProvider):
            raise ProviderConfigurationError(name, "provider class must inherit from BaseWhatsAppProvider")

        cls._PROVIDER_REGISTRY[name] = provider_class
        logger.info("Registered WhatsApp provider: %s", name)
