"""
WhatsApp Providers Package.

Exports the common adapter contract, result types and the provider factory.
"""

from .base import (
    BaseWhatsAppProvider,
    BotConnectionConfig,
    ConnectionCheck,
    GatewayConnection,
    InboundMessage,
    ProviderConnection,
    ProviderEvent,
    ProviderEventType,
    ProviderResult,
    ProviderType,
    QRCodeResult,
    QRStatus,
)
from .factory import WhatsAppProviderFactory

__all__ = [
    "BaseWhatsAppProvider",
    "BotConnectionConfig",
    "ConnectionCheck",
    "GatewayConnection",
    "InboundMessage",
    "ProviderConnection",
    "ProviderEvent",
    "ProviderEventType",
    "ProviderResult",
    "ProviderType",
    "QRCodeResult",
    "QRStatus",
    "WhatsAppProviderFactory",
]
