import os
from typing import Optional
from dotenv import load_dotenv
from pydantic import SecretStr

# Load from the project root .env
dotenv_path = os.path.join(os.path.dirname(__file__), '..', '..', '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)


def _secret(name: str) -> Optional[SecretStr]:
    value = os.getenv(name)
    return SecretStr(value) if value else None


class Settings:
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "EsferaZap")
    PROJECT_VERSION: str = os.getenv("PROJECT_VERSION", "0.1.0")
    API_PREFIX: str = os.getenv("API_PREFIX", "/api")

    # Server Configuration
    SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    LOG_DIR: str = os.getenv("LOG_DIR", "logs")

    # Storage Configuration ("memory" | "redis")
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "memory").lower()
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")
    REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "esferazap:")

    # WhatsApp Session Configuration
    WHATSAPP_DEFAULT_PROVIDER: str = os.getenv("WHATSAPP_DEFAULT_PROVIDER", "baileys")
    WHATSAPP_RECONNECT_DELAY: float = float(os.getenv("WHATSAPP_RECONNECT_DELAY", "5"))  # seconds
    WHATSAPP_MAX_RECONNECT_ATTEMPTS: int = int(os.getenv("WHATSAPP_MAX_RECONNECT_ATTEMPTS", "5"))  # 0 = unlimited
    WHATSAPP_QR_WAIT_TIMEOUT: float = float(os.getenv("WHATSAPP_QR_WAIT_TIMEOUT", "15"))  # seconds
    WHATSAPP_HTTP_TIMEOUT: float = float(os.getenv("WHATSAPP_HTTP_TIMEOUT", "30"))  # seconds

    # Self-hosted Baileys bridge
    BAILEYS_SERVER_URL: str = os.getenv("BAILEYS_SERVER_URL", "http://localhost:3001")
    BAILEYS_SOCKETIO_PATH: str = os.getenv("BAILEYS_SOCKETIO_PATH", "/socket.io/")
    BAILEYS_API_KEY: SecretStr | None = _secret("BAILEYS_API_KEY")

    # Meta WhatsApp Business (Cloud API)
    META_GRAPH_URL: str = os.getenv("META_GRAPH_URL", "https://graph.facebook.com")
    META_GRAPH_VERSION: str = os.getenv("META_GRAPH_VERSION", "v18.0")
    META_APP_ID: Optional[str] = os.getenv("META_APP_ID")
    META_REDIRECT_URI: Optional[str] = os.getenv("META_REDIRECT_URI")

    # Twilio
    TWILIO_API_URL: str = os.getenv("TWILIO_API_URL", "https://api.twilio.com/2010-04-01")
    TWILIO_SANDBOX_NUMBER: str = os.getenv("TWILIO_SANDBOX_NUMBER", "+14155238886")

    # Webhooks
    WEBHOOK_VERIFY_TOKEN: SecretStr | None = _secret("WEBHOOK_VERIFY_TOKEN")

    # Tenant Guard
    RATE_LIMIT_MAX_REQUESTS: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
    RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    TENANT_HEADER: str = os.getenv("TENANT_HEADER", "X-Tenant-ID")

settings = Settings()
