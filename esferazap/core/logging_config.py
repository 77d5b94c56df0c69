import logging
import sys
from pathlib import Path

from esferazap.core.config import settings


def setup_logging():
    """Настраивает базовую конфигурацию логирования."""
    # Создаем папку для логов если её нет
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_dir / "app.log", encoding='utf-8'),
    ]

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format=settings.LOG_FORMAT,
        handlers=handlers,
        force=True  # Пересоздать конфигурацию если она уже существует
    )

    # Socket.IO / engine.io и httpx слишком шумные на INFO
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured with level: {settings.LOG_LEVEL}")
