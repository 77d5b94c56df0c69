"""
Рендеринг QR-кодов для сопряжения WhatsApp.

Провайдеры отдают либо сырую строку пары (Baileys), либо ссылку
(Meta OAuth, Twilio sandbox), либо уже готовое изображение (Evolution API).
Наружу всегда уходит base64 PNG в виде data URL.
"""

import base64
import io
import logging

import qrcode

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/png;base64,"


def render_qr_data_url(payload: str, box_size: int = 10, border: int = 4) -> str:
    """
    Кодирует строку в QR и возвращает PNG в виде data URL.

    Args:
        payload: Текст, который будет закодирован (строка пары или ссылка)
        box_size: Размер одного модуля в пикселях
        border: Ширина рамки в модулях

    Returns:
        str: "data:image/png;base64,..."
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    logger.debug("Rendered QR payload of %d chars into %d bytes PNG", len(payload), len(encoded))
    return f"{DATA_URL_PREFIX}{encoded}"


def ensure_data_url(qr_value: str) -> str:
    """Возвращает готовое изображение как есть, иначе рендерит строку в QR."""
    if qr_value.startswith("data:image/"):
        return qr_value
    return render_qr_data_url(qr_value)
