import io

import qrcode
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_M

from core.raster_utils import to_data_uri

ERROR_LEVELS = {
    "M": ERROR_CORRECT_M,
    "H": ERROR_CORRECT_H,
}


def qr_data_uri(payload: str, level: str = "M", box_size: int = 10, border: int = 0) -> str:
    """
    Рендерит QR-код в PNG data URI.

    QR рисуется заранее, поэтому в шаблоне это обычная встроенная картинка и
    ждать "дорисовки" виджета перед съёмкой не нужно.
    """
    qr = qrcode.QRCode(version=None, error_correction=ERROR_LEVELS[level], box_size=box_size, border=border)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return to_data_uri(buf.getvalue(), "image/png")
