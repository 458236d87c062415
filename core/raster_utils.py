import io
import logging
import math
from base64 import b64encode
from typing import Optional, Tuple

from PIL import Image

from core.errors import CaptureError, DimensionMismatchWarning
from core.render_config import MAX_RASTER_PIXELS, StickerSpec

Image.MAX_IMAGE_PIXELS = MAX_RASTER_PIXELS

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)


def cover_fit_geometry(src_width: int, src_height: int, dst_width: int, dst_height: int) -> Tuple[float, int, int, int, int]:
    """
    Считает "cover"-вписывание исходника в целевой прямоугольник.

    Returns:
        (scale, scaled_width, scaled_height, crop_left, crop_top): масштаб,
        размер отмасштабированного исходника (не меньше цели по обеим сторонам)
        и смещение центрированной обрезки.
    """
    if src_width <= 0 or src_height <= 0:
        raise ValueError(f"empty source {src_width}x{src_height}")
    scale = max(dst_width / src_width, dst_height / src_height)
    # ceil + max: округление не должно дать на пиксель меньше цели
    scaled_width = max(dst_width, math.ceil(src_width * scale - 1e-6))
    scaled_height = max(dst_height, math.ceil(src_height * scale - 1e-6))
    crop_left = (scaled_width - dst_width) // 2
    crop_top = (scaled_height - dst_height) // 2
    return scale, scaled_width, scaled_height, crop_left, crop_top


def composite_cover(raw_png: bytes, width: int, height: int) -> bytes:
    """
    Кладёт сырой скриншот на белый холст ровно width x height.

    Сырой растр - промежуточный результат: из-за округлений при рендеринге он
    может отличаться на несколько пикселей. Итог всегда точного размера, без полей.
    """
    try:
        with Image.open(io.BytesIO(raw_png)) as raw:
            raw.load()
            img = raw
            if img.mode == "P":
                img = img.convert("RGBA")
            src_width, src_height = img.size
            if src_width == 0 or src_height == 0:
                raise CaptureError("Сырой растр пустой")

            _, scaled_w, scaled_h, left, top = cover_fit_geometry(src_width, src_height, width, height)
            if (scaled_w, scaled_h) != img.size:
                img = img.resize((scaled_w, scaled_h), Image.LANCZOS)
            img = img.crop((left, top, left + width, top + height))

            canvas = Image.new("RGB", (width, height), WHITE)
            if img.mode in ("RGBA", "LA"):
                canvas.paste(img, (0, 0), mask=img.split()[-1])
            else:
                canvas.paste(img.convert("RGB"), (0, 0))

            if (src_width, src_height) != (width, height):
                logger.info(f"Растр {src_width}x{src_height} вписан (cover) в {width}x{height}")

            out = io.BytesIO()
            canvas.save(out, "PNG")
            return out.getvalue()
    except CaptureError:
        raise
    except Exception as e:
        raise CaptureError(f"Не удалось собрать итоговый растр: {e}") from e


def read_dimensions(png: bytes) -> Tuple[int, int]:
    with Image.open(io.BytesIO(png)) as img:
        return img.size


def verify_dimensions(png: bytes, spec: StickerSpec) -> Optional[DimensionMismatchWarning]:
    """Повторно декодирует растр и сверяет размер. None - всё совпало."""
    try:
        actual = read_dimensions(png)
    except Exception as e:
        logger.warning(f"⚠️ Не удалось декодировать растр для проверки: {e}")
        return DimensionMismatchWarning(spec.export_size, None)
    if actual != spec.export_size:
        return DimensionMismatchWarning(spec.export_size, actual)
    return None


def to_data_uri(data: bytes, content_type: str = "image/png") -> str:
    return f"data:{content_type};base64,{b64encode(data).decode()}"
