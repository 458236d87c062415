"""Centralized rendering constants for the printable sticker.

These constants are intentionally hardcoded to keep print output stable.
Do not import any environment variables here.
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class StickerSpec:
    """Geometry of one sticker export.

    All width/height pairs share ``aspect_ratio``: the on-screen box is
    ``display_width`` x ``display_height``, the raster is ``export_width`` x
    ``export_height`` pixels and the printable page is ``document_width_mm`` x
    ``document_height_mm`` millimetres.
    """

    display_width: int
    aspect_ratio: float
    export_width: int
    export_height: int
    document_width_mm: float
    document_height_mm: float

    def __post_init__(self):
        if not math.isclose(self.export_height, self.export_width * self.aspect_ratio, rel_tol=1e-9):
            raise ValueError(
                f"export size {self.export_width}x{self.export_height} does not match ratio {self.aspect_ratio}"
            )
        if not math.isclose(self.document_height_mm, self.document_width_mm * self.aspect_ratio, rel_tol=1e-9):
            raise ValueError(
                f"document size {self.document_width_mm}x{self.document_height_mm}mm does not match ratio {self.aspect_ratio}"
            )

    @property
    def display_height(self) -> int:
        return round(self.display_width * self.aspect_ratio)

    @property
    def scale(self) -> float:
        # display_width == 0 ловится в capture_raster как CaptureError
        return self.export_width / self.display_width

    @property
    def export_size(self):
        return self.export_width, self.export_height


STICKER_DISPLAY_WIDTH: int = 400
STICKER_ASPECT_RATIO: int = 2
STICKER_EXPORT_WIDTH: int = 10000
STICKER_EXPORT_HEIGHT: int = 20000
STICKER_DOCUMENT_WIDTH_MM: int = 100
STICKER_DOCUMENT_HEIGHT_MM: int = 200

DEFAULT_STICKER_SPEC = StickerSpec(
    display_width=STICKER_DISPLAY_WIDTH,
    aspect_ratio=STICKER_ASPECT_RATIO,
    export_width=STICKER_EXPORT_WIDTH,
    export_height=STICKER_EXPORT_HEIGHT,
    document_width_mm=STICKER_DOCUMENT_WIDTH_MM,
    document_height_mm=STICKER_DOCUMENT_HEIGHT_MM,
)

# Pillow по умолчанию считает картинки больше ~89 Мп "декомпрессионной бомбой",
# а наш растр 10000x20000 = 200 Мп. Потолок с запасом под повторное декодирование.
MAX_RASTER_PIXELS: int = 250_000_000
