from typing import Optional, Tuple


class StickerExportError(Exception):
    """Базовая ошибка экспорта стикера."""


class CaptureError(StickerExportError):
    """Не удалось подготовить копию или отрастеризовать её. Фатально для текущего экспорта."""


class EncodingError(StickerExportError):
    """Растр получен, но упаковать его в документ не вышло. Фатально только для этого формата."""


class AssetFetchError(StickerExportError):
    """Одна картинка не загрузилась. Не фатально: экспорт продолжается без неё."""

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}" if reason else url)


class DimensionMismatchWarning(UserWarning):
    """Проверенный размер растра не совпал с заданным. Файл всё равно отдаётся."""

    def __init__(self, expected: Tuple[int, int], actual: Optional[Tuple[int, int]]):
        self.expected = expected
        self.actual = actual
        super().__init__(f"expected {expected[0]}x{expected[1]}, got {actual}")
