import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from core.asset_proxy import ImageEmbedder
from core.browser_pool import BrowserPool
from core.config import EXPORT_PATH
from core.errors import StickerExportError
from core.metrics import DIMENSION_MISMATCHES
from core.models import BusinessData, PaymentMethod
from core.raster_utils import verify_dimensions
from core.render_config import DEFAULT_STICKER_SPEC, StickerSpec
from core.sticker_exporter import PrintJob, StickerExporter
from core.sticker_template import StickerTemplateRenderer

logger = logging.getLogger(__name__)

MESSAGES = {
    "en": {
        "download_success": "Sticker downloaded successfully",
        "download_failed": "Failed to download the sticker",
        "document_success": "PDF downloaded successfully",
        "document_failed": "Failed to create the PDF",
        "print_success": "Sticker sent to print",
        "print_failed": "Failed to print the sticker",
        "dimension_mismatch": "Sticker saved, but its size is {actual} instead of {expected}",
        "busy": "An export is already in progress, please wait",
    },
    "ar": {
        "download_success": "تم تحميل الاستيكر بنجاح",
        "download_failed": "فشل تحميل الاستيكر",
        "document_success": "تم تحميل ملف PDF بنجاح",
        "document_failed": "فشل إنشاء ملف PDF",
        "print_success": "تم إرسال الاستيكر للطباعة",
        "print_failed": "فشلت طباعة الاستيكر",
        "dimension_mismatch": "تم حفظ الاستيكر لكن مقاسه {actual} بدلاً من {expected}",
        "busy": "جاري التصدير بالفعل، يرجى الانتظار",
    },
}


# Разделители пути и NUL в имени файла недопустимы
_UNSAFE_FILENAME_CHARS = re.compile(r"[\\/\x00]")


def sticker_filename(name: str, ext: str) -> str:
    """<имя, пробелы и разделители пути -> дефисы, нижний регистр>-sticker.<ext>"""
    slug = re.sub(r"\s+", "-", name).lower()
    slug = _UNSAFE_FILENAME_CHARS.sub("-", slug)
    return f"{slug}-sticker.{ext}"


@dataclass
class Notice:
    level: str  # success / info / warning / error
    text: str


@dataclass
class ExportOutcome:
    success: bool
    path: Optional[Path] = None
    notices: List[Notice] = field(default_factory=list)
    print_job: Optional[PrintJob] = None


def _message(language: str, key: str, **kwargs) -> str:
    table = MESSAGES.get(language, MESSAGES["en"])
    return table[key].format(**kwargs)


def _size(size) -> str:
    return f"{size[0]}×{size[1]}" if size else "?"


async def _close_source(source):
    if source is None:
        return
    try:
        await source.page.close()
    except Exception as e:
        logger.warning(f"⚠️ Не удалось закрыть страницу стикера: {e}")


class StickerService:
    """
    Сценарии пользователя: скачать PNG, скачать PDF, напечатать.

    Ошибки экспорта превращаются в уведомления без технических деталей;
    подробности остаются в логах.
    """

    def __init__(
        self,
        pool: BrowserPool,
        exporter: StickerExporter,
        renderer: Optional[StickerTemplateRenderer] = None,
        output_dir: Path = EXPORT_PATH,
    ):
        self.pool = pool
        self.exporter = exporter
        self.renderer = renderer or StickerTemplateRenderer()
        self.output_dir = Path(output_dir)
        self._in_flight = False

    @property
    def busy(self) -> bool:
        return self._in_flight or self.exporter.busy

    async def _exclusive(self, language: str, flow: Callable[[], Awaitable[ExportOutcome]]) -> ExportOutcome:
        if self.busy:
            return self._busy_outcome(language)
        # Флаг ставится до первого await: параллельный запрос не начнёт рендер
        self._in_flight = True
        try:
            return await flow()
        finally:
            self._in_flight = False

    async def _render_and_export(self, business, language, spec, payment_methods, export):
        """
        Рендерит стикер и вызывает ``export(source, embedder)``.

        Шаблон и съёмка делят одну сессию встраивания картинок: кэш общий, а
        картинка, не успевшая к дедлайну при рендере, при съёмке уже не ждётся.
        """
        source = None
        async with ImageEmbedder(self.exporter.proxy_client, self.exporter.hosting_origin) as embedder:
            try:
                source = await self.renderer.open_source(
                    self.pool,
                    business,
                    language,
                    spec,
                    payment_methods,
                    embedder=embedder,
                    embed_timeout=self.exporter.asset_timeout_ms / 1000,
                )
                return await export(source, embedder)
            finally:
                await _close_source(source)

    def _busy_outcome(self, language: str) -> ExportOutcome:
        return ExportOutcome(success=False, notices=[Notice("info", _message(language, "busy"))])

    def _failed_outcome(self, language: str, key: str, business: BusinessData, error: Exception) -> ExportOutcome:
        logger.error(
            f"Ошибка экспорта стикера {business.name}: {error}",
            exc_info=not isinstance(error, (StickerExportError, OSError)),
        )
        return ExportOutcome(success=False, notices=[Notice("error", _message(language, key))])

    def _write(self, business: BusinessData, ext: str, data: bytes) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / sticker_filename(business.name, ext)
        path.write_bytes(data)
        return path

    async def download_png(
        self,
        business: BusinessData,
        language: str = "en",
        spec: StickerSpec = DEFAULT_STICKER_SPEC,
        payment_methods: Optional[List[PaymentMethod]] = None,
    ) -> ExportOutcome:
        async def flow():
            logger.info(f"🎨 Requesting PNG sticker for {business.name}")
            try:
                png = await self._render_and_export(
                    business, language, spec, payment_methods,
                    lambda source, embedder: self.exporter.capture_raster(source, spec, embedder),
                )
                if png is None:
                    return self._busy_outcome(language)
                path = self._write(business, "png", png)
            except Exception as e:
                return self._failed_outcome(language, "download_failed", business, e)

            notices = []
            mismatch = verify_dimensions(png, spec)
            if mismatch is not None:
                DIMENSION_MISMATCHES.inc()
                logger.warning(f"⚠️ Размер растра не совпал: {mismatch}")
                notices.append(Notice(
                    "warning",
                    _message(language, "dimension_mismatch", actual=_size(mismatch.actual), expected=_size(mismatch.expected)),
                ))
            notices.append(Notice("success", _message(language, "download_success")))
            return ExportOutcome(success=True, path=path, notices=notices)

        return await self._exclusive(language, flow)

    async def download_pdf(
        self,
        business: BusinessData,
        language: str = "en",
        spec: StickerSpec = DEFAULT_STICKER_SPEC,
        payment_methods: Optional[List[PaymentMethod]] = None,
    ) -> ExportOutcome:
        async def flow():
            logger.info(f"🎨 Requesting PDF sticker for {business.name}")
            try:
                pdf = await self._render_and_export(
                    business, language, spec, payment_methods,
                    lambda source, embedder: self.exporter.export_document(source, spec, embedder),
                )
                if pdf is None:
                    return self._busy_outcome(language)
                path = self._write(business, "pdf", pdf)
            except Exception as e:
                return self._failed_outcome(language, "document_failed", business, e)
            return ExportOutcome(success=True, path=path, notices=[Notice("success", _message(language, "document_success"))])

        return await self._exclusive(language, flow)

    async def print_sticker(
        self,
        business: BusinessData,
        language: str = "en",
        spec: StickerSpec = DEFAULT_STICKER_SPEC,
        payment_methods: Optional[List[PaymentMethod]] = None,
    ) -> ExportOutcome:
        async def flow():
            logger.info(f"🖨️ Printing sticker for {business.name}")
            title = business.display_name(language)
            try:
                job = await self._render_and_export(
                    business, language, spec, payment_methods,
                    lambda source, embedder: self.exporter.export_for_print(source, spec, title, embedder),
                )
            except Exception as e:
                return self._failed_outcome(language, "print_failed", business, e)
            if job is None:
                return self._busy_outcome(language)
            return ExportOutcome(success=True, notices=[Notice("success", _message(language, "print_success"))], print_job=job)

        return await self._exclusive(language, flow)
