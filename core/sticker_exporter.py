"""Экспорт стикера в растр точного размера, PDF и на печать.

Съёмка идёт не с живого элемента, а с его копии принудительного размера в
отдельной offscreen-странице (свой контекст браузера, viewport ровно
display_width x display_height, device_scale_factor = export_width / display_width).
Так результат не зависит от реальной вёрстки стикера на экране.

Порядок шагов строгий: клонирование -> перезапись ссылок на картинки ->
staging -> ожидание картинок -> скриншот -> закрытие staging -> композиция.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from jinja2 import Environment

from core.asset_proxy import AssetProxyClient, ImageEmbedder, resolve_capture_src
from core.browser_pool import BrowserPool
from core.config import ASSET_TIMEOUT_MS, ASSET_WAIT_GRACE_MS, HOSTING_ORIGIN, IMAGE_PROXY_URL
from core.document_builder import build_print_html, build_sticker_pdf
from core.errors import AssetFetchError, CaptureError, EncodingError
from core.metrics import ASSET_FETCH_FAILURES, STAGED_PAGES, STICKER_EXPORT_DURATION, STICKER_EXPORTS
from core.raster_utils import composite_cover
from core.render_config import StickerSpec
from core.sticker_template import SourceNode

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Узлы, которые видны только на экране (бейджи размеров, отладочные рамки)
HIDDEN_ON_EXPORT = "[data-debug-overlay], [data-export-hidden]"
# Минимум времени на декодирование, даже если дедлайн съела загрузка через прокси
MIN_DECODE_WAIT_MS = 250

CLONE_SCRIPT = """
({ selector, width, height, hideSelector }) => {
    const el = document.querySelector(selector);
    if (!el) {
        return { found: false, attached: false };
    }
    const rect = el.getBoundingClientRect();
    const clone = el.cloneNode(true);

    const forced = {
        'width': width + 'px', 'min-width': width + 'px', 'max-width': width + 'px',
        'height': height + 'px', 'min-height': height + 'px', 'max-height': height + 'px',
        'margin': '0', 'position': 'relative', 'left': '0', 'top': '0',
        'transform': 'none', 'overflow': 'hidden',
        'border': 'none', 'border-radius': '0', 'box-shadow': 'none', 'outline': 'none',
    };
    for (const [prop, value] of Object.entries(forced)) {
        clone.style.setProperty(prop, value, 'important');
    }
    clone.querySelectorAll('*').forEach((node) => {
        node.style.setProperty('box-shadow', 'none', 'important');
        node.style.setProperty('outline', 'none', 'important');
    });
    clone.querySelectorAll(hideSelector).forEach((node) => {
        node.style.setProperty('display', 'none', 'important');
    });

    // canvas не клонируется вместе с содержимым: переносим его картинкой
    const sourceCanvases = el.querySelectorAll('canvas');
    clone.querySelectorAll('canvas').forEach((canvas, i) => {
        try {
            const img = document.createElement('img');
            img.setAttribute('src', sourceCanvases[i].toDataURL('image/png'));
            img.style.cssText = canvas.style.cssText;
            img.width = canvas.width;
            img.height = canvas.height;
            canvas.replaceWith(img);
        } catch (e) {
            // испорченный (tainted) canvas остаётся пустым
        }
    });

    // src уводим в data-атрибут, чтобы staging-страница не начала грузить
    // картинки с чужого origin до перезаписи ссылок
    const images = [];
    clone.querySelectorAll('img').forEach((img) => {
        const src = img.getAttribute('src');
        img.removeAttribute('srcset');
        img.removeAttribute('loading');
        if (src) {
            images.push(src);
            img.setAttribute('data-export-src', src);
            img.removeAttribute('src');
        }
    });

    const head = Array.from(document.head.querySelectorAll('style, link[rel="stylesheet"]'))
        .map((node) => node.outerHTML)
        .join('\\n');

    return {
        found: true,
        attached: el.isConnected,
        renderedWidth: rect.width,
        renderedHeight: rect.height,
        html: clone.outerHTML,
        head: head,
        baseUrl: document.baseURI,
        lang: document.documentElement.lang || '',
        dir: document.documentElement.dir || '',
        images: images,
    };
}
"""

REWRITE_SCRIPT = """
(replacements) => {
    let count = 0;
    document.querySelectorAll('#sticker-stage img[data-export-src]').forEach((img) => {
        const original = img.getAttribute('data-export-src');
        img.setAttribute('src', replacements[original] || original);
        img.removeAttribute('data-export-src');
        count += 1;
    });
    return count;
}
"""

WAIT_FOR_ASSETS_SCRIPT = """
async (timeoutMs) => {
    const images = Array.from(document.querySelectorAll('#sticker-stage img'));
    const ready = (img) => img.complete && img.naturalWidth > 0;
    const settle = (img) => img.decode().then(() => true, () => ready(img));
    const pendingWidgets = () => new Promise((resolve) => {
        const check = () => {
            if (!document.querySelector('#sticker-stage [data-export-pending]')) {
                resolve(true);
            } else {
                setTimeout(check, 50);
            }
        };
        check();
    });
    const everything = Promise.all([
        Promise.all(images.map(settle)),
        pendingWidgets(),
        document.fonts ? document.fonts.ready : Promise.resolve(),
    ]);
    const deadline = new Promise((resolve) => setTimeout(() => resolve(null), timeoutMs));
    const result = await Promise.race([everything, deadline]);
    const failed = images.filter((img) => !ready(img)).map((img) => img.currentSrc || img.src);
    return { timedOut: result === null, failed: failed, total: images.length };
}
"""

IMAGE_LOADED_SCRIPT = """
() => {
    const img = document.getElementById('sticker');
    return !!img && img.complete && img.naturalWidth > 0;
}
"""

_STAGE_TEMPLATE = Environment(autoescape=False).from_string(
    """<!DOCTYPE html>
<html lang="{{ lang|e }}" dir="{{ dir|e }}">
<head>
<meta charset="utf-8">
{% if base_url %}<base href="{{ base_url|e }}">{% endif %}
{{ head }}
<style>
  html, body { margin: 0 !important; padding: 0 !important; background: #fff !important; overflow: hidden !important; }
  #sticker-stage {
    position: fixed; left: 0; top: 0;
    width: {{ width }}px; height: {{ height }}px;
    overflow: hidden; pointer-events: none; user-select: none;
  }
</style>
</head>
<body>
<div id="sticker-stage" aria-hidden="true">{{ content }}</div>
</body>
</html>
"""
)


def build_stage_document(snapshot: Dict[str, Any], width: int, height: int) -> str:
    """HTML offscreen-страницы: стили исходной страницы + копия стикера."""
    base_url = snapshot.get("baseUrl") or ""
    if not base_url.startswith(("http://", "https://")):
        base_url = ""
    return _STAGE_TEMPLATE.render(
        lang=snapshot.get("lang", ""),
        dir=snapshot.get("dir", ""),
        base_url=base_url,
        head=snapshot.get("head", ""),
        content=snapshot.get("html", ""),
        width=width,
        height=height,
    )


@dataclass
class PrintJob:
    """Результат печати: страница для диалога печати и то, что ушло в спулер."""
    html: str
    spool: bytes
    png: bytes


class StickerExporter:
    """
    Снимает стикер в растр точного размера.

    Одновременно выполняется только одна операция экспорта (любая из трёх):
    вызов во время уже идущего экспорта ничего не делает и возвращает None.
    """

    def __init__(
        self,
        pool: BrowserPool,
        proxy_client: Optional[AssetProxyClient] = None,
        *,
        proxy_endpoint: str = IMAGE_PROXY_URL,
        hosting_origin: str = HOSTING_ORIGIN,
        asset_timeout_ms: int = ASSET_TIMEOUT_MS,
        grace_ms: int = ASSET_WAIT_GRACE_MS,
    ):
        self.pool = pool
        self.proxy_endpoint = proxy_endpoint
        self.hosting_origin = hosting_origin
        self.proxy_client = proxy_client or AssetProxyClient(proxy_endpoint)
        self.asset_timeout_ms = asset_timeout_ms
        self.grace_ms = grace_ms
        self.last_asset_failures: List[AssetFetchError] = []
        self._busy = False
        self._staged: List[Any] = []

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def staged_pages(self) -> List[Any]:
        return list(self._staged)

    # --- Публичные операции ---

    async def capture_raster(
        self, source: SourceNode, spec: StickerSpec, embedder: Optional[ImageEmbedder] = None
    ) -> Optional[bytes]:
        """
        PNG ровно export_width x export_height.

        Raises:
            CaptureError: копию не удалось подготовить или снять.
        """
        return await self._exclusive("download", lambda: self._capture(source, spec, embedder))

    async def export_document(
        self, source: SourceNode, spec: StickerSpec, embedder: Optional[ImageEmbedder] = None
    ) -> Optional[bytes]:
        """
        Одностраничный PDF document_width x document_height мм.

        Raises:
            CaptureError: не удалось снять растр.
            EncodingError: растр есть, но PDF не собрался.
        """
        async def run():
            png = await self._capture(source, spec, embedder)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, build_sticker_pdf, png, spec)

        return await self._exclusive("document", run)

    async def export_for_print(
        self,
        source: SourceNode,
        spec: StickerSpec,
        title: str = "Sticker",
        embedder: Optional[ImageEmbedder] = None,
    ) -> Optional[PrintJob]:
        async def run():
            png = await self._capture(source, spec, embedder)
            spool = await self._print_surface(png, spec, title)
            loop = asyncio.get_running_loop()
            html = await loop.run_in_executor(None, build_print_html, png, title)
            return PrintJob(html=html, spool=spool, png=png)

        return await self._exclusive("print", run)

    # --- Внутреннее ---

    async def _exclusive(self, action: str, operation: Callable[[], Awaitable[T]]) -> Optional[T]:
        # Проверка и установка флага без await между ними: в одном event loop это атомарно
        if self._busy:
            logger.warning(f"⏳ Экспорт уже идёт, запрос '{action}' пропущен")
            STICKER_EXPORTS.labels(action=action, status="busy").inc()
            return None
        self._busy = True
        started = time.monotonic()
        try:
            result = await operation()
        except Exception as e:
            logger.error(f"❌ Экспорт '{action}' не удался: {e}")
            STICKER_EXPORTS.labels(action=action, status="failed").inc()
            raise
        finally:
            self._busy = False
            STICKER_EXPORT_DURATION.labels(action=action).observe(time.monotonic() - started)
        STICKER_EXPORTS.labels(action=action, status="success").inc()
        return result

    async def _capture(self, source: SourceNode, spec: StickerSpec, embedder: Optional[ImageEmbedder] = None) -> bytes:
        if spec.display_width <= 0 or spec.display_height <= 0:
            raise CaptureError(f"Нулевой размер стикера: {spec.display_width}x{spec.display_height}")
        if embedder is None:
            async with ImageEmbedder(self.proxy_client, self.hosting_origin) as own_embedder:
                return await self._capture(source, spec, own_embedder)

        width, height = spec.display_width, spec.display_height
        scale = spec.scale
        self.last_asset_failures = []

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.asset_timeout_ms / 1000

        logger.info(f"📸 Съёмка стикера {width}x{height} x{scale:g} -> {spec.export_width}x{spec.export_height}")
        snapshot = await self._snapshot(source, width, height)

        sources = snapshot.get("images") or []
        embedded = await embedder.embed_all(sources, timeout=max(deadline - loop.time(), 0))
        embed_failures = {src: embedder.failures[src] for src in sources if src in embedder.failures}
        replacements = {
            src: resolve_capture_src(src, embedded.get(src), self.proxy_endpoint, self.hosting_origin)
            for src in sources
        }

        remaining_ms = max(int((deadline - loop.time()) * 1000), MIN_DECODE_WAIT_MS)
        raw, undecoded = await self._stage_and_rasterize(snapshot, replacements, width, height, scale, remaining_ms)
        self.last_asset_failures = self._confirmed_failures(replacements, embed_failures, undecoded)

        # 200 Мп композиции не должны блокировать event loop
        png = await loop.run_in_executor(None, composite_cover, raw, spec.export_width, spec.export_height)
        logger.info(f"✅ Растр готов: {len(png)} байт, проблемных картинок: {len(self.last_asset_failures)}")
        return png

    @staticmethod
    def _confirmed_failures(
        replacements: Dict[str, str],
        embed_failures: Dict[str, AssetFetchError],
        undecoded: Optional[List[str]],
    ) -> List[AssetFetchError]:
        """
        Картинки, которых действительно нет в растре.

        Неудачное встраивание само по себе не ошибка: staging-страница могла
        загрузить ту же картинку через прокси. Если отчёта о декодировании нет
        (браузер не уложился в дедлайн), верим отчёту встраивания.
        """
        if undecoded is None:
            return list(embed_failures.values())
        original_by_src = {captured: original for original, captured in replacements.items()}
        failures = []
        for src in undecoded:
            original = original_by_src.get(src, src)
            embed_error = embed_failures.get(original)
            reason = f"not decoded ({embed_error.reason})" if embed_error else "not decoded"
            failures.append(AssetFetchError(original, reason))
            ASSET_FETCH_FAILURES.labels(stage="decode").inc()
        return failures

    async def _snapshot(self, source: SourceNode, width: int, height: int) -> Dict[str, Any]:
        try:
            snapshot = await source.page.evaluate(
                CLONE_SCRIPT,
                {"selector": source.selector, "width": width, "height": height, "hideSelector": HIDDEN_ON_EXPORT},
            )
        except Exception as e:
            raise CaptureError(f"Не удалось скопировать стикер: {e}") from e

        if not snapshot or not snapshot.get("found"):
            raise CaptureError(f"Элемент {source.selector} не найден на странице")
        if not snapshot.get("attached"):
            raise CaptureError(f"Элемент {source.selector} не прикреплён к документу")
        if (snapshot.get("renderedWidth") or 0) <= 0 or (snapshot.get("renderedHeight") or 0) <= 0:
            raise CaptureError(
                f"Элемент {source.selector} ещё не свёрстан: "
                f"{snapshot.get('renderedWidth')}x{snapshot.get('renderedHeight')}"
            )
        return snapshot

    async def _stage_and_rasterize(
        self,
        snapshot: Dict[str, Any],
        replacements: Dict[str, str],
        width: int,
        height: int,
        scale: float,
        wait_ms: int,
    ) -> Tuple[bytes, Optional[List[str]]]:
        """Снимает копию; вторым элементом - src картинок, которые не декодировались (None - неизвестно)."""
        context = None
        page = None
        try:
            browser = await self.pool.browser()
            context = await browser.new_context(
                viewport={"width": width, "height": height},
                device_scale_factor=scale,
            )
            page = await context.new_page()
            self._staged.append(page)
            STAGED_PAGES.inc()

            await page.set_content(build_stage_document(snapshot, width, height), wait_until="domcontentloaded")
            await page.evaluate(REWRITE_SCRIPT, replacements)
            undecoded = await self._wait_for_assets(page, wait_ms)
            raw = await page.screenshot(
                type="png",
                clip={"x": 0, "y": 0, "width": width, "height": height},
                animations="disabled",
            )
            return raw, undecoded
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(f"Не удалось отрастеризовать стикер: {e}") from e
        finally:
            if page is not None:
                if page in self._staged:
                    self._staged.remove(page)
                    STAGED_PAGES.dec()
                try:
                    await page.close()
                except Exception as e:
                    logger.warning(f"⚠️ Не удалось закрыть staging-страницу: {e}")
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    logger.warning(f"⚠️ Не удалось закрыть staging-контекст: {e}")

    async def _wait_for_assets(self, page, wait_ms: int) -> Optional[List[str]]:
        """Ждёт картинки под общим дедлайном; по таймауту снимаем то, что успело."""
        try:
            report = await asyncio.wait_for(
                page.evaluate(WAIT_FOR_ASSETS_SCRIPT, wait_ms),
                timeout=(wait_ms + self.grace_ms) / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Браузер не дождался картинок за {wait_ms} мс, снимаем как есть")
            return None

        report = report or {}
        if report.get("timedOut"):
            logger.warning(f"⚠️ Дедлайн {wait_ms} мс истёк, снимаем как есть")
        failed = list(report.get("failed") or [])
        for url in failed:
            logger.warning(f"⚠️ Картинка не отрисуется: {url}")
        return failed

    async def _print_surface(self, png: bytes, spec: StickerSpec, title: str) -> bytes:
        """Отдельная страница только с картинкой; после печати всегда закрывается."""
        page = None
        try:
            browser = await self.pool.browser()
            page = await browser.new_page()
            html = await asyncio.get_running_loop().run_in_executor(None, build_print_html, png, title, False)
            await page.set_content(html, wait_until="load")
            await page.wait_for_function(IMAGE_LOADED_SCRIPT)
            await page.emulate_media(media="print")
            return await page.pdf(
                width=f"{spec.document_width_mm}mm",
                height=f"{spec.document_height_mm}mm",
                print_background=True,
                margin={"top": "0", "right": "0", "bottom": "0", "left": "0"},
            )
        except Exception as e:
            raise EncodingError(f"Не удалось отправить стикер на печать: {e}") from e
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception as e:
                    logger.warning(f"⚠️ Не удалось закрыть страницу печати: {e}")
