import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.asset_proxy import ImageEmbedder
from core.browser_pool import BrowserPool
from core.config import ASSET_TIMEOUT_MS, TEMPLATES_PATH, WHATSAPP_DISPLAY, WHATSAPP_NUMBER
from core.models import BusinessData, PaymentMethod
from core.qr_codes import qr_data_uri
from core.render_config import DEFAULT_STICKER_SPEC, StickerSpec
from core.review_filter import filter_positive_reviews

logger = logging.getLogger(__name__)

TEMPLATE_NAME = "sticker_template.html"
STICKER_SELECTOR = "#printable-sticker"
MAX_STRIP_PHOTOS = 4
MAX_REVIEWS = 2
REVIEW_TEXT_LIMIT = 140

TEXTS = {
    "en": {
        "trust": "Because we trust our service quality",
        "invite": "We invite everyone to rate us",
        "scan": "Scan to rate on Google",
        "reviews": "What our customers say",
        "payment": "Pay with",
        "hours_today": "Today",
        "order": "To order a sticker like this",
        "whatsapp": "WhatsApp us",
    },
    "ar": {
        "trust": "لأننا نثق في جودة خدماتنا",
        "invite": "ندعو الجميع لتقييمنا",
        "scan": "امسح للتقييم على جوجل",
        "reviews": "ماذا يقول عملاؤنا",
        "payment": "ادفع عبر",
        "hours_today": "اليوم",
        "order": "لطلب استيكر كهذا",
        "whatsapp": "تواصل واتساب",
    },
}

FONTS = {
    "en": "'Plus Jakarta Sans', sans-serif",
    "ar": "'Noto Sans Arabic', sans-serif",
}


@dataclass
class SourceNode:
    """Отрисованный стикер на живой странице: что именно снимать."""
    page: Any
    selector: str = STICKER_SELECTOR


def _truncate(text: str, limit: int = REVIEW_TEXT_LIMIT) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


class StickerTemplateRenderer:
    """Рендерит HTML стикера по Jinja2-шаблону и открывает его в браузере."""

    def __init__(self, templates_dir: Path = TEMPLATES_PATH):
        self.templates_dir = Path(templates_dir)
        self._template = None
        self._template_mtime: Optional[float] = None

    def _get_template(self):
        template_path = self.templates_dir / TEMPLATE_NAME
        try:
            current_mtime = template_path.stat().st_mtime
        except OSError:
            current_mtime = None

        # Перезагружаем шаблон, если он не загружен или изменился на диске
        if self._template is None or (
            self._template_mtime is not None and current_mtime is not None and current_mtime != self._template_mtime
        ):
            env = Environment(loader=FileSystemLoader(str(self.templates_dir)), autoescape=select_autoescape())
            self._template = env.get_template(TEMPLATE_NAME)
            self._template_mtime = current_mtime
        return self._template

    def build_context(
        self,
        business: BusinessData,
        language: str = "en",
        spec: StickerSpec = DEFAULT_STICKER_SPEC,
        payment_methods: Optional[List[PaymentMethod]] = None,
        today: Optional[date] = None,
    ) -> Dict[str, Any]:
        language = language if language in TEXTS else "en"
        name = business.display_name(language)
        rating = business.rating or 0
        today = today or date.today()

        reviews = [
            {
                "author": r.author_name,
                "photo": r.author_photo,
                "rating": round(r.rating),
                "text": _truncate(r.display_text(language)),
            }
            for r in filter_positive_reviews(business.reviews, language)[:MAX_REVIEWS]
        ]

        return {
            "language": language,
            "direction": "rtl" if language == "ar" else "ltr",
            "font_family": FONTS[language],
            "t": TEXTS[language],
            "name": name,
            "initial": name[:1].upper(),
            "address": business.display_address(language),
            "rating": rating,
            "total_reviews": business.total_reviews,
            "filled_stars": max(0, min(5, round(rating))),
            "hero_photo": business.photos[0] if business.photos else None,
            "photo_strip": business.photos[1 : 1 + MAX_STRIP_PHOTOS],
            "reviews": reviews,
            "hours_today": business.hours.text_for(today.weekday(), language) if business.hours else None,
            "review_qr": qr_data_uri(business.review_url, level="H"),
            "whatsapp_qr": qr_data_uri(f"https://wa.me/{WHATSAPP_NUMBER}", level="M", box_size=6),
            "whatsapp_display": WHATSAPP_DISPLAY,
            "payment_methods": payment_methods or [],
            "width": spec.display_width,
            "height": spec.display_height,
        }

    async def _embed_images(self, context: Dict[str, Any], embedder: ImageEmbedder, timeout: float):
        """Заменяет внешние фото и иконки в контексте на data URI; что не успело за timeout - остаётся ссылкой."""
        urls = []
        if context["hero_photo"]:
            urls.append(context["hero_photo"])
        urls.extend(context["photo_strip"])
        urls.extend(r["photo"] for r in context["reviews"] if r["photo"])
        urls.extend(m.icon_url for m in context["payment_methods"] if m.icon_url)

        embedded = await embedder.embed_all(urls, timeout=timeout)

        if context["hero_photo"]:
            context["hero_photo"] = embedded[context["hero_photo"]]
        context["photo_strip"] = [embedded[u] for u in context["photo_strip"]]
        for review in context["reviews"]:
            if review["photo"]:
                review["photo"] = embedded[review["photo"]]
        context["payment_methods"] = [
            PaymentMethod(label=m.label, account=m.account, icon_url=embedded.get(m.icon_url) if m.icon_url else None)
            for m in context["payment_methods"]
        ]

    async def render_html(
        self,
        business: BusinessData,
        language: str = "en",
        spec: StickerSpec = DEFAULT_STICKER_SPEC,
        payment_methods: Optional[List[PaymentMethod]] = None,
        embedder: Optional[ImageEmbedder] = None,
        embed_timeout: float = ASSET_TIMEOUT_MS / 1000,
    ) -> str:
        context = self.build_context(business, language, spec, payment_methods)
        if embedder is not None:
            await self._embed_images(context, embedder, embed_timeout)
        return self._get_template().render(**context)

    async def open_source(
        self,
        pool: BrowserPool,
        business: BusinessData,
        language: str = "en",
        spec: StickerSpec = DEFAULT_STICKER_SPEC,
        payment_methods: Optional[List[PaymentMethod]] = None,
        embedder: Optional[ImageEmbedder] = None,
        embed_timeout: float = ASSET_TIMEOUT_MS / 1000,
    ) -> SourceNode:
        """
        Открывает стикер на живой странице шириной display_width.

        Страницу закрывает вызывающий код (``await source.page.close()``).
        """
        html = await self.render_html(business, language, spec, payment_methods, embedder, embed_timeout)
        browser = await pool.browser()
        page = await browser.new_page(viewport={"width": spec.display_width, "height": spec.display_height})
        try:
            await page.set_content(html, wait_until="load")
        except Exception:
            await page.close()
            raise
        logger.info(f"Стикер для {business.name} отрисован ({language})")
        return SourceNode(page=page)
