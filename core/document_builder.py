import io
import logging

from jinja2 import Environment, select_autoescape
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from core.errors import EncodingError
from core.raster_utils import to_data_uri
from core.render_config import StickerSpec

logger = logging.getLogger(__name__)

_PRINT_TEMPLATE = Environment(autoescape=select_autoescape(default_for_string=True)).from_string(
    """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
<style>
  @page { margin: 0; }
  html, body { margin: 0; padding: 0; width: 100%; height: 100%; background: #fff; }
  img {
    display: block;
    width: 100vw;
    height: 100vh;
    object-fit: contain;
    -webkit-print-color-adjust: exact;
    print-color-adjust: exact;
  }
</style>
</head>
<body>
<img id="sticker" src="{{ src }}" alt="{{ title }}">
{% if auto_print %}
<script>
  window.onafterprint = function () { window.close(); };
  var img = document.getElementById('sticker');
  function doPrint() { window.focus(); window.print(); }
  if (img.complete) { doPrint(); } else { img.onload = doPrint; }
</script>
{% endif %}
</body>
</html>
"""
)


def page_size_points(spec: StickerSpec):
    """Размер страницы в пунктах PDF."""
    return spec.document_width_mm * mm, spec.document_height_mm * mm


def build_sticker_pdf(png: bytes, spec: StickerSpec) -> bytes:
    """
    Одностраничный PDF ровно document_width x document_height мм, картинка во весь лист.

    Соотношение сторон страницы и растра совпадает по построению, поэтому
    изображение растягивается на страницу без полей.
    """
    try:
        page_w, page_h = page_size_points(spec)
        buf = io.BytesIO()
        c = canvas.Canvas(buf, pagesize=(page_w, page_h))
        c.setTitle("Sticker")
        c.drawImage(ImageReader(io.BytesIO(png)), 0, 0, width=page_w, height=page_h)
        c.showPage()
        c.save()
        return buf.getvalue()
    except Exception as e:
        raise EncodingError(f"Не удалось собрать PDF: {e}") from e


def build_print_html(png: bytes, title: str = "Sticker", auto_print: bool = True) -> str:
    """
    Минимальная страница для печати: одна картинка на весь viewport.

    Вписывание только "contain": реальный лист принтера может не совпадать
    с пропорцией стикера.
    """
    return _PRINT_TEMPLATE.render(src=to_data_uri(png), title=title, auto_print=auto_print)
