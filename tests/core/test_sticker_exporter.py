import asyncio
import io
import re
import threading
import time

import pytest
from PIL import Image

from core.asset_proxy import ImageEmbedder, build_proxy_url
from core.document_builder import build_sticker_pdf
from core.errors import CaptureError, EncodingError
from core.raster_utils import composite_cover
from core.render_config import StickerSpec
from core.sticker_exporter import PrintJob, StickerExporter, build_stage_document
from core.sticker_template import SourceNode
from tests.fakes import HOSTING_ORIGIN, PROXY_ENDPOINT, FakeProxyClient, FakeSourcePage, make_png

REACHABLE = "https://cdn.example.com/reachable.png"
UNREACHABLE = "https://dead.example.com/missing.png"


def _exporter(pool, client=None, timeout_ms=1000, grace_ms=200):
    return StickerExporter(
        pool,
        client or FakeProxyClient(),
        proxy_endpoint=PROXY_ENDPOINT,
        hosting_origin=HOSTING_ORIGIN,
        asset_timeout_ms=timeout_ms,
        grace_ms=grace_ms,
    )


def _size(png):
    with Image.open(io.BytesIO(png)) as img:
        return img.size


@pytest.mark.asyncio
async def test_capture_raster_exact_dimensions(fake_pool, fake_browser, small_spec):
    exporter = _exporter(fake_pool)
    png = await exporter.capture_raster(SourceNode(FakeSourcePage()), small_spec)

    assert _size(png) == (100, 200)
    # staging: viewport ровно display-размер, масштаб export/display
    context = fake_browser.contexts[0]
    assert context.viewport == {"width": 40, "height": 80}
    assert context.device_scale_factor == 2.5


@pytest.mark.asyncio
@pytest.mark.parametrize("display_width,export_width", [(40, 100), (30, 100), (64, 128), (50, 333)])
async def test_capture_raster_dimensions_for_various_specs(fake_pool, display_width, export_width):
    spec = StickerSpec(display_width, 2, export_width, export_width * 2, 50, 100)
    exporter = _exporter(fake_pool)
    png = await exporter.capture_raster(SourceNode(FakeSourcePage()), spec)
    assert _size(png) == (export_width, export_width * 2)


@pytest.mark.asyncio
async def test_capture_raster_absorbs_rounding_drift(fake_pool, fake_browser, small_spec):
    """Сырой скриншот на пару пикселей больше/меньше - итог всё равно точного размера."""
    fake_browser.drift = (-1, 3)
    exporter = _exporter(fake_pool)
    png = await exporter.capture_raster(SourceNode(FakeSourcePage()), small_spec)
    assert _size(png) == (100, 200)


@pytest.mark.asyncio
async def test_capture_raster_twice_same_dimensions(fake_pool, small_spec):
    exporter = _exporter(fake_pool)
    source = SourceNode(FakeSourcePage())
    first = await exporter.capture_raster(source, small_spec)
    second = await exporter.capture_raster(source, small_spec)
    assert _size(first) == _size(second) == (100, 200)


@pytest.mark.asyncio
async def test_staging_page_removed_after_success(fake_pool, fake_browser, small_spec):
    exporter = _exporter(fake_pool)
    await exporter.capture_raster(SourceNode(FakeSourcePage()), small_spec)

    assert exporter.staged_pages == []
    assert fake_browser.attached == set()
    assert all(page.closed for page in fake_browser.stage_pages)
    assert all(context.closed for context in fake_browser.contexts)


@pytest.mark.asyncio
async def test_staging_page_removed_after_failure(fake_pool, fake_browser, small_spec):
    fake_browser.screenshot_error = RuntimeError("Target crashed")
    exporter = _exporter(fake_pool)

    with pytest.raises(CaptureError) as exc_info:
        await exporter.capture_raster(SourceNode(FakeSourcePage()), small_spec)

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert exporter.staged_pages == []
    assert fake_browser.attached == set()
    assert fake_browser.stage_pages[0].closed
    assert not exporter.busy


@pytest.mark.asyncio
async def test_unreachable_image_does_not_block_capture(fake_pool, fake_browser, small_spec):
    """Зависший прокси и зависшее декодирование укладываются в дедлайн + запас."""
    client = FakeProxyClient(hang={UNREACHABLE})
    fake_browser.hang_on_wait = True
    exporter = _exporter(fake_pool, client, timeout_ms=300, grace_ms=100)

    started = time.monotonic()
    png = await exporter.capture_raster(SourceNode(FakeSourcePage(images=[UNREACHABLE])), small_spec)
    elapsed = time.monotonic() - started

    assert _size(png) == (100, 200)
    # 300 мс дедлайна + минимум на декодирование + запас
    assert elapsed < 1.5
    assert any(f.url == UNREACHABLE for f in exporter.last_asset_failures)


@pytest.mark.asyncio
async def test_second_export_while_in_flight_is_noop(fake_pool, fake_browser, small_spec):
    fake_browser.gate = asyncio.Event()
    exporter = _exporter(fake_pool)
    source = SourceNode(FakeSourcePage())

    first = asyncio.create_task(exporter.capture_raster(source, small_spec))
    while not fake_browser.stage_pages:
        await asyncio.sleep(0)
    assert exporter.busy

    assert await exporter.capture_raster(source, small_spec) is None
    assert await exporter.export_document(source, small_spec) is None
    assert await exporter.export_for_print(source, small_spec) is None

    fake_browser.gate.set()
    png = await first

    assert _size(png) == (100, 200)
    assert len(fake_browser.stage_pages) == 1
    assert fake_browser.max_attached == 1
    assert not exporter.busy


@pytest.mark.asyncio
async def test_lock_released_after_failure(fake_pool, small_spec):
    exporter = _exporter(fake_pool)
    source_page = FakeSourcePage()
    source_page.error = RuntimeError("Execution context was destroyed")

    with pytest.raises(CaptureError):
        await exporter.capture_raster(SourceNode(source_page), small_spec)
    assert not exporter.busy

    source_page.error = None
    assert await exporter.capture_raster(SourceNode(source_page), small_spec) is not None


@pytest.mark.asyncio
async def test_end_to_end_reachable_and_unreachable_images(fake_pool, fake_browser, small_spec):
    client = FakeProxyClient(responses={REACHABLE: (make_png(4, 4), "image/png")})
    exporter = _exporter(fake_pool, client, timeout_ms=6000)
    source = SourceNode(FakeSourcePage(images=[REACHABLE, UNREACHABLE, "/assets/logo.png"]))

    started = time.monotonic()
    png = await exporter.capture_raster(source, small_spec)
    assert time.monotonic() - started < 6.5
    assert _size(png) == (100, 200)

    replacements = fake_browser.stage_pages[0].replacements
    assert replacements[REACHABLE].startswith("data:image/png;base64,")
    # недоступная картинка идёт через прокси, локальная остаётся как есть
    assert replacements[UNREACHABLE].startswith(PROXY_ENDPOINT + "?url=https%3A%2F%2Fdead.example.com")
    assert replacements["/assets/logo.png"] == "/assets/logo.png"

    pdf = await exporter.export_document(source, small_spec)
    assert pdf.startswith(b"%PDF")
    media_box = re.search(rb"/MediaBox\s*\[\s*0\s+0\s+([\d.]+)\s+([\d.]+)\s*\]", pdf)
    width_pt, height_pt = float(media_box.group(1)), float(media_box.group(2))
    assert width_pt / 72 * 25.4 == pytest.approx(100, abs=0.01)
    assert height_pt / 72 * 25.4 == pytest.approx(200, abs=0.01)


@pytest.mark.asyncio
async def test_zero_display_width_fails_with_capture_error(fake_pool, fake_browser):
    spec = StickerSpec(0, 2, 100, 200, 100, 200)
    exporter = _exporter(fake_pool)
    with pytest.raises(CaptureError):
        await exporter.capture_raster(SourceNode(FakeSourcePage()), spec)
    assert fake_browser.contexts == []


@pytest.mark.asyncio
async def test_zero_rendered_height_fails_with_capture_error(fake_pool, fake_browser, small_spec):
    exporter = _exporter(fake_pool)
    with pytest.raises(CaptureError):
        await exporter.capture_raster(SourceNode(FakeSourcePage(rendered=(40, 0))), small_spec)
    assert fake_browser.contexts == []


@pytest.mark.asyncio
async def test_detached_source_fails_with_capture_error(fake_pool, small_spec):
    exporter = _exporter(fake_pool)
    with pytest.raises(CaptureError, match="не прикреплён"):
        await exporter.capture_raster(SourceNode(FakeSourcePage(attached=False)), small_spec)


@pytest.mark.asyncio
async def test_missing_source_fails_with_capture_error(fake_pool, small_spec):
    exporter = _exporter(fake_pool)
    with pytest.raises(CaptureError, match="не найден"):
        await exporter.capture_raster(SourceNode(FakeSourcePage(found=False)), small_spec)


@pytest.mark.asyncio
async def test_clone_receives_forced_size(fake_pool, small_spec):
    exporter = _exporter(fake_pool)
    source_page = FakeSourcePage()
    await exporter.capture_raster(SourceNode(source_page, "#custom"), small_spec)

    args = source_page.calls[0]
    assert args["selector"] == "#custom"
    assert (args["width"], args["height"]) == (40, 80)
    assert "[data-debug-overlay]" in args["hideSelector"]


@pytest.mark.asyncio
async def test_undecodable_images_are_reported_not_fatal(fake_pool, fake_browser, small_spec):
    fake_browser.undecodable = ["http://proxy.test/image-proxy?url=x"]
    exporter = _exporter(fake_pool)
    png = await exporter.capture_raster(SourceNode(FakeSourcePage()), small_spec)
    assert png is not None
    assert [f.url for f in exporter.last_asset_failures] == ["http://proxy.test/image-proxy?url=x"]


@pytest.mark.asyncio
async def test_embed_failure_loaded_by_stage_is_not_reported(fake_pool, fake_browser, small_spec):
    """Встроить не вышло, но staging-страница загрузила картинку через прокси - в растре она есть."""
    exporter = _exporter(fake_pool, FakeProxyClient())
    png = await exporter.capture_raster(SourceNode(FakeSourcePage(images=[UNREACHABLE])), small_spec)

    assert png is not None
    assert fake_browser.stage_pages[0].replacements[UNREACHABLE] == build_proxy_url(UNREACHABLE, PROXY_ENDPOINT)
    assert exporter.last_asset_failures == []


@pytest.mark.asyncio
async def test_undecoded_proxy_image_reported_by_original_url(fake_pool, fake_browser, small_spec):
    fake_browser.undecodable = [build_proxy_url(UNREACHABLE, PROXY_ENDPOINT)]
    exporter = _exporter(fake_pool, FakeProxyClient())
    await exporter.capture_raster(SourceNode(FakeSourcePage(images=[UNREACHABLE])), small_spec)

    [failure] = exporter.last_asset_failures
    assert failure.url == UNREACHABLE
    assert failure.reason == "not decoded (proxy status 502)"


@pytest.mark.asyncio
async def test_passed_embedder_is_reused(fake_pool, small_spec):
    client = FakeProxyClient(responses={REACHABLE: (make_png(4, 4), "image/png")})
    exporter = _exporter(fake_pool, client)
    source = SourceNode(FakeSourcePage(images=[REACHABLE]))

    async with ImageEmbedder(client, HOSTING_ORIGIN) as embedder:
        await embedder.to_embeddable(REACHABLE)
        await exporter.capture_raster(source, small_spec, embedder=embedder)
        await exporter.export_document(source, small_spec, embedder=embedder)

    assert client.calls == [REACHABLE]


@pytest.mark.asyncio
async def test_composite_and_pdf_run_off_event_loop(fake_pool, small_spec, mocker):
    loop_thread = threading.get_ident()
    threads = {}

    def record(name, func):
        def wrapper(*args, **kwargs):
            threads[name] = threading.get_ident()
            return func(*args, **kwargs)
        return wrapper

    mocker.patch("core.sticker_exporter.composite_cover", side_effect=record("composite", composite_cover))
    mocker.patch("core.sticker_exporter.build_sticker_pdf", side_effect=record("pdf", build_sticker_pdf))
    exporter = _exporter(fake_pool)

    pdf = await exporter.export_document(SourceNode(FakeSourcePage()), small_spec)

    assert pdf.startswith(b"%PDF")
    assert set(threads) == {"composite", "pdf"}
    assert loop_thread not in threads.values()


@pytest.mark.asyncio
async def test_export_for_print_closes_surface(fake_pool, fake_browser, small_spec):
    exporter = _exporter(fake_pool)
    job = await exporter.export_for_print(SourceNode(FakeSourcePage()), small_spec, title="Cafe")

    assert isinstance(job, PrintJob)
    assert job.spool == b"%PDF-1.4 spooled"
    assert "object-fit: contain" in job.html
    assert "window.print()" in job.html
    page = fake_browser.print_pages[0]
    page.pdf.assert_awaited_once()
    assert page.pdf.call_args.kwargs["width"] == "100mm"
    assert page.pdf.call_args.kwargs["height"] == "200mm"
    page.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_export_for_print_failure_still_closes_surface(fake_pool, fake_browser, small_spec):
    exporter = _exporter(fake_pool)
    original_new_page = fake_browser.new_page

    async def failing_new_page(**kwargs):
        page = await original_new_page(**kwargs)
        page.pdf.side_effect = RuntimeError("Printing failed")
        return page

    fake_browser.new_page = failing_new_page
    with pytest.raises(EncodingError):
        await exporter.export_for_print(SourceNode(FakeSourcePage()), small_spec)
    fake_browser.print_pages[0].close.assert_awaited_once()
    assert not exporter.busy


@pytest.mark.asyncio
async def test_export_document_encoding_error(fake_pool, small_spec, mocker):
    mocker.patch("core.document_builder.ImageReader", side_effect=OSError("broken image"))
    exporter = _exporter(fake_pool)
    with pytest.raises(EncodingError):
        await exporter.export_document(SourceNode(FakeSourcePage()), small_spec)
    assert not exporter.busy


def test_build_stage_document_keeps_styles_and_forced_box():
    snapshot = FakeSourcePage().snapshot
    html = build_stage_document(snapshot, 40, 80)
    assert '<base href="http://app.test/sticker">' in html
    assert "#printable-sticker{color:red}" in html
    assert "width: 40px; height: 80px;" in html
    assert 'id="sticker-stage"' in html
    assert "pointer-events: none" in html


def test_build_stage_document_skips_non_http_base():
    snapshot = dict(FakeSourcePage().snapshot, baseUrl="about:blank")
    assert "<base" not in build_stage_document(snapshot, 40, 80)
