import logging
from typing import Optional
from urllib.parse import urlsplit

import aiohttp
from aiohttp import web

from core.config import PROXY_CACHE_CONTROL, PROXY_FETCH_TIMEOUT_SEC, PROXY_USER_AGENT
from core.metrics import PROXY_REQUESTS

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

HTTP_SESSION_KEY = web.AppKey("http_session", aiohttp.ClientSession)


def _json_error(status: int, payload: dict) -> web.Response:
    PROXY_REQUESTS.labels(status=str(status)).inc()
    return web.json_response(payload, status=status, headers=CORS_HEADERS)


def create_proxy_app(
    session: Optional[aiohttp.ClientSession] = None,
    path: str = "/image-proxy",
    timeout_sec: float = PROXY_FETCH_TIMEOUT_SEC,
) -> web.Application:
    """
    Прокси картинок: отдаёт байты внешнего ресурса со своего origin,
    чтобы браузер мог рисовать их на холсте без CORS-ограничений.
    """
    app = web.Application()

    async def http_session_ctx(app: web.Application):
        if session is not None:
            app[HTTP_SESSION_KEY] = session
            yield
            return
        async with aiohttp.ClientSession() as own_session:
            app[HTTP_SESSION_KEY] = own_session
            yield

    app.cleanup_ctx.append(http_session_ctx)

    async def handle_options(request: web.Request) -> web.Response:
        return web.Response(headers=CORS_HEADERS)

    async def handle_proxy(request: web.Request) -> web.Response:
        target = request.query.get("url")
        if not target:
            return _json_error(400, {"error": "Missing url"})

        parts = urlsplit(target)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            return _json_error(400, {"error": "Invalid url protocol"})

        http = request.app[HTTP_SESSION_KEY]
        try:
            async with http.get(
                target,
                allow_redirects=True,
                headers={"User-Agent": PROXY_USER_AGENT, "Accept": "image/*,*/*"},
                timeout=aiohttp.ClientTimeout(total=timeout_sec),
            ) as upstream:
                if not 200 <= upstream.status < 300:
                    logger.warning(f"Upstream {target} ответил {upstream.status}")
                    return _json_error(502, {"error": "Upstream fetch failed", "status": upstream.status})
                body = await upstream.read()
                content_type = upstream.headers.get("Content-Type", "application/octet-stream")
                cache_control = upstream.headers.get("Cache-Control", PROXY_CACHE_CONTROL)
        except Exception as e:
            logger.error(f"Ошибка прокси для {target}: {e}")
            return _json_error(500, {"error": str(e)})

        PROXY_REQUESTS.labels(status="200").inc()
        return web.Response(
            body=body,
            status=200,
            headers={**CORS_HEADERS, "Content-Type": content_type, "Cache-Control": cache_control},
        )

    app.router.add_route("OPTIONS", path, handle_options)
    app.router.add_get(path, handle_proxy)
    return app


async def run_proxy_server(host: str = "0.0.0.0", port: int = 8020) -> web.AppRunner:
    app = create_proxy_app()
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Image proxy started on http://{host}:{port}/image-proxy")
    return runner
