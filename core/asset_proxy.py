import asyncio
import logging
from typing import Dict, Iterable, Optional, Tuple
from urllib.parse import quote, urlsplit

import aiohttp

from core.config import HOSTING_ORIGIN, IMAGE_PROXY_URL, PROXY_FETCH_TIMEOUT_SEC
from core.errors import AssetFetchError
from core.metrics import ASSET_FETCH_FAILURES
from core.raster_utils import to_data_uri

logger = logging.getLogger(__name__)

SELF_CONTAINED_PREFIXES = ("data:", "blob:")


def build_proxy_url(target: str, endpoint: str = IMAGE_PROXY_URL) -> str:
    """Ссылка на картинку через прокси: <endpoint>?url=<percent-encoded target>."""
    return f"{endpoint}?url={quote(target, safe='')}"


def is_self_contained(url: str) -> bool:
    return url.strip().lower().startswith(SELF_CONTAINED_PREFIXES)


def _origin(url: str) -> Tuple[str, str]:
    parts = urlsplit(url)
    return parts.scheme.lower(), parts.netloc.lower()


def is_same_origin(url: str, hosting_origin: str = HOSTING_ORIGIN) -> bool:
    """Относительные пути и ссылки на origin шаблона считаются локальными."""
    parts = urlsplit(url.strip())
    if not parts.scheme and not parts.netloc:
        return True
    if not parts.scheme and parts.netloc:
        # //cdn.example.com/x.png - протокол от страницы, origin чужой
        return parts.netloc.lower() == _origin(hosting_origin)[1]
    return _origin(url) == _origin(hosting_origin)


def is_proxied(url: str, endpoint: str = IMAGE_PROXY_URL) -> bool:
    return url.startswith(f"{endpoint}?")


def resolve_capture_src(
    src: str,
    embedded: Optional[str] = None,
    endpoint: str = IMAGE_PROXY_URL,
    hosting_origin: str = HOSTING_ORIGIN,
) -> str:
    """
    Во что превратить src картинки в копии для съёмки.

    Встроенная картинка (data URI) важнее всего; иначе чужой origin идёт через
    прокси, иначе src остаётся как есть. Прямая загрузка с чужого origin
    "пачкает" холст, и картинка молча не попадает в растр.
    """
    if embedded and is_self_contained(embedded):
        return embedded
    if not src or is_self_contained(src) or is_same_origin(src, hosting_origin) or is_proxied(src, endpoint):
        return src
    return build_proxy_url(src, endpoint)


class AssetProxyClient:
    """Клиент прокси изображений. Любой не-200 ответ - AssetFetchError."""

    def __init__(
        self,
        endpoint: str = IMAGE_PROXY_URL,
        timeout_sec: float = PROXY_FETCH_TIMEOUT_SEC,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint
        self.timeout_sec = timeout_sec
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def fetch(self, url: str) -> Tuple[bytes, str]:
        """
        Скачивает картинку через прокси.

        Returns:
            Tuple[bytes, content_type]
        """
        session = await self._get_session()
        try:
            async with session.get(
                self.endpoint,
                params={"url": url},
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
            ) as response:
                if response.status != 200:
                    # Прокси отвечает JSON-ошибкой, но нам достаточно статуса
                    raise AssetFetchError(url, f"proxy status {response.status}")
                content_type = response.headers.get("Content-Type", "application/octet-stream")
                data = await response.read()
        except asyncio.TimeoutError as e:
            raise AssetFetchError(url, "timeout") from e
        except aiohttp.ClientError as e:
            raise AssetFetchError(url, str(e)) from e
        if not data:
            raise AssetFetchError(url, "empty body")
        return data, content_type.split(";")[0].strip()

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class ImageEmbedder:
    """
    Превращает внешние картинки в самодостаточные data URI.

    Живёт ровно одну сессию экспорта: кэш по URL общий для всех операций
    внутри сессии и выбрасывается при выходе из ``async with``.
    """

    def __init__(self, client: AssetProxyClient, hosting_origin: str = HOSTING_ORIGIN):
        self.client = client
        self.hosting_origin = hosting_origin
        self._cache: Dict[str, asyncio.Task] = {}
        self.failures: Dict[str, AssetFetchError] = {}

    async def __aenter__(self) -> "ImageEmbedder":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        for task in self._cache.values():
            if not task.done():
                task.cancel()
        self._cache.clear()

    def needs_fetch(self, url: str) -> bool:
        return bool(url) and not is_self_contained(url) and not is_same_origin(url, self.hosting_origin)

    async def _convert(self, url: str) -> str:
        try:
            data, content_type = await self.client.fetch(url)
        except AssetFetchError as e:
            logger.warning(f"⚠️ Картинка не встроена, оставляем исходную ссылку: {e}")
            ASSET_FETCH_FAILURES.labels(stage="embed").inc()
            self.failures[url] = e
            return url
        return to_data_uri(data, content_type)

    async def to_embeddable(self, url: str) -> str:
        # Уже провалившиеся в этой сессии картинки повторно не ждём
        if not self.needs_fetch(url) or url in self.failures:
            return url
        task = self._cache.get(url)
        if task is None:
            task = asyncio.ensure_future(self._convert(url))
            self._cache[url] = task
        # shield: отмена одного ожидающего не должна отменять общую загрузку
        return await asyncio.shield(task)

    async def embed_all(self, urls: Iterable[str], timeout: Optional[float] = None) -> Dict[str, str]:
        """
        Встраивает все картинки под одним общим дедлайном.

        Что не успело - остаётся исходной ссылкой; одна зависшая картинка не
        держит остальные.
        """
        unique = [u for u in dict.fromkeys(urls) if u]
        result = {u: u for u in unique}
        pending = {asyncio.ensure_future(self.to_embeddable(u)): u for u in unique if self.needs_fetch(u)}
        if not pending:
            return result

        done, not_done = await asyncio.wait(pending.keys(), timeout=timeout)
        for task in done:
            result[pending[task]] = task.result()
        for task in not_done:
            url = pending[task]
            task.cancel()
            inner = self._cache.get(url)
            if inner is not None:
                inner.cancel()
            logger.warning(f"⚠️ Картинка не успела встроиться за {timeout}с: {url}")
            ASSET_FETCH_FAILURES.labels(stage="embed").inc()
            self.failures[url] = AssetFetchError(url, "deadline exceeded")
        return result
