"""Persistent headless Chromium для рендеринга и съёмки стикеров.

Для каждого event loop держится один постоянный Chromium (запускается при
первом обращении). Страницы и контексты создаются на задачу и закрываются
вызывающим кодом. Встроены health-check и авто-рецикл по счётчику страниц и
по возрасту браузера.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from playwright.async_api import async_playwright

from core.config import BROWSER_MAX_AGE_SEC, BROWSER_MAX_PAGES

logger = logging.getLogger(__name__)

HEADLESS_ARGS = [
    '--headless=new',
    '--no-sandbox',
    '--disable-dev-shm-usage',
    '--disable-gpu',
    '--no-zygote',
    '--disable-extensions',
    '--disable-background-networking',
]

_STATE_ATTR = "__sticker_browser_state__"


@dataclass
class _PoolState:
    ctx: Any
    browser: Any
    created_at: float
    pages_made: int


class BrowserPool:
    """Доступ к persistent-браузеру текущего event loop."""

    def __init__(self, max_pages: int = BROWSER_MAX_PAGES, max_age_sec: int = BROWSER_MAX_AGE_SEC):
        self.max_pages = max_pages
        self.max_age_sec = max_age_sec
        self._lock: Optional[asyncio.Lock] = None

    @staticmethod
    def _loop_state(loop) -> Optional[_PoolState]:
        return getattr(loop, _STATE_ATTR, None)

    async def _launch(self, loop) -> _PoolState:
        ctx = await async_playwright().__aenter__()
        browser = await ctx.chromium.launch(args=HEADLESS_ARGS)
        state = _PoolState(ctx=ctx, browser=browser, created_at=time.time(), pages_made=0)
        setattr(loop, _STATE_ATTR, state)
        logger.info("🌐 Chromium запущен")
        return state

    @staticmethod
    async def _close_state(state: _PoolState):
        try:
            await state.browser.close()
        except Exception as e:
            logger.debug(f"Ошибка при закрытии браузера: {e}")
        try:
            await state.ctx.__aexit__(None, None, None)
        except Exception as e:
            logger.debug(f"Ошибка при остановке Playwright: {e}")

    async def browser(self):
        """Возвращает живой браузер, при необходимости перезапуская его."""
        loop = asyncio.get_running_loop()
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            state = self._loop_state(loop)
            if state is None:
                return (await self._launch(loop)).browser

            # Health-check: браузер жив?
            if not state.browser.is_connected():
                logger.warning("⚠️ Chromium отвалился, перезапускаем")
                await self._close_state(state)
                state = await self._launch(loop)

            # Ротация по возрасту/количеству страниц
            elif (time.time() - state.created_at) > self.max_age_sec or state.pages_made >= self.max_pages:
                logger.info(f"♻️ Ротация Chromium (страниц: {state.pages_made})")
                await self._close_state(state)
                state = await self._launch(loop)

            state.pages_made += 1
            return state.browser

    async def shutdown(self):
        """Закрывает persistent-браузер текущего event loop (если есть)."""
        loop = asyncio.get_running_loop()
        state = self._loop_state(loop)
        if state is None:
            return
        try:
            await self._close_state(state)
        finally:
            setattr(loop, _STATE_ATTR, None)
            logger.info("Chromium остановлен")
