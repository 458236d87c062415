import asyncio
import logging
import os

from dotenv import load_dotenv
from prometheus_client import start_http_server
from pythonjsonlogger.json import JsonFormatter


# --- НАСТРОЙКА ЛОГИРОВАНИЯ ---
def setup_logging():
    """Настраивает логирование: простой текст, либо JSON при LOG_FORMAT=json."""
    handler = logging.StreamHandler()
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        handler.setFormatter(JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)
    # Access-лог aiohttp слишком шумный для прокси картинок
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


# --- Функции для запуска сервисов ---
async def run_metrics_server(port: int = 8000):
    """Запускает HTTP-сервер для Prometheus в отдельном потоке, чтобы не блокировать основную логику."""
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, start_http_server, port)
    logging.info(f"Prometheus metrics server started on http://localhost:{port}")


async def main():
    setup_logging()
    load_dotenv()

    # Конфиг читается из окружения при импорте, поэтому импортируем после load_dotenv
    from core.config import IMAGE_PROXY_HOST, IMAGE_PROXY_PORT, METRICS_PORT
    from core.image_proxy import run_proxy_server

    await run_metrics_server(METRICS_PORT)
    runner = await run_proxy_server(IMAGE_PROXY_HOST, IMAGE_PROXY_PORT)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        logging.info("Прокси картинок остановлен.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Приложение остановлено вручную.")
