import os
from pathlib import Path

# Определяем базовую директорию проекта
BASE_DIR = Path(__file__).resolve().parent.parent

# --- Пути ---
TEMPLATES_PATH = BASE_DIR / "templates"
EXPORT_PATH = Path(os.getenv("EXPORT_PATH", str(BASE_DIR / "exports")))

# --- Прокси изображений (AssetProxy) ---
# Эндпоинт, через который грузятся все внешние картинки (фото, иконки)
IMAGE_PROXY_URL = os.getenv("IMAGE_PROXY_URL", "http://localhost:8020/image-proxy")
# Origin, на котором живёт сам шаблон; картинки с этого origin не проксируются
HOSTING_ORIGIN = os.getenv("HOSTING_ORIGIN", "http://localhost:8020")
PROXY_USER_AGENT = "StickerImageProxy/1.0"
PROXY_FETCH_TIMEOUT_SEC = float(os.getenv("PROXY_FETCH_TIMEOUT_SEC", 10))
PROXY_CACHE_CONTROL = "public, max-age=3600"

# --- Экспорт ---
# Общий дедлайн ожидания загрузки картинок (на все изображения сразу)
ASSET_TIMEOUT_MS = int(os.getenv("ASSET_TIMEOUT_MS", 6000))
# Запас поверх дедлайна на стороне Python, если браузер сам не уложился
ASSET_WAIT_GRACE_MS = int(os.getenv("ASSET_WAIT_GRACE_MS", 500))

# --- Браузер ---
BROWSER_MAX_PAGES = int(os.getenv("STICKER_BROWSER_MAX_PAGES", 60))  # Перезапуск после N страниц
BROWSER_MAX_AGE_SEC = int(os.getenv("STICKER_BROWSER_MAX_AGE_SEC", 900))  # …или после T секунд

# --- Контакты для заказа стикеров (футер стикера) ---
WHATSAPP_NUMBER = os.getenv("STICKER_WHATSAPP_NUMBER", "201514167733")
WHATSAPP_DISPLAY = os.getenv("STICKER_WHATSAPP_DISPLAY", "+20 151 416 7733")

# --- Сервисы ---
IMAGE_PROXY_HOST = os.getenv("IMAGE_PROXY_HOST", "0.0.0.0")
IMAGE_PROXY_PORT = int(os.getenv("IMAGE_PROXY_PORT", 8020))
METRICS_PORT = int(os.getenv("METRICS_PORT", 8000))
