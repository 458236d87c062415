from prometheus_client import Counter, Gauge, Histogram

# Счетчик экспортов стикера.
# 'action' - download / document / print, 'status' - success / failed / busy
STICKER_EXPORTS = Counter(
    'sticker_exports_total',
    'Total count of sticker export operations',
    ['action', 'status']
)

# Гистограмма длительности экспорта (от клонирования до готового файла)
STICKER_EXPORT_DURATION = Histogram(
    'sticker_export_duration_seconds',
    'Duration of sticker export operations',
    ['action'],
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120)
)

# Картинки, которые не удалось встроить или декодировать.
# 'stage' - embed (загрузка через прокси) / decode (ожидание в staging-странице)
ASSET_FETCH_FAILURES = Counter(
    'sticker_asset_failures_total',
    'Images that failed to load during sticker export',
    ['stage']
)

# Сколько staging-страниц сейчас открыто. Вне экспорта всегда 0.
STAGED_PAGES = Gauge(
    'sticker_staged_pages',
    'Number of offscreen staging pages currently attached'
)

# Растр после проверки оказался не того размера
DIMENSION_MISMATCHES = Counter(
    'sticker_dimension_mismatches_total',
    'Exported rasters whose verified size differs from the requested size'
)

# Запросы к прокси изображений по статусу ответа
PROXY_REQUESTS = Counter(
    'image_proxy_requests_total',
    'Requests served by the image proxy',
    ['status']
)
