import os
import sys

import pytest

# Добавляем корневую директорию проекта в пути поиска модулей
# Это гарантирует, что pytest найдет папки 'core' и 'tests'
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Set up test environment variables
os.environ.setdefault("IMAGE_PROXY_URL", "http://proxy.test/image-proxy")
os.environ.setdefault("HOSTING_ORIGIN", "http://app.test")

from core.render_config import StickerSpec  # noqa: E402
from tests.fakes import FakeBrowser, FakePool  # noqa: E402


@pytest.fixture
def small_spec():
    """Уменьшенная копия боевой геометрии: 40x80 на экране, 100x200 растр, 100x200 мм."""
    return StickerSpec(
        display_width=40,
        aspect_ratio=2,
        export_width=100,
        export_height=200,
        document_width_mm=100,
        document_height_mm=200,
    )


@pytest.fixture
def fake_browser():
    return FakeBrowser()


@pytest.fixture
def fake_pool(fake_browser):
    return FakePool(fake_browser)


@pytest.fixture
def business_dict():
    return {
        "placeId": "ChIJ123",
        "name": "Cafe Nile View",
        "nameAr": "كافيه نايل فيو",
        "address": "12 Corniche St, Cairo",
        "rating": 4.6,
        "totalReviews": 312,
        "photos": [
            "https://maps.example.com/photo1.jpg",
            "https://maps.example.com/photo2.jpg",
            "https://maps.example.com/photo3.jpg",
        ],
        "reviews": [
            {"authorName": "Mona", "rating": 5, "text": "Lovely place, great coffee", "relativeTime": "a week ago",
             "authorPhoto": "https://maps.example.com/mona.jpg"},
            {"authorName": "Omar", "rating": 5, "text": "Great view but slow service"},
            {"authorName": "Sara", "rating": 3, "text": "Okay"},
            {"authorName": "Ali", "rating": 4, "text": "Nice staff", "textAr": "طاقم لطيف"},
        ],
        "hours": {
            "periods": [{"day": 1, "open": "0900", "close": "2300"}],
            "weekdayText": [
                "Monday: 9:00 AM – 11:00 PM",
                "Tuesday: 9:00 AM – 11:00 PM",
                "Wednesday: 9:00 AM – 11:00 PM",
                "Thursday: 9:00 AM – 11:00 PM",
                "Friday: 1:00 – 11:00 PM",
                "Saturday: 9:00 AM – 11:00 PM",
                "Sunday: 9:00 AM – 11:00 PM",
            ],
            "isOpenNow": True,
        },
        "location": {"lat": 30.04, "lng": 31.23},
        "types": ["cafe"],
    }
