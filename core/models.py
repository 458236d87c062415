from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote


@dataclass
class Review:
    author_name: str
    rating: float
    text: str
    text_ar: Optional[str] = None
    author_photo: Optional[str] = None
    time: str = ""
    relative_time: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Review":
        return cls(
            author_name=data.get("authorName", ""),
            rating=float(data.get("rating") or 0),
            text=data.get("text") or "",
            text_ar=data.get("textAr"),
            author_photo=data.get("authorPhoto"),
            time=str(data.get("time") or ""),
            relative_time=data.get("relativeTime") or "",
        )

    def display_text(self, language: str = "en") -> str:
        if language == "ar" and self.text_ar:
            return self.text_ar
        return self.text


@dataclass
class DayPeriod:
    day: int
    open: str
    close: str


@dataclass
class BusinessHours:
    periods: List[DayPeriod] = field(default_factory=list)
    weekday_text: List[str] = field(default_factory=list)
    weekday_text_ar: Optional[List[str]] = None
    is_open_now: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BusinessHours":
        return cls(
            periods=[
                DayPeriod(day=int(p.get("day", 0)), open=p.get("open", ""), close=p.get("close", ""))
                for p in data.get("periods") or []
            ],
            weekday_text=list(data.get("weekdayText") or []),
            weekday_text_ar=data.get("weekdayTextAr"),
            is_open_now=data.get("isOpenNow"),
        )

    def text_for(self, weekday: int, language: str = "en") -> Optional[str]:
        """Строка часов работы на день недели (0 - понедельник, как в Google weekdayText)."""
        lines = self.weekday_text_ar if language == "ar" and self.weekday_text_ar else self.weekday_text
        if 0 <= weekday < len(lines):
            return lines[weekday]
        return None


@dataclass
class PaymentMethod:
    """Способ оплаты, который печатается на стикере (например, InstaPay или кошелёк)."""
    label: str
    account: str
    icon_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentMethod":
        return cls(label=data.get("label", ""), account=data.get("account", ""), icon_url=data.get("iconUrl"))


@dataclass
class BusinessData:
    """Запись о заведении в том виде, в каком её отдаёт прокси Google Places."""
    place_id: str
    name: str
    address: str
    name_ar: Optional[str] = None
    address_ar: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    total_reviews: Optional[int] = None
    photos: List[str] = field(default_factory=list)
    reviews: List[Review] = field(default_factory=list)
    hours: Optional[BusinessHours] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    types: List[str] = field(default_factory=list)
    price_level: Optional[int] = None
    is_open: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BusinessData":
        location = data.get("location") or {}
        hours = data.get("hours")
        return cls(
            place_id=data.get("placeId", ""),
            name=data.get("name", ""),
            address=data.get("address", ""),
            name_ar=data.get("nameAr"),
            address_ar=data.get("addressAr"),
            phone=data.get("phone"),
            website=data.get("website"),
            rating=data.get("rating"),
            total_reviews=data.get("totalReviews"),
            photos=list(data.get("photos") or []),
            reviews=[Review.from_dict(r) for r in data.get("reviews") or []],
            hours=BusinessHours.from_dict(hours) if hours else None,
            lat=location.get("lat"),
            lng=location.get("lng"),
            types=list(data.get("types") or []),
            price_level=data.get("priceLevel"),
            is_open=data.get("isOpen"),
        )

    def display_name(self, language: str = "en") -> str:
        if language == "ar" and self.name_ar:
            return self.name_ar
        return self.name

    def display_address(self, language: str = "en") -> str:
        if language == "ar" and self.address_ar:
            return self.address_ar
        return self.address

    @property
    def review_url(self) -> str:
        """Ссылка "оставить отзыв" в Google Maps; без place_id - поиск по адресу."""
        if self.place_id:
            return f"https://search.google.com/local/writereview?placeid={self.place_id}"
        return f"https://www.google.com/maps/search/?api=1&query={quote(self.address, safe='')}"
