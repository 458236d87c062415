from typing import List

from core.models import Review

# Слова, по которым отзыв считается негативным даже при высокой оценке
NEGATIVE_KEYWORDS = [
    # English
    'old', 'dirty', 'bad', 'slow', 'expensive', 'noisy',
    'terrible', 'awful', 'worst', 'horrible', 'rude',
    'unprofessional', 'disgusting', 'overpriced', 'disappointing',
    'poor', 'mediocre', 'avoid', 'never again', 'waste',
    # Arabic
    'سيء', 'سيئ', 'قديم', 'وسخ', 'غالي', 'زحمة', 'إزعاج',
    'قذر', 'بطيء', 'اسوء', 'أسوء', 'زفت', 'وحشة', 'لا انصح',
    'مقرف', 'فاشل', 'ضعيف', 'مخيب', 'نصب', 'غش',
]

MIN_POSITIVE_RATING = 4


def filter_positive_reviews(reviews: List[Review], language: str = 'en') -> List[Review]:
    """
    Оставляет только отзывы на 4-5 звёзд без негативных слов.

    Текст берётся на языке стикера (арабский, если он есть у отзыва).
    Поиск - по подстроке без учёта регистра, поэтому "badly" тоже отсекается.
    """
    result = []
    for review in reviews:
        if review.rating < MIN_POSITIVE_RATING:
            continue
        text = review.display_text(language).lower()
        if any(keyword.lower() in text for keyword in NEGATIVE_KEYWORDS):
            continue
        result.append(review)
    return result
