"""Keyword classification of transaction descriptions into budget categories.

Matching is a case-insensitive substring test against an ordered table; the
first category in table order with a matching keyword wins. Reordering the
table changes results for descriptions that hit keywords of two categories.
"""

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from config import get_settings

logger = logging.getLogger(__name__)

KeywordTable = tuple[tuple[str, tuple[str, ...]], ...]

FALLBACK_CATEGORY = "Other Expenses"


@dataclass(frozen=True)
class CategorySeed:
    name: str
    icon: str
    color: str
    is_income: bool = False


DEFAULT_CATEGORIES: tuple[CategorySeed, ...] = (
    CategorySeed("Food & Dining", "🍽️", "#EF4444"),
    CategorySeed("Transportation", "🚗", "#F59E0B"),
    CategorySeed("Shopping", "🛒", "#8B5CF6"),
    CategorySeed("Bills & Utilities", "⚡", "#3B82F6"),
    CategorySeed("Entertainment", "🎬", "#F97316"),
    CategorySeed("Healthcare", "🏥", "#06B6D4"),
    CategorySeed("Education", "📚", "#84CC16"),
    CategorySeed("Travel", "✈️", "#EC4899"),
    CategorySeed("Personal Care", "💄", "#A855F7"),
    CategorySeed(FALLBACK_CATEGORY, "📋", "#6B7280"),
    CategorySeed("Salary", "💰", "#10B981", is_income=True),
    CategorySeed("Freelance", "💻", "#059669", is_income=True),
    CategorySeed("Investments", "📈", "#047857", is_income=True),
    CategorySeed("Other Income", "💎", "#065F46", is_income=True),
)

DEFAULT_COLOR = "#6B7280"
CATEGORY_COLORS = {seed.name: seed.color for seed in DEFAULT_CATEGORIES}

DEFAULT_KEYWORD_TABLE: KeywordTable = (
    (
        "Food & Dining",
        (
            "restaurant",
            "cafe",
            "pizza",
            "burger",
            "food",
            "dining",
            "kitchen",
            "menu",
            "delivery",
            "takeaway",
        ),
    ),
    (
        "Transportation",
        ("taxi", "uber", "lyft", "bus", "train", "parking", "gas", "fuel", "transport"),
    ),
    (
        "Shopping",
        ("store", "shop", "mall", "market", "amazon", "online", "purchase", "retail"),
    ),
    (
        "Bills & Utilities",
        (
            "electric",
            "water",
            "internet",
            "phone",
            "utility",
            "bill",
            "insurance",
            "rent",
        ),
    ),
    (
        "Entertainment",
        (
            "movie",
            "cinema",
            "game",
            "music",
            "spotify",
            "netflix",
            "entertainment",
            "party",
        ),
    ),
    (
        "Healthcare",
        ("hospital", "doctor", "pharmacy", "medical", "health", "clinic", "medicine"),
    ),
    (
        "Education",
        ("school", "university", "course", "education", "book", "tuition", "study"),
    ),
    (
        "Travel",
        ("hotel", "flight", "travel", "trip", "vacation", "booking", "airbnb"),
    ),
    (
        "Personal Care",
        ("salon", "spa", "beauty", "cosmetic", "personal", "hygiene", "care"),
    ),
)


def category_color(name: str) -> str:
    return CATEGORY_COLORS.get(name, DEFAULT_COLOR)


def classify(
    description: Optional[str],
    table: KeywordTable = DEFAULT_KEYWORD_TABLE,
    known: Optional[Iterable[str]] = None,
) -> str:
    """Return the category for ``description``.

    When ``known`` is given, table entries naming other categories are passed
    over, so the search continues with the next entry.
    """
    text = (description or "").lower()
    allowed = set(known) if known is not None else None
    for category, keywords in table:
        if allowed is not None and category not in allowed:
            continue
        if any(keyword in text for keyword in keywords):
            return category
    return FALLBACK_CATEGORY


def parse_keyword_table(raw: object) -> KeywordTable:
    """Accept ``[{"category": ..., "keywords": [...]}, ...]`` or ``[[name, [...]], ...]``."""
    if not isinstance(raw, list):
        raise ValueError("Keyword table must be a list")
    entries: list[tuple[str, tuple[str, ...]]] = []
    for idx, item in enumerate(raw, start=1):
        if isinstance(item, dict):
            name = item.get("category")
            keywords = item.get("keywords")
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            name, keywords = item
        else:
            raise ValueError(f"Entry {idx}: expected category and keywords")
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"Entry {idx}: category name is required")
        if not isinstance(keywords, list) or not all(
            isinstance(k, str) for k in keywords
        ):
            raise ValueError(f"Entry {idx}: keywords must be a list of strings")
        entries.append(
            (name.strip(), tuple(k.lower() for k in keywords if k.strip()))
        )
    return tuple(entries)


def load_keyword_table(path: Path) -> KeywordTable:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    table = parse_keyword_table(raw)
    logger.info(f"keyword_table_loaded: path={path} categories={len(table)}")
    return table


@lru_cache(maxsize=1)
def get_keyword_table() -> KeywordTable:
    path = get_settings().keyword_table_path
    if not path:
        return DEFAULT_KEYWORD_TABLE
    return load_keyword_table(Path(path))
