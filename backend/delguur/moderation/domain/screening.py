"""Keyword screen that flags listings which look like imported goods.

Only a hint for moderators; nothing is enforced from it.
"""

from __future__ import annotations

import re
from typing import Optional

FOREIGN_KEYWORDS: tuple[str, ...] = (
    # China
    "чайна", "china", "中国", "хятад", "made in china", "alibaba", "taobao", "aliexpress",
    # Korea
    "korea", "korean", "солонгос", "한국",
    # Imports in general
    "import", "imported", "импорт", "foreign", "гадаад",
    # Brands
    "nike", "adidas", "gucci", "louis vuitton", "chanel", "prada", "samsung", "apple",
    "iphone", "xiaomi", "huawei", "oppo", "vivo", "realme",
)


def _compile(keyword: str) -> re.Pattern[str]:
    escaped = re.escape(keyword)
    # Latin and Cyrillic terms match on word boundaries; CJK terms match anywhere.
    if re.fullmatch(r"[\w\s]+", keyword) and not re.search(r"[぀-ヿ㐀-鿿가-힯]", keyword):
        return re.compile(rf"\b{escaped}\b", re.IGNORECASE)
    return re.compile(escaped, re.IGNORECASE)


_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple((kw, _compile(kw)) for kw in FOREIGN_KEYWORDS)


def foreign_product_signals(title: str, description: Optional[str] = None) -> list[str]:
    text = f"{title} {description or ''}"
    return [keyword for keyword, pattern in _PATTERNS if pattern.search(text)]


def looks_like_foreign_product(title: str, description: Optional[str] = None) -> bool:
    return bool(foreign_product_signals(title, description))
