"""设定集条目插入顺序分档：按关键词把条目归入固定优先级档位。"""

from __future__ import annotations

from charforge.constants import BAND_KEYWORDS, DEFAULT_BAND


def determine_insertion_order(title: str, content: str) -> int:
    title_lower = title.lower()
    content_lower = content.lower()
    for band, title_words, content_words in BAND_KEYWORDS:
        if any(word in title_lower for word in title_words):
            return band
        if any(word in content_lower for word in content_words):
            return band
    return DEFAULT_BAND
