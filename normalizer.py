"""Content sanitization and chapter title utilities."""
import re
from typing import Iterable, Optional, Union
import logging

import bleach
import tinycss2
from bleach.css_sanitizer import CSSSanitizer
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


class StyleSanitizer(CSSSanitizer):
    """
    CSS sanitizer that checks declaration values as well as property names.

    Only color (hex or rgb()), text-align and font-size (px/em/%) survive.
    """

    ALLOWED_VALUES = {
        'color': re.compile(
            r'^(?:#(?:[0-9a-f]{3}|[0-9a-f]{4}|[0-9a-f]{6}|[0-9a-f]{8})'
            r'|rgb\(\s*\d{1,3}\s*,\s*\d{1,3}\s*,\s*\d{1,3}\s*\))$',
            re.IGNORECASE,
        ),
        'text-align': re.compile(r'^(?:left|right|center|justify)$', re.IGNORECASE),
        'font-size': re.compile(r'^\d+(?:\.\d+)?(?:px|em|%)$', re.IGNORECASE),
    }

    def __init__(self):
        super().__init__(allowed_css_properties=list(self.ALLOWED_VALUES))

    def sanitize_css(self, style: str) -> str:
        declarations = tinycss2.parse_declaration_list(
            style, skip_comments=True, skip_whitespace=True
        )
        kept = []
        for token in declarations:
            if token.type != 'declaration':
                continue
            pattern = self.ALLOWED_VALUES.get(token.lower_name)
            if pattern is None:
                continue
            value = tinycss2.serialize(token.value).strip()
            if pattern.match(value):
                kept.append(f"{token.lower_name}: {value}")
        return "; ".join(kept)


class ContentSanitizer:
    """
    Clean chapter HTML before it is stored.

    Scriptable elements are dropped together with their content, then
    bleach enforces the tag, attribute and URL scheme allow-lists.
    """

    # Removed with everything inside them
    DROPPED_TAGS = ['script', 'style', 'iframe', 'noscript', 'object', 'embed']

    ALLOWED_TAGS = [
        'b', 'strong', 'i', 'em', 'u',
        'p', 'br', 'hr', 'img', 'div', 'span', 'center',
        'h1', 'h2', 'h3',
    ]

    ALLOWED_ATTRIBUTES = {
        'img': ['src', 'alt', 'style', 'width', 'height'],
        'p': ['style', 'align'],
        'div': ['style', 'align'],
        'span': ['style'],
    }

    # data: keeps inline base64 images
    ALLOWED_PROTOCOLS = ['http', 'https', 'data']

    EMPTY_BLOCK = re.compile(r'<(p|div)>\s*</\1>')

    def __init__(self):
        self.css_sanitizer = StyleSanitizer()

    def sanitize(self, html: Optional[str]) -> str:
        """
        Sanitize HTML content.

        Args:
            html: Raw HTML string (may be None)

        Returns:
            Sanitized HTML string, "" for empty input
        """
        if not html:
            return ""

        soup = BeautifulSoup(html, 'lxml')
        for tag in soup(self.DROPPED_TAGS):
            tag.decompose()

        clean_html = bleach.clean(
            str(soup),
            tags=self.ALLOWED_TAGS,
            attributes=self.ALLOWED_ATTRIBUTES,
            protocols=self.ALLOWED_PROTOCOLS,
            css_sanitizer=self.css_sanitizer,
            strip=True,
            strip_comments=True,
        )

        return self._normalize_whitespace(clean_html)

    def _normalize_whitespace(self, html: str) -> str:
        """Drop empty blocks and collapse runs of spaces and blank lines."""
        previous = None
        while previous != html:
            previous = html
            html = self.EMPTY_BLOCK.sub('', html)

        html = re.sub(r' {2,}', ' ', html)
        html = re.sub(r'\n{3,}', '\n\n', html)

        return html.strip()


_sanitizer = ContentSanitizer()


def sanitize(html: Optional[str]) -> str:
    """Sanitize with the shared ContentSanitizer."""
    return _sanitizer.sanitize(html)


class ChapterTitleNormalizer:
    """Build display titles from AI-suggested chapter titles."""

    # Leading "chapter/episode N" markers in the languages we translate from
    CHAPTER_MARKER = re.compile(
        r'^\s*(?:'
        r'第\s*[0-9０-９一二三四五六七八九十百千零〇两]+(?:\.[0-9]+)?\s*[話话章回節节幕]'
        r'|(?:chapter|chap|ch|episode|ep)(?![a-z])\.?\s*[0-9０-９]*(?:\.[0-9]+)?'
        r'|(?:ตอนที่|ตอน|บทที่)\s*[0-9]*(?:\.[0-9]+)?'
        r'|제?\s*[0-9]+\s*[화장]'
        r')\s*[:：.．\-–—、,，|｜]*\s*',
        re.IGNORECASE,
    )

    @classmethod
    def strip_marker(cls, title: Optional[str]) -> str:
        """Remove a leading chapter marker ("第5話：", "Chapter 12 -", ...)."""
        if not title:
            return ""
        return cls.CHAPTER_MARKER.sub('', title, count=1).strip()

    @staticmethod
    def format_number(number: Union[int, float]) -> str:
        """5.0 -> "5", 1.5 -> "1.5"."""
        number = float(number)
        if number.is_integer():
            return str(int(number))
        return str(number)

    @classmethod
    def default_title(cls, number: Union[int, float], label: str) -> str:
        return f"{label} {cls.format_number(number)}"

    @classmethod
    def build_title(cls, number: Union[int, float], candidate: Optional[str], label: str) -> str:
        """
        Compose "{label} {number} : {title}" from an AI title candidate.

        Falls back to "{label} {number}" when nothing is left after
        stripping the chapter marker.
        """
        cleaned = cls.strip_marker(candidate)
        if not cleaned:
            return cls.default_title(number, label)
        return f"{cls.default_title(number, label)} : {cleaned}"


def split_names(raw: Union[str, Iterable[str], None]) -> list[str]:
    """
    Normalize a comma separated string (or list) of category/tag names.

    Returns trimmed, non-empty names with duplicates removed, order kept.
    """
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(',')

    names = []
    seen = set()
    for name in raw:
        clean = name.strip()
        if clean and clean.lower() not in seen:
            seen.add(clean.lower())
            names.append(clean)
    return names
