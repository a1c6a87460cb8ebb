"""Data model for items fetched from the read-it-later service."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PageType(str, Enum):
    """Kind of page an item was saved from."""

    ARTICLE = "ARTICLE"
    BOOK = "BOOK"
    FILE = "FILE"
    PROFILE = "PROFILE"
    UNKNOWN = "UNKNOWN"
    WEBSITE = "WEBSITE"
    TWEET = "TWEET"
    VIDEO = "VIDEO"
    IMAGE = "IMAGE"

    @classmethod
    def parse(cls, value: str | None) -> PageType:
        try:
            return cls(value or "UNKNOWN")
        except ValueError:
            return cls.UNKNOWN


class HighlightType(str, Enum):
    """Annotation type. Only HIGHLIGHT entries are rendered as highlights."""

    HIGHLIGHT = "HIGHLIGHT"
    NOTE = "NOTE"
    REDACTION = "REDACTION"


@dataclass(frozen=True)
class Label:
    name: str


@dataclass(frozen=True)
class Highlight:
    """A highlight, note or redaction attached to an item."""

    id: str
    type: HighlightType = HighlightType.HIGHLIGHT
    quote: str | None = None
    annotation: str | None = None
    patch: str | None = None  # diff patch (web pages) or JSON bbox (files)
    updated_at: str | None = None
    labels: tuple[Label, ...] = ()
    color: str | None = None
    highlight_position_percent: float | None = None
    highlight_position_anchor_index: int | None = None


@dataclass(frozen=True)
class Item:
    """A saved article snapshot for one sync pass."""

    id: str
    title: str
    url: str
    saved_at: str
    page_type: PageType = PageType.ARTICLE
    slug: str = ""
    original_url: str | None = None
    site_name: str | None = None
    author: str | None = None
    description: str | None = None
    image: str | None = None
    published_at: str | None = None
    read_at: str | None = None
    archived_at: str | None = None
    updated_at: str | None = None
    labels: tuple[Label, ...] = ()
    highlights: tuple[Highlight, ...] = ()
    content: str | None = None  # only present when requested
    reading_progress_percent: float = 0
    words_count: int | None = None
    is_archived: bool = False
