"""Highlight ordering and quote formatting.

Location ordering uses, in priority order:
- highlightPositionPercent when both highlights have it
- the (top, left) point from the JSON bounding box patch for FILE pages
- the offset of the first hunk of the diff patch for web pages

A diff patch that fails to decode falls back to the bounding box comparison
for that pair only; the rest of the sort is unaffected.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import cmp_to_key
from typing import Iterable

from vaultsync.providers.content_types import Highlight, HighlightType, PageType

logger = logging.getLogger(__name__)

_PATCH_HEADER_RE = re.compile(r"^@@ -(\d+),?(\d*) \+(\d+),?(\d*) @@$")
_HIGHLIGHTS_BLOCKQUOTE_RE = re.compile(r"{{#highlights}}(\n)*>")
_MARKUP_LINE_RE = re.compile(r"(>)?(.+)$", re.MULTILINE)


class HighlightOrder(str, Enum):
    """How highlights are ordered in rendered notes."""

    LOCATION = "LOCATION"
    TIME = "TIME"


class HighlightManagerId(str, Enum):
    """CSS class family used for coloured highlight markup."""

    HIGHLIGHTR = "hltr"
    OMNIVORE = "omni"


@dataclass(frozen=True)
class HighlightPoint:
    left: float
    top: float


@dataclass(frozen=True)
class HighlightRenderOption:
    highlight_manager_id: HighlightManagerId
    highlight_color: str


def get_highlight_location(patch: str | None) -> int | None:
    """Offset of the first hunk of a diff patch, None if it cannot be decoded."""
    if not patch:
        return 0
    match = _PATCH_HEADER_RE.match(patch.split("\n", 1)[0])
    if not match:
        return None
    start, length = int(match.group(1)), match.group(2)
    # Hunk headers are 1-based except for empty ranges
    return start if length == "0" else max(start - 1, 0)


def get_highlight_point(patch: str | None) -> HighlightPoint | None:
    """(left, top) from a JSON bounding box patch, None if it is not JSON."""
    if not patch:
        return HighlightPoint(left=0, top=0)
    try:
        data = json.loads(patch)
    except ValueError:
        return None
    bbox = data.get("bbox") if isinstance(data, dict) else None
    if not isinstance(bbox, list) or len(bbox) != 4:
        return HighlightPoint(left=0, top=0)
    return HighlightPoint(left=bbox[0], top=bbox[1])


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def compare_highlights_in_file(a: Highlight, b: Highlight) -> int:
    """Top major, left minor. Undecodable patches count as the origin."""
    origin = HighlightPoint(left=0, top=0)
    point_a = get_highlight_point(a.patch) or origin
    point_b = get_highlight_point(b.patch) or origin
    if point_a.top == point_b.top:
        return _sign(point_a.left - point_b.left)
    return _sign(point_a.top - point_b.top)


def _compare_positions(a: Highlight, b: Highlight, page_type: PageType) -> int:
    if a.highlight_position_percent is not None and b.highlight_position_percent is not None:
        return _sign(a.highlight_position_percent - b.highlight_position_percent)
    if page_type == PageType.FILE:
        return compare_highlights_in_file(a, b)
    location_a = get_highlight_location(a.patch)
    location_b = get_highlight_location(b.patch)
    if location_a is None or location_b is None:
        logger.debug(f"Falling back to file comparison for highlights {a.id}, {b.id}")
        return compare_highlights_in_file(a, b)
    return _sign(location_a - location_b)


def compare_highlights(a: Highlight, b: Highlight, page_type: PageType) -> int:
    """Total order for location sorting; ties are broken by highlight id."""
    result = _compare_positions(a, b, page_type)
    if result:
        return result
    return (a.id > b.id) - (a.id < b.id)


def order_highlights(
    highlights: Iterable[Highlight],
    order: HighlightOrder | str,
    page_type: PageType,
) -> list[Highlight]:
    """Keep HIGHLIGHT entries only, sorted by location or left in fetch order."""
    result = [h for h in highlights if h.type == HighlightType.HIGHLIGHT]
    if HighlightOrder(order) == HighlightOrder.LOCATION:
        result.sort(key=cmp_to_key(lambda a, b: compare_highlights(a, b, page_type)))
    return result


def find_item_note(highlights: Iterable[Highlight]) -> str | None:
    """Annotation of the first NOTE entry, which is the item-level note."""
    for highlight in highlights:
        if highlight.type == HighlightType.NOTE:
            return highlight.annotation
    return None


def _wrap_highlight_markup(quote: str, option: HighlightRenderOption) -> str:
    manager = option.highlight_manager_id.value
    color = option.highlight_color

    def markup(content: str) -> str:
        if not content.strip():
            return ""
        if option.highlight_manager_id == HighlightManagerId.HIGHLIGHTR:
            return f'<mark class="{manager}-{color}">{content}</mark>'
        return f'<mark class="{manager} {manager}-{color}">{content}</mark>'

    return _MARKUP_LINE_RE.sub(lambda m: (m.group(1) or "") + markup(m.group(2)), quote)


def format_highlight_quote(
    quote: str | None,
    template: str,
    render_option: HighlightRenderOption | None = None,
) -> str:
    """Prepare a highlight quote for insertion into the item template.

    When the template renders highlights as blockquotes, every line of a
    multi-line quote gets the ``> `` prefix so paragraphs stay quoted.
    """
    if not quote:
        return ""
    if _HIGHLIGHTS_BLOCKQUOTE_RE.search(template):
        quote = quote.replace("&gt;", ">").replace("\n", "\n> ")
    if render_option is not None:
        quote = _wrap_highlight_markup(quote, render_option)
    return quote
