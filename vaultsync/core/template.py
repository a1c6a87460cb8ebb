"""Mustache rendering of items into markdown notes.

Templates see a plain ``ItemView`` plus a fixed registry of transforms
(``lowerCase``, ``upperCase``, ``upperCaseFirst``, ``formatDate``). The
registry is handed to the engine as a separate lookup scope.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import urlparse

import chevron
import yaml
from chevron.tokenizer import tokenize

from vaultsync.core.dates import InvalidDateError, format_date
from vaultsync.core.errors import TemplateError
from vaultsync.core.frontmatter import FRONT_MATTER_RE, FrontMatter
from vaultsync.core.highlights import (
    HighlightManagerId,
    HighlightRenderOption,
    find_item_note,
    format_highlight_quote,
    order_highlights,
)
from vaultsync.core.paths import (
    replace_illegal_chars_file,
    replace_illegal_chars_folder,
    truncate_name,
)
from vaultsync.providers.content_types import Item, Label

if TYPE_CHECKING:
    from vaultsync.core.settings import SyncSettings

logger = logging.getLogger(__name__)

WEB_BASE_URL = "https://omnivore.app"
UNKNOWN_AUTHOR = "unknown"
WORDS_PER_MINUTE = 235
ERROR_MARKER_KEY = "vaultsync_error"

DEFAULT_TEMPLATE = """# {{{title}}}
#Omnivore

[Read on Omnivore]({{{omnivoreUrl}}})
[Read Original]({{{originalUrl}}})

{{#highlights.length}}
## Highlights

{{#highlights}}
> {{{text}}} [⤴️]({{{highlightUrl}}}) {{#labels}} #{{name}} {{/labels}}
{{#note}}

{{{note}}}
{{/note}}

{{/highlights}}
{{/highlights.length}}"""

FRONT_MATTER_VARIABLES = (
    "title",
    "author",
    "tags",
    "date_saved",
    "date_published",
    "omnivore_url",
    "site_name",
    "original_url",
    "description",
    "note",
    "type",
    "date_read",
    "words_count",
    "read_length",
    "state",
    "date_archived",
    "image",
    "updated_at",
)


class ItemState(str, Enum):
    INBOX = "INBOX"
    READING = "READING"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


def get_item_state(item: Item) -> ItemState:
    """Lifecycle state. Archived wins over reading progress."""
    if item.is_archived:
        return ItemState.ARCHIVED
    if item.reading_progress_percent == 100:
        return ItemState.COMPLETED
    if item.reading_progress_percent > 0:
        return ItemState.READING
    return ItemState.INBOX


class SectionList(list):
    """List that also answers ``.length`` so ``{{#highlights.length}}`` works."""

    @property
    def length(self) -> int:
        return len(self)


@dataclass
class LabelView:
    name: str


@dataclass
class HighlightView:
    text: str
    highlightUrl: str
    highlightId: str
    dateHighlighted: str | None
    note: str | None
    labels: SectionList
    color: str | None
    positionPercent: float | None
    positionAnchorIndex: int | None


@dataclass
class ItemView:
    id: str
    title: str
    omnivoreUrl: str
    siteName: str
    originalUrl: str | None
    author: str
    labels: SectionList
    dateSaved: str
    highlights: SectionList
    content: str | None = None
    datePublished: str | None = None
    fileAttachment: str | None = None
    description: str | None = None
    note: str | None = None
    type: str = "ARTICLE"
    dateRead: str | None = None
    wordsCount: int | None = None
    readLength: int | None = None
    state: str = ItemState.INBOX.value
    dateArchived: str | None = None
    image: str | None = None
    updatedAt: str | None = None


@dataclass
class RenderedRecord:
    """Front matter plus markdown body for one item."""

    item_id: str
    front_matter: FrontMatter
    body: str

    def __post_init__(self) -> None:
        entries = self.front_matter.entries
        if not entries or any("id" not in entry for entry in entries):
            raise TemplateError(f"Rendered front matter for {self.item_id} has no id")

    @property
    def content(self) -> str:
        return f"{self.front_matter.serialize()}\n\n{self.body}"


# --- Template functions ---

Render = Callable[[str], str]


def _lower_case(text: str, render: Render) -> str:
    return render(text).lower()


def _upper_case(text: str, render: Render) -> str:
    return render(text).upper()


def _upper_case_first(text: str, render: Render) -> str:
    rendered = render(text)
    return rendered[:1].upper() + rendered[1:].lower()


def _format_date(text: str, render: Render) -> str:
    # {{#formatDate}}{{{dateSaved}}},yyyy-MM-dd{{/formatDate}}
    date_variable, _, pattern = text.partition(",")
    date = render(date_variable)
    if not date:
        return ""
    try:
        return format_date(date, pattern)
    except InvalidDateError:
        logger.warning(f"formatDate could not parse {date!r}")
        return date


TEMPLATE_FUNCTIONS: dict[str, Callable[[str, Render], str]] = {
    "lowerCase": _lower_case,
    "upperCase": _upper_case,
    "upperCaseFirst": _upper_case_first,
    "formatDate": _format_date,
}


def render_template(template: str, view: Any) -> str:
    """Render ``template`` with ``view`` first, then the function registry."""
    return chevron.render(template, view, scopes=[view, TEMPLATE_FUNCTIONS])


def template_variables(template: str) -> set[str]:
    """Top-level names a template references.

    Raises:
        TemplateError: if the template does not tokenize.
    """
    names: set[str] = set()
    try:
        for tag, key in tokenize(template):
            if tag in ("variable", "no escape", "section", "inverted section"):
                names.add(key.split(".")[0])
    except chevron.ChevronError as e:
        raise TemplateError(f"Invalid template: {e}") from e
    return names


# --- Views ---


def site_name_from_url(url: str | None) -> str:
    if not url:
        return ""
    try:
        hostname = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return hostname[4:] if hostname.startswith("www.") else hostname


def render_labels(labels: tuple[Label, ...]) -> SectionList:
    # Tags may not contain whitespace in the vault
    return SectionList(LabelView(name=label.name.replace(" ", "_")) for label in labels)


def _format_optional(value: str | None, pattern: str) -> str | None:
    return format_date(value, pattern) if value else None


def build_item_view(
    item: Item,
    settings: SyncSettings,
    file_attachment: str | None = None,
) -> ItemView:
    highlights = SectionList()
    for highlight in order_highlights(item.highlights, settings.highlight_order, item.page_type):
        render_option = None
        if settings.enable_highlight_color_render:
            render_option = HighlightRenderOption(
                highlight_manager_id=HighlightManagerId(settings.highlight_manager_id),
                highlight_color=highlight.color or "yellow",
            )
        highlights.append(
            HighlightView(
                text=format_highlight_quote(highlight.quote, settings.template, render_option),
                highlightUrl=f"{WEB_BASE_URL}/me/{item.slug}#{highlight.id}",
                highlightId=highlight.id,
                dateHighlighted=_format_optional(highlight.updated_at, settings.date_highlighted_format),
                note=highlight.annotation,
                labels=render_labels(highlight.labels),
                color=highlight.color,
                positionPercent=highlight.highlight_position_percent,
                positionAnchorIndex=highlight.highlight_position_anchor_index,
            )
        )

    words_count = item.words_count
    return ItemView(
        id=item.id,
        title=item.title,
        omnivoreUrl=f"{WEB_BASE_URL}/me/{item.slug}",
        siteName=item.site_name or site_name_from_url(item.original_url),
        originalUrl=item.original_url,
        author=item.author or UNKNOWN_AUTHOR,
        labels=render_labels(item.labels),
        dateSaved=format_date(item.saved_at, settings.date_saved_format),
        highlights=highlights,
        content=item.content,
        datePublished=_format_optional(item.published_at, settings.date_saved_format),
        fileAttachment=file_attachment,
        description=item.description,
        note=find_item_note(item.highlights),
        type=item.page_type.value,
        dateRead=_format_optional(item.read_at, settings.date_saved_format),
        wordsCount=words_count,
        readLength=round(max(1, words_count / WORDS_PER_MINUTE)) if words_count else None,
        state=get_item_state(item).value,
        dateArchived=_format_optional(item.archived_at, settings.date_saved_format),
        image=item.image,
        updatedAt=_format_optional(item.updated_at, settings.date_saved_format),
    )


def _snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _front_matter_from_variables(view: ItemView, variables: list[str]) -> dict[str, Any]:
    front_matter: dict[str, Any] = {}
    for item in variables:
        variable, _, alias = item.partition("::")
        key = alias or variable
        if variable == "tags":
            if view.labels:
                front_matter[key] = [label.name for label in view.labels]
            continue
        # omnivore_url -> omnivoreUrl
        value = getattr(view, _snake_to_camel(variable), None)
        if value:
            front_matter[key] = value
    return front_matter


def _front_matter_from_template(view: ItemView, template: str) -> dict[str, Any]:
    rendered = render_template(template, view)
    try:
        parsed = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        logger.error(f"Error parsing front matter template: {e}")
        return {ERROR_MARKER_KEY: "There was an error parsing the front matter template."}
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        return {ERROR_MARKER_KEY: "The front matter template must render a YAML mapping."}
    return parsed


def _parse_template_front_matter(block: str) -> Any | None:
    try:
        parsed = yaml.safe_load(block)
    except yaml.YAMLError as e:
        logger.error(f"Error parsing the template's front matter: {e}")
        return {ERROR_MARKER_KEY: "There was an error parsing the template's front matter."}
    if parsed is not None and not isinstance(parsed, dict):
        raise TemplateError("The template's front matter must be a YAML mapping")
    return parsed


def render_item_content(
    item: Item,
    settings: SyncSettings,
    file_attachment: str | None = None,
) -> RenderedRecord:
    """Render one item into a note.

    Front matter comes from the template's own leading block if it has one,
    else from the front matter template, else from the configured variables.
    ``id`` is always present and always first.

    Raises:
        TemplateError: if the template's own front matter is not a mapping.
        InvalidDateError: if one of the item's dates is malformed.
    """
    view = build_item_view(item, settings, file_attachment)
    rendered = render_template(settings.template, view)
    template_front_matter = None
    body = rendered
    match = FRONT_MATTER_RE.match(rendered)
    if match:
        body = rendered[match.end():]
        template_front_matter = _parse_template_front_matter(match.group(1))

    if template_front_matter is not None:
        base = template_front_matter
    elif settings.front_matter_template:
        base = _front_matter_from_template(view, settings.front_matter_template)
    else:
        base = _front_matter_from_variables(view, settings.front_matter_variables)

    entry = {"id": item.id, **{k: v for k, v in base.items() if k != "id"}}

    if settings.is_single_file:
        section_start = f"%%{item.id}_start%%"
        section_end = f"%%{item.id}_end%%"
        return RenderedRecord(
            item_id=item.id,
            front_matter=FrontMatter.sequence([entry]),
            body=f"{section_start}\n{body}\n{section_end}",
        )
    return RenderedRecord(item_id=item.id, front_matter=FrontMatter.single(entry), body=body)


# --- Paths ---


def _path_view(item: Item, date_format: str) -> dict[str, Any]:
    date_saved = format_date(item.saved_at, date_format)
    return {
        "id": item.id,
        "title": item.title,
        "slug": item.slug,
        "url": item.url,
        "originalUrl": item.original_url,
        "siteName": item.site_name or site_name_from_url(item.original_url),
        "author": item.author,
        "pageType": item.page_type.value,
        "type": item.page_type.value,
        "savedAt": item.saved_at,
        "publishedAt": item.published_at,
        "updatedAt": item.updated_at,
        "date": date_saved,
        "dateSaved": date_saved,
        "datePublished": _format_optional(item.published_at, date_format),
    }


def _render_path(item: Item, pattern: str, date_format: str) -> str:
    return truncate_name(render_template(pattern, _path_view(item, date_format)).strip())


def render_filename(item: Item, pattern: str, date_format: str) -> str:
    """File name (without extension) for an item, sanitized."""
    return replace_illegal_chars_file(_render_path(item, pattern, date_format))


def render_folder_name(item: Item, pattern: str, date_format: str) -> str:
    """Folder path for an item; "/" separators survive."""
    return replace_illegal_chars_folder(_render_path(item, pattern, date_format))


def render_attachment_folder(item: Item, pattern: str, date_format: str) -> str:
    return render_folder_name(item, pattern, date_format)
