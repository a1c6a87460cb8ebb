"""YAML front matter extraction and serialization.

A note rendered for one item carries a single mapping. In single-file mode
the aggregate note carries a sequence of mappings, one per item, each with
the item ``id``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

logger = logging.getLogger(__name__)

FRONT_MATTER_RE = re.compile(r"\A---\n(.*?)^---[ \t]*$\n*", re.DOTALL | re.MULTILINE)


class FrontMatterKind(str, Enum):
    SINGLE = "single"
    SEQUENCE = "sequence"


def parse_front_matter(content: str) -> Any | None:
    """Parse the leading front matter block, None if absent or malformed."""
    match = FRONT_MATTER_RE.match(content)
    if not match:
        return None
    try:
        return yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring malformed front matter: {e}")
        return None


def remove_front_matter(content: str) -> str:
    """Drop the leading front matter block and the blank lines after it."""
    return FRONT_MATTER_RE.sub("", content, count=1)


def extract(content: str) -> tuple[Any | None, str]:
    """Split a document into (front matter value, remaining markdown)."""
    return parse_front_matter(content), remove_front_matter(content)


def dump_yaml(value: Any) -> str:
    return yaml.safe_dump(
        value,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=4096,
    )


def serialize(value: Any) -> str:
    """Wrap a mapping or list of mappings in a ``---`` delimited block."""
    return f"---\n{dump_yaml(value)}---"


def find_front_matter_index(entries: list[dict[str, Any]], item_id: str) -> int:
    """Index of the entry whose id equals ``item_id``, or -1."""
    for index, entry in enumerate(entries):
        entry_id = entry.get("id") if isinstance(entry, dict) else None
        if entry_id is not None and str(entry_id) == item_id:
            return index
    return -1


@dataclass
class FrontMatter:
    """Front matter as either one mapping or an ordered list of mappings."""

    kind: FrontMatterKind
    entries: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def single(cls, entry: dict[str, Any]) -> FrontMatter:
        return cls(kind=FrontMatterKind.SINGLE, entries=[entry])

    @classmethod
    def sequence(cls, entries: list[dict[str, Any]]) -> FrontMatter:
        return cls(kind=FrontMatterKind.SEQUENCE, entries=list(entries))

    @classmethod
    def from_value(cls, value: Any, single_file: bool) -> FrontMatter | None:
        """Coerce a parsed YAML value into the variant the mode expects.

        Single-file mode always yields a sequence: a lone mapping is wrapped
        and a missing block becomes an empty sequence. Otherwise only a
        mapping is accepted.
        """
        if single_file:
            if value is None:
                return cls.sequence([])
            if isinstance(value, dict):
                return cls.sequence([value])
            if isinstance(value, list):
                return cls.sequence([e for e in value if isinstance(e, dict)])
            return None
        if isinstance(value, dict):
            return cls.single(value)
        return None

    @property
    def entry(self) -> dict[str, Any]:
        """The mapping of a SINGLE front matter (first entry of a sequence)."""
        return self.entries[0] if self.entries else {}

    @property
    def id(self) -> str | None:
        entry_id = self.entry.get("id")
        return str(entry_id) if entry_id is not None else None

    def index_of(self, item_id: str) -> int:
        return find_front_matter_index(self.entries, item_id)

    def to_value(self) -> Any:
        if self.kind == FrontMatterKind.SINGLE:
            return self.entry
        return self.entries

    def serialize(self) -> str:
        return serialize(self.to_value())
