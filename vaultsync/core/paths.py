"""Filesystem-safe names for rendered files and folders."""

from __future__ import annotations

import re
import unicodedata

REPLACEMENT_CHAR = "-"
MAX_NAME_LENGTH = 100

# <>:"/\|?* are reserved on Windows, / everywhere; plus control characters.
ILLEGAL_CHAR_REGEX_FILE = re.compile(r'[<>:"/\\|?*\u0000-\u001F]')
# Folder paths keep "/" so templated paths can span several segments.
ILLEGAL_CHAR_REGEX_FOLDER = re.compile(r'[<>:"\\|?*\u0000-\u001F]')

# Code points that render as nothing but are not format characters.
BLANK_CHARS = frozenset(
    "\u034f"  # combining grapheme joiner
    "\u115f\u1160\u3164\uffa0"  # hangul fillers
    "\u17b4\u17b5"  # khmer inherent vowels
    "\u2800"  # braille pattern blank
    "\U0001d159"  # musical symbol null notehead
)


def _is_invisible(char: str) -> bool:
    return char in BLANK_CHARS or unicodedata.category(char) == "Cf"


def remove_invisible_chars(text: str) -> str:
    """Strip zero-width and other invisible characters (no replacement)."""
    return "".join(c for c in text if not _is_invisible(c))


def replace_illegal_chars_file(text: str) -> str:
    """Make ``text`` usable as a single file name segment."""
    return remove_invisible_chars(ILLEGAL_CHAR_REGEX_FILE.sub(REPLACEMENT_CHAR, text))


def replace_illegal_chars_folder(text: str) -> str:
    """Make ``text`` usable as a (possibly nested) folder path."""
    return remove_invisible_chars(ILLEGAL_CHAR_REGEX_FOLDER.sub(REPLACEMENT_CHAR, text))


def truncate_name(text: str, limit: int = MAX_NAME_LENGTH) -> str:
    return text[:limit]


def normalize_path(path: str) -> str:
    """Canonicalise a vault-relative path.

    - Backslashes become forward slashes
    - Duplicate slashes collapse
    - Leading/trailing slashes and "." segments are dropped
    """
    path = path.replace("\\", "/")
    segments = [s for s in path.split("/") if s and s != "."]
    return "/".join(segments)
