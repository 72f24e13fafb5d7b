"""Chapter identifier generation.

Every chapter becomes its own XHTML document inside the container, so each one
needs an identifier that is stable across rebuilds, safe to use as an XML id and
as a file name, and unique across the book.
"""

from __future__ import annotations

import itertools
import logging
import re
from typing import Dict, Iterable, List, Optional, Union

from .errors import Diagnostics, DuplicateIdentifierWarning, ReservedIdentifierWarning
from .ingest import Chapter, Symbol
from .text.normalize import RIGHT_SINGLE_QUOTE, decode_char_refs, sanitize_title, to_plain_text

LOGGER = logging.getLogger(__name__)

DEFAULT_PREFIX = "_"
DEFAULT_SEPARATOR = "_"
RESERVED_IDS = frozenset({"cover", "nav", "ncx"})

INVALID_ID_CHARS_RX = re.compile(r"[^\w]+")
LEADING_DIGIT_RX = re.compile(r"^\d")


def slugify(title: str, prefix: str = DEFAULT_PREFIX, separator: str = DEFAULT_SEPARATOR) -> Optional[str]:
    """Derive an identifier from *title*, or ``None`` if nothing usable is left."""

    sep = separator[:1]
    value = sanitize_title(title)

    def replace(match: re.Match[str]) -> str:
        name, decimal, hexadecimal = match.groups()
        if name:
            return "and" if name == "amp" else sep
        code = int(decimal) if decimal else int(hexadecimal, 16)
        return "" if code == RIGHT_SINGLE_QUOTE else chr(code)

    value = decode_char_refs(value, replace)
    value = INVALID_ID_CHARS_RX.sub(sep, value.lower())
    if not value:
        return None
    if sep:
        value = re.sub(f"{re.escape(sep)}{{2,}}", sep, value)
        if value == sep:
            return None
        if value.startswith(sep):
            value = value[1:]
        if value.endswith(sep):
            value = value[:-1]
    if prefix:
        if not value.startswith(prefix):
            value = f"{prefix}{value}"
    elif LEADING_DIGIT_RX.match(value):
        value = f"_{value}"
    return value


class IdentifierAssigner:
    """Assign chapter ids for one build.

    ``assign`` is deterministic for a given title, prefix and separator.
    ``assign_all`` additionally enforces uniqueness across the spine.
    """

    def __init__(
        self,
        prefix: Optional[str] = None,
        separator: Optional[str] = None,
        diagnostics: Optional[Diagnostics] = None,
    ) -> None:
        self.prefix = DEFAULT_PREFIX if prefix is None else prefix
        self.separator = DEFAULT_SEPARATOR if separator is None else separator[:1]
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self._anonymous = itertools.count(1)
        self._taken: Dict[str, str] = {}

    def assign(self, source: Union[Chapter, str]) -> str:
        chapter = source if isinstance(source, Chapter) else None
        label = chapter.docname if chapter else None
        synthetic = False
        if chapter is None:
            value = slugify(source or "", self.prefix, self.separator)
        elif chapter.explicit_id:
            value = chapter.explicit_id
        elif chapter.has_explicit_header:
            value = slugify(chapter.title or "", self.prefix, self.separator)
        else:
            value = chapter.first_section_id

        if not value:
            value = f"{self.prefix}document{self.separator}{next(self._anonymous)}"
            synthetic = True
            LOGGER.debug("Synthesized id %s for %s", value, label or "untitled chapter")

        if not synthetic and value in RESERVED_IDS:
            self.diagnostics.warn(
                ReservedIdentifierWarning,
                f"chapter uses a reserved ID: {value}",
                chapter=label,
            )
        return value

    def assign_all(self, chapters: Iterable[Chapter]) -> List[str]:
        """Assign ids in spine order and register each chapter's root symbol."""

        assigned = []
        for chapter in chapters:
            value = self._claim(self.assign(chapter), chapter)
            chapter.assign_id(value)
            text = chapter.reftext or (to_plain_text(chapter.title) if chapter.title else None)
            chapter.local_symbols.setdefault(value, Symbol(name=value, text=text, anchor=value))
            assigned.append(value)
        return assigned

    def _claim(self, value: str, chapter: Chapter) -> str:
        owner = self._taken.get(value)
        if owner is None:
            self._taken[value] = chapter.docname
            return value
        if chapter.explicit_id:
            self.diagnostics.error(
                DuplicateIdentifierWarning,
                f"explicit ID {value} is already used by {owner}",
                chapter=chapter.docname,
            )
            return value
        suffix = 2
        while f"{value}{self.separator}{suffix}" in self._taken:
            suffix += 1
        unique = f"{value}{self.separator}{suffix}"
        self.diagnostics.warn(
            DuplicateIdentifierWarning,
            f"ID {value} is already used by {owner}; using {unique}",
            chapter=chapter.docname,
        )
        self._taken[unique] = chapter.docname
        return unique


__all__ = ["DEFAULT_PREFIX", "DEFAULT_SEPARATOR", "IdentifierAssigner", "RESERVED_IDS", "slugify"]
