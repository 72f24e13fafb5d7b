"""Chapter document model produced by the loaders."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union


# Inline nodes ----------------------------------------------------------------
@dataclass
class Text:
    value: str


@dataclass
class XrefNode:
    """A cross reference as written by the author (``<<target,text>>``)."""

    target: str
    text: Optional[str] = None


@dataclass
class InlineAnchor:
    id: str
    reftext: Optional[str] = None


@dataclass
class BibRef:
    id: str
    label: Optional[str] = None


@dataclass
class FootnoteRef:
    """Reference to note *index*; ``None`` marks an unresolved named note."""

    index: Optional[int]
    name: Optional[str] = None


@dataclass
class InlineImage:
    target: str
    alt: Optional[str] = None


@dataclass
class LinkNode:
    url: str
    text: Optional[str] = None


Inline = Union[Text, XrefNode, InlineAnchor, BibRef, FootnoteRef, InlineImage, LinkNode]


# Block nodes -----------------------------------------------------------------
@dataclass
class Heading:
    level: int
    id: str
    title: str


@dataclass
class Paragraph:
    inlines: List[Inline] = field(default_factory=list)


@dataclass
class BlockImage:
    target: str
    alt: Optional[str] = None
    width: Optional[str] = None
    id: Optional[str] = None
    caption: Optional[str] = None


@dataclass
class Listing:
    text: str
    id: Optional[str] = None


Block = Union[Heading, Paragraph, BlockImage, Listing]


@dataclass
class Symbol:
    """A resolvable reference target inside one chapter."""

    name: str
    text: Optional[str]
    anchor: str


@dataclass
class Footnote:
    index: int
    text: str


@dataclass
class Chapter:
    """One independently parsed chapter (spine item)."""

    docname: str
    title: Optional[str] = None
    has_explicit_header: bool = False
    explicit_id: Optional[str] = None
    first_section_id: Optional[str] = None
    reftext: Optional[str] = None
    local_symbols: Dict[str, Symbol] = field(default_factory=dict)
    ids: Dict[str, str] = field(default_factory=dict)
    footnotes: List[Footnote] = field(default_factory=list)
    blocks: List[Block] = field(default_factory=list)
    source_path: Optional[Path] = None
    properties: List[str] = field(default_factory=list)
    id: Optional[str] = None

    def assign_id(self, value: str) -> str:
        if self.id is not None and self.id != value:
            raise ValueError(f"Chapter {self.docname} already has id {self.id!r}")
        self.id = value
        return value

    @property
    def file_name(self) -> str:
        return f"{self.id or self.docname}.xhtml"


__all__ = [
    "BibRef",
    "Block",
    "BlockImage",
    "Chapter",
    "Footnote",
    "FootnoteRef",
    "Heading",
    "Inline",
    "InlineAnchor",
    "InlineImage",
    "LinkNode",
    "Listing",
    "Paragraph",
    "Symbol",
    "Text",
    "XrefNode",
]
