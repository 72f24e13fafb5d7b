"""Loader for spine documents and chapter sources written in an AsciiDoc subset."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..errors import Diagnostics, MissingChapterWarning, UnresolvedReferenceWarning
from ..ids import DEFAULT_PREFIX, DEFAULT_SEPARATOR, slugify
from ..text.normalize import to_plain_text
from . import (
    BibRef,
    BlockImage,
    Chapter,
    Footnote,
    FootnoteRef,
    Heading,
    Inline,
    InlineAnchor,
    InlineImage,
    LinkNode,
    Listing,
    Paragraph,
    Symbol,
    Text,
    XrefNode,
)

LOGGER = logging.getLogger(__name__)

DOC_TITLE_RX = re.compile(r"^=\s+(\S.*)$")
SECTION_RX = re.compile(r"^(={2,6})\s+(\S.*)$")
ATTRIBUTE_RX = re.compile(r"^:([\w][\w-]*)(!)?:(?:\s+(.*))?$")
INCLUDE_RX = re.compile(r"^include::(.+?)\[.*\]$")
BLOCK_ANCHOR_RX = re.compile(r"^\[\[([^\[\],]+)(?:,\s*(.+?))?\]\]$")
BLOCK_IMAGE_RX = re.compile(r"^image::([^\[]+)\[(.*)\]$")
BLOCK_TITLE_RX = re.compile(r"^\.([^\s.].*)$")
LISTING_DELIMITER = "----"
INLINE_RX = re.compile(
    r"<<(?P<xref>[^>,]+?)(?:,\s*(?P<xreftext>[^>]+))?>>"
    r"|\[\[\[(?P<bib>[^\],]+)(?:,\s*(?P<biblabel>[^\]]+))?\]\]\]"
    r"|\[\[(?P<anchor>[^\],\[]+)(?:,\s*(?P<anchortext>[^\]]+))?\]\]"
    r"|footnote:(?P<fnname>[\w-]*)\[(?P<fntext>[^\]]*)\]"
    r"|image:(?P<image>[^\s\[:][^\s\[]*)\[(?P<imagealt>[^\]]*)\]"
    r"|(?P<url>https?://[^\s\[]+)(?:\[(?P<urltext>[^\]]*)\])?"
)


@dataclass
class SpineDocument:
    """The book-level document that lists chapters in reading order."""

    path: Path
    title: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    chapter_paths: List[Path] = field(default_factory=list)

    @property
    def base_dir(self) -> Path:
        return self.path.parent


@dataclass
class _ChapterState:
    chapter: Chapter
    pending_anchor: Optional[Tuple[str, Optional[str]]] = None
    pending_title: Optional[str] = None
    paragraph: List[str] = field(default_factory=list)
    named_notes: Dict[str, int] = field(default_factory=dict)
    in_header: bool = True


class AsciidocLoader:
    """Parse spine and chapter sources into :class:`~epub_binder.ingest.Chapter` trees."""

    def __init__(
        self,
        *,
        id_prefix: Optional[str] = None,
        id_separator: Optional[str] = None,
        diagnostics: Optional[Diagnostics] = None,
    ) -> None:
        self.id_prefix = DEFAULT_PREFIX if id_prefix is None else id_prefix
        self.id_separator = DEFAULT_SEPARATOR if id_separator is None else id_separator
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    # Spine -----------------------------------------------------------------------
    def load_spine(self, path: Path | str) -> SpineDocument:
        path = Path(path)
        document = SpineDocument(path=path)
        for line in self._read_lines(path):
            stripped = line.strip()
            title = DOC_TITLE_RX.match(stripped)
            attribute = ATTRIBUTE_RX.match(stripped)
            include = INCLUDE_RX.match(stripped)
            if document.title is None and title:
                document.title = title.group(1).strip()
            elif attribute:
                name, unset, value = attribute.groups()
                if unset:
                    document.attributes.pop(name, None)
                else:
                    document.attributes[name] = (value or "").strip()
            elif include:
                chapter_path = document.base_dir / include.group(1).strip()
                if not chapter_path.exists():
                    self.diagnostics.error(
                        MissingChapterWarning,
                        f"include file not found: {chapter_path}",
                        chapter=path.name,
                    )
                    continue
                document.chapter_paths.append(chapter_path)
        LOGGER.debug("Spine %s lists %d chapters", path, len(document.chapter_paths))
        return document

    # Chapters --------------------------------------------------------------------
    def load_chapter(self, path: Path | str) -> Chapter:
        path = Path(path)
        state = _ChapterState(chapter=Chapter(docname=path.stem, source_path=path))
        lines = iter(self._read_lines(path))
        for line in lines:
            self._consume(line.rstrip(), lines, state)
        self._flush_paragraph(state)
        chapter = state.chapter
        LOGGER.debug(
            "Parsed %s: %d blocks, %d symbols, %d footnotes",
            chapter.docname,
            len(chapter.blocks),
            len(chapter.local_symbols),
            len(chapter.footnotes),
        )
        return chapter

    def _consume(self, line: str, lines: Iterator[str], state: _ChapterState) -> None:
        chapter = state.chapter
        stripped = line.strip()
        if not stripped:
            self._flush_paragraph(state)
            return
        if stripped.startswith("//") and not stripped.startswith("///"):
            return
        if state.paragraph:
            state.paragraph.append(stripped)
            return

        title = DOC_TITLE_RX.match(stripped)
        if state.in_header and title:
            chapter.title = title.group(1).strip()
            chapter.has_explicit_header = True
            if state.pending_anchor:
                chapter.explicit_id = state.pending_anchor[0]
                chapter.reftext = chapter.reftext or state.pending_anchor[1]
                state.pending_anchor = None
            return
        attribute = ATTRIBUTE_RX.match(stripped)
        if attribute:
            name, unset, value = attribute.groups()
            if state.in_header and name == "reftext" and not unset:
                chapter.reftext = (value or "").strip() or None
            return
        anchor = BLOCK_ANCHOR_RX.match(stripped)
        if anchor:
            state.pending_anchor = (anchor.group(1).strip(), anchor.group(2))
            return
        block_title = BLOCK_TITLE_RX.match(stripped)
        if block_title:
            state.pending_title = block_title.group(1).strip()
            return

        state.in_header = False
        section = SECTION_RX.match(stripped)
        image = BLOCK_IMAGE_RX.match(stripped)
        if section:
            self._add_section(state, len(section.group(1)) - 1, section.group(2).strip())
        elif image:
            self._add_image(state, image.group(1).strip(), image.group(2))
        elif stripped == LISTING_DELIMITER:
            body = []
            for inner in lines:
                if inner.rstrip() == LISTING_DELIMITER:
                    break
                body.append(inner.rstrip("\n"))
            block_id = self._take_anchor(state, default_text=state.pending_title)
            chapter.blocks.append(Listing(text="\n".join(body), id=block_id))
            state.pending_title = None
        else:
            state.paragraph.append(stripped)

    def _add_section(self, state: _ChapterState, level: int, title: str) -> None:
        chapter = state.chapter
        if state.pending_anchor:
            section_id, reftext = state.pending_anchor
            state.pending_anchor = None
        else:
            section_id = self._unique_section_id(chapter, title)
            reftext = None
        chapter.local_symbols[section_id] = Symbol(
            name=section_id,
            text=reftext or to_plain_text(title),
            anchor=section_id,
        )
        if chapter.first_section_id is None:
            chapter.first_section_id = section_id
        chapter.blocks.append(Heading(level=level, id=section_id, title=title))

    def _unique_section_id(self, chapter: Chapter, title: str) -> str:
        base = slugify(title, self.id_prefix, self.id_separator) or f"{self.id_prefix}section"
        candidate, suffix = base, 2
        while candidate in chapter.local_symbols:
            candidate = f"{base}{self.id_separator[:1]}{suffix}"
            suffix += 1
        return candidate

    def _add_image(self, state: _ChapterState, target: str, attrlist: str) -> None:
        attrs = [part.strip() for part in attrlist.split(",")] if attrlist.strip() else []
        alt = attrs[0] if attrs and attrs[0] else None
        width = attrs[1] if len(attrs) > 1 and attrs[1] else None
        caption = state.pending_title
        block_id = self._take_anchor(state, default_text=caption)
        state.chapter.blocks.append(
            BlockImage(target=target, alt=alt, width=width, id=block_id, caption=caption)
        )
        state.pending_title = None

    def _take_anchor(self, state: _ChapterState, default_text: Optional[str] = None) -> Optional[str]:
        if not state.pending_anchor:
            return None
        block_id, reftext = state.pending_anchor
        state.pending_anchor = None
        state.chapter.local_symbols[block_id] = Symbol(
            name=block_id,
            text=reftext or default_text,
            anchor=block_id,
        )
        return block_id

    def _flush_paragraph(self, state: _ChapterState) -> None:
        if not state.paragraph:
            return
        inlines: List[Inline] = []
        anchor_id = self._take_anchor(state)
        if anchor_id:
            inlines.append(InlineAnchor(anchor_id))
        inlines.extend(self._parse_inlines(" ".join(state.paragraph), state))
        state.chapter.blocks.append(Paragraph(inlines=inlines))
        state.paragraph = []
        state.pending_title = None
        state.in_header = False

    def _parse_inlines(self, text: str, state: _ChapterState) -> List[Inline]:
        chapter = state.chapter
        nodes: List[Inline] = []
        position = 0
        for match in INLINE_RX.finditer(text):
            if match.start() > position:
                nodes.append(Text(text[position:match.start()]))
            position = match.end()
            groups = match.groupdict()
            if groups["xref"] is not None:
                nodes.append(XrefNode(target=groups["xref"].strip(), text=groups["xreftext"]))
            elif groups["bib"] is not None:
                bib_id = groups["bib"].strip()
                label = (groups["biblabel"] or bib_id).strip()
                chapter.ids[bib_id] = f"[{label}]"
                nodes.append(BibRef(id=bib_id, label=label))
            elif groups["anchor"] is not None:
                anchor_id = groups["anchor"].strip()
                reftext = groups["anchortext"]
                chapter.local_symbols[anchor_id] = Symbol(name=anchor_id, text=reftext, anchor=anchor_id)
                if reftext:
                    chapter.ids[anchor_id] = reftext
                nodes.append(InlineAnchor(id=anchor_id, reftext=reftext))
            elif groups["fntext"] is not None:
                nodes.append(self._footnote(groups["fnname"] or None, groups["fntext"].strip(), state))
            elif groups["image"] is not None:
                nodes.append(InlineImage(target=groups["image"], alt=groups["imagealt"] or None))
            elif groups["url"] is not None:
                nodes.append(LinkNode(url=groups["url"], text=groups["urltext"] or None))
        if position < len(text):
            nodes.append(Text(text[position:]))
        return nodes

    def _footnote(self, name: Optional[str], text: str, state: _ChapterState) -> FootnoteRef:
        chapter = state.chapter
        if text:
            index = len(chapter.footnotes) + 1
            chapter.footnotes.append(Footnote(index=index, text=text))
            if name:
                state.named_notes[name] = index
            return FootnoteRef(index=index, name=name)
        if name and name in state.named_notes:
            return FootnoteRef(index=state.named_notes[name], name=name)
        self.diagnostics.warn(
            UnresolvedReferenceWarning,
            f"invalid footnote reference: {name or '(unnamed)'}",
            chapter=chapter.docname,
        )
        return FootnoteRef(index=None, name=name)

    def _read_lines(self, path: Path) -> List[str]:
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except UnicodeDecodeError:
            LOGGER.warning("Failed to decode %s as UTF-8; attempting latin-1", path)
            return path.read_text(encoding="latin-1").splitlines()


__all__ = ["AsciidocLoader", "SpineDocument"]
