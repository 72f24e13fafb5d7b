"""Render chapter node trees to XHTML and link references across chapters.

Rendering happens in two steps. ``render_chapter`` is chapter-local and may run
in worker threads: it turns blocks into markup segments, leaves every reference
as a pending token, and buffers the assets it meets. ``ChapterLinker`` then
walks the rendered chapters in spine order and resolves the pending tokens,
which is the only step that touches the shared anchor state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import singledispatchmethod
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .assets import AssetEntry
from .ingest import (
    BibRef,
    BlockImage,
    Chapter,
    FootnoteRef,
    Heading,
    InlineAnchor,
    InlineImage,
    LinkNode,
    Listing,
    Paragraph,
    Text,
    XrefNode,
)
from .text.normalize import escape_attribute, escape_text, to_plain_text
from .xref import CrossReferenceResolver, ReferenceToken

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingXref:
    token: ReferenceToken


@dataclass(frozen=True)
class PendingNoteRef:
    index: int


@dataclass(frozen=True)
class PendingBibRef:
    id: str
    label: Optional[str] = None


Segment = Union[str, PendingXref, PendingNoteRef, PendingBibRef]


@dataclass
class RenderedChapter:
    """Chapter markup with references still unresolved."""

    chapter: Chapter
    segments: List[Segment] = field(default_factory=list)
    assets: List[AssetEntry] = field(default_factory=list)

    @property
    def pending(self) -> List[Segment]:
        return [segment for segment in self.segments if not isinstance(segment, str)]


def is_external(target: str) -> bool:
    return "://" in target or target.startswith("data:")


class ChapterRenderer:
    """Render a single chapter; one instance per chapter and thread."""

    def __init__(self, chapter: Chapter, base_dir: Optional[Path] = None) -> None:
        self.chapter = chapter
        self.base_dir = base_dir
        self.result = RenderedChapter(chapter=chapter)

    def render(self) -> RenderedChapter:
        chapter = self.chapter
        title = to_plain_text(chapter.title) if chapter.title else ""
        self.emit(
            f'<section class="chapter" epub:type="chapter" id="{escape_attribute(chapter.id or chapter.docname)}">\n'
        )
        if title:
            self.emit(
                '<header>\n<div class="chapter-header">\n'
                f'<h1 class="chapter-title">{escape_text(title)}</h1>\n'
                "</div>\n</header>\n"
            )
        for block in chapter.blocks:
            self.render_block(block)
        self._render_footnotes()
        self.emit("</section>\n")
        return self.result

    def emit(self, segment: Segment) -> None:
        self.result.segments.append(segment)

    # Blocks -------------------------------------------------------------------------
    @singledispatchmethod
    def render_block(self, block) -> None:
        LOGGER.warning("conversion missing for %s in %s", type(block).__name__, self.chapter.docname)

    @render_block.register(Heading)
    def _(self, block: Heading) -> None:
        level = min(block.level + 1, 6)
        self.emit(f'<h{level} id="{escape_attribute(block.id)}">{escape_text(to_plain_text(block.title))}</h{level}>\n')

    @render_block.register(Paragraph)
    def _(self, block: Paragraph) -> None:
        self.emit("<p>")
        for inline in block.inlines:
            self.render_inline(inline)
        self.emit("</p>\n")

    @render_block.register(BlockImage)
    def _(self, block: BlockImage) -> None:
        self.register_image(block.target)
        id_attr = f' id="{escape_attribute(block.id)}"' if block.id else ""
        img_attrs = ""
        if block.alt:
            img_attrs += f' alt="{escape_attribute(block.alt)}"'
        # readers scale by height alone, browsers do not; only width is kept
        if block.width:
            img_attrs += f' width="{escape_attribute(block.width)}"'
        caption = f"\n<figcaption>{escape_text(block.caption)}</figcaption>" if block.caption else ""
        self.emit(
            f'<figure{id_attr} class="image">\n<div class="content">\n'
            f'<img src="{escape_attribute(block.target)}"{img_attrs} />\n</div>{caption}\n</figure>\n'
        )

    @render_block.register(Listing)
    def _(self, block: Listing) -> None:
        id_attr = f' id="{escape_attribute(block.id)}"' if block.id else ""
        self.emit(f'<figure{id_attr} class="listing">\n<pre>{escape_text(block.text)}</pre>\n</figure>\n')

    # Inlines ------------------------------------------------------------------------
    @singledispatchmethod
    def render_inline(self, inline) -> None:
        LOGGER.warning("conversion missing for %s in %s", type(inline).__name__, self.chapter.docname)

    @render_inline.register(Text)
    def _(self, inline: Text) -> None:
        self.emit(escape_text(inline.value))

    @render_inline.register(XrefNode)
    def _(self, inline: XrefNode) -> None:
        self.emit(PendingXref(ReferenceToken.parse(inline.target, inline.text)))

    @render_inline.register(InlineAnchor)
    def _(self, inline: InlineAnchor) -> None:
        self.emit(f'<a id="{escape_attribute(inline.id)}"></a>')

    @render_inline.register(BibRef)
    def _(self, inline: BibRef) -> None:
        self.emit(PendingBibRef(inline.id, inline.label))

    @render_inline.register(FootnoteRef)
    def _(self, inline: FootnoteRef) -> None:
        if inline.index is None:
            self.emit(
                '<mark class="noteref" title="Unresolved note reference">'
                f"{escape_text(inline.name or '')}</mark>"
            )
        else:
            self.emit(PendingNoteRef(inline.index))

    @render_inline.register(InlineImage)
    def _(self, inline: InlineImage) -> None:
        self.register_image(inline.target)
        alt = f' alt="{escape_attribute(inline.alt)}"' if inline.alt else ""
        self.emit(f'<img src="{escape_attribute(inline.target)}" class="inline"{alt} />')

    @render_inline.register(LinkNode)
    def _(self, inline: LinkNode) -> None:
        text = inline.text or inline.url
        self.emit(f'<a href="{escape_attribute(inline.url)}" class="link">{escape_text(text)}</a>')

    # Helpers ------------------------------------------------------------------------
    def register_image(self, target: str) -> None:
        if is_external(target):
            LOGGER.debug("Not embedding remote image %s", target)
            return
        if target.lower().endswith(".svg") and "svg" not in self.chapter.properties:
            self.chapter.properties.append("svg")
        physical = None
        if self.chapter.source_path is not None:
            physical = self.chapter.source_path.parent / target
        # chapters are parsed standalone; fall back to the spine document's directory
        if (physical is None or not physical.exists()) and self.base_dir is not None:
            physical = self.base_dir / target
        if physical is None:
            physical = Path(target)
        self.result.assets.append(AssetEntry(logical_target=target, physical_path=physical))

    def _render_footnotes(self) -> None:
        if not self.chapter.footnotes:
            return
        self.emit('<footer>\n<div class="chapter-footer">\n<div class="footnotes">\n')
        for note in self.chapter.footnotes:
            self.emit(
                f'<aside id="note-{note.index}" epub:type="footnote">\n'
                f'<p><sup class="noteref"><a href="#noteref-{note.index}">{note.index}</a></sup> '
                f"{escape_text(note.text)}</p>\n</aside>\n"
            )
        self.emit("</div>\n</div>\n</footer>\n")


def render_chapter(chapter: Chapter, base_dir: Optional[Path] = None) -> RenderedChapter:
    return ChapterRenderer(chapter, base_dir).render()


class ChapterLinker:
    """Resolve pending references; drive it in spine order."""

    def __init__(self, resolver: CrossReferenceResolver, spine: Sequence[Chapter]) -> None:
        self.resolver = resolver
        self.spine = spine

    def link(self, rendered: RenderedChapter) -> str:
        parts = []
        for segment in rendered.segments:
            if isinstance(segment, str):
                parts.append(segment)
            elif isinstance(segment, PendingXref):
                parts.append(self._xref(segment, rendered.chapter))
            elif isinstance(segment, PendingNoteRef):
                parts.append(self._noteref(segment, rendered.chapter))
            elif isinstance(segment, PendingBibRef):
                parts.append(self._bibref(segment, rendered.chapter))
        return "".join(parts)

    def _xref(self, segment: PendingXref, chapter: Chapter) -> str:
        resolution = self.resolver.resolve(segment.token, chapter, self.spine)
        id_attr = f' id="{escape_attribute(resolution.anchor_id)}"' if resolution.anchor_id else ""
        return (
            f'<a{id_attr} href="{escape_attribute(resolution.href)}" class="xref">'
            f"{escape_text(resolution.text)}</a>"
        )

    def _noteref(self, segment: PendingNoteRef, chapter: Chapter) -> str:
        index = segment.index
        anchor_id = self.resolver.note_reference(chapter, index)
        id_attr = f' id="{anchor_id}"' if anchor_id else ""
        return (
            f'<sup class="noteref">[<a{id_attr} href="#note-{index}" epub:type="noteref">{index}</a>]</sup>'
        )

    def _bibref(self, segment: PendingBibRef, chapter: Chapter) -> str:
        target = escape_attribute(segment.id)
        label = escape_text(segment.label or segment.id)
        backlink = self.resolver.bibliography_backlink(chapter, segment.id)
        if backlink:
            return f'<a id="{target}" href="{escape_attribute(backlink)}">[{label}]</a>'
        return f'<a id="{target}"></a>[{label}]'


__all__ = [
    "ChapterLinker",
    "ChapterRenderer",
    "PendingBibRef",
    "PendingNoteRef",
    "PendingXref",
    "RenderedChapter",
    "render_chapter",
]
