"""Cross reference resolution across independently parsed chapters.

Each chapter is parsed on its own, so anchor ids emitted by references are only
unique per chapter at parse time. The resolver keeps one ordered set of the
targets that already received a real anchor id; it must be driven in spine
order so that "first occurrence" means the same thing on every build.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Iterator, NamedTuple, Optional, Sequence

from .errors import Diagnostics, UnresolvedReferenceWarning
from .ingest import Chapter

LOGGER = logging.getLogger(__name__)


class SeenAnchors:
    """Targets that already own a real anchor id, in insertion order."""

    def __init__(self) -> None:
        self._keys: Dict[str, None] = {}

    def add(self, key: str) -> bool:
        """Record *key*; return ``True`` only the first time it is seen."""

        if key in self._keys:
            return False
        self._keys[key] = None
        return True

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._keys))

    def __len__(self) -> int:
        return len(self._keys)


@dataclass(frozen=True)
class ReferenceToken:
    """A reference as written by the author, waiting to be resolved."""

    raw_target: str
    explicit_chapter_id: Optional[str] = None
    fragment_id: Optional[str] = None
    author_supplied_text: Optional[str] = None

    @classmethod
    def parse(cls, target: str, text: Optional[str] = None) -> "ReferenceToken":
        """Split ``chapter#fragment`` / ``chapter#`` targets from local ones."""

        if "#" not in target:
            return cls(raw_target=target, author_supplied_text=text)
        chapter_id, _, fragment = target.partition("#")
        if not chapter_id:
            return cls(raw_target=fragment, author_supplied_text=text)
        return cls(
            raw_target=target,
            explicit_chapter_id=chapter_id,
            fragment_id=fragment or None,
            author_supplied_text=text,
        )

    @property
    def is_inter_chapter(self) -> bool:
        return self.explicit_chapter_id is not None


class Resolution(NamedTuple):
    text: str
    href: str
    anchor_id: Optional[str]


def find_chapter(spine: Sequence[Chapter], ref: str) -> Optional[Chapter]:
    for chapter in spine:
        if ref == (chapter.id or chapter.docname):
            return chapter
    for chapter in spine:
        if ref == chapter.docname:
            return chapter
    return None


class CrossReferenceResolver:
    """Resolve reference tokens and hand out each anchor id at most once."""

    def __init__(
        self,
        seen: Optional[SeenAnchors] = None,
        diagnostics: Optional[Diagnostics] = None,
    ) -> None:
        self.seen = seen if seen is not None else SeenAnchors()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    def resolve(self, token: ReferenceToken, current: Chapter, spine: Sequence[Chapter]) -> Resolution:
        if token.is_inter_chapter:
            return self._resolve_inter_chapter(token, current, spine)
        return self._resolve_local(token, current)

    # Reference kinds --------------------------------------------------------------
    def _resolve_local(self, token: ReferenceToken, current: Chapter) -> Resolution:
        target = token.raw_target
        anchor_id = f"xref-{target}" if self.seen.add(self._local_key(current, target)) else None
        text = token.author_supplied_text
        symbol = current.local_symbols.get(target)
        href = f"#{symbol.anchor if symbol else target}"
        if symbol is not None:
            text = text or symbol.text or current.ids.get(target)
        elif target in current.ids:
            text = text or current.ids[target]
        else:
            self.diagnostics.warn(
                UnresolvedReferenceWarning,
                f"invalid reference to unknown local anchor (or valid bibref): {target}",
                chapter=current.docname,
            )
        return Resolution(text=text or f"[{target}]", href=href, anchor_id=anchor_id)

    def _resolve_inter_chapter(
        self,
        token: ReferenceToken,
        current: Chapter,
        spine: Sequence[Chapter],
    ) -> Resolution:
        chapter_ref = token.explicit_chapter_id or ""
        refdoc = find_chapter(spine, chapter_ref)
        doc_id = refdoc.id if refdoc is not None and refdoc.id else chapter_ref
        fragment = token.fragment_id
        roots = {chapter_ref, doc_id}
        if refdoc is not None:
            roots.add(refdoc.docname)
        to_root = fragment is None or fragment in roots

        file_name = refdoc.file_name if refdoc is not None else f"{chapter_ref}.xhtml"
        if to_root:
            key = f"{doc_id}#{doc_id}"
            href = file_name
            candidate = f"xref--{doc_id}"
            fragment = doc_id
        else:
            key = f"{doc_id}#{fragment}"
            href = f"{file_name}#{fragment}"
            candidate = f"xref--{doc_id}--{fragment}"
        anchor_id = candidate if self.seen.add(key) else None

        text = token.author_supplied_text
        if refdoc is None:
            self.diagnostics.warn(
                UnresolvedReferenceWarning,
                f"invalid reference to anchor in unknown chapter: {chapter_ref}",
                chapter=current.docname,
            )
            return Resolution(text=text or f"[{chapter_ref}]", href=href, anchor_id=anchor_id)

        symbol = refdoc.local_symbols.get(fragment)
        if symbol is not None:
            text = text or symbol.text
        elif fragment in refdoc.ids:
            text = text or refdoc.ids[fragment]
        else:
            self.diagnostics.warn(
                UnresolvedReferenceWarning,
                f"invalid reference to unknown anchor in {doc_id} chapter: {fragment}",
                chapter=current.docname,
            )
        return Resolution(text=text or f"[{fragment}]", href=href, anchor_id=anchor_id)

    def note_reference(self, current: Chapter, index: int) -> Optional[str]:
        """Anchor id for the back-reference to note *index*, first time only."""

        if self.seen.add(f"{current.id}#noteref-{index}"):
            return f"noteref-{index}"
        return None

    def bibliography_backlink(self, current: Chapter, target: str) -> Optional[str]:
        """Href back to the first reference citing *target* from *current*, if one exists."""

        return f"#xref-{target}" if self._local_key(current, target) in self.seen else None

    @staticmethod
    def _local_key(current: Chapter, target: str) -> str:
        return f"{current.id or current.docname}#{target}"


__all__ = [
    "CrossReferenceResolver",
    "ReferenceToken",
    "Resolution",
    "SeenAnchors",
    "find_chapter",
]
