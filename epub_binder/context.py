"""Per-build state shared by the linking and packaging phases."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, TYPE_CHECKING

from .assets import AssetRegistry
from .errors import Diagnostics
from .ingest import Chapter
from .xref import CrossReferenceResolver, SeenAnchors, find_chapter

if TYPE_CHECKING:  # pragma: no cover
    from .packager import PackagingConfig


class Spine(Sequence[Chapter]):
    """Immutable reading order of the book."""

    def __init__(self, chapters: Iterable[Chapter] = ()) -> None:
        self._chapters = tuple(chapters)

    def __getitem__(self, index):
        return self._chapters[index]

    def __len__(self) -> int:
        return len(self._chapters)

    def __iter__(self) -> Iterator[Chapter]:
        return iter(self._chapters)

    def find(self, ref: str) -> Optional[Chapter]:
        return find_chapter(self._chapters, ref)

    def ids(self) -> List[str]:
        return [chapter.id or chapter.docname for chapter in self._chapters]


@dataclass
class BuildContext:
    """Everything one build threads through its phases.

    A fresh context is created for every build; nothing here outlives it.
    """

    spine: Spine
    config: Optional["PackagingConfig"] = None
    base_dir: Path = field(default_factory=Path.cwd)
    metadata: dict = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    assets: AssetRegistry = field(default_factory=AssetRegistry)
    seen_anchors: SeenAnchors = field(default_factory=SeenAnchors)
    _resolver: Optional[CrossReferenceResolver] = field(default=None, init=False, repr=False)

    @property
    def resolver(self) -> CrossReferenceResolver:
        if self._resolver is None:
            self._resolver = CrossReferenceResolver(self.seen_anchors, self.diagnostics)
        return self._resolver


__all__ = ["BuildContext", "Spine"]
