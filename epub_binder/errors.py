"""Error taxonomy and the diagnostics channel shared by every build stage."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import List, Optional, Type

__all__ = [
    "EpubBinderError",
    "PackagingError",
    "ConversionToolError",
    "FilesystemError",
    "MissingSpineError",
    "ValidationFailure",
    "ExtractionError",
    "BinderWarning",
    "UnresolvedReferenceWarning",
    "ReservedIdentifierWarning",
    "DuplicateIdentifierWarning",
    "MissingAssetWarning",
    "MissingChapterWarning",
    "Diagnostic",
    "Diagnostics",
]

LOGGER = logging.getLogger(__name__)


class EpubBinderError(Exception):
    """Base class for errors raised by the binder."""


class PackagingError(EpubBinderError):
    """A packaging stage failed."""


class ConversionToolError(PackagingError):
    """The external converter could not produce the secondary format.

    The EPUB that was assembled before the conversion step is still available
    through :attr:`artifact`.
    """

    def __init__(
        self,
        message: str,
        *,
        tool: Optional[str] = None,
        returncode: Optional[int] = None,
        output: str = "",
        artifact=None,
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.returncode = returncode
        self.output = output
        self.artifact = artifact


class FilesystemError(PackagingError):
    """The primary artifact could not be written."""


class MissingSpineError(PackagingError):
    """No spine items were discovered; the book is built empty."""


class ValidationFailure(PackagingError):
    """The validator rejected (or could not check) the assembled container."""


class ExtractionError(PackagingError):
    """The debug copy of the container could not be extracted."""


class BinderWarning(UserWarning):
    """Base class for non-fatal conditions."""


class UnresolvedReferenceWarning(BinderWarning):
    pass


class ReservedIdentifierWarning(BinderWarning):
    pass


class DuplicateIdentifierWarning(BinderWarning):
    pass


class MissingAssetWarning(BinderWarning):
    pass


class MissingChapterWarning(BinderWarning):
    pass


@dataclass(frozen=True)
class Diagnostic:
    """A leveled message naming the offending chapter or identifier."""

    level: int
    category: Type[Exception]
    message: str
    chapter: Optional[str] = None

    @property
    def severity(self) -> str:
        return logging.getLevelName(self.level).lower()

    def __str__(self) -> str:
        prefix = f"{self.chapter}: " if self.chapter else ""
        return f"{prefix}{self.message}"


class Diagnostics:
    """Collect diagnostics for one build and mirror them to the log."""

    def __init__(self) -> None:
        self._items: List[Diagnostic] = []
        self._lock = threading.Lock()

    def report(
        self,
        category: Type[Exception],
        message: str,
        *,
        level: int = logging.WARNING,
        chapter: Optional[str] = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(level=level, category=category, message=message, chapter=chapter)
        with self._lock:
            self._items.append(diagnostic)
        LOGGER.log(level, "%s (%s)", diagnostic, category.__name__)
        return diagnostic

    def warn(self, category: Type[Exception], message: str, *, chapter: Optional[str] = None) -> Diagnostic:
        return self.report(category, message, level=logging.WARNING, chapter=chapter)

    def error(self, category: Type[Exception], message: str, *, chapter: Optional[str] = None) -> Diagnostic:
        return self.report(category, message, level=logging.ERROR, chapter=chapter)

    def of_category(self, category: Type[Exception]) -> List[Diagnostic]:
        with self._lock:
            return [item for item in self._items if issubclass(item.category, category)]

    def __iter__(self):
        with self._lock:
            return iter(list(self._items))

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
