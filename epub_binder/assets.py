"""Accumulator for the images and resources referenced by rendered chapters."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from pathlib import Path
from typing import Iterable, Iterator, List

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetEntry:
    """A resource as referenced from markup and where it lives on disk."""

    logical_target: str
    physical_path: Path


class AssetRegistry:
    """Order-preserving list of asset registrations.

    The registry neither deduplicates nor checks that files exist; it records
    what the renderers asked for, in the order they asked for it.
    """

    def __init__(self) -> None:
        self._entries: List[AssetEntry] = []
        self._lock = threading.Lock()
        self._frozen = False

    def register(self, logical_target: str, physical_path: Path | str) -> AssetEntry:
        entry = AssetEntry(logical_target=logical_target, physical_path=Path(physical_path))
        self._append([entry])
        return entry

    def extend(self, entries: Iterable[AssetEntry]) -> None:
        """Append a per-chapter buffer in one step."""

        self._append(list(entries))

    def _append(self, entries: List[AssetEntry]) -> None:
        with self._lock:
            if self._frozen:
                raise RuntimeError("Asset registry is read-only once packaging starts")
            self._entries.extend(entries)

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def entries(self) -> List[AssetEntry]:
        with self._lock:
            return list(self._entries)

    def unique(self) -> Iterator[AssetEntry]:
        """Yield entries by logical target, first registration wins."""

        seen = set()
        for entry in self.entries():
            if entry.logical_target in seen:
                LOGGER.debug("Skipping repeated asset registration for %s", entry.logical_target)
                continue
            seen.add(entry.logical_target)
            yield entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["AssetEntry", "AssetRegistry"]
