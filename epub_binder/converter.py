"""Shared build logic used by the CLI and by library callers.

A build runs in three phases. Phase 1 parses every chapter and fixes its id.
Phase 2 renders chapters (concurrently) and then links them in spine order.
Phase 3 hands the linked chapters and collected assets to the packager.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .context import BuildContext, Spine
from .errors import BinderWarning, Diagnostic, Diagnostics
from .ids import IdentifierAssigner
from .ingest import Chapter
from .ingest.asciidoc_loader import AsciidocLoader, SpineDocument
from .packager import (
    DEFAULT_TOOL_TIMEOUT,
    EPUB3,
    KF8,
    Artifact,
    ChapterDocument,
    CompressValue,
    PackagingConfig,
    PackagingPipeline,
    normalize_format,
)
from .render import ChapterLinker, render_chapter
from .text.normalize import to_plain_text

__all__ = [
    "ConversionOptions",
    "ConversionResult",
    "EbookConverter",
]

logger = logging.getLogger(__name__)


@dataclass
class ConversionOptions:
    """Options that control one build. ``None`` defers to the spine document."""

    input_path: Path
    output_path: Optional[Path] = None
    format: Optional[str] = None
    validate: Optional[bool] = None
    extract: Optional[bool] = None
    compress: CompressValue = None
    kindlegen_path: Optional[Path] = None
    epubcheck_path: Optional[Path] = None
    id_prefix: Optional[str] = None
    id_separator: Optional[str] = None
    workers: int = 4
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.format is not None:
            self.format = normalize_format(self.format)
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.tool_timeout <= 0:
            raise ValueError("tool_timeout must be positive")
        if self.id_separator is not None and len(self.id_separator) > 1:
            raise ValueError("id separator must be a single character")


@dataclass
class ConversionResult:
    """Outcome returned after a build."""

    artifact: Artifact
    chapters: List[Chapter]
    diagnostics: List[Diagnostic]
    elapsed_seconds: float

    @property
    def output_path(self) -> Path:
        return self.artifact.path


class EbookConverter:
    """High level orchestrator for spine document to e-book builds."""

    # Public API -----------------------------------------------------------------
    def convert(self, options: ConversionOptions) -> ConversionResult:
        start_time = time.perf_counter()
        logger.debug("Starting build with options: %s", options)

        input_path = options.input_path
        if not input_path.exists():
            raise FileNotFoundError(f"Input file does not exist: {input_path}")

        diagnostics = Diagnostics()
        loader = AsciidocLoader(diagnostics=diagnostics)
        spine_document = loader.load_spine(input_path)
        attributes = spine_document.attributes
        id_prefix = options.id_prefix if options.id_prefix is not None else attributes.get("idprefix")
        id_separator = options.id_separator if options.id_separator is not None else attributes.get("idseparator")
        loader = AsciidocLoader(id_prefix=id_prefix, id_separator=id_separator, diagnostics=diagnostics)
        config = self._packaging_config(options, spine_document, diagnostics)

        # Phase 1: parse and fix identifiers before anything reads them
        chapters = self._parse_chapters(loader, spine_document.chapter_paths, options.workers)
        assigner = IdentifierAssigner(id_prefix, id_separator, diagnostics)
        assigner.assign_all(chapters)
        context = BuildContext(
            spine=Spine(chapters),
            config=config,
            base_dir=spine_document.base_dir,
            metadata=dict(options.metadata),
            diagnostics=diagnostics,
        )
        logger.info("Prepared %d chapters", len(context.spine))

        # Phase 2: render concurrently, link serially in spine order
        documents = self._render(context, options.workers)

        # Phase 3
        pipeline = PackagingPipeline(config, diagnostics)
        artifact = pipeline.package(documents if spine_document.chapter_paths else None, context.assets)

        elapsed = time.perf_counter() - start_time
        logger.info("Finished build in %.2fs", elapsed)
        return ConversionResult(
            artifact=artifact,
            chapters=list(context.spine),
            diagnostics=list(diagnostics),
            elapsed_seconds=elapsed,
        )

    # Configuration ----------------------------------------------------------------
    def _packaging_config(
        self,
        options: ConversionOptions,
        spine_document: SpineDocument,
        diagnostics: Diagnostics,
    ) -> PackagingConfig:
        attributes = spine_document.attributes
        fmt = options.format
        if fmt is None:
            requested = attributes.get("ebook-format")
            try:
                fmt = normalize_format(requested)
            except ValueError:
                diagnostics.warn(
                    BinderWarning,
                    f"unknown ebook-format {requested!r}; falling back to {EPUB3}",
                    chapter=spine_document.path.name,
                )
                fmt = EPUB3

        output_path = options.output_path or options.input_path.with_suffix(
            ".mobi" if fmt == KF8 else ".epub"
        )
        metadata = options.metadata
        title = metadata.get("title") or spine_document.title or options.input_path.stem
        authors = metadata.get("author") or attributes.get("author") or ""
        kindlegen_path = options.kindlegen_path or attributes.get("ebook-kindlegen-path")
        epubcheck_path = options.epubcheck_path or attributes.get("ebook-epubcheck-path")

        return PackagingConfig(
            output_target=output_path,
            format=fmt,
            validate=options.validate if options.validate is not None else "ebook-validate" in attributes,
            extract=options.extract if options.extract is not None else "ebook-extract" in attributes,
            compress=options.compress if options.compress is not None else attributes.get("ebook-compress"),
            converter_tool_path=Path(kindlegen_path) if kindlegen_path else None,
            validator_tool_path=Path(epubcheck_path) if epubcheck_path else None,
            tool_timeout=options.tool_timeout,
            title=to_plain_text(title),
            language=metadata.get("lang") or attributes.get("lang") or "en",
            identifier=metadata.get("uuid") or attributes.get("uuid"),
            authors=tuple(name.strip() for name in authors.split(";") if name.strip()),
        )

    # Phases -----------------------------------------------------------------------
    def _parse_chapters(self, loader: AsciidocLoader, paths: Sequence[Path], workers: int) -> List[Chapter]:
        if not paths:
            return []
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(loader.load_chapter, paths))

    def _render(self, context: BuildContext, workers: int) -> List[ChapterDocument]:
        if not context.spine:
            return []
        base_dir = context.base_dir
        with ThreadPoolExecutor(max_workers=workers) as pool:
            rendered = list(pool.map(lambda chapter: render_chapter(chapter, base_dir), context.spine))

        linker = ChapterLinker(context.resolver, context.spine)
        documents = []
        for item in rendered:
            context.assets.extend(item.assets)
            documents.append(ChapterDocument(chapter=item.chapter, content=linker.link(item)))
            logger.debug("Linked chapter %s", item.chapter.id)
        return documents
