"""Assemble the EPUB container and run the optional post-processing stages.

Stages run in a fixed order: spine check, EPUB assembly, KF8 conversion,
validation, extraction. Every stage after assembly is scoped: when it fails the
EPUB written by the assembly stage stays on disk and is described by the
returned :class:`Artifact`. Only failing to write that EPUB aborts the build.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import mimetypes
import os
import posixpath
import re
import shutil
import subprocess
import tempfile
import uuid
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from ebooklib import epub
from lxml import etree

from .assets import AssetRegistry
from .errors import (
    ConversionToolError,
    Diagnostic,
    Diagnostics,
    ExtractionError,
    FilesystemError,
    MissingAssetWarning,
    MissingSpineError,
    ValidationFailure,
)
from .ingest import Chapter
from .render import is_external
from .text.normalize import to_plain_text

__all__ = [
    "EPUB3",
    "KF8",
    "Artifact",
    "ChapterDocument",
    "Compression",
    "PackagingConfig",
    "PackagingPipeline",
    "StageResult",
    "normalize_format",
    "package",
    "parse_validator_output",
]

LOGGER = logging.getLogger(__name__)

EPUB3 = "epub3"
KF8 = "kf8"
SUPPORTED_FORMATS = frozenset({EPUB3, KF8})
FORMAT_ALIASES = {"mobi": KF8}
DEFAULT_TOOL_TIMEOUT = 300.0

NAV_UID = "book.nav"
NCX_UID = "book.ncx"
STYLESHEET_UID = "book.css"

STYLESHEET = """\
body { margin: 0; }
h1.chapter-title { margin-top: 1em; }
figure.image img { max-width: 100%; }
a.xref, a.link { text-decoration: none; }
sup.noteref { font-size: 75%; }
aside[id^="note-"] { font-size: 90%; }
"""

VALIDATOR_LINE_RX = re.compile(r"^(FATAL|ERROR|WARNING|INFO|USAGE)\(([^)]*)\):\s*(.*)$")
VALIDATOR_LEVELS = {
    "FATAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "USAGE": logging.INFO,
}


def normalize_format(value: Optional[str]) -> str:
    fmt = (value or EPUB3).strip().lower()
    fmt = FORMAT_ALIASES.get(fmt, fmt)
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"format must be one of {sorted(SUPPORTED_FORMATS)}, got {value!r}")
    return fmt


CompressValue = Union[bool, int, str, None]


@dataclass(frozen=True)
class Compression:
    """Container compression plus the matching converter flag."""

    zip_mode: int
    zip_level: Optional[int]
    converter_flag: str

    @classmethod
    def resolve(cls, value: CompressValue) -> "Compression":
        named = {
            "none": cls(zipfile.ZIP_STORED, None, "-c0"),
            "standard": cls(zipfile.ZIP_DEFLATED, None, "-c1"),
            "huffdic": cls(zipfile.ZIP_DEFLATED, 9, "-c2"),
        }
        if value is None:
            return cls(zipfile.ZIP_DEFLATED, None, "-c0")
        if isinstance(value, bool):
            return named["standard" if value else "none"]
        if isinstance(value, str):
            lowered = value.strip().lower()
            if not lowered:
                return named["standard"]
            if lowered in named:
                return named[lowered]
            if not lowered.isdigit():
                raise ValueError(f"Unsupported compression mode: {value}")
            value = int(lowered)
        if isinstance(value, int):
            if not 0 <= value <= 9:
                raise ValueError("Compression level must be between 0 and 9")
            if value == 0:
                return named["none"]
            return cls(zipfile.ZIP_DEFLATED, value, "-c2" if value == 9 else "-c1")
        raise ValueError(f"Unsupported compression mode: {value!r}")


@dataclass(frozen=True)
class PackagingConfig:
    """Immutable packaging settings for one build."""

    output_target: Path
    format: str = EPUB3
    validate: bool = False
    extract: bool = False
    compress: CompressValue = None
    converter_tool_path: Optional[Path] = None
    validator_tool_path: Optional[Path] = None
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    title: str = "Untitled"
    language: str = "en"
    identifier: Optional[str] = None
    authors: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.format not in SUPPORTED_FORMATS:
            raise ValueError(f"format must be one of {sorted(SUPPORTED_FORMATS)}")
        if self.tool_timeout <= 0:
            raise ValueError("tool_timeout must be positive")
        Compression.resolve(self.compress)

    @property
    def compression(self) -> Compression:
        return Compression.resolve(self.compress)

    @property
    def epub_path(self) -> Path:
        target = Path(self.output_target)
        if self.format == KF8:
            return target.parent / f"{target.stem}-kf8.epub"
        return target

    @property
    def mobi_path(self) -> Optional[Path]:
        if self.format != KF8:
            return None
        return Path(self.output_target).with_suffix(".mobi")

    @property
    def extract_dir(self) -> Path:
        epub_path = self.epub_path
        if epub_path.suffix == ".epub":
            return epub_path.with_suffix("")
        return epub_path.parent / f"{epub_path.name}-extracted"


@dataclass
class ChapterDocument:
    """A linked chapter ready to be embedded in the container."""

    chapter: Chapter
    content: str

    @property
    def title(self) -> str:
        if self.chapter.title:
            return to_plain_text(self.chapter.title)
        return self.chapter.id or self.chapter.docname


@dataclass
class StageResult:
    name: str
    ok: bool
    message: str = ""


@dataclass
class Artifact:
    """What a build produced, stage by stage."""

    path: Path
    format: str
    epub_path: Path
    mobi_path: Optional[Path] = None
    extracted_dir: Optional[Path] = None
    manifest: List[str] = field(default_factory=list)
    assets: List[str] = field(default_factory=list)
    stages: List[StageResult] = field(default_factory=list)
    validation: List[Diagnostic] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(stage.ok for stage in self.stages)

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None


def parse_validator_output(output: str) -> List[Diagnostic]:
    findings = []
    for line in output.splitlines():
        match = VALIDATOR_LINE_RX.match(line.strip())
        if not match:
            continue
        severity, code, message = match.groups()
        findings.append(
            Diagnostic(
                level=VALIDATOR_LEVELS[severity],
                category=ValidationFailure,
                message=f"{code}: {message}" if code else message,
            )
        )
    return findings


def discover_tool(explicit: Optional[Path], env_var: str, command: str) -> Optional[str]:
    """Explicit path, then environment variable, then ``PATH`` lookup."""

    if explicit:
        return str(explicit)
    from_env = os.environ.get(env_var)
    if from_env:
        return from_env
    return shutil.which(command)


class PackagingPipeline:
    """Run the packaging stages for one build."""

    def __init__(self, config: PackagingConfig, diagnostics: Optional[Diagnostics] = None) -> None:
        self.config = config
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    # Public API -----------------------------------------------------------------
    def package(
        self,
        documents: Optional[Sequence[ChapterDocument]],
        assets: Optional[AssetRegistry] = None,
    ) -> Artifact:
        config = self.config
        assets = assets if assets is not None else AssetRegistry()
        assets.freeze()
        artifact = Artifact(path=config.epub_path, format=config.format, epub_path=config.epub_path)

        documents = self._check_spine(documents, artifact)
        self._assemble(documents, assets, artifact)

        conversion_error = None
        if config.format == KF8:
            conversion_error = self._convert(artifact)
        if config.validate:
            self._validate(artifact)
        if config.extract:
            self._extract(artifact)

        artifact.diagnostics = list(self.diagnostics)
        if conversion_error is not None:
            raise conversion_error
        LOGGER.info("Packaged %d chapters (%s) to %s", len(artifact.manifest), config.format, artifact.path)
        return artifact

    # Stages ---------------------------------------------------------------------
    def _check_spine(
        self,
        documents: Optional[Sequence[ChapterDocument]],
        artifact: Artifact,
    ) -> List[ChapterDocument]:
        if not documents:
            self.diagnostics.error(
                MissingSpineError,
                "failed to find spine items, produced file will be invalid",
                chapter=Path(self.config.output_target).name,
            )
            artifact.stages.append(StageResult("spine", False, "no spine items"))
            return []
        artifact.stages.append(StageResult("spine", True))
        return list(documents)

    def _assemble(self, documents: List[ChapterDocument], assets: AssetRegistry, artifact: Artifact) -> None:
        config = self.config
        book = epub.EpubBook()
        book.set_identifier(config.identifier or self._default_identifier(documents))
        book.set_title(config.title)
        book.set_language(config.language)
        for author in config.authors:
            book.add_author(author)

        stylesheet = epub.EpubItem(
            uid=STYLESHEET_UID,
            file_name="styles/book.css",
            media_type="text/css",
            content=STYLESHEET,
        )
        book.add_item(stylesheet)

        items = []
        for document in documents:
            chapter = document.chapter
            item = epub.EpubHtml(
                uid=chapter.id,
                file_name=chapter.file_name,
                title=document.title,
                lang=config.language,
                content=document.content,
            )
            item.properties.extend(chapter.properties)
            item.add_item(stylesheet)
            book.add_item(item)
            items.append(item)
            artifact.manifest.append(chapter.id)

        for index, entry in enumerate(assets.unique(), start=1):
            if is_external(entry.logical_target):
                continue
            try:
                data = entry.physical_path.read_bytes()
            except OSError as exc:
                self.diagnostics.warn(
                    MissingAssetWarning,
                    f"could not read asset {entry.logical_target} from {entry.physical_path}: {exc}",
                )
                continue
            file_name = posixpath.normpath(entry.logical_target.lstrip("/"))
            if file_name == ".." or file_name.startswith("../"):
                self.diagnostics.warn(
                    MissingAssetWarning,
                    f"asset {entry.logical_target} points outside the container; not embedded",
                )
                continue
            media_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
            book.add_item(
                epub.EpubItem(uid=f"book.asset{index}", file_name=file_name, media_type=media_type, content=data)
            )
            artifact.assets.append(file_name)

        book.toc = tuple(items)
        book.add_item(epub.EpubNcx(uid=NCX_UID, file_name="book.ncx"))
        book.add_item(epub.EpubNav(uid=NAV_UID, file_name="book-nav.xhtml"))
        book.spine = items

        with tempfile.TemporaryDirectory(prefix="epub-binder-") as workdir:
            staged = Path(workdir) / "book.epub"
            try:
                epub.write_epub(str(staged), book, {})
            except (OSError, etree.LxmlError) as exc:
                raise FilesystemError(f"Failed to assemble EPUB for {config.epub_path}: {exc}") from exc
            if not staged.exists():
                raise FilesystemError(f"Failed to assemble EPUB for {config.epub_path}")
            try:
                self._write_container(staged, config.epub_path)
            except OSError as exc:
                raise FilesystemError(f"Failed to write {config.epub_path}: {exc}") from exc

        artifact.stages.append(StageResult("assembly", True))
        LOGGER.debug("Assembled %s with %d assets", config.epub_path, len(artifact.assets))

    def _write_container(self, source: Path, target: Path) -> None:
        compression = self.config.compression
        target.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(source) as staged, zipfile.ZipFile(target, "w") as archive:
            mimetype = zipfile.ZipInfo("mimetype")
            mimetype.compress_type = zipfile.ZIP_STORED
            archive.writestr(mimetype, "application/epub+zip")
            for info in staged.infolist():
                if info.filename == "mimetype":
                    continue
                entry = zipfile.ZipInfo(info.filename, date_time=info.date_time)
                archive.writestr(
                    entry,
                    staged.read(info),
                    compress_type=compression.zip_mode,
                    compresslevel=compression.zip_level,
                )

    def _convert(self, artifact: Artifact) -> Optional[ConversionToolError]:
        config = self.config
        mobi_path = config.mobi_path
        tool = discover_tool(config.converter_tool_path, "KINDLEGEN", "kindlegen")
        if tool is None:
            return self._conversion_failed(artifact, "kindlegen not found; set KINDLEGEN or pass a converter path")

        argv = [
            tool,
            "-dont_append_source",
            config.compression.converter_flag,
            "-o",
            mobi_path.name,
            str(config.epub_path),
        ]
        try:
            result = self._run_tool(argv)
        except subprocess.TimeoutExpired:
            return self._conversion_failed(artifact, f"{tool} timed out after {config.tool_timeout}s", tool=tool)
        except OSError as exc:
            return self._conversion_failed(artifact, f"failed to run {tool}: {exc}", tool=tool)

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            return self._conversion_failed(
                artifact,
                f"{tool} exited with status {result.returncode}",
                tool=tool,
                returncode=result.returncode,
                output=output,
            )
        if not mobi_path.exists():
            return self._conversion_failed(artifact, f"{tool} did not produce {mobi_path}", tool=tool, output=output)

        artifact.mobi_path = mobi_path
        artifact.path = mobi_path
        artifact.stages.append(StageResult("conversion", True))
        LOGGER.debug("Converted %s to %s", config.epub_path, mobi_path)
        return None

    def _conversion_failed(
        self,
        artifact: Artifact,
        message: str,
        *,
        tool: Optional[str] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> ConversionToolError:
        self.diagnostics.error(ConversionToolError, message, chapter=self.config.epub_path.name)
        if output:
            LOGGER.debug("Converter output:\n%s", output)
        artifact.stages.append(StageResult("conversion", False, message))
        return ConversionToolError(message, tool=tool, returncode=returncode, output=output, artifact=artifact)

    def _validate(self, artifact: Artifact) -> None:
        config = self.config
        epub_name = config.epub_path.name
        tool = discover_tool(config.validator_tool_path, "EPUBCHECK", "epubcheck")
        if tool is None:
            self._validation_failed(artifact, "epubcheck not found; set EPUBCHECK or pass a validator path")
            return

        argv = ["java", "-jar", tool] if tool.endswith(".jar") else [tool]
        argv.append(str(config.epub_path))
        try:
            result = self._run_tool(argv)
        except subprocess.TimeoutExpired:
            self._validation_failed(artifact, f"{tool} timed out after {config.tool_timeout}s")
            return
        except OSError as exc:
            self._validation_failed(artifact, f"failed to run {tool}: {exc}")
            return

        findings = parse_validator_output((result.stdout or "") + "\n" + (result.stderr or ""))
        for finding in findings:
            self.diagnostics.report(ValidationFailure, finding.message, level=finding.level, chapter=epub_name)
        artifact.validation.extend(findings)
        if result.returncode != 0:
            self._validation_failed(artifact, f"{epub_name} failed validation (exit status {result.returncode})")
            return
        artifact.stages.append(StageResult("validation", True))

    def _validation_failed(self, artifact: Artifact, message: str) -> None:
        self.diagnostics.error(ValidationFailure, message, chapter=self.config.epub_path.name)
        artifact.stages.append(StageResult("validation", False, message))

    def _extract(self, artifact: Artifact) -> None:
        target_dir = self.config.extract_dir
        try:
            if target_dir.exists():
                shutil.rmtree(target_dir)
            with zipfile.ZipFile(self.config.epub_path) as archive:
                archive.extractall(target_dir)
        except (OSError, zipfile.BadZipFile) as exc:
            message = f"failed to extract {self.config.epub_path} to {target_dir}: {exc}"
            self.diagnostics.error(ExtractionError, message, chapter=self.config.epub_path.name)
            artifact.stages.append(StageResult("extraction", False, message))
            return
        artifact.extracted_dir = target_dir
        artifact.stages.append(StageResult("extraction", True))
        LOGGER.debug("Extracted %s to %s", self.config.epub_path, target_dir)

    # Helpers --------------------------------------------------------------------
    def _run_tool(self, argv: List[str]) -> subprocess.CompletedProcess:
        LOGGER.debug("Running %s", " ".join(argv))
        return subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=self.config.tool_timeout,
            check=False,
        )

    def _default_identifier(self, documents: Iterable[ChapterDocument]) -> str:
        seed = "|".join([self.config.title, *(document.chapter.id or "" for document in documents)])
        return f"urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, seed)}"


def package(
    documents: Optional[Sequence[ChapterDocument]],
    assets: Optional[AssetRegistry],
    config: PackagingConfig,
    diagnostics: Optional[Diagnostics] = None,
) -> Artifact:
    return PackagingPipeline(config, diagnostics).package(documents, assets)
