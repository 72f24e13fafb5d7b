from __future__ import annotations

import subprocess
import sys
import zipfile
from pathlib import Path
from xml.etree import ElementTree

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from epub_binder import packager  # noqa: E402
from epub_binder.assets import AssetRegistry  # noqa: E402
from epub_binder.errors import (  # noqa: E402
    ConversionToolError,
    Diagnostics,
    ExtractionError,
    FilesystemError,
    MissingAssetWarning,
    MissingSpineError,
    ValidationFailure,
)
from epub_binder.ingest import Chapter  # noqa: E402
from epub_binder.packager import (  # noqa: E402
    EPUB3,
    KF8,
    ChapterDocument,
    Compression,
    PackagingConfig,
    normalize_format,
    package,
    parse_validator_output,
)

OPF_NS = "{http://www.idpf.org/2007/opf}"


def _make_documents(*ids):
    documents = []
    for chapter_id in ids:
        chapter = Chapter(docname=chapter_id, title=chapter_id.title(), has_explicit_header=True, id=chapter_id)
        content = (
            f'<section class="chapter" epub:type="chapter" id="{chapter_id}">\n'
            f"<p>Content of {chapter_id}.</p>\n</section>\n"
        )
        documents.append(ChapterDocument(chapter=chapter, content=content))
    return documents


def _spine_idrefs(epub_path: Path):
    with zipfile.ZipFile(epub_path) as archive:
        root = ElementTree.fromstring(archive.read("EPUB/content.opf"))
    return [itemref.get("idref") for itemref in root.iter(f"{OPF_NS}itemref")]


def _fake_run(calls, returncode=0, stdout="", stderr="", make_output=True):
    def run(argv, **kwargs):
        calls.append((list(argv), kwargs))
        if make_output and "-o" in argv:
            output_name = argv[argv.index("-o") + 1]
            (Path(argv[-1]).parent / output_name).write_bytes(b"MOBI")
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)

    return run


def test_epub3_spine_follows_document_order(tmp_path):
    target = tmp_path / "out" / "book.epub"
    config = PackagingConfig(output_target=target, title="Sample", authors=("Ada",))

    artifact = package(_make_documents("intro", "usage", "appendix"), AssetRegistry(), config)

    assert artifact.path == target
    assert target.exists()
    assert artifact.manifest == ["intro", "usage", "appendix"]
    assert _spine_idrefs(target) == ["intro", "usage", "appendix"]
    assert artifact.ok
    assert [stage.name for stage in artifact.stages] == ["spine", "assembly"]


def test_mimetype_is_first_and_stored(tmp_path):
    target = tmp_path / "book.epub"

    package(_make_documents("intro"), None, PackagingConfig(output_target=target, compress="huffdic"))

    with zipfile.ZipFile(target) as archive:
        infos = archive.infolist()
        assert infos[0].filename == "mimetype"
        assert infos[0].compress_type == zipfile.ZIP_STORED
        assert archive.read("mimetype") == b"application/epub+zip"
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in infos[1:])


def test_uncompressed_container(tmp_path):
    target = tmp_path / "book.epub"

    package(_make_documents("intro"), None, PackagingConfig(output_target=target, compress="none"))

    with zipfile.ZipFile(target) as archive:
        assert {info.compress_type for info in archive.infolist()} == {zipfile.ZIP_STORED}


def test_reserved_chapter_ids_do_not_clash_with_generated_items(tmp_path):
    target = tmp_path / "book.epub"

    artifact = package(_make_documents("cover", "nav", "ncx"), None, PackagingConfig(output_target=target))

    assert _spine_idrefs(target) == ["cover", "nav", "ncx"]
    with zipfile.ZipFile(target) as archive:
        names = set(archive.namelist())
    assert {"EPUB/nav.xhtml", "EPUB/book-nav.xhtml", "EPUB/book.ncx"} <= names
    assert artifact.ok


def test_missing_spine_still_produces_artifact(tmp_path):
    target = tmp_path / "empty.epub"
    diagnostics = Diagnostics()

    artifact = package(None, None, PackagingConfig(output_target=target), diagnostics)

    assert target.exists()
    assert artifact.manifest == []
    assert not artifact.stage("spine").ok
    assert artifact.stage("assembly").ok
    assert diagnostics.of_category(MissingSpineError)
    assert any(item.category is MissingSpineError for item in artifact.diagnostics)


def test_assets_are_embedded_once_and_missing_ones_reported(tmp_path):
    image = tmp_path / "src" / "cover.png"
    image.parent.mkdir()
    image.write_bytes(b"\x89PNG")
    assets = AssetRegistry()
    assets.register("images/cover.png", image)
    assets.register("images/cover.png", tmp_path / "elsewhere.png")
    assets.register("images/missing.png", tmp_path / "missing.png")
    assets.register("https://example.com/remote.png", "https://example.com/remote.png")
    diagnostics = Diagnostics()
    target = tmp_path / "book.epub"

    artifact = package(_make_documents("intro"), assets, PackagingConfig(output_target=target), diagnostics)

    assert artifact.assets == ["images/cover.png"]
    with zipfile.ZipFile(target) as archive:
        assert archive.read("EPUB/images/cover.png") == b"\x89PNG"
    missing = diagnostics.of_category(MissingAssetWarning)
    assert len(missing) == 1
    assert "images/missing.png" in missing[0].message
    with pytest.raises(RuntimeError):
        assets.register("late.png", "late.png")


def test_unwritable_target_raises_filesystem_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(FilesystemError):
        package(_make_documents("intro"), None, PackagingConfig(output_target=blocker / "book.epub"))


def test_kf8_with_unreachable_converter_keeps_epub(tmp_path):
    target = tmp_path / "book.mobi"
    config = PackagingConfig(
        output_target=target,
        format=KF8,
        converter_tool_path=tmp_path / "no-such-dir" / "kindlegen",
    )

    with pytest.raises(ConversionToolError) as excinfo:
        package(_make_documents("intro"), None, config)

    artifact = excinfo.value.artifact
    assert artifact.epub_path == tmp_path / "book-kf8.epub"
    assert artifact.epub_path.exists()
    assert artifact.mobi_path is None
    assert not artifact.stage("conversion").ok


def test_kf8_conversion_invokes_converter(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(packager.subprocess, "run", _fake_run(calls))
    tool = tmp_path / "bin" / "kindlegen"
    config = PackagingConfig(
        output_target=tmp_path / "book.mobi",
        format=KF8,
        compress="huffdic",
        converter_tool_path=tool,
        tool_timeout=42,
    )

    artifact = package(_make_documents("intro"), None, config)

    argv, kwargs = calls[0]
    assert argv == [str(tool), "-dont_append_source", "-c2", "-o", "book.mobi", str(tmp_path / "book-kf8.epub")]
    assert kwargs["timeout"] == 42
    assert artifact.path == tmp_path / "book.mobi"
    assert artifact.mobi_path == tmp_path / "book.mobi"
    assert artifact.stage("conversion").ok


def test_kf8_converter_failure_reports_exit_status(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(packager.subprocess, "run", _fake_run(calls, returncode=2, stderr="boom", make_output=False))
    config = PackagingConfig(output_target=tmp_path / "book.mobi", format=KF8, converter_tool_path=tmp_path / "kg")

    with pytest.raises(ConversionToolError) as excinfo:
        package(_make_documents("intro"), None, config)

    assert excinfo.value.returncode == 2
    assert "boom" in excinfo.value.output
    assert excinfo.value.artifact.epub_path.exists()


def test_kf8_converter_timeout_is_reported(tmp_path, monkeypatch):
    def run(argv, **kwargs):
        raise subprocess.TimeoutExpired(argv, kwargs["timeout"])

    monkeypatch.setattr(packager.subprocess, "run", run)
    config = PackagingConfig(
        output_target=tmp_path / "book.mobi",
        format=KF8,
        converter_tool_path=tmp_path / "kg",
        tool_timeout=1,
    )

    with pytest.raises(ConversionToolError, match="timed out"):
        package(_make_documents("intro"), None, config)


def test_validation_findings_are_recorded_without_raising(tmp_path, monkeypatch):
    calls = []
    output = (
        "Validating using EPUB version 3.3 rules.\n"
        "ERROR(RSC-005): book.epub/EPUB/intro.xhtml(3,4): Error while parsing file\n"
        "WARNING(OPF-085): book.epub/EPUB/content.opf(5,6): Invalid UUID\n"
    )
    monkeypatch.setattr(packager.subprocess, "run", _fake_run(calls, returncode=1, stdout=output))
    target = tmp_path / "book.epub"
    config = PackagingConfig(output_target=target, validate=True, validator_tool_path=tmp_path / "epubcheck")

    artifact = package(_make_documents("intro"), None, config)

    assert calls[0][0] == [str(tmp_path / "epubcheck"), str(target)]
    assert target.exists()
    assert [finding.severity for finding in artifact.validation] == ["error", "warning"]
    assert artifact.validation[0].message.startswith("RSC-005: ")
    assert not artifact.stage("validation").ok
    assert not artifact.ok


def test_validator_jar_runs_through_java(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(packager.subprocess, "run", _fake_run(calls))
    jar = tmp_path / "epubcheck.jar"
    config = PackagingConfig(output_target=tmp_path / "book.epub", validate=True, validator_tool_path=jar)

    artifact = package(_make_documents("intro"), None, config)

    assert calls[0][0][:3] == ["java", "-jar", str(jar)]
    assert artifact.stage("validation").ok


def test_missing_validator_is_a_scoped_failure(tmp_path, monkeypatch):
    monkeypatch.delenv("EPUBCHECK", raising=False)
    monkeypatch.setattr(packager.shutil, "which", lambda name: None)
    diagnostics = Diagnostics()
    config = PackagingConfig(output_target=tmp_path / "book.epub", validate=True)

    artifact = package(_make_documents("intro"), None, config, diagnostics)

    assert artifact.path.exists()
    assert not artifact.stage("validation").ok
    assert diagnostics.of_category(ValidationFailure)


def test_kf8_is_validated_as_epub(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(packager.subprocess, "run", _fake_run(calls))
    config = PackagingConfig(
        output_target=tmp_path / "book.mobi",
        format=KF8,
        validate=True,
        converter_tool_path=tmp_path / "kindlegen",
        validator_tool_path=tmp_path / "epubcheck",
    )

    package(_make_documents("intro"), None, config)

    assert [argv[0] for argv, _ in calls] == [str(tmp_path / "kindlegen"), str(tmp_path / "epubcheck")]
    assert calls[1][0][-1] == str(tmp_path / "book-kf8.epub")


def test_extraction_unpacks_next_to_epub(tmp_path):
    target = tmp_path / "book.epub"
    stale = tmp_path / "book" / "stale.txt"
    stale.parent.mkdir()
    stale.write_text("old")

    artifact = package(_make_documents("intro"), None, PackagingConfig(output_target=target, extract=True))

    assert artifact.extracted_dir == tmp_path / "book"
    assert (tmp_path / "book" / "mimetype").read_text() == "application/epub+zip"
    assert (tmp_path / "book" / "EPUB" / "intro.xhtml").exists()
    assert not stale.exists()


def test_extraction_failure_keeps_artifact(tmp_path):
    target = tmp_path / "book.epub"
    (tmp_path / "book").write_text("a file where the directory should go")
    diagnostics = Diagnostics()

    artifact = package(
        _make_documents("intro"),
        None,
        PackagingConfig(output_target=target, extract=True),
        diagnostics,
    )

    assert target.exists()
    assert artifact.extracted_dir is None
    assert not artifact.stage("extraction").ok
    assert diagnostics.of_category(ExtractionError)


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, (zipfile.ZIP_DEFLATED, None, "-c0")),
        (False, (zipfile.ZIP_STORED, None, "-c0")),
        (0, (zipfile.ZIP_STORED, None, "-c0")),
        ("none", (zipfile.ZIP_STORED, None, "-c0")),
        (True, (zipfile.ZIP_DEFLATED, None, "-c1")),
        ("", (zipfile.ZIP_DEFLATED, None, "-c1")),
        ("Standard", (zipfile.ZIP_DEFLATED, None, "-c1")),
        ("huffdic", (zipfile.ZIP_DEFLATED, 9, "-c2")),
        ("5", (zipfile.ZIP_DEFLATED, 5, "-c1")),
        (9, (zipfile.ZIP_DEFLATED, 9, "-c2")),
    ],
)
def test_compression_resolution(value, expected):
    compression = Compression.resolve(value)

    assert (compression.zip_mode, compression.zip_level, compression.converter_flag) == expected


@pytest.mark.parametrize("value", ["fast", 10, -1, 1.5])
def test_invalid_compression_is_rejected(value):
    with pytest.raises(ValueError):
        PackagingConfig(output_target=Path("book.epub"), compress=value)


def test_format_aliases_and_paths():
    assert normalize_format(None) == EPUB3
    assert normalize_format(" MOBI ") == KF8
    with pytest.raises(ValueError):
        normalize_format("pdf")

    config = PackagingConfig(output_target=Path("out/book.mobi"), format=KF8)
    assert config.epub_path == Path("out/book-kf8.epub")
    assert config.mobi_path == Path("out/book.mobi")
    assert config.extract_dir == Path("out/book-kf8")
    assert PackagingConfig(output_target=Path("book.epub")).mobi_path is None


def test_parse_validator_output_ignores_other_lines():
    findings = parse_validator_output(
        "Check finished with errors\n"
        "FATAL(RSC-016): book.epub: Fatal Error while parsing file\n"
        "Messages: 1 fatal / 0 errors\n"
    )

    assert len(findings) == 1
    assert findings[0].severity == "critical"
    assert findings[0].category is ValidationFailure


def test_assembly_failure_raises_filesystem_error(tmp_path, monkeypatch):
    def write_epub(name, book, options):
        raise PermissionError(name)

    monkeypatch.setattr(packager.epub, "write_epub", write_epub)

    with pytest.raises(FilesystemError, match="Failed to assemble"):
        package(_make_documents("intro"), None, PackagingConfig(output_target=tmp_path / "book.epub"))
    assert not (tmp_path / "book.epub").exists()


def test_asset_outside_container_is_not_embedded(tmp_path):
    image = tmp_path / "a.png"
    image.write_bytes(b"\x89PNG")
    assets = AssetRegistry()
    assets.register("../img/a.png", image)
    assets.register("img/../../a.png", image)
    assets.register("img/./a.png", image)
    diagnostics = Diagnostics()
    target = tmp_path / "book.epub"

    artifact = package(_make_documents("intro"), assets, PackagingConfig(output_target=target), diagnostics)

    assert artifact.assets == ["img/a.png"]
    with zipfile.ZipFile(target) as archive:
        assert not [name for name in archive.namelist() if ".." in name]
    assert len(diagnostics.of_category(MissingAssetWarning)) == 2


def test_pipeline_reports_into_the_callers_empty_collector(tmp_path):
    diagnostics = Diagnostics()
    pipeline = packager.PackagingPipeline(PackagingConfig(output_target=tmp_path / "book.epub"), diagnostics)

    assert pipeline.diagnostics is diagnostics
    pipeline.package(None)
    assert len(diagnostics.of_category(MissingSpineError)) == 1
