"""Command line interface for epub-binder."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from .converter import ConversionOptions, EbookConverter
from .errors import ConversionToolError
from . import __version__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="epub-binder",
        description=(
            "Bind independently written chapters, listed by a spine document, "
            "into a linked EPUB3 or KF8 e-book."
        ),
    )
    parser.add_argument("--in", dest="input_path", type=Path, required=True, help="Spine document")
    parser.add_argument("--out", dest="output_path", type=Path, help="Destination e-book file")
    parser.add_argument(
        "--format",
        choices=["epub3", "kf8", "mobi"],
        help="Output format (defaults to the spine's ebook-format attribute, then epub3)",
    )
    parser.add_argument(
        "--validate",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Check the EPUB with epubcheck",
    )
    parser.add_argument(
        "--extract",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also unpack the EPUB next to it for inspection",
    )
    parser.add_argument("--compress", help="Compression: none, standard, huffdic or a level 0-9")
    parser.add_argument("--kindlegen", dest="kindlegen_path", type=Path, help="Path to the KF8 converter")
    parser.add_argument("--epubcheck", dest="epubcheck_path", type=Path, help="Path to epubcheck (binary or .jar)")
    parser.add_argument("--id-prefix", help="Prefix for generated chapter ids (default: _)")
    parser.add_argument("--id-separator", help="Word separator for generated chapter ids (default: _)")
    parser.add_argument("--workers", type=int, default=4, help="Chapters parsed and rendered in parallel")
    parser.add_argument(
        "--timeout",
        dest="tool_timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for an external tool",
    )
    parser.add_argument(
        "--meta",
        dest="metadata",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override book metadata such as title, author, lang or uuid (repeatable)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print warnings and errors")
    parser.add_argument("--version", action="version", version=f"epub-binder {__version__}")
    return parser


def parse_metadata(pairs: Iterable[str]) -> dict:
    metadata = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Invalid metadata entry (expected key=value): {pair}")
        key, value = pair.split("=", 1)
        metadata[key.strip()] = value.strip()
    return metadata


def configure_logging(verbose: bool, quiet: bool) -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def create_options(namespace: argparse.Namespace) -> ConversionOptions:
    return ConversionOptions(
        input_path=namespace.input_path,
        output_path=namespace.output_path,
        format=namespace.format,
        validate=namespace.validate,
        extract=namespace.extract,
        compress=namespace.compress,
        kindlegen_path=namespace.kindlegen_path,
        epubcheck_path=namespace.epubcheck_path,
        id_prefix=namespace.id_prefix,
        id_separator=namespace.id_separator,
        workers=namespace.workers,
        tool_timeout=namespace.tool_timeout,
        metadata=parse_metadata(namespace.metadata),
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    log = logging.getLogger(__name__)
    try:
        options = create_options(args)
        result = EbookConverter().convert(options)
    except ConversionToolError as exc:
        log.error(str(exc))
        if exc.artifact is not None:
            print(f"EPUB kept at {exc.artifact.epub_path}")
        return 1
    except Exception as exc:  # pragma: no cover - CLI safety net
        log.error(str(exc))
        return 1

    artifact = result.artifact
    print(f"Wrote {len(artifact.manifest)} chapters to {result.output_path}")
    if artifact.extracted_dir:
        print(f"Extracted to {artifact.extracted_dir}")
    failed = [stage for stage in artifact.stages if not stage.ok]
    for stage in failed:
        print(f"{stage.name} failed: {stage.message}")
    print(f"Elapsed: {result.elapsed_seconds:.2f}s")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
