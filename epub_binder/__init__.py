"""Core package for epub-binder."""

from __future__ import annotations

__version__ = "0.1.0"

from .converter import ConversionOptions, ConversionResult, EbookConverter

__all__ = [
    "ConversionOptions",
    "ConversionResult",
    "EbookConverter",
]
