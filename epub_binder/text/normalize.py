"""Helpers that turn raw (markup-bearing) titles into sanitized text."""

from __future__ import annotations

import html
import re
from typing import Callable, Mapping

TO_HTML_SPECIAL_CHARS = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
}

XML_ELEMENT_RX = re.compile(r"</?.+?>")
CHAR_REF_RX = re.compile(
    r"&(?:([a-zA-Z][a-zA-Z]+\d{0,2})|#(\d\d\d{0,4})|#x([\da-fA-F][\da-fA-F][\da-fA-F]{0,3}));"
)
BARE_AMPERSAND_RX = re.compile(r"&(?![a-zA-Z][a-zA-Z]+\d{0,2};|#\d+;|#x[\da-fA-F]+;)")

RIGHT_SINGLE_QUOTE = 8217


def _apply_mapping(text: str, mapping: Mapping[str, str]) -> str:
    pattern = re.compile("|".join(re.escape(k) for k in mapping.keys()))

    def repl(match: re.Match[str]) -> str:
        return mapping[match.group(0)]

    return pattern.sub(repl, text)


def strip_markup(value: str) -> str:
    """Drop inline XML elements and squeeze the spaces they leave behind."""

    if "<" not in value:
        return value
    value = XML_ELEMENT_RX.sub("", value).strip()
    return re.sub(r" {2,}", " ", value)


def escape_bare_ampersands(value: str) -> str:
    return BARE_AMPERSAND_RX.sub("&amp;", value)


def sanitize_title(raw: str) -> str:
    """Return *raw* without markup, with every ampersand entity-encoded.

    Character references already present in the title are preserved so that
    identifier generation can decide how to treat each of them.
    """

    return escape_bare_ampersands(strip_markup(raw or "")).strip()


def decode_char_refs(value: str, replace: Callable[[re.Match[str]], str]) -> str:
    if "&" not in value:
        return value
    return CHAR_REF_RX.sub(replace, value)


def to_plain_text(raw: str) -> str:
    """Decode a sanitized title into display text (``&amp;`` becomes ``&``)."""

    value = sanitize_title(raw)
    if ";" in value:
        value = html.unescape(value)
    return value


def escape_text(value: str) -> str:
    return _apply_mapping(value, TO_HTML_SPECIAL_CHARS)


def escape_attribute(value: str) -> str:
    return escape_text(value).replace('"', "&quot;")


__all__ = [
    "RIGHT_SINGLE_QUOTE",
    "decode_char_refs",
    "escape_attribute",
    "escape_bare_ampersands",
    "escape_text",
    "sanitize_title",
    "strip_markup",
    "to_plain_text",
]
