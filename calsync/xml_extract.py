"""Tolerant XML extraction for multistatus and SOAP responses.

Matching ignores namespace prefixes (``<d:href>``, ``<D:href>`` and ``<href>``
are equivalent) and is case-insensitive. Only the first-level shape of a
document is interpreted; nothing here validates XML.
"""

from __future__ import annotations

import html
import re


_PREFIX = r"(?:[A-Za-z0-9_.-]+:)?"
_CDATA_PATTERN = re.compile(r"^\s*<!\[CDATA\[(.*)\]\]>\s*$", re.DOTALL)


def _paired_pattern(tag: str) -> re.Pattern[str]:
    name = re.escape(tag)
    return re.compile(
        rf"<{_PREFIX}{name}(?:\s[^>]*?)?(?<!/)>(.*?)</{_PREFIX}{name}\s*>",
        re.IGNORECASE | re.DOTALL,
    )


def _self_closing_pattern(tag: str) -> re.Pattern[str]:
    name = re.escape(tag)
    return re.compile(rf"<{_PREFIX}{name}(?:\s[^>]*?)?/>", re.IGNORECASE | re.DOTALL)


def unescape_xml(value: str) -> str:
    match = _CDATA_PATTERN.match(value)
    if match:
        return match.group(1)
    return html.unescape(value)


def escape_xml(value: str) -> str:
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def extract_tag(xml: str, tag: str) -> str | None:
    """Inner content of the first paired ``tag`` element, stripped, or None."""
    match = _paired_pattern(tag).search(xml or "")
    if not match:
        return None
    return match.group(1).strip()


def extract_text(xml: str, tag: str) -> str | None:
    raw = extract_tag(xml, tag)
    if raw is None:
        return None
    return unescape_xml(raw).strip()


def extract_all_elements(xml: str, tag: str) -> list[str]:
    """Every ``tag`` element (paired or self-closing) in document order.

    Self-closing matches nested inside an already captured paired element are dropped.
    """
    text = xml or ""
    spans: list[tuple[int, int]] = []
    for match in _paired_pattern(tag).finditer(text):
        spans.append(match.span())
    for match in _self_closing_pattern(tag).finditer(text):
        start = match.start()
        if any(begin <= start < end for begin, end in spans):
            continue
        spans.append(match.span())
    spans.sort()
    return [text[begin:end] for begin, end in spans]


def has_element(xml: str, tag: str) -> bool:
    pattern = re.compile(rf"<{_PREFIX}{re.escape(tag)}[\s/>]", re.IGNORECASE)
    return bool(pattern.search(xml or ""))


def extract_attribute(xml: str, attr: str) -> str | None:
    pattern = re.compile(rf"(?<![\w:-]){re.escape(attr)}\s*=\s*(\"([^\"]*)\"|'([^']*)')", re.IGNORECASE)
    match = pattern.search(xml or "")
    if not match:
        return None
    value = match.group(2) if match.group(2) is not None else match.group(3)
    return html.unescape(value)
