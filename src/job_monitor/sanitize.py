from __future__ import annotations

import re
import unicodedata

_TAG_RE = re.compile(r"<[^>]*>")
_ENTITY_RE = re.compile(r"&[a-zA-Z0-9#]+;")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_INVISIBLE_RE = re.compile(r"[\u00a0\u2000-\u200f\u2028\u2029\u202f\u205f\u2060\ufeff\ufffe\uffff]")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(value: str | None) -> str:
    if not value:
        return ""
    cleaned = unicodedata.normalize("NFKC", value)
    cleaned = _TAG_RE.sub(" ", cleaned)
    cleaned = _ENTITY_RE.sub(" ", cleaned)
    # newlines and tabs become spaces before the control-character sweep
    cleaned = _INVISIBLE_RE.sub(" ", cleaned.replace("\n", " ").replace("\r", " ").replace("\t", " "))
    cleaned = _CONTROL_RE.sub("", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: max(limit - 3, 0)].rstrip() + "..."


def sanitize_field(value: str | None, limit: int | None = None) -> str:
    cleaned = clean_text(value)
    if limit is not None:
        cleaned = truncate(cleaned, limit)
    return cleaned
