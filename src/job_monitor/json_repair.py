"""Best-effort recovery of JSON embedded in, or mangled by, LLM replies.

The repair pass is small and lossy. It knows exactly these rules:

* close a string left open at the end of the text,
* insert a missing ``,`` between two adjacent values,
* drop trailing and doubled ``,`` separators,
* complete a key left dangling after ``:`` with ``null``,
* append the closers for every unbalanced ``{`` / ``[``.

Anything else (for example a closer that does not match its opener) is given up on.
"""
from __future__ import annotations

import json
import re
from typing import Any

from job_monitor.log import get_logger

log = get_logger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_BARE_TOKEN_RE = re.compile(r"[A-Za-z0-9.+\-]+")
_CLOSERS = {"{": "}", "[": "]"}
_VALUE_END = {'"', "}", "]", "literal"}


def _top_level_starts(text: str):
    """Yield offsets of ``{`` / ``[`` not nested inside an earlier open container."""
    depth = 0
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char in _CLOSERS:
            if depth == 0:
                yield index
            depth += 1
        elif char in "}]" and depth > 0:
            depth -= 1
        elif char == '"' and depth > 0:
            in_string = True


def extract_json_block(text: str) -> str | None:
    """Cut the first complete JSON object or array out of surrounding prose.

    Bracketed prose before the payload is skipped. When no candidate decodes, the
    span from the last top-level opener to its last matching closer is returned for repair.
    """
    stripped = _FENCE_RE.sub("", (text or "").strip())
    decoder = json.JSONDecoder(strict=False)
    start = None
    for candidate in _top_level_starts(stripped):
        start = candidate
        try:
            _, end = decoder.raw_decode(stripped, candidate)
        except json.JSONDecodeError:
            continue
        return stripped[candidate:end]
    if start is None:
        return None
    end = stripped.rfind(_CLOSERS[stripped[start]])
    if end > start:
        return stripped[start : end + 1]
    return stripped[start:]


def repair_json(text: str) -> str | None:
    out: list[str] = []
    stack: list[str] = []
    prev: str | None = None
    last_comma = -1
    index = 0
    length = len(text)

    def separate() -> None:
        if prev in _VALUE_END:
            out.append(",")

    while index < length:
        char = text[index]

        if char == '"':
            separate()
            end = index + 1
            while end < length:
                if text[end] == "\\":
                    end += 2
                    continue
                if text[end] == '"':
                    break
                end += 1
            if end >= length:
                out.append(text[index:].rstrip("\\") + '"')
                prev = '"'
                break
            out.append(text[index : end + 1])
            prev = '"'
            index = end + 1
            continue

        if char.isspace():
            out.append(char)
        elif char in _CLOSERS:
            separate()
            stack.append(char)
            out.append(char)
            prev = char
        elif char in "}]":
            if prev == ",":
                out[last_comma] = ""
            elif prev == ":":
                out.append("null")
            if not stack or _CLOSERS[stack[-1]] != char:
                log.debug("repair gave up on mismatched %r at offset %d", char, index)
                return None
            stack.pop()
            out.append(char)
            prev = char
        elif char == ",":
            if prev in (",", "{", "[", None):
                index += 1
                continue
            out.append(char)
            last_comma = len(out) - 1
            prev = ","
        elif char == ":":
            out.append(char)
            prev = ":"
        else:
            match = _BARE_TOKEN_RE.match(text, index)
            if match is None:
                out.append(char)
                prev = char
                index += 1
                continue
            separate()
            out.append(match.group(0))
            prev = "literal"
            index = match.end()
            continue
        index += 1

    if prev == ",":
        out[last_comma] = ""
    elif prev == ":":
        out.append("null")
    out.extend(_CLOSERS[opener] for opener in reversed(stack))
    return "".join(out)


def _try_loads(text: str) -> Any | None:
    try:
        return json.loads(text, strict=False)
    except (json.JSONDecodeError, TypeError):
        return None


def loads_lenient(text: str) -> tuple[Any | None, str]:
    """Decode ``text``, escalating from plain parsing to extraction to one repair.

    Returns the decoded value (or None) and the stage that produced it.
    """
    decoded = _try_loads(text)
    if decoded is not None:
        return decoded, "direct"

    block = extract_json_block(text)
    if block is not None and block != text:
        decoded = _try_loads(block)
        if decoded is not None:
            return decoded, "extracted"

    repaired = repair_json(block if block is not None else text)
    if repaired is not None:
        decoded = _try_loads(repaired)
        if decoded is not None:
            return decoded, "repaired"
    return None, "failed"
