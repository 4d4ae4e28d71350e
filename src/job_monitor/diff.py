"""Snapshot comparison: which listed postings are new since the stored snapshot."""
from __future__ import annotations

import json
from typing import Any

from job_monitor.log import get_logger
from job_monitor.models import DiffResult, Posting

log = get_logger(__name__)

DEFAULT_MIN_SNAPSHOT_CHARS = 20
_CLOSING_TOKENS = {"{": "}", "[": "]"}


class SnapshotError(ValueError):
    pass


def _preview(raw: str, size: int = 200) -> str:
    if len(raw) <= size * 2:
        return raw
    return f"{raw[:size]} ... {raw[-size:]}"


def _check_structure(raw: str, min_chars: int) -> str:
    stripped = (raw or "").strip()
    if not stripped:
        raise SnapshotError("empty snapshot body")
    if len(stripped) < min_chars:
        raise SnapshotError(f"snapshot implausibly short ({len(stripped)} chars)")
    expected_closer = _CLOSING_TOKENS.get(stripped[0])
    if expected_closer is None:
        raise SnapshotError(f"snapshot does not start with a JSON container: {stripped[0]!r}")
    if not stripped.endswith(expected_closer):
        raise SnapshotError(f"snapshot appears truncated, does not end with {expected_closer!r}")
    return stripped


def dedupe_postings(postings: list[Posting]) -> list[Posting]:
    seen: set[str] = set()
    deduped: list[Posting] = []
    for posting in postings:
        if posting.id in seen:
            continue
        seen.add(posting.id)
        deduped.append(posting)
    return deduped


def _listed_postings(items: list[Any]) -> list[Posting]:
    postings: list[Posting] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        posting = Posting.from_payload(item)
        if not posting.id:
            log.debug("skipping posting without id: %s", item.get("title"))
            continue
        if not posting.is_listed:
            continue
        postings.append(posting)
    return dedupe_postings(postings)


def parse_new_snapshot(raw: str, *, min_chars: int = DEFAULT_MIN_SNAPSHOT_CHARS) -> list[Posting]:
    """Strictly parse a freshly fetched snapshot into its listed postings.

    Raises ``SnapshotError`` for empty, short, truncated or malformed bodies and for
    bodies without a ``jobs`` array.
    """
    stripped = _check_structure(raw, min_chars)
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"snapshot is not well-formed JSON: {exc}") from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("jobs"), list):
        raise SnapshotError("snapshot has no 'jobs' array")
    return _listed_postings(payload["jobs"])


def _ids_from_items(items: list[Any]) -> set[str]:
    return {
        str(item["id"]).strip()
        for item in items
        if isinstance(item, dict) and item.get("id") is not None
    }


def _ids_as_posting_array(decoded: Any) -> set[str] | None:
    if isinstance(decoded, list):
        return _ids_from_items(decoded)
    return None


def _ids_as_envelope(decoded: Any) -> set[str] | None:
    if isinstance(decoded, dict) and isinstance(decoded.get("jobs"), list):
        return _ids_from_items(decoded["jobs"])
    return None


def parse_old_posting_ids(old_snapshot: str) -> set[str] | None:
    """Return the posting ids of a stored snapshot, or None if no encoding fits.

    Stored values are either a bare posting array (older rows) or a full response
    envelope with a ``jobs`` array.
    """
    try:
        decoded = json.loads(old_snapshot)
    except (json.JSONDecodeError, TypeError) as exc:
        log.warning("stored snapshot is not valid JSON: %s", exc)
        return None

    for decoder in (_ids_as_posting_array, _ids_as_envelope):
        try:
            ids = decoder(decoded)
        except (KeyError, TypeError, ValueError) as exc:
            log.debug("stored snapshot decoder %s failed: %s", decoder.__name__, exc)
            continue
        if ids is not None:
            return ids
    log.warning("stored snapshot matches no known encoding")
    return None


def diff_snapshots(
    old_snapshot: str | None,
    new_raw: str,
    *,
    min_chars: int = DEFAULT_MIN_SNAPSHOT_CHARS,
) -> DiffResult:
    try:
        current = parse_new_snapshot(new_raw, min_chars=min_chars)
    except SnapshotError as exc:
        log.error("rejecting fetched snapshot: %s", exc)
        log.debug("rejected snapshot preview: %s", _preview(new_raw or ""))
        return DiffResult(new_postings=[], parse_failure=True, error=str(exc))

    if old_snapshot is None or not old_snapshot.strip():
        return DiffResult(new_postings=current, listed_count=len(current))

    old_ids = parse_old_posting_ids(old_snapshot)
    if old_ids is None:
        # fail open
        return DiffResult(new_postings=current, listed_count=len(current))

    new_postings = [posting for posting in current if posting.id not in old_ids]
    return DiffResult(new_postings=new_postings, listed_count=len(current))
