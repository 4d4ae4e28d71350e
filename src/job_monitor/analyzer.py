"""Chunked AI scoring of new postings against the candidate profile."""
from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from job_monitor.config import Settings
from job_monitor.json_repair import loads_lenient
from job_monitor.log import get_logger
from job_monitor.models import EmployerConfig, MatchResult, Posting
from job_monitor.sanitize import sanitize_field

log = get_logger(__name__)

Scorer = Callable[[str], Awaitable[str]]
Sleeper = Callable[[float], Awaitable[None]]

FALLBACK_RATIONALE = "Analysis failed - using fallback"
_FIELD_LIMIT = 200


def fallback_result(posting: Posting) -> MatchResult:
    return MatchResult(posting=posting, score=0.0, rationale=FALLBACK_RATIONALE, is_match=False)


def _coerce_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:
        return 0.0
    return min(max(score, 0.0), 100.0)


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().casefold() == "true"
    return False


def _unwrap_content(decoded: Any) -> Any:
    """Return the assistant message of a chat-completion envelope, decoded if possible."""
    if not isinstance(decoded, dict) or "choices" not in decoded:
        return decoded
    try:
        content = decoded["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if isinstance(content, (dict, list)):
        return content
    if not isinstance(content, str):
        return None
    inner, stage = loads_lenient(content)
    if stage not in ("direct", "failed"):
        log.info("scoring reply content recovered at stage %s", stage)
    return inner


def _result_items(decoded: Any) -> list[dict[str, Any]] | None:
    if isinstance(decoded, dict):
        jobs = decoded.get("jobs")
        if isinstance(jobs, list):
            decoded = jobs
        elif "jobId" in decoded or "id" in decoded:
            decoded = [decoded]
        else:
            return None
    if not isinstance(decoded, list):
        return None
    return [item for item in decoded if isinstance(item, dict)]


def parse_scoring_response(raw: str, postings: list[Posting], threshold: float) -> list[MatchResult]:
    """Map a scoring reply onto ``postings``; one result per posting, in order.

    Postings the reply does not mention, and every posting when the reply cannot be
    recovered, get the fallback result.
    """
    decoded, stage = loads_lenient(raw)
    if stage not in ("direct", "failed"):
        log.info("scoring reply recovered at stage %s", stage)
    items = _result_items(_unwrap_content(decoded))
    if items is None:
        log.error("scoring reply unusable, falling back for %d postings", len(postings))
        return [fallback_result(posting) for posting in postings]

    wanted = {posting.id for posting in postings}
    by_id: dict[str, dict[str, Any]] = {}
    for item in items:
        job_id = str(item.get("jobId", item.get("id", ""))).strip()
        if job_id not in wanted:
            if job_id:
                log.debug("ignoring score for unknown posting id %s", job_id)
            continue
        by_id.setdefault(job_id, item)

    results: list[MatchResult] = []
    for posting in postings:
        item = by_id.get(posting.id)
        if item is None:
            log.warning("no score returned for posting %s, using fallback", posting.id)
            results.append(fallback_result(posting))
            continue
        score = _coerce_score(item.get("score"))
        rationale = str(item.get("whyGoodMatch") or item.get("rationale") or "").strip()
        results.append(
            MatchResult(
                posting=posting,
                score=score,
                rationale=rationale,
                is_match=_coerce_flag(item.get("isMatch")) and score >= threshold,
            )
        )
    return results


class BatchMatchAnalyzer:
    def __init__(
        self,
        scorer: Scorer,
        candidate_profile: str,
        *,
        threshold: float = 70.0,
        small_batch_limit: int = 20,
        medium_batch_limit: int = 50,
        medium_chunk_size: int = 25,
        large_chunk_size: int = 20,
        chunk_delay_seconds: float = 1.0,
        description_char_limit: int = 500,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.scorer = scorer
        self.candidate_profile = candidate_profile
        self.threshold = threshold
        self.small_batch_limit = small_batch_limit
        self.medium_batch_limit = medium_batch_limit
        self.medium_chunk_size = medium_chunk_size
        self.large_chunk_size = large_chunk_size
        self.chunk_delay_seconds = chunk_delay_seconds
        self.description_char_limit = description_char_limit
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, scorer: Scorer, candidate_profile: str) -> "BatchMatchAnalyzer":
        return cls(
            scorer,
            candidate_profile,
            threshold=settings.match_threshold,
            small_batch_limit=settings.small_batch_limit,
            medium_batch_limit=settings.medium_batch_limit,
            medium_chunk_size=settings.medium_chunk_size,
            large_chunk_size=settings.large_chunk_size,
            chunk_delay_seconds=settings.chunk_delay_seconds,
            description_char_limit=settings.description_char_limit,
        )

    def chunk_size_for(self, total: int) -> int:
        if total <= self.small_batch_limit:
            return max(total, 1)
        if total <= self.medium_batch_limit:
            return self.medium_chunk_size
        return self.large_chunk_size

    def chunk_postings(self, postings: list[Posting]) -> list[list[Posting]]:
        size = self.chunk_size_for(len(postings))
        return [postings[start : start + size] for start in range(0, len(postings), size)]

    def _posting_payload(self, posting: Posting) -> dict[str, Any]:
        return {
            "jobId": posting.id,
            "title": sanitize_field(posting.title, _FIELD_LIMIT),
            "department": sanitize_field(posting.department, _FIELD_LIMIT),
            "team": sanitize_field(posting.team, _FIELD_LIMIT),
            "employmentType": sanitize_field(posting.employment_type, _FIELD_LIMIT),
            "location": sanitize_field(posting.location, _FIELD_LIMIT),
            "remote": posting.is_remote,
            "publishedAt": posting.published_at or "Unknown",
            "description": sanitize_field(posting.description, self.description_char_limit),
        }

    def build_prompt(self, employer: EmployerConfig, postings: list[Posting]) -> str:
        jobs = json.dumps([self._posting_payload(posting) for posting in postings], ensure_ascii=False, indent=1)
        threshold = f"{self.threshold:g}"
        return "\n".join(
            [
                "You are an expert job matching assistant. Score each job posting against the candidate.",
                "",
                "CANDIDATE:",
                sanitize_field(self.candidate_profile, 4000),
                "",
                f"COMPANY: {sanitize_field(employer.name, _FIELD_LIMIT)}",
                "",
                "JOB POSTINGS (JSON):",
                jobs,
                "",
                "Return a JSON object with exactly this structure:",
                '{"jobs": [{"jobId": "<id from the postings>", "score": 85, '
                '"whyGoodMatch": "<short reasoning>", "isMatch": true}]}',
                "",
                "RULES:",
                "1. Use the exact jobId of each posting and return one entry per posting.",
                f"2. Only set isMatch to true if score >= {threshold}.",
                "3. Scores range from 0 to 100.",
                "4. Exclude roles that require far more experience than the candidate has.",
            ]
        )

    async def _analyze_chunk(self, employer: EmployerConfig, chunk: list[Posting]) -> list[MatchResult]:
        prompt = self.build_prompt(employer, chunk)
        log.debug("scoring %d postings for %s, prompt %d chars", len(chunk), employer.name, len(prompt))
        try:
            raw = await self.scorer(prompt)
        except Exception as exc:
            log.error("scoring failed for %s (%d postings): %s", employer.name, len(chunk), exc)
            return [fallback_result(posting) for posting in chunk]
        return parse_scoring_response(raw, chunk, self.threshold)

    async def analyze(self, employer: EmployerConfig, postings: list[Posting]) -> list[MatchResult]:
        """Score ``postings`` chunk by chunk; never raises."""
        if not postings:
            return []
        chunks = self.chunk_postings(postings)
        log.info("analyzing %d postings for %s in %d chunk(s)", len(postings), employer.name, len(chunks))

        results: list[MatchResult] = []
        for index, chunk in enumerate(chunks):
            if index > 0 and self.chunk_delay_seconds > 0:
                await self._sleep(self.chunk_delay_seconds)
            try:
                results.extend(await self._analyze_chunk(employer, chunk))
            except Exception:
                log.exception("unexpected error analyzing chunk %d for %s", index + 1, employer.name)
                results.extend(fallback_result(posting) for posting in chunk)

        matched = sum(1 for result in results if result.is_match)
        log.info("%s: %d of %d postings matched", employer.name, matched, len(results))
        return results
