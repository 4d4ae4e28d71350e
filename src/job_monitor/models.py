from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bs4 import BeautifulSoup


def _text_or_empty(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().casefold() in {"true", "1", "yes"}
    return bool(value)


def html_to_text(markup: str) -> str:
    if not markup:
        return ""
    return BeautifulSoup(markup, "html.parser").get_text(" ", strip=True)


@dataclass(frozen=True)
class EmployerConfig:
    name: str
    external_id: str


@dataclass(frozen=True)
class Posting:
    id: str
    title: str = ""
    department: str = ""
    team: str = ""
    employment_type: str = ""
    location: str = ""
    is_remote: bool = False
    published_at: str | None = None
    description: str = ""
    is_listed: bool = True
    job_url: str | None = None
    apply_url: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Posting":
        """Build a posting from one job-board JSON object.

        Only an explicit true ``isListed`` marks a posting as listed.
        """
        description = _text_or_empty(payload.get("descriptionPlain"))
        if not description:
            description = html_to_text(_text_or_empty(payload.get("descriptionHtml")))

        return cls(
            id=_text_or_empty(payload.get("id")),
            title=_text_or_empty(payload.get("title")),
            department=_text_or_empty(payload.get("department")),
            team=_text_or_empty(payload.get("team")),
            employment_type=_text_or_empty(payload.get("employmentType")),
            location=_text_or_empty(payload.get("location")),
            is_remote=_is_truthy(payload.get("isRemote")),
            published_at=_text_or_empty(payload.get("publishedAt")) or None,
            description=description,
            is_listed=_is_truthy(payload.get("isListed")),
            job_url=_text_or_empty(payload.get("jobUrl")) or None,
            apply_url=_text_or_empty(payload.get("applyUrl")) or None,
        )


@dataclass(frozen=True)
class DiffResult:
    new_postings: list[Posting]
    parse_failure: bool = False
    error: str | None = None
    listed_count: int = 0


@dataclass(frozen=True)
class WorkItem:
    employer: EmployerConfig
    postings: list[Posting]


@dataclass(frozen=True)
class MatchResult:
    posting: Posting
    score: float
    rationale: str
    is_match: bool


@dataclass(frozen=True)
class DeliveryReceipt:
    posting: Posting
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class QueueStatus:
    queued: int
    active: int
    capacity: int
    concurrency_limit: int
    reserved: int = 0
    rejected: int = 0


class PollPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    COMPARING = "comparing"
    COMMITTING = "committing"
    FAILED = "failed"


class PollStatus(str, Enum):
    COMMITTED = "committed"
    UNCHANGED = "unchanged"
    FETCH_FAILED = "fetch_failed"
    PARSE_FAILED = "parse_failed"
    QUEUE_FULL = "queue_full"
    COMMIT_FAILED = "commit_failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PollOutcome:
    employer: EmployerConfig
    status: PollStatus
    new_count: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (PollStatus.COMMITTED, PollStatus.UNCHANGED)


@dataclass
class EmployerState:
    phase: PollPhase = PollPhase.IDLE
    in_flight: bool = False
    failure_streak: int = 0
    last_status: PollStatus | None = None


@dataclass
class RunSummary:
    employers_polled: int = 0
    employers_failed: int = 0
    new_postings: int = 0
    batches_processed: int = 0
    matches: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    error_messages: list[str] = field(default_factory=list)
