from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from job_monitor.log import get_logger
from job_monitor.models import DeliveryReceipt, EmployerConfig, MatchResult

log = get_logger(__name__)

Sender = Callable[[str], Awaitable["str | None"]]


def _or_unknown(value: str | None) -> str:
    return value or "Unknown"


def format_match_message(employer_name: str, result: MatchResult) -> str:
    posting = result.posting
    published = posting.published_at[:10] if posting.published_at else "Unknown"
    lines = [
        f":dart: *New Job Match Found at {employer_name}!*",
        "",
        f"*Job Title:* {_or_unknown(posting.title)}",
        f"*Department:* {_or_unknown(posting.department)}",
        f"*Team:* {_or_unknown(posting.team)}",
        f"*Location:* {_or_unknown(posting.location)}",
        f"*Employment Type:* {_or_unknown(posting.employment_type)}",
        f"*Remote:* {'Yes' if posting.is_remote else 'No'}",
        f"*Published:* {published}",
        f"*Match Score:* {result.score:.1f}%",
        "",
        "*Why This is a Good Match:*",
        result.rationale or "No reasoning provided",
    ]
    if posting.job_url or posting.apply_url:
        lines.append("")
    if posting.job_url:
        lines.append(f"*Job URL:* {posting.job_url}")
    if posting.apply_url:
        lines.append(f"*Apply URL:* {posting.apply_url}")
    return "\n".join(lines)


class NotificationDispatcher:
    """Hands matched results to the chat sender, one attempt each, and reports receipts."""

    def __init__(self, send: Sender):
        self._send = send

    async def notify(self, employer: EmployerConfig, result: MatchResult) -> DeliveryReceipt:
        posting = result.posting
        try:
            message_id = await self._send(format_match_message(employer.name, result))
        except Exception as exc:
            log.error("notification failed for %s posting %s: %s", employer.name, posting.id, exc)
            return DeliveryReceipt(posting=posting, success=False, error=str(exc))
        log.info("notified match %s (%s) for %s", posting.id, posting.title, employer.name)
        return DeliveryReceipt(posting=posting, success=True, message_id=message_id)

    async def notify_matches(self, employer: EmployerConfig, results: list[MatchResult]) -> list[DeliveryReceipt]:
        matched = [result for result in results if result.is_match]
        if not matched:
            return []
        return list(await asyncio.gather(*(self.notify(employer, result) for result in matched)))
