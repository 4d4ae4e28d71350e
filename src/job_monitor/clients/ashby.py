from __future__ import annotations

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from job_monitor.config import Settings
from job_monitor.log import get_logger

log = get_logger(__name__)


class JobBoardError(Exception):
    pass


class JobBoardClient:
    """Fetches an employer's raw posting listing from the job-board API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        user_agent: str = "job-monitor/0.1",
        retry_attempts: int = 3,
        retry_wait_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.retry_attempts = retry_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobBoardClient":
        return cls(
            settings.job_board_base_url,
            timeout_seconds=settings.request_timeout_seconds,
            user_agent=settings.user_agent,
            retry_attempts=settings.fetch_retry_attempts,
        )

    async def _get_once(self, url: str) -> str:
        response = await self._client.get(url)
        response.raise_for_status()
        body = response.text
        if not body.strip():
            raise JobBoardError(f"empty body from {url}")
        content_type = response.headers.get("Content-Type", "")
        if content_type and "json" not in content_type:
            log.warning("unexpected content type %s from %s", content_type, url)
        return body

    async def fetch_snapshot(self, external_id: str) -> str:
        url = f"{self.base_url}/{external_id}"
        log.info("fetching postings from %s", url)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_fixed(self.retry_wait_seconds),
                retry=retry_if_exception_type((httpx.HTTPError, JobBoardError)),
                reraise=True,
            ):
                with attempt:
                    body = await self._get_once(url)
        except httpx.HTTPError as exc:
            raise JobBoardError(f"fetch failed for {external_id}: {exc}") from exc
        log.debug("fetched %d chars for %s", len(body), external_id)
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
