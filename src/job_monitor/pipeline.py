from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from job_monitor.analyzer import BatchMatchAnalyzer, Scorer
from job_monitor.candidate import load_candidate_profile
from job_monitor.clients.ashby import JobBoardClient
from job_monitor.clients.mistral import MistralClient
from job_monitor.clients.slack import SlackClient
from job_monitor.config import Settings, assert_slack_configured
from job_monitor.log import get_logger
from job_monitor.models import PollStatus, RunSummary, WorkItem
from job_monitor.notifier import NotificationDispatcher, Sender
from job_monitor.poller import Fetcher, PollOrchestrator
from job_monitor.storage import SnapshotStore
from job_monitor.work_queue import WorkQueue

log = get_logger(__name__)

Closer = Callable[[], Awaitable[None]]


class Monitor:
    """The fully wired discovery-to-notification graph."""

    def __init__(
        self,
        settings: Settings,
        store: SnapshotStore,
        analyzer: BatchMatchAnalyzer,
        dispatcher: NotificationDispatcher,
        fetch_snapshot: Fetcher,
        *,
        closers: list[Closer] | None = None,
    ):
        self.settings = settings
        self.store = store
        self.analyzer = analyzer
        self.dispatcher = dispatcher
        self.summary = RunSummary()
        self.queue = WorkQueue(
            self.process_work_item,
            capacity=settings.queue_capacity,
            concurrency_limit=settings.queue_concurrency,
        )
        self.orchestrator = PollOrchestrator(
            store,
            fetch_snapshot,
            self.queue,
            min_snapshot_chars=settings.min_snapshot_chars,
            error_alert_threshold=settings.error_alert_threshold,
        )
        self._closers = closers or []

    async def process_work_item(self, item: WorkItem) -> None:
        results = await self.analyzer.analyze(item.employer, item.postings)
        receipts = await self.dispatcher.notify_matches(item.employer, results)

        summary = self.summary
        summary.batches_processed += 1
        summary.matches += sum(1 for result in results if result.is_match)
        for receipt in receipts:
            if receipt.success:
                summary.delivered += 1
            else:
                summary.delivery_failures += 1
                summary.error_messages.append(f"{item.employer.name}/{receipt.posting.id}: {receipt.error}")

    async def run_once(self) -> RunSummary:
        """Poll every employer once and wait until every admitted batch is processed."""
        self.summary = summary = RunSummary()
        self.orchestrator.refresh_employers()
        outcomes = await self.orchestrator.poll_all()
        await self.queue.drain()

        for outcome in outcomes:
            if outcome.status == PollStatus.SKIPPED:
                continue
            summary.employers_polled += 1
            summary.new_postings += outcome.new_count
            if not outcome.succeeded:
                summary.employers_failed += 1
                detail = f" ({outcome.error})" if outcome.error else ""
                summary.error_messages.append(f"{outcome.employer.name}: {outcome.status.value}{detail}")
        return summary

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        log.info(
            "monitor started: poll every %.0f min, discovery every %.0f min",
            self.settings.poll_interval_minutes,
            self.settings.discovery_interval_minutes,
        )
        try:
            await self.orchestrator.run_forever(
                self.settings.poll_interval_minutes * 60,
                self.settings.discovery_interval_minutes * 60,
                stop,
            )
        finally:
            await self.queue.drain()

    async def aclose(self) -> None:
        for close in self._closers:
            try:
                await close()
            except Exception as exc:
                log.warning("error while closing client: %s", exc)
        self.store.close()

    async def __aenter__(self) -> "Monitor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def build_monitor(
    settings: Settings,
    *,
    store: SnapshotStore | None = None,
    fetch_snapshot: Fetcher | None = None,
    scorer: Scorer | None = None,
    send: Sender | None = None,
) -> Monitor:
    """Build every component up front; transports not injected are created from settings."""
    closers: list[Closer] = []

    if fetch_snapshot is None:
        job_board = JobBoardClient.from_settings(settings)
        fetch_snapshot = job_board.fetch_snapshot
        closers.append(job_board.aclose)
    if scorer is None:
        mistral = MistralClient.from_settings(settings)
        scorer = mistral.complete
        closers.append(mistral.aclose)
    if send is None:
        assert_slack_configured(settings)
        slack = SlackClient.from_settings(settings)
        send = slack.send
        closers.append(slack.aclose)

    candidate_profile = load_candidate_profile(settings.candidate_profile_path)
    analyzer = BatchMatchAnalyzer.from_settings(settings, scorer, candidate_profile)
    dispatcher = NotificationDispatcher(send)
    return Monitor(
        settings,
        store or SnapshotStore(settings.snapshot_db_path),
        analyzer,
        dispatcher,
        fetch_snapshot,
        closers=closers,
    )


async def run_once(settings: Settings, **overrides: Any) -> RunSummary:
    async with build_monitor(settings, **overrides) as monitor:
        return await monitor.run_once()
