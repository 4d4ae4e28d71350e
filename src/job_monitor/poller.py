"""Per-employer poll cycles: fetch, diff against the stored snapshot, commit, enqueue."""
from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Awaitable, Callable

from job_monitor.diff import DEFAULT_MIN_SNAPSHOT_CHARS, diff_snapshots
from job_monitor.log import get_logger
from job_monitor.models import (
    EmployerConfig,
    EmployerState,
    PollOutcome,
    PollPhase,
    PollStatus,
    WorkItem,
)
from job_monitor.storage import SnapshotStore
from job_monitor.work_queue import WorkQueue

log = get_logger(__name__)

Fetcher = Callable[[str], Awaitable[str]]

# status reported when an unexpected error escapes a phase
_FAILURE_BY_PHASE = {
    PollPhase.FETCHING: PollStatus.FETCH_FAILED,
    PollPhase.COMPARING: PollStatus.PARSE_FAILED,
    PollPhase.COMMITTING: PollStatus.COMMIT_FAILED,
}


class PollOrchestrator:
    """Polls every known employer and feeds new postings into the work queue.

    A stored snapshot is only replaced after the fetched body was diffed against it,
    and only once a queue slot for the new postings is reserved. If the queue is
    full, nothing is committed and the same postings are found again next cycle.
    """

    def __init__(
        self,
        store: SnapshotStore,
        fetch_snapshot: Fetcher,
        work_queue: WorkQueue,
        *,
        min_snapshot_chars: int = DEFAULT_MIN_SNAPSHOT_CHARS,
        error_alert_threshold: int = 3,
    ):
        self.store = store
        self.fetch_snapshot = fetch_snapshot
        self.work_queue = work_queue
        self.min_snapshot_chars = min_snapshot_chars
        self.error_alert_threshold = error_alert_threshold
        self.employers: list[EmployerConfig] = []
        self.states: dict[str, EmployerState] = {}
        self.ready = asyncio.Event()
        self._tasks: set[asyncio.Task[PollOutcome]] = set()

    def state_for(self, employer_name: str) -> EmployerState:
        return self.states.setdefault(employer_name, EmployerState())

    def refresh_employers(self) -> list[EmployerConfig]:
        try:
            employers = self.store.list_employers()
        except sqlite3.Error as exc:
            log.error("employer discovery failed, keeping %d known employers: %s", len(self.employers), exc)
            return self.employers

        self.employers = employers
        for employer in employers:
            self.state_for(employer.name)
        log.info("discovered %d employers", len(employers))
        if employers and not self.ready.is_set():
            log.info("employer list populated, polling can start")
            self.ready.set()
        return employers

    async def poll_employer(self, employer: EmployerConfig) -> PollOutcome:
        state = self.state_for(employer.name)
        if state.in_flight:
            log.info("previous poll for %s still running, skipping", employer.name)
            return PollOutcome(employer=employer, status=PollStatus.SKIPPED)

        state.in_flight = True
        try:
            outcome = await self._poll(employer, state)
        except Exception as exc:
            log.exception("unexpected error polling %s during %s", employer.name, state.phase.value)
            status = _FAILURE_BY_PHASE.get(state.phase, PollStatus.FETCH_FAILED)
            state.phase = PollPhase.FAILED
            outcome = PollOutcome(employer=employer, status=status, error=f"unexpected error: {exc}")
        finally:
            state.in_flight = False

        self._record(state, outcome)
        return outcome

    async def _poll(self, employer: EmployerConfig, state: EmployerState) -> PollOutcome:
        state.phase = PollPhase.FETCHING
        try:
            raw = await self.fetch_snapshot(employer.external_id)
        except Exception as exc:
            log.error("fetch failed for %s: %s", employer.name, exc)
            return self._fail(employer, state, PollStatus.FETCH_FAILED, str(exc))
        if not raw or not raw.strip():
            return self._fail(employer, state, PollStatus.FETCH_FAILED, "empty response body")

        # no await from here on: read, diff and write happen back to back
        state.phase = PollPhase.COMPARING
        old = self.store.get_snapshot(employer.name)
        if old is not None and old == raw:
            state.phase = PollPhase.IDLE
            log.debug("snapshot for %s unchanged", employer.name)
            return PollOutcome(employer=employer, status=PollStatus.UNCHANGED)

        diff = diff_snapshots(old, raw, min_chars=self.min_snapshot_chars)
        if diff.parse_failure:
            log.error("snapshot for %s rejected, stored snapshot kept: %s", employer.name, diff.error)
            return self._fail(employer, state, PollStatus.PARSE_FAILED, diff.error)

        state.phase = PollPhase.COMMITTING
        new_postings = diff.new_postings
        reserved = False
        if new_postings:
            if not self.work_queue.try_reserve(employer.name):
                return self._fail(
                    employer,
                    state,
                    PollStatus.QUEUE_FULL,
                    f"work queue full, {len(new_postings)} new postings deferred",
                )
            reserved = True

        try:
            self.store.upsert_snapshot(employer, raw)
        except sqlite3.Error as exc:
            if reserved:
                self.work_queue.release_reservation(employer.name)
            log.error("snapshot commit failed for %s: %s", employer.name, exc)
            return self._fail(employer, state, PollStatus.COMMIT_FAILED, str(exc))

        if reserved:
            self.work_queue.enqueue(WorkItem(employer=employer, postings=new_postings), reserved=True)
        state.phase = PollPhase.IDLE
        log.info(
            "%s: %d listed postings, %d new",
            employer.name,
            diff.listed_count,
            len(new_postings),
        )
        return PollOutcome(employer=employer, status=PollStatus.COMMITTED, new_count=len(new_postings))

    def _fail(
        self,
        employer: EmployerConfig,
        state: EmployerState,
        status: PollStatus,
        error: str | None,
    ) -> PollOutcome:
        state.phase = PollPhase.FAILED
        return PollOutcome(employer=employer, status=status, error=error)

    def _record(self, state: EmployerState, outcome: PollOutcome) -> None:
        name = outcome.employer.name
        state.last_status = outcome.status
        if outcome.succeeded:
            if state.failure_streak >= self.error_alert_threshold:
                log.info("%s recovered after %d failed polls", name, state.failure_streak)
            state.failure_streak = 0
        else:
            state.failure_streak += 1
            if state.failure_streak >= self.error_alert_threshold:
                log.error(
                    "%s failed %d consecutive polls (last: %s %s)",
                    name,
                    state.failure_streak,
                    outcome.status.value,
                    outcome.error,
                )

        try:
            self.store.log_poll(outcome)
        except sqlite3.Error as exc:
            log.warning("could not record poll outcome for %s: %s", name, exc)

    async def poll_all(self) -> list[PollOutcome]:
        employers = list(self.employers)
        if not employers:
            log.info("no employers to poll")
            return []
        return list(await asyncio.gather(*(self.poll_employer(employer) for employer in employers)))

    def start_poll_cycle(self) -> list[asyncio.Task[PollOutcome]]:
        """Start one poll task per employer without waiting for any of them."""
        tasks = []
        for employer in list(self.employers):
            task = asyncio.get_running_loop().create_task(
                self.poll_employer(employer), name=f"poll:{employer.name}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def _wait_for_stop(self, stop: asyncio.Event, timeout: float) -> bool:
        try:
            await asyncio.wait_for(stop.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _discovery_loop(self, interval_seconds: float, stop: asyncio.Event) -> None:
        while not await self._wait_for_stop(stop, interval_seconds):
            self.refresh_employers()

    async def _wait_until_ready(self, stop: asyncio.Event) -> bool:
        ready_wait = asyncio.ensure_future(self.ready.wait())
        stop_wait = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({ready_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready_wait.cancel()
            stop_wait.cancel()
        return self.ready.is_set() and not stop.is_set()

    async def run_forever(
        self,
        poll_interval_seconds: float,
        discovery_interval_seconds: float,
        stop: asyncio.Event,
    ) -> None:
        self.refresh_employers()
        discovery = asyncio.ensure_future(self._discovery_loop(discovery_interval_seconds, stop))
        try:
            if not self.ready.is_set():
                log.info("no employers yet, waiting for discovery")
            if not await self._wait_until_ready(stop):
                return
            while not stop.is_set():
                self.start_poll_cycle()
                if await self._wait_for_stop(stop, poll_interval_seconds):
                    break
        finally:
            discovery.cancel()
            pending = [discovery, *self._tasks]
            await asyncio.gather(*pending, return_exceptions=True)
