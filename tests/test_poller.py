import asyncio
import json
import sqlite3

from job_monitor.models import EmployerConfig, PollPhase, PollStatus, WorkItem
from job_monitor.poller import PollOrchestrator
from job_monitor.storage import SnapshotStore
from job_monitor.work_queue import WorkQueue

ACME = EmployerConfig(name="Acme", external_id="acme")
ZETA = EmployerConfig(name="Zeta", external_id="zeta")


def _snapshot(*ids: str) -> str:
    jobs = [{"id": job_id, "title": f"Role {job_id}", "isListed": True} for job_id in ids]
    return json.dumps({"apiVersion": "1", "jobs": jobs})


class FakeBoard:
    def __init__(self, **bodies: str):
        self.bodies = dict(bodies)
        self.calls: list[str] = []

    async def fetch(self, external_id: str) -> str:
        self.calls.append(external_id)
        body = self.bodies[external_id]
        if isinstance(body, Exception):
            raise body
        return body


class FailingCommitStore(SnapshotStore):
    def upsert_snapshot(self, employer, raw_snapshot, updated_at_utc=None) -> None:
        raise sqlite3.OperationalError("database is locked")


def _setup(store: SnapshotStore, board: FakeBoard, *, capacity: int = 10, handler=None):
    received: list[WorkItem] = []

    async def record(item: WorkItem) -> None:
        received.append(item)

    queue = WorkQueue(handler or record, capacity=capacity, concurrency_limit=1)
    orchestrator = PollOrchestrator(store, board.fetch, queue, error_alert_threshold=2)
    return orchestrator, queue, received


def _ids(item: WorkItem) -> list[str]:
    return [posting.id for posting in item.postings]


def test_first_poll_commits_and_enqueues_every_listed_posting(tmp_path) -> None:
    board = FakeBoard(acme=_snapshot("1", "2"))

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        store.add_employer("Acme", "acme")
        orchestrator, queue, received = _setup(store, board)

        async def scenario():
            outcome = await orchestrator.poll_employer(ACME)
            await queue.drain()
            return outcome

        outcome = asyncio.run(scenario())

        assert outcome.status == PollStatus.COMMITTED
        assert outcome.new_count == 2
        assert [_ids(item) for item in received] == [["1", "2"]]
        assert store.get_snapshot("Acme") == board.bodies["acme"]
        assert orchestrator.state_for("Acme").phase == PollPhase.IDLE


def test_repoll_without_upstream_change_finds_nothing(tmp_path) -> None:
    board = FakeBoard(acme=_snapshot("1", "2"))

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        orchestrator, queue, received = _setup(store, board)

        async def scenario():
            first = await orchestrator.poll_employer(ACME)
            updated_at = store.get_updated_at("Acme")
            second = await orchestrator.poll_employer(ACME)
            await queue.drain()
            return first, second, updated_at

        first, second, updated_at = asyncio.run(scenario())

        assert first.status == PollStatus.COMMITTED
        assert second.status == PollStatus.UNCHANGED
        assert second.new_count == 0
        assert len(received) == 1
        assert store.get_updated_at("Acme") == updated_at


def test_only_added_postings_are_enqueued(tmp_path) -> None:
    board = FakeBoard(acme=_snapshot("1", "2"))

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        store.upsert_snapshot(ACME, _snapshot("1"))
        orchestrator, queue, received = _setup(store, board)

        async def scenario():
            await orchestrator.poll_employer(ACME)
            board.bodies["acme"] = _snapshot("1", "2", "3")
            await orchestrator.poll_employer(ACME)
            await queue.drain()

        asyncio.run(scenario())

        assert [_ids(item) for item in received] == [["2"], ["3"]]


def test_corrupt_fetch_keeps_stored_snapshot_and_loses_nothing(tmp_path) -> None:
    board = FakeBoard(acme=_snapshot("1", "2")[:-3])

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        store.upsert_snapshot(ACME, _snapshot("1"))
        orchestrator, queue, received = _setup(store, board)

        async def scenario():
            rejected = await orchestrator.poll_employer(ACME)
            board.bodies["acme"] = _snapshot("1", "2")
            accepted = await orchestrator.poll_employer(ACME)
            await queue.drain()
            return rejected, accepted

        rejected, accepted = asyncio.run(scenario())

        assert rejected.status == PollStatus.PARSE_FAILED
        assert accepted.status == PollStatus.COMMITTED
        assert [_ids(item) for item in received] == [["2"]]
        assert store.get_snapshot("Acme") == _snapshot("1", "2")


def test_fetch_failure_counts_towards_failure_streak(tmp_path) -> None:
    board = FakeBoard(acme=ConnectionError("connection reset"))

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        store.add_employer("Acme", "acme")
        orchestrator, queue, _ = _setup(store, board)

        async def scenario():
            outcomes = [await orchestrator.poll_employer(ACME) for _ in range(2)]
            board.bodies["acme"] = _snapshot("1")
            outcomes.append(await orchestrator.poll_employer(ACME))
            await queue.drain()
            return outcomes

        outcomes = asyncio.run(scenario())

        assert [outcome.status for outcome in outcomes] == [
            PollStatus.FETCH_FAILED,
            PollStatus.FETCH_FAILED,
            PollStatus.COMMITTED,
        ]
        assert "connection reset" in outcomes[0].error
        assert orchestrator.state_for("Acme").failure_streak == 0
        assert [row["status"] for row in store.recent_polls()] == ["committed", "fetch_failed", "fetch_failed"]


def test_empty_body_is_a_fetch_failure(tmp_path) -> None:
    board = FakeBoard(acme="  ")

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        orchestrator, _, _ = _setup(store, board)
        outcome = asyncio.run(orchestrator.poll_employer(ACME))

        assert outcome.status == PollStatus.FETCH_FAILED
        assert orchestrator.state_for("Acme").phase == PollPhase.FAILED
        assert orchestrator.state_for("Acme").failure_streak == 1


def test_full_queue_defers_commit_until_there_is_room(tmp_path) -> None:
    board = FakeBoard(acme=_snapshot("1", "2"))

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        store.add_employer("Acme", "acme")
        gate = asyncio.Event()
        received: list[WorkItem] = []

        async def handler(item: WorkItem) -> None:
            await gate.wait()
            received.append(item)

        orchestrator, queue, _ = _setup(store, board, capacity=1, handler=handler)
        blocker = WorkItem(employer=ZETA, postings=[])

        async def scenario():
            queue.enqueue(blocker)
            queue.enqueue(blocker)
            deferred = await orchestrator.poll_employer(ACME)
            snapshot_while_full = store.get_snapshot("Acme")
            gate.set()
            await queue.drain()
            retried = await orchestrator.poll_employer(ACME)
            await queue.drain()
            return deferred, snapshot_while_full, retried

        deferred, snapshot_while_full, retried = asyncio.run(scenario())

        assert deferred.status == PollStatus.QUEUE_FULL
        assert snapshot_while_full is None
        assert retried.status == PollStatus.COMMITTED
        assert [_ids(item) for item in received if item.employer == ACME] == [["1", "2"]]


def test_failed_commit_releases_reservation_and_enqueues_nothing(tmp_path) -> None:
    board = FakeBoard(acme=_snapshot("1"))

    with FailingCommitStore(tmp_path / "monitor.sqlite") as store:
        orchestrator, queue, received = _setup(store, board)

        async def scenario():
            outcome = await orchestrator.poll_employer(ACME)
            await asyncio.wait_for(queue.drain(), timeout=1)
            return outcome

        outcome = asyncio.run(scenario())

        assert outcome.status == PollStatus.COMMIT_FAILED
        assert "locked" in outcome.error
        assert received == []
        assert queue.status().reserved == 0


def test_poll_still_in_flight_is_skipped(tmp_path) -> None:
    gate = asyncio.Event()
    calls: list[str] = []

    async def slow_fetch(external_id: str) -> str:
        calls.append(external_id)
        await gate.wait()
        return _snapshot("1")

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        queue = WorkQueue(lambda item: asyncio.sleep(0), capacity=5, concurrency_limit=1)
        orchestrator = PollOrchestrator(store, slow_fetch, queue)

        async def scenario():
            first = asyncio.ensure_future(orchestrator.poll_employer(ACME))
            await asyncio.sleep(0)
            second = await orchestrator.poll_employer(ACME)
            gate.set()
            outcome = await first
            await queue.drain()
            return outcome, second

        first, second = asyncio.run(scenario())

        assert second.status == PollStatus.SKIPPED
        assert first.status == PollStatus.COMMITTED
        assert calls == ["acme"]


def test_one_failing_employer_does_not_block_the_others(tmp_path) -> None:
    board = FakeBoard(acme=TimeoutError("read timeout"), zeta=_snapshot("9"))

    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        store.add_employer("Acme", "acme")
        store.add_employer("Zeta", "zeta")
        orchestrator, queue, received = _setup(store, board)

        async def scenario():
            orchestrator.refresh_employers()
            outcomes = await orchestrator.poll_all()
            await queue.drain()
            return outcomes

        outcomes = asyncio.run(scenario())

        assert {outcome.employer.name: outcome.status for outcome in outcomes} == {
            "Acme": PollStatus.FETCH_FAILED,
            "Zeta": PollStatus.COMMITTED,
        }
        assert [_ids(item) for item in received] == [["9"]]


def test_ready_fires_only_once_employers_exist(tmp_path) -> None:
    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        orchestrator, _, _ = _setup(store, FakeBoard())

        assert orchestrator.refresh_employers() == []
        assert not orchestrator.ready.is_set()

        store.add_employer("Acme", "acme")
        assert orchestrator.refresh_employers() == [ACME]
        assert orchestrator.ready.is_set()


def test_run_forever_polls_then_stops(tmp_path) -> None:
    with SnapshotStore(tmp_path / "monitor.sqlite") as store:
        store.add_employer("Acme", "acme")

        async def scenario() -> list[str]:
            stop = asyncio.Event()
            polled: list[str] = []

            async def fetch(external_id: str) -> str:
                polled.append(external_id)
                stop.set()
                return _snapshot("1")

            queue = WorkQueue(lambda item: asyncio.sleep(0), capacity=5, concurrency_limit=1)
            orchestrator = PollOrchestrator(store, fetch, queue)
            await asyncio.wait_for(orchestrator.run_forever(3600, 3600, stop), timeout=5)
            await queue.drain()
            return polled

        assert asyncio.run(scenario()) == ["acme"]
        assert store.get_snapshot("Acme") == _snapshot("1")


def test_run_forever_waits_for_employers_until_stopped(tmp_path) -> None:
    with SnapshotStore(tmp_path / "monitor.sqlite") as store:

        async def scenario() -> None:
            stop = asyncio.Event()
            queue = WorkQueue(lambda item: asyncio.sleep(0), capacity=5, concurrency_limit=1)
            orchestrator = PollOrchestrator(store, FakeBoard().fetch, queue)
            asyncio.get_running_loop().call_later(0.05, stop.set)
            await asyncio.wait_for(orchestrator.run_forever(3600, 3600, stop), timeout=5)
            assert not orchestrator.ready.is_set()

        asyncio.run(scenario())
