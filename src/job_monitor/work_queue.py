"""Bounded FIFO of new-posting batches with a concurrent-processing limit."""
from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import Awaitable, Callable

from job_monitor.log import get_logger
from job_monitor.models import QueueStatus, WorkItem

log = get_logger(__name__)

Handler = Callable[[WorkItem], Awaitable[None]]


class WorkQueue:
    """Admits batches up to ``capacity`` and runs at most ``concurrency_limit`` at once.

    Admission never blocks: a full queue rejects. ``enqueue`` and ``try_reserve``
    may be called from any thread: handler tasks always start on the event loop the
    queue last ran on, and batches admitted before any loop exists start on ``drain``.
    """

    def __init__(self, handler: Handler, *, capacity: int, concurrency_limit: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        self._handler = handler
        self._capacity = capacity
        self._concurrency_limit = concurrency_limit
        self._items: deque[WorkItem] = deque()
        self._lock = threading.Lock()
        self._active = 0
        self._active_by_employer: dict[str, int] = {}
        self._reserved = 0
        self._rejected = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    def _full(self) -> bool:
        return len(self._items) + self._reserved >= self._capacity

    def try_reserve(self, employer_name: str) -> bool:
        with self._lock:
            if self._full():
                self._rejected += 1
                log.warning(
                    "queue full (%d queued, %d reserved, capacity %d), refusing reservation for %s",
                    len(self._items),
                    self._reserved,
                    self._capacity,
                    employer_name,
                )
                return False
            self._reserved += 1
            self._idle.clear()
        return True

    def release_reservation(self, employer_name: str) -> None:
        with self._lock:
            if self._reserved > 0:
                self._reserved -= 1
        log.debug("released queue reservation for %s", employer_name)
        self._call_on_loop(self._update_idle, run_without_loop=True)

    def enqueue(self, item: WorkItem, *, reserved: bool = False) -> bool:
        name = item.employer.name
        with self._lock:
            if reserved and self._reserved > 0:
                self._reserved -= 1
            elif self._full():
                self._rejected += 1
                log.warning(
                    "queue full (%d queued, capacity %d), dropping batch of %d postings for %s",
                    len(self._items),
                    self._capacity,
                    len(item.postings),
                    name,
                )
                return False
            self._items.append(item)
            self._idle.clear()
            queued = len(self._items)
        log.debug("batch enqueued for %s, queue size %d", name, queued)
        self._call_on_loop(self._dispatch)
        return True

    def on_completion(self, employer_name: str) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1
            remaining = self._active_by_employer.get(employer_name, 0) - 1
            if remaining > 0:
                self._active_by_employer[employer_name] = remaining
            else:
                self._active_by_employer.pop(employer_name, None)
            active = self._active
        log.debug("batch completed for %s, active %d", employer_name, active)
        self._dispatch()
        self._update_idle()

    def status(self) -> QueueStatus:
        with self._lock:
            return QueueStatus(
                queued=len(self._items),
                active=self._active,
                capacity=self._capacity,
                concurrency_limit=self._concurrency_limit,
                reserved=self._reserved,
                rejected=self._rejected,
            )

    def active_for(self, employer_name: str) -> int:
        with self._lock:
            return self._active_by_employer.get(employer_name, 0)

    async def drain(self) -> None:
        self._dispatch()
        await self._idle.wait()

    def _call_on_loop(self, callback: Callable[[], None], *, run_without_loop: bool = False) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = self._loop
            if loop is not None and not loop.is_closed():
                loop.call_soon_threadsafe(callback)
            elif run_without_loop:
                callback()
            else:
                log.debug("no event loop yet, %s deferred", callback.__name__)
            return
        callback()

    def _dispatch(self) -> None:
        # loop thread only
        loop = asyncio.get_running_loop()
        self._loop = loop
        to_start: list[WorkItem] = []
        with self._lock:
            while self._items and self._active < self._concurrency_limit:
                item = self._items.popleft()
                self._active += 1
                name = item.employer.name
                self._active_by_employer[name] = self._active_by_employer.get(name, 0) + 1
                to_start.append(item)

        for item in to_start:
            task = loop.create_task(self._run(item), name=f"batch:{item.employer.name}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, item: WorkItem) -> None:
        try:
            await self._handler(item)
        except Exception:
            log.exception("batch handler failed for %s", item.employer.name)
        finally:
            self.on_completion(item.employer.name)

    def _update_idle(self) -> None:
        with self._lock:
            idle = not self._items and self._active == 0 and self._reserved == 0
        if idle:
            self._idle.set()
