"""
Client Sync Loop

A single-threaded cooperative scheduler for the dashboard's polling tasks
(predictions, weather, vehicle positions, clock). Every task runs once as
soon as the loop starts and then on its own cadence.

Rules:
- A tick never waits for the previous fetch to finish; slow upstreams do not
  stretch the cadence.
- Tasks are failure-isolated: an exception in one task's fetch or apply step
  is routed to that task's ``on_error`` and never reaches the other tasks.
- Every invocation of a task gets a sequence number. A result (or error) is
  applied only if no later invocation of the same task has been applied
  already, so a slow, older response never overwrites a newer one. Ad hoc
  triggers (e.g. after a stop change) share the task's sequence and
  supersede every fetch of that task still in flight.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set


@dataclass
class PollTask:
    name: str
    interval_s: float
    fetch: Callable[[], Awaitable[Any]]
    apply: Callable[[Any], None]
    on_error: Callable[[Exception], None]
    issued: int = 0
    applied: int = 0
    runs: int = 0
    failures: int = 0
    stale_dropped: int = 0
    # Outcomes of invocations numbered below this are discarded.
    superseded_below: int = 0
    inflight: Set["asyncio.Task[None]"] = field(default_factory=set)


class PollScheduler:
    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self._sleep = sleep
        self._tasks: Dict[str, PollTask] = {}
        self._loops: List["asyncio.Task[None]"] = []
        self._running = False

    def add_task(
        self,
        name: str,
        interval_s: float,
        fetch: Callable[[], Awaitable[Any]],
        apply: Callable[[Any], None],
        on_error: Callable[[Exception], None],
    ) -> PollTask:
        if name in self._tasks:
            raise ValueError(f"poll task {name!r} already registered")
        if interval_s <= 0:
            raise ValueError(f"poll task {name!r} needs a positive interval")
        task = PollTask(name=name, interval_s=interval_s, fetch=fetch, apply=apply, on_error=on_error)
        self._tasks[name] = task
        return task

    def task(self, name: str) -> PollTask:
        return self._tasks[name]

    @property
    def running(self) -> bool:
        return self._running

    async def invoke(self, name: str) -> bool:
        """Run one fetch/apply cycle. Returns True if the outcome was applied."""
        task = self._tasks[name]
        return await self._execute(task, self._next_seq(task))

    @staticmethod
    def _next_seq(task: PollTask) -> int:
        task.issued += 1
        return task.issued

    async def _execute(self, task: PollTask, seq: int) -> bool:
        name = task.name
        task.runs += 1

        outcome: Any = None
        error: Optional[Exception] = None
        try:
            outcome = await task.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc

        if seq < task.applied or seq < task.superseded_below:
            task.stale_dropped += 1
            print(f"[sync] {name}: dropped response #{seq}, superseded by #{max(task.applied, task.superseded_below)}")
            return False
        task.applied = seq

        if error is None:
            try:
                task.apply(outcome)
                return True
            except Exception as exc:
                error = exc

        task.failures += 1
        print(f"[sync] {name} failed: {error}")
        try:
            task.on_error(error)
        except Exception as exc:
            print(f"[sync] {name} error handler failed: {exc}")
        return True

    def trigger(self, name: str) -> "asyncio.Task[None]":
        """Schedule an out-of-cycle invocation of ``name`` on the running loop.

        Fetches of the same task still in flight are superseded: their outcome
        is dropped even if it arrives first.
        """
        task = self._tasks[name]
        seq = self._next_seq(task)
        task.superseded_below = seq
        return self._spawn(task, seq)

    def _spawn(self, task: PollTask, seq: Optional[int] = None) -> "asyncio.Task[None]":
        seq = seq if seq is not None else self._next_seq(task)

        async def _runner() -> None:
            await self._execute(task, seq)

        inflight = asyncio.create_task(_runner(), name=f"poll:{task.name}:{seq}")
        task.inflight.add(inflight)
        inflight.add_done_callback(task.inflight.discard)
        return inflight

    async def _run_periodic(self, task: PollTask) -> None:
        while self._running:
            self._spawn(task)
            await self._sleep(task.interval_s)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for task in self._tasks.values():
            self._loops.append(asyncio.create_task(self._run_periodic(task), name=f"poll-loop:{task.name}"))
        print(f"[sync] started {len(self._tasks)} poll tasks: {', '.join(self._tasks)}")

    async def stop(self) -> None:
        self._running = False
        pending: List["asyncio.Task[Any]"] = list(self._loops)
        for task in self._tasks.values():
            pending.extend(task.inflight)
        for item in pending:
            item.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._loops.clear()

    async def wait_idle(self) -> None:
        """Wait until no fetch is outstanding."""
        while True:
            inflight = [t for task in self._tasks.values() for t in task.inflight]
            if not inflight:
                return
            await asyncio.gather(*inflight, return_exceptions=True)


__all__ = ["PollTask", "PollScheduler"]
