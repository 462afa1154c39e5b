"""Bounded-concurrency scheduling of worker supervisors.

Tasks are issued in ``(priority, decomposition order)`` order.  At most
``max_concurrency`` supervisors are in flight; a finished supervisor frees its
slot through ``asyncio.wait(..., FIRST_COMPLETED)``, so the scheduler sleeps
until something actually finishes.  A failed, timed-out or crashed worker never
affects its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from scribeswarm.errors import FailureReason
from scribeswarm.protocol.models import Task, WorkerResult, WorkerStatus

log = logging.getLogger(__name__)


class Supervisor(Protocol):
    result: WorkerResult | None

    async def run(self, task: Task, ctx: Any) -> WorkerResult: ...


SupervisorFactory = Callable[[Task], Supervisor]


class Scheduler:
    def __init__(
        self,
        supervisor_factory: SupervisorFactory,
        ctx: Any,
        max_concurrency: int,
        *,
        on_drained: Callable[[], None] | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.supervisor_factory = supervisor_factory
        self.ctx = ctx
        self.max_concurrency = max_concurrency
        self.on_drained = on_drained
        self.issued: list[str] = []
        self.peak_in_flight = 0
        self.interrupted = False
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Stop issuing work and interrupt every in-flight worker."""
        self.interrupted = True
        self._cancel_event.set()

    async def run(self, tasks: list[Task], max_concurrency: int | None = None) -> list[WorkerResult]:
        limit = max_concurrency if max_concurrency is not None else self.max_concurrency
        if limit < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {limit}")
        queue = [t for _, t in sorted(enumerate(tasks), key=lambda it: (*it[1].sort_key, it[0]))]
        in_flight: dict[asyncio.Task[WorkerResult], tuple[Task, Supervisor]] = {}
        results: dict[str, WorkerResult] = {}
        drained = False
        cancel_waiter = asyncio.create_task(self._cancel_event.wait())

        try:
            while (queue or in_flight) and not self._cancel_event.is_set():
                while queue and len(in_flight) < limit:
                    task = queue.pop(0)
                    supervisor = self.supervisor_factory(task)
                    handle = asyncio.create_task(supervisor.run(task, self.ctx), name=f"worker-{task.id}")
                    in_flight[handle] = (task, supervisor)
                    self.issued.append(task.id)
                    self.peak_in_flight = max(self.peak_in_flight, len(in_flight))
                    log.debug("Issued %s (%d/%d slots)", task.id, len(in_flight), limit)
                if not queue and not drained:
                    drained = True
                    if self.on_drained is not None:
                        self.on_drained()

                done, _ = await asyncio.wait(
                    {*in_flight, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                for handle in done:
                    if handle is cancel_waiter:
                        continue
                    task, supervisor = in_flight.pop(handle)
                    results[task.id] = self._collect(handle, task, supervisor)

            if self._cancel_event.is_set() and in_flight:
                log.warning("Interrupting %d in-flight worker(s); %d task(s) not started", len(in_flight), len(queue))
                await self._interrupt(in_flight, results)
        except asyncio.CancelledError:
            self.interrupted = True
            await self._interrupt(in_flight, results)
            raise
        finally:
            cancel_waiter.cancel()

        return [results[task_id] for task_id in self.issued if task_id in results]

    async def _interrupt(
        self,
        in_flight: dict[asyncio.Task[WorkerResult], tuple[Task, Supervisor]],
        results: dict[str, WorkerResult],
    ) -> None:
        for handle in in_flight:
            handle.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        for handle, (task, supervisor) in in_flight.items():
            results[task.id] = self._collect(handle, task, supervisor)
        in_flight.clear()

    def _collect(
        self,
        handle: asyncio.Task[WorkerResult],
        task: Task,
        supervisor: Supervisor,
    ) -> WorkerResult:
        if handle.cancelled():
            return supervisor.result or WorkerResult(
                task_id=task.id,
                status=WorkerStatus.INTERRUPTED,
                failure_reason=FailureReason.INTERRUPTED,
                failure_detail="Worker interrupted",
            )
        exc = handle.exception()
        if exc is None:
            return handle.result()
        log.error("Supervisor for %s crashed: %s", task.id, exc, exc_info=exc)
        record_crash = getattr(supervisor, "record_crash", None)
        if record_crash is not None:
            try:
                return record_crash(exc)
            except Exception as inner:
                log.error("Could not record crash for %s: %s", task.id, inner)
        return WorkerResult(
            task_id=task.id,
            status=WorkerStatus.FAILED,
            failure_reason=FailureReason.INTERNAL_ERROR,
            failure_detail=f"{type(exc).__name__}: {exc}",
        )
