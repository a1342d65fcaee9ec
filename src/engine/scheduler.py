# src/engine/scheduler.py
from __future__ import annotations

import heapq
import itertools
import logging
import math
import threading
from typing import Callable, List, Optional, Set, Tuple

from core.errors import ResourceExhausted
from engine.jobs import ProofJob

logger = logging.getLogger(__name__)

# (-priority, deadline or +inf, seq, job)
_HeapItem = Tuple[int, float, int, ProofJob]


class WorkerPool:
    """
    Fixed set of proving threads fed from a priority queue.

    Ordering: highest job priority first, then earliest deadline, then
    submission order. Re-prioritizing a queued job pushes a fresh heap item
    and leaves the old one behind; stale items are skipped on pop by
    comparing the job's current `queue_seq`.

    Admission: when every worker is busy and `max_queue_depth` jobs are
    already waiting, `submit` raises ResourceExhausted immediately instead
    of blocking the caller.

    The pool knows nothing about proving. For every popped job it calls
    `claim(job) -> bool` (outside the pool lock); only claimed jobs are handed
    to `run(job)`. A worker counts as busy from the moment it pops a job, so
    a popped but not yet claimed job is never invisible to admission.
    """

    def __init__(
        self,
        workers: int,
        max_queue_depth: int,
        run: Callable[[ProofJob], None],
        claim: Callable[[ProofJob], bool],
        *,
        name: str = "prover",
    ) -> None:
        if workers < 1:
            raise ValueError("worker pool needs at least one worker")
        self.workers = workers
        self.max_queue_depth = max_queue_depth
        self.name = name
        self._run = run
        self._claim = claim

        self._cond = threading.Condition()
        self._heap: List[_HeapItem] = []
        self._pending: Set[ProofJob] = set()
        self._seq = itertools.count()
        self._busy = 0
        self._threads: List[threading.Thread] = []
        self._started = False
        self._stopping = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._cond:
            if self._started:
                return
            self._started = True
            for i in range(self.workers):
                t = threading.Thread(target=self._worker, name=f"{self.name}-{i}", daemon=True)
                self._threads.append(t)
                t.start()
        logger.debug("started %d %s workers", self.workers, self.name)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> List[ProofJob]:
        """
        Stop accepting work and return the jobs that were still queued.
        Running jobs are allowed to finish.
        """
        with self._cond:
            self._stopping = True
            drained = list(self._pending)
            for job in drained:
                job.queue_seq = None
            self._pending.clear()
            self._heap.clear()
            self._cond.notify_all()
        if wait:
            for t in self._threads:
                t.join(timeout)
        return drained

    @property
    def running(self) -> bool:
        with self._cond:
            return self._started and not self._stopping

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def submit(self, job: ProofJob) -> None:
        with self._cond:
            if self._stopping:
                raise ResourceExhausted("worker pool is shut down")
            if self._busy >= self.workers and len(self._pending) >= self.max_queue_depth:
                raise ResourceExhausted(
                    "all proving workers busy and queue is full",
                    context={
                        "workers": self.workers,
                        "queued": len(self._pending),
                        "max_queue_depth": self.max_queue_depth,
                    },
                )
            self._pending.add(job)
            self._push(job)
            self._cond.notify()

    def reprioritize(self, job: ProofJob) -> None:
        with self._cond:
            if job in self._pending:
                self._push(job)

    def discard(self, job: ProofJob) -> bool:
        with self._cond:
            if job not in self._pending:
                return False
            self._pending.discard(job)
            job.queue_seq = None
            return True

    def queue_depth(self) -> int:
        with self._cond:
            return len(self._pending)

    def busy_workers(self) -> int:
        with self._cond:
            return self._busy

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _push(self, job: ProofJob) -> None:
        seq = next(self._seq)
        job.queue_seq = seq
        deadline = job.deadline if job.deadline is not None else math.inf
        heapq.heappush(self._heap, (-job.priority, deadline, seq, job))

    def _next_job(self) -> Optional[ProofJob]:
        with self._cond:
            while True:
                while self._heap:
                    _, _, seq, job = heapq.heappop(self._heap)
                    if job in self._pending and job.queue_seq == seq:
                        self._pending.discard(job)
                        job.queue_seq = None
                        self._busy += 1
                        return job
                if self._stopping:
                    return None
                self._cond.wait()

    def _worker(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                return
            try:
                if self._claim(job):
                    self._run(job)
            except Exception:
                logger.exception("worker crashed while running %r", job)
            finally:
                with self._cond:
                    self._busy -= 1
                    self._cond.notify()

    def __repr__(self) -> str:
        return f"WorkerPool(workers={self.workers}, queued={self.queue_depth()}, busy={self.busy_workers()})"
