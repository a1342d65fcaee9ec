# src/engine/jobs.py
from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from typing import TYPE_CHECKING, List, Optional, Tuple

from backends.base import BackendPlugin
from core.enums import JobState
from core.errors import ProofError
from core.models import ProofArtifact, ProofRequest
from core.witness import Witness

if TYPE_CHECKING:
    from engine.orchestrator import ProofOrchestrator

JobKey = Tuple[str, str]  # (witness_digest, backend_id)


class CancelToken:
    """
    Cooperative cancellation flag shared between a caller and the
    orchestrator. Checked between stages; setting it never interrupts a
    prove() call that is already running.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProofHandle:
    """
    Caller-side view of one submitted request.

    Several handles may share a single ProofJob when identical requests
    are coalesced; each handle still completes, fails or is cancelled on
    its own.
    """

    def __init__(
        self,
        request: ProofRequest,
        token: CancelToken,
        orchestrator: Optional["ProofOrchestrator"] = None,
    ) -> None:
        self.request = request
        self.token = token
        self._orchestrator = orchestrator
        self._job: Optional[ProofJob] = None
        self._done = threading.Event()
        self._artifact: Optional[ProofArtifact] = None
        self._error: Optional[ProofError] = None
        self._final_state: Optional[JobState] = None
        # Pending or WitnessBuilding until a job is attached
        self._stage = JobState.PENDING

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def priority(self) -> int:
        return self.request.priority

    @property
    def deadline(self) -> Optional[float]:
        return self.request.deadline

    @property
    def job(self) -> Optional["ProofJob"]:
        return self._job

    @property
    def state(self) -> JobState:
        if self._final_state is not None:
            return self._final_state
        if self._job is not None:
            return self._job.state
        return self._stage

    @property
    def error(self) -> Optional[ProofError]:
        return self._error

    def done(self) -> bool:
        return self._done.is_set()

    def result(self, timeout: Optional[float] = None) -> ProofArtifact:
        """
        Block until the request finishes and return its artifact.

        Raises the request's ProofError on failure, or TimeoutError if
        `timeout` elapses first (the request keeps running).
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"request {self.request_id} still {self.state.value}")
        if self._error is not None:
            raise self._error
        return self._artifact

    def cancel(self) -> bool:
        """
        Withdraw this request. Succeeds only while its job is still queued;
        returns False once proving has started or the request is done.
        """
        self.token.cancel()
        if self._orchestrator is None or self.done():
            return False
        return self._orchestrator._cancel(self)

    # ------------------------------------------------------------------
    # Orchestrator side
    # ------------------------------------------------------------------

    def _resolve(self, artifact: ProofArtifact) -> None:
        self._artifact = artifact
        self._final_state = JobState.COMPLETED
        self._done.set()

    def _fail(self, error: ProofError, state: JobState = JobState.FAILED) -> None:
        self._error = error
        self._final_state = state
        self._done.set()

    def __repr__(self) -> str:
        return f"ProofHandle({self.request_id}, state={self.state.value})"


class ProofJob:
    """
    One unit of proving work for a (witness_digest, backend_id) pair.

    Mutable fields (state, waiters, priority, deadline, queue_seq) are
    guarded by the owning orchestrator's lock.
    """

    def __init__(
        self,
        witness: Witness,
        backend: BackendPlugin,
        backend_version: str,
        *,
        digest: Optional[str] = None,
    ) -> None:
        self.witness = witness
        self.digest = digest or witness.digest()
        self.backend = backend
        self.backend_id = backend.backend_id
        self.backend_version = backend_version
        self.state = JobState.PENDING
        self.waiters: List[ProofHandle] = []
        self.priority = 0
        self.deadline: Optional[float] = None
        self.queue_seq: Optional[int] = None
        self.created_at = time.time()
        self.attempts = 0
        # prove() call left running after its attempt timed out
        self.abandoned_call: Optional[Future] = None

    @property
    def key(self) -> JobKey:
        return (self.digest, self.backend_id)

    def attach(self, handle: ProofHandle) -> None:
        handle._job = self
        self.waiters.append(handle)
        self.refresh_schedule()

    def detach(self, handle: ProofHandle) -> None:
        if handle in self.waiters:
            self.waiters.remove(handle)
        self.refresh_schedule()

    def refresh_schedule(self) -> None:
        """
        Job priority is the highest waiter priority; the job deadline is the
        latest waiter deadline, or None as soon as one waiter is unbounded.
        """
        if not self.waiters:
            return
        self.priority = max(h.priority for h in self.waiters)
        deadlines = [h.deadline for h in self.waiters]
        self.deadline = None if any(d is None for d in deadlines) else max(deadlines)

    def expired(self, now: float) -> bool:
        return self.deadline is not None and self.deadline <= now

    def __repr__(self) -> str:
        return (
            f"ProofJob({self.backend_id}/{self.digest[:12]}, state={self.state.value}, "
            f"waiters={len(self.waiters)}, priority={self.priority})"
        )
