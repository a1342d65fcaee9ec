# src/engine/orchestrator.py
from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from concurrent.futures import wait as futures_wait
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, ValidationError

from backends import BackendRegistry, default_registry
from backends.base import BackendInfo, BackendPlugin, KeyPair, ResourceUsage
from core.enums import HealthStatus, JobState
from core.errors import (
    BackendError,
    BackendTransientError,
    CacheCorruption,
    DeadlineExceeded,
    InvalidEvidence,
    InvalidRequest,
    JobCancelled,
    ProofError,
    ProofTimeout,
    ProverFault,
    ResourceExhausted,
    SourceUnavailable,
)
from core.evidence import Evidence, parse_evidence
from core.models import ArtifactMetadata, BackendDescriptor, ProofArtifact, ProofRequest
from core.witness import Witness
from engine.config import OrchestratorConfig
from engine.interfaces import EvidenceCollector, ResultSink
from engine.jobs import CancelToken, JobKey, ProofHandle, ProofJob
from engine.keys import KeyStore
from engine.scheduler import WorkerPool
from store.disk import DiskArtifactStore
from store.proof_cache import CacheEntry, CacheStats, ProofCache
from witness.builder import WitnessBuilder

logger = logging.getLogger(__name__)


class OrchestratorStats(BaseModel):
    """
    Point-in-time snapshot of orchestrator activity.

    Request counters (`submitted`, `completed`, `failed`, `cancelled`,
    `cache_hits`, `coalesced`) count caller requests; `prove_calls` and
    `verify_calls` count backend invocations, so `prove_calls` staying
    below `completed` is what coalescing and caching buy.
    """

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    cache_hits: int = 0
    coalesced: int = 0

    jobs_created: int = 0
    prove_calls: int = 0
    verify_calls: int = 0
    transient_retries: int = 0
    fault_retries: int = 0
    sink_deliveries: int = 0
    sink_failures: int = 0

    failures_by_kind: Dict[str, int] = Field(default_factory=dict)

    in_flight: int = 0
    witness_building: int = 0
    queue_depth: int = 0
    busy_workers: int = 0
    workers: int = 0

    cache: CacheStats = Field(default_factory=CacheStats)


class ProofOrchestrator:
    """
    Accepts proof requests, turns evidence into witnesses, and schedules
    proving work across a bounded pool of workers.

    -------------------------------------------------------------------------
    1. Request lifecycle
    -------------------------------------------------------------------------

        Pending -> WitnessBuilding -> (cache check) -> Queued -> Proving
                -> SelfVerifying -> Completed | Failed(kind) | Cancelled

    Everything up to and including the cache check runs on the caller's
    thread inside `submit`; a failure there is raised directly from
    `submit`. From Queued onwards the outcome is delivered through the
    returned ProofHandle.

    -------------------------------------------------------------------------
    2. Guarantees
    -------------------------------------------------------------------------

      • Only proofs that pass `backend.verify` are ever returned or cached.
        A proof the backend's own verifier rejects is a ProverFault.
      • Identical (witness_digest, backend_id) requests share one job;
        the backend is asked to prove a given witness once.
      • Invalid evidence never reaches a backend.
      • Admission is non-blocking: a saturated pool raises
        ResourceExhausted instead of queueing without bound.
      • Cached artifacts are only served for the backend version that
        produced them.

    -------------------------------------------------------------------------
    3. Threads
    -------------------------------------------------------------------------

      • `config.workers` proving workers (WorkerPool)
      • an intake executor bounding evidence fetch + witness building
      • a call executor running prove() so that a slow attempt can be
        abandoned after `proving_timeout` or at the job deadline. The call
        itself keeps running and its result is discarded; the worker that
        abandoned it starts nothing else until it returns, so at most
        `config.workers` prove() calls ever run at once.

    All job bookkeeping (in-flight map, waiters, states) is guarded by one
    orchestrator lock. The pool's own lock may be taken while holding it,
    never the other way around.
    """

    def __init__(
        self,
        registry: Optional[BackendRegistry] = None,
        collector: Optional[EvidenceCollector] = None,
        sink: Optional[ResultSink] = None,
        *,
        config: Optional[OrchestratorConfig] = None,
        builder: Optional[WitnessBuilder] = None,
        cache: Optional[ProofCache] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.registry = registry if registry is not None else default_registry()
        self.collector = collector
        self.sink = sink
        self.builder = builder or WitnessBuilder()
        self.clock = clock

        if cache is None:
            store = DiskArtifactStore(self.config.cache_dir) if self.config.cache_dir else None
            cache = ProofCache(self.config.cache_capacity, store=store, clock=clock)
        self.cache = cache
        self.keys = KeyStore(
            key_dir=self.config.key_dir,
            setup_params=self.config.backend_setup_params,
        )

        self._lock = threading.RLock()
        self._inflight: Dict[JobKey, ProofJob] = {}
        self._counters: Counter = Counter()
        self._failures: Counter = Counter()
        self._semaphores: Dict[str, threading.BoundedSemaphore] = {}
        self._active_calls: Counter = Counter()
        self._faulty_backends: Set[str] = set()
        self._building = 0
        self._stop = threading.Event()
        self._started = False
        self._closed = False

        self._pool = WorkerPool(
            self.config.workers,
            self.config.max_queue_depth,
            run=self._run_job,
            claim=self._claim,
        )
        self._intake = ThreadPoolExecutor(
            max_workers=self.config.workers,
            thread_name_prefix="witness",
        )
        self._calls = ThreadPoolExecutor(
            max_workers=self.config.workers,
            thread_name_prefix="prove-call",
        )
        self.registry.subscribe(self._on_backend_change)

    # ======================================================================
    # Lifecycle
    # ======================================================================

    def start(self) -> "ProofOrchestrator":
        with self._lock:
            if self._closed:
                raise ResourceExhausted("orchestrator is shut down")
            if self._started:
                return self
            self._started = True
        self._pool.start()
        logger.info(
            "proof orchestrator started: %d workers, queue depth %d, backends %s",
            self.config.workers, self.config.max_queue_depth, self.registry.backend_ids(),
        )
        return self

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting requests. Queued jobs are cancelled; jobs already
        proving run to completion when `wait` is True.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        self.registry.unsubscribe(self._on_backend_change)

        for job in self._pool.shutdown(wait=False):
            self._finish_failed(job, JobCancelled("orchestrator shut down before proving started"))
        if wait:
            self._pool.shutdown(wait=True)
        self._intake.shutdown(wait=wait, cancel_futures=True)
        self._calls.shutdown(wait=False, cancel_futures=True)

        for plugin in self.registry.plugins():
            try:
                plugin.shutdown()
            except Exception:
                logger.exception("backend %s failed to shut down cleanly", plugin.backend_id)
        logger.info("proof orchestrator stopped")

    def __enter__(self) -> "ProofOrchestrator":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ======================================================================
    # Public API
    # ======================================================================

    def submit(
        self,
        request: ProofRequest,
        evidence: Optional[Evidence | Dict[str, Any]] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> ProofHandle:
        """
        Validate `request`, build its witness and enqueue it.

        `evidence` may be supplied directly; otherwise it is fetched from
        the configured EvidenceCollector. Raises ProofError for anything
        detected before the job is queued (invalid request or evidence,
        source failures, backpressure, past deadline, cancellation). Later
        outcomes are delivered through the returned handle.
        """
        self.start()
        self._count("submitted")
        token = cancel_token or CancelToken()
        try:
            return self._submit(request, evidence, token)
        except ProofError as exc:
            self._record_request_failure(exc)
            logger.info(
                "request %s rejected: %s %s", request.request_id, exc.kind.value, exc.message,
            )
            raise

    def prove(
        self,
        request: ProofRequest,
        evidence: Optional[Evidence | Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> ProofArtifact:
        """Blocking convenience wrapper: submit and wait for the artifact."""
        return self.submit(request, evidence).result(timeout)

    def invalidate_backend(self, backend_id: str) -> int:
        """Drop every cached artifact and key of `backend_id`."""
        removed = self.cache.invalidate_backend(backend_id)
        self.keys.drop(backend_id)
        return removed

    def stats(self) -> OrchestratorStats:
        with self._lock:
            counters = dict(self._counters)
            failures = dict(self._failures)
            in_flight = len(self._inflight)
            building = self._building
        return OrchestratorStats(
            **counters,
            failures_by_kind=failures,
            in_flight=in_flight,
            witness_building=building,
            queue_depth=self._pool.queue_depth(),
            busy_workers=self._pool.busy_workers(),
            workers=self._pool.workers,
            cache=self.cache.stats(),
        )

    def health(self) -> Dict[str, HealthStatus]:
        """
        Health of every registered backend. A failing check reports
        UNHEALTHY; a healthy backend whose last job failed on the backend
        side (ProverFault, BackendError) reports DEGRADED.
        """
        report: Dict[str, HealthStatus] = {}
        for plugin in self.registry.plugins():
            try:
                status = HealthStatus(plugin.health_check())
            except Exception:
                logger.exception("health check of backend %s failed", plugin.backend_id)
                status = HealthStatus.UNHEALTHY
            with self._lock:
                faulty = plugin.backend_id in self._faulty_backends
            if status is HealthStatus.HEALTHY and faulty:
                status = HealthStatus.DEGRADED
            report[plugin.backend_id] = status
        return report

    def backend_info(self) -> Dict[str, BackendInfo]:
        """Identity, capabilities, health and current load of every registered backend."""
        health = self.health()
        with self._lock:
            active = dict(self._active_calls)
            queued = Counter(
                job.backend_id for job in self._inflight.values() if job.state is JobState.QUEUED
            )

        report: Dict[str, BackendInfo] = {}
        for plugin in self.registry.plugins():
            descriptor = plugin.descriptor()
            backend_id = descriptor.backend_id
            try:
                usage = plugin.resource_usage()
            except Exception:
                logger.warning("backend %s failed to report resource usage", backend_id, exc_info=True)
                usage = ResourceUsage()
            report[backend_id] = BackendInfo(
                backend_id=backend_id,
                name=plugin.display_name(),
                version=descriptor.version,
                witness_schema_version=descriptor.witness_schema_version,
                capabilities=sorted(plugin.capabilities(), key=lambda c: c.value),
                health=health.get(backend_id, HealthStatus.UNHEALTHY),
                resource_usage=usage.model_copy(update={
                    "active_tasks": active.get(backend_id, 0),
                    "queue_depth": queued.get(backend_id, 0),
                    "concurrency_limit": self.config.backend_concurrency.get(backend_id) or None,
                }),
            )
        return report

    # ======================================================================
    # Submission path (caller thread)
    # ======================================================================

    def _submit(self, request: ProofRequest, evidence: Any, token: CancelToken) -> ProofHandle:
        backend = self._admit(request)
        descriptor = backend.descriptor()
        handle = ProofHandle(request, token, self)

        handle._stage = JobState.WITNESS_BUILDING
        with self._lock:
            self._building += 1
        try:
            witness = self._build_witness(request, descriptor, evidence)
        finally:
            with self._lock:
                self._building -= 1
        if token.cancelled:
            raise JobCancelled(
                "request cancelled before queueing",
                context={"request_id": request.request_id},
            )
        self._check_deadline(request.deadline, request.request_id)

        digest = witness.digest()

        entry = self._cached(digest, backend, descriptor.version, witness)
        if entry is not None:
            return self._serve_cached(handle, entry)

        with self._lock:
            if self._closed:
                raise ResourceExhausted("orchestrator is shut down")

            key = (digest, descriptor.backend_id)
            job = self._inflight.get(key)
            if job is not None and job.backend_version == descriptor.version:
                job.attach(handle)
                self._pool.reprioritize(job)
                self._counters["coalesced"] += 1
                logger.debug("request %s coalesced into %r", request.request_id, job)
                return handle

            # A job for this key may have completed since the first lookup.
            entry = self.cache.lookup(digest, descriptor.backend_id, descriptor.version, use_store=False)
            if entry is None:
                job = ProofJob(witness, backend, descriptor.version, digest=digest)
                job.attach(handle)
                job.state = JobState.QUEUED
                self._pool.submit(job)
                self._inflight[key] = job
                self._counters["jobs_created"] += 1
                logger.debug(
                    "queued %r for request %s (priority=%d, deadline=%s)",
                    job, request.request_id, job.priority, job.deadline,
                )
                return handle

        return self._serve_cached(handle, entry)

    def _admit(self, request: ProofRequest) -> BackendPlugin:
        """Pending-stage validation."""
        if request.chain_id != request.anchor.chain_id:
            raise InvalidRequest(
                "request chain_id does not match the anchor's chain",
                context={"chain_id": request.chain_id, "anchor_chain_id": request.anchor.chain_id},
            )
        known = self.config.known_chains
        if known and request.chain_id not in known:
            raise InvalidRequest(
                f"unknown chain {request.chain_id!r}",
                context={"chain_id": request.chain_id, "known": sorted(known)},
            )
        backend = self.registry.resolve(request.backend_id)
        self._check_deadline(request.deadline, request.request_id)
        return backend

    def _check_deadline(self, deadline: Optional[float], request_id: str) -> None:
        if deadline is not None and deadline <= self.clock():
            raise DeadlineExceeded(
                "request deadline has passed",
                context={"request_id": request_id, "deadline": deadline},
            )

    def _build_witness(
        self,
        request: ProofRequest,
        descriptor: BackendDescriptor,
        evidence: Any,
    ) -> Witness:
        """WitnessBuilding stage, bounded by witness_timeout and the deadline."""
        timeout = self.config.witness_timeout
        bounded_by_deadline = False
        if request.deadline is not None:
            remaining = request.deadline - self.clock()
            if remaining < timeout:
                timeout, bounded_by_deadline = max(remaining, 0.0), True

        future = self._intake.submit(self._collect_and_build, request, descriptor, evidence)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            future.cancel()
            context = {"request_id": request.request_id, "timeout": timeout}
            if bounded_by_deadline:
                raise DeadlineExceeded("deadline passed while building the witness", context=context)
            raise ProofTimeout("evidence collection and witness building timed out", context=context)

    def _collect_and_build(
        self,
        request: ProofRequest,
        descriptor: BackendDescriptor,
        evidence: Any,
    ) -> Witness:
        if evidence is None:
            evidence = self._fetch_evidence(request)
        try:
            evidence = parse_evidence(evidence)
        except ValidationError as exc:
            raise InvalidEvidence(
                f"malformed evidence: {exc.error_count()} validation errors",
                context={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        return self.builder.build(
            evidence,
            request.anchor,
            request.event,
            schema_version=descriptor.witness_schema_version,
        )

    def _fetch_evidence(self, request: ProofRequest) -> Evidence:
        if self.collector is None:
            raise SourceUnavailable(
                "no evidence supplied and no evidence collector configured",
                context={"request_id": request.request_id},
            )
        try:
            return self.collector.fetch(request.anchor, request.event)
        except ProofError:
            raise
        except Exception as exc:
            raise SourceUnavailable(
                f"evidence collector failed: {exc}",
                context={"request_id": request.request_id, "chain_id": request.chain_id},
            ) from exc

    # ----------------------------------------------------------------------
    # Cache hits
    # ----------------------------------------------------------------------

    def _cached(
        self,
        digest: str,
        backend: BackendPlugin,
        version: str,
        witness: Witness,
    ) -> Optional[CacheEntry]:
        """
        Look the witness up in the cache. Entries loaded from disk are
        re-verified with the current verifying key before being served.
        """
        entry = self.cache.lookup(digest, backend.backend_id, version)
        if entry is None or entry.verified:
            return entry
        if not self.config.verify_loaded_entries:
            return self.cache.mark_verified(entry)

        artifact = entry.artifact
        expected_inputs = backend.public_inputs(witness)
        keys = self.keys.get(backend)
        ok = artifact.public_inputs == expected_inputs and self._safe_verify(
            backend, artifact.proof_bytes, artifact.public_inputs, keys,
        )
        if ok:
            return self.cache.mark_verified(entry)

        error = CacheCorruption(
            "persisted artifact failed re-verification",
            context={"backend_id": backend.backend_id, "version": version, "witness_digest": digest},
        )
        logger.warning("%s; discarding it (%s)", error.message, error.context)
        self.cache.invalidate(digest, backend.backend_id)
        self.cache.record_corruption()
        return None

    def _serve_cached(self, handle: ProofHandle, entry: CacheEntry) -> ProofHandle:
        handle._resolve(entry.artifact)
        with self._lock:
            self._counters["cache_hits"] += 1
            self._counters["completed"] += 1
        logger.debug("request %s served from cache", handle.request_id)
        self._deliver(entry.artifact)
        return handle

    # ======================================================================
    # Worker side
    # ======================================================================

    def _claim(self, job: ProofJob) -> bool:
        """Queued -> Proving gate, called by a worker right after popping `job`."""
        now = self.clock()
        with self._lock:
            if job.state is not JobState.QUEUED:
                return False
            cancelled = [h for h in job.waiters if h.token.cancelled]
            for h in cancelled:
                job.detach(h)
            if not job.waiters:
                job.state = JobState.CANCELLED
                self._retire(job)
                outcome = "cancelled"
            elif job.expired(now):
                outcome = "expired"
            else:
                job.state = JobState.PROVING
                outcome = "claimed"
            self._counters["cancelled"] += len(cancelled)

        for h in cancelled:
            h._fail(JobCancelled("request cancelled while queued"), JobState.CANCELLED)
        if outcome == "expired":
            self._finish_failed(job, DeadlineExceeded(
                "deadline passed while queued",
                context={"deadline": job.deadline, "witness_digest": job.digest},
            ))
        elif outcome == "cancelled":
            logger.debug("dropped %r: every waiter cancelled", job)
        return outcome == "claimed"

    def _run_job(self, job: ProofJob) -> None:
        try:
            artifact = self._prove_and_verify(job)
        except ProofError as exc:
            self._finish_failed(job, exc)
        except Exception as exc:
            logger.exception("unexpected failure while proving %r", job)
            self._finish_failed(job, BackendError(f"unexpected failure: {exc}", context=self._job_context(job)))
        else:
            if self._job_expired(job):
                self._finish_late(job, artifact)
            else:
                self._finish_completed(job, artifact)
        finally:
            # the worker slot stays taken until a timed-out prove() returns
            self._await_abandoned(job)

    def _prove_and_verify(self, job: ProofJob) -> ProofArtifact:
        cfg = self.config
        backend = job.backend
        keys = self.keys.get(backend)
        public_inputs = backend.public_inputs(job.witness)

        transient = 0
        faults = 0
        while True:
            self._await_abandoned(job)
            self._check_job_deadline(job)
            job.attempts += 1
            self._set_state(job, JobState.PROVING)

            try:
                proof_bytes, prove_seconds = self._call_prove(job, keys)
            except ProofError as exc:
                if exc.retriable and transient < cfg.max_transient_retries:
                    transient += 1
                    self._count("transient_retries")
                    delay = cfg.backoff_delay(transient)
                    logger.warning(
                        "%s attempt %d for %r failed (%s); retrying in %.2fs",
                        exc.kind.value, job.attempts, job, exc.message, delay,
                    )
                    if self._stop.wait(delay):
                        raise JobCancelled("orchestrator shut down during retry backoff") from exc
                    continue
                exc.context.update(self._job_context(job))
                raise

            self._set_state(job, JobState.SELF_VERIFYING)
            started = time.perf_counter()
            ok = self._safe_verify(backend, proof_bytes, public_inputs, keys)
            verify_seconds = time.perf_counter() - started

            if ok:
                return ProofArtifact(
                    proof_bytes=proof_bytes,
                    public_inputs=public_inputs,
                    backend_descriptor=BackendDescriptor(
                        backend_id=job.backend_id,
                        version=job.backend_version,
                        witness_schema_version=job.witness.schema_version,
                    ),
                    witness_digest=job.digest,
                    metadata=ArtifactMetadata(
                        generated_at=self.clock(),
                        prove_seconds=prove_seconds,
                        verify_seconds=verify_seconds,
                        proof_size=len(proof_bytes),
                        attempts=job.attempts,
                    ),
                )

            faults += 1
            if faults <= cfg.prover_fault_retries:
                self._count("fault_retries")
                logger.warning(
                    "proof for %r rejected by its own verifier; re-proving (%d/%d)",
                    job, faults, cfg.prover_fault_retries,
                )
                continue

            fault = ProverFault(
                f"backend {job.backend_id}@{job.backend_version} produced a proof its verifier rejects",
                context={
                    **self._job_context(job),
                    "proof_size": len(proof_bytes),
                    "proof_prefix": proof_bytes[:64].hex(),
                    "public_inputs": public_inputs,
                },
            )
            logger.error("%s; context=%s", fault.message, fault.context)
            raise fault

    def _call_prove(self, job: ProofJob, keys: KeyPair) -> Tuple[bytes, float]:
        """
        One prove() attempt, bounded by proving_timeout, the job deadline
        and the backend's concurrency cap.

        A call still running when the wait ends is left running and parked
        on `job.abandoned_call`; a call that never started is cancelled.
        """
        timeout = self.config.proving_timeout
        attempt_end = time.monotonic() + timeout
        semaphore = self._semaphore(job.backend_id)
        if semaphore is not None:
            wait, by_deadline = self._attempt_wait(job, attempt_end)
            if not semaphore.acquire(timeout=wait):
                if by_deadline:
                    raise self._deadline_error(job, "deadline passed waiting for a proving slot")
                raise BackendTransientError(
                    f"no free proving slot for backend {job.backend_id}",
                    context={"backend_id": job.backend_id},
                )

        with self._lock:
            self._active_calls[job.backend_id] += 1
        try:
            future = self._calls.submit(job.backend.prove, job.witness, keys.proving_key)
        except RuntimeError as exc:
            self._call_finished(job.backend_id, semaphore)
            raise JobCancelled("orchestrator shut down before proving started") from exc
        future.add_done_callback(lambda _f: self._call_finished(job.backend_id, semaphore))

        self._count("prove_calls")
        started = time.perf_counter()
        while True:
            wait, by_deadline = self._attempt_wait(job, attempt_end)
            try:
                proof = future.result(timeout=wait)
                break
            except FuturesTimeout as exc:
                if by_deadline and not self._job_expired(job):
                    # a waiter with a later (or no) deadline joined meanwhile
                    continue
                if not future.cancel():
                    job.abandoned_call = future
                if by_deadline:
                    raise self._deadline_error(job, "deadline passed while proving") from exc
                raise ProofTimeout(
                    f"prove() exceeded {timeout:.1f}s",
                    context={"backend_id": job.backend_id, "attempt": job.attempts},
                ) from exc
            except ProofError:
                raise
            except Exception as exc:
                raise BackendError(
                    f"backend {job.backend_id} failed while proving: {exc}",
                    context={"backend_id": job.backend_id, "attempt": job.attempts},
                ) from exc
        elapsed = time.perf_counter() - started

        if not isinstance(proof, (bytes, bytearray)):
            raise BackendError(
                f"backend {job.backend_id} returned {type(proof).__name__} instead of proof bytes",
            )
        return bytes(proof), elapsed

    def _safe_verify(
        self,
        backend: BackendPlugin,
        proof_bytes: bytes,
        public_inputs: Dict[str, Any],
        keys: KeyPair,
    ) -> bool:
        self._count("verify_calls")
        try:
            return backend.verify(proof_bytes, public_inputs, keys.verifying_key) is True
        except Exception:
            logger.warning("verifier of backend %s raised", backend.backend_id, exc_info=True)
            return False

    def _attempt_wait(self, job: ProofJob, attempt_end: float) -> Tuple[float, bool]:
        """Seconds left in this attempt, and whether the job deadline is what bounds them."""
        wait = max(attempt_end - time.monotonic(), 0.0)
        with self._lock:
            deadline = job.deadline
        if deadline is not None:
            remaining = max(deadline - self.clock(), 0.0)
            if remaining < wait:
                return remaining, True
        return wait, False

    def _await_abandoned(self, job: ProofJob) -> None:
        call, job.abandoned_call = job.abandoned_call, None
        if call is not None and not call.done():
            logger.warning("%r: waiting for a timed-out prove() call to return", job)
            futures_wait([call])

    def _call_finished(self, backend_id: str, semaphore: Optional[threading.BoundedSemaphore]) -> None:
        with self._lock:
            self._active_calls[backend_id] -= 1
        if semaphore is not None:
            semaphore.release()

    def _job_expired(self, job: ProofJob) -> bool:
        with self._lock:
            return job.expired(self.clock())

    def _deadline_error(self, job: ProofJob, message: str) -> DeadlineExceeded:
        return DeadlineExceeded(message, context={"deadline": job.deadline, **self._job_context(job)})

    def _check_job_deadline(self, job: ProofJob) -> None:
        if self._job_expired(job):
            raise self._deadline_error(job, "deadline passed before proving could finish")

    def _semaphore(self, backend_id: str) -> Optional[threading.BoundedSemaphore]:
        limit = self.config.backend_concurrency.get(backend_id)
        if not limit:
            return None
        with self._lock:
            sem = self._semaphores.get(backend_id)
            if sem is None:
                sem = self._semaphores[backend_id] = threading.BoundedSemaphore(limit)
            return sem

    # ======================================================================
    # Terminal transitions
    # ======================================================================

    def _finish_completed(self, job: ProofJob, artifact: ProofArtifact) -> None:
        current = self.registry.current_version(job.backend_id)
        self.cache.commit(artifact, current, verified=True)

        with self._lock:
            job.state = JobState.COMPLETED
            self._retire(job)
            waiters = list(job.waiters)
            self._counters["completed"] += len(waiters)
            self._faulty_backends.discard(job.backend_id)

        for h in waiters:
            h._resolve(artifact)
        logger.info(
            "completed %s proof %s in %d attempt(s), %.3fs prove / %.3fs verify, %d waiter(s)",
            job.backend_id, job.digest[:12], artifact.metadata.attempts,
            artifact.metadata.prove_seconds, artifact.metadata.verify_seconds, len(waiters),
        )
        self._deliver(artifact)

    def _finish_failed(self, job: ProofJob, error: ProofError) -> None:
        state = JobState.CANCELLED if isinstance(error, JobCancelled) else JobState.FAILED
        with self._lock:
            job.state = state
            self._retire(job)
            waiters = list(job.waiters)
            if isinstance(error, (ProverFault, BackendError)):
                self._faulty_backends.add(job.backend_id)
        for h in waiters:
            h._fail(error, state)
            self._record_request_failure(error)
        if not isinstance(error, ProverFault):
            logger.warning("job %r failed: %s %s", job, error.kind.value, error.message)

    def _finish_late(self, job: ProofJob, artifact: ProofArtifact) -> None:
        """A verified proof that arrived after the job deadline: cached, but its waiters fail."""
        self.cache.commit(artifact, self.registry.current_version(job.backend_id), verified=True)
        with self._lock:
            self._faulty_backends.discard(job.backend_id)
        self._finish_failed(job, self._deadline_error(job, "deadline passed before the proof was verified"))

    def _record_request_failure(self, error: ProofError) -> None:
        with self._lock:
            if isinstance(error, JobCancelled):
                self._counters["cancelled"] += 1
            else:
                self._counters["failed"] += 1
                self._failures[error.kind.value] += 1

    def _retire(self, job: ProofJob) -> None:
        """Remove `job` from the in-flight map. Call with the lock held."""
        if self._inflight.get(job.key) is job:
            del self._inflight[job.key]

    def _deliver(self, artifact: ProofArtifact) -> None:
        if self.sink is None:
            return
        try:
            self.sink.deliver(artifact)
        except Exception:
            self._count("sink_failures")
            logger.warning(
                "result sink rejected artifact %s; not retrying", artifact.witness_digest[:12],
                exc_info=True,
            )
        else:
            self._count("sink_deliveries")

    # ======================================================================
    # Cancellation & backend changes
    # ======================================================================

    def _cancel(self, handle: ProofHandle) -> bool:
        with self._lock:
            job = handle.job
            if handle.done() or job is None or job.state is not JobState.QUEUED:
                return False
            job.detach(handle)
            if job.waiters:
                self._pool.reprioritize(job)
            else:
                job.state = JobState.CANCELLED
                self._pool.discard(job)
                self._retire(job)
            self._counters["cancelled"] += 1
        handle._fail(
            JobCancelled("request cancelled while queued", context={"request_id": handle.request_id}),
            JobState.CANCELLED,
        )
        logger.debug("request %s cancelled", handle.request_id)
        return True

    def _on_backend_change(
        self,
        old: Optional[BackendDescriptor],
        new: Optional[BackendDescriptor],
    ) -> None:
        if old is None:
            return
        with self._lock:
            self._faulty_backends.discard(old.backend_id)
        if new is None:
            self.invalidate_backend(old.backend_id)
        elif new.version != old.version:
            self.cache.invalidate_backend(new.backend_id, keep_version=new.version)
            self.keys.drop(new.backend_id, keep_version=new.version)

    # ======================================================================
    # Helpers
    # ======================================================================

    def _set_state(self, job: ProofJob, state: JobState) -> None:
        with self._lock:
            job.state = state
        logger.debug("%r -> %s", job, state.value)

    def _count(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counters[name] += n

    @staticmethod
    def _job_context(job: ProofJob) -> Dict[str, Any]:
        return {
            "backend_id": job.backend_id,
            "backend_version": job.backend_version,
            "witness_digest": job.digest,
            "attempts": job.attempts,
            "waiters": [h.request_id for h in job.waiters],
        }

    def in_flight(self) -> List[ProofJob]:
        with self._lock:
            return list(self._inflight.values())
