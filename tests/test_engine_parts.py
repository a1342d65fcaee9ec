"""
Tests for the orchestrator's building blocks: KeyStore, WorkerPool, jobs,
and the simulated evidence source.
"""

import threading
import time

import pytest

from backends import CommitmentBackend
from conftest import ANCHOR_HEIGHT, CHAIN_ID, make_transfer
from core.enums import JobState
from core.errors import BackendError, EvidenceNotFound, ResourceExhausted, SourceUnavailable
from core.evidence import HeaderChainEvidence, MerkleBranchEvidence
from core.models import Anchor
from engine.jobs import CancelToken, ProofHandle, ProofJob
from engine.keys import KeyStore
from engine.scheduler import WorkerPool
from simulation import make_simulated_collector
from simulation.runner import RunConfig, main, run_scenario
from witness.builder import WitnessBuilder


@pytest.fixture
def witness(chain, transfer):
    return WitnessBuilder().build(chain.merkle_evidence(ANCHOR_HEIGHT, transfer), chain.anchor(ANCHOR_HEIGHT), transfer)


# =============================================================================
# KEY STORE
# =============================================================================

class TestKeyStore:

    def test_setup_runs_once_under_concurrency(self):
        backend = CommitmentBackend("plonk-v1")
        store = KeyStore()
        results = []

        threads = [threading.Thread(target=lambda: results.append(store.get(backend))) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.setup_calls == 1
        assert all(r is results[0] for r in results)

    def test_setup_params_are_passed(self):
        backend = CommitmentBackend("plonk-v1")
        store = KeyStore(setup_params={"plonk-v1": {"seed": "ab" * 32}})
        assert store.get(backend).proving_key.material == bytes.fromhex("ab" * 32)

    def test_persisted_keys_are_reloaded(self, tmp_path):
        backend = CommitmentBackend("plonk-v1")
        first = KeyStore(key_dir=tmp_path).get(backend)

        second_store = KeyStore(key_dir=tmp_path)
        second = second_store.get(backend)

        assert second == first
        assert second_store.setup_calls == 0
        assert (tmp_path / "plonk-v1" / "1" / "verifying.key").exists()

    def test_drop_other_versions(self):
        store = KeyStore()
        store.get(CommitmentBackend("plonk-v1", version="1"))
        store.get(CommitmentBackend("plonk-v1", version="2"))

        assert store.drop("plonk-v1", keep_version="2") == 1
        assert ("plonk-v1", "2") in store
        assert ("plonk-v1", "1") not in store

    def test_failing_setup_is_backend_error(self):
        class BrokenSetup(CommitmentBackend):
            def setup(self, params=None):
                raise OSError("no GPU")

        with pytest.raises(BackendError, match="no GPU"):
            KeyStore().get(BrokenSetup())


# =============================================================================
# JOBS AND HANDLES
# =============================================================================

class TestJobs:

    def test_handle_result_timeout(self, make_request):
        handle = ProofHandle(make_request(), CancelToken())
        assert handle.state is JobState.PENDING
        with pytest.raises(TimeoutError):
            handle.result(timeout=0.01)

    def test_job_schedule_follows_waiters(self, make_request, witness):
        job = ProofJob(witness, CommitmentBackend("plonk-v1"), "1")
        a = ProofHandle(make_request(priority=1, deadline=100.0), CancelToken())
        b = ProofHandle(make_request(priority=7, deadline=200.0), CancelToken())
        job.attach(a)
        job.attach(b)

        assert (job.priority, job.deadline) == (7, 200.0)
        assert job.expired(250.0) and not job.expired(150.0)

        job.detach(b)
        assert (job.priority, job.deadline) == (1, 100.0)
        assert a.job is job


# =============================================================================
# WORKER POOL
# =============================================================================

class TestWorkerPool:

    def _job(self, witness, priority=0, deadline=None):
        job = ProofJob(witness, CommitmentBackend("plonk-v1"), "1")
        job.priority = priority
        job.deadline = deadline
        job.state = JobState.QUEUED
        return job

    def test_runs_in_priority_then_deadline_order(self, witness):
        order = []
        gate = threading.Event()
        done = threading.Event()
        first = self._job(witness)

        def run(job):
            if job is first:
                gate.wait(5)
            order.append(job)
            if len(order) == 4:
                done.set()

        pool = WorkerPool(1, 8, run=run, claim=lambda job: True)
        pool.start()
        pool.submit(first)
        time.sleep(0.05)
        low = self._job(witness, priority=1)
        urgent = self._job(witness, priority=5, deadline=10.0)
        relaxed = self._job(witness, priority=5, deadline=20.0)
        for job in (low, relaxed, urgent):
            pool.submit(job)
        gate.set()

        assert done.wait(5)
        assert order == [first, urgent, relaxed, low]
        pool.shutdown()

    def test_discarded_jobs_are_skipped(self, witness):
        ran = []
        gate = threading.Event()
        pool = WorkerPool(1, 8, run=lambda job: (gate.wait(5), ran.append(job)), claim=lambda job: True)
        pool.start()
        blocker, dropped = self._job(witness), self._job(witness)
        pool.submit(blocker)
        time.sleep(0.05)
        pool.submit(dropped)

        assert pool.discard(dropped)
        assert pool.queue_depth() == 0
        gate.set()
        pool.shutdown()
        assert ran == [blocker]

    def test_admission_limit(self, witness):
        gate = threading.Event()
        pool = WorkerPool(1, 1, run=lambda job: gate.wait(5), claim=lambda job: True)
        pool.start()
        pool.submit(self._job(witness))
        deadline = time.monotonic() + 5
        while pool.busy_workers() == 0 and time.monotonic() < deadline:
            time.sleep(0.005)
        pool.submit(self._job(witness))

        with pytest.raises(ResourceExhausted):
            pool.submit(self._job(witness))
        gate.set()
        pool.shutdown()

    def test_worker_counts_as_busy_while_claiming(self, witness):
        claiming = threading.Event()
        release = threading.Event()

        def claim(job):
            claiming.set()
            release.wait(5)
            return True

        pool = WorkerPool(1, 1, run=lambda job: None, claim=claim)
        pool.start()
        pool.submit(self._job(witness))
        assert claiming.wait(5)

        assert pool.busy_workers() == 1
        assert pool.queue_depth() == 0
        pool.submit(self._job(witness))
        with pytest.raises(ResourceExhausted):
            pool.submit(self._job(witness))
        release.set()
        pool.shutdown()

    def test_shutdown_returns_queued_jobs(self, witness):
        pool = WorkerPool(1, 8, run=lambda job: None, claim=lambda job: True)
        queued = self._job(witness)
        pool.submit(queued)  # never started, stays queued

        assert pool.shutdown() == [queued]
        with pytest.raises(ResourceExhausted):
            pool.submit(self._job(witness))


# =============================================================================
# SIMULATED SOURCE
# =============================================================================

class TestSimulatedCollector:

    def test_merkle_and_header_chain_evidence(self, chain):
        collector = make_simulated_collector(chain, segment_length=2)
        transfer = make_transfer(3)

        merkle = collector.fetch(chain.anchor(ANCHOR_HEIGHT), transfer)
        tip = ANCHOR_HEIGHT + 2
        segment = collector.fetch(chain.anchor(tip), chain.header_field_event(tip, "receipts_root"))

        assert isinstance(merkle, MerkleBranchEvidence)
        assert merkle.leaf == transfer.commitment()
        assert isinstance(segment, HeaderChainEvidence)
        assert [h.height for h in segment.headers] == [tip - 1, tip]

    def test_unknown_chain_and_block(self, chain):
        collector = make_simulated_collector(chain)

        with pytest.raises(SourceUnavailable):
            collector.fetch(Anchor(chain_id="99", height=1, block_hash="00" * 32), make_transfer())
        with pytest.raises(EvidenceNotFound):
            collector.fetch(Anchor(chain_id=CHAIN_ID, height=ANCHOR_HEIGHT, block_hash="00" * 32), make_transfer())

    def test_concurrent_fetches_are_all_counted(self, chain):
        collector = make_simulated_collector(chain)
        anchor = chain.anchor(ANCHOR_HEIGHT)

        def fetch_many():
            for _ in range(50):
                collector.fetch(anchor, make_transfer(1))

        threads = [threading.Thread(target=fetch_many) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert collector.fetch_count == 400

    def test_headers_are_hash_linked(self, chain):
        for height in range(ANCHOR_HEIGHT + 1, chain.tip_height + 1):
            header = chain.get_header(height)
            assert header.parent_hash == chain.get_header(height - 1).hash
            assert header.hash == header.compute_hash()


# =============================================================================
# SIMULATED RUN
# =============================================================================

class TestSimulatedRun:

    @pytest.mark.parametrize("backend", ["commitment", "keyed-mac"])
    def test_scenario_proves_each_event_once(self, backend):
        lines = []
        summary = run_scenario(RunConfig(backend=backend, events=3, duplicates=4), out=lines)

        assert summary.completed == 12
        assert summary.stats.prove_calls == 3
        assert summary.rejected == {"InvalidEvidence": 1}
        assert "prove_calls=3" in lines[-1]

    def test_main_entry_point(self, capsys):
        assert main(["--events", "2", "--duplicates", "1", "--no-tamper", "--log-level", "warning"]) == 0
        assert "completed=2" in capsys.readouterr().out
