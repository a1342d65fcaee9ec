"""
Shared fixtures and instrumented backends for the proof pipeline tests.

Every orchestrator created through `make_orchestrator` is shut down at the
end of the test, so worker threads never leak between tests.
"""

import threading
import time
from typing import List

import pytest

from backends import BackendRegistry, CommitmentBackend
from backends.base import ProvingKey
from core.errors import BackendDecodeError, BackendTransientError
from core.models import EventDescriptor, ProofRequest
from core.witness import Witness
from engine.config import OrchestratorConfig
from engine.interfaces import CollectingResultSink
from engine.orchestrator import ProofOrchestrator
from simulation import SimulationChain, make_simulated_collector

CHAIN_ID = "7"
ANCHOR_HEIGHT = 1000
BACKEND_ID = "plonk-v1"
TRANSFERS_PER_BLOCK = 16


def make_transfer(nonce: int = 1, amount: int = 100) -> EventDescriptor:
    return EventDescriptor.from_fields(
        "transfer/v1",
        {"from": "0x" + "aa" * 20, "to": "0x" + "bb" * 20, "amount": amount, "nonce": nonce},
    )


# =============================================================================
# INSTRUMENTED BACKENDS
# =============================================================================

class CountingBackend(CommitmentBackend):
    """Deterministic backend that records every prove() call."""

    def __init__(self, backend_id: str = BACKEND_ID, version: str = "1", *, delay: float = 0.0, **kwargs):
        super().__init__(backend_id, version, **kwargs)
        self.delay = delay
        self._lock = threading.Lock()
        self.proved: List[str] = []
        self.active = 0
        self.max_active = 0

    @property
    def prove_calls(self) -> int:
        with self._lock:
            return len(self.proved)

    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        with self._lock:
            self.proved.append(witness.event["commitment"])
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return super().prove(witness, proving_key)
        finally:
            with self._lock:
                self.active -= 1


class BlockingBackend(CountingBackend):
    """prove() parks on `gate` until the test releases it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = threading.Event()
        self.started = threading.Event()

    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        self.started.set()
        if not self.gate.wait(timeout=10):
            raise RuntimeError("test gate never opened")
        return super().prove(witness, proving_key)


class FaultyBackend(CountingBackend):
    """Produces the first `bad_proofs` proofs over the wrong public inputs."""

    def __init__(self, *args, bad_proofs: int = 10**9, **kwargs):
        super().__init__(*args, **kwargs)
        self.bad_proofs = bad_proofs

    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        proof = super().prove(witness, proving_key)
        if self.prove_calls <= self.bad_proofs:
            return self.serialize_proof({"scheme": self.SCHEME, "commitment": "00" * 32})
        return proof


class TransientBackend(CountingBackend):
    """Fails the first `failures` attempts with a resource allocation error."""

    def __init__(self, *args, failures: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures

    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        proof = super().prove(witness, proving_key)
        if self.prove_calls <= self.failures:
            raise BackendTransientError("out of prover memory")
        return proof


class DecodeErrorBackend(CountingBackend):
    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        super().prove(witness, proving_key)
        raise BackendDecodeError("witness layout not understood")


class CrashingBackend(CountingBackend):
    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        super().prove(witness, proving_key)
        raise ZeroDivisionError("prover bug")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def transfer() -> EventDescriptor:
    return make_transfer(1)


@pytest.fixture
def chain() -> SimulationChain:
    """Chain "7" with TRANSFERS_PER_BLOCK transfers at height 1000, then 4 empty blocks."""
    chain = SimulationChain(CHAIN_ID, start_height=ANCHOR_HEIGHT)
    chain.add_block([make_transfer(n) for n in range(1, TRANSFERS_PER_BLOCK + 1)])
    chain.extend(4)
    return chain


@pytest.fixture
def collector(chain):
    return make_simulated_collector(chain)


@pytest.fixture
def sink() -> CollectingResultSink:
    return CollectingResultSink()


@pytest.fixture
def backend() -> CountingBackend:
    return CountingBackend()


@pytest.fixture
def registry(backend) -> BackendRegistry:
    registry = BackendRegistry()
    registry.register(backend)
    return registry


@pytest.fixture
def make_request(chain):
    def _make(event=None, **overrides) -> ProofRequest:
        fields = dict(
            chain_id=CHAIN_ID,
            anchor=chain.anchor(ANCHOR_HEIGHT),
            event=event if event is not None else make_transfer(1),
            backend_id=BACKEND_ID,
        )
        fields.update(overrides)
        return ProofRequest(**fields)
    return _make


@pytest.fixture
def make_orchestrator(registry, collector, sink):
    created: List[ProofOrchestrator] = []

    def _make(**kwargs) -> ProofOrchestrator:
        config_fields = dict(
            workers=2,
            max_queue_depth=8,
            witness_timeout=5.0,
            proving_timeout=5.0,
            retry_backoff_base=0.01,
            retry_backoff_max=0.05,
        )
        config_fields.update(kwargs.pop("config", {}))
        orchestrator = ProofOrchestrator(
            kwargs.pop("registry", registry),
            kwargs.pop("collector", collector),
            kwargs.pop("sink", sink),
            config=OrchestratorConfig(**config_fields),
            **kwargs,
        )
        created.append(orchestrator.start())
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown(wait=False)
