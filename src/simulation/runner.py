# simulation/runner.py
from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from backends import BackendRegistry, CommitmentBackend, KeyedMacBackend
from core.errors import ProofError
from core.models import EventDescriptor, ProofRequest
from engine.config import OrchestratorConfig, configure_logging
from engine.interfaces import CollectingResultSink
from engine.orchestrator import OrchestratorStats, ProofOrchestrator
from simulation import SimulationChain, make_simulated_collector

logger = logging.getLogger(__name__)

BACKENDS = {
    "commitment": CommitmentBackend,
    "keyed-mac": KeyedMacBackend,
}


@dataclass
class RunConfig:
    """
    Configuration for a single simulated run:

      - backend:    reference backend class to register ("commitment", "keyed-mac")
      - backend_id: id it is registered under
      - events:     distinct transfers emitted in the anchor block
      - duplicates: identical requests submitted per event
      - tamper:     also submit one request with a corrupted Merkle leaf
    """
    chain_id: str = "7"
    height: int = 1000
    backend: str = "commitment"
    backend_id: str = "plonk-v1"
    events: int = 4
    duplicates: int = 3
    workers: int = 2
    tamper: bool = True


@dataclass
class RunSummary:
    completed: int
    rejected: Dict[str, int]
    stats: OrchestratorStats


def _transfer(nonce: int) -> EventDescriptor:
    return EventDescriptor.from_fields(
        "transfer/v1",
        {"amount": 100 * nonce, "from": "0x" + "aa" * 20, "nonce": nonce, "to": "0x" + "bb" * 20},
    )


def run_scenario(config: RunConfig, *, out: Optional[List[str]] = None) -> RunSummary:
    """
    Drive one orchestrator over a simulated chain and report the outcome.

    Steps:
      - build a SimulationChain with `events` transfers at `height`
      - register one reference backend
      - submit `duplicates` identical requests per event (coalesced/cached)
      - optionally submit a request with tampered evidence (rejected)
    """
    lines = out if out is not None else []

    chain = SimulationChain(config.chain_id, start_height=config.height)
    transfers = [_transfer(n) for n in range(1, config.events + 1)]
    chain.add_block(transfers)

    registry = BackendRegistry()
    registry.register(BACKENDS[config.backend](config.backend_id))
    sink = CollectingResultSink()

    completed = 0
    rejected: Dict[str, int] = {}
    orch_config = OrchestratorConfig(workers=config.workers, known_chains={config.chain_id})

    with ProofOrchestrator(registry, make_simulated_collector(chain), sink, config=orch_config) as orchestrator:
        handles = []
        for event in transfers:
            for _ in range(config.duplicates):
                request = ProofRequest(
                    chain_id=config.chain_id,
                    anchor=chain.anchor(config.height),
                    event=event,
                    backend_id=config.backend_id,
                )
                handles.append(orchestrator.submit(request))

        for handle in handles:
            try:
                artifact = handle.result(timeout=60)
            except ProofError as exc:
                rejected[exc.kind.value] = rejected.get(exc.kind.value, 0) + 1
                continue
            completed += 1
            lines.append(
                f"  {handle.request_id[:8]} -> {artifact.witness_digest[:16]} "
                f"({artifact.metadata.proof_size} bytes, {artifact.metadata.attempts} attempt(s))"
            )

        if config.tamper:
            evidence = chain.merkle_evidence(config.height, transfers[0])
            flipped = ("0" if evidence.leaf[0] != "0" else "1") + evidence.leaf[1:]
            request = ProofRequest(
                chain_id=config.chain_id,
                anchor=chain.anchor(config.height),
                event=transfers[0],
                backend_id=config.backend_id,
            )
            try:
                orchestrator.submit(request, evidence.model_copy(update={"leaf": flipped}))
            except ProofError as exc:
                rejected[exc.kind.value] = rejected.get(exc.kind.value, 0) + 1
                lines.append(f"  tampered leaf rejected: {exc.kind.value} ({exc.message})")

        stats = orchestrator.stats()

    logger.info("simulated run finished: %d completed, %d rejected", completed, sum(rejected.values()))

    lines.append(
        f"completed={completed} prove_calls={stats.prove_calls} "
        f"cache_hits={stats.cache_hits} coalesced={stats.coalesced} rejected={rejected}"
    )
    return RunSummary(completed=completed, rejected=rejected, stats=stats)


# -------------------------------------------------------------------------
# Command line
# -------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the proof pipeline against a simulated chain.")
    parser.add_argument("--backend", choices=sorted(BACKENDS), default="commitment")
    parser.add_argument("--events", type=int, default=4)
    parser.add_argument("--duplicates", type=int, default=3)
    parser.add_argument("--workers", type=int, default=2)
    parser.add_argument("--no-tamper", action="store_true")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    configure_logging(args.log_level.upper())
    config = RunConfig(
        backend=args.backend,
        events=args.events,
        duplicates=args.duplicates,
        workers=args.workers,
        tamper=not args.no_tamper,
    )

    lines: List[str] = []
    print(f"=== chain {config.chain_id} @ {config.height} / backend {config.backend_id} ({config.backend}) ===")
    run_scenario(config, out=lines)
    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
