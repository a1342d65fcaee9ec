# simulation/__init__.py
from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Iterable

from core.errors import EvidenceNotFound, SourceUnavailable
from core.evidence import HEADER_FIELD_SCHEMA, Evidence
from core.models import Anchor, EventDescriptor
from engine.interfaces import EvidenceCollector
from simulation.chain import SimulationChain

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# 1) Collector over simulated chains
# ---------------------------------------------------------------------

class SimulatedEvidenceCollector(EvidenceCollector):
    """
    EvidenceCollector backed by SimulationChain instances.

    Events tagged HEADER_FIELD_SCHEMA are answered with a header segment of
    `segment_length` blocks ending at the anchor; every other event with a
    receipts-tree Merkle branch. `latency` delays each fetch, which is
    handy for exercising witness timeouts.
    """

    def __init__(
        self,
        chains: Iterable[SimulationChain] = (),
        *,
        segment_length: int = 8,
        latency: float = 0.0,
    ) -> None:
        self._lock = threading.Lock()
        self._chains: Dict[str, SimulationChain] = {}
        self.segment_length = segment_length
        self.latency = latency
        self.fetch_count = 0
        for chain in chains:
            self.attach_chain(chain)

    def attach_chain(self, chain: SimulationChain) -> None:
        with self._lock:
            self._chains[chain.chain_id] = chain

    def get_chain(self, chain_id: str) -> SimulationChain:
        with self._lock:
            chain = self._chains.get(chain_id)
        if chain is None:
            raise SourceUnavailable(f"no source attached for chain {chain_id!r}")
        return chain

    def fetch(self, anchor: Anchor, event: EventDescriptor) -> Evidence:
        with self._lock:
            self.fetch_count += 1
        if self.latency:
            time.sleep(self.latency)

        chain = self.get_chain(anchor.chain_id)
        header = chain.get_header(anchor.height)
        if header is None or header.hash != anchor.block_hash.lower().removeprefix("0x"):
            raise EvidenceNotFound(
                f"block {anchor.height} on {anchor.chain_id} is unknown",
                context={"anchor": anchor.model_dump(mode="json")},
            )

        if event.schema_tag == HEADER_FIELD_SCHEMA:
            return chain.header_chain_evidence(anchor.height, segment_length=self.segment_length)
        try:
            return chain.merkle_evidence(anchor.height, event)
        except KeyError as exc:
            raise EvidenceNotFound(str(exc), context={"schema_tag": event.schema_tag}) from exc


# ---------------------------------------------------------------------
# 2) Convenience factory
# ---------------------------------------------------------------------

def make_simulated_collector(*chains: SimulationChain, **kwargs) -> SimulatedEvidenceCollector:
    """
    Construct a collector over the given chains, e.g.:

        chain = SimulationChain("7", start_height=1000)
        chain.add_block([transfer])
        collector = make_simulated_collector(chain)
    """
    collector = SimulatedEvidenceCollector(chains, **kwargs)
    logger.debug("simulated collector over chains %s", [c.chain_id for c in chains])
    return collector


__all__ = [
    "SimulatedEvidenceCollector",
    "SimulationChain",
    "make_simulated_collector",
]
