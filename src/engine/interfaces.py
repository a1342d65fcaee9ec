from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

from core.errors import EvidenceNotFound
from core.evidence import Evidence
from core.models import Anchor, EventDescriptor, ProofArtifact

logger = logging.getLogger(__name__)


# ======================================================================
# 1. EvidenceCollector — supplies raw evidence (external)
# ======================================================================

class EvidenceCollector(ABC):
    """
    Abstract interface of the chain-specific evidence source.

    Real implementations talk to RPC nodes or indexers; they own their own
    retry policy. The orchestrator calls `fetch` once per request that
    arrives without evidence and never retries it.

    Failure contract:
        SourceUnavailable  — the source could not be reached
        EvidenceNotFound   — the anchor or event is unknown to the source
        ProofTimeout       — the source did not answer in time
    Any other exception is reported to the caller as SourceUnavailable.
    """

    @abstractmethod
    def fetch(self, anchor: Anchor, event: EventDescriptor) -> Evidence:
        raise NotImplementedError


# ======================================================================
# 2. ResultSink — consumes finished artifacts (external)
# ======================================================================

class ResultSink(ABC):
    """
    Downstream consumer of finished artifacts (submission to a destination
    chain, a queue, ...). Fire-and-forget: the orchestrator logs delivery
    failures and does not retry them.
    """

    @abstractmethod
    def deliver(self, artifact: ProofArtifact) -> None:
        raise NotImplementedError


# ======================================================================
# 3. In-memory implementations
# ======================================================================

class InMemoryEvidenceCollector(EvidenceCollector):
    """
    Collector backed by a dict keyed by (anchor, event commitment).

    Useful for tests and for replaying previously captured evidence.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._evidence: Dict[Tuple[tuple, str], Evidence] = {}
        self.fetch_count = 0

    def put(self, anchor: Anchor, event: EventDescriptor, evidence: Evidence) -> None:
        with self._lock:
            self._evidence[(anchor.key(), event.commitment())] = evidence

    def fetch(self, anchor: Anchor, event: EventDescriptor) -> Evidence:
        with self._lock:
            self.fetch_count += 1
            evidence = self._evidence.get((anchor.key(), event.commitment()))
        if evidence is None:
            raise EvidenceNotFound(
                f"no evidence for {event.schema_tag} at {anchor.chain_id}@{anchor.height}",
                context={"anchor": anchor.model_dump(mode="json")},
            )
        return evidence


class CollectingResultSink(ResultSink):
    """Sink that keeps every delivered artifact in memory, in delivery order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._delivered: List[ProofArtifact] = []

    def deliver(self, artifact: ProofArtifact) -> None:
        with self._lock:
            self._delivered.append(artifact)

    @property
    def delivered(self) -> List[ProofArtifact]:
        with self._lock:
            return list(self._delivered)

    def __len__(self) -> int:
        with self._lock:
            return len(self._delivered)
