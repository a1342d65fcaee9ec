# src/core/enums.py
from __future__ import annotations

from enum import Enum


class EvidenceKind(str, Enum):
    """
    Shapes of raw source-chain evidence accepted by the WitnessBuilder.

    Both shapes flow through the same pipeline and produce the same Witness
    type; only the validation and the `statement` section differ.
    """
    MERKLE_BRANCH = "merkle_branch"
    HEADER_CHAIN = "header_chain"


class JobState(str, Enum):
    """
    Lifecycle of a ProofJob inside the orchestrator.

      Pending -> WitnessBuilding -> (cache check) -> Queued -> Proving
              -> SelfVerifying -> Completed | Failed | Cancelled
    """
    PENDING = "pending"
    WITNESS_BUILDING = "witness_building"
    QUEUED = "queued"
    PROVING = "proving"
    SELF_VERIFYING = "self_verifying"

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    """
    Distinguishable failure kinds surfaced to callers.

    PROVER_FAULT and INVALID_EVIDENCE must never be conflated: the first
    blames the backend, the second blames the caller's input.
    """
    INVALID_REQUEST = "InvalidRequest"
    INVALID_EVIDENCE = "InvalidEvidence"
    UNSUPPORTED_SCHEMA = "UnsupportedSchema"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    NOT_FOUND = "NotFound"
    RESOURCE_EXHAUSTED = "ResourceExhausted"
    TIMEOUT = "Timeout"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    PROVER_FAULT = "ProverFault"
    CACHE_CORRUPTION = "CacheCorruption"
    BACKEND_ERROR = "BackendError"
    CANCELLED = "Cancelled"


class BackendCapability(str, Enum):
    """Advertised properties of a proving backend (informational only)."""
    DETERMINISTIC = "deterministic"
    RANDOMIZED = "randomized"
    SUCCINCT_VERIFICATION = "succinct_verification"


class HealthStatus(str, Enum):
    """
    Reported per backend. DEGRADED means the backend passes its own health
    check but its most recent job ended in a backend-side failure.
    """
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
