# src/core/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional

from core.enums import ErrorKind

JsonDict = Dict[str, Any]


class ProofError(Exception):
    """
    Base class of every failure the proof pipeline surfaces.

    Each subclass pins a single ErrorKind. `context` carries structured
    diagnostics (backend id, witness digest, attempt counts, ...) so that
    operators can act on a failure without re-running it.

    `retriable` only describes whether the *orchestrator* may retry the
    failing stage internally; failures that reach the caller have already
    exhausted that budget.
    """

    kind: ErrorKind = ErrorKind.BACKEND_ERROR
    retriable: bool = False

    def __init__(self, message: str, *, context: Optional[JsonDict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: JsonDict = dict(context or {})

    def to_dict(self) -> JsonDict:
        """Structured error response: {kind, message, context}."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": dict(self.context),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class InvalidRequest(ProofError):
    """Unknown chain id, unknown backend id, or an inconsistent request."""
    kind = ErrorKind.INVALID_REQUEST


class InvalidEvidence(ProofError):
    """Malformed Merkle path, root mismatch, broken header linkage, bad event encoding."""
    kind = ErrorKind.INVALID_EVIDENCE


class UnsupportedSchema(ProofError):
    kind = ErrorKind.UNSUPPORTED_SCHEMA


class SourceUnavailable(ProofError):
    """Evidence could not be fetched. Retrying is the caller's or collector's business."""
    kind = ErrorKind.SOURCE_UNAVAILABLE


class EvidenceNotFound(ProofError):
    kind = ErrorKind.NOT_FOUND


class ResourceExhausted(ProofError):
    """Admission-control rejection: pool saturated and queue full."""
    kind = ErrorKind.RESOURCE_EXHAUSTED


class ProofTimeout(ProofError):
    """A stage exceeded its own timeout."""
    kind = ErrorKind.TIMEOUT
    retriable = True


class DeadlineExceeded(ProofError):
    """The request-level deadline passed."""
    kind = ErrorKind.DEADLINE_EXCEEDED


class ProverFault(ProofError):
    """
    The backend produced a proof that its own verifier rejects.

    Attributed to the backend, never to the caller's input.
    """
    kind = ErrorKind.PROVER_FAULT


class CacheCorruption(ProofError):
    """A persisted cache entry failed its integrity check on load."""
    kind = ErrorKind.CACHE_CORRUPTION


class BackendError(ProofError):
    """Non-retriable backend failure (crash, bad return type, failed setup)."""
    kind = ErrorKind.BACKEND_ERROR


class BackendDecodeError(BackendError):
    """Backend rejected the witness or proof shape. Never retried."""


class BackendTransientError(ProofError):
    """Backend could not allocate resources for this attempt; retriable."""
    kind = ErrorKind.RESOURCE_EXHAUSTED
    retriable = True


class JobCancelled(ProofError):
    kind = ErrorKind.CANCELLED
