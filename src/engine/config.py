# src/engine/config.py
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Set

from pydantic import BaseModel, Field, field_validator

JsonDict = Dict[str, Any]

ENV_PREFIX = "PROOF_ORCH_"


def default_worker_count() -> int:
    """One proving worker per available CPU."""
    try:
        return max(1, len(os.sched_getaffinity(0)))
    except AttributeError:
        return max(1, os.cpu_count() or 1)


class OrchestratorConfig(BaseModel):
    """
    Tunables of the ProofOrchestrator.

    Groups:
        • pool:      workers, max_queue_depth
        • admission: known_chains
        • stages:    witness_timeout, proving_timeout
        • retries:   max_transient_retries, retry_backoff_base/max,
                     prover_fault_retries
        • cache:     cache_capacity, cache_dir, verify_loaded_entries
        • backends:  key_dir, backend_concurrency, backend_setup_params
    """

    workers: int = Field(
        default_factory=default_worker_count,
        ge=1,
        description="Parallel proving workers; defaults to the usable CPU count.",
    )

    max_queue_depth: int = Field(
        default=64,
        ge=0,
        description="Queued jobs allowed while every worker is busy.",
    )

    known_chains: Set[str] = Field(
        default_factory=set,
        description="Accepted source chain ids. Empty accepts any chain.",
    )

    witness_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for evidence fetch + witness building.",
    )

    proving_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds allowed for a single prove() attempt.",
    )

    max_transient_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after a proving timeout or resource allocation failure.",
    )

    retry_backoff_base: float = Field(default=0.5, ge=0)
    retry_backoff_max: float = Field(default=30.0, ge=0)

    prover_fault_retries: int = Field(
        default=1,
        ge=0,
        description="Re-proves after a proof fails its own verifier (randomized backends).",
    )

    cache_capacity: int = Field(default=1024, ge=1)

    cache_dir: Optional[Path] = Field(
        default=None,
        description="Directory for persisted artifacts; None keeps the cache in memory.",
    )

    verify_loaded_entries: bool = Field(
        default=True,
        description="Re-verify artifacts loaded from disk before serving them.",
    )

    key_dir: Optional[Path] = Field(
        default=None,
        description="Directory for persisted backend keys; None keeps keys in memory.",
    )

    backend_concurrency: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-backend cap on simultaneous prove() calls.",
    )

    backend_setup_params: Dict[str, JsonDict] = Field(
        default_factory=dict,
        description="Parameters passed to backend.setup(), keyed by backend_id.",
    )

    @field_validator("known_chains", mode="before")
    @classmethod
    def _split_chains(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {c.strip() for c in value.split(",") if c.strip()}
        return value

    @field_validator("backend_concurrency", "backend_setup_params", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the given 1-based retry attempt."""
        return min(self.retry_backoff_max, self.retry_backoff_base * (2 ** (attempt - 1)))

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        prefix: str = ENV_PREFIX,
        **overrides: Any,
    ) -> "OrchestratorConfig":
        """
        Build a config from environment variables, e.g.

            PROOF_ORCH_WORKERS=4
            PROOF_ORCH_KNOWN_CHAINS=1,7,137
            PROOF_ORCH_BACKEND_CONCURRENCY='{"plonk-v1": 2}'

        Explicit keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(prefix + name.upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls(**values)


def configure_logging(level: int | str = logging.INFO) -> None:
    """Basic process-wide logging setup for embedding applications and scripts."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
