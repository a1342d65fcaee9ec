from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from core.enums import BackendCapability, HealthStatus
from core.errors import BackendDecodeError
from core.models import BackendDescriptor
from core.witness import Witness
from helper.canonical import canonical_bytes

JsonDict = Dict[str, Any]


# ======================================================================
# 1. Keys — immutable, shared read-only across workers
# ======================================================================

class ProvingKey(BaseModel):
    backend_id: str
    version: str
    material: bytes = Field(..., description="Backend-specific key bytes.")

    class Config:
        frozen = True


class VerifyingKey(BaseModel):
    backend_id: str
    version: str
    material: bytes = Field(..., description="Backend-specific key bytes.")

    class Config:
        frozen = True


class KeyPair(NamedTuple):
    proving_key: ProvingKey
    verifying_key: VerifyingKey


# ======================================================================
# 2. Reporting — resource usage and backend info snapshots
# ======================================================================

class ResourceUsage(BaseModel):
    """
    Load of one backend at a point in time.

    `active_tasks` and `queue_depth` are filled in by the orchestrator from
    its own bookkeeping; memory figures come from the backend, which may
    leave them unset when it cannot measure them.
    """

    active_tasks: int = 0
    queue_depth: int = 0
    concurrency_limit: Optional[int] = Field(
        default=None,
        description="Configured cap on concurrent prove() calls, if any.",
    )
    memory_bytes: Optional[int] = None
    available_memory_bytes: Optional[int] = None

    class Config:
        frozen = True


class BackendInfo(BaseModel):
    backend_id: str
    name: str
    version: str
    witness_schema_version: int
    capabilities: List[BackendCapability] = Field(default_factory=list)
    health: HealthStatus
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)

    class Config:
        frozen = True


# ======================================================================
# 3. BackendPlugin — the zk-agnostic proving contract
# ======================================================================

class BackendPlugin(ABC):
    """
    Abstract interface every concrete proof system implements.

    The orchestrator treats all backends as interchangeable, opaque
    implementations of this contract and never special-cases a backend_id.

    Each backend is responsible for:
      - Declaring its identity and version through `descriptor()`;
        bumping the version invalidates every cached proof it produced.
      - Producing keys once in `setup()`. Keys are immutable; the
        orchestrator shares them across all workers.
      - Proving a Witness (`prove`), possibly with internal randomness, such
        that its own `verify` accepts the result.
      - Exposing a canonical byte form for proofs and keys.

    Concurrency:
        `prove` and `verify` are called concurrently from several worker
        threads against the same key objects. Implementations must not
        mutate keys or other shared state without their own locking.

    Errors:
        `prove` may raise BackendTransientError (retried) or
        BackendDecodeError (not retried). Anything else is reported as a
        non-retriable BackendError.
    """

    @abstractmethod
    def descriptor(self) -> BackendDescriptor:
        raise NotImplementedError

    @property
    def backend_id(self) -> str:
        return self.descriptor().backend_id

    @abstractmethod
    def setup(self, params: Optional[JsonDict] = None) -> KeyPair:
        """
        Produce (ProvingKey, VerifyingKey). Expensive; performed once per
        (backend_id, version) by the key store.
        """
        raise NotImplementedError

    @abstractmethod
    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        """Return proof bytes in this backend's canonical serialized form."""
        raise NotImplementedError

    @abstractmethod
    def verify(
        self,
        proof_bytes: bytes,
        public_inputs: JsonDict,
        verifying_key: VerifyingKey,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def serialize_proof(self, proof: Any) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def deserialize_proof(self, data: bytes) -> Any:
        """Decode canonical proof bytes; raise BackendDecodeError on bad shape."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Overridable defaults
    # ------------------------------------------------------------------

    def public_inputs(self, witness: Witness) -> JsonDict:
        """
        Public inputs a verifier needs for this witness: the witness'
        public section bound to its digest.
        """
        inputs = dict(witness.public_inputs)
        inputs["witness_digest"] = witness.digest()
        return inputs

    def serialize_key(self, key: ProvingKey | VerifyingKey) -> bytes:
        record = key.model_dump(mode="json", exclude={"material"})
        record["kind"] = "proving" if isinstance(key, ProvingKey) else "verifying"
        record["material"] = key.material.hex()
        return canonical_bytes(record)

    def deserialize_key(self, data: bytes) -> ProvingKey | VerifyingKey:
        try:
            record = KeyRecord.model_validate_json(data)
            cls = ProvingKey if record.kind == "proving" else VerifyingKey
            return cls(
                backend_id=record.backend_id,
                version=record.version,
                material=bytes.fromhex(record.material),
            )
        except (ValidationError, ValueError) as exc:
            raise BackendDecodeError(f"{self.backend_id}: malformed key encoding") from exc

    def capabilities(self) -> Set[BackendCapability]:
        return set()

    def health_check(self) -> HealthStatus:
        return HealthStatus.HEALTHY

    def display_name(self) -> str:
        return type(self).__name__

    def resource_usage(self) -> ResourceUsage:
        """Memory figures for `BackendInfo`; task counts are owned by the orchestrator."""
        return ResourceUsage()

    def shutdown(self) -> None:
        """Release backend resources. Called once when the orchestrator stops."""
        return None


class KeyRecord(BaseModel):
    kind: Literal["proving", "verifying"]
    backend_id: str
    version: str
    material: str


def decode_json_proof(data: bytes, scheme: str, fields: Set[str]) -> JsonDict:
    """
    Shared decoder for backends whose canonical proof form is a JSON object
    tagged with `scheme`. Raises BackendDecodeError on any shape problem.
    """
    try:
        proof = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise BackendDecodeError(f"{scheme}: proof is not JSON") from exc
    if not isinstance(proof, dict) or proof.get("scheme") != scheme:
        raise BackendDecodeError(f"{scheme}: unexpected proof scheme")
    missing = fields - proof.keys()
    if missing:
        raise BackendDecodeError(f"{scheme}: proof is missing {sorted(missing)}")
    return proof
