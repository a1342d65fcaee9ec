from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from helper.canonical import canonical_bytes, canonical_json, sha256_hex

JsonDict = Dict[str, Any]


# ======================================================================
# 1. Anchor — a point in source-chain history
# ======================================================================

class Anchor(BaseModel):
    """
    Identifies a specific block (height or slot + hash) on a source chain.

    Every piece of evidence is tied to exactly one Anchor; the anchor ends
    up verbatim in the witness public inputs so that the relying party
    knows *which* source state the proof speaks about.
    """

    chain_id: str = Field(
        ...,
        description="Identifier of the source chain.",
    )

    height: int = Field(
        ...,
        ge=0,
        description="Block height or slot number.",
    )

    block_hash: str = Field(
        ...,
        description="Hex-encoded hash of the block at `height`.",
    )

    class Config:
        frozen = True

    def key(self) -> tuple:
        return (self.chain_id, self.height, self.block_hash)


# ======================================================================
# 2. Header — a source-chain block header (light-client view)
# ======================================================================

class Header(BaseModel):
    """
    Source-chain header as seen by a light client.

    Only fields relevant to evidence validation are modeled:
        • chain_id, height — identifies the block
        • parent_hash      — links the header to its predecessor
        • state_root / tx_root / receipts_root — Merkle commitments
        • hash             — block hash, must equal compute_hash()
        • timestamp        — chain timestamp
        • extra            — chain-specific fields (committed by the hash)
    """

    chain_id: str = Field(
        ...,
        description="Identifier of the chain this header belongs to.",
    )

    height: int = Field(
        ...,
        description="Block height of this header.",
    )

    parent_hash: Optional[str] = Field(
        default=None,
        description="Hash of the parent block.",
    )

    state_root: Optional[str] = None
    tx_root: Optional[str] = None
    receipts_root: Optional[str] = None

    hash: Optional[str] = Field(
        default=None,
        description="Hash/commitment of the header.",
    )

    timestamp: Optional[int] = Field(
        default=None,
        description="UNIX seconds on the source chain.",
    )

    extra: JsonDict = Field(
        default_factory=dict,
        description="Any additional chain-specific header data.",
    )

    class Config:
        extra = "allow"

    def compute_hash(self) -> str:
        """SHA-256 over the canonical encoding of every field except `hash`."""
        return sha256_hex(canonical_bytes(self.model_dump(mode="json", exclude={"hash"})))

    def field_value(self, name: str) -> Any:
        """
        Look up a committed header field by name, falling back to `extra`.
        Returns None when the header carries no such field.
        """
        if name != "extra" and name in self.model_dump():
            return getattr(self, name)
        return self.extra.get(name)


# ======================================================================
# 3. EventDescriptor — the fact being attested
# ======================================================================

class EventDescriptor(BaseModel):
    """
    Opaque, schema-tagged bytes identifying the fact being attested
    (a transfer, a state slot value, a header field, ...).

    The payload must be canonical JSON; the WitnessBuilder rejects anything
    else. The `commitment()` is what a Merkle leaf must equal.
    """

    schema_tag: str = Field(
        ...,
        min_length=1,
        description="Schema identifier, e.g. 'transfer/v1'.",
    )

    payload: bytes = Field(
        ...,
        description="Canonical JSON encoding of the event fields.",
    )

    class Config:
        frozen = True

    @classmethod
    def from_fields(cls, schema_tag: str, fields: JsonDict) -> "EventDescriptor":
        return cls(schema_tag=schema_tag, payload=canonical_bytes(fields))

    def commitment(self) -> str:
        return sha256_hex(self.schema_tag.encode("utf-8") + b"\x00" + self.payload)


# ======================================================================
# 4. BackendDescriptor — identity of a pluggable proof system
# ======================================================================

class BackendDescriptor(BaseModel):
    backend_id: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    witness_schema_version: int = Field(
        default=1,
        description="Witness layout this backend accepts.",
    )

    class Config:
        frozen = True


# ======================================================================
# 5. ProofRequest — caller input
# ======================================================================

class ProofRequest(BaseModel):
    """
    A caller's request for a proof of `event` at `anchor` from `backend_id`.

    Notes:
        - `priority`: higher is scheduled first.
        - `deadline`: absolute UNIX time (seconds). A request whose deadline
          passes before a worker picks it up fails with DeadlineExceeded.
    """

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    chain_id: str
    anchor: Anchor
    event: EventDescriptor
    backend_id: str
    priority: int = 0
    deadline: Optional[float] = None


# ======================================================================
# 6. ProofArtifact — the finished, self-verified proof
# ======================================================================

class ArtifactMetadata(BaseModel):
    generated_at: float = Field(default_factory=time.time)
    prove_seconds: float = 0.0
    verify_seconds: float = 0.0
    proof_size: int = 0
    attempts: int = 1
    extra: JsonDict = Field(default_factory=dict)

    class Config:
        frozen = True


class ProofArtifact(BaseModel):
    """
    Immutable result of a completed job.

    Only ever constructed by the orchestrator after `backend.verify()`
    accepted the proof, or loaded from the cache.
    """

    proof_bytes: bytes
    public_inputs: JsonDict
    backend_descriptor: BackendDescriptor
    witness_digest: str
    metadata: ArtifactMetadata = Field(default_factory=ArtifactMetadata)

    class Config:
        frozen = True

    def to_record(self) -> JsonDict:
        """Plain JSON record; proof bytes are hex-encoded."""
        return {
            "proof": self.proof_bytes.hex(),
            "public_inputs": self.public_inputs,
            "backend_descriptor": self.backend_descriptor.model_dump(mode="json"),
            "witness_digest": self.witness_digest,
            "metadata": self.metadata.model_dump(mode="json"),
        }

    @classmethod
    def from_record(cls, record: JsonDict) -> "ProofArtifact":
        return cls(
            proof_bytes=bytes.fromhex(record["proof"]),
            public_inputs=record["public_inputs"],
            backend_descriptor=BackendDescriptor(**record["backend_descriptor"]),
            witness_digest=record["witness_digest"],
            metadata=ArtifactMetadata(**record.get("metadata", {})),
        )

    def checksum(self) -> str:
        """
        Integrity digest over the semantic part of the artifact (metadata
        excluded), used to detect corrupted cache blobs.
        """
        record = self.to_record()
        record.pop("metadata")
        return sha256_hex(canonical_json(record))
