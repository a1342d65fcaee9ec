from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field

from core.enums import EvidenceKind
from core.models import Anchor
from helper.canonical import canonical_bytes, sha256_hex

JsonDict = Dict[str, Any]


class Witness(BaseModel):
    """
    Canonical, backend-agnostic encoding of validated evidence.

    Layout:
        schema_version  — witness layout version (must match the backend's)
        kind            — which evidence shape produced it
        anchor          — the source-chain point the fact is about
        event           — {schema, payload (hex), commitment}
        statement       — normalized evidence content (branch or header segment)
        public_inputs   — what the proof exposes to the relying party

    The digest is SHA-256 over the canonical JSON of exactly these fields.
    No timestamps or collector metadata live here, so equal inputs always
    produce an equal digest.
    """

    schema_version: int
    kind: EvidenceKind
    anchor: Anchor
    event: JsonDict
    statement: JsonDict = Field(default_factory=dict)
    public_inputs: JsonDict = Field(default_factory=dict)

    class Config:
        frozen = True

    def canonical_bytes(self) -> bytes:
        return canonical_bytes(self.model_dump(mode="json"))

    def digest(self) -> str:
        return sha256_hex(self.canonical_bytes())
