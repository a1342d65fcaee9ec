from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from core.enums import EvidenceKind
from core.models import Header

JsonDict = Dict[str, Any]

# Event schema used with HeaderChainEvidence: the payload names one field of
# the anchor header and the value it is claimed to hold.
HEADER_FIELD_SCHEMA = "header-field/v1"


# ========== 1. Base: abstract Evidence ==========

class Evidence(BaseModel):
    """
    Raw source-chain data collected for one Anchor and one claimed event.

    Evidence is ephemeral: the WitnessBuilder consumes it and the pipeline
    discards it right after the witness is built. Only the witness digest
    survives (as part of the cache key).

    Two shapes exist in practice:

      • Merkle inclusion branch:
          a leaf, its sibling path and the expected root, optionally with
          the header that commits to that root. Used for events and state
          slot values.

      • Header-chain segment (light-client proof):
          a contiguous run of headers from a trusted checkpoint to the
          anchor. Used for facts about the anchor header itself.

    Both are variants of this one type, discriminated by `kind`, and both
    feed the same WitnessBuilder pipeline.

    Fields `collected_at` and `meta` are informational. They never enter the
    witness, so evidence collected at different times yields the same
    digest.
    """

    kind: EvidenceKind = Field(
        ...,
        description="Which evidence shape this is.",
    )

    collected_at: Optional[float] = Field(
        default=None,
        description="When the collector fetched this evidence (not semantic).",
    )

    meta: JsonDict = Field(
        default_factory=dict,
        description="Collector-specific metadata (not semantic).",
    )

    class Config:
        extra = "allow"


# ========== 2. Merkle inclusion branch ==========

class MerkleBranchEvidence(Evidence):
    """
    Merkle inclusion evidence.

    Semantics:
        compute_merkle_root(leaf, path, leaf_index) == expected_root
        leaf == event.commitment()

    When `header` is supplied, it must be the anchor block and its
    `root_field` must equal `expected_root`; without a header the root is
    taken as the collector's claim and exposed as a public input for the
    relying party to check against its own light-client view.
    """

    kind: Literal[EvidenceKind.MERKLE_BRANCH] = EvidenceKind.MERKLE_BRANCH

    leaf: str = Field(
        ...,
        description="Hex-encoded 32-byte leaf hash.",
    )
    path: List[str] = Field(
        default_factory=list,
        description="Sibling hashes, bottom-up.",
    )
    leaf_index: int = Field(
        ...,
        description="Position of the leaf; its bits select sibling sides.",
    )
    depth: Optional[int] = Field(
        default=None,
        description="Claimed tree depth; when present the path length must equal it.",
    )
    expected_root: str = Field(
        ...,
        description="Hex-encoded root the branch must recompute.",
    )
    root_field: str = Field(
        default="receipts_root",
        description="Header field that commits to the tree (receipts_root, state_root, ...).",
    )
    header: Optional[Header] = Field(
        default=None,
        description="Anchor header committing to expected_root, if available.",
    )


# ========== 3. Header-chain segment ==========

class HeaderChainEvidence(Evidence):
    """
    Light-client header evidence.

    Semantics:
        headers, sorted by height, form a contiguous hash-linked chain whose
        first parent is `checkpoint_hash` and whose tip is the anchor.
    """

    kind: Literal[EvidenceKind.HEADER_CHAIN] = EvidenceKind.HEADER_CHAIN

    checkpoint_hash: str = Field(
        ...,
        description="Trusted hash the first header's parent must equal.",
    )
    headers: List[Header] = Field(
        default_factory=list,
        description="Header segment ending at the anchor (any order).",
    )


AnyEvidence = Annotated[
    Union[MerkleBranchEvidence, HeaderChainEvidence],
    Field(discriminator="kind"),
]


_EVIDENCE_ADAPTER: TypeAdapter = TypeAdapter(AnyEvidence)


def parse_evidence(data: Any) -> Evidence:
    """Decode a plain dict (e.g. an RPC response) into the right Evidence variant."""
    if isinstance(data, Evidence):
        return data
    return _EVIDENCE_ADAPTER.validate_python(data)
