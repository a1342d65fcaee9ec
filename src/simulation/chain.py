# src/simulation/chain.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.evidence import HEADER_FIELD_SCHEMA, HeaderChainEvidence, MerkleBranchEvidence
from core.models import Anchor, EventDescriptor, Header
from helper.canonical import sha256_hex
from helper.merkle import build_merkle_tree

GENESIS_PARENT = "00" * 32
EMPTY_RECEIPTS_ROOT = sha256_hex(b"")


@dataclass
class SimulationChain:
    """
    Minimal in-memory source chain that produces *real* evidence.

    This is not a consensus model. It only records, per height:
        - the Header (hash-linked to its parent, hash = compute_hash())
        - the events emitted in that block, committed by receipts_root

    so tests and local runs can produce Merkle branches and header segments
    that pass the WitnessBuilder unchanged, and tamper with them to exercise
    the failure paths.
    """
    chain_id: str
    start_height: int = 0
    checkpoint_hash: str = GENESIS_PARENT
    _headers: Dict[int, Header] = field(default_factory=dict)
    _events: Dict[int, List[EventDescriptor]] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Block production
    # ------------------------------------------------------------------

    def add_block(
        self,
        events: Sequence[EventDescriptor] = (),
        *,
        timestamp: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Header:
        """Append one block carrying `events` and return its header."""
        tip = self.tip_height
        height = self.start_height if tip is None else tip + 1
        parent = self.checkpoint_hash if tip is None else self._headers[tip].hash

        events = list(events)
        if events:
            receipts_root, _ = build_merkle_tree([e.commitment() for e in events])
        else:
            receipts_root = EMPTY_RECEIPTS_ROOT

        header = Header(
            chain_id=self.chain_id,
            height=height,
            parent_hash=parent,
            state_root=sha256_hex(f"{self.chain_id}/state/{height}"),
            receipts_root=receipts_root,
            timestamp=int(time.time()) if timestamp is None else timestamp,
            extra=dict(extra or {}),
        )
        header = header.model_copy(update={"hash": header.compute_hash()})
        self._headers[height] = header
        self._events[height] = events
        return header

    def extend(self, count: int) -> Header:
        """Append `count` empty blocks; return the new tip."""
        if count < 1:
            raise ValueError("count must be >= 1")
        header = None
        for _ in range(count):
            header = self.add_block()
        return header

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_header(self, height: int) -> Optional[Header]:
        return self._headers.get(height)

    def events_at(self, height: int) -> List[EventDescriptor]:
        return list(self._events.get(height, []))

    @property
    def tip_height(self) -> Optional[int]:
        if not self._headers:
            return None
        return max(self._headers)

    def anchor(self, height: int) -> Anchor:
        header = self._require(height)
        return Anchor(chain_id=self.chain_id, height=height, block_hash=header.hash)

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def merkle_evidence(
        self,
        height: int,
        event: EventDescriptor,
        *,
        include_header: bool = True,
    ) -> MerkleBranchEvidence:
        """Inclusion branch of `event` in the receipts tree of block `height`."""
        header = self._require(height)
        commitments = [e.commitment() for e in self._events.get(height, [])]
        try:
            index = commitments.index(event.commitment())
        except ValueError:
            raise KeyError(f"event {event.schema_tag} not emitted at height {height}") from None

        root, proofs = build_merkle_tree(commitments)
        return MerkleBranchEvidence(
            leaf=commitments[index],
            path=proofs[index],
            leaf_index=index,
            depth=len(proofs[index]),
            expected_root=root,
            root_field="receipts_root",
            header=header if include_header else None,
            collected_at=time.time(),
            meta={"source": "simulation", "chain_id": self.chain_id},
        )

    def header_chain_evidence(
        self,
        height: int,
        *,
        segment_length: Optional[int] = None,
    ) -> HeaderChainEvidence:
        """
        Header segment ending at `height`. Its checkpoint is the parent of
        the first header in the segment; by default the segment starts at
        the first block of the chain.
        """
        self._require(height)
        first = self.start_height
        if segment_length is not None:
            first = max(first, height - segment_length + 1)
        headers = [self._headers[h] for h in range(first, height + 1)]
        return HeaderChainEvidence(
            checkpoint_hash=headers[0].parent_hash,
            headers=headers,
            collected_at=time.time(),
            meta={"source": "simulation", "chain_id": self.chain_id},
        )

    def header_field_event(self, height: int, field_name: str) -> EventDescriptor:
        """Event asserting the value of one committed field of block `height`."""
        value = self._require(height).field_value(field_name)
        if value is None:
            raise KeyError(f"header {height} has no field {field_name!r}")
        return EventDescriptor.from_fields(HEADER_FIELD_SCHEMA, {"field": field_name, "value": value})

    def _require(self, height: int) -> Header:
        header = self._headers.get(height)
        if header is None:
            raise KeyError(f"{self.chain_id} has no block at height {height}")
        return header
