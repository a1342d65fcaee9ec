# src/witness/builder.py
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from core.enums import EvidenceKind
from core.errors import InvalidEvidence, UnsupportedSchema
from core.evidence import Evidence, HeaderChainEvidence, MerkleBranchEvidence
from core.models import Anchor, EventDescriptor, Header
from core.witness import Witness
from helper.canonical import is_canonical_json
from helper.merkle import HASH_HEX_LEN, compute_merkle_root, normalize_hex

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

KNOWN_SCHEMA_VERSIONS: FrozenSet[int] = frozenset({1})

DEFAULT_MAX_PATH_LENGTH = 64
DEFAULT_MAX_HEADERS = 4096
DEFAULT_MAX_WITNESS_BYTES = 16 * 1024 * 1024


class WitnessBuilder:
    """
    Deterministic transform (evidence, anchor, event) -> Witness.

    This is the pipeline's primary safety margin: every structural check
    runs here, before any proving resource is committed. A failure raises
    InvalidEvidence or UnsupportedSchema and is never retried, since it
    reflects bad input rather than a transient condition.

    The builder is stateless apart from its limits and may be shared across
    threads.
    """

    def __init__(
        self,
        *,
        supported_schema_versions: Iterable[int] = KNOWN_SCHEMA_VERSIONS,
        max_path_length: int = DEFAULT_MAX_PATH_LENGTH,
        max_headers: int = DEFAULT_MAX_HEADERS,
        max_witness_bytes: int = DEFAULT_MAX_WITNESS_BYTES,
    ) -> None:
        self.supported_schema_versions = frozenset(supported_schema_versions)
        self.max_path_length = max_path_length
        self.max_headers = max_headers
        self.max_witness_bytes = max_witness_bytes

        self._handlers: Dict[EvidenceKind, Callable[..., tuple]] = {
            EvidenceKind.MERKLE_BRANCH: self._merkle_statement,
            EvidenceKind.HEADER_CHAIN: self._header_chain_statement,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(
        self,
        evidence: Evidence,
        anchor: Anchor,
        event: EventDescriptor,
        *,
        schema_version: int = 1,
    ) -> Witness:
        if schema_version not in self.supported_schema_versions:
            raise UnsupportedSchema(
                f"witness schema version {schema_version} is not supported",
                context={"supported": sorted(self.supported_schema_versions)},
            )

        if not is_canonical_json(event.payload):
            raise InvalidEvidence(
                "event payload is not canonical JSON",
                context={"schema_tag": event.schema_tag},
            )

        handler = self._handlers.get(evidence.kind)
        if handler is None:
            raise InvalidEvidence(f"unknown evidence kind {evidence.kind!r}")

        norm_anchor = Anchor(
            chain_id=anchor.chain_id,
            height=anchor.height,
            block_hash=self._hex(anchor.block_hash, "anchor.block_hash"),
        )
        statement, extra_inputs = handler(evidence, norm_anchor, event)

        commitment = event.commitment()
        public_inputs: JsonDict = {
            "schema_version": schema_version,
            "evidence_kind": evidence.kind.value,
            "chain_id": norm_anchor.chain_id,
            "height": norm_anchor.height,
            "block_hash": norm_anchor.block_hash,
            "event_schema": event.schema_tag,
            "event_commitment": commitment,
        }
        public_inputs.update(extra_inputs)

        witness = Witness(
            schema_version=schema_version,
            kind=evidence.kind,
            anchor=norm_anchor,
            event={
                "schema": event.schema_tag,
                "payload": event.payload.hex(),
                "commitment": commitment,
            },
            statement=statement,
            public_inputs=public_inputs,
        )

        size = len(witness.canonical_bytes())
        if size > self.max_witness_bytes:
            raise InvalidEvidence(
                f"witness encoding is {size} bytes, limit is {self.max_witness_bytes}",
            )

        logger.debug(
            "built %s witness for %s@%d (%d bytes)",
            evidence.kind.value, norm_anchor.chain_id, norm_anchor.height, size,
        )
        return witness

    # ------------------------------------------------------------------
    # Merkle inclusion branch
    # ------------------------------------------------------------------

    def _merkle_statement(
        self,
        evidence: MerkleBranchEvidence,
        anchor: Anchor,
        event: EventDescriptor,
    ) -> tuple:
        leaf = self._hex(evidence.leaf, "leaf", HASH_HEX_LEN)
        root = self._hex(evidence.expected_root, "expected_root", HASH_HEX_LEN)
        path = [self._hex(sib, f"path[{i}]", HASH_HEX_LEN) for i, sib in enumerate(evidence.path)]

        if len(path) > self.max_path_length:
            raise InvalidEvidence(
                f"merkle path length {len(path)} exceeds limit {self.max_path_length}",
            )
        if evidence.depth is not None and evidence.depth != len(path):
            raise InvalidEvidence(
                "merkle path length mismatch",
                context={"depth": evidence.depth, "path_length": len(path)},
            )
        if evidence.leaf_index < 0 or evidence.leaf_index >= (1 << len(path)):
            raise InvalidEvidence(
                f"leaf_index {evidence.leaf_index} out of range for path length {len(path)}",
            )

        # The leaf must commit to the claimed event, otherwise a valid branch
        # for some other leaf could be paired with an arbitrary event.
        if leaf != event.commitment():
            raise InvalidEvidence(
                "merkle leaf does not commit to the event",
                context={"leaf": leaf, "event_commitment": event.commitment()},
            )

        if evidence.header is not None:
            self._check_anchor_header(evidence.header, anchor)
            committed = evidence.header.field_value(evidence.root_field)
            if committed is None or self._hex(str(committed), evidence.root_field) != root:
                raise InvalidEvidence(
                    f"header {evidence.root_field} does not match expected_root",
                    context={"root_field": evidence.root_field},
                )

        recomputed = compute_merkle_root(leaf, path, evidence.leaf_index)
        if recomputed != root:
            raise InvalidEvidence(
                "merkle root mismatch",
                context={"expected_root": root, "recomputed_root": recomputed},
            )

        statement = {
            "leaf": leaf,
            "path": path,
            "leaf_index": evidence.leaf_index,
            "root": root,
            "root_field": evidence.root_field,
            "header_bound": evidence.header is not None,
        }
        return statement, {"root": root, "root_field": evidence.root_field}

    # ------------------------------------------------------------------
    # Header-chain segment
    # ------------------------------------------------------------------

    def _header_chain_statement(
        self,
        evidence: HeaderChainEvidence,
        anchor: Anchor,
        event: EventDescriptor,
    ) -> tuple:
        if not evidence.headers:
            raise InvalidEvidence("header chain is empty")
        if len(evidence.headers) > self.max_headers:
            raise InvalidEvidence(
                f"header chain of {len(evidence.headers)} exceeds limit {self.max_headers}",
            )

        # Sort first: the collector may return headers in any order and the
        # witness must not depend on it.
        headers: List[Header] = sorted(evidence.headers, key=lambda h: h.height)
        checkpoint = self._hex(evidence.checkpoint_hash, "checkpoint_hash")

        expected_parent = checkpoint
        prev_height: Optional[int] = None
        hashes: List[str] = []
        records: List[JsonDict] = []
        for h in headers:
            if h.chain_id != anchor.chain_id:
                raise InvalidEvidence(
                    f"header at height {h.height} belongs to chain {h.chain_id!r}, "
                    f"anchor is on {anchor.chain_id!r}",
                )
            if prev_height is not None and h.height != prev_height + 1:
                raise InvalidEvidence(
                    f"header chain is not contiguous at height {h.height}",
                )
            own_hash = self._verified_header_hash(h)
            parent = self._hex(h.parent_hash or "", f"headers[{h.height}].parent_hash")
            if parent != expected_parent:
                raise InvalidEvidence(
                    f"header at height {h.height} does not link to its predecessor",
                    context={"expected_parent": expected_parent, "parent_hash": parent},
                )
            hashes.append(own_hash)
            records.append(self._header_record(h, own_hash, parent))
            expected_parent = own_hash
            prev_height = h.height

        tip = headers[-1]
        if tip.height != anchor.height or hashes[-1] != anchor.block_hash:
            raise InvalidEvidence(
                "header chain tip does not match the anchor",
                context={"tip_height": tip.height, "tip_hash": hashes[-1]},
            )

        claim = self._header_claim(event)
        actual = tip.field_value(claim["field"])
        if actual is None or self._norm_value(actual) != self._norm_value(claim["value"]):
            raise InvalidEvidence(
                f"anchor header field {claim['field']!r} does not match the event",
            )

        statement = {
            "checkpoint_hash": checkpoint,
            "headers": records,
            "field": claim["field"],
        }
        inputs = {
            "checkpoint_hash": checkpoint,
            "segment_length": len(headers),
            "field": claim["field"],
        }
        return statement, inputs

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _header_record(self, header: Header, own_hash: str, parent: str) -> JsonDict:
        """Header as committed to the statement, with every hash field in normal form."""
        record = header.model_dump(mode="json")
        record["hash"] = own_hash
        record["parent_hash"] = parent
        for name in ("state_root", "tx_root", "receipts_root"):
            if record.get(name) is not None:
                record[name] = self._norm_value(record[name])
        return record

    def _check_anchor_header(self, header: Header, anchor: Anchor) -> None:
        if header.chain_id != anchor.chain_id or header.height != anchor.height:
            raise InvalidEvidence(
                "header does not describe the anchor block",
                context={"header_chain": header.chain_id, "header_height": header.height},
            )
        if self._verified_header_hash(header) != anchor.block_hash:
            raise InvalidEvidence("header hash does not match anchor.block_hash")

    def _verified_header_hash(self, header: Header) -> str:
        claimed = self._hex(header.hash or "", f"headers[{header.height}].hash")
        if header.compute_hash() != claimed:
            raise InvalidEvidence(
                f"header at height {header.height} has an inconsistent hash",
            )
        return claimed

    @staticmethod
    def _header_claim(event: EventDescriptor) -> JsonDict:
        try:
            fields = json.loads(event.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidEvidence("event payload is not JSON") from exc
        if not isinstance(fields, dict) or "field" not in fields or "value" not in fields:
            raise InvalidEvidence(
                "header-chain evidence requires an event of the form {field, value}",
            )
        return fields

    @staticmethod
    def _norm_value(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return normalize_hex(value)
            except ValueError:
                return value
        return value

    @staticmethod
    def _hex(value: str, what: str, expected_len: Optional[int] = None) -> str:
        try:
            return normalize_hex(value, expected_len=expected_len)
        except ValueError as exc:
            raise InvalidEvidence(f"{what}: {exc}") from exc
