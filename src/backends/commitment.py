# src/backends/commitment.py
from __future__ import annotations

import hashlib
import hmac
import os
from typing import Any, Dict, Optional, Set

from backends.base import BackendPlugin, KeyPair, ProvingKey, VerifyingKey, decode_json_proof
from core.enums import BackendCapability
from core.errors import BackendDecodeError
from core.models import BackendDescriptor
from core.witness import Witness
from helper.canonical import canonical_bytes

JsonDict = Dict[str, Any]


class CommitmentBackend(BackendPlugin):
    """
    Deterministic hash-commitment backend.

    Proof rule:
        commitment = SHA256( vk_material || canonical(public_inputs) )
        proof      = canonical({"scheme": SCHEME, "commitment": commitment})

    and the verifier accepts iff it recomputes the same commitment from the
    public inputs and its verifying key. vk_material = SHA256(seed), where the
    seed is the proving key.

    This is not a zero-knowledge proof system: it stands in for a real
    SNARK/STARK in tests and local runs while exercising the full contract
    (keys, canonical proofs, deterministic output, decode errors). Real
    systems plug in through the same BackendPlugin interface.
    """

    SCHEME = "sha256-commitment"

    def __init__(
        self,
        backend_id: str = "commitment",
        version: str = "1",
        *,
        witness_schema_version: int = 1,
    ) -> None:
        self._descriptor = BackendDescriptor(
            backend_id=backend_id,
            version=version,
            witness_schema_version=witness_schema_version,
        )

    def descriptor(self) -> BackendDescriptor:
        return self._descriptor

    def setup(self, params: Optional[JsonDict] = None) -> KeyPair:
        params = params or {}
        seed_hex = params.get("seed")
        seed = bytes.fromhex(seed_hex) if seed_hex else os.urandom(32)
        d = self._descriptor
        return KeyPair(
            proving_key=ProvingKey(backend_id=d.backend_id, version=d.version, material=seed),
            verifying_key=VerifyingKey(
                backend_id=d.backend_id,
                version=d.version,
                material=hashlib.sha256(seed).digest(),
            ),
        )

    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        self._check_witness(witness)
        self._check_key(proving_key)
        vk_material = hashlib.sha256(proving_key.material).digest()
        commitment = self._commit(vk_material, self.public_inputs(witness))
        return self.serialize_proof({"scheme": self.SCHEME, "commitment": commitment})

    def verify(
        self,
        proof_bytes: bytes,
        public_inputs: JsonDict,
        verifying_key: VerifyingKey,
    ) -> bool:
        try:
            proof = self.deserialize_proof(proof_bytes)
        except BackendDecodeError:
            return False
        expected = self._commit(verifying_key.material, public_inputs)
        return hmac.compare_digest(str(proof["commitment"]), expected)

    def serialize_proof(self, proof: Any) -> bytes:
        return canonical_bytes(proof)

    def deserialize_proof(self, data: bytes) -> JsonDict:
        return decode_json_proof(data, self.SCHEME, {"commitment"})

    def capabilities(self) -> Set[BackendCapability]:
        return {BackendCapability.DETERMINISTIC, BackendCapability.SUCCINCT_VERIFICATION}

    def display_name(self) -> str:
        return "hash commitment (reference)"

    # ------------------------------------------------------------------

    @staticmethod
    def _commit(vk_material: bytes, public_inputs: JsonDict) -> str:
        return hashlib.sha256(vk_material + canonical_bytes(public_inputs)).hexdigest()

    def _check_witness(self, witness: Witness) -> None:
        if witness.schema_version != self._descriptor.witness_schema_version:
            raise BackendDecodeError(
                f"{self._descriptor.backend_id}: witness schema {witness.schema_version} "
                f"!= {self._descriptor.witness_schema_version}",
            )

    def _check_key(self, key: ProvingKey) -> None:
        d = self._descriptor
        if key.backend_id != d.backend_id or key.version != d.version:
            raise BackendDecodeError(
                f"{d.backend_id}: proving key belongs to {key.backend_id}@{key.version}",
            )
