# src/backends/keyed_mac.py
from __future__ import annotations

import hashlib
import hmac
import os
from typing import Any, Dict, Optional, Set

from backends.base import KeyPair, ProvingKey, VerifyingKey, decode_json_proof
from backends.commitment import CommitmentBackend
from core.enums import BackendCapability
from core.errors import BackendDecodeError
from core.witness import Witness
from helper.canonical import canonical_bytes

JsonDict = Dict[str, Any]


class KeyedMacBackend(CommitmentBackend):
    """
    Randomized backend built on HMAC-SHA256.

    Proof rule:
        nonce = 16 fresh random bytes per proof
        tag   = HMAC_SHA256(key, nonce || canonical(public_inputs))
        proof = canonical({"scheme": SCHEME, "nonce": nonce, "tag": tag})

    Two proofs of the same witness differ byte-wise but both verify, which
    is the behavior of randomized SNARK provers the orchestrator must
    tolerate. The key is symmetric (proving and verifying material are the
    same secret), so this backend only fits trusted, single-operator setups
    and tests.
    """

    SCHEME = "hmac-sha256"
    NONCE_BYTES = 16

    def __init__(
        self,
        backend_id: str = "keyed-mac",
        version: str = "1",
        *,
        witness_schema_version: int = 1,
    ) -> None:
        super().__init__(backend_id, version, witness_schema_version=witness_schema_version)

    def setup(self, params: Optional[JsonDict] = None) -> KeyPair:
        params = params or {}
        secret_hex = params.get("secret")
        secret = bytes.fromhex(secret_hex) if secret_hex else os.urandom(32)
        d = self.descriptor()
        return KeyPair(
            proving_key=ProvingKey(backend_id=d.backend_id, version=d.version, material=secret),
            verifying_key=VerifyingKey(backend_id=d.backend_id, version=d.version, material=secret),
        )

    def prove(self, witness: Witness, proving_key: ProvingKey) -> bytes:
        self._check_witness(witness)
        self._check_key(proving_key)
        nonce = os.urandom(self.NONCE_BYTES)
        tag = self._tag(proving_key.material, nonce, self.public_inputs(witness))
        return self.serialize_proof(
            {"scheme": self.SCHEME, "nonce": nonce.hex(), "tag": tag}
        )

    def verify(
        self,
        proof_bytes: bytes,
        public_inputs: JsonDict,
        verifying_key: VerifyingKey,
    ) -> bool:
        try:
            proof = self.deserialize_proof(proof_bytes)
            nonce = bytes.fromhex(str(proof["nonce"]))
        except (BackendDecodeError, ValueError):
            return False
        expected = self._tag(verifying_key.material, nonce, public_inputs)
        return hmac.compare_digest(expected, str(proof["tag"]))

    def deserialize_proof(self, data: bytes) -> JsonDict:
        return decode_json_proof(data, self.SCHEME, {"nonce", "tag"})

    def capabilities(self) -> Set[BackendCapability]:
        return {BackendCapability.RANDOMIZED, BackendCapability.SUCCINCT_VERIFICATION}

    def display_name(self) -> str:
        return "keyed MAC (reference)"

    @staticmethod
    def _tag(secret: bytes, nonce: bytes, public_inputs: JsonDict) -> str:
        return hmac.new(secret, nonce + canonical_bytes(public_inputs), hashlib.sha256).hexdigest()
