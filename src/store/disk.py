# src/store/disk.py
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from core.errors import CacheCorruption
from core.models import ProofArtifact

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

LAYOUT_VERSION = "1"


class DiskArtifactStore:
    """
    On-disk layout for proven artifacts:

        <root>/<backend_id>/<backend_version>/<witness_digest>.json

    Each blob is a JSON document:

        {
          "layout": "1",
          "witness_digest": ..., "backend_id": ..., "backend_version": ...,
          "checksum": ProofArtifact.checksum(),
          "stored_at": float,
          "artifact": ProofArtifact.to_record()
        }

    Writes go to a temp file in the same directory followed by os.replace,
    so a concurrent reader sees either the old blob or the new one, never a
    partial file. Loads re-derive the checksum and the key fields; any
    mismatch raises CacheCorruption and the blob must not be trusted.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, witness_digest: str, backend_id: str, backend_version: str) -> Path:
        return (
            self.root
            / path_component(backend_id)
            / path_component(backend_version)
            / f"{path_component(witness_digest)}.json"
        )

    def save(
        self,
        artifact: ProofArtifact,
        *,
        backend_version: str,
        stored_at: float,
    ) -> Path:
        backend_id = artifact.backend_descriptor.backend_id
        path = self.path_for(artifact.witness_digest, backend_id, backend_version)
        path.parent.mkdir(parents=True, exist_ok=True)

        blob = {
            "layout": LAYOUT_VERSION,
            "witness_digest": artifact.witness_digest,
            "backend_id": backend_id,
            "backend_version": backend_version,
            "checksum": artifact.checksum(),
            "stored_at": stored_at,
            "artifact": artifact.to_record(),
        }

        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(blob, fh, sort_keys=True)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return path

    def load(
        self,
        witness_digest: str,
        backend_id: str,
        backend_version: str,
    ) -> Optional[tuple]:
        """
        Return (artifact, stored_at) or None when no blob exists.

        Raises CacheCorruption when a blob exists but fails validation.
        """
        path = self.path_for(witness_digest, backend_id, backend_version)
        if not path.exists():
            return None

        context = {"path": str(path), "witness_digest": witness_digest, "backend_id": backend_id}
        try:
            blob = json.loads(path.read_text(encoding="utf-8"))
            artifact = ProofArtifact.from_record(blob["artifact"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CacheCorruption(f"unreadable cache blob: {exc}", context=context) from exc

        if blob.get("layout") != LAYOUT_VERSION:
            raise CacheCorruption("unknown cache blob layout", context=context)
        if artifact.checksum() != blob.get("checksum"):
            raise CacheCorruption("cache blob checksum mismatch", context=context)
        if (
            artifact.witness_digest != witness_digest
            or blob.get("witness_digest") != witness_digest
            or artifact.backend_descriptor.backend_id != backend_id
            or artifact.backend_descriptor.version != backend_version
        ):
            raise CacheCorruption("cache blob key mismatch", context=context)

        return artifact, float(blob.get("stored_at", 0.0))

    def discard(self, witness_digest: str, backend_id: str, backend_version: str) -> bool:
        path = self.path_for(witness_digest, backend_id, backend_version)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def discard_backend(self, backend_id: str, *, keep_version: Optional[str] = None) -> int:
        """Delete every stored version of `backend_id` except `keep_version`."""
        base = self.root / path_component(backend_id)
        if not base.exists():
            return 0
        removed = 0
        for version_dir in base.iterdir():
            if not version_dir.is_dir() or version_dir.name == path_component(keep_version or ""):
                continue
            removed += sum(1 for _ in version_dir.glob("*.json"))
            shutil.rmtree(version_dir, ignore_errors=True)
        if removed:
            logger.info("removed %d persisted artifacts for backend %s", removed, backend_id)
        return removed


def path_component(component: str) -> str:
    """Keep path components inside the store root."""
    cleaned = "".join(c if c.isalnum() or c in "-_." else "_" for c in component)
    return cleaned.strip(".") or "_"
