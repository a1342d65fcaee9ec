"""
Tests for ProofCache and DiskArtifactStore.

These tests verify:
1. LRU behavior and bounded capacity
2. Version mismatch is always a miss and discards the stale entry
3. Persisted artifacts reload across cache instances
4. Corrupted blobs are detected, discarded and reported as misses
"""

import json

import pytest

from core.errors import CacheCorruption
from core.models import ArtifactMetadata, BackendDescriptor, ProofArtifact
from helper.canonical import sha256_hex
from store.disk import DiskArtifactStore
from store.proof_cache import ProofCache


def make_artifact(n: int = 0, backend_id: str = "plonk-v1", version: str = "1") -> ProofArtifact:
    return ProofArtifact(
        proof_bytes=f"proof-{n}".encode(),
        public_inputs={"n": n},
        backend_descriptor=BackendDescriptor(backend_id=backend_id, version=version),
        witness_digest=sha256_hex(f"witness-{n}"),
        metadata=ArtifactMetadata(prove_seconds=0.5, proof_size=7),
    )


# =============================================================================
# IN-MEMORY BEHAVIOR
# =============================================================================

class TestProofCacheMemory:

    def test_commit_then_lookup(self):
        cache = ProofCache(4)
        artifact = make_artifact()
        assert cache.commit(artifact, "1")

        entry = cache.lookup(artifact.witness_digest, "plonk-v1", "1")

        assert entry is not None and entry.artifact is artifact
        assert entry.verified
        assert cache.stats().hits == 1

    def test_miss_is_counted(self):
        cache = ProofCache(4)
        assert cache.lookup("ab" * 32, "plonk-v1", "1") is None
        assert cache.stats().misses == 1

    def test_lru_eviction(self):
        cache = ProofCache(2)
        a, b, c = make_artifact(1), make_artifact(2), make_artifact(3)
        cache.commit(a, "1")
        cache.commit(b, "1")
        cache.lookup(a.witness_digest, "plonk-v1", "1")  # a is now most recent
        cache.commit(c, "1")

        assert (a.witness_digest, "plonk-v1") in cache
        assert (b.witness_digest, "plonk-v1") not in cache
        assert len(cache) == 2
        assert cache.stats().evictions == 1

    def test_version_mismatch_on_lookup_discards(self):
        cache = ProofCache(4)
        artifact = make_artifact(version="1")
        cache.commit(artifact, "1")

        assert cache.lookup(artifact.witness_digest, "plonk-v1", "2") is None
        assert len(cache) == 0
        assert cache.stats().stale_discards == 1
        # Even asking for the old version again finds nothing.
        assert cache.lookup(artifact.witness_digest, "plonk-v1", "1") is None

    def test_commit_of_outdated_version_refused(self):
        cache = ProofCache(4)
        assert not cache.commit(make_artifact(version="1"), "2")
        assert len(cache) == 0

    def test_invalidate_backend_keeps_current_version(self):
        cache = ProofCache(8)
        old = make_artifact(1, version="1")
        other = make_artifact(2, backend_id="stark")
        cache.commit(old, "1")
        cache.commit(other, "1")

        removed = cache.invalidate_backend("plonk-v1", keep_version="2")

        assert removed == 1
        assert (other.witness_digest, "stark") in cache

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ProofCache(0)


# =============================================================================
# DISK PERSISTENCE
# =============================================================================

class TestDiskPersistence:

    def test_layout_on_disk(self, tmp_path):
        store = DiskArtifactStore(tmp_path)
        artifact = make_artifact()
        ProofCache(4, store=store).commit(artifact, "1")

        path = tmp_path / "plonk-v1" / "1" / f"{artifact.witness_digest}.json"
        assert path.exists()
        blob = json.loads(path.read_text())
        assert blob["checksum"] == artifact.checksum()

    def test_reload_across_instances_is_unverified(self, tmp_path):
        artifact = make_artifact()
        ProofCache(4, store=DiskArtifactStore(tmp_path)).commit(artifact, "1")

        fresh = ProofCache(4, store=DiskArtifactStore(tmp_path))
        entry = fresh.lookup(artifact.witness_digest, "plonk-v1", "1")

        assert entry is not None
        assert not entry.verified
        assert entry.artifact.proof_bytes == artifact.proof_bytes
        assert entry.artifact.metadata.prove_seconds == 0.5
        assert fresh.stats().disk_loads == 1

        verified = fresh.mark_verified(entry)
        assert verified.verified
        assert fresh.lookup(artifact.witness_digest, "plonk-v1", "1").verified

    def test_other_version_not_loaded(self, tmp_path):
        artifact = make_artifact(version="1")
        ProofCache(4, store=DiskArtifactStore(tmp_path)).commit(artifact, "1")

        fresh = ProofCache(4, store=DiskArtifactStore(tmp_path))
        assert fresh.lookup(artifact.witness_digest, "plonk-v1", "2") is None

    def test_memory_only_lookup_skips_disk(self, tmp_path):
        artifact = make_artifact()
        ProofCache(4, store=DiskArtifactStore(tmp_path)).commit(artifact, "1")

        fresh = ProofCache(4, store=DiskArtifactStore(tmp_path))
        assert fresh.lookup(artifact.witness_digest, "plonk-v1", "1", use_store=False) is None
        assert fresh.stats().disk_loads == 0

    def test_corrupted_blob_is_discarded(self, tmp_path):
        store = DiskArtifactStore(tmp_path)
        artifact = make_artifact()
        ProofCache(4, store=store).commit(artifact, "1")
        path = store.path_for(artifact.witness_digest, "plonk-v1", "1")
        blob = json.loads(path.read_text())
        blob["artifact"]["proof"] = b"forged".hex()
        path.write_text(json.dumps(blob))

        with pytest.raises(CacheCorruption):
            store.load(artifact.witness_digest, "plonk-v1", "1")

        fresh = ProofCache(4, store=store)
        assert fresh.lookup(artifact.witness_digest, "plonk-v1", "1") is None
        assert fresh.stats().corruptions == 1
        assert not path.exists()

    def test_unreadable_blob_is_corruption(self, tmp_path):
        store = DiskArtifactStore(tmp_path)
        path = store.path_for("ab" * 32, "plonk-v1", "1")
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(CacheCorruption) as info:
            store.load("ab" * 32, "plonk-v1", "1")
        assert info.value.kind.value == "CacheCorruption"

    def test_discard_backend_removes_old_versions(self, tmp_path):
        store = DiskArtifactStore(tmp_path)
        cache = ProofCache(4, store=store)
        cache.commit(make_artifact(1, version="1"), "1")
        cache.commit(make_artifact(2, version="2"), "2")

        cache.invalidate_backend("plonk-v1", keep_version="2")

        assert not (tmp_path / "plonk-v1" / "1").exists()
        assert (tmp_path / "plonk-v1" / "2").exists()

    def test_path_components_are_sanitized(self, tmp_path):
        store = DiskArtifactStore(tmp_path)
        path = store.path_for("ab" * 32, "../escape", "1")
        assert tmp_path in path.parents
