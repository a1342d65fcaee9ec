# src/store/proof_cache.py
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from pydantic import BaseModel, Field

from core.errors import CacheCorruption
from core.models import ProofArtifact
from store.disk import DiskArtifactStore

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]  # (witness_digest, backend_id)


class CacheEntry(BaseModel):
    """
    One cached artifact.

    `verified` is True when the artifact passed backend.verify() in this
    process (every orchestrator commit). Entries loaded from disk start out
    unverified and must be re-verified before they are served.
    """

    witness_digest: str
    backend_id: str
    backend_version: str
    artifact: ProofArtifact
    checksum: str
    verified: bool = True
    stored_at: float = Field(default_factory=time.time)

    class Config:
        frozen = True

    @property
    def key(self) -> CacheKey:
        return (self.witness_digest, self.backend_id)


class CacheStats(BaseModel):
    size: int = 0
    capacity: int = 0
    hits: int = 0
    misses: int = 0
    stale_discards: int = 0
    evictions: int = 0
    corruptions: int = 0
    disk_loads: int = 0


class ProofCache:
    """
    Concurrency-safe LRU map (witness_digest, backend_id) -> CacheEntry.

    Rules:
      - Every lookup and commit carries the backend version currently
        registered for backend_id. An entry with a different version is a
        miss and is discarded, never served.
      - Entries are immutable; a commit replaces the whole entry under the
        lock, so readers observe either the previous entry or the new one.
      - Capacity is bounded; the least recently used entry is evicted.
      - With a DiskArtifactStore attached, commits are persisted and misses
        fall back to disk, so proofs survive process restarts. Blobs that
        fail their integrity check are deleted and count as misses.
    """

    def __init__(
        self,
        capacity: int = 1024,
        *,
        store: Optional[DiskArtifactStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be >= 1")
        self.capacity = capacity
        self.store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._stats = CacheStats(capacity=capacity)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(
        self,
        witness_digest: str,
        backend_id: str,
        current_version: Optional[str],
        *,
        use_store: bool = True,
    ) -> Optional[CacheEntry]:
        """
        Return the entry for (witness_digest, backend_id) if it was produced
        by `current_version`. With `use_store=False` the disk store is not
        consulted, so the call never blocks on I/O.
        """
        key = (witness_digest, backend_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if entry.backend_version != current_version:
                    self._drop_stale(key, entry)
                    self._stats.misses += 1
                    return None
                self._entries.move_to_end(key)
                self._stats.hits += 1
                return entry

        if self.store is None or current_version is None or not use_store:
            with self._lock:
                self._stats.misses += 1
            return None

        entry = self._load_from_disk(witness_digest, backend_id, current_version)
        with self._lock:
            if entry is None:
                self._stats.misses += 1
                return None
            # A commit may have landed while we were reading the disk; the
            # in-memory entry is at least as fresh, keep it.
            current = self._entries.get(key)
            if current is not None and current.backend_version == current_version:
                entry = current
            else:
                self._insert(key, entry)
            self._entries.move_to_end(key)
            self._stats.hits += 1
            self._stats.disk_loads += 1
            return entry

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(
        self,
        artifact: ProofArtifact,
        current_version: Optional[str],
        *,
        verified: bool = True,
    ) -> bool:
        """
        Store `artifact` if its backend version is still the registered one.

        Returns False (and discards any stale entry for the key) when the
        backend was re-versioned while the artifact was being produced.
        """
        descriptor = artifact.backend_descriptor
        key = (artifact.witness_digest, descriptor.backend_id)
        with self._lock:
            if descriptor.version != current_version:
                existing = self._entries.get(key)
                if existing is not None and existing.backend_version != current_version:
                    self._drop_stale(key, existing)
                logger.info(
                    "not caching %s artifact for %s: version %s is no longer current (%s)",
                    descriptor.backend_id, artifact.witness_digest[:12],
                    descriptor.version, current_version,
                )
                return False

            entry = CacheEntry(
                witness_digest=artifact.witness_digest,
                backend_id=descriptor.backend_id,
                backend_version=descriptor.version,
                artifact=artifact,
                checksum=artifact.checksum(),
                verified=verified,
                stored_at=self._clock(),
            )
            self._insert(key, entry)

        if self.store is not None:
            try:
                self.store.save(artifact, backend_version=entry.backend_version, stored_at=entry.stored_at)
            except OSError:
                logger.exception("failed to persist artifact %s", artifact.witness_digest[:12])
        return True

    def mark_verified(self, entry: CacheEntry) -> CacheEntry:
        """Replace an unverified entry with a verified copy (same artifact)."""
        verified = entry.model_copy(update={"verified": True})
        with self._lock:
            current = self._entries.get(entry.key)
            if current is entry:
                self._entries[entry.key] = verified
        return verified

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, witness_digest: str, backend_id: str) -> bool:
        key = (witness_digest, backend_id)
        with self._lock:
            entry = self._entries.pop(key, None)
            self._stats.size = len(self._entries)
        if entry is not None and self.store is not None:
            self.store.discard(witness_digest, backend_id, entry.backend_version)
        return entry is not None

    def invalidate_backend(self, backend_id: str, *, keep_version: Optional[str] = None) -> int:
        """
        Drop every in-memory entry for `backend_id` whose version differs
        from `keep_version` (all of them when None), and the persisted
        blobs of those versions.
        """
        with self._lock:
            doomed = [
                k for k, e in self._entries.items()
                if e.backend_id == backend_id and e.backend_version != keep_version
            ]
            for k in doomed:
                del self._entries[k]
            self._stats.stale_discards += len(doomed)
            self._stats.size = len(self._entries)
        if self.store is not None:
            self.store.discard_backend(backend_id, keep_version=keep_version)
        if doomed:
            logger.info("invalidated %d cached artifacts for backend %s", len(doomed), backend_id)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._stats.size = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> CacheStats:
        with self._lock:
            return self._stats.model_copy(update={"size": len(self._entries)})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _insert(self, key: CacheKey, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted_key, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("evicted %s/%s", evicted_key[1], evicted_key[0][:12])
        self._stats.size = len(self._entries)

    def _drop_stale(self, key: CacheKey, entry: CacheEntry) -> None:
        del self._entries[key]
        self._stats.stale_discards += 1
        self._stats.size = len(self._entries)
        if self.store is not None:
            self.store.discard(entry.witness_digest, entry.backend_id, entry.backend_version)
        logger.debug(
            "discarded stale %s@%s entry for %s",
            entry.backend_id, entry.backend_version, entry.witness_digest[:12],
        )

    def _load_from_disk(self, witness_digest: str, backend_id: str, version: str) -> Optional[CacheEntry]:
        try:
            loaded = self.store.load(witness_digest, backend_id, version)
        except CacheCorruption as exc:
            logger.warning("%s; discarding %s", exc.message, exc.context.get("path"))
            self.store.discard(witness_digest, backend_id, version)
            with self._lock:
                self._stats.corruptions += 1
            return None
        if loaded is None:
            return None
        artifact, stored_at = loaded
        return CacheEntry(
            witness_digest=witness_digest,
            backend_id=backend_id,
            backend_version=version,
            artifact=artifact,
            checksum=artifact.checksum(),
            verified=False,
            stored_at=stored_at,
        )

    def record_corruption(self) -> None:
        with self._lock:
            self._stats.corruptions += 1
