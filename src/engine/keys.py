# src/engine/keys.py
from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from backends.base import BackendPlugin, KeyPair, ProvingKey, VerifyingKey
from core.errors import BackendError, ProofError
from store.disk import path_component

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]
KeyId = Tuple[str, str]  # (backend_id, version)


class KeyStore:
    """
    Lazily runs `backend.setup()` once per (backend_id, version) and hands
    out the resulting immutable KeyPair to every worker.

    Concurrent first requests for the same backend wait on a per-key lock,
    so setup never runs twice. With `key_dir` set, keys are persisted as

        <key_dir>/<backend_id>/<version>/{proving,verifying}.key

    in the backend's own `serialize_key` encoding and reloaded on restart,
    which keeps previously persisted proofs verifiable.
    """

    def __init__(
        self,
        *,
        key_dir: Optional[Path] = None,
        setup_params: Optional[Dict[str, JsonDict]] = None,
    ) -> None:
        self.key_dir = Path(key_dir) if key_dir is not None else None
        self.setup_params = dict(setup_params or {})
        self._lock = threading.Lock()
        self._keys: Dict[KeyId, KeyPair] = {}
        self._key_locks: Dict[KeyId, threading.Lock] = {}
        self.setup_calls = 0

    def get(self, backend: BackendPlugin) -> KeyPair:
        d = backend.descriptor()
        key_id = (d.backend_id, d.version)
        with self._lock:
            pair = self._keys.get(key_id)
            if pair is not None:
                return pair
            key_lock = self._key_locks.setdefault(key_id, threading.Lock())

        with key_lock:
            with self._lock:
                pair = self._keys.get(key_id)
            if pair is not None:
                return pair

            pair = self._load(backend, key_id)
            if pair is None:
                pair = self._setup(backend, key_id)
                self._persist(backend, key_id, pair)

            with self._lock:
                self._keys[key_id] = pair
            return pair

    def drop(self, backend_id: str, *, keep_version: Optional[str] = None) -> int:
        """Forget in-memory keys of `backend_id` other than `keep_version`."""
        with self._lock:
            doomed = [k for k in self._keys if k[0] == backend_id and k[1] != keep_version]
            for k in doomed:
                del self._keys[k]
                self._key_locks.pop(k, None)
        return len(doomed)

    def __contains__(self, key_id: object) -> bool:
        with self._lock:
            return key_id in self._keys

    # ------------------------------------------------------------------

    def _setup(self, backend: BackendPlugin, key_id: KeyId) -> KeyPair:
        logger.info("running setup for backend %s@%s", *key_id)
        with self._lock:
            self.setup_calls += 1
        try:
            pair = backend.setup(self.setup_params.get(key_id[0]))
        except ProofError:
            raise
        except Exception as exc:
            raise BackendError(
                f"setup failed for backend {key_id[0]}@{key_id[1]}: {exc}",
                context={"backend_id": key_id[0], "version": key_id[1]},
            ) from exc
        if not isinstance(pair, tuple) or len(pair) != 2:
            raise BackendError(f"setup of {key_id[0]} did not return a key pair")
        return KeyPair(*pair)

    def _dir(self, key_id: KeyId) -> Optional[Path]:
        if self.key_dir is None:
            return None
        return self.key_dir / path_component(key_id[0]) / path_component(key_id[1])

    def _load(self, backend: BackendPlugin, key_id: KeyId) -> Optional[KeyPair]:
        directory = self._dir(key_id)
        if directory is None:
            return None
        pk_path, vk_path = directory / "proving.key", directory / "verifying.key"
        if not (pk_path.exists() and vk_path.exists()):
            return None
        try:
            pk = backend.deserialize_key(pk_path.read_bytes())
            vk = backend.deserialize_key(vk_path.read_bytes())
        except (OSError, ProofError) as exc:
            logger.warning("ignoring unreadable keys for %s@%s: %s", key_id[0], key_id[1], exc)
            return None
        if not isinstance(pk, ProvingKey) or not isinstance(vk, VerifyingKey):
            logger.warning("ignoring persisted keys for %s@%s: wrong key kinds", *key_id)
            return None
        logger.debug("loaded persisted keys for %s@%s", *key_id)
        return KeyPair(pk, vk)

    def _persist(self, backend: BackendPlugin, key_id: KeyId, pair: KeyPair) -> None:
        directory = self._dir(key_id)
        if directory is None:
            return
        try:
            directory.mkdir(parents=True, exist_ok=True)
            for name, key in (("proving.key", pair.proving_key), ("verifying.key", pair.verifying_key)):
                fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
                with os.fdopen(fd, "wb") as fh:
                    fh.write(backend.serialize_key(key))
                os.replace(tmp, directory / name)
        except OSError:
            logger.exception("failed to persist keys for %s@%s", *key_id)
