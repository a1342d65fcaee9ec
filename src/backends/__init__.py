"""
Backend registry.

A process-wide mapping backend_id -> BackendPlugin, populated at startup by
the embedding process. The orchestrator only ever resolves backends by id
through a registry; it never constructs them.

Typical usage:

    registry = BackendRegistry()
    registry.register(CommitmentBackend("plonk-v1", version="1"))
    ...
    backend = registry.resolve(request.backend_id)   # InvalidRequest if unknown

Re-registering an id with `replace=True` and a different version is a
version bump: listeners are notified, and cache entries produced by the old
version become unservable.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from backends.base import BackendInfo, BackendPlugin, KeyPair, ProvingKey, ResourceUsage, VerifyingKey
from backends.commitment import CommitmentBackend
from backends.keyed_mac import KeyedMacBackend
from core.errors import InvalidRequest
from core.models import BackendDescriptor

logger = logging.getLogger(__name__)

# listener(old_descriptor_or_None, new_descriptor_or_None)
RegistryListener = Callable[[Optional[BackendDescriptor], Optional[BackendDescriptor]], None]


class BackendRegistry:

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._backends: Dict[str, BackendPlugin] = {}
        self._listeners: List[RegistryListener] = []

    def register(self, plugin: BackendPlugin, *, replace: bool = False) -> Optional[BackendDescriptor]:
        """
        Register `plugin` under its descriptor's backend_id.

        Returns the descriptor it replaced, if any. Raises ValueError if the
        id is taken and `replace` is False.
        """
        new = plugin.descriptor()
        with self._lock:
            existing = self._backends.get(new.backend_id)
            if existing is not None and not replace:
                raise ValueError(f"backend {new.backend_id!r} is already registered")
            self._backends[new.backend_id] = plugin
            old = existing.descriptor() if existing is not None else None
            listeners = list(self._listeners)

        if old is None:
            logger.info("registered backend %s@%s", new.backend_id, new.version)
        elif old.version != new.version:
            logger.info(
                "backend %s version bump %s -> %s", new.backend_id, old.version, new.version,
            )
        for listener in listeners:
            listener(old, new)
        return old

    def unregister(self, backend_id: str) -> Optional[BackendPlugin]:
        with self._lock:
            plugin = self._backends.pop(backend_id, None)
            listeners = list(self._listeners)
        if plugin is not None:
            old = plugin.descriptor()
            for listener in listeners:
                listener(old, None)
        return plugin

    def get(self, backend_id: str) -> Optional[BackendPlugin]:
        with self._lock:
            return self._backends.get(backend_id)

    def resolve(self, backend_id: str) -> BackendPlugin:
        plugin = self.get(backend_id)
        if plugin is None:
            raise InvalidRequest(
                f"unknown backend {backend_id!r}",
                context={"backend_id": backend_id, "known": self.backend_ids()},
            )
        return plugin

    def current_version(self, backend_id: str) -> Optional[str]:
        plugin = self.get(backend_id)
        return plugin.descriptor().version if plugin is not None else None

    def backend_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._backends)

    def descriptors(self) -> List[BackendDescriptor]:
        with self._lock:
            plugins = list(self._backends.values())
        return [p.descriptor() for p in plugins]

    def plugins(self) -> List[BackendPlugin]:
        with self._lock:
            return list(self._backends.values())

    def subscribe(self, listener: RegistryListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: RegistryListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def __contains__(self, backend_id: object) -> bool:
        with self._lock:
            return backend_id in self._backends

    def __len__(self) -> int:
        with self._lock:
            return len(self._backends)


# ---------------------------------------------------------------------
# Process-wide default registry
# ---------------------------------------------------------------------

_DEFAULT_REGISTRY = BackendRegistry()


def default_registry() -> BackendRegistry:
    return _DEFAULT_REGISTRY


def register_backend(plugin: BackendPlugin, *, replace: bool = False) -> Optional[BackendDescriptor]:
    """Register a backend in the process-wide registry."""
    return _DEFAULT_REGISTRY.register(plugin, replace=replace)


def get_backend(backend_id: str) -> Optional[BackendPlugin]:
    """Get a backend from the process-wide registry by id."""
    return _DEFAULT_REGISTRY.get(backend_id)


__all__ = [
    "BackendInfo",
    "BackendPlugin",
    "BackendRegistry",
    "CommitmentBackend",
    "KeyPair",
    "KeyedMacBackend",
    "ProvingKey",
    "RegistryListener",
    "ResourceUsage",
    "VerifyingKey",
    "default_registry",
    "get_backend",
    "register_backend",
]
