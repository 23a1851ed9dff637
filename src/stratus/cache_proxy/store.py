"""Content-addressed cache store with restore-key fallback and LRU eviction."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, Optional, Sequence, Union

import structlog
from opentelemetry import trace

from ..common.errors import NotFound, ValidationError
from ..common.observability import span_attributes
from ..common.schemas import CacheEntry, CacheLookup, utc_now
from ..common.settings import CacheSettings

LOGGER = structlog.get_logger("stratus.cache_proxy.store")
TRACER = trace.get_tracer("stratus.cache_proxy.store")

COMPONENT = "cache"
DEFAULT_NAMESPACE = "default"


class PutStatus(str, Enum):
    OK = "ok"
    ALREADY_EXISTS = "already_exists"


def derive_cache_key(prefix: str, *parts: Union[str, bytes, Path]) -> str:
    """Build ``<prefix>-<sha256>`` from strings, bytes or file contents."""

    digest = hashlib.sha256()
    for part in parts:
        if isinstance(part, Path):
            digest.update(part.read_bytes())
        elif isinstance(part, bytes):
            digest.update(part)
        else:
            digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return f"{prefix}-{digest.hexdigest()}"


def sanitize_key(storage_dir: Path, cache_key: str) -> Path:
    root = storage_dir.resolve()
    candidate = root.joinpath(*cache_key.split("/"))
    resolved = candidate.resolve(strict=False)
    if resolved == root or not resolved.is_relative_to(root):
        raise ValueError(f"Invalid cache key: {cache_key!r}")
    return resolved


class PayloadBackend:
    """Holds cache payloads; entries only keep the returned location."""

    def location_for(self, namespace: str, key: str) -> str:
        return f"{namespace}/{key}"

    async def write(self, location: str, payload: bytes) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def read(self, location: str) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, location: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryPayloadBackend(PayloadBackend):
    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}

    async def write(self, location: str, payload: bytes) -> None:
        self._blobs[location] = bytes(payload)

    async def read(self, location: str) -> bytes:
        try:
            return self._blobs[location]
        except KeyError:
            raise NotFound(f"cache payload missing at {location}", component=COMPONENT) from None

    async def delete(self, location: str) -> None:
        self._blobs.pop(location, None)

    def __len__(self) -> int:
        return len(self._blobs)


class LocalPayloadBackend(PayloadBackend):
    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path

    async def write(self, location: str, payload: bytes) -> None:
        path = sanitize_key(self._storage_path, location)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.partial")
        tmp_path.write_bytes(payload)
        tmp_path.replace(path)

    async def read(self, location: str) -> bytes:
        path = sanitize_key(self._storage_path, location)
        if not path.exists():
            raise NotFound(f"cache payload missing at {location}", component=COMPONENT)
        return path.read_bytes()

    async def delete(self, location: str) -> None:
        path = sanitize_key(self._storage_path, location)
        if not path.exists():
            return
        path.unlink(missing_ok=True)
        root = self._storage_path.resolve()
        parent = path.parent
        while parent != root and parent.exists():
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent


@dataclass
class _Slot:
    entry: CacheEntry
    last_access: int
    pins: int = 0


class CacheStore:
    """Cache entries per namespace.

    Writes to one exact key are serialised by a per-key lock and the first
    writer wins. Reads never block. Eviction is least-recently-used within
    each namespace's byte budget and skips entries pinned by in-flight reads.
    """

    def __init__(
        self,
        settings: CacheSettings,
        backend: Optional[PayloadBackend] = None,
    ) -> None:
        self._settings = settings
        if backend is None:
            backend = (
                LocalPayloadBackend(settings.storage_path)
                if settings.storage_path is not None
                else InMemoryPayloadBackend()
            )
        self._backend = backend
        self._namespaces: Dict[str, Dict[str, _Slot]] = defaultdict(dict)
        self._key_locks: Dict[tuple[str, str], asyncio.Lock] = {}
        self._sequence = itertools.count(1)
        self._access = itertools.count(1)

    @property
    def backend(self) -> PayloadBackend:
        return self._backend

    def _lookup(self, namespace: str, key: str, restore_keys: Sequence[str]) -> tuple[Optional[_Slot], Optional[str]]:
        slots = self._namespaces.get(namespace, {})
        exact = slots.get(key)
        if exact is not None:
            return exact, None
        for prefix in restore_keys:
            matches = [slot for slot_key, slot in slots.items() if slot_key.startswith(prefix)]
            if matches:
                return max(matches, key=lambda slot: slot.entry.sequence), prefix
        return None, None

    async def get(
        self,
        key: str,
        restore_keys: Iterable[str] = (),
        namespace: Optional[str] = None,
    ) -> CacheLookup:
        """Exact key first, then each restore-key prefix in order; most recent match wins."""

        namespace = namespace or DEFAULT_NAMESPACE
        restore = tuple(restore_keys)
        with TRACER.start_as_current_span(
            "stratus.cache.get", attributes=span_attributes(namespace=namespace, key=key)
        ) as span:
            slot, matched_prefix = self._lookup(namespace, key, restore)
            if slot is None:
                span.set_attribute("stratus.cache_hit", False)
                LOGGER.debug("Cache miss", namespace=namespace, key=key, restore_keys=list(restore))
                return CacheLookup(hit=False)
            slot.last_access = next(self._access)
            span.set_attribute("stratus.cache_hit", True)
            LOGGER.debug(
                "Cache hit",
                namespace=namespace,
                key=key,
                entry_key=slot.entry.key,
                restore_key=matched_prefix,
            )
            return CacheLookup(
                hit=True,
                entry=slot.entry,
                exact_match=matched_prefix is None,
                matched_restore_key=matched_prefix,
            )

    async def restore(
        self,
        key: str,
        restore_keys: Iterable[str] = (),
        namespace: Optional[str] = None,
    ) -> tuple[CacheLookup, Optional[bytes]]:
        """Look up and load the payload, pinning the entry for the whole read."""

        namespace = namespace or DEFAULT_NAMESPACE
        lookup = await self.get(key, restore_keys, namespace)
        if not lookup.hit or lookup.entry is None:
            return lookup, None
        try:
            payload = await self.read(lookup.entry)
        except NotFound:
            LOGGER.warning("Cache entry vanished before read", namespace=namespace, key=lookup.entry.key)
            return CacheLookup(hit=False), None
        return lookup, payload

    @asynccontextmanager
    async def pinned(self, entry: CacheEntry) -> AsyncIterator[CacheEntry]:
        slot = self._namespaces.get(entry.namespace, {}).get(entry.key)
        if slot is None or slot.entry.sequence != entry.sequence:
            raise NotFound(f"cache entry {entry.key} was evicted", component=COMPONENT, namespace=entry.namespace)
        slot.pins += 1
        try:
            yield slot.entry
        finally:
            slot.pins -= 1
            if slot.pins == 0:
                await self._evict(entry.namespace)

    async def read(self, entry: CacheEntry) -> bytes:
        async with self.pinned(entry) as current:
            slot = self._namespaces[current.namespace][current.key]
            slot.last_access = next(self._access)
            return await self._backend.read(current.location)

    async def put(self, key: str, payload: bytes, namespace: Optional[str] = None) -> PutStatus:
        """Store ``payload`` under ``key`` unless the key already exists."""

        namespace = namespace or DEFAULT_NAMESPACE
        if not key:
            raise ValidationError("cache key cannot be empty", component=COMPONENT)
        size = len(payload)
        budget = self._settings.namespace_budget_bytes
        if size > budget:
            raise ValidationError(
                f"payload of {size} bytes exceeds the namespace budget of {budget} bytes",
                component=COMPONENT,
                namespace=namespace,
                key=key,
            )
        if key in self._namespaces.get(namespace, {}):
            return PutStatus.ALREADY_EXISTS

        lock_key = (namespace, key)
        lock = self._key_locks.setdefault(lock_key, asyncio.Lock())
        with TRACER.start_as_current_span(
            "stratus.cache.put", attributes=span_attributes(namespace=namespace, key=key, size_bytes=size)
        ):
            async with lock:
                if key in self._namespaces.get(namespace, {}):
                    return PutStatus.ALREADY_EXISTS
                location = self._backend.location_for(namespace, key)
                await self._backend.write(location, payload)
                entry = CacheEntry(
                    namespace=namespace,
                    key=key,
                    location=location,
                    size_bytes=size,
                    content_digest=hashlib.sha256(payload).hexdigest(),
                    created_at=utc_now(),
                    sequence=next(self._sequence),
                )
                self._namespaces[namespace][key] = _Slot(entry=entry, last_access=next(self._access))
            # The entry now exists, so later writers return early without the lock.
            self._key_locks.pop(lock_key, None)

        LOGGER.info("Cache entry stored", namespace=namespace, key=key, size_bytes=size)
        await self._evict(namespace)
        return PutStatus.OK

    async def _evict(self, namespace: str) -> None:
        slots = self._namespaces.get(namespace)
        if not slots:
            return
        budget = self._settings.namespace_budget_bytes
        total = sum(slot.entry.size_bytes for slot in slots.values())
        if total <= budget:
            return
        for slot in sorted(slots.values(), key=lambda item: item.last_access):
            if total <= budget:
                break
            if slot.pins:
                continue
            current = slots.get(slot.entry.key)
            if current is not slot:
                continue
            del slots[slot.entry.key]
            total -= slot.entry.size_bytes
            await self._backend.delete(slot.entry.location)
            LOGGER.info(
                "Cache entry evicted",
                namespace=namespace,
                key=slot.entry.key,
                size_bytes=slot.entry.size_bytes,
            )
        if total > budget:
            LOGGER.debug("Namespace over budget while entries are pinned", namespace=namespace, total=total)

    def entries(self, namespace: Optional[str] = None) -> list[CacheEntry]:
        slots = self._namespaces.get(namespace or DEFAULT_NAMESPACE, {})
        return sorted((slot.entry for slot in slots.values()), key=lambda entry: entry.sequence)

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            namespace: {
                "entries": len(slots),
                "bytes": sum(slot.entry.size_bytes for slot in slots.values()),
                "pinned": sum(1 for slot in slots.values() if slot.pins),
                "budget": self._settings.namespace_budget_bytes,
            }
            for namespace, slots in self._namespaces.items()
        }
