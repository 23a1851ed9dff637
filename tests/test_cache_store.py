"""Tests for the cache store."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from stratus.cache_proxy.store import (
    CacheStore,
    InMemoryPayloadBackend,
    LocalPayloadBackend,
    PutStatus,
    derive_cache_key,
    sanitize_key,
)
from stratus.common.errors import NotFound, ValidationError


@pytest.fixture
def store(cache_settings) -> CacheStore:
    return CacheStore(cache_settings, InMemoryPayloadBackend())


def test_derive_cache_key_hashes_file_contents(tmp_path: Path):
    lockfile = tmp_path / "package-lock.json"
    lockfile.write_text('{"lockfileVersion": 3}')

    key = derive_cache_key("npm-linux", lockfile)

    assert key.startswith("npm-linux-")
    assert key == derive_cache_key("npm-linux", lockfile)
    lockfile.write_text('{"lockfileVersion": 2}')
    assert key != derive_cache_key("npm-linux", lockfile)


def test_sanitize_key_rejects_escape(tmp_path: Path):
    assert sanitize_key(tmp_path, "ns/key").is_relative_to(tmp_path.resolve())
    with pytest.raises(ValueError):
        sanitize_key(tmp_path, "../outside")


@pytest.mark.asyncio
async def test_exact_key_hit(store: CacheStore):
    assert await store.put("deps-abc", b"payload", "acme/api") is PutStatus.OK

    lookup, payload = await store.restore("deps-abc", ["deps-"], "acme/api")

    assert lookup.hit and lookup.exact_match
    assert lookup.matched_restore_key is None
    assert payload == b"payload"


@pytest.mark.asyncio
async def test_restore_keys_pick_most_recent_in_first_matching_prefix(store: CacheStore):
    await store.put("deps-linux-old", b"1", "ns")
    await store.put("deps-linux-new", b"2", "ns")
    await store.put("deps-any", b"3", "ns")

    lookup = await store.get("deps-linux-missing", ["deps-linux-", "deps-"], "ns")

    assert lookup.hit and not lookup.exact_match
    assert lookup.matched_restore_key == "deps-linux-"
    assert lookup.entry.key == "deps-linux-new"

    fallback = await store.get("other", ["nothing-", "deps-"], "ns")
    assert fallback.entry.key == "deps-any"


@pytest.mark.asyncio
async def test_namespaces_are_isolated(store: CacheStore):
    await store.put("deps", b"x", "acme/api")

    assert not (await store.get("deps", namespace="acme/web")).hit


@pytest.mark.asyncio
async def test_first_writer_wins(store: CacheStore):
    results = await asyncio.gather(*(store.put("deps", bytes([index]), "ns") for index in range(5)))

    assert results.count(PutStatus.OK) == 1
    assert results.count(PutStatus.ALREADY_EXISTS) == 4
    assert len(store.entries("ns")) == 1


@pytest.mark.asyncio
async def test_oversized_payload_is_rejected(store: CacheStore):
    with pytest.raises(ValidationError):
        await store.put("huge", b"x" * 2048, "ns")
    with pytest.raises(ValidationError):
        await store.put("", b"x", "ns")


@pytest.mark.asyncio
async def test_lru_eviction_respects_budget(store: CacheStore):
    await store.put("a", b"a" * 400, "ns")
    await store.put("b", b"b" * 400, "ns")
    await store.get("a", namespace="ns")
    await store.put("c", b"c" * 400, "ns")

    assert [entry.key for entry in store.entries("ns")] == ["a", "c"]
    assert store.stats()["ns"]["bytes"] <= 1024


@pytest.mark.asyncio
async def test_pinned_entries_survive_eviction(store: CacheStore):
    await store.put("a", b"a" * 400, "ns")
    await store.put("b", b"b" * 400, "ns")
    entry = store.entries("ns")[0]

    async with store.pinned(entry):
        await store.put("c", b"c" * 400, "ns")
        assert [item.key for item in store.entries("ns")] == ["a", "c"]
        assert store.stats()["ns"]["pinned"] == 1

    assert store.stats()["ns"]["pinned"] == 0


@pytest.mark.asyncio
async def test_reading_evicted_entry_raises(store: CacheStore):
    await store.put("a", b"a" * 600, "ns")
    entry = store.entries("ns")[0]
    await store.put("b", b"b" * 600, "ns")

    with pytest.raises(NotFound):
        await store.read(entry)


@pytest.mark.asyncio
async def test_local_backend_round_trip(tmp_path: Path, cache_settings):
    store = CacheStore(cache_settings, LocalPayloadBackend(tmp_path))

    await store.put("deps-1", b"archive", "acme/api")
    _, payload = await store.restore("deps-1", namespace="acme/api")

    assert payload == b"archive"
    assert (tmp_path / "acme" / "api" / "deps-1").read_bytes() == b"archive"

    await store.put("deps-2", b"x" * 1020, "acme/api")
    assert not (tmp_path / "acme" / "api" / "deps-1").exists()
