"""Property-based tests for cache key sanitization."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from stratus.cache_proxy.store import sanitize_key


@given(st.text(min_size=1, max_size=64, alphabet=st.characters(min_codepoint=33, max_codepoint=126)))
def test_sanitize_key_bounds(cache_key: str) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        storage_root = Path(tmp_dir)
        try:
            resolved = sanitize_key(storage_root, cache_key)
        except ValueError:
            pass
        else:
            assert resolved.is_relative_to(storage_root.resolve())
            assert resolved != storage_root.resolve()


@given(st.text(min_size=1, max_size=64).filter(lambda s: "\x00" not in s and "/" not in s and s not in {".", ".."}))
def test_sanitize_key_rejects_parent_escape(cache_key: str) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        storage_root = Path(tmp_dir)
        evil_key = f"../../{cache_key}"
        with pytest.raises(ValueError):
            sanitize_key(storage_root, evil_key)
