"""Tests for watermark persistence."""

import json
import time

from agentmeter.metrics.watermark import (
    WatermarkStore,
    decode_object_ids,
    encode_object_ids,
    file_hash,
    file_key,
)
from agentmeter.models import WatermarkType


class TestWatermarkStore:
    """Tests for WatermarkStore."""

    def test_missing_watermark_is_none(self, tmp_path):
        store = WatermarkStore(tmp_path / "wm")
        assert store.get(tmp_path / "session.jsonl") is None

    def test_advance_and_get(self, tmp_path):
        """Advanced value reads back with a TTL in the future."""
        store = WatermarkStore(tmp_path / "wm", ttl=3600)
        target = tmp_path / "session.jsonl"

        written = store.advance(target, WatermarkType.LINE, "42")
        loaded = store.get(target)

        assert loaded is not None
        assert loaded.type == WatermarkType.LINE
        assert loaded.value == "42"
        assert loaded.expires_at == written.expires_at
        assert loaded.expires_at > time.time()

    def test_expired_watermark_reads_as_absent(self, tmp_path):
        """Expired watermarks force a full re-extraction."""
        store = WatermarkStore(tmp_path / "wm", ttl=-1)
        target = tmp_path / "session.jsonl"
        store.advance(target, WatermarkType.LINE, "10")

        assert store.get(target) is None

    def test_corrupt_watermark_reads_as_absent(self, tmp_path):
        """Unparsable watermark files are ignored."""
        store = WatermarkStore(tmp_path / "wm")
        target = tmp_path / "session.jsonl"
        store.advance(target, WatermarkType.LINE, "10")
        store._path(target).write_text("{not json")

        assert store.get(target) is None

    def test_cleanup_expired(self, tmp_path):
        """Only expired watermarks are deleted."""
        wm_dir = tmp_path / "wm"
        WatermarkStore(wm_dir, ttl=-1).advance(tmp_path / "old.jsonl", WatermarkType.LINE, "1")
        fresh = WatermarkStore(wm_dir, ttl=3600)
        fresh.advance(tmp_path / "new.jsonl", WatermarkType.LINE, "2")

        assert fresh.cleanup_expired() == 1
        assert fresh.get(tmp_path / "new.jsonl").value == "2"

    def test_file_is_camel_case_json(self, tmp_path):
        """On-disk format uses updatedAt/expiresAt keys."""
        store = WatermarkStore(tmp_path / "wm")
        target = tmp_path / "session.json"
        store.advance(target, WatermarkType.HASH, "abc")

        data = json.loads(store._path(target).read_text())
        assert data["type"] == "hash"
        assert "updatedAt" in data and "expiresAt" in data


    def test_clear(self, tmp_path):
        store = WatermarkStore(tmp_path / "wm")
        target = tmp_path / "session.jsonl"
        store.advance(target, WatermarkType.HASH, "abc123")

        store.clear(target)
        store.clear(target)

        assert store.get(target) is None


class TestWatermarkHelpers:
    """Tests for key, hash and object-id helpers."""

    def test_file_key_is_stable(self, tmp_path):
        assert file_key(tmp_path / "a.jsonl") == file_key(str(tmp_path / "a.jsonl"))
        assert file_key(tmp_path / "a.jsonl") != file_key(tmp_path / "b.jsonl")

    def test_file_hash_changes_with_content(self, tmp_path):
        target = tmp_path / "chat.json"
        target.write_text('{"messages": []}')
        first = file_hash(target)
        target.write_text('{"messages": [1]}')

        assert file_hash(target) != first
        assert len(first) == 64

    def test_object_ids_are_sorted_and_unique(self):
        encoded = encode_object_ids(["b", "a", "b"])
        assert encoded == '["a", "b"]'
        assert decode_object_ids(encoded) == {"a", "b"}

    def test_decode_garbage_is_empty(self):
        assert decode_object_ids("not json") == set()
        assert decode_object_ids('{"a": 1}') == set()
