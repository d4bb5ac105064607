"""
Unit tests for the local asset store.
"""

import hashlib

import pytest

from reelworker.tasks.storage import AssetNotFound, LocalAssetStore


class TestLocalAssetStore:
    """Tests for filesystem-backed storage."""

    def test_write_and_resolve(self, store):
        store.write("p/a.bin", b"hello")
        path, fp = store.resolve("p/a.bin")
        assert open(path, "rb").read() == b"hello"
        assert fp == hashlib.sha256(b"hello").hexdigest()

    def test_missing_asset(self, store):
        assert store.exists("p/missing.bin") is False
        with pytest.raises(AssetNotFound) as exc_info:
            store.resolve("p/missing.bin")
        assert exc_info.value.ref == "p/missing.bin"

    def test_empty_file_does_not_exist(self, store):
        store.write("p/empty.bin", b"")
        assert store.exists("p/empty.bin") is False

    def test_fingerprint_changes_with_content(self, store):
        store.write("p/a.bin", b"one")
        first = store.fingerprint("p/a.bin")
        store.write("p/a.bin", b"two!")
        assert store.fingerprint("p/a.bin") != first

    def test_reference_escaping_root_rejected(self, store):
        with pytest.raises(ValueError):
            store.path_for("../outside.txt")
        assert store.exists("../outside.txt") is False

    def test_put_file_and_copy(self, store, tmp_path):
        source = tmp_path / "local.mp4"
        source.write_bytes(b"video")
        store.put_file("p/movie.mp4", str(source))
        store.copy("p/movie.mp4", "cache/render/abc.mp4")
        assert store.size("cache/render/abc.mp4") == 5

    def test_copy_missing_source(self, store):
        with pytest.raises(AssetNotFound):
            store.copy("p/nope.mp4", "p/other.mp4")

    def test_no_temp_files_left_behind(self, store, tmp_path):
        store.write("p/a.bin", b"x")
        leftovers = [f.name for f in (tmp_path / "store" / "p").iterdir() if f.name.endswith(".tmp")]
        assert leftovers == []

    def test_delete(self, store):
        store.write("p/a.bin", b"x")
        assert store.delete("p/a.bin") is True
        assert store.delete("p/a.bin") is False

    def test_list_prefix_with_partial_name(self, store):
        store.write("p/scene-0-b.png", b"1")
        store.write("p/scene-0-a.png", b"2")
        store.write("p/scene-1-a.png", b"3")
        (store.root / "p" / ".scene-0-c.png.1234abcd.tmp").write_bytes(b"partial")
        assert store.list_prefix("p/scene-0-") == ["p/scene-0-a.png", "p/scene-0-b.png"]

    def test_list_prefix_missing_directory(self, store):
        assert store.list_prefix("nothing/here-") == []

    def test_size_of_missing(self, store):
        with pytest.raises(AssetNotFound):
            store.size("p/none")

    def test_root_is_created(self, tmp_path):
        root = tmp_path / "fresh" / "root"
        LocalAssetStore(str(root))
        assert root.is_dir()
