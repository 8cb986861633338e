"""Tests for shipyard.file_store — path normalisation and versioned storage."""

import pytest

from shipyard.errors import FileNotFound
from shipyard.file_store import FileStore, content_hash, normalize_path


# ---------------------------------------------------------------------------
# normalize_path
# ---------------------------------------------------------------------------


class TestNormalizePath:
    def test_strips_dot_segments_and_duplicate_slashes(self):
        assert normalize_path("./src//app/./main.ts") == "src/app/main.ts"

    def test_backslashes_become_forward_slashes(self):
        assert normalize_path("src\\components\\App.tsx") == "src/components/App.tsx"

    def test_case_is_preserved(self):
        assert normalize_path("src/App.tsx") != normalize_path("src/app.tsx")

    @pytest.mark.parametrize("bad", ["", "   ", "/etc/passwd", "C:/x.txt", "../up.ts", "src/../../x"])
    def test_rejects_unsafe_paths(self, bad):
        with pytest.raises(ValueError):
            normalize_path(bad)

    def test_rejects_reserved_directories(self):
        with pytest.raises(ValueError, match="reserved"):
            normalize_path("node_modules/react/index.js")

    def test_rejects_directory_only(self):
        with pytest.raises(ValueError):
            normalize_path("./")


# ---------------------------------------------------------------------------
# FileStore
# ---------------------------------------------------------------------------


class TestFileStore:
    def test_write_creates_record_and_bumps_revision(self):
        store = FileStore()
        rec = store.write("index.html", "<h1>hi</h1>")
        assert rec.path == "index.html"
        assert rec.version == 1
        assert rec.content_hash == content_hash("<h1>hi</h1>")
        assert store.revision == 1
        assert "index.html" in store

    def test_write_normalizes_path(self):
        store = FileStore()
        store.write("./src/main.ts", "x")
        assert store.paths() == ["src/main.ts"]

    def test_replace_keeps_single_entry(self):
        store = FileStore({"a.txt": "one"})
        store.write("a.txt", "two")
        assert len(store) == 1
        assert store.read("a.txt") == "two"
        assert store.get("a.txt").version == 2

    def test_get_missing_raises(self):
        with pytest.raises(FileNotFound):
            FileStore().get("nope.ts")

    def test_delete(self):
        store = FileStore({"a.txt": "x"})
        store.delete("a.txt")
        assert "a.txt" not in store
        assert store.revision == 2

    def test_delete_missing_raises(self):
        with pytest.raises(FileNotFound):
            FileStore().delete("a.txt")

    def test_rename_moves_content(self):
        store = FileStore({"old.ts": "body"})
        rec = store.rename("old.ts", "src/new.ts")
        assert rec.path == "src/new.ts"
        assert store.read("src/new.ts") == "body"
        assert "old.ts" not in store

    def test_rename_onto_existing_requires_overwrite(self):
        store = FileStore({"a.ts": "a", "b.ts": "b"})
        with pytest.raises(FileExistsError):
            store.rename("a.ts", "b.ts")
        assert store.read("a.ts") == "a"
        store.rename("a.ts", "b.ts", overwrite=True)
        assert store.paths() == ["b.ts"]
        assert store.read("b.ts") == "a"

    def test_snapshot_is_detached(self):
        store = FileStore({"a.txt": "x"})
        snap = store.snapshot()
        store.write("a.txt", "y")
        assert snap == {"a.txt": "x"}

    def test_same_sequence_gives_same_state(self):
        """Applying the same write/delete/rename sequence twice is deterministic."""
        def run() -> FileStore:
            store = FileStore()
            store.write("a.ts", "1")
            store.write("b.ts", "2")
            store.rename("a.ts", "c.ts")
            store.delete("b.ts")
            store.write("c.ts", "3")
            return store

        first, second = run(), run()
        assert first.snapshot() == second.snapshot() == {"c.ts": "3"}
        assert first.revision == second.revision == 5

    def test_digest_lists_files(self):
        store = FileStore({"index.html": "<p>a</p>\n<p>b</p>"})
        digest = store.digest(preview_lines=1)
        assert digest.startswith("1 file(s), revision 1")
        assert "- index.html" in digest
        assert "    <p>a</p>" in digest
        assert "<p>b</p>" not in digest
