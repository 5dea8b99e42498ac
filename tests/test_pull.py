"""Tests for PullSynchronizer."""

import pytest

from notebackup.exceptions import CollectionUnavailableError
from notebackup.handles import MemoryDirectoryHandle
from notebackup.store import Attachment
from notebackup.sync.caches import to_datetime
from notebackup.sync.manifest import (
    MANIFEST_FILENAME,
    ManifestStore,
    hash_bytes,
    hash_content,
)
from notebackup.sync.models import BackupManifest, ManifestEntry
from notebackup.sync.pull import PullSynchronizer


@pytest.fixture
def puller(backup_dir, clock):
    return PullSynchronizer(backup_dir, clock=clock)


def _album(collection, data=b"old-bytes"):
    """Document with one image attachment, pushed as Album/Album.md."""
    attachment = Attachment(
        id="att1",
        name="cover",
        data=data,
        media_type="image/png",
        created_at=to_datetime(0),
    )
    return collection.add_document(
        "# Album\n![c](asset:att1)\n", [attachment], doc_id="doc1"
    )


def _entries(backup_dir):
    return {e.doc_id: e for e in ManifestStore(backup_dir).read().entries}


# ---------------------------------------------------------------------------
# Creating documents
# ---------------------------------------------------------------------------


class TestCreate:
    def test_new_file_becomes_document(self, puller, backup_dir, collection):
        backup_dir.add_file("work/Plan.md", "# Plan\n")

        result = puller.run(collection)

        assert result.created == 1
        assert result.ok
        doc = collection.live_documents()[0]
        assert doc.content == "---\npath: work\n---\n\n# Plan\n"
        entry = _entries(backup_dir)[doc.id]
        assert entry.relative_path == "work/Plan.md"
        assert entry.scope_id == "docs:c1"
        assert entry.content_hash == hash_content("# Plan\n")
        assert puller.path_overrides.get(doc.id) == "work/Plan.md"

    def test_assets_imported_as_attachments(self, puller, backup_dir, collection):
        backup_dir.add_file("Album/Album.md", "# Album\n![c](assets/cover.png)\n")
        backup_dir.add_file("Album/assets/cover.png", b"\x89PNG")

        result = puller.run(collection)

        assert result.created == 1
        doc = collection.find("id00000002")
        assert doc.content == "# Album\n![c](asset:id00000001)\n"
        [attachment] = doc.assets
        assert attachment.id == "id00000001"
        assert attachment.name == "cover"
        assert attachment.data == b"\x89PNG"
        assert attachment.media_type == "image/png"

        [asset] = _entries(backup_dir)["id00000002"].assets
        assert asset.name == "cover.png"
        assert asset.hash == hash_bytes(b"\x89PNG")
        assert asset.id is None

    def test_read_only_reports_error(self, puller, backup_dir, collection):
        backup_dir.add_file("work/Plan.md", "# Plan\n")

        result = puller.run(collection, can_write=False)

        assert result.created == 0
        assert result.errors == ["Cannot create Plan: no write permission"]
        assert collection.documents() == []
        assert not backup_dir.exists(MANIFEST_FILENAME)

    def test_recent_import_not_created_twice(
        self, puller, backup_dir, collection, clock
    ):
        backup_dir.add_file("Album/Album.md", "![c](assets/cover.png)\n")
        backup_dir.add_file("Album/assets/cover.png", b"\x89PNG")
        assert puller.run(collection).created == 1

        # Losing the manifest right after an import must not duplicate it.
        backup_dir.remove(MANIFEST_FILENAME)
        result = puller.run(collection)
        assert result.created == 0
        assert result.ok
        assert len(collection.documents()) == 1

        clock.advance(30_001)
        assert puller.run(collection).created == 1
        assert len(collection.documents()) == 2


class TestAdoption:
    def test_identical_untracked_document_adopted(
        self, puller, backup_dir, collection
    ):
        doc = collection.add_document("hello\n")
        backup_dir.add_file("hello.md", "hello\n")

        result = puller.run(collection)

        assert result.created == 0
        assert result.updated == 0
        assert doc.history == []
        assert _entries(backup_dir)[doc.id].relative_path == "hello.md"
        assert puller.path_overrides.get(doc.id) == "hello.md"

    def test_adoption_compares_after_path_normalization(
        self, puller, backup_dir, collection
    ):
        doc = collection.add_document("---\npath: work\n---\n\nhello\n")
        backup_dir.add_file("work/hello.md", "hello\n")

        result = puller.run(collection)

        assert result.created == 0
        assert doc.id in _entries(backup_dir)

    def test_documents_with_assets_not_adopted(self, puller, backup_dir, collection):
        _album(collection)
        backup_dir.add_file("Album.md", "# Album\n![c](asset:att1)\n")

        result = puller.run(collection)

        assert result.created == 1


# ---------------------------------------------------------------------------
# Updating tracked documents
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_edited_file_applied_as_diff(
        self, engine, backup_dir, collection, clock
    ):
        doc = collection.add_document("# Notes\nbody\n")
        engine.push()
        clock.advance(5_000)
        backup_dir.add_file("Notes.md", "# Notes\nchanged\n")

        result = engine.pull()

        assert result.updated == 1
        assert doc.content == "# Notes\nchanged\n"
        assert len(doc.history) == 1
        assert doc.updated_at == to_datetime(clock())
        assert _entries(backup_dir)[doc.id].content_hash == hash_content(
            "# Notes\nchanged\n"
        )

    def test_unchanged_file_counts_nothing(self, engine, backup_dir, collection):
        collection.add_document("# Notes\n")
        engine.push()
        backup_dir.stats.reset()

        result = engine.pull()

        assert (result.created, result.updated, result.deleted) == (0, 0, 0)
        assert backup_dir.stats.writes == 0

    def test_read_only_update_reports_error(self, engine, backup_dir, collection):
        doc = collection.add_document("# Notes\n")
        engine.push()
        backup_dir.add_file("Notes.md", "# Notes\nedited\n")

        result = PullSynchronizer(backup_dir).run(collection, can_write=False)

        assert result.errors == ["Cannot update Notes: no write permission"]
        assert doc.content == "# Notes\n"

    def test_unloaded_target_skipped(self, engine, backup_dir, collection):
        doc = collection.add_document("# Notes\n")
        engine.push()
        doc.loaded = False
        backup_dir.add_file("Notes.md", "# Notes\nedited\n")

        result = engine.pull()

        assert result.errors == [
            "Skipped update for Notes.md: target document not loaded"
        ]
        assert result.deleted == 0
        assert doc.content == "# Notes\n"

    def test_failure_recorded_and_other_files_continue(
        self, engine, backup_dir, collection, monkeypatch
    ):
        collection.add_document("# Notes\n")
        engine.push()
        backup_dir.add_file("Notes.md", "# Notes\nedited\n")
        backup_dir.add_file("New.md", "# New\n")

        def boom(doc_id, content):
            raise RuntimeError("boom")

        monkeypatch.setattr(collection, "apply_diff", boom)
        result = engine.pull()

        assert result.errors == ["Failed to process Notes.md: boom"]
        assert result.created == 1


class TestSkipCutoff:
    def _legacy_manifest(self, backup_dir):
        manifest = ManifestStore(backup_dir).read()
        ManifestStore(backup_dir).write(
            manifest.model_copy(
                update={
                    "entries": [
                        e.model_copy(update={"scope_id": None})
                        for e in manifest.entries
                    ]
                }
            )
        )

    def test_unchanged_old_files_skipped(
        self, engine, puller, backup_dir, collection, clock
    ):
        collection.add_document("# Notes\n")
        engine.push()
        self._legacy_manifest(backup_dir)
        backup_dir.stats.reset()

        puller.run(collection, last_pull_at_ms=clock() + 1)
        assert backup_dir.stats.writes == 0

        # Without a cutoff the entry is refreshed into the active scope.
        puller.run(collection)
        assert [e.scope_id for e in _entries(backup_dir).values()] == ["docs:c1"]

    def test_changed_file_processed_despite_old_mtime(
        self, engine, puller, backup_dir, collection, clock
    ):
        doc = collection.add_document("# Notes\n")
        engine.push()
        backup_dir.add_file("Notes.md", "# Notes\nedited\n", last_modified=0)

        result = puller.run(collection, last_pull_at_ms=clock() + 1)

        assert result.updated == 1
        assert doc.content == "# Notes\nedited\n"


# ---------------------------------------------------------------------------
# Moves
# ---------------------------------------------------------------------------


class TestMoves:
    def test_moved_file_updates_path(self, engine, backup_dir, collection):
        doc = collection.add_document("# Notes\nbody\n")
        engine.push()
        backup_dir.add_file("archive/Notes.md", backup_dir.read_text("Notes.md"))
        backup_dir.remove("Notes.md")

        result = engine.pull()

        assert (result.created, result.updated, result.deleted) == (0, 1, 0)
        assert doc.content == "---\npath: archive\n---\n\n# Notes\nbody\n"
        assert _entries(backup_dir)[doc.id].relative_path == "archive/Notes.md"
        assert engine.path_overrides.get(doc.id) == "archive/Notes.md"

    def test_ambiguous_move_treated_as_new(self, engine, backup_dir, collection):
        first = collection.add_document("same\n")
        second = collection.add_document("same\n")
        engine.push()
        backup_dir.add_file("x/other.md", "same\n")
        backup_dir.remove("same.md")
        backup_dir.remove(f"same ({second.id[-8:]}).md")

        result = engine.pull()

        assert (result.created, result.updated, result.deleted) == (1, 0, 2)
        assert first.deleted_at is not None
        assert second.deleted_at is not None

    def test_basename_breaks_tie(self, engine, backup_dir, collection):
        first = collection.add_document("same\n")
        second = collection.add_document("same\n")
        engine.push()
        second_name = f"same ({second.id[-8:]}).md"
        backup_dir.add_file("x/same.md", "same\n")
        backup_dir.add_file(f"x/{second_name}", "same\n")
        backup_dir.remove("same.md")
        backup_dir.remove(second_name)

        result = engine.pull()

        assert (result.created, result.deleted) == (0, 0)
        entries = _entries(backup_dir)
        assert entries[first.id].relative_path == "x/same.md"
        assert entries[second.id].relative_path == f"x/{second_name}"


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


class TestAttachments:
    def test_edited_binary_updated_in_place(self, engine, backup_dir, collection):
        doc = _album(collection)
        engine.push()
        backup_dir.add_file("Album/assets/cover.png", b"new-bytes")

        result = engine.pull()

        assert result.updated == 1
        [attachment] = doc.assets
        assert attachment.id == "att1"
        assert attachment.data == b"new-bytes"
        assert doc.content == "# Album\n![c](asset:att1)\n"

    def test_media_class_change_replaces_attachment(
        self, engine, backup_dir, collection
    ):
        doc = _album(collection)
        engine.push()
        backup_dir.add_file(
            "Album/assets/cover.png", b"video-bytes", media_type="video/mp4"
        )

        engine.pull()

        [attachment] = doc.assets
        assert attachment.id == "id00000001"
        assert attachment.media_type == "video/mp4"
        assert attachment.created_at == to_datetime(0)
        assert doc.content == "# Album\n![c](asset:id00000001)\n"

    def test_new_asset_file_added(self, engine, backup_dir, collection):
        doc = _album(collection)
        engine.push()
        backup_dir.add_file("Album/assets/extra.png", b"extra")

        engine.pull()

        assert [(a.id, a.name) for a in doc.assets] == [
            ("att1", "cover"),
            ("id00000001", "extra"),
        ]

    def test_renamed_asset_matched_by_hash(self, engine, backup_dir, collection):
        doc = _album(collection)
        engine.push()
        backup_dir.add_file("Album/assets/photo.png", b"old-bytes")
        backup_dir.remove("Album/assets/cover.png")
        backup_dir.add_file("Album/Album.md", "# Album\n![c](assets/photo.png)\n")

        engine.pull()

        [attachment] = doc.assets
        assert attachment.id == "att1"
        assert attachment.name == "photo"
        assert doc.content == "# Album\n![c](asset:att1)\n"

    def test_removed_asset_file_removes_attachment(
        self, engine, backup_dir, collection
    ):
        doc = _album(collection)
        collection.add_attachment(
            doc.id,
            Attachment(id="att2", name="second", data=b"2", media_type="image/png"),
        )
        engine.push()
        backup_dir.remove("Album/assets/second.png")

        engine.pull()

        assert [a.id for a in doc.assets] == ["att1"]

    def test_missing_folder_keeps_referenced_attachments(
        self, engine, backup_dir, collection
    ):
        doc = _album(collection)
        engine.push()
        backup_dir.remove("Album/assets")

        result = engine.pull()

        assert result.ok
        assert [a.id for a in doc.assets] == ["att1"]
        assert doc.content == "# Album\n![c](asset:att1)\n"


# ---------------------------------------------------------------------------
# Deletion and scopes
# ---------------------------------------------------------------------------


class TestDeletion:
    def test_missing_file_soft_deletes_document(
        self, engine, backup_dir, collection, clock
    ):
        keep = collection.add_document("# A\n")
        gone = collection.add_document("# B\n")
        engine.push()
        backup_dir.remove("B.md")

        result = engine.pull()

        assert result.deleted == 1
        assert gone.deleted_at == to_datetime(clock())
        assert keep.deleted_at is None
        assert set(_entries(backup_dir)) == {keep.id}

    def test_read_only_pull_deletes_nothing(self, engine, backup_dir, collection):
        gone = collection.add_document("# B\n")
        engine.push()
        backup_dir.remove("B.md")

        result = PullSynchronizer(backup_dir).run(collection, can_write=False)

        assert result.deleted == 0
        assert gone.deleted_at is None

    def test_foreign_scope_entries_kept(self, engine, backup_dir, collection):
        collection.add_document("# A\n")
        engine.push()
        manifest = ManifestStore(backup_dir).read()
        foreign = ManifestEntry(
            doc_id="other-doc",
            relative_path="Other.md",
            scope_id="docs:c2",
            content_hash="abc",
            last_synced_at=manifest.last_sync_at,
            assets=[],
        )
        ManifestStore(backup_dir).write(
            BackupManifest(
                entries=[*manifest.entries, foreign],
                last_sync_at=manifest.last_sync_at,
            )
        )
        backup_dir.remove("A.md")

        result = engine.pull()

        assert result.deleted == 1
        assert list(_entries(backup_dir)) == ["other-doc"]


class TestFailures:
    def test_unavailable_collection_raises(self, puller, collection):
        collection.available = False
        with pytest.raises(CollectionUnavailableError):
            puller.run(collection)

    def test_scan_failure_reported(self, collection, clock):
        class BrokenDirectory(MemoryDirectoryHandle):
            def entries(self):
                raise PermissionError("denied")

        result = PullSynchronizer(BrokenDirectory("backup", clock)).run(collection)

        assert result.errors == ["Failed to scan backup folder: denied"]

    def test_unreadable_file_reported_others_processed(
        self, puller, backup_dir, collection, monkeypatch
    ):
        backup_dir.add_file("Good.md", "# Good\n")
        backup_dir.add_file("Bad.md", "# Bad\n")

        def _denied():
            raise PermissionError("denied")

        monkeypatch.setattr(backup_dir.get_file_handle("Bad.md"), "get_file", _denied)

        result = puller.run(collection)

        assert result.created == 1
        assert result.errors == ["Failed to process Bad.md: denied"]
        assert [d.content for d in collection.documents()] == ["# Good\n"]

    def test_unreadable_synced_file_not_deleted(
        self, engine, backup_dir, collection, monkeypatch
    ):
        doc = collection.add_document("# Locked\n")
        engine.push()

        def _denied():
            raise PermissionError("denied")

        monkeypatch.setattr(
            backup_dir.get_file_handle("Locked.md"), "get_file", _denied
        )

        result = engine.pull()

        assert result.deleted == 0
        assert result.errors == ["Failed to process Locked.md: denied"]
        assert doc.deleted_at is None
        assert doc.id in _entries(backup_dir)
