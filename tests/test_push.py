"""Tests for PushSynchronizer."""

import json

import pytest

from notebackup.sync.caches import ExpiringCache
from notebackup.sync.manifest import MANIFEST_FILENAME, ManifestStore, hash_content
from notebackup.sync.models import BackupAsset, BackupDoc, BackupManifest
from notebackup.sync.push import PushSynchronizer

SCOPE = "docs:c1"


def _doc(doc_id, title, content=None, path=None, assets=()):
    return BackupDoc(
        id=doc_id,
        title=title,
        content=content if content is not None else f"# {title}\n",
        path=path,
        assets=list(assets),
    )


def _asset(asset_id, name="img", data=b"\x89PNG-1", media_type="image/png"):
    return BackupAsset(id=asset_id, name=name, data=data, media_type=media_type)


@pytest.fixture
def pusher(backup_dir, clock):
    return PushSynchronizer(backup_dir, clock=clock)


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


class TestFirstPush:
    def test_writes_documents_and_manifest(self, pusher, backup_dir):
        result = pusher.run(
            [_doc("d1", "Notes", path="work"), _doc("d2", "Ideas")], SCOPE
        )

        assert result.documents_written == 2
        assert result.manifest_written is True
        assert backup_dir.list_files() == [
            MANIFEST_FILENAME,
            "Ideas.md",
            "work/Notes.md",
        ]
        assert backup_dir.read_text("work/Notes.md") == "# Notes\n"

        manifest = ManifestStore(backup_dir).read()
        by_id = {e.doc_id: e for e in manifest.entries}
        assert by_id["d1"].relative_path == "work/Notes.md"
        assert by_id["d1"].scope_id == SCOPE
        assert by_id["d1"].location_key == "Notes|work|no-assets"
        assert by_id["d1"].content_hash == hash_content("# Notes\n")
        assert by_id["d1"].last_synced_at == "2023-11-14T22:13:20.000Z"

    def test_assets_written_and_references_rewritten(self, pusher, backup_dir):
        doc = _doc(
            "d1",
            "Album",
            content="# Album\n![cover](asset:a1)\n",
            assets=[_asset("a1", "cover")],
        )
        result = pusher.run([doc], SCOPE)

        assert result.assets_written == 1
        assert backup_dir.read_text("Album/Album.md") == (
            "# Album\n![cover](assets/cover.png)\n"
        )
        assert backup_dir.read_bytes("Album/assets/cover.png") == b"\x89PNG-1"

        entry = ManifestStore(backup_dir).read().entries[0]
        assert [(a.id, a.name) for a in entry.assets] == [("a1", "cover.png")]

    def test_empty_push_writes_nothing(self, pusher, backup_dir):
        result = pusher.run([], SCOPE)
        assert not result.changed
        assert backup_dir.list_files() == []


class TestIdempotence:
    def test_second_push_writes_nothing(self, pusher, backup_dir, clock):
        docs = [
            _doc("d1", "Notes", path="work"),
            _doc("d2", "Album", "![](asset:a1)", assets=[_asset("a1")]),
        ]
        pusher.run(docs, SCOPE)
        manifest_bytes = backup_dir.read_bytes(MANIFEST_FILENAME)
        backup_dir.stats.reset()
        clock.advance(60_000)

        result = pusher.run(docs, SCOPE)

        assert result.documents_written == 0
        assert result.manifest_written is False
        assert backup_dir.stats.writes == 0
        assert backup_dir.stats.removals == 0
        assert backup_dir.read_bytes(MANIFEST_FILENAME) == manifest_bytes

    def test_only_changed_document_rewritten(self, pusher, backup_dir, clock):
        pusher.run([_doc("d1", "A"), _doc("d2", "B")], SCOPE)
        backup_dir.stats.reset()
        clock.advance(1000)

        result = pusher.run([_doc("d1", "A"), _doc("d2", "B", "# B\nmore\n")], SCOPE)

        assert result.documents_written == 1
        assert backup_dir.stats.written_paths == ["B.md", MANIFEST_FILENAME]
        by_id = {e.doc_id: e for e in ManifestStore(backup_dir).read().entries}
        assert by_id["d1"].last_synced_at == "2023-11-14T22:13:20.000Z"
        assert by_id["d2"].last_synced_at == "2023-11-14T22:13:21.000Z"

    def test_changed_asset_bytes_rewrite_document(self, pusher, backup_dir):
        pusher.run([_doc("d1", "A", assets=[_asset("a1")])], SCOPE)
        backup_dir.stats.reset()

        result = pusher.run(
            [_doc("d1", "A", assets=[_asset("a1", data=b"other")])], SCOPE
        )
        assert result.documents_written == 1
        assert backup_dir.read_bytes("A/assets/img.png") == b"other"


class TestSelfHeal:
    def test_missing_markdown_rewritten(self, pusher, backup_dir):
        docs = [_doc("d1", "Notes")]
        pusher.run(docs, SCOPE)
        backup_dir.remove("Notes.md")

        result = pusher.run(docs, SCOPE)
        assert result.documents_written == 1
        assert backup_dir.read_text("Notes.md") == "# Notes\n"

    def test_missing_asset_rewritten(self, pusher, backup_dir):
        docs = [_doc("d1", "A", assets=[_asset("a1")])]
        pusher.run(docs, SCOPE)
        backup_dir.remove("A/assets/img.png")

        result = pusher.run(docs, SCOPE)
        assert result.assets_written == 1
        assert backup_dir.exists("A/assets/img.png")


# ---------------------------------------------------------------------------
# Location resolution
# ---------------------------------------------------------------------------


class TestLocationResolution:
    def test_manifest_path_kept_for_same_location_key(self, pusher, backup_dir):
        pusher.run([_doc("first-0000aaaa", "Notes"), _doc("second-1111bbbb", "Notes")], SCOPE)
        assert backup_dir.exists("Notes (1111bbbb).md")

        # Order flips: without the manifest the suffix would move.
        result = pusher.run(
            [_doc("second-1111bbbb", "Notes"), _doc("first-0000aaaa", "Notes")], SCOPE
        )
        assert result.documents_written == 0
        assert backup_dir.exists("Notes.md")
        assert backup_dir.exists("Notes (1111bbbb).md")

    def test_retitled_document_moves_and_old_file_removed(self, pusher, backup_dir):
        pusher.run([_doc("d1", "Old")], SCOPE)
        result = pusher.run([_doc("d1", "New", "# New\n")], SCOPE)

        assert result.documents_written == 1
        assert result.cleaned_up == 1
        assert backup_dir.list_files() == [MANIFEST_FILENAME, "New.md"]

    def test_renamed_document_does_not_take_a_kept_path(self, pusher, backup_dir):
        """Retitling onto an existing title leaves the other file untouched."""
        pusher.run(
            [_doc("d1", "Old", "# Old\nalpha\n"), _doc("d2", "Notes", "# Notes\nbeta\n")],
            SCOPE,
        )

        pusher.run(
            [
                _doc("d1", "Notes", "# Notes\nalpha\n"),
                _doc("d2", "Notes", "# Notes\nbeta\n"),
            ],
            SCOPE,
        )

        assert backup_dir.read_text("Notes.md") == "# Notes\nbeta\n"
        assert backup_dir.read_text("Notes (d1).md") == "# Notes\nalpha\n"
        assert backup_dir.list_files() == [
            MANIFEST_FILENAME,
            "Notes (d1).md",
            "Notes.md",
        ]
        paths = sorted(e.relative_path for e in ManifestStore(backup_dir).read().entries)
        assert paths == ["Notes (d1).md", "Notes.md"]

    def test_override_wins_and_is_consumed(self, backup_dir, clock):
        overrides = ExpiringCache(clock=clock)
        pusher = PushSynchronizer(backup_dir, path_overrides=overrides, clock=clock)
        pusher.run([_doc("d1", "Notes")], SCOPE)
        backup_dir.add_file("archive/Notes.md", "# Notes\n")
        backup_dir.remove("Notes.md")
        overrides.set("d1", "archive/Notes.md")

        pusher.run([_doc("d1", "Notes")], SCOPE)

        entry = ManifestStore(backup_dir).read().entries[0]
        assert entry.relative_path == "archive/Notes.md"
        assert "d1" not in overrides
        assert backup_dir.list_files() == [MANIFEST_FILENAME, "archive/Notes.md"]


# ---------------------------------------------------------------------------
# Orphan cleanup
# ---------------------------------------------------------------------------


class TestCleanup:
    def test_removes_orphans_but_keeps_hidden_and_other_files(
        self, pusher, backup_dir
    ):
        backup_dir.add_file("Stray.md", "x")
        backup_dir.add_file("old/Gone.md", "x")
        backup_dir.add_file(".git/config", "x")
        backup_dir.add_file("README.txt", "x")

        result = pusher.run([_doc("d1", "Notes")], SCOPE)

        assert result.cleaned_up == 2
        assert backup_dir.list_files() == [
            ".git/config",
            MANIFEST_FILENAME,
            "Notes.md",
            "README.txt",
        ]

    def test_stale_assets_removed_expected_kept(self, pusher, backup_dir):
        pusher.run(
            [_doc("d1", "A", assets=[_asset("a1", "one"), _asset("a2", "two")])],
            SCOPE,
        )
        backup_dir.add_file("A/assets/nested/x.png", b"x")

        result = pusher.run([_doc("d1", "A", assets=[_asset("a1", "one")])], SCOPE)

        assert result.cleaned_up == 2
        assert backup_dir.list_files() == [
            MANIFEST_FILENAME,
            "A/A.md",
            "A/assets/one.png",
        ]

    def test_removed_document_cleaned_in_unknown_scope(self, pusher, backup_dir):
        pusher.run([_doc("d1", "A"), _doc("d2", "B")])
        result = pusher.run([_doc("d1", "A")])

        assert result.cleaned_up == 1
        assert result.manifest_written is True
        assert backup_dir.list_files() == [MANIFEST_FILENAME, "A.md"]

    def test_skipped_when_other_scopes_share_the_root(self, backup_dir, clock):
        PushSynchronizer(backup_dir, clock=clock).run([_doc("x1", "Shared")], "docs:c2")
        backup_dir.add_file("Stray.md", "x")

        result = PushSynchronizer(backup_dir, clock=clock).run(
            [_doc("d1", "Mine")], SCOPE
        )

        assert result.cleaned_up == 0
        assert backup_dir.exists("Shared.md")
        assert backup_dir.exists("Stray.md")
        scopes = {e.scope_id for e in ManifestStore(backup_dir).read().entries}
        assert scopes == {"docs:c2", SCOPE}


class TestPartialLoad:
    def test_missing_entries_preserved_without_cleanup(self, pusher, backup_dir):
        pusher.run([_doc("d1", "A"), _doc("d2", "B")], SCOPE)
        backup_dir.stats.reset()

        result = pusher.run([_doc("d1", "A")], SCOPE)

        assert result.documents_written == 0
        assert result.cleaned_up == 0
        assert backup_dir.exists("B.md")
        doc_ids = {e.doc_id for e in ManifestStore(backup_dir).read().entries}
        assert doc_ids == {"d1", "d2"}


def test_manifest_file_is_pretty_json(pusher, backup_dir):
    pusher.run([_doc("d1", "A")], SCOPE)
    text = backup_dir.read_text(MANIFEST_FILENAME)
    assert text.startswith('{\n  "version": 1,')
    BackupManifest.model_validate(json.loads(text))
