"""Persisted sync manifest and the comparisons built on it.

The manifest is a single JSON file at the backup root::

    {
      "version": 1,
      "entries": [
        {
          "docId": "...",
          "relativePath": "work/Notes.md",
          "scopeId": "docs:...",
          "locationKey": "Notes|work|no-assets",
          "contentHash": "9f86d081884c7d65",
          "lastSyncedAt": "2024-05-01T12:00:00.000Z",
          "assets": [{"id": "...", "name": "img.png", "hash": "..."}]
        }
      ],
      "lastSyncAt": "2024-05-01T12:00:00.000Z"
    }

A file that cannot be read or does not match this shape is treated exactly
like a missing one: the next pull degrades to a full rescan.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, MutableMapping, Sequence
from typing import Protocol

from pydantic import ValidationError

from notebackup.handles import DirectoryHandle

from .models import BackupManifest, ManifestAsset, ManifestEntry

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = ".notebackup-manifest.json"
UNKNOWN_SCOPE = "docs:unknown"
HASH_LENGTH = 16


class _HashedAsset(Protocol):
    name: str
    hash: str


# ---------------------------------------------------------------------------
# Hashing and scope keys
# ---------------------------------------------------------------------------


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest truncated to 16 characters."""
    return hashlib.sha256(data).hexdigest()[:HASH_LENGTH]


def hash_content(text: str) -> str:
    """Hash of the UTF-8 encoding of *text*; no normalization is applied."""
    return hash_bytes(text.encode("utf-8"))


def scope_key(collection_id: str | None) -> str:
    """Scope key of a document collection: ``docs:<id>``."""
    return f"docs:{collection_id}" if collection_id else UNKNOWN_SCOPE


def entry_matches_scope(entry: ManifestEntry, scope_id: str) -> bool:
    """Entries without a scope, or in the unknown scope, match every scope."""
    if not entry.scope_id or entry.scope_id == UNKNOWN_SCOPE:
        return True
    return entry.scope_id == scope_id


# ---------------------------------------------------------------------------
# Read / write
# ---------------------------------------------------------------------------


class ManifestStore:
    """Read and write the manifest file in a backup directory.

    Args:
        handle: Root directory handle of the backup.
    """

    def __init__(self, handle: DirectoryHandle) -> None:
        self.handle = handle

    def read(self) -> BackupManifest | None:
        """Load the manifest, or ``None`` if it is missing or invalid."""
        try:
            snapshot = self.handle.get_file_handle(MANIFEST_FILENAME).get_file()
        except FileNotFoundError:
            logger.debug("No manifest in %s", self.handle.name)
            return None
        except OSError as exc:
            logger.warning("Cannot read manifest: %s", exc)
            return None

        try:
            raw = json.loads(snapshot.data.decode("utf-8"))
            return BackupManifest.model_validate(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Manifest is not valid JSON, ignoring it: %s", exc)
        except ValidationError as exc:
            logger.warning(
                "Manifest does not match the expected schema, ignoring it "
                "(%d errors)",
                exc.error_count(),
            )
        return None

    def write(self, manifest: BackupManifest) -> None:
        """Overwrite the manifest file."""
        payload = manifest.model_dump(mode="json", by_alias=True, exclude_none=True)
        text = json.dumps(payload, indent=2, ensure_ascii=False)
        self.handle.get_file_handle(MANIFEST_FILENAME, create=True).write(text)
        logger.debug("Wrote manifest with %d entries", len(manifest.entries))


# ---------------------------------------------------------------------------
# Comparisons
# ---------------------------------------------------------------------------


def manifest_assets_equal(
    left: Sequence[ManifestAsset], right: Sequence[ManifestAsset]
) -> bool:
    """Order-insensitive comparison of id, name and hash."""
    if len(left) != len(right):
        return False
    key = lambda asset: asset.name  # noqa: E731
    for a, b in zip(sorted(left, key=key), sorted(right, key=key)):
        if (a.id, a.name, a.hash) != (b.id, b.name, b.hash):
            return False
    return True


def scanned_assets_in_sync(
    manifest_assets: Sequence[_HashedAsset], scanned: Sequence[_HashedAsset]
) -> bool:
    """Order-insensitive comparison of name and hash only."""
    if len(manifest_assets) != len(scanned):
        return False
    key = lambda asset: asset.name  # noqa: E731
    for a, b in zip(sorted(manifest_assets, key=key), sorted(scanned, key=key)):
        if a.name != b.name or a.hash != b.hash:
            return False
    return True


def entries_equivalent(left: ManifestEntry, right: ManifestEntry) -> bool:
    return (
        left.doc_id == right.doc_id
        and left.relative_path == right.relative_path
        and left.scope_id == right.scope_id
        and left.location_key == right.location_key
        and left.content_hash == right.content_hash
        and left.last_synced_at == right.last_synced_at
        and manifest_assets_equal(left.assets, right.assets)
    )


def entries_changed(
    left: Sequence[ManifestEntry], right: Sequence[ManifestEntry]
) -> bool:
    """Whether two entry lists differ, ignoring order."""
    if len(left) != len(right):
        return True
    key = lambda entry: (entry.doc_id, entry.relative_path)  # noqa: E731
    return not all(
        entries_equivalent(a, b)
        for a, b in zip(sorted(left, key=key), sorted(right, key=key))
    )


def upsert_entry(
    entries_by_doc_id: MutableMapping[str, ManifestEntry], entry: ManifestEntry
) -> bool:
    """Insert or replace the entry for ``entry.doc_id``.

    Returns:
        ``True`` if the mapping changed.
    """
    existing = entries_by_doc_id.get(entry.doc_id)
    if existing is not None and entries_equivalent(existing, entry):
        return False
    entries_by_doc_id[entry.doc_id] = entry
    return True


def manifest_assets_from_scanned(
    scanned: Iterable[_HashedAsset],
    existing: Iterable[ManifestAsset] = (),
) -> list[ManifestAsset]:
    """Build manifest asset records for scanned files.

    A known attachment id is carried over only when both the name and the
    hash still match the previous record.
    """
    existing_by_name = {asset.name: asset for asset in existing}
    records = []
    for asset in scanned:
        previous = existing_by_name.get(asset.name)
        asset_id = previous.id if previous and previous.hash == asset.hash else None
        records.append(ManifestAsset(id=asset_id, name=asset.name, hash=asset.hash))
    return records


def asset_files_from_manifest(entry: ManifestEntry) -> dict[str, str]:
    """Attachment id to filename for the assets of *entry* that have an id."""
    return {asset.id: asset.name for asset in entry.assets if asset.id}
