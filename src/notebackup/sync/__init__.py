"""Bidirectional backup sync engine.

Public API for mirroring a document collection into a plain directory of
markdown files (push) and reconciling edits made on disk back into the
collection (pull).

Architecture
------------
Files on disk carry no stable identifiers, so the engine keeps a
**manifest** at the backup root linking each document id to the path and
content hashes it was last synced with.  Push writes only what changed
since the manifest; pull matches files to documents by path first, then by
content hash (moved files), then by identical content (first-run adoption).

Modules:

- ``engine``     -- ``BackupEngine``: owns caches, runs push/pull/sync.
- ``push``       -- ``PushSynchronizer``: documents to files.
- ``pull``       -- ``PullSynchronizer``: files to documents.
- ``manifest``   -- ``ManifestStore`` plus hashing and entry comparison.
- ``scanner``    -- ``scan_backup_folder``: recursive directory walk.
- ``locations``  -- deterministic placement and collision handling.
- ``transform``  -- ``asset:<id>`` <-> ``assets/<file>`` rewriting.
- ``frontmatter``-- ``path:``/``title:`` frontmatter helpers.
- ``naming``     -- filename sanitizing and media types.
- ``caches``     -- ``ExpiringCache`` and the millisecond clock.
- ``models``     -- Pydantic data contracts.
- ``reporter``   -- human-readable and JSON report formatting.

Usage example
-------------
::

    from pathlib import Path

    from notebackup.handles import LocalDirectoryHandle
    from notebackup.store import JsonDocumentCollection
    from notebackup.sync import BackupEngine, format_pull_report

    collection = JsonDocumentCollection.load(Path("notes.json"))
    engine = BackupEngine(LocalDirectoryHandle(Path.home() / "Backup"), collection)

    pull_result, push_result = engine.sync()
    print(format_pull_report(pull_result))
    collection.save()
"""

from .caches import ExpiringCache
from .engine import BackupEngine, prepare_backup_doc
from .locations import compute_doc_locations, compute_expected_structure
from .manifest import MANIFEST_FILENAME, ManifestStore, hash_content
from .models import (
    BackupAsset,
    BackupDoc,
    BackupManifest,
    DocLocation,
    ManifestAsset,
    ManifestEntry,
    PullResult,
    PushResult,
    ScannedAsset,
    ScannedFile,
)
from .pull import PullSynchronizer
from .push import PushSynchronizer
from .reporter import format_pull_report, format_push_report, report_to_json
from .scanner import scan_backup_folder
from .transform import to_filesystem, to_internal

__all__ = [
    "BackupAsset",
    "BackupDoc",
    "BackupEngine",
    "BackupManifest",
    "DocLocation",
    "ExpiringCache",
    "MANIFEST_FILENAME",
    "ManifestAsset",
    "ManifestEntry",
    "ManifestStore",
    "PullResult",
    "PullSynchronizer",
    "PushResult",
    "PushSynchronizer",
    "ScannedAsset",
    "ScannedFile",
    "compute_doc_locations",
    "compute_expected_structure",
    "format_pull_report",
    "format_push_report",
    "hash_content",
    "prepare_backup_doc",
    "report_to_json",
    "scan_backup_folder",
    "to_filesystem",
    "to_internal",
]
