"""Push: write live documents into the backup tree.

A push pass:

1. Resolves a location for every document, preferring the path stored in
   the manifest (same location key) or an override recorded by pull.
2. Rewrites a document's markdown and assets only when its path, content
   hash or asset set changed, or when its files went missing on disk.
3. Removes files and folders no document owns any more (orphan cleanup).
4. Rewrites the manifest when anything changed.

Filesystem errors propagate; a failed pass is retried as a whole and the
hash comparisons make the retry cheap.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from notebackup.handles import DirectoryHandle

from .caches import (
    PATH_OVERRIDE_TTL_MS,
    Clock,
    ExpiringCache,
    iso_timestamp,
    system_clock,
)
from .locations import (
    ASSETS_DIR,
    assets_dir_path,
    claimed_slots,
    compute_doc_locations,
    compute_expected_structure,
    location_from_relative_path,
    location_key,
)
from .manifest import (
    UNKNOWN_SCOPE,
    ManifestStore,
    entry_matches_scope,
    hash_bytes,
    hash_content,
    manifest_assets_equal,
)
from .models import (
    BackupDoc,
    BackupManifest,
    DocLocation,
    ExpectedStructure,
    ManifestAsset,
    ManifestEntry,
    PushResult,
)
from .transform import to_filesystem

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIX = ".md"


class PushSynchronizer:
    """Mirror a set of documents into a backup directory.

    Args:
        handle: Root directory handle of the backup.
        path_overrides: Preferred relative path per document id, recorded by
            pull when it detects a moved or adopted file.
        clock: Millisecond clock.
    """

    def __init__(
        self,
        handle: DirectoryHandle,
        path_overrides: ExpiringCache[str, str] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.handle = handle
        self.clock = clock or system_clock
        self.path_overrides = (
            path_overrides
            if path_overrides is not None
            else ExpiringCache(ttl_ms=PATH_OVERRIDE_TTL_MS, clock=self.clock)
        )
        self.manifest_store = ManifestStore(handle)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(
        self, docs: Sequence[BackupDoc], scope_id: str = UNKNOWN_SCOPE
    ) -> PushResult:
        """Push *docs* into the backup.

        Args:
            docs: Every live document of the scope, in display order.
            scope_id: Manifest scope the documents belong to.

        Returns:
            A ``PushResult`` with write counts.
        """
        manifest = self.manifest_store.read()
        entries = manifest.entries if manifest else []
        scope_entries = [e for e in entries if entry_matches_scope(e, scope_id)]
        foreign_entries = [
            e for e in entries if not entry_matches_scope(e, scope_id)
        ]
        existing_by_doc_id = {e.doc_id: e for e in scope_entries}

        # Paths kept from the manifest or an override are claimed first so a
        # freshly placed document cannot land on top of them.
        kept_paths: dict[str, str] = {}
        for doc in docs:
            kept = self._kept_path(doc, existing_by_doc_id.get(doc.id))
            if kept:
                kept_paths[doc.id] = kept
        locations = compute_doc_locations(
            docs,
            claimed=claimed_slots(
                (doc.id, kept_paths[doc.id], bool(doc.assets))
                for doc in docs
                if doc.id in kept_paths
            ),
        )

        now_iso = iso_timestamp(self.clock())
        next_entries: list[ManifestEntry] = []
        documents_written = 0
        assets_written = 0

        for doc in docs:
            existing = existing_by_doc_id.get(doc.id)
            key = location_key(doc)
            location = locations[doc.id]
            if doc.id in kept_paths:
                location = location_from_relative_path(location, kept_paths[doc.id])
                locations[doc.id] = location

            exported = to_filesystem(doc.content, location.asset_files)
            content_hash = hash_content(exported)
            assets = [
                ManifestAsset(
                    id=asset.id,
                    name=location.asset_files[asset.id],
                    hash=hash_bytes(asset.data),
                )
                for asset in doc.assets
            ]

            should_write = (
                existing is None
                or existing.relative_path != location.relative_path
                or existing.content_hash != content_hash
                or not manifest_assets_equal(existing.assets, assets)
            )
            if not should_write and not self._present_on_disk(doc, location):
                logger.info(
                    "%s is missing on disk, rewriting", location.relative_path
                )
                should_write = True

            if should_write:
                assets_written += self._write_document(doc, location, exported)
                documents_written += 1

            if should_write or existing is None:
                last_synced_at = now_iso
            else:
                last_synced_at = existing.last_synced_at

            next_entries.append(
                ManifestEntry(
                    doc_id=doc.id,
                    relative_path=location.relative_path,
                    scope_id=scope_id,
                    location_key=key,
                    content_hash=content_hash,
                    last_synced_at=last_synced_at,
                    assets=assets,
                )
            )

        # A scope with fewer documents than entries is only partially
        # loaded: keep the missing entries and leave their files alone.
        doc_ids = {doc.id for doc in docs}
        preserve_missing = (
            scope_id != UNKNOWN_SCOPE and len(docs) < len(existing_by_doc_id)
        )
        preserved = (
            [e for e in scope_entries if e.doc_id not in doc_ids]
            if preserve_missing
            else []
        )
        next_scope_entries = next_entries + preserved

        docs_changed = (
            len(scope_entries) != len(next_scope_entries) or documents_written > 0
        )
        cleaned_up = 0
        if docs_changed:
            if not foreign_entries and not preserve_missing:
                cleaned_up = self._cleanup_orphans(docs, locations)
            elif foreign_entries:
                logger.debug(
                    "Skipping orphan cleanup: %d entries belong to other scopes",
                    len(foreign_entries),
                )
            self.manifest_store.write(
                BackupManifest(
                    version=1,
                    entries=next_scope_entries + foreign_entries,
                    last_sync_at=now_iso,
                )
            )

        for doc in docs:
            self.path_overrides.delete(doc.id)

        result = PushResult(
            documents_written=documents_written,
            assets_written=assets_written,
            manifest_written=docs_changed,
            cleaned_up=cleaned_up,
        )
        logger.info(
            "Push complete: %d documents, %d assets written, %d orphans removed",
            documents_written,
            assets_written,
            cleaned_up,
        )
        return result

    # ------------------------------------------------------------------
    # Per-document helpers
    # ------------------------------------------------------------------

    def _kept_path(
        self, doc: BackupDoc, existing: ManifestEntry | None
    ) -> str | None:
        """Return the path a document keeps instead of its computed one.

        A pull override wins; otherwise the manifest path is kept while the
        document's location key is unchanged.
        """
        preferred = self.path_overrides.get(doc.id)
        if preferred:
            return preferred
        if existing is not None and existing.location_key == location_key(doc):
            return existing.relative_path
        return None

    def _find_directory(self, path: str) -> DirectoryHandle | None:
        current = self.handle
        for part in (p for p in path.split("/") if p):
            try:
                current = current.get_directory_handle(part)
            except (FileNotFoundError, NotADirectoryError):
                return None
        return current

    def _ensure_directory(self, path: str) -> DirectoryHandle:
        current = self.handle
        for part in (p for p in path.split("/") if p):
            current = current.get_directory_handle(part, create=True)
        return current

    def _present_on_disk(self, doc: BackupDoc, location: DocLocation) -> bool:
        directory = self._find_directory(location.dir_path)
        if directory is None:
            return False
        try:
            directory.get_file_handle(location.filename)
        except (FileNotFoundError, IsADirectoryError):
            return False
        if not doc.assets:
            return True

        try:
            assets_dir = directory.get_directory_handle(ASSETS_DIR)
        except (FileNotFoundError, NotADirectoryError):
            return False
        for asset in doc.assets:
            filename = location.asset_files.get(asset.id)
            if filename is None:
                return False
            try:
                assets_dir.get_file_handle(filename)
            except (FileNotFoundError, IsADirectoryError):
                return False
        return True

    def _write_document(
        self, doc: BackupDoc, location: DocLocation, content: str
    ) -> int:
        directory = self._ensure_directory(location.dir_path)
        directory.get_file_handle(location.filename, create=True).write(content)
        logger.debug("Wrote %s", location.relative_path)

        if not doc.assets:
            return 0
        assets_dir = directory.get_directory_handle(ASSETS_DIR, create=True)
        for asset in doc.assets:
            filename = location.asset_files[asset.id]
            assets_dir.get_file_handle(filename, create=True).write(asset.data)
        return len(doc.assets)

    # ------------------------------------------------------------------
    # Orphan cleanup
    # ------------------------------------------------------------------

    def _cleanup_orphans(
        self, docs: Sequence[BackupDoc], locations: dict[str, DocLocation]
    ) -> int:
        structure = compute_expected_structure(docs, locations)
        expected_assets = {
            assets_dir_path(location): set(location.asset_files.values())
            for location in (locations[doc.id] for doc in docs)
            if location.has_own_folder
        }
        return self._clean_dir(self.handle, "", structure, expected_assets)

    def _clean_dir(
        self,
        directory: DirectoryHandle,
        path: str,
        structure: ExpectedStructure,
        expected_assets: dict[str, set[str]],
    ) -> int:
        removed = 0
        expected_files = structure.expected_files.get(path, set())

        for name, child in directory.entries():
            if name.startswith("."):
                continue
            child_path = f"{path}/{name}" if path else name

            if child.kind == "directory":
                if child_path not in structure.expected_paths:
                    directory.remove_entry(name, recursive=True)
                    logger.info("Removed orphaned folder %s", child_path)
                    removed += 1
                elif name == ASSETS_DIR:
                    removed += self._clean_assets_dir(
                        child, child_path, expected_assets.get(child_path, set())
                    )
                else:
                    removed += self._clean_dir(
                        child, child_path, structure, expected_assets
                    )
                continue

            if name.endswith(MARKDOWN_SUFFIX) and name not in expected_files:
                directory.remove_entry(name)
                logger.info("Removed orphaned file %s", child_path)
                removed += 1

        return removed

    def _clean_assets_dir(
        self, directory: DirectoryHandle, path: str, expected: set[str]
    ) -> int:
        removed = 0
        for name, child in directory.entries():
            if name.startswith("."):
                continue
            if child.kind == "directory":
                directory.remove_entry(name, recursive=True)
            elif name in expected:
                continue
            else:
                directory.remove_entry(name)
            logger.info("Removed orphaned asset %s/%s", path, name)
            removed += 1
        return removed
