"""Pull: reconcile the backup tree into the document collection.

Every scanned markdown file is processed on its own:

1. Exact manifest match by relative path.  Files untouched since the last
   pull are skipped.
2. Otherwise a moved-file search: an unmatched entry whose file vanished
   and whose content and asset hashes equal this file's.
3. Otherwise, for asset-free files, adoption of an untracked document with
   identical content.
4. Otherwise a new document is created.
5. Matched files that differ from their entry update the document through
   ``apply_diff``, reconciling attachments along the way.

Entries of the scope whose file was not seen at all soft-delete their
document.  Failures are collected per file in ``PullResult.errors``; only
an unreadable collection aborts the pass.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from notebackup.exceptions import CollectionUnavailableError
from notebackup.handles import DEFAULT_MEDIA_TYPE, DirectoryHandle
from notebackup.store import Attachment, DocumentCollection, StoredDocument

from .caches import (
    PATH_OVERRIDE_TTL_MS,
    RECENT_IMPORT_WINDOW_MS,
    Clock,
    ExpiringCache,
    iso_timestamp,
    system_clock,
    to_datetime,
)
from .frontmatter import apply_path_from_relative_path
from .manifest import (
    ManifestStore,
    asset_files_from_manifest,
    entries_changed,
    entry_matches_scope,
    hash_content,
    manifest_assets_from_scanned,
    scanned_assets_in_sync,
    scope_key,
    upsert_entry,
)
from .models import (
    BackupManifest,
    ManifestEntry,
    PullResult,
    ScannedAsset,
    ScannedFile,
)
from .naming import media_class, remove_extension
from .scanner import scan_backup_folder
from .transform import to_internal

logger = logging.getLogger(__name__)


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _basename(relative_path: str) -> str:
    parts = [part for part in relative_path.split("/") if part]
    return parts[-1] if parts else relative_path


@dataclass
class _PullPass:
    """Mutable state of one pull pass."""

    collection: DocumentCollection
    scope_id: str
    can_write: bool
    scope_entries: list[ManifestEntry]
    foreign_entries: list[ManifestEntry]
    scanned_paths: set[str]
    unreadable_dirs: tuple[str, ...]
    next_by_doc_id: dict[str, ManifestEntry]
    matched_doc_ids: set[str] = field(default_factory=set)
    manifest_changed: bool = False
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def upsert(self, entry: ManifestEntry) -> None:
        if upsert_entry(self.next_by_doc_id, entry):
            self.manifest_changed = True

    def fail(self, message: str) -> None:
        logger.error(message)
        self.errors.append(message)

    def seen(self, relative_path: str) -> bool:
        """Whether the path was found on disk, readable or not."""
        return relative_path in self.scanned_paths or relative_path.startswith(
            self.unreadable_dirs
        )


class PullSynchronizer:
    """Apply changes found in a backup directory to a document collection.

    Args:
        handle: Root directory handle of the backup.
        path_overrides: Shared with push; pull records the path of moved,
            adopted and created files here.
        recent_imports: De-dup window for documents created by pull, keyed
            by ``"{scope}:{relative_path}"``.
        clock: Millisecond clock.
    """

    def __init__(
        self,
        handle: DirectoryHandle,
        path_overrides: ExpiringCache[str, str] | None = None,
        recent_imports: ExpiringCache[str, float] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.handle = handle
        self.clock = clock or system_clock
        self.path_overrides = (
            path_overrides
            if path_overrides is not None
            else ExpiringCache(ttl_ms=PATH_OVERRIDE_TTL_MS, clock=self.clock)
        )
        self.recent_imports = (
            recent_imports
            if recent_imports is not None
            else ExpiringCache(ttl_ms=RECENT_IMPORT_WINDOW_MS, clock=self.clock)
        )
        self.manifest_store = ManifestStore(handle)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(
        self,
        collection: DocumentCollection,
        can_write: bool = True,
        last_pull_at_ms: float | None = None,
        scope_id: str | None = None,
    ) -> PullResult:
        """Pull the backup into *collection*.

        Args:
            collection: Target document collection.
            can_write: Whether the caller may mutate the collection.
            last_pull_at_ms: Files last modified before this time and
                unchanged since the manifest was written are skipped.
            scope_id: Manifest scope; defaults to the collection's key.

        Returns:
            A ``PullResult`` with counts and per-file error messages.

        Raises:
            CollectionUnavailableError: If the collection cannot be read.
        """
        collection.documents()  # raises CollectionUnavailableError
        scope = scope_id or scope_key(collection.id)

        manifest = self.manifest_store.read()
        entries = manifest.entries if manifest else []
        failures: list[tuple[str, OSError]] = []
        try:
            scanned_files = scan_backup_folder(self.handle, failures)
        except OSError as exc:
            message = f"Failed to scan backup folder: {_error_text(exc)}"
            logger.error(message)
            return PullResult(errors=[message])

        unreadable = [path for path, _ in failures]
        scope_entries = [e for e in entries if entry_matches_scope(e, scope)]
        state = _PullPass(
            collection=collection,
            scope_id=scope,
            can_write=can_write,
            scope_entries=scope_entries,
            foreign_entries=[
                e for e in entries if not entry_matches_scope(e, scope)
            ],
            scanned_paths={f.relative_path for f in scanned_files} | set(unreadable),
            unreadable_dirs=tuple(f"{path}/" for path in unreadable),
            next_by_doc_id={e.doc_id: e for e in scope_entries},
        )
        entries_by_path = {e.relative_path: e for e in scope_entries}
        for path, exc in failures:
            state.fail(f"Failed to process {path}: {_error_text(exc)}")

        for scanned in scanned_files:
            try:
                self._process_file(state, scanned, entries_by_path, last_pull_at_ms)
            except CollectionUnavailableError:
                raise
            except Exception as exc:
                state.fail(
                    f"Failed to process {scanned.relative_path}: {_error_text(exc)}"
                )

        if state.scope_entries and can_write:
            self._delete_missing(state)

        next_scope_entries = list(state.next_by_doc_id.values())
        if state.manifest_changed or entries_changed(
            state.scope_entries, next_scope_entries
        ):
            self.manifest_store.write(
                BackupManifest(
                    version=1,
                    entries=next_scope_entries + state.foreign_entries,
                    last_sync_at=iso_timestamp(self.clock()),
                )
            )

        result = PullResult(
            created=state.created,
            updated=state.updated,
            deleted=state.deleted,
            errors=state.errors,
        )
        logger.info(
            "Pull complete: %d created, %d updated, %d deleted, %d errors",
            result.created,
            result.updated,
            result.deleted,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Per-file reconciliation
    # ------------------------------------------------------------------

    def _process_file(
        self,
        state: _PullPass,
        scanned: ScannedFile,
        entries_by_path: dict[str, ManifestEntry],
        last_pull_at_ms: float | None,
    ) -> None:
        content_hash = hash_content(scanned.content)
        entry = entries_by_path.get(scanned.relative_path)
        assets_in_sync = False

        if entry is not None:
            state.matched_doc_ids.add(entry.doc_id)
            assets_in_sync = scanned_assets_in_sync(entry.assets, scanned.assets)
            unchanged = (
                entry.content_hash == content_hash
                and entry.relative_path == scanned.relative_path
                and assets_in_sync
            )
            if (
                unchanged
                and last_pull_at_ms is not None
                and scanned.last_modified < last_pull_at_ms
            ):
                return
        else:
            entry = self._find_moved_entry(state, scanned, content_hash)
            if entry is not None:
                logger.info(
                    "Detected move %s -> %s", entry.relative_path, scanned.relative_path
                )
                state.matched_doc_ids.add(entry.doc_id)
                assets_in_sync = scanned_assets_in_sync(entry.assets, scanned.assets)

        if entry is None:
            self._import_untracked(state, scanned, content_hash)
            return

        if (
            entry.content_hash != content_hash
            or entry.relative_path != scanned.relative_path
            or not assets_in_sync
        ):
            self._update_tracked(state, scanned, entry, content_hash)
            return

        state.upsert(
            ManifestEntry(
                doc_id=entry.doc_id,
                relative_path=scanned.relative_path,
                scope_id=state.scope_id,
                location_key=entry.location_key,
                content_hash=content_hash,
                last_synced_at=entry.last_synced_at,
                assets=manifest_assets_from_scanned(scanned.assets, entry.assets),
            )
        )

    def _import_untracked(
        self, state: _PullPass, scanned: ScannedFile, content_hash: str
    ) -> None:
        now_iso = iso_timestamp(self.clock())
        adopted_id = self._find_matching_untracked(state.collection, scanned)
        if adopted_id is not None:
            logger.info("Adopted %s for %s", adopted_id, scanned.relative_path)
            state.upsert(
                ManifestEntry(
                    doc_id=adopted_id,
                    relative_path=scanned.relative_path,
                    scope_id=state.scope_id,
                    content_hash=content_hash,
                    last_synced_at=now_iso,
                    assets=manifest_assets_from_scanned(scanned.assets),
                )
            )
            self.path_overrides.set(adopted_id, scanned.relative_path)
            return

        if not state.can_write:
            state.fail(f"Cannot create {scanned.name}: no write permission")
            return

        import_key = f"{state.scope_id}:{scanned.relative_path}"
        if self.recent_imports.get(import_key) is not None:
            logger.debug("Skipping %s: imported moments ago", scanned.relative_path)
            return

        doc_id = self._create_document(state.collection, scanned)
        state.upsert(
            ManifestEntry(
                doc_id=doc_id,
                relative_path=scanned.relative_path,
                scope_id=state.scope_id,
                content_hash=content_hash,
                last_synced_at=now_iso,
                assets=manifest_assets_from_scanned(scanned.assets),
            )
        )
        self.path_overrides.set(doc_id, scanned.relative_path)
        self.recent_imports.set(import_key, self.clock())
        state.created += 1
        logger.info("Created document %s from %s", doc_id, scanned.relative_path)

    def _update_tracked(
        self,
        state: _PullPass,
        scanned: ScannedFile,
        entry: ManifestEntry,
        content_hash: str,
    ) -> None:
        self.path_overrides.set(entry.doc_id, scanned.relative_path)
        if not state.can_write:
            state.fail(f"Cannot update {scanned.name}: no write permission")
            return

        doc = state.collection.find(entry.doc_id)
        if doc is None:
            state.fail(
                f"Skipped update for {scanned.relative_path}: "
                "target document not loaded"
            )
            return

        asset_files = self._sync_attachments(state.collection, doc, scanned, entry)
        # Kept attachments still place the document in its own folder.
        content = apply_path_from_relative_path(
            to_internal(scanned.content, asset_files),
            scanned.relative_path,
            bool(scanned.assets or asset_files),
        )
        state.collection.apply_diff(doc.id, content)

        state.upsert(
            ManifestEntry(
                doc_id=entry.doc_id,
                relative_path=scanned.relative_path,
                scope_id=state.scope_id,
                location_key=entry.location_key,
                content_hash=content_hash,
                last_synced_at=iso_timestamp(self.clock()),
                assets=manifest_assets_from_scanned(scanned.assets, entry.assets),
            )
        )
        state.updated += 1
        logger.info("Updated document %s from %s", doc.id, scanned.relative_path)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _find_moved_entry(
        self, state: _PullPass, scanned: ScannedFile, content_hash: str
    ) -> ManifestEntry | None:
        candidates = [
            entry
            for entry in state.scope_entries
            if entry.doc_id not in state.matched_doc_ids
            and not state.seen(entry.relative_path)
            and entry.content_hash == content_hash
            and scanned_assets_in_sync(entry.assets, scanned.assets)
        ]
        if len(candidates) == 1:
            return candidates[0]
        if not candidates:
            return None

        basename = _basename(scanned.relative_path)
        same_name = [e for e in candidates if _basename(e.relative_path) == basename]
        if len(same_name) == 1:
            return same_name[0]
        logger.warning(
            "%d documents match %s by content; treating it as new",
            len(candidates),
            scanned.relative_path,
        )
        return None

    def _find_matching_untracked(
        self, collection: DocumentCollection, scanned: ScannedFile
    ) -> str | None:
        if scanned.assets:
            return None
        expected = apply_path_from_relative_path(
            scanned.content, scanned.relative_path, False
        )
        for doc in collection.documents():
            if not doc.loaded or doc.deleted_at is not None or doc.assets:
                continue
            if doc.content == expected:
                return doc.id
        return None

    # ------------------------------------------------------------------
    # Document and attachment mutations
    # ------------------------------------------------------------------

    def _new_attachment(
        self,
        collection: DocumentCollection,
        asset: ScannedAsset,
        created_at: datetime | None = None,
    ) -> Attachment:
        return Attachment(
            id=collection.generate_id(),
            name=remove_extension(asset.name),
            data=asset.data,
            media_type=asset.media_type,
            created_at=created_at or to_datetime(self.clock()),
        )

    def _create_document(
        self, collection: DocumentCollection, scanned: ScannedFile
    ) -> str:
        attachments = []
        asset_files: dict[str, str] = {}
        for asset in scanned.assets:
            attachment = self._new_attachment(collection, asset)
            attachments.append(attachment)
            asset_files[attachment.id] = asset.name

        content = apply_path_from_relative_path(
            to_internal(scanned.content, asset_files),
            scanned.relative_path,
            bool(scanned.assets),
        )
        return collection.create_document(content, attachments).id

    def _sync_attachments(
        self,
        collection: DocumentCollection,
        doc: StoredDocument,
        scanned: ScannedFile,
        entry: ManifestEntry,
    ) -> dict[str, str]:
        """Reconcile the attachments of *doc* with the scanned asset files.

        Returns:
            Attachment id to filename for rewriting references.
        """
        if not scanned.assets:
            manifest_files = asset_files_from_manifest(entry)
            # The folder may be gone while the content still points at it.
            if any(
                f"assets/{filename}" in scanned.content
                for filename in manifest_files.values()
            ):
                return manifest_files
            for attachment in list(doc.assets):
                collection.remove_attachment(doc.id, attachment.id)
            return {}

        assets_by_id = {attachment.id: attachment for attachment in doc.assets}
        manifest_by_name = {asset.name: asset for asset in entry.assets}
        manifest_by_hash = defaultdict(list)
        for asset in entry.assets:
            manifest_by_hash[asset.hash].append(asset)

        keep: set[str] = set()
        asset_files: dict[str, str] = {}

        for asset in scanned.assets:
            by_name = manifest_by_name.get(asset.name)
            matched_id = None
            if by_name is not None and by_name.id in assets_by_id:
                matched_id = by_name.id
            if matched_id is None:
                for candidate in manifest_by_hash.get(asset.hash, []):
                    if candidate.id and candidate.id not in keep and (
                        candidate.id in assets_by_id
                    ):
                        matched_id = candidate.id
                        break

            if matched_id is None:
                attachment = self._new_attachment(collection, asset)
                collection.add_attachment(doc.id, attachment)
                keep.add(attachment.id)
                asset_files[attachment.id] = asset.name
                continue

            if (
                by_name is not None
                and by_name.id == matched_id
                and by_name.hash != asset.hash
            ):
                matched_id = self._replace_binary(
                    collection, doc, assets_by_id[matched_id], asset
                )

            current = next((a for a in doc.assets if a.id == matched_id), None)
            if current is None:
                continue
            assets_by_id[matched_id] = current
            stem = remove_extension(asset.name)
            if current.name != stem:
                collection.update_attachment(doc.id, matched_id, name=stem)
            keep.add(matched_id)
            asset_files[matched_id] = asset.name

        for attachment in list(doc.assets):
            if attachment.id not in keep:
                collection.remove_attachment(doc.id, attachment.id)

        return asset_files

    def _replace_binary(
        self,
        collection: DocumentCollection,
        doc: StoredDocument,
        existing: Attachment,
        asset: ScannedAsset,
    ) -> str:
        media_type = asset.media_type if asset.media_type != DEFAULT_MEDIA_TYPE else None
        if media_class(media_type or existing.media_type) != existing.media_class:
            # An attachment cannot change between image and video in place.
            collection.remove_attachment(doc.id, existing.id)
            replacement = self._new_attachment(
                collection, asset, created_at=existing.created_at
            )
            collection.add_attachment(doc.id, replacement)
            return replacement.id

        collection.update_attachment(
            doc.id,
            existing.id,
            name=remove_extension(asset.name),
            data=asset.data,
            media_type=media_type,
        )
        return existing.id

    # ------------------------------------------------------------------
    # Deletion pass
    # ------------------------------------------------------------------

    def _delete_missing(self, state: _PullPass) -> None:
        now = to_datetime(self.clock())
        for entry in state.scope_entries:
            if entry.doc_id in state.matched_doc_ids:
                continue
            if state.seen(entry.relative_path):
                continue
            try:
                doc = state.collection.find(entry.doc_id)
                if doc is not None and doc.deleted_at is None:
                    state.collection.soft_delete(doc.id, now)
                    state.deleted += 1
                    logger.info(
                        "Deleted document %s (%s removed from disk)",
                        doc.id,
                        entry.relative_path,
                    )
                state.next_by_doc_id.pop(entry.doc_id, None)
                state.manifest_changed = True
            except Exception as exc:
                state.fail(
                    f"Failed to delete {entry.relative_path}: {_error_text(exc)}"
                )
