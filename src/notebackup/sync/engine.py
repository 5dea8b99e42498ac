"""Backup engine: push, pull and sync for one collection and directory.

The ``BackupEngine`` owns the two process-local caches shared between
passes (preferred relative paths and the recent-import window) and the
timestamps of the last push and pull.  It:

1. Prepares ``BackupDoc`` snapshots from the live documents (push).
2. Runs the push synchronizer against the backup directory.
3. Runs the pull synchronizer, defaulting the skip cutoff to the start of
   the previous pull.
4. Runs pull then push for a bidirectional ``sync()``.

The timestamps can be exported with ``sync_state()`` and fed back through
``restore_sync_state()`` so a later process keeps the pull cutoff.

Push and pull must not run concurrently against the same directory.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from notebackup.handles import DirectoryHandle
from notebackup.store import DocumentCollection, StoredDocument

from .caches import (
    PATH_OVERRIDE_TTL_MS,
    RECENT_IMPORT_WINDOW_MS,
    Clock,
    ExpiringCache,
    iso_timestamp,
    system_clock,
)
from .frontmatter import document_title, get_path
from .manifest import scope_key
from .models import BackupAsset, BackupDoc, PullResult, PushResult
from .pull import PullSynchronizer
from .push import PushSynchronizer

logger = logging.getLogger(__name__)

def prepare_backup_doc(document: StoredDocument) -> BackupDoc:
    """Snapshot a stored document for writing to disk."""
    return BackupDoc(
        id=document.id,
        title=document_title(document.content),
        content=document.content,
        path=get_path(document.content),
        updated_at_ms=int(document.updated_at.timestamp() * 1000),
        assets=[
            BackupAsset(
                id=attachment.id,
                name=attachment.name,
                data=attachment.data,
                media_type=attachment.media_type,
            )
            for attachment in document.assets
        ],
    )


class BackupEngine:
    """Keep a document collection and a backup directory in step.

    Args:
        handle: Root directory handle of the backup.
        collection: The document collection to back up.
        scope_id: Manifest scope; defaults to ``docs:<collection id>``.
        can_write: Whether pull may mutate the collection.
        bidirectional: Whether ``sync()`` pulls before pushing.
        clock: Millisecond clock shared with the caches.
        recent_import_window_ms: How long a pulled-in file is protected
            from being imported again.
        path_override_ttl_ms: How long a preferred path recorded by pull
            stays usable by a later push.
        max_path_overrides: Size bound of both caches.
    """

    def __init__(
        self,
        handle: DirectoryHandle,
        collection: DocumentCollection,
        *,
        scope_id: str | None = None,
        can_write: bool = True,
        bidirectional: bool = True,
        clock: Clock | None = None,
        recent_import_window_ms: int = RECENT_IMPORT_WINDOW_MS,
        path_override_ttl_ms: int = PATH_OVERRIDE_TTL_MS,
        max_path_overrides: int = 1024,
    ) -> None:
        self.handle = handle
        self.collection = collection
        self.scope_id = scope_id or scope_key(collection.id)
        self.can_write = can_write
        self.bidirectional = bidirectional
        self.clock = clock or system_clock

        self.path_overrides: ExpiringCache[str, str] = ExpiringCache(
            max_entries=max_path_overrides,
            ttl_ms=path_override_ttl_ms,
            clock=self.clock,
        )
        self.recent_imports: ExpiringCache[str, float] = ExpiringCache(
            max_entries=max_path_overrides,
            ttl_ms=recent_import_window_ms,
            clock=self.clock,
        )
        self.last_push_at: str | None = None
        self.last_pull_at: str | None = None
        self._last_push_ms: float | None = None
        self._last_pull_started_ms: float | None = None

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def push(self) -> PushResult:
        """Write every live document of the collection to the backup."""
        docs = [
            prepare_backup_doc(document)
            for document in self.collection.documents()
            if document.loaded and document.deleted_at is None
        ]
        logger.info("Pushing %d documents to %s", len(docs), self.handle.name)
        synchronizer = PushSynchronizer(
            self.handle, path_overrides=self.path_overrides, clock=self.clock
        )
        result = synchronizer.run(docs, self.scope_id)
        self._last_push_ms = self.clock()
        self.last_push_at = iso_timestamp(self._last_push_ms)
        return result

    def pull(self, last_pull_at_ms: float | None = None) -> PullResult:
        """Apply changes from the backup to the collection.

        Args:
            last_pull_at_ms: Skip cutoff; defaults to when the previous
                pull of this engine started.
        """
        started_ms = self.clock()
        cutoff = (
            last_pull_at_ms
            if last_pull_at_ms is not None
            else self._last_pull_started_ms
        )
        logger.info("Pulling from %s", self.handle.name)
        synchronizer = PullSynchronizer(
            self.handle,
            path_overrides=self.path_overrides,
            recent_imports=self.recent_imports,
            clock=self.clock,
        )
        result = synchronizer.run(
            self.collection,
            can_write=self.can_write,
            last_pull_at_ms=cutoff,
            scope_id=self.scope_id,
        )
        self._last_pull_started_ms = started_ms
        self.last_pull_at = iso_timestamp(started_ms)
        return result

    def sync(self) -> tuple[PullResult | None, PushResult]:
        """Pull (when bidirectional) then push.

        Returns:
            ``(pull_result, push_result)``; ``pull_result`` is ``None`` for
            a push-only engine.
        """
        pull_result = self.pull() if self.bidirectional else None
        push_result = self.push()
        return pull_result, push_result

    # ------------------------------------------------------------------
    # Persisted state
    # ------------------------------------------------------------------

    def sync_state(self) -> dict[str, float]:
        """Timestamps to carry over to the next engine for this directory."""
        state = {}
        if self._last_push_ms is not None:
            state["lastPushAt"] = self._last_push_ms
        if self._last_pull_started_ms is not None:
            state["lastPullAt"] = self._last_pull_started_ms
        return state

    def restore_sync_state(self, state: Mapping[str, float]) -> None:
        """Resume from ``sync_state()`` saved by an earlier run.

        The restored ``lastPullAt`` becomes the default skip cutoff of the
        next pull, so files untouched since then are not re-read.
        """
        last_push = state.get("lastPushAt")
        if last_push is not None:
            self._last_push_ms = float(last_push)
            self.last_push_at = iso_timestamp(self._last_push_ms)
        last_pull = state.get("lastPullAt")
        if last_pull is not None:
            self._last_pull_started_ms = float(last_pull)
            self.last_pull_at = iso_timestamp(self._last_pull_started_ms)
