"""Pydantic models for the backup sync engine.

Defines the data contracts shared across the sync modules:

- ``BackupAsset`` / ``BackupDoc``: per-pass snapshot of a live document.
- ``DocLocation``: resolved on-disk placement of a document.
- ``ManifestAsset`` / ``ManifestEntry`` / ``BackupManifest``: the persisted
  sync state.  These serialize with camelCase aliases so the manifest file
  keeps its on-disk key names.
- ``ScannedAsset`` / ``ScannedFile``: per-pass snapshot of the backup tree.
- ``ExpectedStructure``: directories and files orphan cleanup must keep.
- ``PushResult`` / ``PullResult``: outcome of one pass.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

_MANIFEST_CONFIG = {
    "frozen": True,
    "alias_generator": to_camel,
    "populate_by_name": True,
}


# ---------------------------------------------------------------------------
# Push-side snapshots
# ---------------------------------------------------------------------------


class BackupAsset(BaseModel):
    """Binary attachment carried by a ``BackupDoc``."""

    id: str
    name: str
    data: bytes
    media_type: str = "image/png"

    model_config = {"frozen": True}


class BackupDoc(BaseModel):
    """Snapshot of a document prepared for writing to disk.

    Attributes:
        id: Document id in the live store.
        title: Display title (frontmatter ``title:`` or first body line).
        content: Markdown content in internal (``asset:<id>``) form.
        path: Logical folder from frontmatter ``path:``, if any.
        updated_at_ms: Last modification time in epoch milliseconds.
        assets: Attachments in document order.
    """

    id: str
    title: str
    content: str
    path: str | None = None
    updated_at_ms: int = 0
    assets: list[BackupAsset] = Field(default_factory=list)

    model_config = {"frozen": True}


class DocLocation(BaseModel):
    """Resolved placement of a document in the backup tree.

    Attributes:
        dir_path: Directory holding the markdown file (``""`` for the root).
        filename: Markdown filename including ``.md``.
        has_own_folder: The document lives in a folder named after it,
            next to an ``assets/`` subfolder.
        asset_files: Attachment id to filename inside ``assets/``.
    """

    dir_path: str
    filename: str
    has_own_folder: bool = False
    asset_files: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def relative_path(self) -> str:
        if self.dir_path:
            return f"{self.dir_path}/{self.filename}"
        return self.filename


class ExpectedStructure(BaseModel):
    """Everything orphan cleanup must leave in place.

    Attributes:
        expected_paths: Every directory (and ancestor) that holds a document
            or its ``assets/`` folder.
        expected_files: Markdown filenames expected per directory.
    """

    expected_paths: set[str] = Field(default_factory=set)
    expected_files: dict[str, set[str]] = Field(default_factory=dict)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class ManifestAsset(BaseModel):
    """Asset record inside a manifest entry.

    ``id`` is absent for assets imported from disk whose attachment id was
    not yet confirmed by a push.
    """

    id: str | None = None
    name: str
    hash: str

    model_config = _MANIFEST_CONFIG


class ManifestEntry(BaseModel):
    """Durable link between a document and its last-synced file.

    Attributes:
        doc_id: Document id.
        relative_path: Markdown file path from the backup root.
        scope_id: Scope key (``docs:<collection id>``); absent on legacy
            entries, which match every scope.
        location_key: ``title|path|assets`` key of the slot the file was
            written for.
        content_hash: Hash of the filesystem-form content.
        last_synced_at: ISO 8601 time of the last write or import.
        assets: Asset records for the document's ``assets/`` folder.
    """

    doc_id: str
    relative_path: str
    scope_id: str | None = None
    location_key: str | None = None
    content_hash: str
    last_synced_at: str
    assets: list[ManifestAsset]

    model_config = _MANIFEST_CONFIG


class BackupManifest(BaseModel):
    """The persisted manifest file."""

    version: Literal[1] = 1
    entries: list[ManifestEntry] = Field(default_factory=list)
    last_sync_at: str

    model_config = _MANIFEST_CONFIG


# ---------------------------------------------------------------------------
# Pull-side snapshots
# ---------------------------------------------------------------------------


class ScannedAsset(BaseModel):
    """A file found in the ``assets/`` folder next to a markdown file."""

    name: str
    data: bytes
    media_type: str
    hash: str

    model_config = {"frozen": True}


class ScannedFile(BaseModel):
    """A markdown file found in the backup tree.

    Attributes:
        name: Filename without the ``.md`` suffix.
        relative_path: ``/``-joined path from the backup root.
        content: Decoded markdown text.
        assets: Files of the sibling ``assets/`` folder.
        last_modified: Modification time in epoch milliseconds.
    """

    name: str
    relative_path: str
    content: str
    assets: list[ScannedAsset] = Field(default_factory=list)
    last_modified: float = 0

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PushResult(BaseModel):
    """Outcome of one push pass."""

    documents_written: int = 0
    assets_written: int = 0
    manifest_written: bool = False
    cleaned_up: int = 0

    model_config = {"frozen": True}

    @property
    def changed(self) -> bool:
        return bool(
            self.documents_written or self.manifest_written or self.cleaned_up
        )


class PullResult(BaseModel):
    """Outcome of one pull pass.

    ``errors`` holds one human-readable message per file that could not be
    processed; a non-empty list does not mean the pass failed as a whole.
    """

    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return not self.errors
