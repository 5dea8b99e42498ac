"""Document store contract consumed by the sync engine.

The live note collection is CRDT-backed and owned by the editor; the sync
engine only needs a narrow slice of it.  ``DocumentCollection`` is that
slice.  Content updates always go through ``apply_diff`` so the store can
record edits against its history rather than replacing the text outright.

``MemoryDocumentCollection`` is a reference implementation that keeps an
edit script per ``apply_diff`` call.  ``JsonDocumentCollection`` persists a
memory collection to a single JSON file and backs the command line tool.
"""

from __future__ import annotations

import base64
import difflib
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from notebackup.exceptions import CollectionUnavailableError
from notebackup.file_handler import read_file_with_encoding

logger = logging.getLogger(__name__)


def media_class(media_type: str) -> str:
    """Return the attachment class (``"video"`` or ``"image"``) for a media type."""
    return "video" if media_type.startswith("video/") else "image"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Attachment:
    """A binary attachment owned by a document."""

    id: str
    name: str
    data: bytes
    media_type: str
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def media_class(self) -> str:
        return media_class(self.media_type)


@dataclass
class StoredDocument:
    """A document as exposed by the store.

    Attributes:
        loaded: ``False`` when the store knows the document exists but has
            not loaded its content; the sync engine must not mutate it.
        history: Edit scripts recorded by ``apply_diff``, oldest first.
    """

    id: str
    content: str
    assets: list[Attachment] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    deleted_at: datetime | None = None
    loaded: bool = True
    history: list[list[tuple[str, int, int, str]]] = field(default_factory=list)


class DocumentCollection(Protocol):
    """The slice of the document store used by the sync engine."""

    @property
    def id(self) -> str | None: ...  # pragma: no cover

    def documents(self) -> list[StoredDocument]:
        """Return every document, raising ``CollectionUnavailableError``
        when the collection cannot be read."""
        ...  # pragma: no cover

    def find(self, doc_id: str) -> StoredDocument | None:
        """Return a loaded document, or ``None`` if absent or not loaded."""
        ...  # pragma: no cover

    def generate_id(self) -> str: ...  # pragma: no cover

    def create_document(
        self, content: str, attachments: Iterable[Attachment] = ()
    ) -> StoredDocument: ...  # pragma: no cover

    def apply_diff(self, doc_id: str, content: str) -> None:
        """Bring the content to *content* as an edit and bump ``updated_at``."""
        ...  # pragma: no cover

    def soft_delete(self, doc_id: str, at: datetime) -> None: ...  # pragma: no cover

    def add_attachment(
        self, doc_id: str, attachment: Attachment
    ) -> Attachment: ...  # pragma: no cover

    def update_attachment(
        self,
        doc_id: str,
        attachment_id: str,
        *,
        name: str | None = None,
        data: bytes | None = None,
        media_type: str | None = None,
    ) -> Attachment: ...  # pragma: no cover

    def remove_attachment(
        self, doc_id: str, attachment_id: str
    ) -> None: ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Diff application
# ---------------------------------------------------------------------------


def compute_edit_script(old: str, new: str) -> list[tuple[str, int, int, str]]:
    """Compute a line-level edit script turning *old* into *new*.

    Each step is ``(tag, start, end, replacement)`` over the old line list,
    where *tag* is ``"replace"``, ``"delete"`` or ``"insert"``.
    """
    old_lines = old.splitlines(keepends=True)
    new_lines = new.splitlines(keepends=True)
    matcher = difflib.SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)
    script = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        script.append((tag, i1, i2, "".join(new_lines[j1:j2])))
    return script


def apply_edit_script(old: str, script: list[tuple[str, int, int, str]]) -> str:
    """Apply an edit script produced by ``compute_edit_script``."""
    lines = old.splitlines(keepends=True)
    # Apply back to front so earlier offsets stay valid.
    for _tag, start, end, replacement in reversed(script):
        lines[start:end] = [replacement] if replacement else []
    return "".join(lines)


# ---------------------------------------------------------------------------
# In-memory collection
# ---------------------------------------------------------------------------


class MemoryDocumentCollection:
    """In-memory ``DocumentCollection``.

    Args:
        collection_id: Identifier of the collection; used for the manifest
            scope key.  ``None`` maps to the shared ``docs:unknown`` scope.
        id_factory: Callable producing new document/attachment ids.
        clock: Callable returning the current ``datetime``.
    """

    def __init__(
        self,
        collection_id: str | None = None,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._id = collection_id
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock or _utcnow
        self._documents: list[StoredDocument] = []
        self.available = True

    @property
    def id(self) -> str | None:
        return self._id

    def documents(self) -> list[StoredDocument]:
        if not self.available:
            raise CollectionUnavailableError(
                f"Document collection {self._id or '<unknown>'} is not available"
            )
        return list(self._documents)

    def live_documents(self) -> list[StoredDocument]:
        """Documents that are loaded and not soft-deleted."""
        return [
            doc
            for doc in self.documents()
            if doc.loaded and doc.deleted_at is None
        ]

    def find(self, doc_id: str) -> StoredDocument | None:
        for doc in self._documents:
            if doc.id == doc_id:
                return doc if doc.loaded else None
        return None

    def generate_id(self) -> str:
        return self._id_factory()

    def add_document(
        self,
        content: str,
        assets: Iterable[Attachment] = (),
        *,
        doc_id: str | None = None,
        loaded: bool = True,
    ) -> StoredDocument:
        """Insert a document directly (editor-side creation)."""
        now = self._clock()
        doc = StoredDocument(
            id=doc_id or self.generate_id(),
            content=content,
            assets=list(assets),
            created_at=now,
            updated_at=now,
            loaded=loaded,
        )
        self._documents.append(doc)
        return doc

    def create_document(
        self, content: str, attachments: Iterable[Attachment] = ()
    ) -> StoredDocument:
        doc = self.add_document(content, attachments)
        logger.debug("Created document %s", doc.id)
        return doc

    def _require(self, doc_id: str) -> StoredDocument:
        doc = self.find(doc_id)
        if doc is None:
            raise KeyError(f"Document {doc_id} is not loaded")
        return doc

    def apply_diff(self, doc_id: str, content: str) -> None:
        doc = self._require(doc_id)
        script = compute_edit_script(doc.content, content)
        doc.updated_at = self._clock()
        if not script:
            return
        doc.content = apply_edit_script(doc.content, script)
        doc.history.append(script)

    def soft_delete(self, doc_id: str, at: datetime) -> None:
        doc = self._require(doc_id)
        doc.deleted_at = at
        doc.updated_at = at

    def add_attachment(self, doc_id: str, attachment: Attachment) -> Attachment:
        doc = self._require(doc_id)
        doc.assets.append(attachment)
        return attachment

    def update_attachment(
        self,
        doc_id: str,
        attachment_id: str,
        *,
        name: str | None = None,
        data: bytes | None = None,
        media_type: str | None = None,
    ) -> Attachment:
        doc = self._require(doc_id)
        for attachment in doc.assets:
            if attachment.id != attachment_id:
                continue
            if name is not None:
                attachment.name = name
            if data is not None:
                attachment.data = data
            if media_type is not None:
                attachment.media_type = media_type
            return attachment
        raise KeyError(f"Attachment {attachment_id} not found on {doc_id}")

    def remove_attachment(self, doc_id: str, attachment_id: str) -> None:
        doc = self._require(doc_id)
        doc.assets = [a for a in doc.assets if a.id != attachment_id]


# ---------------------------------------------------------------------------
# JSON-file collection
# ---------------------------------------------------------------------------


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class JsonDocumentCollection(MemoryDocumentCollection):
    """A ``MemoryDocumentCollection`` persisted to one JSON file.

    Attachments are stored base64-encoded.  ``save()`` writes atomically
    (temp file + ``os.replace``).
    """

    def __init__(self, path: Path, collection_id: str | None = None) -> None:
        super().__init__(collection_id)
        self.path = path
        # Backup directory -> timestamps kept between runs.
        self.sync_state: dict[str, dict[str, float]] = {}

    @classmethod
    def load(cls, path: Path) -> JsonDocumentCollection:
        """Load a collection file; a missing file yields a new collection
        with a freshly generated id."""
        if not path.exists():
            collection = cls(path, uuid.uuid4().hex)
            logger.info("Starting new document store at %s", path)
            return collection

        try:
            text, _ = read_file_with_encoding(path)
            raw = json.loads(text)
        except (OSError, json.JSONDecodeError) as exc:
            raise CollectionUnavailableError(
                f"Cannot read document store {path}: {exc}"
            ) from exc

        try:
            return cls._from_dict(path, raw)
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise CollectionUnavailableError(
                f"Malformed document store {path}: {type(exc).__name__}: {exc}"
            ) from exc

    @classmethod
    def _from_dict(cls, path: Path, raw: dict) -> JsonDocumentCollection:
        collection = cls(path, raw.get("id"))
        collection.sync_state = {
            key: dict(value) for key, value in raw.get("syncState", {}).items()
        }
        for item in raw.get("documents", []):
            assets = [
                Attachment(
                    id=asset["id"],
                    name=asset["name"],
                    data=base64.b64decode(asset["data"], validate=True),
                    media_type=asset.get("mediaType", "image/png"),
                    created_at=_dt_from_str(asset.get("createdAt")) or _utcnow(),
                )
                for asset in item.get("assets", [])
            ]
            collection._documents.append(
                StoredDocument(
                    id=item["id"],
                    content=item.get("content", ""),
                    assets=assets,
                    created_at=_dt_from_str(item.get("createdAt")) or _utcnow(),
                    updated_at=_dt_from_str(item.get("updatedAt")) or _utcnow(),
                    deleted_at=_dt_from_str(item.get("deletedAt")),
                )
            )
        return collection

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "syncState": self.sync_state,
            "documents": [
                {
                    "id": doc.id,
                    "content": doc.content,
                    "createdAt": _dt_to_str(doc.created_at),
                    "updatedAt": _dt_to_str(doc.updated_at),
                    "deletedAt": _dt_to_str(doc.deleted_at),
                    "assets": [
                        {
                            "id": asset.id,
                            "name": asset.name,
                            "mediaType": asset.media_type,
                            "createdAt": _dt_to_str(asset.created_at),
                            "data": base64.b64encode(asset.data).decode("ascii"),
                        }
                        for asset in doc.assets
                    ],
                }
                for doc in self._documents
            ],
        }

    def save(self) -> None:
        """Persist the collection atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self.to_dict(), fh, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
