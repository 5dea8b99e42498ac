"""Deterministic placement of documents in the backup tree.

Layout rules:

- No assets, no path: ``{title}.md`` at the root.
- No assets, with path: ``{path}/{title}.md``.
- Assets, no path: ``{title}/{title}.md`` plus ``{title}/assets/``.
- Assets, with path: ``{path}/{title}/{title}.md`` plus
  ``{path}/{title}/assets/``.

Titles that collide (case-insensitively) under the same parent path are
disambiguated with the last eight characters of the document id.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .models import BackupDoc, DocLocation, ExpectedStructure
from .naming import extension_for_media_type, sanitize_filename

ASSETS_DIR = "assets"


def location_key(doc: BackupDoc) -> str:
    """Identity of the slot a document occupies: ``title|path|assets``."""
    has_assets = "assets" if doc.assets else "no-assets"
    return f"{doc.title}|{doc.path or ''}|{has_assets}"


def compute_doc_locations(
    docs: Iterable[BackupDoc],
    claimed: Mapping[str, Mapping[str, str]] | None = None,
) -> dict[str, DocLocation]:
    """Assign a ``DocLocation`` to every document, in input order.

    Args:
        docs: Documents to place.  Earlier documents win the bare title
            when names collide.
        claimed: Slots already held by other documents, as returned by
            ``claimed_slots``.  A document never collides with its own claim.

    Returns:
        Mapping of document id to its location.
    """
    locations: dict[str, DocLocation] = {}
    used_names: dict[str, set[str]] = {}

    for doc in docs:
        base_name = sanitize_filename(doc.title)
        parent_path = doc.path or ""
        used = used_names.setdefault(parent_path, set())
        owners = claimed.get(parent_path, {}) if claimed else {}

        doc_name = base_name
        owner = owners.get(doc_name.lower())
        if doc_name.lower() in used or (owner is not None and owner != doc.id):
            doc_name = f"{base_name} ({doc.id[-8:]})"
        used.add(doc_name.lower())

        if doc.assets:
            dir_path = f"{parent_path}/{doc_name}" if parent_path else doc_name
            has_own_folder = True
        else:
            dir_path = parent_path
            has_own_folder = False

        asset_files: dict[str, str] = {}
        used_asset_names: set[str] = set()
        for asset in doc.assets:
            ext = extension_for_media_type(asset.media_type)
            asset_base = sanitize_filename(asset.name, fallback="image")
            filename = asset_base + ext
            counter = 1
            while filename.lower() in used_asset_names:
                filename = f"{asset_base}-{counter}{ext}"
                counter += 1
            used_asset_names.add(filename.lower())
            asset_files[asset.id] = filename

        locations[doc.id] = DocLocation(
            dir_path=dir_path,
            filename=f"{doc_name}.md",
            has_own_folder=has_own_folder,
            asset_files=asset_files,
        )

    return locations


def location_from_relative_path(
    base: DocLocation, relative_path: str
) -> DocLocation:
    """Re-home *base* onto *relative_path*, keeping its asset filenames."""
    parts = [part for part in relative_path.split("/") if part]
    if not parts:
        return base
    return base.model_copy(
        update={"dir_path": "/".join(parts[:-1]), "filename": parts[-1]}
    )


def claimed_slots(
    kept: Iterable[tuple[str, str, bool]],
) -> dict[str, dict[str, str]]:
    """Index relative paths that documents keep across passes.

    Args:
        kept: ``(doc_id, relative_path, has_own_folder)`` triples.

    Returns:
        Parent path to lowercased slot name to the owning document id.  The
        slot of a document with its own folder is that folder's name.
    """
    slots: dict[str, dict[str, str]] = {}
    for doc_id, relative_path, has_own_folder in kept:
        parts = [part for part in relative_path.split("/") if part]
        if not parts:
            continue
        if has_own_folder and len(parts) > 1:
            parent, name = parts[:-2], parts[-2]
        else:
            parent, name = parts[:-1], parts[-1]
            if name.lower().endswith(".md"):
                name = name[:-3]
        slots.setdefault("/".join(parent), {}).setdefault(name.lower(), doc_id)
    return slots


def assets_dir_path(location: DocLocation) -> str:
    if location.dir_path:
        return f"{location.dir_path}/{ASSETS_DIR}"
    return ASSETS_DIR


def compute_expected_structure(
    docs: Iterable[BackupDoc], locations: Mapping[str, DocLocation]
) -> ExpectedStructure:
    """Collect the directories and markdown files the tree should contain."""
    expected_paths: set[str] = set()
    expected_files: dict[str, set[str]] = {}

    for doc in docs:
        location = locations[doc.id]

        if location.dir_path:
            parts = location.dir_path.split("/")
            for i in range(1, len(parts) + 1):
                expected_paths.add("/".join(parts[:i]))

        expected_files.setdefault(location.dir_path, set()).add(location.filename)

        if location.has_own_folder and doc.assets:
            expected_paths.add(assets_dir_path(location))

    return ExpectedStructure(
        expected_paths=expected_paths, expected_files=expected_files
    )
