"""Recursive scan of a backup directory."""

from __future__ import annotations

import logging

from notebackup.handles import DirectoryHandle, FileHandle

from .locations import ASSETS_DIR
from .manifest import MANIFEST_FILENAME, hash_bytes
from .models import ScannedAsset, ScannedFile

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIX = ".md"

ScanFailure = tuple[str, OSError]


def scan_backup_folder(
    handle: DirectoryHandle, failures: list[ScanFailure] | None = None
) -> list[ScannedFile]:
    """Walk the tree depth-first and collect every markdown document.

    Hidden entries (``.`` prefix) are skipped.  Each markdown file picks up
    the files of a sibling ``assets/`` directory as its assets.

    Args:
        handle: Root of the backup.
        failures: When given, a markdown file (or subdirectory) that cannot
            be read is appended as ``(relative_path, error)`` and the scan
            moves on.  Otherwise the error propagates.

    Returns:
        Scanned files in traversal order.

    Raises:
        OSError: If the root cannot be listed, or a file cannot be read and
            *failures* is ``None``.
    """
    files: list[ScannedFile] = []
    for name, child in handle.entries():
        _scan_entry(name, child, "", handle, files, failures)
    logger.debug("Scanned %d markdown files", len(files))
    return files


def _scan_entry(
    name: str,
    child: DirectoryHandle | FileHandle,
    relative_path: str,
    directory: DirectoryHandle,
    files: list[ScannedFile],
    failures: list[ScanFailure] | None,
) -> None:
    if name.startswith(".") or name == MANIFEST_FILENAME:
        return
    entry_path = f"{relative_path}/{name}" if relative_path else name
    if child.kind != "directory" and not name.endswith(MARKDOWN_SUFFIX):
        return

    try:
        if child.kind == "directory":
            for child_name, grandchild in child.entries():
                _scan_entry(
                    child_name, grandchild, entry_path, child, files, failures
                )
            return
        snapshot = child.get_file()
        assets = _collect_assets(directory)
    except OSError as exc:
        if failures is None:
            raise
        logger.warning("Cannot read %s: %s", entry_path, exc)
        failures.append((entry_path, exc))
        return

    files.append(
        ScannedFile(
            name=name[: -len(MARKDOWN_SUFFIX)],
            relative_path=entry_path,
            content=snapshot.text(),
            assets=assets,
            last_modified=snapshot.last_modified,
        )
    )


def _collect_assets(directory: DirectoryHandle) -> list[ScannedAsset]:
    try:
        assets_dir = directory.get_directory_handle(ASSETS_DIR)
    except (FileNotFoundError, NotADirectoryError):
        return []

    assets = []
    for name, child in assets_dir.entries():
        if child.kind != "file" or name.startswith("."):
            continue
        snapshot = child.get_file()
        assets.append(
            ScannedAsset(
                name=name,
                data=snapshot.data,
                media_type=snapshot.media_type,
                hash=hash_bytes(snapshot.data),
            )
        )
    return assets
