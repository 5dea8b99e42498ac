"""Directory handle capability used by the sync engine.

The engine never touches ``pathlib`` directly; it talks to a small
hierarchical-store interface modelled on the browser File System Access API:

- ``DirectoryHandle.entries()`` -- iterate ``(name, handle)`` pairs.
- ``DirectoryHandle.get_file_handle(name, create=...)``
- ``DirectoryHandle.get_directory_handle(name, create=...)``
- ``DirectoryHandle.remove_entry(name, recursive=...)``
- ``FileHandle.get_file()`` / ``FileHandle.write(data)``

Two implementations ship with the package:

- ``LocalDirectoryHandle`` -- a real directory on the local filesystem.
- ``MemoryDirectoryHandle`` -- an in-memory tree that counts writes, used
  by the tests and handy for dry runs.

Missing entries raise ``FileNotFoundError``; asking for a file where a
directory lives (or vice versa) raises ``IsADirectoryError`` /
``NotADirectoryError``.
"""

from __future__ import annotations

import mimetypes
import shutil
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol, Union

from notebackup.file_handler import decode_text, write_file

DEFAULT_MEDIA_TYPE = "application/octet-stream"


def guess_media_type(name: str) -> str:
    """Guess a media type from a filename extension."""
    media_type, _ = mimetypes.guess_type(name)
    return media_type or DEFAULT_MEDIA_TYPE


def _check_name(name: str) -> None:
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ValueError(f"Invalid entry name: {name!r}")


@dataclass(frozen=True)
class FileSnapshot:
    """Point-in-time contents and metadata of a file.

    Attributes:
        name: Entry name within its directory.
        data: Raw file bytes.
        last_modified: Modification time in epoch milliseconds.
        media_type: Media type guessed from the name (or recorded on write).
    """

    name: str
    data: bytes
    last_modified: float
    media_type: str = DEFAULT_MEDIA_TYPE

    def text(self) -> str:
        """Decode the file contents as text."""
        content, _ = decode_text(self.data)
        return content


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class FileHandle(Protocol):
    """A writable file inside a directory handle."""

    name: str
    kind: Literal["file"]

    def get_file(self) -> FileSnapshot: ...  # pragma: no cover

    def write(self, data: bytes | str) -> None: ...  # pragma: no cover


class DirectoryHandle(Protocol):
    """A directory in any hierarchical file store."""

    name: str
    kind: Literal["directory"]

    def entries(
        self,
    ) -> Iterator[tuple[str, Union[FileHandle, DirectoryHandle]]]: ...  # pragma: no cover

    def get_file_handle(
        self, name: str, *, create: bool = False
    ) -> FileHandle: ...  # pragma: no cover

    def get_directory_handle(
        self, name: str, *, create: bool = False
    ) -> DirectoryHandle: ...  # pragma: no cover

    def remove_entry(
        self, name: str, *, recursive: bool = False
    ) -> None: ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class LocalFileHandle:
    """File handle backed by a path on the local filesystem."""

    kind: Literal["file"] = "file"

    def __init__(self, path: Path) -> None:
        self.path = path
        self.name = path.name

    def get_file(self) -> FileSnapshot:
        data = self.path.read_bytes()
        stat = self.path.stat()
        return FileSnapshot(
            name=self.name,
            data=data,
            last_modified=stat.st_mtime * 1000,
            media_type=guess_media_type(self.name),
        )

    def write(self, data: bytes | str) -> None:
        write_file(self.path, data)


class LocalDirectoryHandle:
    """Directory handle backed by a directory on the local filesystem.

    Args:
        path: Directory path.  It must already exist.
    """

    kind: Literal["directory"] = "directory"

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.name = self.path.name

    def __repr__(self) -> str:
        return f"LocalDirectoryHandle({str(self.path)!r})"

    def entries(
        self,
    ) -> Iterator[tuple[str, LocalFileHandle | LocalDirectoryHandle]]:
        # Snapshot so callers may remove entries while iterating.
        children = sorted(self.path.iterdir(), key=lambda p: p.name)
        for child in children:
            if child.is_dir():
                yield child.name, LocalDirectoryHandle(child)
            elif child.is_file():
                yield child.name, LocalFileHandle(child)

    def get_file_handle(
        self, name: str, *, create: bool = False
    ) -> LocalFileHandle:
        _check_name(name)
        target = self.path / name
        if target.is_dir():
            raise IsADirectoryError(f"Not a file: {target}")
        if not target.exists():
            if not create:
                raise FileNotFoundError(f"File not found: {target}")
            target.touch()
        return LocalFileHandle(target)

    def get_directory_handle(
        self, name: str, *, create: bool = False
    ) -> LocalDirectoryHandle:
        _check_name(name)
        target = self.path / name
        if target.exists() and not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {target}")
        if not target.exists():
            if not create:
                raise FileNotFoundError(f"Directory not found: {target}")
            target.mkdir()
        return LocalDirectoryHandle(target)

    def remove_entry(self, name: str, *, recursive: bool = False) -> None:
        _check_name(name)
        target = self.path / name
        if target.is_dir():
            if recursive:
                shutil.rmtree(target)
            else:
                target.rmdir()
        elif target.exists():
            target.unlink()
        else:
            raise FileNotFoundError(f"Entry not found: {target}")


# ---------------------------------------------------------------------------
# In-memory tree
# ---------------------------------------------------------------------------


@dataclass
class IOStats:
    """Counters shared by every node of one in-memory tree."""

    writes: int = 0
    removals: int = 0
    written_paths: list[str] = field(default_factory=list)

    def reset(self) -> None:
        self.writes = 0
        self.removals = 0
        self.written_paths.clear()


def _default_clock() -> float:
    return time.time() * 1000


class MemoryFileHandle:
    """File handle for a file held in memory."""

    kind: Literal["file"] = "file"

    def __init__(
        self,
        name: str,
        path: str,
        stats: IOStats,
        clock: Callable[[], float],
    ) -> None:
        self.name = name
        self.path = path
        self.data = b""
        self.last_modified = clock()
        self.media_type = guess_media_type(name)
        self._stats = stats
        self._clock = clock

    def get_file(self) -> FileSnapshot:
        return FileSnapshot(
            name=self.name,
            data=self.data,
            last_modified=self.last_modified,
            media_type=self.media_type,
        )

    def write(self, data: bytes | str) -> None:
        self.data = data.encode("utf-8") if isinstance(data, str) else data
        self.last_modified = self._clock()
        self._stats.writes += 1
        self._stats.written_paths.append(self.path)


class MemoryDirectoryHandle:
    """In-memory directory tree implementing the directory handle protocol.

    Args:
        name: Name of this directory.
        clock: Millisecond clock used for ``last_modified`` on writes.
    """

    kind: Literal["directory"] = "directory"

    def __init__(
        self,
        name: str = "root",
        clock: Callable[[], float] | None = None,
        *,
        _path: str = "",
        _stats: IOStats | None = None,
    ) -> None:
        self.name = name
        self.path = _path
        self.stats = _stats or IOStats()
        self._clock = clock or _default_clock
        self._children: dict[str, MemoryFileHandle | MemoryDirectoryHandle] = {}

    def __repr__(self) -> str:
        return f"MemoryDirectoryHandle({self.name!r}, entries={len(self._children)})"

    def _child_path(self, name: str) -> str:
        return f"{self.path}/{name}" if self.path else name

    def entries(
        self,
    ) -> Iterator[tuple[str, MemoryFileHandle | MemoryDirectoryHandle]]:
        yield from list(self._children.items())

    def get_file_handle(
        self, name: str, *, create: bool = False
    ) -> MemoryFileHandle:
        _check_name(name)
        child = self._children.get(name)
        if isinstance(child, MemoryDirectoryHandle):
            raise IsADirectoryError(f"Not a file: {self._child_path(name)}")
        if child is None:
            if not create:
                raise FileNotFoundError(f"File not found: {self._child_path(name)}")
            child = MemoryFileHandle(
                name, self._child_path(name), self.stats, self._clock
            )
            self._children[name] = child
        return child

    def get_directory_handle(
        self, name: str, *, create: bool = False
    ) -> MemoryDirectoryHandle:
        _check_name(name)
        child = self._children.get(name)
        if isinstance(child, MemoryFileHandle):
            raise NotADirectoryError(f"Not a directory: {self._child_path(name)}")
        if child is None:
            if not create:
                raise FileNotFoundError(
                    f"Directory not found: {self._child_path(name)}"
                )
            child = MemoryDirectoryHandle(
                name,
                self._clock,
                _path=self._child_path(name),
                _stats=self.stats,
            )
            self._children[name] = child
        return child

    def remove_entry(self, name: str, *, recursive: bool = False) -> None:
        _check_name(name)
        child = self._children.get(name)
        if child is None:
            raise FileNotFoundError(f"Entry not found: {self._child_path(name)}")
        if (
            isinstance(child, MemoryDirectoryHandle)
            and child._children
            and not recursive
        ):
            raise OSError(f"Directory not empty: {self._child_path(name)}")
        del self._children[name]
        self.stats.removals += 1

    # ------------------------------------------------------------------
    # Path helpers (test setup and inspection)
    # ------------------------------------------------------------------

    def _walk_to_parent(
        self, relative_path: str, create: bool
    ) -> tuple[MemoryDirectoryHandle, str]:
        parts = [p for p in relative_path.split("/") if p]
        if not parts:
            raise ValueError("Empty path")
        current = self
        for part in parts[:-1]:
            current = current.get_directory_handle(part, create=create)
        return current, parts[-1]

    def add_file(
        self,
        relative_path: str,
        content: bytes | str,
        last_modified: float | None = None,
        media_type: str | None = None,
    ) -> MemoryFileHandle:
        """Create or replace a file without counting it as a sync write."""
        parent, name = self._walk_to_parent(relative_path, create=True)
        handle = parent.get_file_handle(name, create=True)
        handle.data = content.encode("utf-8") if isinstance(content, str) else content
        handle.last_modified = (
            last_modified if last_modified is not None else self._clock()
        )
        if media_type:
            handle.media_type = media_type
        return handle

    def read_text(self, relative_path: str) -> str:
        parent, name = self._walk_to_parent(relative_path, create=False)
        return parent.get_file_handle(name).get_file().text()

    def read_bytes(self, relative_path: str) -> bytes:
        parent, name = self._walk_to_parent(relative_path, create=False)
        return parent.get_file_handle(name).get_file().data

    def remove(self, relative_path: str) -> None:
        parent, name = self._walk_to_parent(relative_path, create=False)
        parent.remove_entry(name, recursive=True)

    def exists(self, relative_path: str) -> bool:
        try:
            parent, name = self._walk_to_parent(relative_path, create=False)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return name in parent._children

    def list_files(self) -> list[str]:
        """Return every file path in the tree, sorted."""
        found: list[str] = []
        for name, child in self._children.items():
            if isinstance(child, MemoryDirectoryHandle):
                found.extend(f"{name}/{sub}" for sub in child.list_files())
            else:
                found.append(name)
        return sorted(found)
