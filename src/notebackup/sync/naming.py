"""Filename sanitizing and media-type helpers."""

from __future__ import annotations

import re

from notebackup.handles import guess_media_type
from notebackup.store import media_class

__all__ = [
    "extension_for_media_type",
    "media_class",
    "media_type_for_filename",
    "remove_extension",
    "sanitize_filename",
]

_UNSAFE_CHARS = frozenset('<>:"/\\|?*')

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/bmp": ".bmp",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
}

_EXTENSION_RE = re.compile(r"\.[^.]+$")


def sanitize_filename(name: str, fallback: str = "untitled") -> str:
    """Map arbitrary text to a filesystem-safe name.

    Filesystem-unsafe characters (``< > : " / \\ | ? *``) and control
    characters are replaced with ``_``; surrounding whitespace is stripped.
    Returns *fallback* when nothing is left.
    """
    cleaned = "".join(
        "_" if ord(char) < 0x20 or char in _UNSAFE_CHARS else char
        for char in name
    )
    return cleaned.strip() or fallback


def extension_for_media_type(media_type: str) -> str:
    """Return the file extension for an attachment media type (default ``.png``)."""
    return _EXTENSIONS.get(media_type, ".png")


def media_type_for_filename(filename: str) -> str:
    return guess_media_type(filename)


def remove_extension(filename: str) -> str:
    """Strip the last suffix: ``"photo.final.png"`` -> ``"photo.final"``."""
    return _EXTENSION_RE.sub("", filename)
