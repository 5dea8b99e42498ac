"""Frontmatter helpers for the ``path:`` and ``title:`` fields.

The frontmatter block is read with PyYAML.  Rewrites of the ``path:``
field are done on the raw text so everything else in the document,
including the rest of the frontmatter, is preserved byte for byte.
"""

from __future__ import annotations

import datetime
import logging
import re
from typing import Any

import yaml

logger = logging.getLogger(__name__)

FRONTMATTER_RE = re.compile(r"^---\r?\n([\s\S]*?)(?:\r?\n)?---(?:\r?\n)?")

# ``path:`` at a line start, before the closing fence of the leading block.
_PATH_LINE_RE = re.compile(
    r"^(---\r?\n(?:(?!---)[^\r\n]*\r?\n)*?)path:[ \t]*[^\r\n]*"
)
_PATH_LINE_WITH_EOL_RE = re.compile(
    r"^(---\r?\n(?:(?!---)[^\r\n]*\r?\n)*?)path:[ \t]*[^\r\n]*\r?\n"
)
_OPENING_FENCE_RE = re.compile(r"^(---\r?\n)")

_HEADING_RE = re.compile(r"^#{1,6}\s+")
_EMPHASIS_RES = [
    re.compile(r"\*\*([^*]+)\*\*"),
    re.compile(r"\*([^*]+)\*"),
    re.compile(r"__([^_]+)__"),
    re.compile(r"_([^_]+)_"),
    re.compile(r"`([^`]+)`"),
]
MAX_TITLE_LENGTH = 80


def _parse_lenient(block: str) -> dict[str, Any]:
    # Plain ``key: value`` lines, for blocks that are not valid YAML.
    metadata: dict[str, Any] = {}
    for line in re.split(r"\r?\n", block):
        key, sep, value = line.partition(":")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        metadata[key.strip()] = value
    return metadata


def parse_frontmatter(content: str) -> tuple[dict[str, Any] | None, str]:
    """Split *content* into ``(metadata, body)``.

    ``metadata`` is ``None`` when the document has no frontmatter block at
    all, and a (possibly empty) dict when it has one.
    """
    match = FRONTMATTER_RE.match(content)
    if not match:
        return None, content

    body = content[match.end():]
    block = match.group(1)
    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError:
        logger.debug("Frontmatter is not valid YAML, reading it line by line")
        return _parse_lenient(block), body
    if not isinstance(data, dict):
        return {}, body
    return data, body


def _scalar_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (str, int, float, datetime.date)):
        return str(value)
    return None


def get_path(content: str) -> str | None:
    """Return the normalized frontmatter ``path:`` value, or ``None``.

    Surrounding whitespace and leading/trailing slashes are stripped.
    """
    metadata, _ = parse_frontmatter(content)
    if not metadata:
        return None
    path = _scalar_text(metadata.get("path"))
    if path is None:
        return None
    return path.strip().strip("/") or None


def document_title(content: str) -> str:
    """Derive a display title for a document.

    Uses the frontmatter ``title:`` when set, otherwise the first non-empty
    body line with heading and inline emphasis markers removed, capped at
    80 characters.  Falls back to ``"Untitled"``.
    """
    metadata, body = parse_frontmatter(content)
    if metadata:
        title = _scalar_text(metadata.get("title"))
        if title:
            return title

    line = next((line for line in body.split("\n") if line.strip()), "")
    line = _HEADING_RE.sub("", line)
    for pattern in _EMPHASIS_RES:
        line = pattern.sub(r"\1", line)
    return line.strip()[:MAX_TITLE_LENGTH] or "Untitled"


def derive_path_from_relative_path(
    relative_path: str, has_assets: bool
) -> str | None:
    """Derive the logical folder of a file from where it sits on disk.

    A document with assets lives in its own folder, which is not part of
    its logical path.

    Examples:
        ``"work/Notes.md"`` -> ``"work"``;
        ``"work/Notes/Notes.md"`` with assets -> ``"work"``;
        ``"Notes.md"`` -> ``None``.
    """
    parts = [part for part in relative_path.split("/") if part]
    if len(parts) <= 1:
        return None
    directory_parts = parts[:-1]
    if has_assets:
        directory_parts = directory_parts[:-1]
    return "/".join(directory_parts) or None


def apply_path_from_relative_path(
    content: str, relative_path: str, has_assets: bool
) -> str:
    """Make the frontmatter ``path:`` agree with the file's location.

    Inserts a frontmatter block when the document has none and needs a
    path, replaces a differing path, and removes the field when the file
    sits at the root.
    """
    disk_path = derive_path_from_relative_path(relative_path, has_assets)
    metadata, _ = parse_frontmatter(content)

    if metadata is None:
        if not disk_path:
            return content
        return f"---\npath: {disk_path}\n---\n\n{content}"

    current_path = get_path(content)
    if current_path == disk_path:
        return content

    if not disk_path:
        return _PATH_LINE_WITH_EOL_RE.sub(lambda m: m.group(1), content, count=1)

    # An existing but unusable value (``path:`` or ``path: true``) is
    # replaced rather than shadowed by a second key.
    if _PATH_LINE_RE.match(content):
        return _PATH_LINE_RE.sub(
            lambda m: f"{m.group(1)}path: {disk_path}", content, count=1
        )

    return _OPENING_FENCE_RE.sub(
        lambda m: f"{m.group(1)}path: {disk_path}\n", content, count=1
    )
