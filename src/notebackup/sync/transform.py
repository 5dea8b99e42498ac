"""Asset-reference rewriting between internal and on-disk form.

Internal content refers to attachments as ``![alt](asset:<id>)``; files on
disk refer to them as ``![alt](assets/<filename>)`` relative to the markdown
file.  Both rewrites are a single regex pass over the content.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

_INTERNAL_REF_RE = re.compile(r"!\[([^\]]*)\]\(asset:([^)]+)\)")
_FILESYSTEM_REF_RE = re.compile(r"!\[([^\]]*)\]\(assets/([^)]+)\)")


def to_filesystem(content: str, asset_files: Mapping[str, str]) -> str:
    """Rewrite ``asset:<id>`` targets to ``assets/<filename>``.

    Args:
        content: Markdown in internal form.
        asset_files: Attachment id to filename.

    Returns:
        Content with every known id rewritten; unknown ids are left as-is.
    """

    def _replace(match: re.Match) -> str:
        filename = asset_files.get(match.group(2))
        if filename is None:
            return match.group(0)
        return f"![{match.group(1)}](assets/{filename})"

    return _INTERNAL_REF_RE.sub(_replace, content)


def to_internal(content: str, asset_files: Mapping[str, str]) -> str:
    """Rewrite ``assets/<filename>`` targets to ``asset:<id>``.

    When two ids map to the same filename the first one wins.  External
    URLs, other relative paths and unknown filenames are left untouched.
    """
    ids_by_filename: dict[str, str] = {}
    for asset_id, filename in asset_files.items():
        ids_by_filename.setdefault(filename, asset_id)

    def _replace(match: re.Match) -> str:
        asset_id = ids_by_filename.get(match.group(2))
        if asset_id is None:
            return match.group(0)
        return f"![{match.group(1)}](asset:{asset_id})"

    return _FILESYSTEM_REF_RE.sub(_replace, content)
