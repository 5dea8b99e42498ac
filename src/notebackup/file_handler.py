"""File handler module: path validation and encoding-aware read/write.

Provides the low-level file I/O used by the local directory handle and the
JSON document store.  Markdown written by this package is always UTF-8;
files edited by other tools may not be, so decoding falls back to
charset-normalizer detection.
"""

from pathlib import Path

from charset_normalizer import from_bytes

# =============================================================================
# Path Validation
# =============================================================================


def validate_directory_path(path_str: str, create: bool = False) -> Path:
    """Validate and resolve a backup directory path.

    Args:
        path_str: Path string to a directory.
        create: Create the directory (and parents) when it is missing.

    Returns:
        Resolved Path object pointing to the directory.

    Raises:
        ValueError: If the path does not exist (and ``create`` is False)
            or exists but is not a directory.
    """
    path = Path(path_str).expanduser()
    resolved = path.resolve()
    if not resolved.exists():
        if not create:
            raise ValueError(f"Directory not found: {path_str}")
        resolved.mkdir(parents=True, exist_ok=True)
    if not resolved.is_dir():
        raise ValueError(f"Path is not a directory: {path_str}")
    return resolved


# =============================================================================
# Decoding
# =============================================================================


def decode_text(raw: bytes) -> tuple[str, str]:
    """Decode raw bytes, preferring UTF-8.

    Strict UTF-8 is tried first so that content written by the sync engine
    round-trips byte for byte.  Anything else goes through charset-normalizer.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    if not raw:
        return ("", "utf-8")
    try:
        return (raw.decode("utf-8"), "utf-8")
    except UnicodeDecodeError:
        pass

    result = from_bytes(raw).best()
    if result is None:
        return (raw.decode("utf-8", errors="replace"), "utf-8")
    encoding = result.encoding
    if encoding == "ascii":
        encoding = "utf-8"
    return (str(result), encoding)


# =============================================================================
# File Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    return decode_text(path.read_bytes())


def write_file(path: Path, content: str | bytes, encoding: str = "utf-8") -> int:
    """Write content to a file, creating parent directories as needed.

    Args:
        path: Path to the output file.
        content: String or bytes to write.  Strings are encoded with
            *encoding*.
        encoding: Encoding to use for string content (default: utf-8).

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode(encoding) if isinstance(content, str) else content
    path.write_bytes(encoded)
    return len(encoded)
