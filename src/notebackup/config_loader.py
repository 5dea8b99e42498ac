"""
Config file discovery and loading for notebackup.

Config files are YAML.  Several may apply at once (an explicit file named
by ``NOTEBACKUP_CONFIG``, a project file under ``.notebackup/`` and a
per-user file under ``~/.config/notebackup/``); their top-level sections
are merged with the most specific file winning.  String values may
reference environment variables, and a value may be pulled in from
another file with ``!include``.

Usage:
    from notebackup.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "NOTEBACKUP_CONFIG"
PROJECT_CONFIG_DIR = ".notebackup"
PROJECT_CONFIG_NAMES = ("config.yml", "config.yaml")
USER_CONFIG_PATH = Path(".config") / "notebackup" / "config.yml"

# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}
_ENV_REF_RE = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand ``${NAME}`` and ``${NAME:-fallback}`` references in *value*.

    An unset or empty variable expands to its fallback, or to nothing when
    there is none.  An unterminated ``${`` is kept as written.
    """

    def _expand(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        return os.environ.get(name) or fallback or ""

    return _ENV_REF_RE.sub(_expand, value)


def _interpolate_recursive(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_env_vars(node)
    if isinstance(node, dict):
        return {key: _interpolate_recursive(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_interpolate_recursive(item) for item in node]
    return node


# ---------------------------------------------------------------------------
# YAML with !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """Safe YAML loader that understands ``!include <path>``.

    The directive is registered on this subclass only, so plain
    ``yaml.safe_load`` elsewhere is unaffected.  Each loader carries the
    chain of files that led to it for cycle detection.
    """

    def __init__(self, stream: Any, include_chain: list[Path]) -> None:
        super().__init__(stream)
        self.include_chain = include_chain


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Load the file named by an ``!include`` node."""
    source = Path(loader.name).resolve()
    target = Path(loader.construct_scalar(node))
    if not target.is_absolute():
        target = source.parent / target
    target = target.resolve()

    if target in loader.include_chain:
        chain = " -> ".join(str(p) for p in [*loader.include_chain, target])
        raise ValueError(f"Circular include detected: {chain}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {source})"
        )
    return _load_yaml_with_includes(target, _include_chain=loader.include_chain)


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path, *, _include_chain: list[Path] | None = None
) -> Any:
    """Parse one YAML file, following ``!include`` directives."""
    path = path.resolve()
    chain = [*(_include_chain or []), path]
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh, chain)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _candidate_paths() -> Iterator[Path]:
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        yield Path(explicit).expanduser().resolve()
    project_dir = Path.cwd() / PROJECT_CONFIG_DIR
    for name in PROJECT_CONFIG_NAMES:
        yield project_dir / name
    yield Path.home() / USER_CONFIG_PATH


def discover_config_files() -> list[Path]:
    """Return the config files that exist, most specific first.

    Order: ``$NOTEBACKUP_CONFIG``, ``./.notebackup/config.yml``,
    ``./.notebackup/config.yaml``, ``~/.config/notebackup/config.yml``.
    """
    return [path for path in _candidate_paths() if path.exists()]


def resolve_config_path() -> Path:
    """Return the config file in effect, or where a new one would go."""
    existing = discover_config_files()
    if existing:
        return existing[0]
    return Path.cwd() / PROJECT_CONFIG_DIR / PROJECT_CONFIG_NAMES[0]


_STARTER_CONFIG = """\
# notebackup configuration
#
# Values may reference environment variables: ${HOME}, ${NOTES_DIR:-~/Notes}
#
# backup:
#   directory: ~/Documents/Notes Backup
#   store: ~/.local/share/notebackup/notes.json
#   scope: null
#   bidirectional: true
#   read_only: false
#   recent_import_window_ms: 30000
#   path_override_ttl_ms: 3600000
#   max_path_overrides: 1024
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a commented starter if none exists.

    Args:
        target: Where to create the starter file; defaults to
            ``resolve_config_path()``.
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Using existing config file %s", existing[0])
        return existing[0]

    path = target or resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load every discovered config file and merge their sections.

    A section (``backup``, ``logging``) from a more specific file replaces
    the same section from a less specific one as a whole.  Environment
    references are expanded after merging.

    Returns:
        The merged raw mapping; empty when there are no config files.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Ignoring config file %s: top level is a %s, not a mapping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
