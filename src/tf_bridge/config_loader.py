"""
Layered YAML configuration for tf_bridge.

Config files are looked up by convention (explicit env var, project
directory, user directory), parsed with ``!include`` support, merged so
that the nearer file wins per setting, and finally run through
``${VAR}`` interpolation so secrets can stay in the environment.

Usage:
    from tf_bridge.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()   # {} when no file exists
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TF_BRIDGE_CONFIG"
PROJECT_DIRNAME = ".tf_bridge"
USER_CONFIG_DIR = Path(".config") / "tf_bridge"

# ${NAME}, ${NAME:-fallback} or ${NAME:?error message}
_ENV_REFERENCE = re.compile(
    r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:[-?])(?P<arg>[^}]*))?\}"
)


# ---------------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Expand environment references in *value*.

    ``${NAME}`` becomes the variable's value (empty when unset).
    ``${NAME:-fallback}`` uses *fallback* when the variable is unset or
    empty, and ``${NAME:?message}`` raises ``ValueError`` with *message*
    instead. Text that is not a complete reference is kept as is.
    """

    def expand(match: re.Match) -> str:
        name = match.group("name")
        current = os.environ.get(name, "")
        if current:
            return current
        if match.group("op") == ":?":
            raise ValueError(
                f"Environment variable {name} is required: "
                f"{match.group('arg') or 'not set'}"
            )
        return match.group("arg") or ""

    return _ENV_REFERENCE.sub(expand, value)


def _interpolate_recursive(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: _interpolate_recursive(item) for key, item in node.items()}
    if isinstance(node, list):
        return [_interpolate_recursive(item) for item in node]
    if isinstance(node, str):
        return interpolate_env_vars(node)
    return node


# ---------------------------------------------------------------------------
# YAML with !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """``SafeLoader`` that understands ``!include relative/or/absolute.yml``.

    Included paths resolve against the including file. ``include_chain``
    holds the files being loaded so a cycle is reported instead of
    recursing forever. ``yaml.SafeLoader`` itself is left untouched.
    """

    include_chain: tuple[Path, ...] = ()

    def include(self, node: yaml.ScalarNode) -> Any:
        including = Path(self.name).resolve()
        target = Path(os.path.expanduser(self.construct_scalar(node)))
        if not target.is_absolute():
            target = including.parent / target
        target = target.resolve()

        if target in self.include_chain:
            cycle = " -> ".join(str(p) for p in (*self.include_chain, target))
            raise ValueError(f"Circular include detected: {cycle}")
        if not target.is_file():
            raise FileNotFoundError(
                f"Include file not found: {target} (referenced from {including})"
            )
        return _load_yaml_with_includes(target, self.include_chain)


ConfigLoader.add_constructor("!include", ConfigLoader.include)


def _load_yaml_with_includes(
    path: Path, chain: tuple[Path, ...] = ()
) -> Any:
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_chain = (*chain, path)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _candidate_paths() -> list[Path]:
    candidates = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    project = Path.cwd() / PROJECT_DIRNAME
    candidates += [project / "config.yml", project / "config.yaml"]
    candidates.append(Path.home() / USER_CONFIG_DIR / "config.yml")
    return candidates


def discover_config_files() -> list[Path]:
    """Existing config files, nearest (highest precedence) first.

    Order: ``$TF_BRIDGE_CONFIG``, ``.tf_bridge/config.yml`` and
    ``.tf_bridge/config.yaml`` in the working directory, then
    ``~/.config/tf_bridge/config.yml``.
    """
    return [path for path in _candidate_paths() if path.exists()]


# ---------------------------------------------------------------------------
# Bootstrapping a starter file
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# tf-bridge configuration
#
# TFS connection settings can also be set via environment variables:
#   TFS_URL, TFS_USERNAME, TFS_PASSWORD, TFS_INSECURE
#
# tfs:
#   url: https://tfs.example.com/tfs/DefaultCollection
#   username: DOMAIN\\user
#   password: ${TFS_PASSWORD:?set TFS_PASSWORD}
#   insecure: false
#   max_parallel_downloads: 4
#   max_retries: 3
#
# bridge:
#   max_conflict_retries: 3
#   lock: true
#   rename_mode: files
#   max_comment_rollup: 20
#
# logging:
#   level: INFO
#   file: null
"""


def resolve_config_path() -> Path:
    """The config file in effect, or the project-level default path.

    Nothing is created; see ``ensure_config()``.
    """
    existing = discover_config_files()
    return existing[0] if existing else Path.cwd() / PROJECT_DIRNAME / "config.yml"


def ensure_config(target: Path | None = None) -> Path:
    """Return the config file in effect, writing a commented starter if none exists.

    Args:
        target: Where to create the starter file (default:
            ``resolve_config_path()``).
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


def _merge_sections(base: dict[str, Any], overlay: dict[str, Any]) -> None:
    """Merge *overlay* into *base*; sections merge key by key."""
    for key, value in overlay.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            base[key] = {**current, **value}
        else:
            base[key] = value


def load_hierarchical_config() -> dict[str, Any]:
    """Load, merge and interpolate every discovered config file.

    Files are applied from the farthest to the nearest, so a project file
    overrides single settings of a section the user file also sets while
    the rest of that section is kept. Interpolation runs once, after the
    merge.

    Returns:
        The merged mapping, ``{}`` when no config file exists.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using zero-config defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        data = _load_yaml_with_includes(path)
        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(
                "Ignoring config file %s: top level is a %s, not a mapping",
                path,
                type(data).__name__,
            )
            continue
        _merge_sections(merged, data)

    return _interpolate_recursive(merged)
