"""
YAML config files for aerotodo_sync.

Up to three files are read, lowest precedence first:

1. ``~/.config/aerotodo_sync/config.yml`` -- per-user defaults, typically
   the OAuth client id and secret.
2. ``.aerotodo_sync/config.yml`` in the working directory -- per-planner
   settings such as the calendar id and the sync policy defaults.
3. The file named by ``AEROTODO_SYNC_CONFIG``.

Only the sections ``config_schema.UnifiedConfig`` defines (``google``,
``sync``, ``logging``) are kept.  Sections merge key by key, so a project
file that only sets ``google.calendar_id`` keeps the user file's client
credentials.  Strings may use ``${VAR}`` or ``${VAR:-default}``, and a
value may be pulled from another file with ``!include``.

Usage:
    from aerotodo_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
import stat
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AEROTODO_SYNC_CONFIG"
PROJECT_CONFIG = Path(".aerotodo_sync") / "config.yml"
USER_CONFIG = Path(".config") / "aerotodo_sync" / "config.yml"
SECTIONS = ("google", "sync", "logging")

_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<default>.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in *value*.

    An unset or empty VAR expands to *default*, or to ``""`` without one.
    An unterminated ``${`` is kept literally.
    """
    return _ENV_REF.sub(
        lambda m: os.environ.get(m["name"]) or (m["default"] or ""), value
    )


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


class _IncludeLoader(yaml.SafeLoader):
    """SafeLoader that resolves ``!include`` relative to the current file.

    The tag is registered on this subclass only; ``yaml.safe_load`` keeps
    rejecting it.
    """

    def __init__(
        self, stream: Any, path: Path, chain: tuple[Path, ...]
    ) -> None:
        super().__init__(stream)
        self.path = path
        self.chain = chain

    def include(self, node: yaml.ScalarNode) -> Any:
        target = Path(self.construct_scalar(node)).expanduser()
        if not target.is_absolute():
            target = self.path.parent / target
        target = target.resolve()
        if target in self.chain:
            loop = " -> ".join(str(p) for p in (*self.chain, target))
            raise ConfigError(f"Circular include: {loop}")
        if not target.is_file():
            raise ConfigError(
                f"Include file not found: {target} (from {self.path})"
            )
        return _load_yaml(target, self.chain)


_IncludeLoader.add_constructor("!include", _IncludeLoader.include)


def _load_yaml(path: Path, chain: tuple[Path, ...] = ()) -> Any:
    """Parse one file, following its includes."""
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = _IncludeLoader(fh, path, (*chain, path))
        try:
            return loader.get_single_data()
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        finally:
            loader.dispose()


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first, without duplicates."""
    candidates: list[Path] = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit).expanduser()
        if path.is_file():
            candidates.append(path)
        else:
            logger.warning(
                "%s points to a missing file: %s", CONFIG_ENV_VAR, path
            )
    candidates.append(Path.cwd() / PROJECT_CONFIG)
    candidates.append(Path.home() / USER_CONFIG)

    found: list[Path] = []
    for candidate in candidates:
        resolved = candidate.resolve()
        if resolved.is_file() and resolved not in found:
            found.append(resolved)
    return found


def _warn_if_exposed(path: Path, sections: dict[str, Any]) -> None:
    google = sections.get("google") or {}
    if not google.get("client_secret"):
        return
    if path.stat().st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(
            "%s holds the OAuth client secret but is readable by other "
            "users; consider chmod 600",
            path,
        )


def _sections(path: Path, data: Any) -> dict[str, dict[str, Any]]:
    """The known sections of one parsed file."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(
            "Config file %s is not a mapping (%s) -- skipping",
            path,
            type(data).__name__,
        )
        return {}
    sections: dict[str, dict[str, Any]] = {}
    for name, body in data.items():
        if name not in SECTIONS:
            logger.warning("Unknown section %r in %s -- ignored", name, path)
            continue
        if body is None:
            continue
        if not isinstance(body, dict):
            raise ConfigError(f"Section {name!r} in {path} must be a mapping")
        sections[name] = body
    return sections


def load_hierarchical_config() -> dict[str, Any]:
    """Read and merge every discovered config file.

    Returns:
        ``{section: {key: value}}`` with environment references expanded,
        or ``{}`` when no file exists.

    Raises:
        ConfigError: A file is not valid YAML, an include is missing or
            circular, or a section is not a mapping.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found -- using defaults")
        return {}

    merged: dict[str, dict[str, Any]] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        sections = _sections(path, _load_yaml(path))
        _warn_if_exposed(path, sections)
        for name, body in sections.items():
            merged.setdefault(name, {}).update(body)
    return _interpolate_recursive(merged)
