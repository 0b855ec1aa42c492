"""
Runtime settings shared across broker adapter tooling.

Settings are loaded from ``.broker/settings.toml`` by default. The lookup order is:

1. Explicit ``BROKER_ADAPTERS_SETTINGS`` environment variable.
2. Project-relative ``.broker/settings.toml`` (both from CWD and the package root).
3. Fallback to ``.broker/settings.example.toml`` for scaffolding values.

The document may contain ``[defaults]``, ``[types.<type>]`` and
``[adapters.<id>]`` tables overlaying the catalogue's configuration layers, a
``[store]`` table selecting the state store, and ``[secrets.<id>]`` tables
with credentials handed to transports. Call :func:`load_settings` to retrieve a
:class:`SettingsBundle`.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from .contract.errors import ConfigError

_ENV_SETTINGS = "BROKER_ADAPTERS_SETTINGS"
_STORE_BACKENDS = ("memory", "file", "redis")


class SettingsError(ConfigError):
    """Raised when a settings document cannot be parsed or validated."""


@dataclass(slots=True)
class StoreSettings:
    """State store selection."""

    backend: str = "file"
    path: Optional[str] = None
    url: Optional[str] = None
    prefix: str = "broker:"


@dataclass(slots=True)
class SettingsBundle:
    """Lightweight container for parsed settings values."""

    source_path: Optional[Path]
    data: Dict[str, Any]
    defaults: Dict[str, Any] = field(default_factory=dict)
    types: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    adapters: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    store: StoreSettings = field(default_factory=StoreSettings)
    secrets: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def type_overrides(self, adapter_type: str) -> Dict[str, Any]:
        return dict(self.types.get(adapter_type, {}))

    def instance_overrides(self, adapter_id: str) -> Dict[str, Any]:
        return dict(self.adapters.get(adapter_id, {}))

    def secrets_for(self, adapter_id: str) -> Dict[str, Any]:
        return dict(self.secrets.get(adapter_id, {}))


def _discover_project_root() -> Optional[Path]:
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").is_file():
            return parent
    return None


def _candidate_paths() -> Iterable[Path]:
    env_override = os.getenv(_ENV_SETTINGS)
    if env_override:
        yield Path(env_override).expanduser()

    package_root = _discover_project_root()
    cwd = Path.cwd()

    seen: set[Path] = set()
    search_roots = [cwd]
    if package_root and package_root not in search_roots:
        search_roots.append(package_root)
    for base in search_roots:
        for filename in ("settings.toml", "settings.example.toml"):
            candidate = base / ".broker" / filename
            if candidate not in seen:
                seen.add(candidate)
                yield candidate


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise SettingsError(f"Failed to parse '{path}': {exc}") from exc


def _table(raw: Mapping[str, Any], key: str, *, origin: Optional[Path]) -> Dict[str, Any]:
    section = raw.get(key, {})
    if not isinstance(section, dict):
        raise SettingsError(f"Section [{key}] in '{origin}' must be a table.")
    return dict(section)


def _nested_tables(raw: Mapping[str, Any], key: str, *, origin: Optional[Path]) -> Dict[str, Dict[str, Any]]:
    section = _table(raw, key, origin=origin)
    nested: Dict[str, Dict[str, Any]] = {}
    for name, value in section.items():
        if not isinstance(value, dict):
            raise SettingsError(f"Section [{key}.{name}] in '{origin}' must be a table.")
        nested[str(name)] = dict(value)
    return nested


def _extract_store(raw: Mapping[str, Any], *, origin: Optional[Path]) -> StoreSettings:
    section = _table(raw, "store", origin=origin)
    backend = str(section.get("backend", "file")).lower()
    if backend not in _STORE_BACKENDS:
        raise SettingsError(f"Unknown store backend '{backend}' in '{origin}'. Expected one of: {', '.join(_STORE_BACKENDS)}.")
    if backend == "redis" and not section.get("url"):
        raise SettingsError(f"Store backend 'redis' in '{origin}' requires a url.")

    def _extract(key: str) -> Optional[str]:
        value = section.get(key)
        return str(value) if isinstance(value, str) and value else None

    return StoreSettings(backend=backend, path=_extract("path"), url=_extract("url"), prefix=_extract("prefix") or "broker:")


def parse_settings(data: Mapping[str, Any], *, source_path: Optional[Path] = None) -> SettingsBundle:
    """Build a :class:`SettingsBundle` from an already parsed document."""

    return SettingsBundle(
        source_path=source_path,
        data=dict(data),
        defaults=_table(data, "defaults", origin=source_path),
        types=_nested_tables(data, "types", origin=source_path),
        adapters=_nested_tables(data, "adapters", origin=source_path),
        store=_extract_store(data, origin=source_path),
        secrets=_nested_tables(data, "secrets", origin=source_path),
    )


def load_settings(strict: bool = False, *, path: Optional[Path] = None) -> SettingsBundle:
    """
    Attempt to load settings from the configured locations.

    Parameters
    ----------
    strict:
        When ``True`` the function raises ``FileNotFoundError`` if no settings file
        is discovered. Defaults to ``False`` so the CLI works with catalogue
        defaults only.
    path:
        Explicit settings file, bypassing discovery.
    """

    candidates = [path] if path is not None else list(_candidate_paths())
    for candidate in candidates:
        if candidate.is_file():
            return parse_settings(_load_toml(candidate), source_path=candidate)

    if strict:
        raise FileNotFoundError(f"No settings file found. Configure {_ENV_SETTINGS} or .broker/settings.toml.")

    return SettingsBundle(source_path=None, data={})
