"""
Adapter catalogue declarations and helpers.

The catalogue is the authoritative list of adapter instances the broker runs.
Each entry captures human-authored metadata (status, description, tags) and the
instance configuration layer. The document also carries the system-default
layer and per-type layers consumed by :func:`broker_adapters.contract.options.resolve`.

Descriptors are loaded from YAML so operators can maintain the catalogue
without touching Python code while callers still get typed access.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, MutableMapping, Optional, Sequence, Tuple

import yaml

from ..contract.errors import ConfigError

_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]*$")


class RegistryLoadError(ConfigError):
    """Raised when a catalogue YAML file cannot be parsed or validated."""


class AdapterDirection(str, Enum):
    """Whether the adapter pulls from or pushes to the external system."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class AdapterStatus(str, Enum):
    """Lifecycle state for individual adapter instances."""

    ACTIVE = "active"
    TRIAL = "trial"
    DEPRECATED = "deprecated"
    BLOCKED = "blocked"


@dataclass(slots=True)
class AdapterDescriptor:
    """
    Metadata and configuration associated with a single adapter instance.

    Parameters
    ----------
    adapter_id:
        Unique identifier used for cursors, dedup keys and budgets.
    name:
        Human-friendly display name.
    adapter_type:
        Connector type (``file``, ``sftp``, ``http``). Selects the transport and
        the type-global configuration layer.
    direction:
        Inbound (polling or webhook) or outbound (delivery).
    description:
        Short summary of the integration.
    status:
        Lifecycle status. ``blocked`` entries must include ``blocked_reason``.
    blocked_reason:
        Additional context when an adapter is deliberately disabled.
    capabilities:
        Free-form feature flags such as ``webhook`` or ``atomic-commit``.
    tags:
        Keywords for quick filtering.
    config:
        Instance configuration layer (camelCase option keys plus transport
        options such as ``directory`` or ``baseUrl``).
    """

    adapter_id: str
    name: str
    adapter_type: str
    direction: AdapterDirection
    description: str = ""
    status: AdapterStatus = AdapterStatus.ACTIVE
    blocked_reason: Optional[str] = None
    capabilities: Sequence[str] = field(default_factory=tuple)
    tags: Sequence[str] = field(default_factory=tuple)
    config: Mapping[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Validate internal consistency of the descriptor."""

        if self.status == AdapterStatus.BLOCKED and not self.blocked_reason:
            raise RegistryLoadError(f"Adapter '{self.adapter_id}' is blocked but missing a blocked_reason.")
        if not self.adapter_id or not _ID_PATTERN.match(self.adapter_id):
            raise RegistryLoadError(f"Adapter '{self.adapter_id}' must start with a letter and contain only letters, digits, '.', '-' or '_'.")
        if not self.adapter_type:
            raise RegistryLoadError(f"Adapter '{self.adapter_id}' is missing a type.")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.adapter_id,
            "name": self.name,
            "type": self.adapter_type,
            "direction": self.direction.value,
            "description": self.description,
            "status": self.status.value,
            "blocked_reason": self.blocked_reason,
            "capabilities": list(self.capabilities),
            "tags": list(self.tags),
            "config": dict(self.config),
        }

    def to_json(self) -> str:
        """Return a JSON representation useful for CLI output."""

        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2, default=str)


class AdapterRegistry:
    """In-memory catalogue of :class:`AdapterDescriptor` entries plus shared configuration layers."""

    def __init__(self, *, defaults: Optional[Mapping[str, Any]] = None, types: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._entries: MutableMapping[str, AdapterDescriptor] = {}
        self.defaults: Dict[str, Any] = dict(defaults or {})
        self.types: Dict[str, Dict[str, Any]] = {name: dict(values) for name, values in (types or {}).items()}

    def register(self, descriptor: AdapterDescriptor) -> None:
        """Register or overwrite a descriptor in the catalogue."""

        descriptor.validate()
        self._entries[descriptor.adapter_id] = descriptor

    def unregister(self, adapter_id: str) -> None:
        self._entries.pop(adapter_id, None)

    def get(self, adapter_id: str) -> Optional[AdapterDescriptor]:
        return self._entries.get(adapter_id)

    def require(self, adapter_id: str) -> AdapterDescriptor:
        """Retrieve a descriptor or raise an informative error."""

        descriptor = self.get(adapter_id)
        if descriptor is None:
            raise KeyError(f"Adapter '{adapter_id}' is not registered.")
        return descriptor

    def list(self, *, status: Optional[AdapterStatus] = None, direction: Optional[AdapterDirection] = None) -> List[AdapterDescriptor]:
        """Return registered descriptors optionally filtered by status and direction."""

        items = list(self._entries.values())
        if status:
            items = [item for item in items if item.status == status]
        if direction:
            items = [item for item in items if item.direction == direction]
        return items

    def iter_enabled(self, *, allow_blocked: bool = False) -> Iterator[AdapterDescriptor]:
        """
        Iterate enabled descriptors.

        Parameters
        ----------
        allow_blocked:
            When ``True`` blocked entries are included. This is primarily useful
            for auditing commands.
        """

        for descriptor in self._entries.values():
            if descriptor.status == AdapterStatus.BLOCKED and not allow_blocked:
                continue
            yield descriptor

    def layers_for(
        self,
        adapter_id: str,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
        type_overrides: Optional[Mapping[str, Any]] = None,
        instance_overrides: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
        """
        Return the ``(instance, type_global, system_default)`` layers of an adapter.

        Each optional override mapping (typically taken from the settings file)
        overlays the corresponding catalogue layer key by key.
        """

        descriptor = self.require(adapter_id)
        instance = {**dict(descriptor.config), **dict(instance_overrides or {})}
        type_global = {**self.types.get(descriptor.adapter_type, {}), **dict(type_overrides or {})}
        system = {**self.defaults, **dict(defaults or {})}
        return instance, type_global, system

    @classmethod
    def from_yaml(cls, path: Path | str) -> "AdapterRegistry":
        """Load descriptors from a YAML document."""

        location = Path(path)
        if not location.exists():
            raise RegistryLoadError(f"Catalogue file '{location}' does not exist.")

        try:
            with location.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise RegistryLoadError(f"Failed to parse '{location}': {exc}") from exc

        return cls.from_payload(payload, origin=location)

    @classmethod
    def from_payload(cls, payload: Any, *, origin: Path | str = "<memory>") -> "AdapterRegistry":
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise RegistryLoadError(f"Catalogue '{origin}' must be a mapping with 'defaults', 'types' and 'adapters'.")

        defaults = payload.get("defaults") or {}
        types = payload.get("types") or {}
        adapters = payload.get("adapters") or []
        if not isinstance(defaults, dict):
            raise RegistryLoadError(f"'defaults' in '{origin}' must be a mapping.")
        if not isinstance(types, dict) or not all(isinstance(value, dict) for value in types.values()):
            raise RegistryLoadError(f"'types' in '{origin}' must map type names to option mappings.")
        if not isinstance(adapters, list):
            raise RegistryLoadError(f"'adapters' in '{origin}' must contain a list of adapters.")

        registry = cls(defaults=defaults, types=types)
        for entry in adapters:
            descriptor = cls._descriptor_from_payload(entry, origin=origin)
            if registry.get(descriptor.adapter_id) is not None:
                raise RegistryLoadError(f"Duplicate adapter id '{descriptor.adapter_id}' in '{origin}'.")
            registry.register(descriptor)
        return registry

    @staticmethod
    def _descriptor_from_payload(entry: Any, *, origin: Path | str) -> AdapterDescriptor:
        """Convert a YAML mapping into a descriptor instance."""

        if not isinstance(entry, dict):
            raise RegistryLoadError(f"Invalid entry in '{origin}': expected mapping, got {type(entry)!r}")

        config = entry.get("config") or {}
        if not isinstance(config, dict):
            raise RegistryLoadError(f"'config' of adapter '{entry.get('id')}' in '{origin}' must be a mapping.")
        try:
            descriptor = AdapterDescriptor(
                adapter_id=str(entry["id"]),
                name=str(entry.get("name", entry["id"])),
                adapter_type=str(entry["type"]).lower(),
                direction=AdapterDirection(str(entry.get("direction", AdapterDirection.INBOUND.value)).lower()),
                description=str(entry.get("description", "")),
                status=AdapterStatus(str(entry.get("status", AdapterStatus.ACTIVE.value)).lower()),
                blocked_reason=_optional_str(entry.get("blocked_reason")),
                capabilities=tuple(_ensure_list(entry.get("capabilities"))),
                tags=tuple(_ensure_list(entry.get("tags"))),
                config=dict(config),
            )
        except KeyError as exc:
            raise RegistryLoadError(f"Missing required key {exc!s} in '{origin}'.") from exc
        except ValueError as exc:
            raise RegistryLoadError(f"Invalid field in '{origin}': {exc}") from exc

        descriptor.validate()
        return descriptor


def _ensure_list(value: object | None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value]
    return [str(value)]


def _optional_str(value: object | None) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
