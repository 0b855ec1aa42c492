"""
Execution context primitives shared across CLI commands and the adapter runtime.

The context describes which adapters are enabled, where durable state lives,
which settings were loaded and how commands should behave. Keeping it in one
structured object lets the CLI and long-running services share wiring code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import LoggerAdapter
from pathlib import Path
from typing import Mapping, MutableSet, Optional, Sequence

from ..config import SettingsBundle, load_settings
from .logging import get_logger as _get_logger


@dataclass(slots=True)
class ExecutionOptions:
    """
    Flags controlling how commands behave at runtime.

    Attributes
    ----------
    dry_run:
        When ``True`` commands only report what they would do; transports are
        not opened and no state is written.
    observability_tags:
        Additional tags surfaced in logs, e.g. a deployment or tenant label.
    """

    dry_run: bool = False
    observability_tags: Sequence[str] = field(default_factory=tuple)


@dataclass(slots=True)
class ExecutionContext:
    """
    Shared execution context across CLI commands.

    Attributes
    ----------
    enabled_adapters:
        IDs of adapters that are currently enabled. Commands treat this as the
        authoritative allowlist.
    state_dir:
        Root directory for cursors, dedup indexes, budgets and dead letters when
        the file store is used.
    settings:
        Parsed settings bundle (configuration overlays, store selection and
        per-adapter secrets).
    options:
        Auxiliary execution flags toggled by the caller or environment.
    """

    enabled_adapters: MutableSet[str]
    state_dir: Path
    settings: SettingsBundle
    options: ExecutionOptions = field(default_factory=ExecutionOptions)
    extra: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def build_default(
        cls,
        *,
        state_dir: Optional[Path] = None,
        enabled_adapters: Optional[Sequence[str]] = None,
        options: Optional[ExecutionOptions] = None,
        settings: Optional[SettingsBundle] = None,
    ) -> "ExecutionContext":
        """
        Construct a context using sensible defaults.

        Parameters
        ----------
        state_dir:
            Base directory for durable state. Defaults to ``.broker/state``
            relative to the current working directory.
        enabled_adapters:
            Optional iterable used to seed the allowlist. When omitted all
            adapters are implicitly enabled until a catalogue is consulted.
        options:
            Optional execution flags.
        settings:
            Preloaded settings bundle. When omitted the helper calls
            :func:`load_settings`.
        """

        resolved_state = state_dir or Path.cwd() / ".broker" / "state"
        resolved_state.mkdir(parents=True, exist_ok=True)
        return cls(
            enabled_adapters=set(enabled_adapters or []),
            state_dir=resolved_state,
            settings=settings or load_settings(strict=False),
            options=options or ExecutionOptions(),
        )

    def is_enabled(self, adapter_id: str) -> bool:
        """
        Check whether an adapter is enabled in the current context.

        When no allowlist has been declared every adapter counts as enabled.
        """

        if not self.enabled_adapters:
            return True
        return adapter_id in self.enabled_adapters

    def enable(self, adapter_id: str) -> None:
        self.enabled_adapters.add(adapter_id)

    def disable(self, adapter_id: str) -> None:
        self.enabled_adapters.discard(adapter_id)

    def get_logger(self, name: str, *, extra: Optional[Mapping[str, object]] = None) -> LoggerAdapter:
        """Return a logger adapter enriched with execution context observability tags."""

        tags = tuple(self.options.observability_tags)
        return _get_logger(name, tags=tags if tags else None, extra=extra)
