"""
Core infrastructure modules shared across broker adapter tooling.

This package exposes the adapter catalogue, execution context management and
logging helpers used by the runtime and the CLI.
"""

from .context import ExecutionContext, ExecutionOptions
from .logging import bind_adapter, bind_tags, configure_logging, get_logger, log_progress
from .registry import (
    AdapterDescriptor,
    AdapterDirection,
    AdapterRegistry,
    AdapterStatus,
    RegistryLoadError,
)

__all__ = [
    "ExecutionContext",
    "ExecutionOptions",
    "AdapterDescriptor",
    "AdapterDirection",
    "AdapterRegistry",
    "AdapterStatus",
    "RegistryLoadError",
    "get_logger",
    "configure_logging",
    "bind_adapter",
    "bind_tags",
    "log_progress",
]
