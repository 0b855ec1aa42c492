"""
Service-layer helpers orchestrating the catalogue, transports and execution context.
"""

from .runtime import DEFAULT_TRANSPORTS, AdapterInstance, AdapterRuntime

__all__ = ["AdapterInstance", "AdapterRuntime", "DEFAULT_TRANSPORTS"]
