"""
Execution contract and reference transports for integration broker adapters.

The :mod:`broker_adapters.contract` package holds the protocol-agnostic pieces
(configuration resolution, polling, delivery, retries, webhooks). Import
``AdapterRuntime`` from :mod:`broker_adapters.services` to wire catalogued
adapters to transports, sinks and durable state.
"""

from .contract import (
    AdapterError,
    Batch,
    Cursor,
    CursorKind,
    DeliveryExecutor,
    EffectiveConfig,
    PollingScheduler,
    Record,
    WebhookVerifier,
    resolve,
)
from .services import AdapterRuntime

__all__ = [
    "AdapterError",
    "AdapterRuntime",
    "Batch",
    "Cursor",
    "CursorKind",
    "DeliveryExecutor",
    "EffectiveConfig",
    "PollingScheduler",
    "Record",
    "WebhookVerifier",
    "resolve",
]
