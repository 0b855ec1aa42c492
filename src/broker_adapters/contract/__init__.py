"""
Adapter execution contract.

Protocol-agnostic components every transport runs under: layered configuration,
connection leasing, cursors and dedup, inbound polling, outbound delivery,
retries with an error budget, rate limiting and webhook verification.
"""

from .cursors import CursorStore
from .dedup import DedupIndex, DedupKey, derive_key
from .delivery import DeliveryExecutor, DeliveryOutcome, DeliveryState, DeliveryStatus
from .errors import (
    AdapterDisabled,
    AdapterError,
    CircuitOpen,
    ConfigError,
    ConfigTypeMismatch,
    ErrorBudgetExceeded,
    ErrorClass,
    Exhausted,
    FatalTransportError,
    HandOffRejected,
    OperationCancelled,
    PoolExhausted,
    RateLimited,
    RetryableTransportError,
    TransportError,
    classify_error,
)
from .leases import ConnectionLease, ConnectionLeaseManager
from .models import Batch, CommitResult, Cursor, CursorError, CursorKind, Record
from .options import (
    BatchStrategy,
    ChecksumAlgorithm,
    ConfigLayer,
    ConfigScope,
    DedupStrategy,
    EffectiveConfig,
    ErrorHandlingStrategy,
    FilePlacement,
    ProcessingMode,
    TransactionPolicy,
    default_config,
    resolve,
)
from .polling import PollingScheduler, PollOutcome, SchedulerState, TickStatus
from .rate_limit import RateLimiter, TokenBucket
from .retry import CircuitBreaker, CircuitState, Deadline, ErrorBudget, RetryPolicy, RetryState
from .staging import LocalStagingFileSystem, StagingFileSystem, stage_then_rename
from .stores import JsonFileStateStore, MemoryStateStore, RedisStateStore, StateStore, StoreError, build_store
from .webhooks import WebhookIngestor, WebhookResult, WebhookStatus, WebhookVerifier

__all__ = [
    "AdapterDisabled",
    "AdapterError",
    "Batch",
    "BatchStrategy",
    "ChecksumAlgorithm",
    "CircuitBreaker",
    "CircuitOpen",
    "CircuitState",
    "CommitResult",
    "ConfigError",
    "ConfigLayer",
    "ConfigScope",
    "ConfigTypeMismatch",
    "ConnectionLease",
    "ConnectionLeaseManager",
    "Cursor",
    "CursorError",
    "CursorKind",
    "CursorStore",
    "Deadline",
    "DedupIndex",
    "DedupKey",
    "DedupStrategy",
    "DeliveryExecutor",
    "DeliveryOutcome",
    "DeliveryState",
    "DeliveryStatus",
    "EffectiveConfig",
    "ErrorBudget",
    "ErrorBudgetExceeded",
    "ErrorClass",
    "ErrorHandlingStrategy",
    "Exhausted",
    "FatalTransportError",
    "FilePlacement",
    "HandOffRejected",
    "JsonFileStateStore",
    "LocalStagingFileSystem",
    "MemoryStateStore",
    "OperationCancelled",
    "PollOutcome",
    "PollingScheduler",
    "PoolExhausted",
    "ProcessingMode",
    "RateLimited",
    "RateLimiter",
    "Record",
    "RedisStateStore",
    "RetryPolicy",
    "RetryState",
    "RetryableTransportError",
    "SchedulerState",
    "StagingFileSystem",
    "StateStore",
    "StoreError",
    "TickStatus",
    "TokenBucket",
    "TransactionPolicy",
    "TransportError",
    "WebhookIngestor",
    "WebhookResult",
    "WebhookStatus",
    "WebhookVerifier",
    "build_store",
    "classify_error",
    "default_config",
    "derive_key",
    "resolve",
    "stage_then_rename",
]
