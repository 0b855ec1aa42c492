"""
Layered configuration resolution for adapter instances.

Every adapter activation resolves three layers of options (instance, connector
type, system default) into one immutable :class:`EffectiveConfig`. The option
table below is the single place where option keys, types and hard defaults are
declared; components read typed attributes rather than raw mappings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Type

from .errors import ConfigError, ConfigTypeMismatch
from .models import CursorKind


class ConfigScope(str, Enum):
    """Scope a configuration layer was declared at, narrowest first."""

    INSTANCE = "instance"
    TYPE_GLOBAL = "type_global"
    SYSTEM_DEFAULT = "system_default"


class BatchStrategy(str, Enum):
    SIZE_BASED = "size_based"
    TIME_BASED = "time_based"
    MIXED = "mixed"


class DedupStrategy(str, Enum):
    NAME = "name"
    CHECKSUM = "checksum"
    CONTENT = "content"
    NATURAL_KEY = "natural_key"


class ErrorHandlingStrategy(str, Enum):
    FAIL_FAST = "fail_fast"
    SKIP_ERRORS = "skip_errors"
    LOG_AND_CONTINUE = "log_and_continue"


class TransactionPolicy(str, Enum):
    """Commit boundary used by the delivery executor."""

    BATCH = "batch"
    RECORD = "record"


class FilePlacement(str, Enum):
    DIRECT = "direct"
    ATOMIC = "atomic"


class ProcessingMode(str, Enum):
    """Post-commit action applied by file-style inbound transports."""

    NONE = "none"
    DELETE = "delete"
    ARCHIVE = "archive"


class ChecksumAlgorithm(str, Enum):
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"


_ENUM_ALIASES: Mapping[Type[Enum], Mapping[str, str]] = {
    DedupStrategy: {"filename": "name", "file_name": "name", "natural-key": "natural_key", "key": "natural_key", "size": "checksum"},
    BatchStrategy: {"size": "size_based", "time": "time_based", "size-based": "size_based", "time-based": "time_based"},
    FilePlacement: {"temporary_then_move": "atomic", "temporary": "atomic", "in_place": "direct"},
    ProcessingMode: {"keep": "none", "move": "archive"},
    ChecksumAlgorithm: {"sha-1": "sha1", "sha-256": "sha256"},
}


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    """Named option mapping tagged with the scope it was declared at."""

    scope: ConfigScope
    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OptionSpec:
    """Declaration of a recognised option: camelCase key, attribute name, type and hard default."""

    key: str
    attr: str
    kind: str
    default: Any = None
    enum: Optional[Type[Enum]] = None
    minimum: Optional[float] = None


OPTIONS: Tuple[OptionSpec, ...] = (
    OptionSpec("enablePolling", "enable_polling", "bool", True),
    OptionSpec("pollingInterval", "polling_interval_ms", "int", 30000, minimum=1),
    OptionSpec("pollingSchedule", "polling_schedule", "str", None),
    OptionSpec("maxBatchSize", "max_batch_size", "int", 100, minimum=1),
    OptionSpec("maxBatchesPerPoll", "max_batches_per_poll", "int", 10, minimum=1),
    OptionSpec("operationTimeoutMs", "operation_timeout_ms", "int", 60000, minimum=1),
    OptionSpec("cursorType", "cursor_kind", "enum", CursorKind.TIMESTAMP, enum=CursorKind),
    OptionSpec("resetIncrementalOnStart", "reset_incremental_on_start", "bool", False),
    OptionSpec("maxRetryAttempts", "max_retry_attempts", "int", 3, minimum=0),
    OptionSpec("retryDelayMs", "retry_delay_ms", "int", 5000, minimum=0),
    OptionSpec("backoffMultiplier", "backoff_multiplier", "float", 2.0, minimum=1.0),
    OptionSpec("maxRetryDelayMs", "max_retry_delay_ms", "int", 60000, minimum=0),
    OptionSpec("retryJitter", "retry_jitter", "float", 0.0, minimum=0.0),
    OptionSpec("useExponentialBackoff", "use_exponential_backoff", "bool", True),
    OptionSpec("retryableErrorCodes", "retryable_error_codes", "list", ()),
    OptionSpec("maxErrorThreshold", "max_error_threshold", "int", 10, minimum=0),
    OptionSpec("errorWindowMs", "error_window_ms", "int", 3600000, minimum=1),
    OptionSpec("disableChannelOnExceed", "disable_on_exceed", "bool", True),
    OptionSpec("errorHandlingStrategy", "error_handling", "enum", ErrorHandlingStrategy.FAIL_FAST, enum=ErrorHandlingStrategy),
    OptionSpec("circuitBreakerThreshold", "circuit_breaker_threshold", "int", 5, minimum=0),
    OptionSpec("circuitBreakerResetMs", "circuit_breaker_reset_ms", "int", 60000, minimum=0),
    OptionSpec("enableDuplicateHandling", "enable_duplicate_handling", "bool", False),
    OptionSpec("duplicateDetectionStrategy", "duplicate_detection_strategy", "enum", DedupStrategy.NAME, enum=DedupStrategy),
    OptionSpec("idempotent", "idempotent", "bool", False),
    OptionSpec("idempotencyStrategy", "idempotency_strategy", "enum", DedupStrategy.NAME, enum=DedupStrategy),
    OptionSpec("checksumAlgorithm", "checksum_algorithm", "enum", ChecksumAlgorithm.MD5, enum=ChecksumAlgorithm),
    OptionSpec("dedupKeyFields", "dedup_key_fields", "list", ()),
    OptionSpec("dedupRetentionMs", "dedup_retention_ms", "int", 86400000, minimum=1),
    OptionSpec("enableBatching", "enable_batching", "bool", True),
    OptionSpec("batchStrategy", "batch_strategy", "enum", BatchStrategy.SIZE_BASED, enum=BatchStrategy),
    OptionSpec("batchSize", "batch_size", "int", 100, minimum=1),
    OptionSpec("batchTimeoutMs", "batch_timeout_ms", "int", 30000, minimum=1),
    OptionSpec("useTransactions", "use_transactions", "bool", True),
    OptionSpec("autoCommit", "auto_commit", "bool", False),
    OptionSpec("transactionIsolationLevel", "transaction_isolation_level", "str", None),
    OptionSpec("minPoolSize", "min_pool_size", "int", 1, minimum=0),
    OptionSpec("maxPoolSize", "max_pool_size", "int", 5, minimum=1),
    OptionSpec("connectionTimeoutMs", "connection_timeout_ms", "int", 30000, minimum=0),
    OptionSpec("idleTimeoutMs", "idle_timeout_ms", "int", 300000, minimum=1),
    OptionSpec("validateOnBorrow", "validate_on_borrow", "bool", False),
    OptionSpec("rateLimitPerSecond", "rate_limit_per_second", "int", None, minimum=1),
    OptionSpec("rateLimitPerMinute", "rate_limit_per_minute", "int", None, minimum=1),
    OptionSpec("rateLimitPerHour", "rate_limit_per_hour", "int", None, minimum=1),
    OptionSpec("rateLimitTimeoutMs", "rate_limit_timeout_ms", "int", 30000, minimum=0),
    OptionSpec("filePlacement", "file_placement", "enum", FilePlacement.ATOMIC, enum=FilePlacement),
    OptionSpec("temporaryFileExtension", "temporary_file_extension", "str", ".tmp"),
    OptionSpec("verifyFileSize", "verify_file_size", "bool", True),
    OptionSpec("processingMode", "processing_mode", "enum", ProcessingMode.NONE, enum=ProcessingMode),
    OptionSpec("webhookAlgorithm", "webhook_algorithm", "str", "sha256"),
    OptionSpec("webhookSignatureHeader", "webhook_signature_header", "str", "X-Hub-Signature-256"),
    OptionSpec("webhookTimestampHeader", "webhook_timestamp_header", "str", None),
    OptionSpec("webhookToleranceSeconds", "webhook_tolerance_seconds", "int", 300, minimum=0),
)

_OPTION_KEYS = frozenset(spec.key for spec in OPTIONS)


@dataclass(frozen=True, slots=True)
class EffectiveConfig:
    """
    Immutable, fully typed configuration for one adapter activation.

    Attributes mirror :data:`OPTIONS`. ``transport_options`` carries keys the
    contract does not recognise (hosts, paths, credentials) for the transport, and
    ``sources`` records which scope supplied each recognised option.
    """

    enable_polling: bool
    polling_interval_ms: int
    polling_schedule: Optional[str]
    max_batch_size: int
    max_batches_per_poll: int
    operation_timeout_ms: int
    cursor_kind: CursorKind
    reset_incremental_on_start: bool
    max_retry_attempts: int
    retry_delay_ms: int
    backoff_multiplier: float
    max_retry_delay_ms: int
    retry_jitter: float
    use_exponential_backoff: bool
    retryable_error_codes: Tuple[str, ...]
    max_error_threshold: int
    error_window_ms: int
    disable_on_exceed: bool
    error_handling: ErrorHandlingStrategy
    circuit_breaker_threshold: int
    circuit_breaker_reset_ms: int
    enable_duplicate_handling: bool
    duplicate_detection_strategy: DedupStrategy
    idempotent: bool
    idempotency_strategy: DedupStrategy
    checksum_algorithm: ChecksumAlgorithm
    dedup_key_fields: Tuple[str, ...]
    dedup_retention_ms: int
    enable_batching: bool
    batch_strategy: BatchStrategy
    batch_size: int
    batch_timeout_ms: int
    use_transactions: bool
    auto_commit: bool
    transaction_isolation_level: Optional[str]
    min_pool_size: int
    max_pool_size: int
    connection_timeout_ms: int
    idle_timeout_ms: int
    validate_on_borrow: bool
    rate_limit_per_second: Optional[int]
    rate_limit_per_minute: Optional[int]
    rate_limit_per_hour: Optional[int]
    rate_limit_timeout_ms: int
    file_placement: FilePlacement
    temporary_file_extension: str
    verify_file_size: bool
    processing_mode: ProcessingMode
    webhook_algorithm: str
    webhook_signature_header: str
    webhook_timestamp_header: Optional[str]
    webhook_tolerance_seconds: int
    transport_options: Mapping[str, Any] = field(default_factory=dict)
    sources: Mapping[str, str] = field(default_factory=dict)

    @property
    def transaction_policy(self) -> TransactionPolicy:
        """Batch = transaction unless transactions are off or every write auto-commits."""

        if self.use_transactions and not self.auto_commit:
            return TransactionPolicy.BATCH
        return TransactionPolicy.RECORD

    @property
    def operation_timeout(self) -> float:
        return self.operation_timeout_ms / 1000.0

    @property
    def connection_timeout(self) -> float:
        return self.connection_timeout_ms / 1000.0

    def option(self, key: str, default: Any = None) -> Any:
        """Look up a transport option by key."""

        return self.transport_options.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Return the resolved options keyed by their camelCase names."""

        payload: Dict[str, Any] = {}
        for spec in OPTIONS:
            value = getattr(self, spec.attr)
            if isinstance(value, Enum):
                value = value.name
            elif isinstance(value, tuple):
                value = list(value)
            payload[spec.key] = value
        payload["transportOptions"] = dict(self.transport_options)
        return payload


def _as_layer(layer: Mapping[str, Any] | ConfigLayer | None, scope: ConfigScope) -> ConfigLayer:
    if layer is None:
        return ConfigLayer(scope=scope)
    if isinstance(layer, ConfigLayer):
        return layer
    if not isinstance(layer, Mapping):
        raise ConfigError(f"{scope.value} configuration must be a mapping, got {type(layer).__name__}.")
    return ConfigLayer(scope=scope, values=dict(layer))


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on", "enabled"}:
            return True
        if lowered in {"0", "false", "no", "off", "disabled"}:
            return False
    return None


def _coerce_enum(enum_type: Type[Enum], value: Any) -> Optional[Enum]:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        return None
    token = value.strip().lower().replace(" ", "_")
    token = _ENUM_ALIASES.get(enum_type, {}).get(token, token)
    for member in enum_type:
        if token in (str(member.value).lower(), member.name.lower()):
            return member
    return None


def _coerce(spec: OptionSpec, value: Any) -> Any:
    kind = spec.kind
    if kind == "bool":
        resolved = _coerce_bool(value)
        if resolved is None:
            raise ConfigTypeMismatch(spec.key, value, "a boolean")
        return resolved
    if kind == "int":
        if isinstance(value, bool):
            raise ConfigTypeMismatch(spec.key, value, "an integer")
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        try:
            number = int(str(value).strip()) if isinstance(value, str) else int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigTypeMismatch(spec.key, value, "an integer") from exc
        if isinstance(value, float):
            raise ConfigTypeMismatch(spec.key, value, "an integer")
        return _check_minimum(spec, number)
    if kind == "float":
        if isinstance(value, bool):
            raise ConfigTypeMismatch(spec.key, value, "a number")
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigTypeMismatch(spec.key, value, "a number") from exc
        return _check_minimum(spec, number)
    if kind == "str":
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            text = str(value).strip()
            return text or spec.default
        raise ConfigTypeMismatch(spec.key, value, "a string")
    if kind == "list":
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(str(item) for item in value)
        raise ConfigTypeMismatch(spec.key, value, "a list of strings")
    if kind == "enum":
        if spec.enum is None:
            raise ConfigError(f"Option '{spec.key}' declares kind 'enum' without members.")
        member = _coerce_enum(spec.enum, value)
        if member is None:
            choices = ", ".join(item.name for item in spec.enum)
            raise ConfigTypeMismatch(spec.key, value, f"one of {choices}")
        return member
    raise ConfigError(f"Unsupported option kind '{kind}' for '{spec.key}'.")


def _check_minimum(spec: OptionSpec, number: Any) -> Any:
    if spec.minimum is not None and number < spec.minimum:
        raise ConfigTypeMismatch(spec.key, number, f"a value >= {spec.minimum:g}")
    return number


def resolve(
    instance_config: Mapping[str, Any] | ConfigLayer | None,
    type_global_config: Mapping[str, Any] | ConfigLayer | None = None,
    system_defaults: Mapping[str, Any] | ConfigLayer | None = None,
) -> EffectiveConfig:
    """
    Merge the three configuration layers into an :class:`EffectiveConfig`.

    Parameters
    ----------
    instance_config:
        Options declared on the adapter instance itself.
    type_global_config:
        Options shared by every adapter of the same connector type.
    system_defaults:
        Platform-wide defaults.

    For each recognised option the first non-``None`` value in the order
    instance, type-global, system-default wins; absent options fall back to the
    hard default in :data:`OPTIONS`. Missing keys never raise; a present value
    that cannot be coerced raises :class:`ConfigTypeMismatch`.
    """

    layers: Sequence[ConfigLayer] = (
        _as_layer(instance_config, ConfigScope.INSTANCE),
        _as_layer(type_global_config, ConfigScope.TYPE_GLOBAL),
        _as_layer(system_defaults, ConfigScope.SYSTEM_DEFAULT),
    )

    values: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    for spec in OPTIONS:
        for layer in layers:
            raw = layer.values.get(spec.key)
            if raw is None:
                continue
            values[spec.attr] = _coerce(spec, raw)
            sources[spec.key] = layer.scope.value
            break
        else:
            values[spec.attr] = spec.default
            sources[spec.key] = "default"

    transport_options: Dict[str, Any] = {}
    for layer in reversed(layers):
        for key, raw in layer.values.items():
            if key not in _OPTION_KEYS and raw is not None:
                transport_options[key] = raw

    config = EffectiveConfig(**values, transport_options=transport_options, sources=sources)
    _validate(config)
    return config


def default_config(**overrides: Any) -> EffectiveConfig:
    """Resolve hard defaults with optional camelCase overrides in the instance layer."""

    return resolve(overrides)


def _validate(config: EffectiveConfig) -> None:
    if config.min_pool_size > config.max_pool_size:
        raise ConfigError(f"minPoolSize ({config.min_pool_size}) exceeds maxPoolSize ({config.max_pool_size}).")
    if config.retry_jitter > 1.0:
        raise ConfigTypeMismatch("retryJitter", config.retry_jitter, "a fraction between 0 and 1")
    for strategy in (config.duplicate_detection_strategy, config.idempotency_strategy):
        if strategy == DedupStrategy.NATURAL_KEY and not config.dedup_key_fields:
            raise ConfigError("NATURAL_KEY deduplication requires dedupKeyFields.")
