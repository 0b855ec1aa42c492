from __future__ import annotations

import pytest

from broker_adapters.contract import (
    BatchStrategy,
    ConfigError,
    ConfigLayer,
    ConfigScope,
    ConfigTypeMismatch,
    CursorKind,
    DedupStrategy,
    ErrorHandlingStrategy,
    FilePlacement,
    TransactionPolicy,
    default_config,
    resolve,
)


def test_resolve_prefers_narrowest_scope():
    config = resolve(
        {"maxBatchSize": 10},
        {"maxBatchSize": 50, "retryDelayMs": 250},
        {"maxBatchSize": 500, "retryDelayMs": 1000, "maxRetryAttempts": 7},
    )

    assert config.max_batch_size == 10
    assert config.retry_delay_ms == 250
    assert config.max_retry_attempts == 7
    assert config.sources["maxBatchSize"] == ConfigScope.INSTANCE.value
    assert config.sources["retryDelayMs"] == ConfigScope.TYPE_GLOBAL.value
    assert config.sources["maxRetryAttempts"] == ConfigScope.SYSTEM_DEFAULT.value
    assert config.sources["batchSize"] == "default"


def test_missing_keys_fall_back_to_hard_defaults():
    config = resolve(None)

    assert config.polling_interval_ms == 30000
    assert config.max_batch_size == 100
    assert config.cursor_kind == CursorKind.TIMESTAMP
    assert config.error_handling == ErrorHandlingStrategy.FAIL_FAST
    assert config.file_placement == FilePlacement.ATOMIC
    assert config.polling_schedule is None


def test_none_values_do_not_shadow_wider_scopes():
    config = resolve({"batchSize": None}, {"batchSize": 25})

    assert config.batch_size == 25


def test_accepts_config_layer_instances():
    layer = ConfigLayer(scope=ConfigScope.INSTANCE, values={"batchStrategy": "time"})

    assert resolve(layer).batch_strategy == BatchStrategy.TIME_BASED


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("SKIP_ERRORS", ErrorHandlingStrategy.SKIP_ERRORS),
        ("skip_errors", ErrorHandlingStrategy.SKIP_ERRORS),
        ("Log And Continue", ErrorHandlingStrategy.LOG_AND_CONTINUE),
    ],
)
def test_enum_coercion_is_case_insensitive(raw, expected):
    assert default_config(errorHandlingStrategy=raw).error_handling == expected


def test_enum_aliases():
    config = default_config(duplicateDetectionStrategy="filename", filePlacement="temporary_then_move")

    assert config.duplicate_detection_strategy == DedupStrategy.NAME
    assert config.file_placement == FilePlacement.ATOMIC


def test_string_values_are_coerced():
    config = default_config(enablePolling="false", maxBatchSize="20", backoffMultiplier="1.5", retryableErrorCodes="502, 503")

    assert config.enable_polling is False
    assert config.max_batch_size == 20
    assert config.backoff_multiplier == 1.5
    assert config.retryable_error_codes == ("502", "503")


@pytest.mark.parametrize(
    "overrides",
    [
        {"maxBatchSize": "lots"},
        {"maxBatchSize": 2.5},
        {"enablePolling": "maybe"},
        {"errorHandlingStrategy": "IGNORE"},
        {"maxBatchSize": 0},
        {"retryableErrorCodes": 42},
    ],
)
def test_invalid_values_raise_type_mismatch(overrides):
    with pytest.raises(ConfigTypeMismatch) as excinfo:
        default_config(**overrides)

    assert next(iter(overrides)) in str(excinfo.value)


def test_bool_is_not_accepted_as_integer():
    with pytest.raises(ConfigTypeMismatch):
        default_config(batchSize=True)


def test_unknown_keys_become_transport_options():
    config = resolve({"directory": "/data/in"}, {"directory": "/data/default", "pattern": "*.csv"})

    assert config.option("directory") == "/data/in"
    assert config.option("pattern") == "*.csv"
    assert config.option("missing", "fallback") == "fallback"
    assert "maxBatchSize" not in config.transport_options


def test_transaction_policy_follows_transaction_flags():
    assert default_config().transaction_policy == TransactionPolicy.BATCH
    assert default_config(autoCommit=True).transaction_policy == TransactionPolicy.RECORD
    assert default_config(useTransactions=False).transaction_policy == TransactionPolicy.RECORD


def test_pool_bounds_are_validated():
    with pytest.raises(ConfigError, match="minPoolSize"):
        default_config(minPoolSize=4, maxPoolSize=2)


def test_natural_key_requires_key_fields():
    with pytest.raises(ConfigError, match="dedupKeyFields"):
        default_config(duplicateDetectionStrategy="NATURAL_KEY")

    config = default_config(duplicateDetectionStrategy="NATURAL_KEY", dedupKeyFields=["tenant", "order"])
    assert config.dedup_key_fields == ("tenant", "order")


def test_layer_must_be_mapping():
    with pytest.raises(ConfigError):
        resolve(["not", "a", "mapping"])


def test_to_dict_uses_option_keys_and_enum_names():
    payload = default_config(batchStrategy="MIXED", directory="/out").to_dict()

    assert payload["batchStrategy"] == "MIXED"
    assert payload["retryableErrorCodes"] == []
    assert payload["transportOptions"] == {"directory": "/out"}


def test_timeouts_are_exposed_in_seconds():
    config = default_config(operationTimeoutMs=1500, connectionTimeoutMs=250)

    assert config.operation_timeout == 1.5
    assert config.connection_timeout == 0.25
