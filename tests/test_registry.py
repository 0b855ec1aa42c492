from __future__ import annotations

import pytest

from broker_adapters.contract import resolve
from broker_adapters.core.registry import AdapterDirection, AdapterRegistry, AdapterStatus, RegistryLoadError


def test_registry_load_catalogue(catalog_file):
    registry = AdapterRegistry.from_yaml(catalog_file)

    orders = registry.require("orders-inbox")
    assert orders.direction == AdapterDirection.INBOUND
    assert "orders" in orders.tags
    partner = registry.require("partner-sftp")
    assert partner.status == AdapterStatus.TRIAL
    blocked = registry.require("legacy-erp")
    assert blocked.status.name == "BLOCKED"
    assert blocked.blocked_reason


def test_iter_enabled_skips_blocked(catalog_file):
    registry = AdapterRegistry.from_yaml(catalog_file)

    enabled = {descriptor.adapter_id for descriptor in registry.iter_enabled()}
    audited = {descriptor.adapter_id for descriptor in registry.iter_enabled(allow_blocked=True)}

    assert "legacy-erp" not in enabled
    assert audited - enabled == {"legacy-erp"}


def test_list_filters_by_status_and_direction(catalog_file):
    registry = AdapterRegistry.from_yaml(catalog_file)

    outbound = [item.adapter_id for item in registry.list(direction=AdapterDirection.OUTBOUND)]
    trial = [item.adapter_id for item in registry.list(status=AdapterStatus.TRIAL)]

    assert outbound == ["invoices-outbox", "partner-sftp", "legacy-erp"]
    assert trial == ["partner-sftp"]


def test_layers_resolve_with_precedence(catalog_file):
    registry = AdapterRegistry.from_yaml(catalog_file)

    instance, type_global, system = registry.layers_for("crm-contacts", type_overrides={"rateLimitPerSecond": 2})
    config = resolve(instance, type_global, system)

    assert config.polling_schedule == "*/5 * * * *"
    assert config.sources["pollingSchedule"] == "instance"
    assert config.rate_limit_per_second == 2
    assert config.sources["rateLimitPerSecond"] == "type_global"
    assert config.max_retry_attempts == 3
    assert config.sources["maxRetryAttempts"] == "system_default"
    assert config.transport_options["baseUrl"] == "https://crm.example.com/api"


def test_require_unknown_adapter():
    with pytest.raises(KeyError):
        AdapterRegistry().require("missing")


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "a", "mapping"],
        {"defaults": []},
        {"types": {"file": "nope"}},
        {"adapters": {"id": "x"}},
        {"adapters": [{"id": "x"}]},
        {"adapters": [{"id": "x", "type": "file", "direction": "sideways"}]},
        {"adapters": [{"id": "9lives", "type": "file"}]},
        {"adapters": [{"id": "x", "type": "file", "status": "blocked"}]},
        {"adapters": [{"id": "x", "type": "file", "config": "dir=/tmp"}]},
        {"adapters": [{"id": "x", "type": "file"}, {"id": "x", "type": "http"}]},
    ],
)
def test_invalid_catalogues_are_rejected(payload):
    with pytest.raises(RegistryLoadError):
        AdapterRegistry.from_payload(payload)


def test_missing_and_unparseable_files(tmp_path):
    broken = tmp_path / "catalog.yaml"
    broken.write_text("adapters: [unclosed", encoding="utf-8")

    with pytest.raises(RegistryLoadError):
        AdapterRegistry.from_yaml(tmp_path / "absent.yaml")
    with pytest.raises(RegistryLoadError):
        AdapterRegistry.from_yaml(broken)


def test_descriptor_serialisation(catalog_file):
    payload = AdapterRegistry.from_yaml(catalog_file).require("invoices-outbox").to_dict()

    assert payload["id"] == "invoices-outbox"
    assert payload["direction"] == "outbound"
    assert payload["config"]["batchStrategy"] == "MIXED"
