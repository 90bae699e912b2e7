from __future__ import annotations

import pytest

from core.config import IntegrationSettings
from core.errors import CapabilityDisabledError, CapabilityError, CapabilityNotRegisteredError
from core.models import CapabilityKind, ComponentHealth, HealthStatus, IntegrationResponse
from integrations.registry import RegistryIntegrationManager


def _all_enabled() -> IntegrationSettings:
    return IntegrationSettings(
        workflow_enabled=True,
        browser_enabled=True,
        structured_store_enabled=True,
        business_data_enabled=True,
    )


def test_disabled_family_rejects_dispatch() -> None:
    manager = RegistryIntegrationManager(IntegrationSettings())
    manager.register_handler(CapabilityKind.WORKFLOW, lambda **kw: {"ok": True})

    with pytest.raises(CapabilityDisabledError):
        manager.trigger_workflow("default", {})


def test_enabled_family_without_handler() -> None:
    manager = RegistryIntegrationManager(_all_enabled())

    with pytest.raises(CapabilityNotRegisteredError) as exc_info:
        manager.get_business_data("Customer")

    assert isinstance(exc_info.value, CapabilityError)


def test_plain_handler_results_are_wrapped() -> None:
    manager = RegistryIntegrationManager(_all_enabled())
    seen = {}

    def scrape(url, selectors):
        seen.update(url=url, selectors=selectors)
        return {"text": "hello"}

    manager.register_handler(CapabilityKind.BROWSER_SCRAPE, scrape)
    response = manager.scrape_web_content("https://example.org", [{"selector": "body"}])

    assert response.success
    assert response.data == {"text": "hello"}
    assert seen == {"url": "https://example.org", "selectors": [{"selector": "body"}]}


def test_integration_responses_pass_through() -> None:
    manager = RegistryIntegrationManager(_all_enabled())
    failed = IntegrationResponse(success=False, error="quota exceeded")
    manager.register_handler(CapabilityKind.STRUCTURED_STORE, lambda table, data: failed)

    assert manager.store_structured("task_results", {}) is failed


def test_optional_arguments_default_to_empty() -> None:
    manager = RegistryIntegrationManager(_all_enabled())
    manager.register_handler(CapabilityKind.BROWSER_CAPTURE, lambda url, options: options)
    manager.register_handler(CapabilityKind.BUSINESS_DATA, lambda doctype, filters: filters)

    assert manager.take_screenshot("https://example.org").data == {}
    assert manager.get_business_data("Item").data == {}


def test_available_integrations_reflect_settings() -> None:
    manager = RegistryIntegrationManager(IntegrationSettings(browser_enabled=True))

    assert manager.get_available_integrations() == {
        "workflow": False,
        "browser": True,
        "structured_store": False,
        "business_data": False,
    }


def test_health_aggregation() -> None:
    manager = RegistryIntegrationManager(_all_enabled())
    assert manager.get_system_health().overall == HealthStatus.DEGRADED

    for kind in CapabilityKind:
        manager.register_handler(kind, lambda **kw: None)
    health = manager.get_system_health()
    assert health.overall == HealthStatus.HEALTHY
    assert set(health.components) == {"workflow", "browser", "structured_store", "business_data"}

    def broken() -> ComponentHealth:
        raise ConnectionError("unreachable")

    manager.register_handler(CapabilityKind.WORKFLOW, lambda **kw: None, health_check=broken)
    health = manager.get_system_health()
    assert health.overall == HealthStatus.CRITICAL
    assert "unreachable" in health.components["workflow"].message


def test_disabled_families_are_left_out_of_health() -> None:
    manager = RegistryIntegrationManager(IntegrationSettings())

    health = manager.get_system_health()

    assert health.overall == HealthStatus.HEALTHY
    assert health.components == {}
