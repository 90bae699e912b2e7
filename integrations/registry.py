from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from core.config import IntegrationSettings
from core.errors import CapabilityDisabledError, CapabilityNotRegisteredError
from core.models import (
    CapabilityKind,
    ComponentHealth,
    HealthStatus,
    IntegrationResponse,
    SystemHealth,
    utc_now,
)
from core.observability import get_logger
from integrations.base import IntegrationManager


logger = get_logger(__name__)

CapabilityHandler = Callable[..., Any]
HealthCheck = Callable[[], ComponentHealth]

# Enable flags are per integration family; the browser family serves two kinds.
CAPABILITY_FAMILIES: Dict[CapabilityKind, str] = {
    CapabilityKind.WORKFLOW: "workflow",
    CapabilityKind.BROWSER_CAPTURE: "browser",
    CapabilityKind.BROWSER_SCRAPE: "browser",
    CapabilityKind.STRUCTURED_STORE: "structured_store",
    CapabilityKind.BUSINESS_DATA: "business_data",
}


class RegistryIntegrationManager(IntegrationManager):
    """
    IntegrationManager backed by per-capability handler callables.

    Concrete tool clients register a handler for the capability kinds they
    serve. Dispatching to a disabled family raises CapabilityDisabledError;
    dispatching to an enabled family without a handler raises
    CapabilityNotRegisteredError.
    """

    def __init__(self, settings: Optional[IntegrationSettings] = None) -> None:
        settings = settings or IntegrationSettings()
        self._enabled: Dict[str, bool] = {
            "workflow": settings.workflow_enabled,
            "browser": settings.browser_enabled,
            "structured_store": settings.structured_store_enabled,
            "business_data": settings.business_data_enabled,
        }
        self._handlers: Dict[CapabilityKind, CapabilityHandler] = {}
        self._health_checks: Dict[str, HealthCheck] = {}

    def register_handler(
        self,
        kind: CapabilityKind,
        handler: CapabilityHandler,
        health_check: Optional[HealthCheck] = None,
    ) -> None:
        self._handlers[kind] = handler
        if health_check is not None:
            self._health_checks[CAPABILITY_FAMILIES[kind]] = health_check

    def get_available_integrations(self) -> Dict[str, bool]:
        return dict(self._enabled)

    def get_system_health(self) -> SystemHealth:
        components: Dict[str, ComponentHealth] = {}
        for family, enabled in self._enabled.items():
            if not enabled:
                continue
            components[family] = self._check_family(family)

        statuses = {component.status for component in components.values()}
        if HealthStatus.CRITICAL in statuses:
            overall = HealthStatus.CRITICAL
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return SystemHealth(overall=overall, components=components, last_check=utc_now())

    def _check_family(self, family: str) -> ComponentHealth:
        check = self._health_checks.get(family)
        if check is not None:
            try:
                return check()
            except Exception as exc:
                return ComponentHealth(
                    status=HealthStatus.CRITICAL,
                    message=f"Health check failed: {exc}",
                )

        served = [kind for kind, fam in CAPABILITY_FAMILIES.items() if fam == family]
        if any(kind in self._handlers for kind in served):
            return ComponentHealth(status=HealthStatus.HEALTHY)
        return ComponentHealth(
            status=HealthStatus.DEGRADED,
            message="Enabled but no handler registered",
        )

    # ------------------------------------------------------------------
    # Capability dispatch
    # ------------------------------------------------------------------

    def trigger_workflow(self, workflow_id: str, data: Dict[str, Any]) -> IntegrationResponse:
        return self._dispatch(CapabilityKind.WORKFLOW, workflow_id=workflow_id, data=data)

    def take_screenshot(
        self, url: str, options: Optional[Dict[str, Any]] = None
    ) -> IntegrationResponse:
        return self._dispatch(CapabilityKind.BROWSER_CAPTURE, url=url, options=options or {})

    def scrape_web_content(
        self, url: str, selectors: List[Dict[str, Any]]
    ) -> IntegrationResponse:
        return self._dispatch(CapabilityKind.BROWSER_SCRAPE, url=url, selectors=selectors)

    def store_structured(self, table: str, data: Dict[str, Any]) -> IntegrationResponse:
        return self._dispatch(CapabilityKind.STRUCTURED_STORE, table=table, data=data)

    def get_business_data(
        self, doctype: str, filters: Optional[Dict[str, Any]] = None
    ) -> IntegrationResponse:
        return self._dispatch(CapabilityKind.BUSINESS_DATA, doctype=doctype, filters=filters or {})

    def _dispatch(self, kind: CapabilityKind, **params: Any) -> IntegrationResponse:
        family = CAPABILITY_FAMILIES[kind]
        if not self._enabled.get(family, False):
            raise CapabilityDisabledError(f"{family} integration is disabled")

        handler = self._handlers.get(kind)
        if handler is None:
            raise CapabilityNotRegisteredError(f"No handler registered for {kind.value}")

        started = time.perf_counter()
        result = handler(**params)
        duration_ms = (time.perf_counter() - started) * 1000

        logger.debug("capability_dispatched", capability=kind.value, duration_ms=duration_ms)
        if isinstance(result, IntegrationResponse):
            return result
        return IntegrationResponse(success=True, data=result, duration_ms=duration_ms)
