from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from core.models import IntegrationResponse, SystemHealth


class IntegrationManager(ABC):
    """
    Abstract gateway to the external tools the orchestrator can drive.

    There is one dispatch method per capability kind. Each returns an
    IntegrationResponse or raises a CapabilityError subclass.
    """

    @abstractmethod
    def get_system_health(self) -> SystemHealth:
        """Run the health checks of every enabled integration."""
        pass

    @abstractmethod
    def get_available_integrations(self) -> Dict[str, bool]:
        """Map each capability name to whether it is enabled."""
        pass

    @abstractmethod
    def trigger_workflow(self, workflow_id: str, data: Dict[str, Any]) -> IntegrationResponse:
        pass

    @abstractmethod
    def take_screenshot(
        self, url: str, options: Optional[Dict[str, Any]] = None
    ) -> IntegrationResponse:
        pass

    @abstractmethod
    def scrape_web_content(
        self, url: str, selectors: List[Dict[str, Any]]
    ) -> IntegrationResponse:
        pass

    @abstractmethod
    def store_structured(self, table: str, data: Dict[str, Any]) -> IntegrationResponse:
        pass

    @abstractmethod
    def get_business_data(
        self, doctype: str, filters: Optional[Dict[str, Any]] = None
    ) -> IntegrationResponse:
        pass
