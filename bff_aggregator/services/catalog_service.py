"""
Catalog service: loads the configuration surface and answers lookups.
"""

from pathlib import Path
from typing import Dict, List, Tuple

import structlog
from pydantic import ValidationError

from bff_aggregator.core.exceptions import CatalogError
from bff_aggregator.schemas.catalog import (
    AggregationPlan,
    Catalog,
    ClientProfile,
    RetryPolicy,
    ServiceConfig,
)

logger = structlog.get_logger(__name__)


def load_catalog(path: str | Path) -> Catalog:
    """
    Read and validate a catalog JSON document.

    Args:
        path: Location of the catalog file

    Returns:
        Validated, frozen catalog

    Raises:
        CatalogError: If the file is missing, unreadable or invalid
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogError(f"Cannot read catalog '{path}': {exc}") from exc

    try:
        catalog = Catalog.model_validate_json(raw)
    except ValidationError as exc:
        raise CatalogError(f"Invalid catalog '{path}': {exc}") from exc

    logger.info(
        "catalog_loaded",
        path=str(path),
        services=len(catalog.services),
        profiles=len(catalog.profiles),
        plans=len(catalog.plans),
    )
    return catalog


class CatalogService:
    """
    Read-only index over a validated catalog.

    Built once at startup and shared by every request without locking.
    """

    def __init__(self, catalog: Catalog):
        """
        Initialize the indexes.

        Args:
            catalog: Validated catalog
        """
        self.catalog = catalog
        self._profiles: Dict[str, ClientProfile] = {p.id: p for p in catalog.profiles}
        self._services: Dict[str, ServiceConfig] = {s.id: s for s in catalog.services}
        self._plans: Dict[Tuple[str, str | None], AggregationPlan] = {
            (plan.operation, plan.profile): plan for plan in catalog.plans
        }

    def get_profile(self, profile_id: str) -> ClientProfile | None:
        return self._profiles.get(profile_id)

    def get_plan(self, operation: str, profile_id: str | None) -> AggregationPlan | None:
        """Exact (operation, profile) lookup; ``profile_id=None`` is the default plan."""
        return self._plans.get((operation, profile_id))

    def get_service(self, service_id: str) -> ServiceConfig:
        return self._services[service_id]

    def get_retry_policy(self, policy_id: str) -> RetryPolicy:
        return self.catalog.retry_policies[policy_id]

    @property
    def profiles(self) -> List[ClientProfile]:
        return list(self.catalog.profiles)

    @property
    def services(self) -> List[ServiceConfig]:
        return list(self.catalog.services)

    @property
    def plans(self) -> List[AggregationPlan]:
        return list(self.catalog.plans)
