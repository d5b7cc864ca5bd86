"""
Storage seams for the resolver.

The resolver only talks to these protocols. SQLAlchemy Core implementations
live next to the services that own each table; tests can hand in fakes.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from entitlement_engine.models.boost import Boost
from entitlement_engine.models.feature import Feature
from entitlement_engine.models.package import Package
from entitlement_engine.models.usage import UsageEvent
from entitlement_engine.models.workspace_package import WorkspacePackage


@runtime_checkable
class FeatureStore(Protocol):
    def get(self, code: str) -> Optional[Feature]:
        ...

    def get_many(self, codes: Iterable[str]) -> Dict[str, Feature]:
        ...


@runtime_checkable
class PackageStore(Protocol):
    def get_many(self, codes: Iterable[str]) -> Dict[str, Package]:
        ...


@runtime_checkable
class WorkspacePackageStore(Protocol):
    def active_for(self, workspace_id: str) -> List[WorkspacePackage]:
        """Rows with status=active, expiry not yet applied."""
        ...


@runtime_checkable
class BoostStore(Protocol):
    def active_for(self, workspace_id: str, feature_code: Optional[str] = None) -> List[Boost]:
        """Rows with status=active, expiry not yet applied."""
        ...


@runtime_checkable
class UsageCounterStore(Protocol):
    def get_used(self, workspace_id: str, feature_code: str, period_key: str) -> int:
        ...

    def increment(
        self,
        workspace_id: str,
        feature_code: str,
        period_key: str,
        quantity: int,
        *,
        now: datetime,
        actor: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> UsageEvent:
        ...

    def increment_if_under_limit(
        self,
        workspace_id: str,
        feature_code: str,
        period_key: str,
        quantity: int,
        limit: int,
        *,
        now: datetime,
        actor: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[UsageEvent]:
        """Returns None when the increment would take the counter past limit."""
        ...


@runtime_checkable
class BillingCycleProvider(Protocol):
    def current_cycle(self, workspace_id: str, now: datetime):
        """Return the BillingCycle containing now for the workspace."""
        ...
