"""
entitlement_engine/features/entitlements/service.py

Entitlement resolution + hard-limit consumption.

Handles:
- Composition of packages and boosts into one effective grant
- Soft checks (check_entitlement): allow/deny with remaining quota
- Hard consumption (consume_usage): conditional increment that refuses
  to take a counter past its limit
- Structured logs for every decision

Every check recomputes from current rows. There is no cached effective
entitlement, so grants, revocations and expiries apply on the next call.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from entitlement_engine.core.clock import normalize_now
from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import QuotaExceededError, UnknownFeatureError
from entitlement_engine.features.boosts.service import SqlBoostStore
from entitlement_engine.features.catalog.service import SqlFeatureStore, SqlPackageStore
from entitlement_engine.features.entitlements.interfaces import (
    BillingCycleProvider,
    BoostStore,
    FeatureStore,
    PackageStore,
    UsageCounterStore,
    WorkspacePackageStore,
)
from entitlement_engine.features.packages.service import SqlWorkspacePackageStore
from entitlement_engine.features.usage.periods import AnchoredCycleProvider
from entitlement_engine.features.usage.service import current_period_key, resolve_pool_feature, validate_quantity
from entitlement_engine.features.usage.store import SqlUsageCounterStore
from entitlement_engine.models.boost import Boost, BoostType
from entitlement_engine.models.entitlement import EntitlementResult, ReasonCode
from entitlement_engine.models.feature import Feature
from entitlement_engine.models.package import Package
from entitlement_engine.models.usage import UsageEvent


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Composition:
    """Effective grant for one feature after packages and boosts are combined."""
    package_granted: bool
    boost_granted: bool
    unlimited: bool
    limit: int
    enabled_by_boost: bool
    unlimited_by_boost: bool = False

    @property
    def granted(self) -> bool:
        return self.package_granted or self.boost_granted


def compose_entitlement(feature_code: str, packages: Iterable[Package], boosts: Iterable[Boost]) -> Composition:
    """
    Combine package limits and boosts for one feature.

    Base tier: the most generous non-stackable package wins (None beats any
    number). Stackable packages add their limits on top. An unlimited limit
    anywhere, or any unlimited boost, makes the result unlimited. add_limit
    boosts add to the total; enable boosts switch boolean features on.
    """
    base_limits: List[Optional[int]] = []
    stacked_limits: List[Optional[int]] = []
    for package in packages:
        package_feature = package.feature(feature_code)
        if package_feature is None:
            continue
        if package.stackable:
            stacked_limits.append(package_feature.limit_value)
        else:
            base_limits.append(package_feature.limit_value)

    package_granted = bool(base_limits or stacked_limits)
    unlimited = any(limit is None for limit in base_limits + stacked_limits)
    total = 0
    if not unlimited:
        total = max(base_limits, default=0) + sum(stacked_limits)

    boost_granted = False
    enabled_by_boost = False
    unlimited_by_boost = False
    for boost in boosts:
        if boost.feature_code != feature_code:
            continue
        boost_granted = True
        if boost.boost_type == BoostType.UNLIMITED:
            unlimited = True
            enabled_by_boost = True
            unlimited_by_boost = True
        elif boost.boost_type == BoostType.ENABLE:
            enabled_by_boost = True
        elif boost.boost_type == BoostType.ADD_LIMIT:
            total += boost.limit_value or 0

    return Composition(
        package_granted=package_granted,
        boost_granted=boost_granted,
        unlimited=unlimited,
        limit=total,
        enabled_by_boost=enabled_by_boost,
        unlimited_by_boost=unlimited_by_boost,
    )


class EntitlementResolver:
    """
    Resolves entitlements from the catalog, grants, boosts and the ledger.

    All collaborators are optional; defaults are the SQL stores.
    """

    def __init__(
        self,
        feature_store: Optional[FeatureStore] = None,
        package_store: Optional[PackageStore] = None,
        workspace_package_store: Optional[WorkspacePackageStore] = None,
        boost_store: Optional[BoostStore] = None,
        usage_store: Optional[UsageCounterStore] = None,
        cycle_provider: Optional[BillingCycleProvider] = None,
        near_limit_threshold: Optional[float] = None,
    ):
        self.features = feature_store or SqlFeatureStore()
        self.packages = package_store or SqlPackageStore()
        self.workspace_packages = workspace_package_store or SqlWorkspacePackageStore()
        self.boosts = boost_store or SqlBoostStore()
        self.usage = usage_store or SqlUsageCounterStore()
        self.cycles = cycle_provider or AnchoredCycleProvider(self.workspace_packages, self.packages)
        self.near_limit_threshold = (
            near_limit_threshold if near_limit_threshold is not None else settings.NEAR_LIMIT_THRESHOLD
        )

    def feature(self, feature_code: str) -> Feature:
        feature = self.features.get(feature_code)
        if feature is None:
            raise UnknownFeatureError(feature_code)
        return feature

    def pool_feature(self, feature: Feature) -> Feature:
        return resolve_pool_feature(self.features, feature)

    def usable_packages(self, workspace_id: str, now: datetime) -> List[Package]:
        """Catalog packages behind the workspace's active, unexpired grants."""
        grants = [g for g in self.workspace_packages.active_for(workspace_id) if g.is_usable(now)]
        catalog = self.packages.get_many(g.package_code for g in grants)
        return [
            catalog[g.package_code]
            for g in grants
            if g.package_code in catalog and catalog[g.package_code].active
        ]

    def usable_boosts(self, workspace_id: str, now: datetime, feature_code: Optional[str] = None) -> List[Boost]:
        return [b for b in self.boosts.active_for(workspace_id, feature_code) if b.is_usable(now)]

    def evaluate(
        self,
        workspace_id: str,
        feature: Feature,
        packages: List[Package],
        boosts: List[Boost],
        *,
        quantity: int = 1,
        now: datetime,
        pool: Optional[Feature] = None,
    ) -> EntitlementResult:
        """Result for feature; limits, boosts and usage come from its pool feature."""
        pool = pool or self.pool_feature(feature)
        composition = compose_entitlement(pool.code, packages, boosts)

        if pool.is_boolean:
            if composition.unlimited_by_boost:
                return EntitlementResult.for_unlimited(feature.code)
            if composition.package_granted or composition.enabled_by_boost:
                return EntitlementResult(
                    feature_code=feature.code,
                    allowed=True,
                    reason=ReasonCode.OK,
                    near_limit_threshold=self.near_limit_threshold,
                )
            return EntitlementResult.denied(feature.code, ReasonCode.NO_PACKAGE, limit=None)

        if not composition.granted:
            return EntitlementResult.denied(feature.code, ReasonCode.NO_PACKAGE)

        key = current_period_key(pool, workspace_id, now, self.cycles)
        used = self.usage.get_used(workspace_id, pool.code, key)

        if composition.unlimited:
            return EntitlementResult.for_unlimited(feature.code, used=used)

        allowed = used + quantity <= composition.limit
        return EntitlementResult(
            feature_code=feature.code,
            allowed=allowed,
            reason=ReasonCode.OK if allowed else ReasonCode.LIMIT_REACHED,
            limit=composition.limit,
            used=used,
            remaining=max(0, composition.limit - used),
            near_limit_threshold=self.near_limit_threshold,
        )

    def check(
        self,
        workspace_id: str,
        feature_code: str,
        *,
        quantity: int = 1,
        now: Optional[datetime] = None,
    ) -> EntitlementResult:
        """
        Decide whether the workspace may use quantity more units of a feature.

        Returns a denied result (never raises) when nothing grants the feature
        or the limit is reached.

        Raises:
            UnknownFeatureError: feature_code is not in the catalog
            ValidationError: quantity is not an integer >= 1
        """
        validate_quantity(quantity)
        normalized_now = normalize_now(now)
        feature = self.feature(feature_code)
        pool = self.pool_feature(feature)

        result = self.evaluate(
            workspace_id,
            feature,
            self.usable_packages(workspace_id, normalized_now),
            self.usable_boosts(workspace_id, normalized_now, pool.code),
            quantity=quantity,
            now=normalized_now,
            pool=pool,
        )
        _log_decision(workspace_id, result, quantity)
        return result

    def consume(
        self,
        workspace_id: str,
        feature_code: str,
        quantity: int = 1,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> UsageEvent:
        """
        Record usage only if it fits under the effective limit.

        The limit is enforced by the storage layer in the same statement that
        increments the counter, so concurrent consumers cannot overshoot it.

        Raises:
            QuotaExceededError: nothing grants the feature or the limit would be exceeded
            UnknownFeatureError: feature_code is not in the catalog
        """
        validate_quantity(quantity)
        normalized_now = normalize_now(now)
        feature = self.feature(feature_code)
        pool = self.pool_feature(feature)
        packages = self.usable_packages(workspace_id, normalized_now)
        boosts = self.usable_boosts(workspace_id, normalized_now, pool.code)

        composition = compose_entitlement(pool.code, packages, boosts)
        key = current_period_key(pool, workspace_id, normalized_now, self.cycles)
        if pool.code != feature.code:
            metadata = {**(metadata or {}), "feature_code": feature.code}

        if pool.is_boolean:
            if not (composition.package_granted or composition.enabled_by_boost):
                raise _quota_exceeded(workspace_id, feature_code, ReasonCode.NO_PACKAGE)
            return self.usage.increment(
                workspace_id, pool.code, key, quantity, now=normalized_now, actor=actor, metadata=metadata
            )

        if not composition.granted:
            raise _quota_exceeded(workspace_id, feature_code, ReasonCode.NO_PACKAGE)

        if composition.unlimited:
            return self.usage.increment(
                workspace_id, pool.code, key, quantity, now=normalized_now, actor=actor, metadata=metadata
            )

        event = self.usage.increment_if_under_limit(
            workspace_id,
            pool.code,
            key,
            quantity,
            composition.limit,
            now=normalized_now,
            actor=actor,
            metadata=metadata,
        )
        if event is None:
            raise _quota_exceeded(
                workspace_id, feature_code, ReasonCode.LIMIT_REACHED, limit=composition.limit, quantity=quantity
            )

        logger.info(
            "[entitlement] CONSUMED",
            extra={
                "workspace_id": workspace_id,
                "feature_code": feature_code,
                "quantity": quantity,
                "limit": composition.limit,
                "period_key": key,
            },
        )
        return event


def _log_decision(workspace_id: str, result: EntitlementResult, quantity: int) -> None:
    extra = {
        "workspace_id": workspace_id,
        "feature_code": result.feature_code,
        "reason": result.reason.value,
        "limit": result.limit,
        "used": result.used,
        "quantity": quantity,
    }
    if result.allowed:
        logger.info("[entitlement] ALLOWED", extra=extra)
    else:
        logger.warning("[entitlement] DENIED", extra=extra)


def _quota_exceeded(
    workspace_id: str,
    feature_code: str,
    reason: ReasonCode,
    *,
    limit: Optional[int] = None,
    quantity: int = 1,
) -> QuotaExceededError:
    logger.warning(
        "[entitlement] BLOCKED",
        extra={
            "workspace_id": workspace_id,
            "feature_code": feature_code,
            "reason": reason.value,
            "limit": limit,
            "quantity": quantity,
        },
    )
    if reason == ReasonCode.LIMIT_REACHED:
        return QuotaExceededError(f"Using {quantity} more of '{feature_code}' would exceed the limit of {limit}")
    return QuotaExceededError(f"Workspace has no package or boost granting '{feature_code}'")


def get_resolver() -> EntitlementResolver:
    return EntitlementResolver()


def check_entitlement(
    workspace_id: str,
    feature_code: str,
    *,
    quantity: int = 1,
    now: Optional[datetime] = None,
) -> EntitlementResult:
    return get_resolver().check(workspace_id, feature_code, quantity=quantity, now=now)


def consume_usage(
    workspace_id: str,
    feature_code: str,
    quantity: int = 1,
    actor: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> UsageEvent:
    return get_resolver().consume(workspace_id, feature_code, quantity, actor, metadata, now=now)
