"""
entitlement_engine/features/usage/service.py

Usage recording.

Handles:
- Recording consumption against the current period counter
- Period key resolution per feature reset cadence
- Usage reads (current period total, event history)

Recording never re-checks limits: callers check first, then record. Use
consume_usage in the entitlements service when the limit must be enforced
at write time.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from entitlement_engine.core.clock import normalize_now
from entitlement_engine.core.errors import UnknownFeatureError, ValidationError
from entitlement_engine.features.catalog.service import SqlFeatureStore
from entitlement_engine.features.usage.periods import AnchoredCycleProvider, period_key
from entitlement_engine.features.usage.store import SqlUsageCounterStore
from entitlement_engine.models.feature import Feature, ResetType
from entitlement_engine.models.usage import UsageEvent


logger = logging.getLogger(__name__)


def validate_quantity(quantity: Any) -> int:
    # bool is an int subclass; True must not count as 1
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"quantity must be an integer, got {type(quantity).__name__}")
    if quantity < 1:
        raise ValidationError(f"quantity must be >= 1, got {quantity}")
    return quantity


def current_period_key(feature: Feature, workspace_id: str, now: datetime, cycle_provider) -> str:
    cycle = None
    if feature.reset_type == ResetType.CYCLE_BOUND:
        cycle = cycle_provider.current_cycle(workspace_id, now)
    return period_key(feature.reset_type, now, cycle)


def resolve_pool_feature(feature_store, feature: Feature) -> Feature:
    """The feature whose limit and counter a check or record uses (the parent for children)."""
    if feature.parent_code is None:
        return feature
    parent = feature_store.get(feature.parent_code)
    if parent is None:
        raise UnknownFeatureError(feature.parent_code)
    return parent


class UsageRecorder:
    """Writes usage into the ledger through a UsageCounterStore."""

    def __init__(self, feature_store=None, usage_store=None, cycle_provider=None):
        self.features = feature_store or SqlFeatureStore()
        self.usage = usage_store or SqlUsageCounterStore()
        self.cycles = cycle_provider or AnchoredCycleProvider()

    def _feature(self, feature_code: str) -> Feature:
        feature = self.features.get(feature_code)
        if feature is None:
            raise UnknownFeatureError(feature_code)
        return feature

    def record(
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
        Add quantity to the workspace's counter for the current period.

        Child features count against their parent's counter; the event keeps
        the requested code in its metadata.

        Raises:
            ValidationError: quantity is not an integer >= 1
            UnknownFeatureError: feature_code is not in the catalog
            TransientStorageError: storage stayed unavailable after retries
        """
        validate_quantity(quantity)
        feature = self._feature(feature_code)
        pool = resolve_pool_feature(self.features, feature)
        normalized_now = normalize_now(now)
        key = current_period_key(pool, workspace_id, normalized_now, self.cycles)
        if pool.code != feature.code:
            metadata = {**(metadata or {}), "feature_code": feature.code}

        event = self.usage.increment(
            workspace_id,
            pool.code,
            key,
            quantity,
            now=normalized_now,
            actor=actor,
            metadata=metadata,
        )
        logger.info(
            "[usage] recorded",
            extra={
                "workspace_id": workspace_id,
                "feature_code": feature_code,
                "quantity": quantity,
                "period_key": key,
            },
        )
        return event

    def used(self, workspace_id: str, feature_code: str, *, now: Optional[datetime] = None) -> int:
        feature = self._feature(feature_code)
        pool = resolve_pool_feature(self.features, feature)
        normalized_now = normalize_now(now)
        key = current_period_key(pool, workspace_id, normalized_now, self.cycles)
        return self.usage.get_used(workspace_id, pool.code, key)


def record_usage(
    workspace_id: str,
    feature_code: str,
    quantity: int = 1,
    actor: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> UsageEvent:
    return UsageRecorder().record(workspace_id, feature_code, quantity, actor, metadata, now=now)


def get_usage(workspace_id: str, feature_code: str, *, now: Optional[datetime] = None) -> int:
    """Units used in the feature's current period (0 if nothing recorded)."""
    return UsageRecorder().used(workspace_id, feature_code, now=now)


def usage_history(workspace_id: str, feature_code: Optional[str] = None, limit: int = 100) -> List[UsageEvent]:
    """Newest-first usage events."""
    return SqlUsageCounterStore().list_events(workspace_id, feature_code, limit=limit)
