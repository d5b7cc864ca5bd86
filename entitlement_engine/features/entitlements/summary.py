"""
Read projections for display.

usage_summary runs the resolver for every feature the workspace's packages
and boosts reference. Packages and boosts are loaded once and shared across
features. A feature code missing from the catalog is reported with reason
unknown_feature instead of failing the whole summary. Features retired
in the catalog are left out.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from entitlement_engine.core.clock import normalize_now
from entitlement_engine.features.entitlements.service import EntitlementResolver, get_resolver
from entitlement_engine.models.entitlement import EntitlementResult, ReasonCode


logger = logging.getLogger(__name__)

UNCATEGORIZED = "other"


def usage_summary(
    workspace_id: str,
    *,
    now: Optional[datetime] = None,
    resolver: Optional[EntitlementResolver] = None,
) -> Dict[str, EntitlementResult]:
    """
    Map of feature code -> EntitlementResult, ordered by category, sort order, code.
    """
    engine = resolver or get_resolver()
    normalized_now = normalize_now(now)
    packages = engine.usable_packages(workspace_id, normalized_now)
    boosts = engine.usable_boosts(workspace_id, normalized_now)

    codes = set()
    for package in packages:
        codes.update(package.features.keys())
    codes.update(boost.feature_code for boost in boosts)

    catalog = engine.features.get_many(codes)
    missing = sorted(codes - set(catalog))
    active = [f for f in catalog.values() if f.active]
    ordered = sorted(active, key=lambda f: (f.category or UNCATEGORIZED, f.sort_order, f.code))

    summary: Dict[str, EntitlementResult] = {}
    for feature in ordered:
        summary[feature.code] = engine.evaluate(
            workspace_id,
            feature,
            packages,
            boosts,
            now=normalized_now,
        )
    for code in missing:
        logger.warning(
            "[entitlement] summary references unknown feature",
            extra={"workspace_id": workspace_id, "feature_code": code, "reason": ReasonCode.UNKNOWN_FEATURE.value},
        )
        summary[code] = EntitlementResult.denied(code, ReasonCode.UNKNOWN_FEATURE, limit=None)
    return summary


def usage_summary_by_category(
    workspace_id: str,
    *,
    now: Optional[datetime] = None,
    resolver: Optional[EntitlementResolver] = None,
) -> Dict[str, List[EntitlementResult]]:
    engine = resolver or get_resolver()
    summary = usage_summary(workspace_id, now=now, resolver=engine)
    catalog = engine.features.get_many(summary.keys())

    grouped: Dict[str, List[EntitlementResult]] = {}
    for code, result in summary.items():
        feature = catalog.get(code)
        category = (feature.category if feature else None) or UNCATEGORIZED
        grouped.setdefault(category, []).append(result)
    return grouped
