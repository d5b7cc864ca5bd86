"""
Period bucketing for the usage ledger.

Each limited feature counts usage under a period key derived from its
reset_type and the current time (UTC):

    none         -> "all"
    daily        -> "d:2026-03-14"
    monthly      -> "m:2026-03"
    cycle_bound  -> "c:2026-03-05T00:00:00+00:00"  (start of the billing cycle)

A new key simply starts a new counter row, so resets never touch old rows.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from entitlement_engine.core.clock import as_utc, normalize_now
from entitlement_engine.features.catalog.service import SqlPackageStore
from entitlement_engine.features.packages.service import SqlWorkspacePackageStore
from entitlement_engine.models.feature import ResetType


ALL_TIME_PERIOD = "all"


@dataclass(frozen=True)
class BillingCycle:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    total = value.year * 12 + (value.month - 1) + months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calendar_month_cycle(now: datetime) -> BillingCycle:
    moment = as_utc(now)
    start = datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)
    return BillingCycle(start=start, end=add_months(start, 1))


def anchored_cycle(anchor: datetime, now: datetime) -> BillingCycle:
    """
    Monthly cycle containing now, counted from anchor.

    Months are always added to the anchor itself (not chained), so an anchor
    on the 31st yields Jan 31 -> Feb 28 -> Mar 31 rather than drifting.
    """
    anchor = as_utc(anchor)
    moment = as_utc(now)
    offset = (moment.year - anchor.year) * 12 + (moment.month - anchor.month)
    start = add_months(anchor, offset)
    if start > moment:
        offset -= 1
        start = add_months(anchor, offset)
    return BillingCycle(start=start, end=add_months(anchor, offset + 1))


class AnchoredCycleProvider:
    """
    Billing cycles derived from the workspace's base-tier package.

    Uses the billing_cycle_anchor of the earliest granted active base-tier
    package; workspaces without one fall back to the calendar month.
    """

    def __init__(self, workspace_package_store=None, package_store=None):
        self.workspace_packages = workspace_package_store or SqlWorkspacePackageStore()
        self.packages = package_store or SqlPackageStore()

    def anchor_for(self, workspace_id: str, now: datetime) -> Optional[datetime]:
        grants = [g for g in self.workspace_packages.active_for(workspace_id) if g.is_usable(now)]
        if not grants:
            return None
        catalog = self.packages.get_many(g.package_code for g in grants)
        for grant in sorted(grants, key=lambda g: (g.granted_at, g.id)):
            package = catalog.get(grant.package_code)
            if package is not None and package.active and package.is_base_tier:
                return grant.billing_cycle_anchor or grant.granted_at
        return None

    def current_cycle(self, workspace_id: str, now: datetime) -> BillingCycle:
        moment = normalize_now(now)
        anchor = self.anchor_for(workspace_id, moment)
        if anchor is None:
            return calendar_month_cycle(moment)
        return anchored_cycle(anchor, moment)


def period_key(reset_type: ResetType, now: datetime, cycle: Optional[BillingCycle] = None) -> str:
    """
    Ledger period key for a reset cadence at a point in time.

    Raises:
        ValueError: cycle_bound without a billing cycle
    """
    moment = as_utc(now)
    reset = ResetType(reset_type)
    if reset == ResetType.NONE:
        return ALL_TIME_PERIOD
    if reset == ResetType.DAILY:
        return f"d:{moment:%Y-%m-%d}"
    if reset == ResetType.MONTHLY:
        return f"m:{moment:%Y-%m}"
    if cycle is None:
        raise ValueError("cycle_bound features need a billing cycle to bucket usage")
    return f"c:{as_utc(cycle.start).isoformat()}"
