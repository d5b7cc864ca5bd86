"""
Internal entitlements router.

Reads (check, summary, listings) are open to internal callers. Every write
requires the X-Admin-Key header; the key's fingerprint becomes the audit
source unless the body names one.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from entitlement_engine.core.admin_auth import require_admin
from entitlement_engine.features.audit.service import entitlement_history
from entitlement_engine.features.boosts.service import active_boosts, cancel_boost, provision_boost
from entitlement_engine.features.entitlements.service import check_entitlement, consume_usage
from entitlement_engine.features.entitlements.summary import usage_summary
from entitlement_engine.features.packages.service import (
    active_packages,
    provision_package,
    reactivate_workspace,
    revoke_package,
    suspend_workspace,
)
from entitlement_engine.features.usage.service import record_usage
from entitlement_engine.models.boost import BoostType, DurationType

logger = logging.getLogger("entitlement_engine.api")

router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


class UsageRequest(BaseModel):
    feature_code: str
    quantity: int = Field(default=1, description="Units consumed (>= 1)")
    actor: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class PackageProvisionRequest(BaseModel):
    package_code: str
    source: Optional[str] = None
    expires_at: Optional[datetime] = None
    billing_cycle_anchor: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    replace_base: bool = False


class BoostProvisionRequest(BaseModel):
    feature_code: str
    boost_type: BoostType = BoostType.ADD_LIMIT
    duration_type: DurationType = DurationType.CYCLE_BOUND
    limit_value: Optional[int] = None
    expires_at: Optional[datetime] = None
    source: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SourceRequest(BaseModel):
    source: Optional[str] = None


@router.get("/{workspace_id}/check/{feature_code}")
def check(workspace_id: str, feature_code: str, quantity: int = Query(1)):
    return check_entitlement(workspace_id, feature_code, quantity=quantity).to_dict()


@router.get("/{workspace_id}/summary")
def summary(workspace_id: str):
    results = usage_summary(workspace_id)
    return {
        "workspace_id": workspace_id,
        "features": {code: result.to_dict() for code, result in results.items()},
    }


@router.post("/{workspace_id}/usage", status_code=201)
def record(workspace_id: str, body: UsageRequest, admin_source: str = Depends(require_admin)):
    event = record_usage(
        workspace_id,
        body.feature_code,
        body.quantity,
        body.actor or admin_source,
        body.metadata,
    )
    return event.model_dump(mode="json")


@router.post("/{workspace_id}/consume", status_code=201)
def consume(workspace_id: str, body: UsageRequest, admin_source: str = Depends(require_admin)):
    event = consume_usage(
        workspace_id,
        body.feature_code,
        body.quantity,
        body.actor or admin_source,
        body.metadata,
    )
    return event.model_dump(mode="json")


@router.get("/{workspace_id}/packages")
def list_packages(workspace_id: str):
    return {"packages": [grant.model_dump(mode="json") for grant in active_packages(workspace_id)]}


@router.post("/{workspace_id}/packages", status_code=201)
def add_package(workspace_id: str, body: PackageProvisionRequest, admin_source: str = Depends(require_admin)):
    grant = provision_package(
        workspace_id,
        body.package_code,
        source=body.source or admin_source,
        expires_at=body.expires_at,
        billing_cycle_anchor=body.billing_cycle_anchor,
        metadata=body.metadata,
        replace_base=body.replace_base,
    )
    return grant.model_dump(mode="json")


@router.delete("/{workspace_id}/packages/{package_code}")
def remove_package(workspace_id: str, package_code: str, admin_source: str = Depends(require_admin)):
    revoked = revoke_package(workspace_id, package_code, admin_source)
    return {"revoked": revoked is not None, "package": revoked.model_dump(mode="json") if revoked else None}


@router.get("/{workspace_id}/boosts")
def list_boosts(workspace_id: str, feature_code: Optional[str] = Query(None)):
    return {"boosts": [boost.model_dump(mode="json") for boost in active_boosts(workspace_id, feature_code)]}


@router.post("/{workspace_id}/boosts", status_code=201)
def add_boost(workspace_id: str, body: BoostProvisionRequest, admin_source: str = Depends(require_admin)):
    boost = provision_boost(
        workspace_id,
        body.feature_code,
        boost_type=body.boost_type,
        duration_type=body.duration_type,
        limit_value=body.limit_value,
        expires_at=body.expires_at,
        source=body.source or admin_source,
        metadata=body.metadata,
    )
    return boost.model_dump(mode="json")


@router.delete("/boosts/{boost_id}")
def remove_boost(boost_id: str, admin_source: str = Depends(require_admin)):
    return cancel_boost(boost_id, admin_source).model_dump(mode="json")


@router.post("/{workspace_id}/suspend")
def suspend(workspace_id: str, body: Optional[SourceRequest] = None, admin_source: str = Depends(require_admin)):
    changed = suspend_workspace(workspace_id, (body.source if body else None) or admin_source)
    return {"suspended": [grant.package_code for grant in changed]}


@router.post("/{workspace_id}/reactivate")
def reactivate(workspace_id: str, body: Optional[SourceRequest] = None, admin_source: str = Depends(require_admin)):
    changed = reactivate_workspace(workspace_id, (body.source if body else None) or admin_source)
    return {"reactivated": [grant.package_code for grant in changed]}


@router.get("/{workspace_id}/history")
def history(workspace_id: str, limit: int = Query(50, ge=1, le=500), action: Optional[str] = Query(None)):
    return {"entries": [entry.model_dump(mode="json") for entry in entitlement_history(workspace_id, limit, action)]}
