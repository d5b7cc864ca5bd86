"""EntitlementLog model: audit trail of provisioning transitions."""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


ACTION_PACKAGE_PROVISIONED = "package.provisioned"
ACTION_PACKAGE_REVOKED = "package.revoked"
ACTION_PACKAGE_SUSPENDED = "package.suspended"
ACTION_PACKAGE_REACTIVATED = "package.reactivated"
ACTION_BOOST_PROVISIONED = "boost.provisioned"
ACTION_BOOST_CANCELLED = "boost.cancelled"


class EntitlementLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    workspace_id: str
    action: str
    target: Optional[str] = None
    source: str
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime
