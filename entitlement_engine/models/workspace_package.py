"""
WorkspacePackage model: a package granted to a workspace.

Rows move active -> revoked (or active <-> suspended) and are never deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class WorkspacePackageStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class WorkspacePackage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    workspace_id: str
    package_code: str
    status: WorkspacePackageStatus
    source: str
    granted_at: datetime
    revoked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    billing_cycle_anchor: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    def is_usable(self, now: datetime) -> bool:
        """Active and not past its own optional expiry."""
        if self.status != WorkspacePackageStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > now
