"""
Boost model: a temporary or permanent override on top of packages.

A boost is inert once cancelled or once expires_at has passed. Expiry is
evaluated at read time, so an unswept expired boost never grants anything.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class BoostType(str, Enum):
    ENABLE = "enable"
    ADD_LIMIT = "add_limit"
    UNLIMITED = "unlimited"


class DurationType(str, Enum):
    PERMANENT = "permanent"
    DURATION = "duration"
    CYCLE_BOUND = "cycle_bound"


class BoostStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Boost(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    workspace_id: str
    feature_code: str
    boost_type: BoostType
    duration_type: DurationType
    status: BoostStatus
    limit_value: Optional[int] = None
    expires_at: Optional[datetime] = None
    source: str = "system"
    created_at: datetime
    cancelled_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    def is_usable(self, now: datetime) -> bool:
        if self.status != BoostStatus.ACTIVE:
            return False
        if self.duration_type == DurationType.PERMANENT:
            return True
        return self.expires_at is not None and self.expires_at > now
