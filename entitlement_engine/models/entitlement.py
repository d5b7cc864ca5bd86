"""
EntitlementResult: the resolver's verdict for one workspace/feature pair.

Derived on every check and never persisted. `limit` and `remaining` are
None when the feature is unlimited or boolean; `unlimited` tells the two
apart. Callers turn `reason` into user-facing copy.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class ReasonCode(str, Enum):
    OK = "ok"
    UNLIMITED = "unlimited"
    NO_PACKAGE = "no_package"
    LIMIT_REACHED = "limit_reached"
    UNKNOWN_FEATURE = "unknown_feature"  # usage summary only


class EntitlementResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    feature_code: str
    allowed: bool
    reason: ReasonCode
    limit: Optional[int] = None
    used: int = 0
    remaining: Optional[int] = None
    unlimited: bool = False
    near_limit_threshold: float = 80.0

    @classmethod
    def denied(cls, feature_code: str, reason: ReasonCode, *, limit: Optional[int] = 0, used: int = 0) -> "EntitlementResult":
        remaining = None if limit is None else max(0, limit - used)
        return cls(
            feature_code=feature_code,
            allowed=False,
            reason=reason,
            limit=limit,
            used=used,
            remaining=remaining,
        )

    @classmethod
    def for_unlimited(cls, feature_code: str, *, used: int = 0) -> "EntitlementResult":
        return cls(
            feature_code=feature_code,
            allowed=True,
            reason=ReasonCode.UNLIMITED,
            used=used,
            unlimited=True,
        )

    @property
    def usage_percentage(self) -> Optional[float]:
        if self.unlimited or not self.limit:
            return None
        return round(min(100.0, self.used / self.limit * 100), 1)

    @property
    def near_limit(self) -> bool:
        percentage = self.usage_percentage
        return percentage is not None and percentage >= self.near_limit_threshold

    def to_dict(self) -> dict:
        return {
            "feature_code": self.feature_code,
            "allowed": self.allowed,
            "reason": self.reason.value,
            "limit": "unlimited" if self.unlimited else self.limit,
            "used": self.used,
            "remaining": "unlimited" if self.unlimited else self.remaining,
            "usage_percentage": self.usage_percentage,
            "near_limit": self.near_limit,
        }
