"""
Feature catalog models.

A feature is a gateable capability. Boolean features are on/off grants;
limited features carry a numeric quota counted against the usage ledger in
the period given by reset_type.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class FeatureKind(str, Enum):
    BOOLEAN = "boolean"
    LIMITED = "limited"


class ResetType(str, Enum):
    """How usage of a limited feature is bucketed over time."""
    NONE = "none"
    DAILY = "daily"
    MONTHLY = "monthly"
    CYCLE_BOUND = "cycle_bound"


class Feature(BaseModel):
    """
    Feature represents a capability that can be gated.

    Examples:
    - social.accounts (limited, never resets): connected social accounts
    - ai.credits (limited, monthly): AI generation credits
    - analytics.enabled (boolean): access to analytics screens

    A child feature (parent_code set) draws on its parent's pool and shares
    the parent's limit and usage counter.

    The code is immutable once usage has been recorded against it.
    """
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    kind: FeatureKind
    reset_type: ResetType = ResetType.NONE
    category: Optional[str] = None
    parent_code: Optional[str] = None
    sort_order: int = 0
    active: bool = True
    created_at: Optional[datetime] = None

    @property
    def pool_code(self) -> str:
        return self.parent_code or self.code

    @property
    def is_boolean(self) -> bool:
        return self.kind == FeatureKind.BOOLEAN
