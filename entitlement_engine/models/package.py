"""
Package catalog models.

Packages bundle features with per-feature limits. A stackable package adds
its limits on top of others; a non-stackable package is a base tier.
"""

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict


class PackageFeature(BaseModel):
    """Limit granted by one package for one feature (None = unlimited)."""
    model_config = ConfigDict(frozen=True)

    package_code: str
    feature_code: str
    limit_value: Optional[int] = None

    @property
    def is_unlimited(self) -> bool:
        return self.limit_value is None


class Package(BaseModel):
    """
    Package represents a purchasable bundle.

    Packages do NOT include:
    - Pricing (no currency, no amounts)
    - Payment provider identifiers
    """
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    stackable: bool = False
    active: bool = True
    public: bool = True
    features: Dict[str, PackageFeature] = {}
    created_at: Optional[datetime] = None

    @property
    def is_base_tier(self) -> bool:
        return not self.stackable

    def feature(self, feature_code: str) -> Optional[PackageFeature]:
        return self.features.get(feature_code)
