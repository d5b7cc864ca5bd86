"""
Usage ledger models.

UsageCounter is the per-period consumption total that limits are checked
against. UsageEvent is the append-only record of each recorded consumption.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageCounter(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace_id: str
    feature_code: str
    period_key: str
    used: int
    updated_at: Optional[datetime] = None


class UsageEvent(BaseModel):
    """
    UsageEvent tracks one Record call.

    Metadata can include:
    - post_id / page_id: the content that consumed quota
    - request_id: correlation with the calling request
    """
    model_config = ConfigDict(frozen=True)

    workspace_id: str
    feature_code: str
    period_key: str
    quantity: int
    occurred_at: datetime
    actor: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
