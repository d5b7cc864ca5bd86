"""
Provisioning audit trail.

Every package/boost transition writes one entitlement_logs row inside the
same transaction as the transition itself, so a rolled-back change leaves
no log behind.
"""
import json
from datetime import datetime
from typing import List, Optional

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from entitlement_engine.core.clock import as_utc, utc_now
from entitlement_engine.core.database import get_db_session, entitlement_logs
from entitlement_engine.models.entitlement_log import EntitlementLog


def write_log(
    session: Session,
    workspace_id: str,
    action: str,
    source: str,
    *,
    target: Optional[str] = None,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Append an audit row using the caller's session.

    Args:
        action: One of the ACTION_* constants (e.g. "package.provisioned")
        target: Package code or boost id the action applied to
        payload: Additional context as dict (will be JSON-serialized)
    """
    payload_json = json.dumps(payload, default=str) if payload else None
    session.execute(
        insert(entitlement_logs).values(
            workspace_id=workspace_id,
            action=action,
            target=target,
            source=source,
            payload_json=payload_json,
            created_at=now or utc_now(),
        )
    )


def entitlement_history(workspace_id: str, limit: int = 50, action: Optional[str] = None) -> List[EntitlementLog]:
    """Newest-first audit entries for a workspace."""
    with get_db_session() as session:
        query = select(entitlement_logs).where(entitlement_logs.c.workspace_id == workspace_id)
        if action:
            query = query.where(entitlement_logs.c.action == action)
        rows = session.execute(
            query.order_by(entitlement_logs.c.created_at.desc(), entitlement_logs.c.id.desc()).limit(limit)
        ).all()

    return [
        EntitlementLog(
            id=row.id,
            workspace_id=row.workspace_id,
            action=row.action,
            target=row.target,
            source=row.source,
            payload=json.loads(row.payload_json) if row.payload_json else None,
            created_at=as_utc(row.created_at),
        )
        for row in rows
    ]
