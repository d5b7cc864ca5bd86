"""
SQL usage ledger.

Counters are only ever changed by single statements: an upsert for plain
recording and a conditional UPDATE for hard limits. Nothing here reads a
counter and writes it back.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, insert, select, update

from entitlement_engine.core.clock import as_utc
from entitlement_engine.core.database import (
    dialect_insert,
    get_db_session,
    usage_counters,
    usage_events,
)
from entitlement_engine.core.retry import run_with_storage_retry
from entitlement_engine.models.usage import UsageCounter, UsageEvent


COUNTER_KEY = ["workspace_id", "feature_code", "period_key"]


def _counter_filter(workspace_id: str, feature_code: str, period_key: str):
    return and_(
        usage_counters.c.workspace_id == workspace_id,
        usage_counters.c.feature_code == feature_code,
        usage_counters.c.period_key == period_key,
    )


def _append_event(session, event: UsageEvent) -> None:
    session.execute(
        insert(usage_events).values(
            workspace_id=event.workspace_id,
            feature_code=event.feature_code,
            period_key=event.period_key,
            quantity=event.quantity,
            actor=event.actor,
            metadata=event.metadata,
            occurred_at=event.occurred_at,
        )
    )


class SqlUsageCounterStore:
    def get_used(self, workspace_id: str, feature_code: str, period_key: str) -> int:
        def _read() -> int:
            with get_db_session() as session:
                used = session.execute(
                    select(usage_counters.c.used).where(_counter_filter(workspace_id, feature_code, period_key))
                ).scalar()
                return int(used or 0)

        return run_with_storage_retry(_read, operation="usage.read")

    def increment(
        self,
        workspace_id: str,
        feature_code: str,
        period_key: str,
        quantity: int,
        *,
        now: datetime,
        actor: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> UsageEvent:
        """INSERT .. ON CONFLICT DO UPDATE SET used = used + quantity, plus the event row."""
        event = UsageEvent(
            workspace_id=workspace_id,
            feature_code=feature_code,
            period_key=period_key,
            quantity=quantity,
            occurred_at=now,
            actor=actor,
            metadata=metadata,
        )

        def _write() -> UsageEvent:
            with get_db_session() as session:
                stmt = dialect_insert(session, usage_counters).values(
                    workspace_id=workspace_id,
                    feature_code=feature_code,
                    period_key=period_key,
                    used=quantity,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=COUNTER_KEY,
                    set_={
                        "used": usage_counters.c.used + stmt.excluded.used,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                session.execute(stmt)
                _append_event(session, event)
            return event

        return run_with_storage_retry(_write, operation="usage.increment")

    def increment_if_under_limit(
        self,
        workspace_id: str,
        feature_code: str,
        period_key: str,
        quantity: int,
        limit: int,
        *,
        now: datetime,
        actor: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[UsageEvent]:
        """
        UPDATE .. SET used = used + quantity WHERE used + quantity <= limit.

        Returns None (and records nothing) when the counter has no room left.
        """
        event = UsageEvent(
            workspace_id=workspace_id,
            feature_code=feature_code,
            period_key=period_key,
            quantity=quantity,
            occurred_at=now,
            actor=actor,
            metadata=metadata,
        )

        def _write() -> Optional[UsageEvent]:
            with get_db_session() as session:
                # Make sure the row exists so the conditional update has something to hit
                ensure = dialect_insert(session, usage_counters).values(
                    workspace_id=workspace_id,
                    feature_code=feature_code,
                    period_key=period_key,
                    used=0,
                    updated_at=now,
                ).on_conflict_do_nothing(index_elements=COUNTER_KEY)
                session.execute(ensure)

                result = session.execute(
                    update(usage_counters)
                    .where(_counter_filter(workspace_id, feature_code, period_key))
                    .where(usage_counters.c.used + quantity <= limit)
                    .values(used=usage_counters.c.used + quantity, updated_at=now)
                )
                if result.rowcount == 0:
                    return None
                _append_event(session, event)
            return event

        return run_with_storage_retry(_write, operation="usage.consume")

    def list_counters(self, workspace_id: str, feature_code: Optional[str] = None) -> List[UsageCounter]:
        with get_db_session() as session:
            query = select(usage_counters).where(usage_counters.c.workspace_id == workspace_id)
            if feature_code:
                query = query.where(usage_counters.c.feature_code == feature_code)
            rows = session.execute(
                query.order_by(usage_counters.c.feature_code, usage_counters.c.period_key)
            ).all()
            return [
                UsageCounter(
                    workspace_id=row.workspace_id,
                    feature_code=row.feature_code,
                    period_key=row.period_key,
                    used=row.used,
                    updated_at=as_utc(row.updated_at),
                )
                for row in rows
            ]

    def list_events(
        self,
        workspace_id: str,
        feature_code: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageEvent]:
        with get_db_session() as session:
            query = select(usage_events).where(usage_events.c.workspace_id == workspace_id)
            if feature_code:
                query = query.where(usage_events.c.feature_code == feature_code)
            rows = session.execute(
                query.order_by(usage_events.c.occurred_at.desc(), usage_events.c.id.desc()).limit(limit)
            ).all()
            return [
                UsageEvent(
                    workspace_id=row.workspace_id,
                    feature_code=row.feature_code,
                    period_key=row.period_key,
                    quantity=row.quantity,
                    occurred_at=as_utc(row.occurred_at),
                    actor=row.actor,
                    metadata=row._mapping["metadata"],
                )
                for row in rows
            ]
