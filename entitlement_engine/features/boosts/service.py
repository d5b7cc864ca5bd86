"""
entitlement_engine/features/boosts/service.py

Boosts: per-feature overrides layered on top of packages.

Handles:
- Provisioning (always a new row, boosts are never deduplicated)
- Cancellation (effective on the next check)
- Active boost reads, with expiry evaluated against the caller's clock
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy import select, insert, update

from entitlement_engine.core.clock import as_utc, normalize_now
from entitlement_engine.core.config import settings
from entitlement_engine.core.database import get_db_session, boosts
from entitlement_engine.core.errors import NotFoundError, ValidationError
from entitlement_engine.core.retry import storage_retry
from entitlement_engine.features.audit.service import write_log
from entitlement_engine.features.usage.periods import AnchoredCycleProvider
from entitlement_engine.models.boost import Boost, BoostStatus, BoostType, DurationType
from entitlement_engine.models.entitlement_log import ACTION_BOOST_CANCELLED, ACTION_BOOST_PROVISIONED


logger = logging.getLogger(__name__)


def _row_to_boost(row) -> Boost:
    return Boost(
        id=row.id,
        workspace_id=row.workspace_id,
        feature_code=row.feature_code,
        boost_type=BoostType(row.boost_type),
        duration_type=DurationType(row.duration_type),
        status=BoostStatus(row.status),
        limit_value=row.limit_value,
        expires_at=as_utc(row.expires_at),
        source=row.source,
        created_at=as_utc(row.created_at),
        cancelled_at=as_utc(row.cancelled_at),
        metadata=row._mapping["metadata"],
    )


class SqlBoostStore:
    @storage_retry("boosts.read")
    def get(self, boost_id: str) -> Optional[Boost]:
        with get_db_session() as session:
            row = session.execute(select(boosts).where(boosts.c.id == boost_id)).first()
            return _row_to_boost(row) if row else None

    @storage_retry("boosts.read")
    def active_for(self, workspace_id: str, feature_code: Optional[str] = None) -> List[Boost]:
        with get_db_session() as session:
            query = (
                select(boosts)
                .where(boosts.c.workspace_id == workspace_id)
                .where(boosts.c.status == BoostStatus.ACTIVE.value)
            )
            if feature_code:
                query = query.where(boosts.c.feature_code == feature_code)
            rows = session.execute(query.order_by(boosts.c.created_at, boosts.c.id)).all()
            return [_row_to_boost(row) for row in rows]


def _validate_boost(
    boost_type: BoostType,
    duration_type: DurationType,
    limit_value: Optional[int],
    expires_at: Optional[datetime],
) -> None:
    if boost_type == BoostType.ADD_LIMIT:
        if isinstance(limit_value, bool) or not isinstance(limit_value, int) or limit_value < 1:
            raise ValidationError("add_limit boosts need an integer limit_value >= 1")
    elif limit_value is not None:
        raise ValidationError(f"{boost_type.value} boosts do not take a limit_value")

    if duration_type == DurationType.PERMANENT and expires_at is not None:
        raise ValidationError("permanent boosts cannot have expires_at")
    if duration_type == DurationType.DURATION and expires_at is None:
        raise ValidationError("duration boosts need expires_at")


def provision_boost(
    workspace_id: str,
    feature_code: str,
    *,
    boost_type: Union[BoostType, str] = BoostType.ADD_LIMIT,
    duration_type: Union[DurationType, str] = DurationType.CYCLE_BOUND,
    limit_value: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    source: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    cycle_provider=None,
) -> Boost:
    """
    Add a boost for one feature.

    cycle_bound boosts without expires_at run until the end of the
    workspace's current billing cycle.

    Raises:
        ValidationError: Inconsistent type / duration / limit / expiry combination
    """
    try:
        btype = BoostType(boost_type)
        dtype = DurationType(duration_type)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    normalized_now = normalize_now(now)
    expiry = as_utc(expires_at)
    _validate_boost(btype, dtype, limit_value, expiry)

    if dtype == DurationType.CYCLE_BOUND and expiry is None:
        provider = cycle_provider or AnchoredCycleProvider()
        expiry = provider.current_cycle(workspace_id, normalized_now).end

    boost_id = str(uuid4())
    boost_source = source or settings.DEFAULT_SOURCE
    with get_db_session() as session:
        session.execute(
            insert(boosts).values(
                id=boost_id,
                workspace_id=workspace_id,
                feature_code=feature_code,
                boost_type=btype.value,
                limit_value=limit_value,
                duration_type=dtype.value,
                status=BoostStatus.ACTIVE.value,
                source=boost_source,
                expires_at=expiry,
                created_at=normalized_now,
                metadata=metadata,
            )
        )
        write_log(
            session,
            workspace_id,
            ACTION_BOOST_PROVISIONED,
            boost_source,
            target=boost_id,
            payload={
                "feature_code": feature_code,
                "boost_type": btype.value,
                "duration_type": dtype.value,
                "limit_value": limit_value,
                "expires_at": expiry,
            },
            now=normalized_now,
        )

    logger.info(
        "[boosts] provisioned",
        extra={
            "workspace_id": workspace_id,
            "feature_code": feature_code,
            "boost_id": boost_id,
            "source": boost_source,
        },
    )
    return Boost(
        id=boost_id,
        workspace_id=workspace_id,
        feature_code=feature_code,
        boost_type=btype,
        duration_type=dtype,
        status=BoostStatus.ACTIVE,
        limit_value=limit_value,
        expires_at=expiry,
        source=boost_source,
        created_at=normalized_now,
        metadata=metadata,
    )


def cancel_boost(boost_id: str, source: Optional[str] = None, *, now: Optional[datetime] = None) -> Boost:
    """
    Cancel a boost. Cancelling an already-cancelled boost is a no-op.

    Raises:
        NotFoundError: boost_id does not exist
    """
    normalized_now = normalize_now(now)
    cancel_source = source or settings.DEFAULT_SOURCE

    with get_db_session() as session:
        row = session.execute(select(boosts).where(boosts.c.id == boost_id)).first()
        if not row:
            raise NotFoundError(f"Boost '{boost_id}' not found")
        if row.status == BoostStatus.CANCELLED.value:
            return _row_to_boost(row)

        result = session.execute(
            update(boosts)
            .where(boosts.c.id == boost_id)
            .where(boosts.c.status == BoostStatus.ACTIVE.value)
            .values(status=BoostStatus.CANCELLED.value, cancelled_at=normalized_now)
        )
        if result.rowcount:
            write_log(
                session,
                row.workspace_id,
                ACTION_BOOST_CANCELLED,
                cancel_source,
                target=boost_id,
                payload={"feature_code": row.feature_code},
                now=normalized_now,
            )
        cancelled = _row_to_boost(session.execute(select(boosts).where(boosts.c.id == boost_id)).first())

    logger.info(
        "[boosts] cancelled",
        extra={"workspace_id": cancelled.workspace_id, "boost_id": boost_id, "source": cancel_source},
    )
    return cancelled


def active_boosts(
    workspace_id: str,
    feature_code: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> List[Boost]:
    """Usable boosts, soonest expiry first, permanent boosts last."""
    normalized_now = normalize_now(now)
    usable = [b for b in SqlBoostStore().active_for(workspace_id, feature_code) if b.is_usable(normalized_now)]
    return sorted(usable, key=lambda b: (b.expires_at is None, b.expires_at or normalized_now, b.created_at))
