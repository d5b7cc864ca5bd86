"""
entitlement_engine/features/packages/service.py

Packages granted to workspaces.

Handles:
- Provisioning (idempotent while an active grant exists)
- Revocation (active -> revoked, rows are kept for audit)
- Workspace suspension / reactivation (non-payment holds)
- Active package reads for the resolver
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_engine.core.clock import as_utc, normalize_now
from entitlement_engine.core.config import settings
from entitlement_engine.core.database import get_db_session, workspace_packages
from entitlement_engine.core.errors import UnknownPackageError, ValidationError
from entitlement_engine.core.retry import storage_retry
from entitlement_engine.features.audit.service import write_log
from entitlement_engine.features.catalog.service import SqlPackageStore
from entitlement_engine.models.entitlement_log import (
    ACTION_PACKAGE_PROVISIONED,
    ACTION_PACKAGE_REACTIVATED,
    ACTION_PACKAGE_REVOKED,
    ACTION_PACKAGE_SUSPENDED,
)
from entitlement_engine.models.workspace_package import WorkspacePackage, WorkspacePackageStatus


logger = logging.getLogger(__name__)


def _row_to_workspace_package(row) -> WorkspacePackage:
    return WorkspacePackage(
        id=row.id,
        workspace_id=row.workspace_id,
        package_code=row.package_code,
        status=WorkspacePackageStatus(row.status),
        source=row.source,
        granted_at=as_utc(row.granted_at),
        revoked_at=as_utc(row.revoked_at),
        expires_at=as_utc(row.expires_at),
        billing_cycle_anchor=as_utc(row.billing_cycle_anchor),
        metadata=row._mapping["metadata"],
    )


def _find_active(session: Session, workspace_id: str, package_code: str):
    return session.execute(
        select(workspace_packages)
        .where(workspace_packages.c.workspace_id == workspace_id)
        .where(workspace_packages.c.package_code == package_code)
        .where(workspace_packages.c.status == WorkspacePackageStatus.ACTIVE.value)
    ).first()


class SqlWorkspacePackageStore:
    """Workspace package reads. Expiry is applied by callers against their own clock."""

    def active_for(self, workspace_id: str) -> List[WorkspacePackage]:
        return self.list_for(workspace_id, statuses=[WorkspacePackageStatus.ACTIVE])

    @storage_retry("packages.read")
    def list_for(
        self,
        workspace_id: str,
        statuses: Optional[List[WorkspacePackageStatus]] = None,
    ) -> List[WorkspacePackage]:
        with get_db_session() as session:
            query = select(workspace_packages).where(workspace_packages.c.workspace_id == workspace_id)
            if statuses:
                query = query.where(workspace_packages.c.status.in_([s.value for s in statuses]))
            rows = session.execute(
                query.order_by(workspace_packages.c.granted_at, workspace_packages.c.id)
            ).all()
            return [_row_to_workspace_package(row) for row in rows]

    @storage_retry("packages.read")
    def find_active(self, workspace_id: str, package_code: str) -> Optional[WorkspacePackage]:
        with get_db_session() as session:
            row = _find_active(session, workspace_id, package_code)
            return _row_to_workspace_package(row) if row else None


def provision_package(
    workspace_id: str,
    package_code: str,
    *,
    source: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    billing_cycle_anchor: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    replace_base: bool = False,
    now: Optional[datetime] = None,
) -> WorkspacePackage:
    """
    Grant a package to a workspace.

    Idempotent: while an active grant for the same code exists it is returned
    unchanged and nothing is written.

    Args:
        workspace_id: Workspace receiving the package
        package_code: Catalog package code (e.g. 'apollo')
        billing_cycle_anchor: Start of the billing cycle (defaults to now)
        replace_base: Revoke other active base-tier packages first

    Returns:
        The active WorkspacePackage

    Raises:
        UnknownPackageError: If package_code is not in the catalog
        ValidationError: If the catalog package is retired
    """
    package_store = SqlPackageStore()
    package = package_store.get(package_code)
    if package is None:
        raise UnknownPackageError(package_code)
    if not package.active:
        raise ValidationError(f"Package '{package_code}' is retired and cannot be provisioned")

    normalized_now = normalize_now(now)
    grant_source = source or settings.DEFAULT_SOURCE

    try:
        with get_db_session() as session:
            existing = _find_active(session, workspace_id, package_code)
            if existing:
                logger.info(
                    "[packages] already provisioned",
                    extra={"workspace_id": workspace_id, "package_code": package_code},
                )
                return _row_to_workspace_package(existing)

            if replace_base and package.is_base_tier:
                _revoke_other_base_packages(session, workspace_id, package_code, grant_source, normalized_now)

            result = session.execute(
                insert(workspace_packages).values(
                    workspace_id=workspace_id,
                    package_code=package_code,
                    status=WorkspacePackageStatus.ACTIVE.value,
                    source=grant_source,
                    granted_at=normalized_now,
                    expires_at=as_utc(expires_at),
                    billing_cycle_anchor=as_utc(billing_cycle_anchor) or normalized_now,
                    metadata=metadata,
                )
            )
            write_log(
                session,
                workspace_id,
                ACTION_PACKAGE_PROVISIONED,
                grant_source,
                target=package_code,
                payload={"workspace_package_id": result.inserted_primary_key[0], "expires_at": expires_at},
                now=normalized_now,
            )
            row = session.execute(
                select(workspace_packages).where(workspace_packages.c.id == result.inserted_primary_key[0])
            ).first()
            provisioned = _row_to_workspace_package(row)
    except IntegrityError:
        # Lost a race with a concurrent provision of the same code
        existing = SqlWorkspacePackageStore().find_active(workspace_id, package_code)
        if existing is None:
            raise
        return existing

    logger.info(
        "[packages] provisioned",
        extra={"workspace_id": workspace_id, "package_code": package_code, "source": grant_source},
    )
    return provisioned


def _revoke_other_base_packages(
    session: Session,
    workspace_id: str,
    package_code: str,
    source: str,
    now: datetime,
) -> None:
    rows = session.execute(
        select(workspace_packages)
        .where(workspace_packages.c.workspace_id == workspace_id)
        .where(workspace_packages.c.status == WorkspacePackageStatus.ACTIVE.value)
        .where(workspace_packages.c.package_code != package_code)
    ).all()
    if not rows:
        return

    catalog = SqlPackageStore().get_many(row.package_code for row in rows)
    for row in rows:
        package = catalog.get(row.package_code)
        if package is None or not package.is_base_tier:
            continue
        session.execute(
            update(workspace_packages)
            .where(workspace_packages.c.id == row.id)
            .values(status=WorkspacePackageStatus.REVOKED.value, revoked_at=now)
        )
        write_log(
            session,
            workspace_id,
            ACTION_PACKAGE_REVOKED,
            source,
            target=row.package_code,
            payload={"workspace_package_id": row.id, "reason": f"replaced by {package_code}"},
            now=now,
        )


def revoke_package(
    workspace_id: str,
    package_code: str,
    source: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Optional[WorkspacePackage]:
    """
    Revoke the active grant of package_code.

    No-op (returns None) when there is no active grant, so revoking twice is safe.
    """
    normalized_now = normalize_now(now)
    revoke_source = source or settings.DEFAULT_SOURCE

    with get_db_session() as session:
        existing = _find_active(session, workspace_id, package_code)
        if not existing:
            return None

        result = session.execute(
            update(workspace_packages)
            .where(workspace_packages.c.id == existing.id)
            .where(workspace_packages.c.status == WorkspacePackageStatus.ACTIVE.value)
            .values(status=WorkspacePackageStatus.REVOKED.value, revoked_at=normalized_now)
        )
        if result.rowcount == 0:
            return None

        write_log(
            session,
            workspace_id,
            ACTION_PACKAGE_REVOKED,
            revoke_source,
            target=package_code,
            payload={"workspace_package_id": existing.id},
            now=normalized_now,
        )
        row = session.execute(
            select(workspace_packages).where(workspace_packages.c.id == existing.id)
        ).first()
        revoked = _row_to_workspace_package(row)

    logger.info(
        "[packages] revoked",
        extra={"workspace_id": workspace_id, "package_code": package_code, "source": revoke_source},
    )
    return revoked


def suspend_workspace(
    workspace_id: str,
    source: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> List[WorkspacePackage]:
    """Move every active grant to suspended. Returns the grants that changed."""
    normalized_now = normalize_now(now)
    suspend_source = source or settings.DEFAULT_SOURCE
    changed: List[WorkspacePackage] = []

    with get_db_session() as session:
        rows = session.execute(
            select(workspace_packages)
            .where(workspace_packages.c.workspace_id == workspace_id)
            .where(workspace_packages.c.status == WorkspacePackageStatus.ACTIVE.value)
        ).all()
        for row in rows:
            result = session.execute(
                update(workspace_packages)
                .where(workspace_packages.c.id == row.id)
                .where(workspace_packages.c.status == WorkspacePackageStatus.ACTIVE.value)
                .values(status=WorkspacePackageStatus.SUSPENDED.value)
            )
            if result.rowcount == 0:
                continue
            write_log(
                session,
                workspace_id,
                ACTION_PACKAGE_SUSPENDED,
                suspend_source,
                target=row.package_code,
                payload={"workspace_package_id": row.id},
                now=normalized_now,
            )
            changed.append(
                _row_to_workspace_package(row).model_copy(update={"status": WorkspacePackageStatus.SUSPENDED})
            )

    logger.warning(
        "[packages] workspace suspended",
        extra={"workspace_id": workspace_id, "source": suspend_source},
    )
    return changed


def reactivate_workspace(
    workspace_id: str,
    source: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> List[WorkspacePackage]:
    """
    Move every suspended grant back to active.

    A suspended grant whose package was provisioned again in the meantime is
    revoked instead, keeping one active row per package code.
    """
    normalized_now = normalize_now(now)
    reactivate_source = source or settings.DEFAULT_SOURCE
    changed: List[WorkspacePackage] = []

    with get_db_session() as session:
        rows = session.execute(
            select(workspace_packages)
            .where(workspace_packages.c.workspace_id == workspace_id)
            .where(workspace_packages.c.status == WorkspacePackageStatus.SUSPENDED.value)
        ).all()
        for row in rows:
            if _find_active(session, workspace_id, row.package_code):
                session.execute(
                    update(workspace_packages)
                    .where(workspace_packages.c.id == row.id)
                    .values(status=WorkspacePackageStatus.REVOKED.value, revoked_at=normalized_now)
                )
                write_log(
                    session,
                    workspace_id,
                    ACTION_PACKAGE_REVOKED,
                    reactivate_source,
                    target=row.package_code,
                    payload={"workspace_package_id": row.id, "reason": "superseded while suspended"},
                    now=normalized_now,
                )
                continue

            session.execute(
                update(workspace_packages)
                .where(workspace_packages.c.id == row.id)
                .where(workspace_packages.c.status == WorkspacePackageStatus.SUSPENDED.value)
                .values(status=WorkspacePackageStatus.ACTIVE.value)
            )
            write_log(
                session,
                workspace_id,
                ACTION_PACKAGE_REACTIVATED,
                reactivate_source,
                target=row.package_code,
                payload={"workspace_package_id": row.id},
                now=normalized_now,
            )
            changed.append(
                _row_to_workspace_package(row).model_copy(update={"status": WorkspacePackageStatus.ACTIVE})
            )

    logger.info(
        "[packages] workspace reactivated",
        extra={"workspace_id": workspace_id, "source": reactivate_source},
    )
    return changed


def active_packages(workspace_id: str, *, now: Optional[datetime] = None) -> List[WorkspacePackage]:
    """Active, unexpired grants whose catalog package is still active."""
    normalized_now = normalize_now(now)
    grants = [
        grant
        for grant in SqlWorkspacePackageStore().active_for(workspace_id)
        if grant.is_usable(normalized_now)
    ]
    catalog = SqlPackageStore().get_many(grant.package_code for grant in grants)
    return [
        grant
        for grant in grants
        if grant.package_code in catalog and catalog[grant.package_code].active
    ]
