"""
entitlement_engine/features/catalog/service.py

Feature and package catalog.

Handles:
- Catalog seeding (idempotent)
- Feature / package upserts for administrative tooling
- Read access used by the resolver (SqlFeatureStore, SqlPackageStore)
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import select, insert, update, delete

from entitlement_engine.core.clock import as_utc
from entitlement_engine.core.database import (
    get_db_session,
    features,
    packages,
    package_features,
)
from entitlement_engine.core.errors import UnknownFeatureError, UnknownPackageError, ValidationError
from entitlement_engine.core.retry import storage_retry
from entitlement_engine.models.feature import Feature, FeatureKind, ResetType
from entitlement_engine.models.package import Package, PackageFeature


logger = logging.getLogger(__name__)


# Default catalog configuration
DEFAULT_CATALOG = {
    "features": {
        "social.accounts": {"name": "Social accounts", "kind": "limited", "reset_type": "none", "category": "social", "sort_order": 10},
        "social.posts.scheduled": {"name": "Scheduled posts", "kind": "limited", "reset_type": "monthly", "category": "social", "sort_order": 20},
        "ai.credits": {"name": "AI credits", "kind": "limited", "reset_type": "cycle_bound", "category": "ai", "sort_order": 10},
        "ai.credits.images": {"name": "AI image generations", "kind": "limited", "reset_type": "cycle_bound", "category": "ai", "sort_order": 15, "parent": "ai.credits"},
        "content.pages": {"name": "Content pages", "kind": "limited", "reset_type": "none", "category": "content", "sort_order": 10},
        "api.requests": {"name": "API requests", "kind": "limited", "reset_type": "daily", "category": "api", "sort_order": 10},
        "analytics.enabled": {"name": "Analytics", "kind": "boolean", "category": "analytics", "sort_order": 10},
        "mcp.portal": {"name": "MCP agent portal", "kind": "boolean", "category": "ai", "sort_order": 20},
        "custom.domain": {"name": "Custom domain", "kind": "boolean", "category": "content", "sort_order": 20},
    },
    "packages": {
        "starter": {
            "name": "Starter",
            "stackable": False,
            "features": {
                "social.accounts": 5,
                "social.posts.scheduled": 30,
                "ai.credits": 50,
                "content.pages": 10,
                "api.requests": 1000,
            },
        },
        "apollo": {
            "name": "Apollo",
            "stackable": False,
            "features": {
                "social.accounts": 25,
                "social.posts.scheduled": 500,
                "ai.credits": 500,
                "content.pages": 100,
                "api.requests": 10000,
                "analytics.enabled": None,
                "custom.domain": None,
            },
        },
        "enterprise": {
            "name": "Enterprise",
            "stackable": False,
            "features": {
                "social.accounts": None,  # unlimited
                "social.posts.scheduled": None,
                "ai.credits": 5000,
                "content.pages": None,
                "api.requests": None,
                "analytics.enabled": None,
                "mcp.portal": None,
                "custom.domain": None,
            },
        },
        "social-addon": {
            "name": "Extra social accounts",
            "stackable": True,
            "features": {"social.accounts": 10},
        },
        "ai-addon": {
            "name": "AI credit pack",
            "stackable": True,
            "features": {"ai.credits": 250},
        },
    },
}


def _feature_from_row(row) -> Feature:
    return Feature(
        code=row.code,
        name=row.name,
        kind=FeatureKind(row.kind),
        reset_type=ResetType(row.reset_type),
        category=row.category,
        parent_code=row.parent_code,
        sort_order=row.sort_order,
        active=bool(row.active),
        created_at=as_utc(row.created_at),
    )


def _coerce_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}' (expected one of: {allowed})")


class SqlFeatureStore:
    """Feature catalog reads."""

    @storage_retry("catalog.feature")
    def get(self, code: str) -> Optional[Feature]:
        with get_db_session() as session:
            row = session.execute(
                select(features).where(features.c.code == code)
            ).first()
            return _feature_from_row(row) if row else None

    @storage_retry("catalog.features")
    def get_many(self, codes: Iterable[str]) -> Dict[str, Feature]:
        code_list = list(set(codes))
        if not code_list:
            return {}
        with get_db_session() as session:
            rows = session.execute(
                select(features).where(features.c.code.in_(code_list))
            ).all()
            return {row.code: _feature_from_row(row) for row in rows}

    @storage_retry("catalog.features")
    def list(self, active_only: bool = True) -> List[Feature]:
        with get_db_session() as session:
            query = select(features)
            if active_only:
                query = query.where(features.c.active == True)  # noqa: E712
            rows = session.execute(
                query.order_by(features.c.category, features.c.sort_order, features.c.code)
            ).all()
            return [_feature_from_row(row) for row in rows]


class SqlPackageStore:
    """Package catalog reads, including each package's feature limits."""

    def get(self, code: str) -> Optional[Package]:
        return self.get_many([code]).get(code)

    @storage_retry("catalog.packages")
    def get_many(self, codes: Iterable[str]) -> Dict[str, Package]:
        code_list = list(set(codes))
        if not code_list:
            return {}
        with get_db_session() as session:
            package_rows = session.execute(
                select(packages).where(packages.c.code.in_(code_list))
            ).all()
            limit_rows = session.execute(
                select(package_features).where(package_features.c.package_code.in_(code_list))
            ).all()

        limits: Dict[str, Dict[str, PackageFeature]] = {}
        for row in limit_rows:
            limits.setdefault(row.package_code, {})[row.feature_code] = PackageFeature(
                package_code=row.package_code,
                feature_code=row.feature_code,
                limit_value=row.limit_value,
            )

        return {
            row.code: Package(
                code=row.code,
                name=row.name,
                stackable=bool(row.stackable),
                active=bool(row.active),
                public=bool(row.public),
                features=limits.get(row.code, {}),
                created_at=as_utc(row.created_at),
            )
            for row in package_rows
        }


def _validate_parent(code: str, kind: FeatureKind, parent_code: str) -> None:
    if parent_code == code:
        raise ValidationError(f"Feature '{code}' cannot be its own parent")
    parent = SqlFeatureStore().get(parent_code)
    if parent is None:
        raise UnknownFeatureError(parent_code)
    if parent.parent_code is not None:
        raise ValidationError(f"Feature '{parent_code}' is itself a child and cannot be a pool")
    if parent.kind != kind:
        raise ValidationError(f"Feature '{code}' must be {parent.kind.value} like its parent '{parent_code}'")


def upsert_feature(
    code: str,
    name: str,
    kind: Union[FeatureKind, str],
    *,
    reset_type: Union[ResetType, str] = ResetType.NONE,
    category: Optional[str] = None,
    sort_order: int = 0,
    active: bool = True,
    parent_code: Optional[str] = None,
) -> Feature:
    """
    Create or update a feature definition. The code itself never changes.

    A parent_code makes this a child of a pool feature: checks and usage are
    resolved against the parent. Pools are one level deep and parent and
    child must be the same kind.
    """
    feature_kind = _coerce_enum(FeatureKind, kind, "kind")
    reset = _coerce_enum(ResetType, reset_type, "reset_type")
    if feature_kind == FeatureKind.BOOLEAN and reset != ResetType.NONE:
        raise ValidationError(f"Boolean feature '{code}' cannot have a reset cadence")
    if parent_code is not None:
        _validate_parent(code, feature_kind, parent_code)

    values = dict(
        name=name,
        kind=feature_kind.value,
        reset_type=reset.value,
        category=category,
        parent_code=parent_code,
        sort_order=sort_order,
        active=active,
    )
    with get_db_session() as session:
        existing = session.execute(
            select(features.c.code).where(features.c.code == code)
        ).first()
        if existing:
            session.execute(update(features).where(features.c.code == code).values(**values))
        else:
            session.execute(
                insert(features).values(code=code, created_at=datetime.now(timezone.utc), **values)
            )

    logger.info("[catalog] feature upserted", extra={"feature_code": code})
    return SqlFeatureStore().get(code)


def upsert_package(
    code: str,
    name: str,
    *,
    stackable: bool = False,
    active: bool = True,
    public: bool = True,
    limits: Optional[Dict[str, Optional[int]]] = None,
) -> Package:
    """
    Create or update a package and replace its feature limits.

    Args:
        code: Package code (e.g. 'apollo')
        limits: Mapping of feature code -> limit (None = unlimited)

    Raises:
        UnknownFeatureError: If a referenced feature is not in the catalog
        ValidationError: If a limit is negative
    """
    feature_limits = limits or {}
    known = SqlFeatureStore().get_many(feature_limits.keys())
    for feature_code, limit_value in feature_limits.items():
        if feature_code not in known:
            raise UnknownFeatureError(feature_code)
        if limit_value is not None and limit_value < 0:
            raise ValidationError(f"Limit for '{feature_code}' in package '{code}' must be >= 0")

    with get_db_session() as session:
        existing = session.execute(
            select(packages.c.code).where(packages.c.code == code)
        ).first()
        values = dict(name=name, stackable=stackable, active=active, public=public)
        if existing:
            session.execute(update(packages).where(packages.c.code == code).values(**values))
            session.execute(delete(package_features).where(package_features.c.package_code == code))
        else:
            session.execute(
                insert(packages).values(code=code, created_at=datetime.now(timezone.utc), **values)
            )

        for feature_code, limit_value in feature_limits.items():
            session.execute(
                insert(package_features).values(
                    package_code=code,
                    feature_code=feature_code,
                    limit_value=limit_value,
                )
            )

    logger.info("[catalog] package upserted", extra={"package_code": code})
    return SqlPackageStore().get(code)


def set_package_active(code: str, active: bool) -> Package:
    """Retire or restore a package in the catalog. Existing grants stop counting while inactive."""
    with get_db_session() as session:
        result = session.execute(
            update(packages).where(packages.c.code == code).values(active=active)
        )
        if result.rowcount == 0:
            raise UnknownPackageError(code)
    return SqlPackageStore().get(code)


def get_feature(code: str) -> Optional[Feature]:
    return SqlFeatureStore().get(code)


def get_package(code: str) -> Optional[Package]:
    return SqlPackageStore().get(code)


def list_features(active_only: bool = True) -> List[Feature]:
    return SqlFeatureStore().list(active_only=active_only)


def seed_catalog(catalog: Optional[dict] = None) -> None:
    """
    Seed the default catalog into the database (idempotent).

    Existing features and packages are left untouched. Safe to call multiple times.
    """
    config = catalog or DEFAULT_CATALOG
    feature_store = SqlFeatureStore()
    package_store = SqlPackageStore()

    existing_features = feature_store.get_many(config.get("features", {}).keys())
    for code, entry in config.get("features", {}).items():
        if code in existing_features:
            continue
        upsert_feature(
            code,
            entry["name"],
            entry["kind"],
            reset_type=entry.get("reset_type", "none"),
            category=entry.get("category"),
            sort_order=entry.get("sort_order", 0),
            parent_code=entry.get("parent"),
        )

    existing_packages = package_store.get_many(config.get("packages", {}).keys())
    for code, entry in config.get("packages", {}).items():
        if code in existing_packages:
            continue
        upsert_package(
            code,
            entry["name"],
            stackable=entry.get("stackable", False),
            public=entry.get("public", True),
            limits=entry.get("features", {}),
        )
