"""
Tests for package and boost provisioning.

Covers idempotency, lifecycle transitions, boost validation rules and the
audit trail written alongside each transition.
"""
import pytest
from datetime import datetime, timedelta, timezone

from entitlement_engine.core.errors import NotFoundError, UnknownPackageError, ValidationError
from entitlement_engine.features.audit.service import entitlement_history
from entitlement_engine.features.boosts.service import active_boosts, cancel_boost, provision_boost
from entitlement_engine.features.catalog.service import set_package_active
from entitlement_engine.features.packages.service import (
    SqlWorkspacePackageStore,
    active_packages,
    provision_package,
    reactivate_workspace,
    revoke_package,
    suspend_workspace,
)
from entitlement_engine.models.boost import BoostStatus, DurationType
from entitlement_engine.models.entitlement_log import (
    ACTION_BOOST_CANCELLED,
    ACTION_BOOST_PROVISIONED,
    ACTION_PACKAGE_PROVISIONED,
    ACTION_PACKAGE_REACTIVATED,
    ACTION_PACKAGE_REVOKED,
    ACTION_PACKAGE_SUSPENDED,
)
from entitlement_engine.models.workspace_package import WorkspacePackageStatus


class TestPackageProvisioning:
    def test_provision_is_idempotent(self, workspace_id, now):
        first = provision_package(workspace_id, "apollo", now=now)
        second = provision_package(workspace_id, "apollo", now=now + timedelta(minutes=5))

        assert first.id == second.id
        assert len(SqlWorkspacePackageStore().active_for(workspace_id)) == 1
        assert len(entitlement_history(workspace_id, action=ACTION_PACKAGE_PROVISIONED)) == 1

    def test_provision_defaults(self, workspace_id, now):
        grant = provision_package(workspace_id, "apollo", now=now)

        assert grant.status == WorkspacePackageStatus.ACTIVE
        assert grant.source == "system"
        assert grant.granted_at == now
        assert grant.billing_cycle_anchor == now
        assert grant.expires_at is None

    def test_unknown_package(self, workspace_id, now):
        with pytest.raises(UnknownPackageError):
            provision_package(workspace_id, "platinum", now=now)

    def test_retired_package_rejected(self, workspace_id, now):
        set_package_active("starter", False)
        with pytest.raises(ValidationError):
            provision_package(workspace_id, "starter", now=now)

    def test_revoke_then_revoke_again_is_noop(self, workspace_id, now):
        provision_package(workspace_id, "apollo", now=now)

        revoked = revoke_package(workspace_id, "apollo", "billing", now=now)
        assert revoked.status == WorkspacePackageStatus.REVOKED
        assert revoked.revoked_at == now

        assert revoke_package(workspace_id, "apollo", "billing", now=now) is None
        rows = SqlWorkspacePackageStore().list_for(workspace_id)
        assert [row.status for row in rows] == [WorkspacePackageStatus.REVOKED]

    def test_revoke_never_provisioned_is_noop(self, workspace_id, now):
        assert revoke_package(workspace_id, "apollo", now=now) is None
        assert entitlement_history(workspace_id) == []

    def test_reprovision_after_revoke_creates_new_grant(self, workspace_id, now):
        first = provision_package(workspace_id, "apollo", now=now)
        revoke_package(workspace_id, "apollo", now=now)
        second = provision_package(workspace_id, "apollo", now=now)

        assert second.id != first.id
        assert len(SqlWorkspacePackageStore().list_for(workspace_id)) == 2

    def test_replace_base_revokes_previous_base_only(self, workspace_id, now):
        provision_package(workspace_id, "starter", now=now)
        provision_package(workspace_id, "social-addon", now=now)

        provision_package(workspace_id, "apollo", replace_base=True, now=now)

        codes = sorted(grant.package_code for grant in active_packages(workspace_id, now=now))
        assert codes == ["apollo", "social-addon"]

    def test_active_packages_filters_expired_and_retired(self, workspace_id, now):
        provision_package(workspace_id, "apollo", now=now)
        provision_package(workspace_id, "ai-addon", expires_at=now + timedelta(hours=1), now=now)
        provision_package(workspace_id, "social-addon", now=now)
        set_package_active("social-addon", False)

        codes = [grant.package_code for grant in active_packages(workspace_id, now=now + timedelta(hours=2))]
        assert codes == ["apollo"]

    def test_suspend_and_reactivate(self, workspace_id, now):
        provision_package(workspace_id, "apollo", now=now)
        provision_package(workspace_id, "social-addon", now=now)

        suspended = suspend_workspace(workspace_id, "billing", now=now)
        assert sorted(grant.package_code for grant in suspended) == ["apollo", "social-addon"]
        assert active_packages(workspace_id, now=now) == []

        reactivated = reactivate_workspace(workspace_id, "billing", now=now)
        assert sorted(grant.package_code for grant in reactivated) == ["apollo", "social-addon"]
        assert len(active_packages(workspace_id, now=now)) == 2

    def test_reactivate_skips_package_provisioned_again(self, workspace_id, now):
        provision_package(workspace_id, "apollo", now=now)
        suspend_workspace(workspace_id, now=now)
        provision_package(workspace_id, "apollo", now=now)

        assert reactivate_workspace(workspace_id, now=now) == []
        statuses = sorted(row.status.value for row in SqlWorkspacePackageStore().list_for(workspace_id))
        assert statuses == ["active", "revoked"]

    def test_transitions_are_audited(self, workspace_id, now):
        provision_package(workspace_id, "apollo", source="checkout", now=now)
        suspend_workspace(workspace_id, "billing", now=now + timedelta(seconds=1))
        reactivate_workspace(workspace_id, "billing", now=now + timedelta(seconds=2))
        revoke_package(workspace_id, "apollo", "support", now=now + timedelta(seconds=3))

        actions = [entry.action for entry in entitlement_history(workspace_id)]
        assert actions == [
            ACTION_PACKAGE_REVOKED,
            ACTION_PACKAGE_REACTIVATED,
            ACTION_PACKAGE_SUSPENDED,
            ACTION_PACKAGE_PROVISIONED,
        ]
        provisioned = entitlement_history(workspace_id, action=ACTION_PACKAGE_PROVISIONED)[0]
        assert provisioned.source == "checkout"
        assert provisioned.target == "apollo"
        assert "workspace_package_id" in provisioned.payload


class TestBoostProvisioning:
    def test_boosts_are_never_deduplicated(self, workspace_id, now):
        first = provision_boost(workspace_id, "ai.credits", boost_type="add_limit", limit_value=50,
                                duration_type="permanent", now=now)
        second = provision_boost(workspace_id, "ai.credits", boost_type="add_limit", limit_value=50,
                                 duration_type="permanent", now=now)

        assert first.id != second.id
        assert len(active_boosts(workspace_id, now=now)) == 2

    @pytest.mark.parametrize(
        "options",
        [
            {"boost_type": "add_limit", "duration_type": "permanent"},
            {"boost_type": "add_limit", "limit_value": 0, "duration_type": "permanent"},
            {"boost_type": "enable", "limit_value": 5, "duration_type": "permanent"},
            {"boost_type": "unlimited", "limit_value": 5, "duration_type": "permanent"},
            {"boost_type": "enable", "duration_type": "duration"},
            {"boost_type": "teleport", "duration_type": "permanent"},
            {"boost_type": "enable", "duration_type": "forever"},
        ],
    )
    def test_invalid_boosts_rejected(self, workspace_id, now, options):
        with pytest.raises(ValidationError):
            provision_boost(workspace_id, "ai.credits", now=now, **options)
        assert active_boosts(workspace_id, now=now) == []

    def test_permanent_boost_rejects_expiry(self, workspace_id, now):
        with pytest.raises(ValidationError):
            provision_boost(workspace_id, "mcp.portal", boost_type="enable", duration_type="permanent",
                            expires_at=now + timedelta(days=1), now=now)

    def test_cycle_bound_defaults_to_calendar_month_end(self, workspace_id, now):
        boost = provision_boost(workspace_id, "ai.credits", limit_value=100, now=now)

        assert boost.duration_type == DurationType.CYCLE_BOUND
        assert boost.expires_at == datetime(2026, 4, 1, tzinfo=timezone.utc)

    def test_cycle_bound_follows_billing_anchor(self, workspace_id, now):
        anchor = datetime(2026, 1, 20, tzinfo=timezone.utc)
        provision_package(workspace_id, "apollo", billing_cycle_anchor=anchor, now=anchor)

        boost = provision_boost(workspace_id, "ai.credits", limit_value=100, now=now)

        assert boost.expires_at == datetime(2026, 3, 20, tzinfo=timezone.utc)

    def test_cycle_bound_keeps_explicit_expiry(self, workspace_id, now):
        expires_at = now + timedelta(days=2)
        boost = provision_boost(workspace_id, "ai.credits", limit_value=100, expires_at=expires_at, now=now)
        assert boost.expires_at == expires_at

    def test_cancel_is_idempotent(self, workspace_id, now):
        boost = provision_boost(workspace_id, "mcp.portal", boost_type="enable", duration_type="permanent", now=now)

        cancelled = cancel_boost(boost.id, "support", now=now)
        assert cancelled.status == BoostStatus.CANCELLED
        assert cancelled.cancelled_at == now

        again = cancel_boost(boost.id, "support", now=now + timedelta(hours=1))
        assert again.cancelled_at == now
        assert len(entitlement_history(workspace_id, action=ACTION_BOOST_CANCELLED)) == 1

    def test_cancel_unknown_boost(self):
        with pytest.raises(NotFoundError):
            cancel_boost("00000000-0000-0000-0000-000000000000")

    def test_active_boosts_order_and_filter(self, workspace_id, now):
        permanent = provision_boost(workspace_id, "mcp.portal", boost_type="enable",
                                    duration_type="permanent", now=now)
        late = provision_boost(workspace_id, "ai.credits", limit_value=10, duration_type="duration",
                               expires_at=now + timedelta(days=5), now=now)
        soon = provision_boost(workspace_id, "ai.credits", limit_value=10, duration_type="duration",
                               expires_at=now + timedelta(days=1), now=now)
        provision_boost(workspace_id, "ai.credits", limit_value=10, duration_type="duration",
                        expires_at=now - timedelta(days=1), now=now - timedelta(days=2))
        cancelled = provision_boost(workspace_id, "ai.credits", limit_value=10, duration_type="permanent", now=now)
        cancel_boost(cancelled.id, now=now)

        assert [b.id for b in active_boosts(workspace_id, now=now)] == [soon.id, late.id, permanent.id]
        assert [b.id for b in active_boosts(workspace_id, "mcp.portal", now=now)] == [permanent.id]

    def test_boost_provisioning_is_audited(self, workspace_id, now):
        boost = provision_boost(workspace_id, "ai.credits", limit_value=25, duration_type="permanent",
                                source="promo", metadata={"campaign": "spring"}, now=now)

        entry = entitlement_history(workspace_id, action=ACTION_BOOST_PROVISIONED)[0]
        assert entry.target == boost.id
        assert entry.source == "promo"
        assert entry.payload["limit_value"] == 25
        assert boost.metadata == {"campaign": "spring"}
