"""
Child features draw on their parent's pool: same limit, same counter.

The default catalog seeds ai.credits.images as a child of ai.credits.
"""
import pytest

from entitlement_engine.core.errors import QuotaExceededError, UnknownFeatureError, ValidationError
from entitlement_engine.features.boosts.service import provision_boost
from entitlement_engine.features.catalog.service import get_feature, upsert_feature
from entitlement_engine.features.entitlements.service import check_entitlement, consume_usage
from entitlement_engine.features.packages.service import provision_package
from entitlement_engine.features.usage.service import get_usage, record_usage, usage_history
from entitlement_engine.models.entitlement import ReasonCode


def test_seeded_child_points_at_parent():
    child = get_feature("ai.credits.images")
    assert child.parent_code == "ai.credits"
    assert child.pool_code == "ai.credits"
    assert get_feature("ai.credits").pool_code == "ai.credits"


def test_child_uses_parent_limit(workspace_id, now):
    provision_package(workspace_id, "starter", now=now)

    result = check_entitlement(workspace_id, "ai.credits.images", now=now)

    assert result.feature_code == "ai.credits.images"
    assert result.allowed is True
    assert result.limit == 50


def test_child_without_parent_grant_is_denied(workspace_id, now):
    result = check_entitlement(workspace_id, "ai.credits.images", now=now)
    assert result.allowed is False
    assert result.reason == ReasonCode.NO_PACKAGE


def test_child_and_parent_share_one_counter(workspace_id, now):
    provision_package(workspace_id, "starter", now=now)
    record_usage(workspace_id, "ai.credits", 30, now=now)
    event = record_usage(workspace_id, "ai.credits.images", 15, now=now)

    assert event.feature_code == "ai.credits"
    assert event.metadata == {"feature_code": "ai.credits.images"}
    assert get_usage(workspace_id, "ai.credits", now=now) == 45
    assert get_usage(workspace_id, "ai.credits.images", now=now) == 45

    parent = check_entitlement(workspace_id, "ai.credits", now=now)
    child = check_entitlement(workspace_id, "ai.credits.images", now=now)
    assert (parent.used, parent.remaining) == (45, 5)
    assert (child.used, child.remaining) == (45, 5)
    assert len(usage_history(workspace_id, "ai.credits")) == 2


def test_parent_boost_extends_child(workspace_id, now):
    provision_package(workspace_id, "starter", now=now)
    provision_boost(workspace_id, "ai.credits", limit_value=100, duration_type="permanent", now=now)

    assert check_entitlement(workspace_id, "ai.credits.images", now=now).limit == 150


def test_consume_child_is_capped_by_pool(workspace_id, now):
    provision_package(workspace_id, "starter", now=now)
    consume_usage(workspace_id, "ai.credits", 48, now=now)
    consume_usage(workspace_id, "ai.credits.images", 2, now=now)

    with pytest.raises(QuotaExceededError):
        consume_usage(workspace_id, "ai.credits.images", 1, now=now)
    assert get_usage(workspace_id, "ai.credits", now=now) == 50


class TestChildFeatureDefinitions:
    def test_unknown_parent(self):
        with pytest.raises(UnknownFeatureError):
            upsert_feature("reports.pdf", "PDF reports", "limited", parent_code="reports")

    def test_parent_cannot_be_a_child(self):
        with pytest.raises(ValidationError):
            upsert_feature("ai.credits.images.hd", "HD images", "limited", parent_code="ai.credits.images")

    def test_kind_must_match_parent(self):
        with pytest.raises(ValidationError):
            upsert_feature("ai.credits.toggle", "Toggle", "boolean", parent_code="ai.credits")

    def test_feature_cannot_parent_itself(self):
        with pytest.raises(ValidationError):
            upsert_feature("ai.credits", "AI credits", "limited", reset_type="cycle_bound", parent_code="ai.credits")
