"""
Concurrent writers against the shared ledger.

Every worker goes through its own session, so these exercise the storage
level upsert and conditional update rather than any in-process locking.
"""
from concurrent.futures import ThreadPoolExecutor

from entitlement_engine.core.errors import QuotaExceededError
from entitlement_engine.features.entitlements.service import consume_usage
from entitlement_engine.features.packages.service import provision_package
from entitlement_engine.features.usage.service import get_usage, record_usage, usage_history

WORKERS = 8


def test_concurrent_records_never_lose_increments(workspace_id, now):
    def record_many(_):
        for _ in range(20):
            record_usage(workspace_id, "api.requests", 1, now=now)

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        list(pool.map(record_many, range(WORKERS)))

    assert get_usage(workspace_id, "api.requests", now=now) == WORKERS * 20
    assert len(usage_history(workspace_id, "api.requests", limit=500)) == WORKERS * 20


def test_concurrent_consumers_stop_exactly_at_limit(workspace_id, now):
    # starter grants 5 social accounts
    provision_package(workspace_id, "starter", now=now)

    def attempt(_):
        try:
            consume_usage(workspace_id, "social.accounts", 1, now=now)
            return True
        except QuotaExceededError:
            return False

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        outcomes = list(pool.map(attempt, range(WORKERS * 2)))

    assert outcomes.count(True) == 5
    assert outcomes.count(False) == WORKERS * 2 - 5
    assert get_usage(workspace_id, "social.accounts", now=now) == 5
