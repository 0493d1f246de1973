"""
Tests for usage counters.

Verifies:
- Conditional increment never passes the ceiling
- Period keys roll over with the billing period
- Quantity validation
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from membership.core.database import create_all_tables, init_engine
from membership.core.errors import ValidationError
from membership.features.usage import service as usage_store
from membership.features.users.service import create_user
from membership.models.subscription import SubscriptionState, SubscriptionStatus
from membership.models.tier import Tier


def test_consume_creates_counter_lazily(make_user):
    make_user("alice")
    assert usage_store.peek("alice", "monthly-flows", "2025-03") == 0
    assert usage_store.consume("alice", "monthly-flows", 1, "2025-03") == 1
    assert usage_store.consume("alice", "monthly-flows", 2, "2025-03") == 3
    assert usage_store.peek("alice", "monthly-flows", "2025-03") == 3


def test_consume_respects_ceiling(make_user):
    make_user("alice")
    assert usage_store.consume("alice", "monthly-flows", 9, "2025-03", ceiling=10) == 9
    assert usage_store.consume("alice", "monthly-flows", 2, "2025-03", ceiling=10) is None
    assert usage_store.peek("alice", "monthly-flows", "2025-03") == 9
    assert usage_store.consume("alice", "monthly-flows", 1, "2025-03", ceiling=10) == 10
    assert usage_store.consume("alice", "monthly-flows", 1, "2025-03", ceiling=10) is None
    assert usage_store.peek("alice", "monthly-flows", "2025-03") == 10


def test_zero_ceiling_rejects_everything_but_zero(make_user):
    make_user("alice")
    assert usage_store.consume("alice", "monthly-ai-requests", 1, "2025-03", ceiling=0) is None
    assert usage_store.consume("alice", "monthly-ai-requests", 0, "2025-03", ceiling=0) == 0


def test_counters_are_scoped_by_period_and_feature(make_user):
    make_user("alice")
    usage_store.consume("alice", "monthly-flows", 4, "2025-03")
    usage_store.consume("alice", "monthly-flows", 1, "2025-04")
    usage_store.consume("alice", "monthly-ai-requests", 2, "2025-03")

    assert usage_store.usage_summary("alice", "2025-03") == {"monthly-flows": 4, "monthly-ai-requests": 2}
    assert usage_store.usage_summary("alice", "2025-04") == {"monthly-flows": 1}

    flows = usage_store.history("alice", "monthly-flows")
    assert [c.period_key for c in flows] == ["2025-03", "2025-04"]


@pytest.mark.parametrize("quantity", [-1, 1.5, "2", True, None])
def test_invalid_quantity_rejected(make_user, quantity):
    make_user("alice")
    with pytest.raises(ValidationError) as exc:
        usage_store.consume("alice", "monthly-flows", quantity, "2025-03")
    assert exc.value.code == "invalid_quantity"


def test_period_key_without_billing_period_is_calendar_month():
    now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert usage_store.period_key_for(None, now) == "2025-03"
    state = SubscriptionState(user_id="alice")
    assert usage_store.period_key_for(state, now) == "2025-03"


def test_period_key_follows_billing_period():
    start = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    state = SubscriptionState(
        user_id="alice",
        tier=Tier.PREMIUM,
        status=SubscriptionStatus.ACTIVE,
        period_start=start,
        period_end=start + timedelta(days=30),
    )
    key = usage_store.period_key_for(state, start + timedelta(days=3))
    assert key == "p-20250310T120000"

    renewed = state.model_copy(update={
        "period_start": state.period_end,
        "period_end": state.period_end + timedelta(days=30),
    })
    assert usage_store.period_key_for(renewed, start + timedelta(days=31)) != key


def test_period_key_rolls_over_after_period_end_without_renewal():
    start = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    state = SubscriptionState(
        user_id="alice",
        tier=Tier.PREMIUM,
        status=SubscriptionStatus.ACTIVE,
        period_start=start,
        period_end=start + timedelta(days=30),
    )
    assert usage_store.period_key_for(state, start + timedelta(days=29)) == "p-20250310T120000"
    assert usage_store.period_key_for(state, start + timedelta(days=30)) == "p-20250409T120000"
    assert usage_store.period_key_for(state, start + timedelta(days=75)) == "p-20250509T120000"

    # The cycle a renewal would start lands on the same key
    renewed = state.model_copy(update={
        "period_start": state.period_end,
        "period_end": state.period_end + timedelta(days=30),
    })
    assert usage_store.period_key_for(renewed, start + timedelta(days=31)) == "p-20250409T120000"


def test_concurrent_consumes_stop_exactly_at_ceiling(tmp_path):
    """Separate connections racing on one counter never overshoot the ceiling."""
    init_engine(f"sqlite:///{tmp_path / 'usage.db'}")
    create_all_tables()
    create_user("alice")
    usage_store.consume("alice", "monthly-flows", 0, "2025-03")

    def take_one(_):
        return usage_store.consume("alice", "monthly-flows", 1, "2025-03", ceiling=10)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(take_one, range(40)))

    granted = sorted(r for r in results if r is not None)
    assert granted == list(range(1, 11))
    assert results.count(None) == 30
    assert usage_store.peek("alice", "monthly-flows", "2025-03") == 10
