# membership/conftest.py
import sys
import pytest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

from sqlalchemy.exc import OperationalError

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from membership.core.config import (
    CANCELLATION_END_OF_PERIOD,
    CANCELLATION_IMMEDIATE,
    LifecyclePolicy,
    settings,
)
from membership.core import database as database_module
from membership.core.database import init_engine, create_all_tables, drop_all_tables
from membership.features.catalog.service import build_default_catalog
from membership.features.entitlements.service import EntitlementEvaluator
from membership.features.subscriptions.service import (
    LifecycleEvent,
    PaymentEvent,
    SubscriptionLifecycleManager,
)
from membership.features.users.service import create_user


@pytest.fixture(scope="function", autouse=True)
def database():
    """
    Fresh in-memory SQLite schema for every test.

    StaticPool keeps the single connection alive, so every session in the
    test (and every TestClient request) sees the same database.
    """
    init_engine("sqlite://")
    create_all_tables()
    yield
    drop_all_tables()


@pytest.fixture
def now():
    """Fixed clock for lifecycle tests."""
    return datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def catalog():
    return build_default_catalog()


@pytest.fixture
def policy():
    return LifecyclePolicy(cancellation_mode=CANCELLATION_IMMEDIATE)


@pytest.fixture
def deferred_policy():
    return LifecyclePolicy(cancellation_mode=CANCELLATION_END_OF_PERIOD)


@pytest.fixture
def manager(policy):
    return SubscriptionLifecycleManager(policy=policy)


@pytest.fixture
def evaluator(catalog, manager):
    return EntitlementEvaluator(catalog, manager)


@pytest.fixture
def make_user():
    """Factory: register users (none/free subscription)."""
    counter = {"n": 0}

    def _make(user_id=None, email=None):
        counter["n"] += 1
        return create_user(user_id or f"user-{counter['n']}", email=email)

    return _make


@pytest.fixture
def activate(manager, now):
    """
    Factory: take a registered user through checkout to an active subscription.

    Returns the active SubscriptionState.
    """
    def _activate(user_id, tier="premium", reference=None, at=None, target=None):
        lifecycle = target or manager
        when = at or now
        reference = reference or f"cs_{user_id}"
        lifecycle.initiate_checkout(user_id, tier, reference, now=when)
        return lifecycle.handle_payment_event(
            PaymentEvent(
                type=LifecycleEvent.CHECKOUT_CONFIRMED,
                payment_reference=reference,
                user_id=user_id,
            ),
            now=when,
        )

    return _activate


@pytest.fixture
def admin_key(monkeypatch):
    """Configure ADMIN_KEY and return matching headers."""
    monkeypatch.setattr(settings, "ADMIN_KEY", "test-admin-key-123")
    return {"X-Admin-Key": "test-admin-key-123", "X-Admin-Id": "ops-1"}


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from membership.main import app

    return TestClient(app)


@pytest.fixture
def mock_billing_provider(monkeypatch):
    """Billing enabled with a mocked provider (no Stripe calls)."""
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PREMIUM", "price_premium")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PRO", "price_pro")
    with patch("membership.features.billing.service.get_provider") as mock_get:
        mock_provider = Mock()
        mock_get.return_value = mock_provider
        yield mock_provider


@pytest.fixture
def datastore_outage(monkeypatch):
    """Call to make every later session fail as if the database went away."""
    def _outage():
        session = Mock()
        session.execute.side_effect = OperationalError(
            "SELECT 1", {}, Exception("could not connect to server")
        )
        monkeypatch.setattr(database_module, "get_session_factory", lambda: Mock(return_value=session))
        return session

    return _outage
