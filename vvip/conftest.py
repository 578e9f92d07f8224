# vvip/conftest.py
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add repository root to PYTHONPATH so `import vvip...` works from any cwd
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Configure before any vvip module reads the environment
_TEST_DB_DIR = tempfile.mkdtemp(prefix="vvip-tests-")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_TEST_DB_DIR}/vvip_test.db")

PRICE_ENV = {
    "STRIPE_PRICE_GOLD": "price_gold",
    "STRIPE_PRICE_PLATINUM": "price_platinum",
    "STRIPE_PRICE_VVIP": "price_vvip",
}


@pytest.fixture(scope="function", autouse=True)
def billing_env(monkeypatch):
    """
    Deterministic billing configuration for every test.

    No test talks to Stripe or Postmark: secret keys are removed and prices
    point at fixed fake ids. Tests opt in to a configured key explicitly.
    """
    for key in (
        "STRIPE_SECRET_KEY",
        "STRIPE_PUBLISHABLE_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "POSTMARK_SERVER_TOKEN",
        "RATE_LIMIT_ENABLED",
    ):
        monkeypatch.delenv(key, raising=False)
    for key, value in PRICE_ENV.items():
        monkeypatch.setenv(key, value)

    from vvip.features.billing.notifier import reset_notifier
    reset_notifier()
    yield
    reset_notifier()


@pytest.fixture(scope="function")
def reset_db():
    """
    Reset database tables before each test.

    Drops and recreates every table on the SQLite test database so each test
    starts from a clean slate.
    """
    from vvip.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def fake_provider(monkeypatch):
    """Fake Stripe provider wired into the command handler and reconciler."""
    from vvip.tests.mocks import FakeProvider

    provider = FakeProvider()
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_fake")
    monkeypatch.setattr("vvip.features.billing.service.get_provider", lambda: provider)
    monkeypatch.setattr("vvip.features.billing.reconciler.get_provider", lambda: provider)
    monkeypatch.setattr("vvip.features.billing.reconcile_job.get_provider", lambda: provider)
    return provider


@pytest.fixture
def fake_notifier(monkeypatch):
    """Capture notifications instead of sending email."""
    from vvip.tests.mocks import FakeNotifier

    notifier = FakeNotifier()
    monkeypatch.setattr("vvip.features.billing.service.get_notifier", lambda: notifier)
    monkeypatch.setattr("vvip.features.billing.reconciler.get_notifier", lambda: notifier)
    return notifier
