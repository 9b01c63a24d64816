"""
Shared fixtures: every test gets its own SQLite file with the ledger schema.

Environment is set before any creditledger import so the module-level
Settings instance (and the app built from it) never points at /data.
"""

import os
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
_TMP = tempfile.mkdtemp(prefix="creditledger-tests-")

os.environ.setdefault("CREDITLEDGER_DATA_DIRECTORY", _TMP)
os.environ.setdefault("CREDITLEDGER_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CREDITLEDGER_INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("CREDITLEDGER_STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("CREDITLEDGER_PRICING_CONFIG_PATH", str(ROOT / "config" / "personas.yaml"))

from sqlmodel import SQLModel  # noqa: E402

from creditledger.core.alerting import alert_tracker  # noqa: E402
from creditledger.core.database import build_engine  # noqa: E402
from creditledger.models import ledger as ledger_models  # noqa: E402,F401
from creditledger.models.pricing import PricingCatalog  # noqa: E402
from creditledger.services.ledger import CreditLedger  # noqa: E402

PERSONAS_PATH = str(ROOT / "config" / "personas.yaml")


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path}/ledger.db")
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def ledger(engine):
    return CreditLedger(engine=engine)


@pytest.fixture(autouse=True)
def _clear_alerts():
    alert_tracker.clear()
    yield
    alert_tracker.clear()


@pytest.fixture
def funded(ledger):
    """Factory: open an account holding ``credits`` (as one purchase row)."""

    def _make(user_id: str = "user-1", credits: int = 100) -> str:
        ledger.open_account(user_id)
        if credits:
            ledger.credit(user_id, credits, "Initial purchase", idempotency_key=f"seed:{user_id}")
        return user_id

    return _make


@pytest.fixture
def pricing():
    return PricingCatalog(PERSONAS_PATH).load()
