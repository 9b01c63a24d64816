"""Settings validation."""

import pytest
from pydantic import ValidationError

from creditledger.config import ZERO_ADDRESS, Settings


class TestSettings:

    def test_defaults(self):
        s = Settings(_env_file=None, stripe_secret_key=None)
        assert s.refund_overdraft_policy == "cap"
        assert s.meter_interval_s == 60
        assert s.max_session_minutes == 60
        assert s.chain_enabled is False

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CREDITLEDGER_DAILY_BONUS_MAX", "75")
        assert Settings(_env_file=None).daily_bonus_max == 75

    @pytest.mark.parametrize("field", ["payment_contract_address", "payment_token_address", "vault_address"])
    def test_zero_address_rejected(self, field):
        with pytest.raises(ValidationError, match="zero address"):
            Settings(_env_file=None, **{field: ZERO_ADDRESS})

    def test_live_key_in_test_mode_rejected(self):
        with pytest.raises(ValidationError, match="using live key"):
            Settings(_env_file=None, stripe_secret_key="sk_live_abc", stripe_live_mode=False)

    def test_test_key_in_live_mode_rejected(self):
        with pytest.raises(ValidationError, match="using test key"):
            Settings(_env_file=None, stripe_secret_key="sk_test_abc", stripe_live_mode=True)

    def test_matching_key_accepted(self):
        assert Settings(_env_file=None, stripe_secret_key="sk_test_abc").stripe_live_mode is False

    def test_database_url(self, tmp_path):
        assert Settings(_env_file=None, data_directory=str(tmp_path)).resolved_database_url() == (
            f"sqlite:///{tmp_path}/creditledger.db"
        )
        assert Settings(_env_file=None, database_url="postgresql://x/y").resolved_database_url() == "postgresql://x/y"

    def test_refund_policy_is_constrained(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, refund_overdraft_policy="maybe")
