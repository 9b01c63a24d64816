"""
creditledger Application Configuration
======================================

PURPOSE:
    Pydantic-Settings based configuration for the credit ledger backend.
    All settings can be overridden via environment variables (CREDITLEDGER_ prefix).

    Chain addresses are validated at load time: a zero address for the
    payment contract, token or vault is a configuration error, never a
    runtime surprise.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


class Settings(BaseSettings):
    """Runtime configuration for ledger, payment rails and session metering."""

    app_name: str = "creditledger"
    debug: bool = False
    environment: Literal["development", "production"] = "development"

    # Persistence
    database_url: Optional[str] = None
    data_directory: str = "/data"

    # Auth (bearer JWT issued by the product's auth service)
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_cache_ttl: int = 300
    auth_cache_size: int = 1000
    internal_api_key: Optional[str] = None

    # Credit pricing (fiat and on-chain quotes share these)
    credits_usd_price: float = 0.1
    credits_min_purchase: int = 10
    credits_max_purchase: int = 1000
    signup_bonus_credits: int = 25
    daily_bonus_max: int = 50
    credits_bonus_packages: List[Dict[str, Any]] = []

    # Refund debits that exceed the current balance: cap at zero and alert, or overdraw
    refund_overdraft_policy: Literal["cap", "allow"] = "cap"

    # Stripe (fiat rail)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_live_mode: bool = False
    stripe_api_version: str = "2024-12-18.acacia"
    frontend_url: str = "http://localhost:3004"

    # Reconciliation
    reconciliation_lookback_hours: int = 24
    reconciliation_interval_s: int = 0  # 0 = only via CLI / on demand
    health_window_days: int = 7

    # On-chain rail
    chain_enabled: bool = False
    chain_rpc_url: Optional[str] = None
    chain_id: int = 84532
    payment_contract_address: Optional[str] = None
    payment_token_address: Optional[str] = None
    vault_address: Optional[str] = None
    validator_private_key: Optional[str] = None
    chain_start_block: int = 0
    chain_confirmations: int = 2
    chain_sync_interval_s: int = 15
    chain_sync_batch_blocks: int = 2000
    receipt_ttl_s: int = 300
    token_price_url: str = "https://api.geckoterminal.com/api/v2/simple/networks/base/token_price"

    # Session meter
    pricing_config_path: str = "config/personas.yaml"
    meter_interval_s: int = 60
    max_session_minutes: int = 60
    persona_cache_ttl: int = 300

    # CORS
    cors_origins: List[str] = ["http://localhost:3004", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        env_prefix = "CREDITLEDGER_"

    @field_validator("payment_contract_address", "payment_token_address", "vault_address")
    @classmethod
    def _reject_zero_address(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value.lower() == ZERO_ADDRESS:
            raise ValueError("zero address is not a valid chain configuration value")
        return value

    @model_validator(mode="after")
    def _check_stripe_mode(self) -> "Settings":
        """Refuse a live key in test mode and a test key in live mode."""
        key = self.stripe_secret_key
        if key:
            is_test_key = key.startswith("sk_test_")
            if self.stripe_live_mode and is_test_key:
                raise ValueError("STRIPE_LIVE_MODE=true but using test key (sk_test_)")
            if not self.stripe_live_mode and not is_test_key:
                raise ValueError("STRIPE_LIVE_MODE=false but using live key (sk_live_)")
        return self

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_directory}/creditledger.db"


settings = Settings()

logger.info("creditledger environment: %s", settings.environment)
