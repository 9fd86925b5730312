"""
Settings for the retail ledger

Values come from ``LEDGER_*`` environment variables or a ``.env`` file,
loaded through pydantic-settings.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LEDGER_", env_file=".env", case_sensitive=False
    )

    # Storage: sqlite:///<path> or memory://
    database_url: str = "sqlite:///retail_ledger.db"
    database_timeout: float = 5.0

    api_host: str = "0.0.0.0"
    api_port: int = 8090

    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None  # stderr when unset

    # Onboarding rules
    account_number_start: int = 10000
    savings_min_opening_balance: Decimal = Decimal("1000.00")
    current_min_opening_balance: Decimal = Decimal("0.00")

    enable_audit_logging: bool = True

    def minimum_opening_balance(self, account_type: str) -> Decimal:
        """Smallest opening deposit accepted for SAVINGS or CURRENT"""
        if account_type.upper() == "SAVINGS":
            return self.savings_min_opening_balance
        return self.current_min_opening_balance


config = LedgerConfig()


def get_config() -> LedgerConfig:
    return config


def reload_config() -> LedgerConfig:
    """Re-read the environment and replace the module-level settings"""
    global config
    config = LedgerConfig()
    return config
