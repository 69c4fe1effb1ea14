"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    configure_logging: bool = False  # Servicing manager installs the handler on startup

    # Servicing rules
    npa_threshold_days: int = Field(90, ge=1, description="Days past due before a loan is NPA")
    disbursement_tolerance: str = "0.01"
    max_emi_to_income_ratio: str = "0.5"
    foreclosure_interest_rebate: str = "0.5"  # share of remaining interest waived
    account_number_prefix: str = "LS"

    # Feature flags
    enable_events: bool = True

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False

    @property
    def disbursement_tolerance_amount(self) -> Decimal:
        return Decimal(self.disbursement_tolerance)

    @property
    def max_emi_ratio(self) -> Decimal:
        return Decimal(self.max_emi_to_income_ratio)

    @property
    def interest_rebate(self) -> Decimal:
        return Decimal(self.foreclosure_interest_rebate)


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
