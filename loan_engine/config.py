"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanEngineConfig(BaseSettings):
    """Loan calculation engine configuration"""

    # Penalty defaults (applied when a stored policy leaves a field blank)
    default_grace_period_days: int = 7
    default_penalty_rate: str = "0.02"
    overdue_month_days: int = 30  # Days per "month overdue" for percentage penalties

    # Loan payable defaults
    payable_late_fee_rate: str = "5.00"  # Annual %, accrued daily on overdue payables
    payable_discount_rate: str = "0.00"  # Early payment discount %
    due_soon_days: int = 7

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


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
