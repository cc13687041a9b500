"""Configuration management for Split Ledger."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPLIT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Whose point of view balances are computed from
    current_user_id: str = "me"
    current_user_name: str = "You"

    # Billing settings
    strict_billing_cycles: bool = True  # Raise on unknown cycles instead of no-op
    renewal_window_days: int = 7  # "Renewing soon" horizon for exports

    # Database path
    database_path: Path = Path.home() / ".split_ledger" / "split_ledger.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check the SPLIT_LEDGER_* variables "
            f"in your environment or .env file.\n"
            f"Error: {e}"
        ) from e
