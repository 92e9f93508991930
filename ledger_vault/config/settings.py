"""Configuration settings for Ledger Vault."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# NOTE: load_dotenv() is called in CLI main.py for faster module imports


@dataclass
class Settings:
    """Main settings container."""

    # Paths
    store_path: Path = field(default_factory=lambda: Path("./ledger_vault_store.json"))
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "ledger_vault")

    # Default user for CLI commands
    user_id: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def salt_cache_file(self) -> Path:
        """Local copy of each user's main salt."""
        return self.cache_dir / "salts.json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        settings = cls()

        if store := os.getenv("LEDGER_VAULT_STORE"):
            settings.store_path = Path(store)

        if cache_dir := os.getenv("LEDGER_VAULT_CACHE_DIR"):
            settings.cache_dir = Path(cache_dir)

        if user_id := os.getenv("LEDGER_VAULT_USER"):
            settings.user_id = user_id

        if log_level := os.getenv("LOG_LEVEL"):
            settings.log_level = log_level

        if log_file := os.getenv("LEDGER_VAULT_LOG_FILE"):
            settings.log_file = Path(log_file)

        return settings


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def configure(settings: Optional[Settings]) -> None:
    """Set the global settings instance (None reloads from the environment)."""
    global _settings
    _settings = settings
