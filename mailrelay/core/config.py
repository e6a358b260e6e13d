"""
Configuration management for the mailbox notification relay.

Loads configuration from:
1. .env file (secrets - never committed)
2. config.yaml (runtime relay settings)

The four relay knobs (poll interval, active window, provider base URL and
provider timeout) can also be set from the environment, which wins over
config.yaml.
"""

from dataclasses import dataclass, fields
from typing import List, Optional
import logging
import os
import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)

# Messages per page of the provider's inbox listing
PROVIDER_PAGE_SIZE = 30


@dataclass
class ProviderConfig:
    """Mail provider REST API configuration."""

    base_url: str = "https://api.mail.tm"
    timeout_seconds: float = 10.0


@dataclass
class DatabaseConfig:
    """Session store configuration."""

    url: str = ""
    host: str = ""
    port: int = 5432
    database: str = "mailrelay"
    user: str = "postgres"
    password: str = ""

    @property
    def connection_string(self) -> str:
        """Explicit DATABASE_URL, PostgreSQL when DB_HOST is set, local SQLite otherwise."""
        if self.url:
            return self.url
        if self.host:
            return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"
        return "sqlite:///mailrelay.db"


@dataclass
class TelegramConfig:
    """Telegram bot transport configuration."""

    bot_token: str = ""

    def is_configured(self) -> bool:
        return bool(self.bot_token)


@dataclass
class WebSocketConfig:
    """Push server configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3001


@dataclass
class RelayConfig:
    """Runtime relay configuration (from config.yaml)."""

    # Polling
    poll_interval_seconds: int = 15
    active_window_minutes: int = 30
    max_concurrent_polls: int = 5

    # Delivery
    dispatch_timeout_seconds: float = 10.0
    notify_mode: str = "all"  # 'all' or 'latest'

    # Observed-id bookkeeping per session
    max_observed_ids: int = 500


class ConfigManager:
    """Central configuration manager.

    Loads configuration from:
    - .env file for secrets (bot token, DB credentials)
    - config.yaml for runtime relay settings
    """

    def __init__(self, env_file: Optional[str] = None, config_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            env_file: Path to .env file (default: .env in working directory)
            config_file: Path to config.yaml file (default: config.yaml in working directory)
        """
        load_dotenv(env_file or ".env")
        self.config_file = config_file or "config.yaml"

        try:
            self._load_env_config()
            self._load_yaml_config()
            self._apply_env_overrides()
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

    def _load_env_config(self):
        """Load secrets and connection settings from the environment."""

        self.provider = ProviderConfig(
            base_url=os.getenv("MAIL_API_BASE_URL", "https://api.mail.tm").rstrip("/"),
            timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10")),
        )

        self.database = DatabaseConfig(
            url=os.getenv("DATABASE_URL", ""),
            host=os.getenv("DB_HOST", ""),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "mailrelay"),
            user=os.getenv("DB_USER", "postgres"),
            password=os.getenv("DB_PASSWORD", ""),
        )

        self.telegram = TelegramConfig(bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""))

        self.websocket = WebSocketConfig(
            enabled=os.getenv("WS_ENABLED", "true").lower() == "true",
            host=os.getenv("WS_HOST", "0.0.0.0"),
            port=int(os.getenv("WS_PORT", "3001")),
        )

    def _load_yaml_config(self):
        """Load runtime relay configuration from config.yaml."""
        if not os.path.exists(self.config_file):
            self.relay = RelayConfig()
            return

        try:
            with open(self.config_file, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load {self.config_file}: {e}; using default relay configuration")
            self.relay = RelayConfig()
            return

        known = {f.name for f in fields(RelayConfig)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown keys in {self.config_file}: {', '.join(sorted(unknown))}")
        self.relay = RelayConfig(**{k: v for k, v in data.items() if k in known})

    def _apply_env_overrides(self):
        """Environment wins over config.yaml for the relay knobs."""
        if os.getenv("POLL_INTERVAL_SECONDS"):
            self.relay.poll_interval_seconds = int(os.getenv("POLL_INTERVAL_SECONDS"))
        if os.getenv("ACTIVE_WINDOW_MINUTES"):
            self.relay.active_window_minutes = int(os.getenv("ACTIVE_WINDOW_MINUTES"))

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.provider.base_url.startswith(("http://", "https://")):
            errors.append("MAIL_API_BASE_URL must be an http(s) URL")
        if self.provider.timeout_seconds <= 0:
            errors.append("PROVIDER_TIMEOUT_SECONDS must be > 0")

        if self.relay.poll_interval_seconds < 1:
            errors.append("poll_interval_seconds must be >= 1")
        if self.relay.active_window_minutes < 1:
            errors.append("active_window_minutes must be >= 1")
        if self.relay.max_concurrent_polls < 1:
            errors.append("max_concurrent_polls must be >= 1")
        if self.relay.dispatch_timeout_seconds <= 0:
            errors.append("dispatch_timeout_seconds must be > 0")
        if self.relay.notify_mode not in ("all", "latest"):
            errors.append("notify_mode must be 'all' or 'latest'")
        if self.relay.max_observed_ids < PROVIDER_PAGE_SIZE:
            errors.append(f"max_observed_ids must be >= {PROVIDER_PAGE_SIZE} (one provider page)")

        return errors


# Global singleton instance
_config: Optional[ConfigManager] = None


def get_config(env_file: Optional[str] = None, config_file: Optional[str] = None) -> ConfigManager:
    """
    Get global configuration manager instance (singleton).

    Args:
        env_file: Path to .env file (only used on first call)
        config_file: Path to config.yaml file (only used on first call)

    Returns:
        ConfigManager instance
    """
    global _config
    if _config is None:
        _config = ConfigManager(env_file=env_file, config_file=config_file)
    return _config

