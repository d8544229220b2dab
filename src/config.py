"""Configuration management for Papertrail MCP Server."""

import os
from typing import Optional
from dataclasses import dataclass
import structlog
from dotenv import load_dotenv

logger = structlog.get_logger(__name__)


@dataclass
class PapertrailConfig:
    """Papertrail API configuration."""
    api_token: str
    base_url: str = "https://papertrailapp.com/api/v1"
    timeout: int = 30
    max_retries: int = 3


@dataclass
class RateLimitConfig:
    """Per-caller admission control configuration."""
    requests_per_minute: int = 60
    burst: int = 10
    cleanup_interval: int = 60
    idle_timeout: int = 300


@dataclass
class ServerConfig:
    """HTTP listener configuration."""
    host: str = "0.0.0.0"
    port: int = 3001


@dataclass
class MCPConfig:
    """MCP server configuration."""
    server_name: str = "papertrail-mcp"
    version: str = "1.0.0"
    search_deadline: int = 0


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "info"
    format: str = "json"


@dataclass
class Config:
    """Main configuration container."""
    papertrail: PapertrailConfig
    rate_limit: RateLimitConfig
    server: ServerConfig
    mcp: MCPConfig
    logging: LoggingConfig


class ConfigLoader:
    """Configuration loader using environment variables only."""

    def __init__(self):
        """Initialize configuration loader."""
        self._config: Optional[Config] = None
        # Load .env file if it exists
        load_dotenv()

    def load(self) -> Config:
        """Load configuration from environment variables.

        Returns:
            Config: Loaded configuration

        Raises:
            ValueError: If required configuration is missing or invalid
        """
        if self._config is not None:
            return self._config

        logger.info("Loading configuration from environment variables")

        config = self._create_config_from_env()
        self._validate(config)
        self._config = config

        logger.info("Configuration loaded successfully",
                    base_url=config.papertrail.base_url,
                    requests_per_minute=config.rate_limit.requests_per_minute,
                    burst=config.rate_limit.burst)
        return self._config

    def _create_config_from_env(self) -> Config:
        """Create configuration objects from environment variables."""
        api_token = os.getenv('PAPERTRAIL_API_TOKEN')
        if not api_token:
            raise ValueError("Missing required environment variable: PAPERTRAIL_API_TOKEN")

        papertrail_config = PapertrailConfig(
            api_token=api_token,
            base_url=os.getenv('PAPERTRAIL_BASE_URL', 'https://papertrailapp.com/api/v1').rstrip('/'),
            timeout=self._get_int_env('PAPERTRAIL_TIMEOUT', 30),
            max_retries=self._get_int_env('PAPERTRAIL_MAX_RETRIES', 3)
        )

        rate_limit_config = RateLimitConfig(
            requests_per_minute=self._get_int_env('RATE_LIMIT_REQUESTS_PER_MINUTE', 60),
            burst=self._get_int_env('RATE_LIMIT_BURST', 10),
            cleanup_interval=self._get_int_env('RATE_LIMIT_CLEANUP_INTERVAL', 60),
            idle_timeout=self._get_int_env('RATE_LIMIT_IDLE_TIMEOUT', 300)
        )

        server_config = ServerConfig(
            host=os.getenv('HOST', '0.0.0.0'),
            port=self._get_int_env('PORT', 3001)
        )

        mcp_config = MCPConfig(
            server_name=os.getenv('MCP_SERVER_NAME', 'papertrail-mcp'),
            version=os.getenv('MCP_SERVER_VERSION', '1.0.0'),
            search_deadline=self._get_int_env('MCP_SEARCH_DEADLINE', 0)
        )

        logging_config = LoggingConfig(
            level=os.getenv('LOG_LEVEL', 'info').lower(),
            format=os.getenv('LOG_FORMAT', 'json').lower()
        )

        return Config(
            papertrail=papertrail_config,
            rate_limit=rate_limit_config,
            server=server_config,
            mcp=mcp_config,
            logging=logging_config
        )

    def _validate(self, config: Config) -> None:
        """Reject configurations the server cannot run with."""
        if config.server.port < 1 or config.server.port > 65535:
            raise ValueError("PORT must be between 1 and 65535")

        if config.rate_limit.requests_per_minute < 1:
            raise ValueError("RATE_LIMIT_REQUESTS_PER_MINUTE must be at least 1")

        if config.rate_limit.burst < 1:
            raise ValueError("RATE_LIMIT_BURST must be at least 1")

        if config.papertrail.max_retries < 1:
            raise ValueError("PAPERTRAIL_MAX_RETRIES must be at least 1")

        if config.logging.format not in ('json', 'console'):
            raise ValueError("LOG_FORMAT must be 'json' or 'console'")

    def _get_int_env(self, env_var: str, default: int) -> int:
        """Get integer value from environment variable with default."""
        value = os.getenv(env_var)
        if value is None:
            return default

        try:
            return int(value)
        except ValueError:
            logger.warning("Invalid integer value for environment variable, using default",
                           env_var=env_var, value=value, default=default)
            return default

    def reload(self) -> Config:
        """Reload configuration from environment variables."""
        # Reload .env file
        load_dotenv(override=True)
        self._config = None
        return self.load()


# Global configuration instance
_config_loader = ConfigLoader()


def get_config() -> Config:
    """Get the global configuration instance."""
    return _config_loader.load()


def reload_config() -> Config:
    """Reload the global configuration."""
    return _config_loader.reload()
