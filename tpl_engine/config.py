"""
config.py - Configuration for the TPL engine
"""
import logging
import os
from typing import Optional
from dataclasses import dataclass

_TRUE = ("1", "true", "yes", "on")


@dataclass
class TPLConfig:
    """Configuration for the TPL engine"""

    # Database configuration
    backend_uri: str = ":memory:"

    # Execution limits
    max_concurrent_queries: int = 10
    query_timeout: float = 300.0  # seconds per query

    # Table defaults
    include_nulls: bool = False

    # Display configuration
    null_label: str = "(null)"
    total_label: str = "Total"
    percent_decimals: int = 1

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> 'TPLConfig':
        """Load configuration from environment variables"""
        config = cls()

        config.backend_uri = os.getenv('TPL_BACKEND_URI', config.backend_uri)

        config.max_concurrent_queries = int(os.getenv('TPL_MAX_CONCURRENT_QUERIES', str(config.max_concurrent_queries)))
        config.query_timeout = float(os.getenv('TPL_QUERY_TIMEOUT', str(config.query_timeout)))

        include_nulls = os.getenv('TPL_INCLUDE_NULLS')
        if include_nulls is not None:
            config.include_nulls = include_nulls.strip().lower() in _TRUE

        config.null_label = os.getenv('TPL_NULL_LABEL', config.null_label)
        config.total_label = os.getenv('TPL_TOTAL_LABEL', config.total_label)
        config.percent_decimals = int(os.getenv('TPL_PERCENT_DECIMALS', str(config.percent_decimals)))

        config.log_level = os.getenv('TPL_LOG_LEVEL', config.log_level).upper()
        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if self.max_concurrent_queries <= 0:
            errors.append("max_concurrent_queries must be positive")

        if self.query_timeout <= 0:
            errors.append("query_timeout must be positive")

        if self.percent_decimals < 0:
            errors.append("percent_decimals must not be negative")

        if not isinstance(logging.getLevelName(self.log_level), int):
            errors.append(f"log_level '{self.log_level}' is not a logging level")

        if errors:
            raise ValueError(f"Configuration validation errors: {'; '.join(errors)}")

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=self.log_level,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )


class ConfigManager:
    """Manager for configuration loading and validation"""

    def __init__(self):
        self.config: Optional[TPLConfig] = None

    def load_config(self, config_source: Optional[str] = None) -> TPLConfig:
        """Load configuration; ``'env'`` reads the TPL_* environment variables"""
        if config_source == 'env':
            self.config = TPLConfig.from_env()
        else:
            self.config = TPLConfig()

        self.config.validate()
        return self.config

    def get_config(self) -> TPLConfig:
        """Get the loaded configuration"""
        if self.config is None:
            self.config = self.load_config()
        return self.config


# Global configuration manager
config_manager = ConfigManager()


def get_config() -> TPLConfig:
    """Get the global configuration"""
    return config_manager.get_config()
