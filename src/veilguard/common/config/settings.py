"""Configuration management - Centralized configuration for Veilguard.

Provides environment-aware configuration with sensible defaults.
All configuration is loaded from environment variables with fallbacks.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from veilguard.common.constants import (
    DetectionConstants,
    DeviceConstants,
    PerformanceConstants,
    SessionConstants,
)
from veilguard.common.exceptions import ConfigurationError


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Trust store backend types."""
    MEMORY = "memory"
    DYNAMODB = "dynamodb"


def _get_project_root() -> Path:
    """Get the project root directory."""
    # settings.py -> config -> common -> veilguard -> src -> project_root
    current = Path(__file__).resolve()
    return current.parent.parent.parent.parent.parent


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """Central configuration object for Veilguard.
    
    All settings can be overridden via environment variables prefixed with VEILGUARD_.
    
    Example:
        VEILGUARD_ENVIRONMENT=production
        VEILGUARD_STORAGE_BACKEND=dynamodb
        VEILGUARD_DYNAMODB_TABLE=veilguard-trust
    """
    
    # Core settings
    environment: Environment = field(
        default_factory=lambda: Environment(
            os.getenv("VEILGUARD_ENVIRONMENT", "development")
        )
    )
    debug: bool = field(
        default_factory=lambda: os.getenv("VEILGUARD_DEBUG", "false").lower() == "true"
    )
    log_level: LogLevel = field(
        default_factory=lambda: LogLevel(os.getenv("VEILGUARD_LOG_LEVEL", "INFO").upper())
    )
    
    # Paths
    project_root: Path = field(default_factory=_get_project_root)
    
    # API settings
    api_host: str = field(
        default_factory=lambda: os.getenv("VEILGUARD_API_HOST", "0.0.0.0")
    )
    api_port: int = field(
        default_factory=lambda: int(os.getenv("VEILGUARD_API_PORT", "8000"))
    )
    
    # Storage settings
    storage_backend: StorageBackend = field(
        default_factory=lambda: StorageBackend(
            os.getenv("VEILGUARD_STORAGE_BACKEND", "memory")
        )
    )
    dynamodb_table: Optional[str] = field(
        default_factory=lambda: os.getenv("VEILGUARD_DYNAMODB_TABLE")
    )
    aws_region: str = field(
        default_factory=lambda: os.getenv("AWS_DEFAULT_REGION", "us-east-1")
    )
    aws_profile: Optional[str] = field(
        default_factory=lambda: os.getenv("AWS_PROFILE")
    )
    
    # Device token validation
    token_pattern: str = field(
        default_factory=lambda: os.getenv(
            "VEILGUARD_TOKEN_PATTERN", DeviceConstants.DEFAULT_TOKEN_PATTERN
        )
    )
    token_denylist: List[str] = field(
        default_factory=lambda: _split_csv(os.getenv("VEILGUARD_TOKEN_DENYLIST", ""))
    )
    
    # Session settings
    session_timeout_hours: int = field(
        default_factory=lambda: int(os.getenv(
            "VEILGUARD_SESSION_TIMEOUT_HOURS", str(SessionConstants.DEFAULT_TIMEOUT_HOURS)
        ))
    )
    refresh_ahead_seconds: int = field(
        default_factory=lambda: int(os.getenv(
            "VEILGUARD_REFRESH_AHEAD_SECONDS", str(SessionConstants.REFRESH_AHEAD_SECONDS)
        ))
    )
    refresh_debounce_seconds: int = field(
        default_factory=lambda: int(os.getenv(
            "VEILGUARD_REFRESH_DEBOUNCE_SECONDS", str(SessionConstants.REFRESH_DEBOUNCE_SECONDS)
        ))
    )
    
    # Detection & enforcement
    anomaly_every_n_requests: int = field(
        default_factory=lambda: int(os.getenv(
            "VEILGUARD_ANOMALY_EVERY_N_REQUESTS", str(DetectionConstants.EVERY_N_REQUESTS)
        ))
    )
    check_budget_ms: int = field(
        default_factory=lambda: int(os.getenv(
            "VEILGUARD_CHECK_BUDGET_MS", str(PerformanceConstants.CHECK_BUDGET_MS)
        ))
    )
    thresholds_file: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["VEILGUARD_THRESHOLDS_FILE"])
            if os.getenv("VEILGUARD_THRESHOLDS_FILE") else None
        )
    )
    policies_file: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["VEILGUARD_POLICIES_FILE"])
            if os.getenv("VEILGUARD_POLICIES_FILE") else None
        )
    )
    
    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.storage_backend == StorageBackend.DYNAMODB and not self.dynamodb_table:
            raise ConfigurationError(
                "VEILGUARD_DYNAMODB_TABLE must be set when using DynamoDB storage"
            )
        
        try:
            re.compile(self.token_pattern)
        except re.error as e:
            raise ConfigurationError(
                f"VEILGUARD_TOKEN_PATTERN is not a valid regular expression: {e}"
            )
        
        if self.session_timeout_hours <= 0:
            raise ConfigurationError("VEILGUARD_SESSION_TIMEOUT_HOURS must be positive")
        if self.refresh_ahead_seconds < 0 or self.refresh_debounce_seconds < 0:
            raise ConfigurationError("Session refresh windows must not be negative")
        if self.anomaly_every_n_requests <= 0:
            raise ConfigurationError("VEILGUARD_ANOMALY_EVERY_N_REQUESTS must be positive")
        
        if self.thresholds_file is None:
            self.thresholds_file = self.config_dir / "anomaly_thresholds.yaml"
        if self.policies_file is None:
            self.policies_file = self.config_dir / "rate_limit_policies.yaml"
        
        # Warn about debug in production
        if self.environment == Environment.PRODUCTION and self.debug:
            import warnings
            warnings.warn(
                "Debug mode is enabled in production environment",
                RuntimeWarning,
                stacklevel=2
            )
    
    @property
    def config_dir(self) -> Path:
        """Get the config directory path."""
        return self.project_root / "config"
    
    @property
    def check_budget_seconds(self) -> float:
        """Per-check time budget in seconds."""
        return self.check_budget_ms / 1000.0
    
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION
    
    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT


# Singleton instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.
    
    Returns:
        Config: The global configuration singleton.
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
