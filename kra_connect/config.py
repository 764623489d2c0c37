"""
Client Configuration
====================

Settings load from keyword arguments, KRA_* environment variables or a
.env file, validated once at construction:

    KRA_API_KEY=...
    KRA_MAX_REQUESTS_PER_SECOND=5
    KRA_RETRY_STATUS_CODES=[429,503]

configure_logging() sets up structlog for applications that do not
configure it themselves.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional

import structlog
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import DEFAULT_RETRY_STATUS_CODES, ValidationError
from .retry_handler import RetryConfig
from .validators import validate_api_key

DEFAULT_BASE_URL = 'https://api.kra.go.ke/gavaconnect'
DEFAULT_USER_AGENT = 'kra-connect-python/1.0.0'
MAX_RETRIES_LIMIT = 10
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class KraConnectSettings(BaseSettings):
    """Settings for a KraClient."""

    model_config = SettingsConfigDict(
        env_prefix='KRA_',
        env_file='.env',
        extra='ignore',
        frozen=True,
        hide_input_in_errors=True,
    )

    # API
    api_key: SecretStr
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    custom_headers: Dict[str, str] = Field(default_factory=dict)

    # Cache
    enable_cache: bool = True
    cache_ttl: float = 3600.0
    max_cache_size: int = 100

    # Rate limiting
    enable_rate_limit: bool = True
    max_requests_per_second: int = 10

    # Retries
    max_retries: int = Field(default=3, ge=0, le=MAX_RETRIES_LIMIT)
    retry_delay: float = Field(default=1.0, ge=0)
    max_retry_delay: float = Field(default=30.0, ge=0)
    max_retry_after: Optional[float] = Field(default=None, ge=0)
    retry_status_codes: FrozenSet[int] = DEFAULT_RETRY_STATUS_CODES
    enable_jitter: bool = True

    # Pipeline
    single_flight: bool = True

    # Logging
    log_level: str = 'INFO'
    json_logs: bool = False

    @field_validator('api_key')
    @classmethod
    def check_api_key(cls, value: SecretStr) -> SecretStr:
        try:
            return SecretStr(validate_api_key(value.get_secret_value()))
        except ValidationError as e:
            raise ValueError(e.reason) from None

    @field_validator('base_url')
    @classmethod
    def check_base_url(cls, value: str) -> str:
        if not value.startswith(('http://', 'https://')):
            raise ValueError('Base URL must start with http:// or https://')
        return value.rstrip('/')

    @field_validator('timeout', 'cache_ttl', 'max_requests_per_second')
    @classmethod
    def check_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError('must be greater than 0')
        return value

    @field_validator('max_cache_size')
    @classmethod
    def check_cache_size(cls, value: int) -> int:
        if value < 0:
            raise ValueError('Max cache size cannot be negative')
        return value

    @field_validator('log_level')
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level '{value}'")
        return level

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.retry_delay,
            max_delay=self.max_retry_delay,
            max_retry_after=self.max_retry_after,
            retry_status_codes=self.retry_status_codes,
            enable_jitter=self.enable_jitter,
        )

    def safe_dump(self) -> Dict[str, Any]:
        """Settings as a dict with the API key masked, safe to log."""
        data = self.model_dump()
        secret = self.api_key.get_secret_value()
        data['api_key'] = f"{secret[:4]}{'*' * (len(secret) - 4)}"
        data['retry_status_codes'] = sorted(self.retry_status_codes)
        return data


def configure_logging(level: str = 'INFO', json_logs: bool = False) -> None:
    """
    Configure structlog for the process.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_logs: Render JSON lines instead of the console format
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt='iso'),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
