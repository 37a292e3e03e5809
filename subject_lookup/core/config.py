"""
Configuration management system with environment variable loading and validation.
"""

import yaml
from pathlib import Path
from typing import Annotated, Optional, Dict, Any, List
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator
import logging

logger = logging.getLogger(__name__)


DEFAULT_LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-accelerated-2d-canvas',
    '--no-first-run',
    '--no-zygote',
    '--disable-gpu',
    '--disable-extensions',
    '--disable-background-networking',
    '--disable-sync',
    '--disable-translate',
    '--disable-renderer-backgrounding',
    '--disable-backgrounding-occluded-windows',
    '--disable-blink-features=AutomationControlled',
    '--mute-audio',
    '--no-default-browser-check',
    '--no-pings',
]


class PortalConfig(BaseSettings):
    """Portal credentials and endpoints."""
    model_config = SettingsConfigDict(env_prefix='PORTAL_', extra='ignore')

    username: str = Field(default='')
    password: str = Field(default='')
    base_url: str = Field(default='https://datadiverservice.com')
    api_url: str = Field(default='https://api.datadiverservice.com')
    probe_subject_id: str = Field(default='0123456789')
    heartbeat_subject_id: str = Field(default='0000000000')
    user_agent: str = Field(
        default='Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'
    )

    @field_validator('base_url', 'api_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        """Normalize URLs so paths can be appended."""
        return v.rstrip('/')

    @property
    def api_host(self) -> str:
        """API host without scheme, used to match captured network traffic."""
        return self.api_url.split('://', 1)[-1]


class BrowserConfig(BaseSettings):
    """Headless browser and admission configuration."""
    model_config = SettingsConfigDict(env_prefix='BROWSER_', extra='ignore')

    max_concurrent_pages: int = Field(default=6, ge=1, le=50)
    page_pool_size: int = Field(default=4, ge=1, le=50)
    queue_timeout_seconds: float = Field(default=45.0, gt=0)
    stagger_delay_seconds: float = Field(default=0.5, ge=0)
    navigation_timeout_ms: int = Field(default=25000, ge=1000)
    relaunch_delay_seconds: float = Field(default=5.0, ge=0)
    headless: bool = Field(default=True)
    executable_path: Optional[str] = Field(None)
    # Comma-separated in the environment, not JSON
    launch_args: Annotated[List[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))

    @field_validator('launch_args', mode='before')
    @classmethod
    def parse_launch_args(cls, v):
        """Parse launch args from comma-separated string or list."""
        if v is None:
            return list(DEFAULT_LAUNCH_ARGS)
        if isinstance(v, str):
            return [arg.strip() for arg in v.split(',') if arg.strip()]
        return v


class SessionConfig(BaseSettings):
    """Session lifetime and keep-alive scheduling (seconds)."""
    model_config = SettingsConfigDict(env_prefix='SESSION_', extra='ignore')

    token_refresh_interval: int = Field(default=480, ge=10)
    activity_interval: int = Field(default=90, ge=5)
    heartbeat_interval: int = Field(default=45, ge=5)
    real_query_interval: int = Field(default=180, ge=10)
    max_idle_time: int = Field(default=30, ge=1)
    token_lifetime: int = Field(default=50 * 60, ge=60)
    max_retries: int = Field(default=2, ge=0, le=5)


class CacheConfig(BaseSettings):
    """Relatives cache configuration (seconds)."""
    model_config = SettingsConfigDict(env_prefix='CACHE_', extra='ignore')

    family_ttl: int = Field(default=600, ge=0)
    failed_attempt_cooldown: int = Field(default=60, ge=0)


class APIConfig(BaseSettings):
    """API server configuration."""
    model_config = SettingsConfigDict(env_prefix='API_', extra='ignore')

    host: str = Field(default='0.0.0.0')
    port: int = Field(default=3030, ge=1, le=65535)
    workers: int = Field(default=1, ge=1, le=32)
    reload: bool = Field(default=False)


class MonitoringConfig(BaseSettings):
    """Monitoring and observability configuration."""
    model_config = SettingsConfigDict(env_prefix='', extra='ignore')

    log_level: str = Field(default='INFO')
    log_format: str = Field(default='json')
    sentry_dsn: Optional[str] = Field(None)
    enable_metrics: bool = Field(default=True)
    stats_log_interval: int = Field(default=600, ge=10)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # Environment
    environment: str = Field(default='development')
    debug: bool = Field(default=False)

    # Sub-configurations
    portal: PortalConfig = Field(default_factory=PortalConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        """Validate environment."""
        valid_envs = {'development', 'staging', 'production', 'test'}
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v.lower()

    def validate_config(self) -> List[str]:
        """
        Validate configuration and return list of warnings/errors.

        Returns:
            List of validation messages
        """
        messages = []

        if not self.portal.username or not self.portal.password:
            if self.environment == 'production':
                messages.append("ERROR: PORTAL_USERNAME and PORTAL_PASSWORD are required in production")
            else:
                messages.append("WARNING: Portal credentials not configured, login will fail")

        if self.environment == 'production' and self.debug:
            messages.append("WARNING: Debug mode enabled in production")

        if self.browser.page_pool_size > self.browser.max_concurrent_pages:
            messages.append("WARNING: page_pool_size should be <= max_concurrent_pages")

        if self.session.token_refresh_interval >= self.session.token_lifetime:
            messages.append("WARNING: token_refresh_interval is longer than the token lifetime")

        if self.session.heartbeat_interval >= self.session.activity_interval * 4:
            messages.append("WARNING: heartbeat_interval is unusually long compared to activity_interval")

        return messages


class YAMLConfigLoader:
    """Load configuration from YAML files."""

    @staticmethod
    def load_yaml_config(config_path: Path) -> Dict[str, Any]:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML config file

        Returns:
            Configuration dictionary
        """
        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}")
            return {}

        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
                logger.info(f"Loaded configuration from {config_path}")
                return config or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config from {config_path}: {e}")
            return {}

    @staticmethod
    def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge two configuration dictionaries (override takes precedence).

        Args:
            base: Base configuration
            override: Override configuration

        Returns:
            Merged configuration
        """
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = YAMLConfigLoader.merge_configs(result[key], value)
            else:
                result[key] = value
        return result


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call init_config() first.")
    return _config


def init_config(
    env_file: Optional[str] = None,
    yaml_config_path: Optional[Path] = None
) -> Config:
    """
    Initialize the global configuration instance.

    YAML values act as defaults; environment variables take precedence.

    Args:
        env_file: Path to .env file (optional)
        yaml_config_path: Path to YAML config file (optional)

    Returns:
        Initialized Config instance
    """
    global _config

    yaml_config: Dict[str, Any] = {}
    if yaml_config_path:
        yaml_config = YAMLConfigLoader.load_yaml_config(yaml_config_path)

    if env_file:
        env_config = Config(_env_file=env_file)
    else:
        env_config = Config()

    if yaml_config:
        explicit = env_config.model_dump(exclude_defaults=True)
        merged = YAMLConfigLoader.merge_configs(yaml_config, explicit)
        _config = Config(**merged)
    else:
        _config = env_config

    # Validate configuration
    validation_messages = _config.validate_config()
    for msg in validation_messages:
        if msg.startswith('ERROR'):
            logger.error(msg)
            raise ValueError(msg)
        else:
            logger.warning(msg)

    logger.info(f"Configuration initialized for environment: {_config.environment}")
    return _config


def set_config(config: Config) -> Config:
    """Install an already-built configuration (used by tests and embedders)."""
    global _config
    _config = config
    return _config
