"""Configuration loader with type-safe dataclasses."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .models import AUDIT_CATEGORIES


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Minimum fixed interval between uptime ticks in seconds.
MIN_MONITOR_INTERVAL = 10

DEFAULT_CHECK_TIMES = ("00:00", "06:00", "12:00", "18:00")
DEFAULT_BACKOFF_MINUTES = (5, 15, 60, 60)
AUDIT_STRATEGIES = ("mobile", "desktop")

_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse an "HH:MM" string into (hour, minute).

    Raises:
        ConfigError: If the value is not a valid 24h time.
    """
    match = _TIME_OF_DAY.match(str(value).strip())
    if match is None:
        raise ConfigError(f"Invalid time of day '{value}' (expected HH:MM)")
    return int(match.group(1)), int(match.group(2))


@dataclass(frozen=True)
class ResourceConfig:
    """Configuration for a single monitored page.

    Optional soft-failure detection:
    - soft_failure_patterns: extra phrases that flag a 200 response as "not found".
      They are matched case-insensitively on top of the built-in phrase list.
    """

    id: str
    name: str
    url: str
    group: str = "default"
    enabled: bool = True
    timeout_ms: int = 10000
    soft_failure_patterns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigError("Resource id cannot be empty")
        if not self.name:
            raise ConfigError(f"Resource name cannot be empty for '{self.id}'")
        if not self.url:
            raise ConfigError(f"URL cannot be empty for '{self.id}'")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"URL must start with http:// or https:// for '{self.id}'")
        if self.timeout_ms < 100:
            raise ConfigError(f"Timeout must be at least 100ms for '{self.id}'")
        if any(not pattern for pattern in self.soft_failure_patterns):
            raise ConfigError(f"Soft failure patterns cannot be empty strings for '{self.id}'")


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the uptime driver."""

    check_times: tuple[str, ...] = DEFAULT_CHECK_TIMES
    interval_seconds: int | None = None  # fixed interval, overrides check_times when set
    timezone: str = "UTC"
    slow_threshold_ms: int = 1500
    max_workers: int = 10

    def __post_init__(self) -> None:
        if self.interval_seconds is not None and self.interval_seconds < MIN_MONITOR_INTERVAL:
            raise ConfigError(
                f"Monitor interval must be at least {MIN_MONITOR_INTERVAL} seconds (got {self.interval_seconds})"
            )
        if self.interval_seconds is None and not self.check_times:
            raise ConfigError("Either check_times or interval_seconds must be configured")
        for value in self.check_times:
            parse_time_of_day(value)
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Unknown timezone '{self.timezone}'")
        if self.slow_threshold_ms < 1:
            raise ConfigError(f"Slow threshold must be at least 1ms (got {self.slow_threshold_ms})")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1 (got {self.max_workers})")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory."""
    home = Path.home()
    return str(home / ".local" / "share" / "pagewatch" / "pagewatch.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for SQLite database."""

    path: str = DEFAULT_DB_PATH
    retention_days: int = 30  # check history and audit records

    def __post_init__(self) -> None:
        if self.retention_days < 1:
            raise ConfigError("Database retention_days must be at least 1")


@dataclass(frozen=True)
class AuditConfig:
    """Configuration for the audit driver and the PageSpeed client."""

    enabled: bool = True
    api_key: str | None = None
    strategy: str = "mobile"
    categories: tuple[str, ...] = AUDIT_CATEGORIES
    tick_seconds: int = 300
    batch_size: int = 2
    job_delay_seconds: float = 3.0
    max_attempts: int = 4
    backoff_minutes: tuple[int, ...] = DEFAULT_BACKOFF_MINUTES
    quota_retry_hours: float = 6.0
    daily_time: str = "06:00"
    manual_interval_minutes: float = 5.0
    request_timeout: int = 60

    def __post_init__(self) -> None:
        if self.strategy not in AUDIT_STRATEGIES:
            raise ConfigError(f"Invalid audit strategy '{self.strategy}'. Must be one of: {AUDIT_STRATEGIES}")
        unknown = [c for c in self.categories if c not in AUDIT_CATEGORIES]
        if unknown:
            raise ConfigError(f"Unknown audit categories: {unknown}. Must be among: {AUDIT_CATEGORIES}")
        if self.tick_seconds < 1:
            raise ConfigError(f"Audit tick_seconds must be at least 1 (got {self.tick_seconds})")
        if self.batch_size < 1:
            raise ConfigError(f"Audit batch_size must be at least 1 (got {self.batch_size})")
        if self.job_delay_seconds < 0:
            raise ConfigError(f"Audit job_delay_seconds must be non-negative (got {self.job_delay_seconds})")
        if self.max_attempts < 1:
            raise ConfigError(f"Audit max_attempts must be at least 1 (got {self.max_attempts})")
        if not self.backoff_minutes or any(m <= 0 for m in self.backoff_minutes):
            raise ConfigError("Audit backoff_minutes must be a non-empty list of positive numbers")
        if self.quota_retry_hours <= 0:
            raise ConfigError(f"Audit quota_retry_hours must be positive (got {self.quota_retry_hours})")
        parse_time_of_day(self.daily_time)
        if self.manual_interval_minutes < 0:
            raise ConfigError("Audit manual_interval_minutes must be non-negative")
        if self.request_timeout < 1:
            raise ConfigError("Audit request_timeout must be at least 1 second")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for the JSON API server."""

    enabled: bool = True
    port: int = 8080
    cron_secret: str | None = None  # Bearer token for the scheduled-tick endpoints

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    resources: list[ResourceConfig] = field(default_factory=list)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def __post_init__(self) -> None:
        ids = [resource.id for resource in self.resources]
        duplicates = {rid for rid in ids if ids.count(rid) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate resource ids found: {duplicates}")


def _parse_string_list(value: object, what: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{what} must be a list")
    return tuple(str(item) for item in value)


def _parse_resource_config(data: dict, index: int) -> ResourceConfig:
    """Parse a single resource configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Resource entry {index} must be a dictionary")

    resource_id = data.get("id")
    url = data.get("url")

    if resource_id is None:
        raise ConfigError(f"Resource entry {index} is missing 'id' field")
    if url is None:
        raise ConfigError(f"Resource entry {index} is missing 'url' field")

    return ResourceConfig(
        id=str(resource_id),
        name=str(data.get("name", resource_id)),
        url=str(url),
        group=str(data.get("group", "default")),
        enabled=bool(data.get("enabled", True)),
        timeout_ms=int(data.get("timeout_ms", 10000)),
        soft_failure_patterns=_parse_string_list(
            data.get("soft_failure_patterns"), f"Resource '{resource_id}' soft_failure_patterns"
        ),
    )


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    check_times = data.get("check_times")
    interval = data.get("interval_seconds")

    return MonitorConfig(
        check_times=(
            _parse_string_list(check_times, "'monitor.check_times'") if check_times is not None else DEFAULT_CHECK_TIMES
        ),
        interval_seconds=int(interval) if interval is not None else None,
        timezone=str(data.get("timezone", "UTC")),
        slow_threshold_ms=int(data.get("slow_threshold_ms", 1500)),
        max_workers=int(data.get("max_workers", 10)),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(
        path=os.path.expanduser(str(data.get("path", DEFAULT_DB_PATH))),
        retention_days=int(data.get("retention_days", 30)),
    )


def _parse_audit_config(data: dict | None) -> AuditConfig:
    """Parse audit configuration section."""
    if data is None:
        return AuditConfig()
    if not isinstance(data, dict):
        raise ConfigError("'audit' section must be a dictionary")

    api_key = data.get("api_key")
    categories = data.get("categories")
    backoff = data.get("backoff_minutes")
    if backoff is not None and not isinstance(backoff, list):
        raise ConfigError("'audit.backoff_minutes' must be a list")

    return AuditConfig(
        enabled=bool(data.get("enabled", True)),
        api_key=str(api_key) if api_key else None,
        strategy=str(data.get("strategy", "mobile")),
        categories=_parse_string_list(categories, "'audit.categories'") if categories is not None else AUDIT_CATEGORIES,
        tick_seconds=int(data.get("tick_seconds", 300)),
        batch_size=int(data.get("batch_size", 2)),
        job_delay_seconds=float(data.get("job_delay_seconds", 3.0)),
        max_attempts=int(data.get("max_attempts", 4)),
        backoff_minutes=tuple(int(m) for m in backoff) if backoff is not None else DEFAULT_BACKOFF_MINUTES,
        quota_retry_hours=float(data.get("quota_retry_hours", 6.0)),
        daily_time=str(data.get("daily_time", "06:00")),
        manual_interval_minutes=float(data.get("manual_interval_minutes", 5.0)),
        request_timeout=int(data.get("request_timeout", 60)),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    cron_secret = data.get("cron_secret")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
        cron_secret=str(cron_secret) if cron_secret else None,
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - PAGEWATCH_MONITOR_INTERVAL: Override monitor.interval_seconds
    - PAGEWATCH_API_PORT: Override api.port
    - PAGEWATCH_API_ENABLED: Override api.enabled (true/false)
    - PAGEWATCH_CRON_SECRET: Override api.cron_secret
    - PAGEWATCH_DB_PATH: Override database.path
    - PAGEWATCH_DB_RETENTION_DAYS: Override database.retention_days
    - PAGEWATCH_PAGESPEED_API_KEY: Override audit.api_key
    """
    for section in ("monitor", "api", "database", "audit"):
        if not isinstance(config_data.get(section), dict):
            config_data[section] = {}

    monitor_interval = os.environ.get("PAGEWATCH_MONITOR_INTERVAL")
    if monitor_interval is not None:
        config_data["monitor"]["interval_seconds"] = int(monitor_interval)

    api_port = os.environ.get("PAGEWATCH_API_PORT")
    if api_port is not None:
        config_data["api"]["port"] = int(api_port)

    api_enabled = os.environ.get("PAGEWATCH_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    cron_secret = os.environ.get("PAGEWATCH_CRON_SECRET")
    if cron_secret is not None:
        config_data["api"]["cron_secret"] = cron_secret

    db_path = os.environ.get("PAGEWATCH_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    db_retention = os.environ.get("PAGEWATCH_DB_RETENTION_DAYS")
    if db_retention is not None:
        config_data["database"]["retention_days"] = int(db_retention)

    api_key = os.environ.get("PAGEWATCH_PAGESPEED_API_KEY")
    if api_key is not None:
        config_data["audit"]["api_key"] = api_key

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    resources_data = data.get("resources")
    if resources_data is None:
        raise ConfigError("Configuration must contain a 'resources' section")
    if not isinstance(resources_data, list):
        raise ConfigError("'resources' must be a list")

    try:
        resources = [_parse_resource_config(entry, i) for i, entry in enumerate(resources_data)]
        return Config(
            resources=resources,
            monitor=_parse_monitor_config(data.get("monitor")),
            database=_parse_database_config(data.get("database")),
            audit=_parse_audit_config(data.get("audit")),
            api=_parse_api_config(data.get("api")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
