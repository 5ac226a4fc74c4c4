"""Tests for the configuration module."""

from pathlib import Path

import pytest

from pagewatch.config import (
    DEFAULT_BACKOFF_MINUTES,
    DEFAULT_CHECK_TIMES,
    ApiConfig,
    AuditConfig,
    Config,
    ConfigError,
    DatabaseConfig,
    MonitorConfig,
    ResourceConfig,
    load_config,
    parse_time_of_day,
)
from pagewatch.models import AUDIT_CATEGORIES


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for config files."""
    return tmp_path


@pytest.fixture
def valid_config_content() -> str:
    """Return a valid configuration YAML content."""
    return """resources:
  - id: acme-home
    name: ACME Home
    url: https://acme.example.com/
    group: acme
    timeout_ms: 8000
    soft_failure_patterns:
      - Produto indisponível
  - id: acme-shop
    url: https://acme.example.com/shop

monitor:
  check_times: ["08:00", "20:00"]
  timezone: America/Sao_Paulo
  slow_threshold_ms: 2000

database:
  path: ./data/pagewatch.db
  retention_days: 14

audit:
  api_key: abc123
  strategy: desktop
  categories: [performance, seo]
  batch_size: 3
  backoff_minutes: [1, 2]

api:
  port: 9090
  cron_secret: s3cret
"""


MINIMAL = "resources:\n  - id: home\n    url: https://example.com/\n"


class TestParseTimeOfDay:
    """Tests for parse_time_of_day."""

    @pytest.mark.parametrize("value,expected", [("00:00", (0, 0)), ("6:05", (6, 5)), ("23:59", (23, 59))])
    def test_valid(self, value: str, expected: tuple[int, int]) -> None:
        assert parse_time_of_day(value) == expected

    @pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "", "12"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ConfigError, match="Invalid time of day"):
            parse_time_of_day(value)


class TestResourceConfig:
    """Tests for ResourceConfig dataclass."""

    def test_defaults(self) -> None:
        resource = ResourceConfig(id="home", name="Home", url="https://example.com/")
        assert resource.group == "default"
        assert resource.enabled is True
        assert resource.timeout_ms == 10000
        assert resource.soft_failure_patterns == ()

    def test_rejects_empty_id(self) -> None:
        with pytest.raises(ConfigError, match="id cannot be empty"):
            ResourceConfig(id="", name="Home", url="https://example.com/")

    def test_rejects_url_without_protocol(self) -> None:
        with pytest.raises(ConfigError, match="must start with http"):
            ResourceConfig(id="home", name="Home", url="example.com")

    def test_rejects_tiny_timeout(self) -> None:
        with pytest.raises(ConfigError, match="at least 100ms"):
            ResourceConfig(id="home", name="Home", url="https://example.com/", timeout_ms=50)

    def test_rejects_empty_pattern(self) -> None:
        """An empty phrase would match every page."""
        with pytest.raises(ConfigError, match="empty strings"):
            ResourceConfig(id="home", name="Home", url="https://example.com/", soft_failure_patterns=("",))


class TestMonitorConfig:
    """Tests for MonitorConfig dataclass."""

    def test_defaults(self) -> None:
        monitor = MonitorConfig()
        assert monitor.check_times == DEFAULT_CHECK_TIMES
        assert monitor.interval_seconds is None
        assert monitor.timezone == "UTC"
        assert monitor.slow_threshold_ms == 1500

    def test_rejects_short_interval(self) -> None:
        with pytest.raises(ConfigError, match="at least 10 seconds"):
            MonitorConfig(interval_seconds=5)

    def test_interval_replaces_check_times(self) -> None:
        assert MonitorConfig(check_times=(), interval_seconds=60).interval_seconds == 60

    def test_rejects_no_schedule(self) -> None:
        with pytest.raises(ConfigError, match="check_times or interval_seconds"):
            MonitorConfig(check_times=())

    def test_rejects_bad_check_time(self) -> None:
        with pytest.raises(ConfigError):
            MonitorConfig(check_times=("25:00",))

    def test_rejects_unknown_timezone(self) -> None:
        with pytest.raises(ConfigError, match="Unknown timezone"):
            MonitorConfig(timezone="Mars/Olympus_Mons")


class TestAuditConfig:
    """Tests for AuditConfig dataclass."""

    def test_defaults(self) -> None:
        audit = AuditConfig()
        assert audit.strategy == "mobile"
        assert audit.categories == AUDIT_CATEGORIES
        assert audit.batch_size == 2
        assert audit.job_delay_seconds == 3.0
        assert audit.max_attempts == 4
        assert audit.backoff_minutes == DEFAULT_BACKOFF_MINUTES
        assert audit.quota_retry_hours == 6.0
        assert audit.manual_interval_minutes == 5.0

    def test_rejects_unknown_strategy(self) -> None:
        with pytest.raises(ConfigError, match="Invalid audit strategy"):
            AuditConfig(strategy="tablet")

    def test_rejects_unknown_category(self) -> None:
        with pytest.raises(ConfigError, match="Unknown audit categories"):
            AuditConfig(categories=("performance", "pwa"))

    def test_rejects_empty_backoff(self) -> None:
        with pytest.raises(ConfigError, match="backoff_minutes"):
            AuditConfig(backoff_minutes=())

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ConfigError, match="max_attempts"):
            AuditConfig(max_attempts=0)

    def test_rejects_bad_daily_time(self) -> None:
        with pytest.raises(ConfigError):
            AuditConfig(daily_time="6am")


class TestOtherSections:
    """Tests for DatabaseConfig, ApiConfig and Config."""

    def test_database_retention(self) -> None:
        with pytest.raises(ConfigError, match="retention_days"):
            DatabaseConfig(retention_days=0)

    @pytest.mark.parametrize("port", [0, 65536])
    def test_api_port_range(self, port: int) -> None:
        with pytest.raises(ConfigError, match="between 1 and 65535"):
            ApiConfig(port=port)

    def test_api_defaults(self) -> None:
        api = ApiConfig()
        assert api.enabled is True
        assert api.port == 8080
        assert api.cron_secret is None

    def test_rejects_duplicate_ids(self) -> None:
        with pytest.raises(ConfigError, match="Duplicate resource ids"):
            Config(
                resources=[
                    ResourceConfig(id="home", name="A", url="https://a.example.com/"),
                    ResourceConfig(id="home", name="B", url="https://b.example.com/"),
                ]
            )


class TestLoadConfig:
    """Tests for load_config function."""

    def test_loads_valid_config_from_file(self, config_dir: Path, valid_config_content: str) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(valid_config_content, encoding="utf-8")

        config = load_config(str(config_file))

        assert [r.id for r in config.resources] == ["acme-home", "acme-shop"]
        home, shop = config.resources
        assert home.group == "acme"
        assert home.timeout_ms == 8000
        assert home.soft_failure_patterns == ("Produto indisponível",)
        assert shop.name == "acme-shop"
        assert config.monitor.check_times == ("08:00", "20:00")
        assert config.monitor.timezone == "America/Sao_Paulo"
        assert config.monitor.slow_threshold_ms == 2000
        assert config.database.retention_days == 14
        assert config.audit.api_key == "abc123"
        assert config.audit.strategy == "desktop"
        assert config.audit.categories == ("performance", "seo")
        assert config.audit.batch_size == 3
        assert config.audit.backoff_minutes == (1, 2)
        assert config.api.port == 9090
        assert config.api.cron_secret == "s3cret"

    def test_defaults_for_optional_sections(self, config_dir: Path) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL)

        config = load_config(str(config_file))

        assert config.monitor == MonitorConfig()
        assert config.audit == AuditConfig()
        assert config.api == ApiConfig()
        assert config.database.retention_days == 30

    def test_expands_home_in_db_path(self, config_dir: Path) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL + "database:\n  path: ~/pw.db\n")

        config = load_config(str(config_file))

        assert not config.database.path.startswith("~")
        assert config.database.path.endswith("pw.db")

    def test_raises_error_for_missing_file(self, config_dir: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(config_dir / "missing.yaml"))

    def test_raises_error_for_empty_file(self, config_dir: Path) -> None:
        config_file = config_dir / "empty.yaml"
        config_file.write_text("")
        with pytest.raises(ConfigError, match="empty"):
            load_config(str(config_file))

    def test_raises_error_for_invalid_yaml(self, config_dir: Path) -> None:
        config_file = config_dir / "invalid.yaml"
        config_file.write_text("resources: [unclosed")
        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            load_config(str(config_file))

    def test_raises_error_when_not_dict(self, config_dir: Path) -> None:
        config_file = config_dir / "list.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="YAML dictionary"):
            load_config(str(config_file))

    def test_raises_error_when_resources_missing(self, config_dir: Path) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text("monitor:\n  timezone: UTC\n")
        with pytest.raises(ConfigError, match="'resources' section"):
            load_config(str(config_file))

    def test_raises_error_when_resource_missing_url(self, config_dir: Path) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text("resources:\n  - id: home\n")
        with pytest.raises(ConfigError, match="missing 'url'"):
            load_config(str(config_file))

    def test_raises_error_for_non_numeric_value(self, config_dir: Path) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL + "monitor:\n  slow_threshold_ms: fast\n")
        with pytest.raises(ConfigError, match="Invalid configuration value"):
            load_config(str(config_file))

    def test_raises_error_for_patterns_not_list(self, config_dir: Path) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(
            "resources:\n  - id: home\n    url: https://example.com/\n    soft_failure_patterns: oops\n"
        )
        with pytest.raises(ConfigError, match="must be a list"):
            load_config(str(config_file))


class TestEnvironmentVariableOverrides:
    """Tests for PAGEWATCH_* environment overrides."""

    def test_overrides_monitor_interval(self, config_dir: Path, monkeypatch) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL)

        monkeypatch.setenv("PAGEWATCH_MONITOR_INTERVAL", "30")
        config = load_config(str(config_file))

        assert config.monitor.interval_seconds == 30

    def test_overrides_api(self, config_dir: Path, monkeypatch) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL + "api:\n  enabled: true\n")

        monkeypatch.setenv("PAGEWATCH_API_PORT", "9000")
        monkeypatch.setenv("PAGEWATCH_API_ENABLED", "no")
        monkeypatch.setenv("PAGEWATCH_CRON_SECRET", "from-env")
        config = load_config(str(config_file))

        assert config.api.port == 9000
        assert config.api.enabled is False
        assert config.api.cron_secret == "from-env"

    def test_api_enabled_accepts_true_values(self, config_dir: Path, monkeypatch) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL + "api:\n  enabled: false\n")

        for true_value in ["true", "True", "1", "yes"]:
            monkeypatch.setenv("PAGEWATCH_API_ENABLED", true_value)
            assert load_config(str(config_file)).api.enabled is True, f"Failed for value: {true_value}"

    def test_overrides_database(self, config_dir: Path, monkeypatch) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL)

        monkeypatch.setenv("PAGEWATCH_DB_PATH", "/custom/pagewatch.db")
        monkeypatch.setenv("PAGEWATCH_DB_RETENTION_DAYS", "7")
        config = load_config(str(config_file))

        assert config.database.path == "/custom/pagewatch.db"
        assert config.database.retention_days == 7

    def test_overrides_pagespeed_key(self, config_dir: Path, monkeypatch) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL + "audit:\n  api_key: from-file\n")

        monkeypatch.setenv("PAGEWATCH_PAGESPEED_API_KEY", "from-env")

        assert load_config(str(config_file)).audit.api_key == "from-env"

    def test_invalid_override(self, config_dir: Path, monkeypatch) -> None:
        config_file = config_dir / "config.yaml"
        config_file.write_text(MINIMAL)

        monkeypatch.setenv("PAGEWATCH_API_PORT", "eighty")

        with pytest.raises(ConfigError, match="Invalid environment override"):
            load_config(str(config_file))
