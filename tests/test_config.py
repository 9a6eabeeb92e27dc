import pytest
from pydantic import ValidationError

from app.system.config import MetricsConfig, load_config

ENV_KEYS = [
    "METRICS_GATEWAY_URL",
    "METRICS_GATEWAY_TIMEOUT_S",
    "METRICS_RETENTION_LIMIT",
    "METRICS_HISTORY_BACKEND",
    "METRICS_BACKGROUND_TASKS",
    "TRAFFIC_EXCLUDE_PREFIXES",
    "CORS_ORIGINS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    cfg = load_config()
    assert cfg.gateway_url == "http://localhost:3005"
    assert cfg.gateway_timeout_s == 4.0
    assert cfg.broadcast_interval_s == 30.0
    assert cfg.retention_limit == 1440
    assert cfg.history_backend == "json"
    assert cfg.background_tasks is True


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("METRICS_GATEWAY_URL", "http://gw:9000")
    monkeypatch.setenv("METRICS_GATEWAY_TIMEOUT_S", "1.5")
    monkeypatch.setenv("METRICS_RETENTION_LIMIT", "60")
    monkeypatch.setenv("METRICS_HISTORY_BACKEND", "SQLite")
    monkeypatch.setenv("METRICS_BACKGROUND_TASKS", "off")

    cfg = load_config()
    assert cfg.gateway_url == "http://gw:9000"
    assert cfg.gateway_timeout_s == 1.5
    assert cfg.retention_limit == 60
    assert cfg.history_backend == "sqlite"
    assert cfg.background_tasks is False


def test_unparseable_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("METRICS_RETENTION_LIMIT", "lots")
    monkeypatch.setenv("METRICS_GATEWAY_TIMEOUT_S", "soon")
    cfg = load_config()
    assert cfg.retention_limit == 1440
    assert cfg.gateway_timeout_s == 4.0


def test_list_settings_are_comma_separated(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test,,")
    monkeypatch.setenv("TRAFFIC_EXCLUDE_PREFIXES", "/docs")
    cfg = load_config()
    assert cfg.cors_origins == ["http://a.test", "http://b.test"]
    assert cfg.traffic_exclude_prefixes == ["/docs"]


def test_unknown_backend_is_rejected(monkeypatch):
    monkeypatch.setenv("METRICS_HISTORY_BACKEND", "redis")
    with pytest.raises(ValidationError):
        load_config()


def test_out_of_range_values_are_rejected():
    with pytest.raises(ValidationError):
        MetricsConfig(retention_limit=0)
    with pytest.raises(ValidationError):
        MetricsConfig(gateway_timeout_s=0)
