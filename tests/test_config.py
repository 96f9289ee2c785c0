import pytest

from fhirsub.app import build_store
from fhirsub.config import FhirSubConfig, load_config
from fhirsub.subscriptions.store import InMemorySubscriptionStore, SqlSubscriptionStore


ENV_VARS = ("FHIRSUB_STORE", "FHIRSUB_DATABASE_URL", "DATABASE_URL", "REDIS_URL", "LOG_LEVEL", "SQL_ECHO")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_file_missing(tmp_path):
    config = load_config(tmp_path / "missing.yaml")

    assert config.port == 8080
    assert config.store == "memory"
    assert config.redis_url is None
    assert config.supported_channel_types == ["websocket", "rest-hook"]
    assert config.max_delivery_failures == 3


def test_from_dict_reads_sections():
    config = FhirSubConfig.from_dict({
        "server": {"host": "127.0.0.1", "port": "9000"},
        "store": "sql",
        "resource_types": ["DeviceReading"],
        "delivery": {"channel_types": ["websocket"], "max_failures": 5, "push_timeout": 2},
    })

    assert config.host == "127.0.0.1"
    assert config.port == 9000
    assert config.store == "sql"
    assert config.resource_types == ["DeviceReading"]
    assert config.supported_channel_types == ["websocket"]
    assert config.max_delivery_failures == 5
    assert config.push_timeout == 2.0


def test_save_and_load(tmp_path):
    path = tmp_path / "fhirsub.yaml"
    config = FhirSubConfig(port=9100, store="sql", max_delivery_failures=0)
    config.save(path)

    loaded = load_config(path, use_env=False)

    assert loaded == config


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("FHIRSUB_STORE", "sql")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///fallback.db")
    monkeypatch.setenv("REDIS_URL", "redis://redis:6379")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("SQL_ECHO", "true")

    config = load_config(tmp_path / "missing.yaml")

    assert config.store == "sql"
    assert config.database_url == "sqlite+aiosqlite:///fallback.db"
    assert config.redis_url == "redis://redis:6379"
    assert config.log_level == "DEBUG"
    assert config.sql_echo is True

    monkeypatch.setenv("FHIRSUB_DATABASE_URL", "sqlite+aiosqlite:///primary.db")
    assert load_config(tmp_path / "missing.yaml").database_url == "sqlite+aiosqlite:///primary.db"

    assert load_config(tmp_path / "missing.yaml", use_env=False).store == "memory"


def test_build_store():
    assert isinstance(build_store(FhirSubConfig()), InMemorySubscriptionStore)
    assert isinstance(
        build_store(FhirSubConfig(store="sql", database_url="sqlite+aiosqlite:///x.db")),
        SqlSubscriptionStore,
    )
    with pytest.raises(ValueError):
        build_store(FhirSubConfig(store="mongo"))
