# tests/test_load_settings.py

import argparse

import pytest

from kubeconsole.boot.env_vars import EnvConfig
from kubeconsole.boot.load_settings import AppConfigLoader, default_settings_path


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "agent:\n"
        "  llm_model: gemini-2.5-flash\n"
        "  max_iterations: 5\n"
        "database:\n"
        "  url: sqlite+aiosqlite:///data/kubeconsole.db\n"
        "infra:\n"
        "  base_url: http://localhost:8000/api/v1alpha1\n"
        "logging:\n"
        "  level: WARNING\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("DATABASE_URL", "INFRA_API_URL", "KUBECONSOLE_SETTINGS", "GOOGLE_API_KEY", "INFRA_API_TOKEN"):
        monkeypatch.delenv(name, raising=False)


def test_loads_yaml(settings_file):
    cfg = AppConfigLoader(str(settings_file)).get_config()
    assert cfg["agent"]["max_iterations"] == 5
    assert cfg["infra"]["base_url"] == "http://localhost:8000/api/v1alpha1"


def test_environment_overrides(settings_file, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/console")
    monkeypatch.setenv("INFRA_API_URL", "http://infra:8000/api/v1alpha1")

    cfg = AppConfigLoader(str(settings_file)).get_config()

    assert cfg["database"]["url"] == "postgresql+asyncpg://u:p@db/console"
    assert cfg["infra"]["base_url"] == "http://infra:8000/api/v1alpha1"


def test_cli_args_take_precedence(settings_file, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/console")
    args = argparse.Namespace(
        database_url="sqlite+aiosqlite:///tmp/x.db", model="gemini-2.0-flash", host="127.0.0.1", port=9000, verbose=True
    )

    loader = AppConfigLoader(str(settings_file))
    cfg = loader.merge_with_args(args)

    assert cfg["database"]["url"] == "sqlite+aiosqlite:///tmp/x.db"
    assert cfg["agent"]["llm_model"] == "gemini-2.0-flash"
    assert cfg["server"] == {"host": "127.0.0.1", "port": 9000}
    assert cfg["logging"]["level"] == "DEBUG"
    # internal cache is untouched
    assert loader.get_config()["agent"]["llm_model"] == "gemini-2.5-flash"


def test_missing_file_gives_empty_settings(tmp_path):
    assert AppConfigLoader(str(tmp_path / "absent.yaml")).get_config() == {}


def test_settings_path_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("KUBECONSOLE_SETTINGS", str(tmp_path / "custom.yaml"))
    assert default_settings_path() == str(tmp_path / "custom.yaml")


def test_repository_settings_file_is_valid():
    cfg = AppConfigLoader().get_config()
    assert cfg["agent"]["max_steps"] >= 1
    assert cfg["kubectl_mcp"]["read_only"] is True
    assert cfg["database"]["url"].startswith("sqlite+aiosqlite://")


def test_google_api_key_is_required_only_on_demand(monkeypatch):
    env = EnvConfig()
    assert env.infra_api_token is None
    with pytest.raises(ValueError):
        env.require_google_api_key()

    monkeypatch.setenv("GOOGLE_API_KEY", "k")
    assert EnvConfig().require_google_api_key() == "k"
