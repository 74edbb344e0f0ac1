import json
import logging

import pytest

from relay import catalog as catalog_mod
from relay import settings
from relay.catalog import DEFAULT_ARCHITECT_PROMPT, load_catalog
from relay.models import DataType


@pytest.fixture(autouse=True)
def _clear_env_settings(monkeypatch):
    for name in ("CONFIG_PATH", "DEFAULT_MODEL", "MAX_AGENTS", "AGENT_STYLE", "ARCHITECT_PROMPT"):
        monkeypatch.setattr(settings, name, "")


def test_builtin_catalog_when_unconfigured():
    cat = load_catalog()
    assert len(cat.demos) == len(catalog_mod.BUILTIN_DEMOS)
    assert cat.defaults.model == "gpt-5-mini"
    assert cat.defaults.max_agents == 4
    assert cat.defaults.architect_prompt == DEFAULT_ARCHITECT_PROMPT
    ids = [entry.id for demo in cat.demos for entry in demo.inputs]
    assert all(ids) and len(set(ids)) == len(ids)


def test_json_catalog_with_camel_case_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "demos": [{
            "icon": "bi bi-star", "title": "T", "body": "B", "problem": "P",
            "inputs": [{"title": "In", "type": "json", "content": "{}"}],
        }],
        "defaults": {"model": "m-2", "architectPrompt": "Design agents", "agentStyle": "Terse", "maxAgents": 9},
    }), encoding="utf-8")
    cat = load_catalog(str(path))
    assert [d.title for d in cat.demos] == ["T"]
    assert cat.demos[0].inputs[0].type is DataType.JSON
    assert cat.defaults.model == "m-2"
    assert cat.defaults.architect_prompt == "Design agents"
    assert cat.defaults.agent_style == "Terse"
    assert cat.defaults.max_agents == 6


def test_env_settings_override_file_defaults(monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_MODEL", "env-model")
    monkeypatch.setattr(settings, "MAX_AGENTS", "1")
    monkeypatch.setattr(settings, "AGENT_STYLE", "Formal")
    cat = load_catalog()
    assert cat.defaults.model == "env-model"
    assert cat.defaults.max_agents == 2
    assert cat.defaults.agent_style == "Formal"


def test_missing_catalog_file_falls_back_to_builtin(tmp_path, caplog):
    with caplog.at_level(logging.WARNING, logger="relay.catalog"):
        cat = load_catalog(str(tmp_path / "nope.json"))
    assert len(cat.demos) == len(catalog_mod.BUILTIN_DEMOS)
    assert "nope.json not found" in caplog.text


def test_request_timeout(monkeypatch):
    monkeypatch.setattr(settings, "TIMEOUT_S", "")
    assert settings.request_timeout() is None
    monkeypatch.setattr(settings, "TIMEOUT_S", "30")
    assert settings.request_timeout() == 30.0
    monkeypatch.setattr(settings, "TIMEOUT_S", "0")
    assert settings.request_timeout() is None


def test_endpoint_from_env(monkeypatch):
    monkeypatch.setattr(settings, "BASE_URL", "http://localhost:1234/v1")
    monkeypatch.setattr(settings, "API_KEY", "")
    endpoint = settings.endpoint_from_env()
    assert endpoint.base_url == "http://localhost:1234/v1"
    assert not endpoint.is_complete
