import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from bubble.config import SECRET_MASK, load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_secrets(app_factory):
    app, _, _, _ = app_factory(tavily_api_key="secret-key")
    app.state.settings.profile.openrouter_api_key = "or-key"
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()["settings"]
            assert data["tavily_api_key"] == SECRET_MASK
            assert data["gemini_api_key"] == SECRET_MASK
            assert data["profile"]["openrouter_api_key"] == SECRET_MASK
            assert "secret-key" not in res.text


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_db(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            db = app.state.db
            before = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            res = await client.post("/settings", json={"tavily_api_key": "new-key"})
            assert res.status_code == 200
            after = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            assert after["cnt"] == before["cnt"] + 1
            assert app.state.tavily_client.api_key == "new-key"

    saved = json.loads(config_path.read_text())
    assert saved["tavily_api_key"] == "new-key"


@pytest.mark.asyncio
async def test_post_settings_ignores_masked_values(app_factory):
    app, config_path, _, _ = app_factory(tavily_api_key="keep-me")
    app.state.settings.profile.openrouter_api_key = "or-key"
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/settings",
                json={
                    "tavily_api_key": SECRET_MASK,
                    "default_model": "gemini-2.5-pro",
                    "profile": {"openrouter_api_key": SECRET_MASK, "display_name": "Sam"},
                },
            )
            assert res.status_code == 200

    settings = app.state.settings
    assert settings.tavily_api_key == "keep-me"
    assert settings.default_model == "gemini-2.5-pro"
    assert settings.profile.openrouter_api_key == "or-key"
    assert settings.profile.display_name == "Sam"


@pytest.mark.asyncio
async def test_post_settings_rejects_invalid_values(client):
    res = await client.post("/settings", json={"port": "not-a-port"})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_post_settings_validates_voice_profile(client):
    res = await client.post("/settings", json={"profile": {"tts_voice": "Robot"}})
    assert res.status_code == 400
    res = await client.post("/settings", json={"profile": {"tts_speed": 3.5}})
    assert res.status_code == 400

    res = await client.post("/settings", json={"profile": {"tts_voice": "Kore", "tts_speed": 1.5}})
    assert res.status_code == 200
    profile = res.json()["settings"]["profile"]
    assert profile["tts_voice"] == "Kore"
    assert profile["tts_speed"] == 1.5
    assert client.app.state.settings.profile.display_name == ""


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"default_model": "gemini-config"}))
    monkeypatch.setenv("DEFAULT_MODEL", "gemini-env")
    monkeypatch.delenv("BUBBLE_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.default_model == "gemini-config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"default_model": "gemini-config"}))
    monkeypatch.setenv("DEFAULT_MODEL", "gemini-env")
    monkeypatch.setenv("BUBBLE_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.default_model == "gemini-env"


def test_flat_env_keys_fold_into_nested_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("INSTANT_MODEL", "mistral")
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-env")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.instant_endpoint.model_id == "mistral"
    assert settings.profile.openrouter_api_key == "or-env"


def test_stale_loop_bound_in_config_is_ignored(tmp_path, monkeypatch):
    monkeypatch.delenv("BUBBLE_ENV_OVERRIDES_CONFIG", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"max_loops": 2, "default_model": "gemini-config"}))
    settings = load_settings(config_path=config_path)
    assert settings.default_model == "gemini-config"
    assert "max_loops" not in settings.model_dump()
