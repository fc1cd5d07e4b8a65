from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from bubble.config import AppSettings
from bubble.main import create_app
from tests.fakes import FakeChatClient, FakeProvider, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        gemini_api_key="test-key",
        gemini_base_url="http://gemini.test/v1beta",
        openrouter_base_url="http://openrouter.test/api/v1",
        tavily_api_key=None,
        retry_base_delay_s=0.0,
        retry_offset_s=0.0,
        database_path=str(tmp_path / "test.db"),
        upload_dir=str(tmp_path / "uploads"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_gemini: FakeProvider | None = None,
        fake_openrouter: FakeChatClient | None = None,
        fake_instant: FakeChatClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        gemini = fake_gemini or FakeProvider()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            gemini_client=gemini,
            openrouter_client=fake_openrouter or FakeChatClient(name="openrouter"),
            instant_client=fake_instant or FakeChatClient(name="instant"),
            tavily_client=tavily_client,
            config_path=cfg_path,
        )
        return app, cfg_path, gemini, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, gemini, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_gemini = gemini  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
