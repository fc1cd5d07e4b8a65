import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

from .schemas import UserProfile

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "BUBBLE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_MASK = "********"


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    # Native provider (Gemini)
    gemini_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    default_model: str = "gemini-2.5-flash"
    think_model: str = "gemini-2.5-flash"
    deep_model: str = "gemini-3-pro-preview"
    image_model: str = "gemini-2.5-flash-image"
    think_budget: int = 2048
    deep_think_budget: int = 8192
    max_output_tokens: Optional[int] = None

    # Non-native models go through OpenRouter; instant mode uses a free endpoint.
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    instant_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="https://text.pollinations.ai/openai", model_id="openai")
    )

    tavily_api_key: Optional[str] = None
    search_depth: str = "basic"
    extract_depth: str = "basic"
    preflight_max_results: int = 15
    tag_search_max_results: int = 20
    deep_search_max_results: int = 10

    rate_limit_retries: int = 3
    retry_base_delay_s: float = 2.0
    retry_offset_s: float = 1.0

    database_path: str = "bubble_data.db"
    host: str = "0.0.0.0"
    port: int = 8000
    upload_dir: str = "uploads"
    upload_max_mb: int = 15
    history_limit: int = 40

    profile: UserProfile = Field(default_factory=UserProfile)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("gemini_api_key", "tavily_api_key"):
            if data.get(key):
                data[key] = SECRET_MASK
        data["profile"] = self.profile.to_safe_dict()
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "default_model": os.getenv("DEFAULT_MODEL"),
        "deep_model": os.getenv("DEEP_MODEL"),
        "image_model": os.getenv("IMAGE_MODEL"),
        "openrouter_base_url": os.getenv("OPENROUTER_BASE_URL"),
        "openrouter_api_key": os.getenv("OPENROUTER_API_KEY"),
        "instant_base_url": os.getenv("INSTANT_BASE_URL"),
        "instant_model": os.getenv("INSTANT_MODEL"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "search_depth": os.getenv("SEARCH_DEPTH"),
        "extract_depth": os.getenv("EXTRACT_DEPTH"),
        "preflight_max_results": os.getenv("PREFLIGHT_MAX_RESULTS"),
        "tag_search_max_results": os.getenv("TAG_SEARCH_MAX_RESULTS"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "rate_limit_retries": os.getenv("RATE_LIMIT_RETRIES"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "upload_dir": os.getenv("UPLOAD_DIR"),
        "upload_max_mb": os.getenv("UPLOAD_MAX_MB"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in (
        "preflight_max_results",
        "tag_search_max_results",
        "max_output_tokens",
        "rate_limit_retries",
        "port",
        "upload_max_mb",
    ):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_flat_overrides(merged: Dict[str, Any]) -> None:
    """Fold flat env keys into their nested settings objects."""
    instant_base = merged.pop("instant_base_url", None)
    instant_model = merged.pop("instant_model", None)
    if instant_base or instant_model:
        endpoint = merged.get("instant_endpoint")
        if not isinstance(endpoint, dict):
            endpoint = AppSettings().instant_endpoint.model_dump()
        if instant_base:
            endpoint["base_url"] = instant_base
        if instant_model:
            endpoint["model_id"] = instant_model
        merged["instant_endpoint"] = endpoint
    openrouter_key = merged.pop("openrouter_api_key", None)
    if openrouter_key:
        profile = merged.get("profile")
        if not isinstance(profile, dict):
            profile = {}
        if not profile.get("openrouter_api_key"):
            profile["openrouter_api_key"] = openrouter_key
        merged["profile"] = profile


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for secret in ("gemini_api_key", "tavily_api_key"):
        if not merged.get(secret) and env_data.get(secret):
            merged[secret] = env_data[secret]
    _apply_flat_overrides(merged)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
