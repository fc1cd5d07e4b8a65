from typing import Optional

import httpx


class ProviderError(RuntimeError):
    """Failed request against a completion or image provider."""

    def __init__(self, message: str, status_code: Optional[int] = None, provider: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class RetryExhaustedError(ProviderError):
    pass


class GenerationCancelled(Exception):
    """Raised when the user stops a generation mid-request."""


class InstantModeUnavailable(RuntimeError):
    pass


def is_rate_limit_error(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if status == 429:
        return True
    message = str(exc) or ""
    return "429" in message or "quota" in message.lower()


def user_friendly_error(exc: BaseException) -> str:
    if isinstance(exc, ProviderError) and exc.provider == "openrouter":
        return str(exc)
    if is_rate_limit_error(exc):
        return "The AI service is receiving too many requests right now. Please wait a moment and try again."
    status = getattr(exc, "status_code", None)
    message = (str(exc) or "").lower()
    if status in (401, 403) or "api key" in message or "permission" in message:
        return "Your API key was rejected. Check the key in Settings > API Keys."
    if status == 404 or "not found" in message:
        return "The selected model is not available. Pick a different model in Settings."
    if "safety" in message or "blocked" in message:
        return "The response was blocked by the provider's safety filters. Try rephrasing your request."
    if isinstance(exc, (httpx.RequestError, TimeoutError)) or "timeout" in message or "network" in message:
        return "Could not reach the AI service. Check your connection and try again."
    if status and status >= 500:
        return "The AI service had an internal error. Please try again shortly."
    return "Something went wrong while generating a response. Please try again."
