import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from .errors import GenerationCancelled, ProviderError, RetryExhaustedError, is_rate_limit_error
from .schemas import GroundingSource


logger = logging.getLogger("uvicorn.error")

DEFAULT_MODEL = "gemini-2.5-flash"
ALLOWED_ROLES = {"system", "user", "assistant"}


def is_google_model(model: Optional[str]) -> bool:
    if not model:
        return True
    return model.startswith("gemini") or model.startswith("veo") or "google" in model


def supports_thinking(model: str) -> bool:
    return "gemini-2.5" in model or "gemini-3" in model


def friendly_model_name(model: str) -> str:
    raw = model.split("/")[-1] or model
    return " ".join(word[:1].upper() + word[1:] for word in raw.replace("-", " ").split(" "))


@dataclass
class StreamChunk:
    text: str = ""
    grounding: List[GroundingSource] = field(default_factory=list)


@dataclass
class CompletionRequest:
    """Provider-neutral request: role/parts contents plus generation config."""

    model: str
    contents: List[Dict[str, Any]]
    system_instruction: str = ""
    thinking_budget: int = 0
    tools: List[Dict[str, Any]] = field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    api_key: Optional[str] = None


class CompletionProvider(Protocol):
    name: str

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        ...


def _extract_error_detail(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace") if body else ""
    try:
        data = json.loads(text)
    except Exception:
        return text
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err.get("status") or json.dumps(err, ensure_ascii=True))
        if isinstance(err, str):
            return err
        for key in ("detail", "message"):
            if isinstance(data.get(key), str):
                return data[key]
    return text


class GeminiClient:
    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        max_output_tokens: Optional[int] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(120, connect=15),
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self, api_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = api_key or self.api_key
        if key:
            headers["x-goog-api-key"] = key
        return headers

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": request.contents}
        if request.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
        if request.tools:
            payload["tools"] = request.tools
        generation: Dict[str, Any] = {}
        if request.thinking_budget > 0:
            generation["thinkingConfig"] = {"thinkingBudget": request.thinking_budget}
        max_tokens = request.max_tokens
        if self.max_output_tokens:
            max_tokens = min(max_tokens or self.max_output_tokens, self.max_output_tokens)
        if max_tokens:
            generation["maxOutputTokens"] = max_tokens
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if generation:
            payload["generationConfig"] = generation
        return payload

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        url = f"{self.base_url}/models/{request.model}:streamGenerateContent"
        http_request = self.client.build_request(
            "POST",
            url,
            params={"alt": "sse"},
            json=self.build_payload(request),
            headers=self._headers(request.api_key),
        )
        response = await self.client.send(http_request, stream=True)
        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            detail = _extract_error_detail(body)
            raise ProviderError(
                f"Gemini request failed ({response.status_code}): {detail}",
                status_code=response.status_code,
                provider=self.name,
            )
        return self._iter_chunks(response)

    async def _iter_chunks(self, response: httpx.Response) -> AsyncIterator[StreamChunk]:
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                raw = line[len("data:"):].strip()
                if not raw:
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                chunk = parse_gemini_chunk(data)
                if chunk.text or chunk.grounding:
                    yield chunk
        finally:
            await response.aclose()

    async def generate_image(self, prompt: str, model: str, api_key: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/models/{model}:generateContent"
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers(api_key))
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _extract_error_detail(exc.response.content)
            raise ProviderError(
                f"Image generation failed ({exc.response.status_code}): {detail}",
                status_code=exc.response.status_code,
                provider=self.name,
            ) from exc
        data = resp.json()
        images: List[Dict[str, str]] = []
        texts: List[str] = []
        candidates = data.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                images.append({"mime_type": inline.get("mimeType") or "image/png", "data": inline["data"]})
            elif part.get("text"):
                texts.append(part["text"])
        return {"images": images, "text": "".join(texts)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def parse_gemini_chunk(data: Dict[str, Any]) -> StreamChunk:
    candidates = data.get("candidates") or []
    if not candidates:
        return StreamChunk()
    candidate = candidates[0] or {}
    texts = []
    for part in (candidate.get("content") or {}).get("parts") or []:
        # Thought summaries are not part of the visible answer.
        if part.get("thought"):
            continue
        if part.get("text"):
            texts.append(part["text"])
    grounding: List[GroundingSource] = []
    for item in (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []:
        web = item.get("web") or {}
        if web.get("uri"):
            grounding.append(GroundingSource(url=web["uri"], title=web.get("title") or ""))
    return StreamChunk(text="".join(texts), grounding=grounding)


class OpenAICompatClient:
    """Streaming client for OpenAI-style /chat/completions endpoints (OpenRouter, instant mode)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        default_model: str = "",
        name: str = "openrouter",
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = default_model
        self.name = name
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(120, connect=15))

    @property
    def completions_url(self) -> str:
        if self.base_url.endswith("/chat/completions"):
            return self.base_url
        if self.base_url.endswith("/openai"):
            return self.base_url
        return f"{self.base_url}/chat/completions"

    def _headers(self, api_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = api_key or self.api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if isinstance(content, str):
                if not content.strip():
                    continue
            elif isinstance(content, list):
                content = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                if not content:
                    continue
            else:
                content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": content})
        return sanitized

    def to_chat_messages(self, request: CompletionRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        for entry in request.contents:
            role = "assistant" if entry.get("role") in ("model", "assistant") else "user"
            items: List[Dict[str, Any]] = []
            for part in entry.get("parts") or []:
                if part.get("text"):
                    items.append({"type": "text", "text": part["text"]})
                elif part.get("inlineData"):
                    inline = part["inlineData"]
                    items.append(
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{inline.get('mimeType')};base64,{inline.get('data')}"},
                        }
                    )
            if not items:
                continue
            if all(item["type"] == "text" for item in items):
                messages.append({"role": role, "content": "".join(item["text"] for item in items)})
            else:
                messages.append({"role": role, "content": items})
        return messages

    def _build_payload(self, model: str, messages: List[Dict[str, Any]], max_tokens: Optional[int] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": self._sanitize_messages(messages),
            "stream": True,
        }
        if not payload["messages"]:
            raise ValueError("messages must include at least one non-empty entry")
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens or self.max_output_tokens, self.max_output_tokens)
        if final_max_tokens:
            payload["max_tokens"] = final_max_tokens
        return payload

    async def _open(self, payload: Dict[str, Any], api_key: Optional[str] = None) -> httpx.Response:
        http_request = self.client.build_request(
            "POST", self.completions_url, json=payload, headers=self._headers(api_key)
        )
        try:
            response = await self.client.send(http_request, stream=True)
        except httpx.RequestError as exc:
            raise ProviderError(f"{self._label} request failed: {exc}", provider=self.name) from exc
        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            detail = _extract_error_detail(body)
            raise ProviderError(
                f"{self._label} error ({response.status_code}): {detail}",
                status_code=response.status_code,
                provider=self.name,
            )
        return response

    @property
    def _label(self) -> str:
        return "OpenRouter" if self.name == "openrouter" else self.name.capitalize()

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(request.model, self.to_chat_messages(request), request.max_tokens)
        response = await self._open(payload, request.api_key)
        return self._iter_chunks(response)

    async def _iter_chunks(self, response: httpx.Response) -> AsyncIterator[StreamChunk]:
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line.replace("data:", "", 1).strip()
                if chunk == "[DONE]":
                    break
                try:
                    data = json.loads(chunk)
                except json.JSONDecodeError:
                    continue
                delta_obj = (data.get("choices") or [{}])[0].get("delta") or {}
                delta = delta_obj.get("content")
                if delta:
                    yield StreamChunk(text=delta)
        finally:
            await response.aclose()

    async def stream_text(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        response = await self._open(self._build_payload(model or self.default_model, messages, max_tokens))
        async for chunk in self._iter_chunks(response):
            yield chunk.text

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


RetryNotice = Callable[[str], Awaitable[None]]


def retry_delay(attempt: int, base_delay: float = 2.0, offset: float = 1.0) -> float:
    return base_delay * (2 ** attempt) + offset


async def stream_with_retry(
    provider: CompletionProvider,
    request: CompletionRequest,
    retries: int = 3,
    on_retry: Optional[RetryNotice] = None,
    base_delay: float = 2.0,
    offset: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    stop_event: Optional[asyncio.Event] = None,
) -> AsyncIterator[StreamChunk]:
    """Open a provider stream, retrying rate-limit failures with exponential backoff.

    Only opening the stream is retried; once chunks flow, errors propagate to the caller.
    """
    if not request.model:
        logger.warning("Model undefined in stream request, defaulting to %s", DEFAULT_MODEL)
        request.model = DEFAULT_MODEL
    last_exc: Optional[BaseException] = None
    for attempt in range(retries + 1):
        if stop_event is not None and stop_event.is_set():
            raise GenerationCancelled()
        try:
            return await provider.open_stream(request)
        except Exception as exc:
            if not is_rate_limit_error(exc):
                raise
            last_exc = exc
            if attempt >= retries:
                break
            delay = retry_delay(attempt, base_delay, offset)
            logger.warning("Quota limit hit on %s. Retrying in %.1fs (attempt %d)", request.model, delay, attempt + 1)
            if on_retry is not None:
                await on_retry(f"(Rate limit hit. Retrying in {round(delay)}s...)")
            await sleep(delay)
    raise RetryExhaustedError(
        "Max retries exceeded",
        status_code=429,
        provider=getattr(provider, "name", ""),
    ) from last_exc
