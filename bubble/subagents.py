import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from . import prompts
from .channel import OutputChannel
from .config import AppSettings
from .errors import GenerationCancelled, user_friendly_error
from .llm import CompletionProvider, CompletionRequest, stream_with_retry
from .schemas import ActionState, AgentAction, AgentInput, Finalize, GroundingSource, Transition, TurnOutcome
from .search import SearchPipeline, expand_queries, format_query_context, pages_to_sources


logger = logging.getLogger("uvicorn.error")


@dataclass
class TurnContext:
    """Everything a turn iteration or sub-agent needs, plus the run's accumulators."""

    agent_input: AgentInput
    settings: AppSettings
    model: str
    is_native: bool
    provider: CompletionProvider
    channel: OutputChannel
    stop_event: asyncio.Event
    api_key: Optional[str] = None
    pipeline: Optional[SearchPipeline] = None
    image_client: Optional[Any] = None
    thinking_budget: int = 0
    base_instruction: str = ""
    memory_context: Dict[str, Any] = field(default_factory=dict)
    external_search_context: str = ""
    fallback_search_context: str = ""
    grounding: List[GroundingSource] = field(default_factory=list)
    response_text: str = ""
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    @property
    def search_enabled(self) -> bool:
        return self.pipeline is not None and self.pipeline.enabled

    def memory_block(self) -> str:
        enriched = {**self.memory_context, "external_web_search": self.external_search_context}
        return f"[MEMORY]\n{json.dumps(enriched)}"

    def request(self, contents: List[Dict[str, Any]], system_instruction: str) -> CompletionRequest:
        return CompletionRequest(
            model=self.model,
            contents=contents,
            system_instruction=system_instruction,
            tools=[{"googleSearch": {}}] if self.is_native else [],
            thinking_budget=self.thinking_budget,
            api_key=self.api_key,
        )

    async def stream(self, request: CompletionRequest, stop_on: Sequence[str] = ()) -> str:
        """Stream a completion to the channel and return the text generated by this call.

        Stops early once the generated text contains any of ``stop_on``.
        """
        chunks = await stream_with_retry(
            self.provider,
            request,
            retries=self.settings.rate_limit_retries,
            on_retry=self.channel.notice,
            base_delay=self.settings.retry_base_delay_s,
            offset=self.settings.retry_offset_s,
            sleep=self.sleep,
            stop_event=self.stop_event,
        )
        generated = ""
        try:
            async for chunk in chunks:
                if self.stop_event.is_set():
                    raise GenerationCancelled()
                if chunk.grounding and self.is_native:
                    self.grounding.extend(chunk.grounding)
                if not chunk.text:
                    continue
                generated += chunk.text
                self.response_text += chunk.text
                await self.channel.send(chunk.text)
                if stop_on and any(tag in generated for tag in stop_on):
                    break
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        return generated


SubAgent = Callable[[TurnContext, ActionState], Awaitable[TurnOutcome]]


async def run_search(ctx: TurnContext, state: ActionState) -> TurnOutcome:
    query = state.prompt.strip()
    original = ctx.agent_input.prompt
    if not ctx.search_enabled:
        return Transition(ActionState(AgentAction.SIMPLE, prompts.no_results_prompt(original, query)))
    if not state.parameters.get("from_tag"):
        await ctx.channel.send(f"<SEARCH>{query}</SEARCH>", kind="marker")
    pages = await ctx.pipeline.search_and_fetch(query, ctx.settings.tag_search_max_results)
    if not pages:
        logger.info("Search for %r returned nothing", query)
        return Transition(ActionState(AgentAction.SIMPLE, prompts.no_results_prompt(original, query)))
    ctx.grounding.extend(pages_to_sources(pages))
    context = format_query_context(query, pages)
    ctx.fallback_search_context = context
    return Transition(ActionState(AgentAction.SIMPLE, prompts.synthesis_prompt(original, [query], context)))


async def run_deep_search(ctx: TurnContext, state: ActionState) -> TurnOutcome:
    topic = state.prompt.strip()
    original = ctx.agent_input.prompt
    queries = expand_queries(topic, limit=4)
    if not ctx.search_enabled or not queries:
        return Transition(ActionState(AgentAction.SIMPLE, prompts.no_results_prompt(original, topic)))
    await ctx.channel.send("".join(f"<SEARCH>{q}</SEARCH>" for q in queries), kind="marker")
    batches = await ctx.pipeline.search_many(queries, ctx.settings.deep_search_max_results)
    seen = set()
    pages = []
    for batch in batches:
        for page in batch["pages"]:
            if page.url in seen:
                continue
            seen.add(page.url)
            pages.append(page)
    if not pages:
        return Transition(ActionState(AgentAction.SIMPLE, prompts.no_results_prompt(original, topic)))
    ctx.grounding.extend(pages_to_sources(pages))
    context = format_query_context(topic, pages)
    ctx.fallback_search_context = context
    return Transition(ActionState(AgentAction.SIMPLE, prompts.deep_research_prompt(original, queries, context)))


async def run_image(ctx: TurnContext, state: ActionState) -> TurnOutcome:
    description = (state.parameters.get("prompt") or state.prompt).strip()
    if ctx.image_client is None:
        text = "Sorry, image generation is not available right now."
        await ctx.channel.send(text)
        return Finalize(text)
    try:
        result = await ctx.image_client.generate_image(
            description, ctx.settings.image_model, api_key=ctx.agent_input.api_key
        )
    except Exception as exc:
        logger.warning("Image generation failed: %s", exc)
        text = f"Sorry, I couldn't generate that image. {user_friendly_error(exc)}"
        await ctx.channel.send(text)
        return Finalize(text)
    images = result.get("images") or []
    if not images:
        text = "Sorry, I couldn't generate that image. Try describing it differently."
        await ctx.channel.send(text)
        return Finalize(text)
    alt = description.replace("[", "").replace("]", "")[:80] or "Generated image"
    blocks = [f"![{alt}](data:{img['mime_type']};base64,{img['data']})" for img in images]
    caption = (result.get("text") or "").strip()
    text = "\n\n".join([caption] + blocks if caption else blocks)
    await ctx.channel.send(text)
    return Finalize(text)


async def _run_streamed(ctx: TurnContext, state: ActionState, system: str) -> TurnOutcome:
    system_instruction = f"{system}\n\n{ctx.memory_block()}\n\n{prompts.date_time_context()}"
    contents = [{"role": "user", "parts": [{"text": state.prompt}]}]
    text = await ctx.stream(ctx.request(contents, system_instruction))
    return Finalize(text)


async def run_project(ctx: TurnContext, state: ActionState) -> TurnOutcome:
    return await _run_streamed(ctx, state, prompts.PROJECT_SYSTEM)


async def run_canvas(ctx: TurnContext, state: ActionState) -> TurnOutcome:
    return await _run_streamed(ctx, state, prompts.CANVAS_SYSTEM)


async def run_study(ctx: TurnContext, state: ActionState) -> TurnOutcome:
    return await _run_streamed(ctx, state, prompts.STUDY_SYSTEM)


SUBAGENTS: Dict[AgentAction, SubAgent] = {
    AgentAction.SEARCH: run_search,
    AgentAction.DEEP_SEARCH: run_deep_search,
    AgentAction.IMAGE: run_image,
    AgentAction.PROJECT: run_project,
    AgentAction.CANVAS: run_canvas,
    AgentAction.STUDY: run_study,
}
