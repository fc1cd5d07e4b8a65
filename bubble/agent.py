import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from . import prompts
from .attachments import TEXT_ONLY_IMAGE_NOTE, linearize_attachments, native_user_parts
from .channel import OutputChannel
from .config import AppSettings
from .errors import GenerationCancelled, InstantModeUnavailable, user_friendly_error
from .llm import CompletionProvider, friendly_model_name, is_google_model, supports_thinking
from .memory import CONTEXT_CATEGORIES, MemoryStore
from .router import SemanticRouter
from .schemas import (
    ActionState,
    AgentAction,
    AgentExecutionResult,
    AgentInput,
    ChatMessageRecord,
    Finalize,
    HistoryMessage,
)
from .search import (
    SearchPipeline,
    format_preflight_context,
    format_query_context,
    pages_to_sources,
    should_use_external_search,
)
from .subagents import SUBAGENTS, TurnContext


logger = logging.getLogger("uvicorn.error")

MAX_LOOPS = 6
STOPPED_TEXT = "(Generation stopped by user)"
THINKING_SWITCH_NOTICE = "\n*(Switched to Gemini 2.5 Flash for Thinking mode compatibility)*\n"
OPENROUTER_FALLBACK_NOTICE = "\n*(OpenRouter key missing, falling back to Gemini...)*\n"
THINKING_FALLBACK_MODEL = "gemini-2.5-flash"

CLOSING_TAGS = (
    "</CANVAS_TRIGGER>",
    "</CANVASTRIGGER>",
    "</SEARCH>",
    "</DEEP>",
    "</IMAGE>",
    "</PROJECT>",
    "</CANVAS>",
    "</STUDY>",
)

SEARCH_TAG_RE = re.compile(r"<SEARCH>([\s\S]*?)</SEARCH>")
DEEP_TAG_RE = re.compile(r"<DEEP>([\s\S]*?)</DEEP>")
IMAGE_TAG_RE = re.compile(r"<IMAGE>([\s\S]*?)</IMAGE>")
PROJECT_TAG_RE = re.compile(r"<PROJECT>([\s\S]*?)</PROJECT>")
CANVAS_TAG_RES = (
    re.compile(r"<CANVAS_TRIGGER>([\s\S]*?)</CANVAS_TRIGGER>"),
    re.compile(r"<CANVAS_TRIGGER>([\s\S]*?)</CANVASTRIGGER>"),
    re.compile(r"<CANVAS>([\s\S]*?)</CANVAS>"),
)
STUDY_TAG_RE = re.compile(r"<STUDY>([\s\S]*?)</STUDY>")


def history_without_trailing_user(history: List[HistoryMessage]) -> List[HistoryMessage]:
    if history and history[-1].sender == "user":
        return history[:-1]
    return list(history)


def _first_match(patterns, text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


class AutonomousAgent:
    """Runs one user turn: routing, optional pre-flight search, then the bounded tag loop."""

    def __init__(
        self,
        settings: AppSettings,
        gemini: CompletionProvider,
        router: Optional[SemanticRouter] = None,
        memory: Optional[MemoryStore] = None,
        pipeline: Optional[SearchPipeline] = None,
        openrouter: Optional[CompletionProvider] = None,
        instant: Optional[Any] = None,
        image_client: Optional[Any] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.gemini = gemini
        self.router = router or SemanticRouter()
        self.memory = memory
        self.pipeline = pipeline
        self.openrouter = openrouter
        self.instant = instant
        self.image_client = image_client if image_client is not None else gemini
        self.sleep = sleep

    def _result(self, agent_input: AgentInput, text: str, grounding=None) -> AgentExecutionResult:
        record = ChatMessageRecord(
            project_id=agent_input.project_id,
            chat_id=agent_input.chat_id,
            sender="ai",
            text=text,
            grounding_metadata=list(grounding) if grounding else None,
        )
        return AgentExecutionResult(messages=[record])

    async def run(
        self,
        agent_input: AgentInput,
        channel: OutputChannel,
        stop_event: Optional[asyncio.Event] = None,
    ) -> AgentExecutionResult:
        stop_event = stop_event or asyncio.Event()
        if agent_input.thinking_mode == "instant":
            text = await self.run_instant_mode(agent_input, channel, stop_event)
            if not text and stop_event.is_set():
                text = STOPPED_TEXT
            return self._result(agent_input, text)

        ctx: Optional[TurnContext] = None
        try:
            ctx, state = await self._prepare(agent_input, channel, stop_event)
            return await self._loop(ctx, state)
        except GenerationCancelled:
            partial = ctx.response_text if ctx else ""
            logger.info("Generation stopped by user for chat %s", agent_input.chat_id or "-")
            return self._result(agent_input, partial or STOPPED_TEXT)
        except Exception as exc:
            logger.exception("Agent run failed for chat %s", agent_input.chat_id or "-")
            return self._result(agent_input, f"An error occurred: {user_friendly_error(exc)}")

    async def _prepare(
        self, agent_input: AgentInput, channel: OutputChannel, stop_event: asyncio.Event
    ) -> Tuple[TurnContext, ActionState]:
        settings = self.settings
        profile = agent_input.profile
        model = (agent_input.model or "").strip() or settings.default_model

        thinking_budget = 0
        if agent_input.thinking_mode == "deep":
            model = profile.preferred_deep_model or settings.deep_model
            thinking_budget = settings.deep_think_budget
        elif agent_input.thinking_mode == "think":
            model = settings.think_model
            thinking_budget = settings.think_budget
        if thinking_budget > 0 and not supports_thinking(model):
            await channel.notice(THINKING_SWITCH_NOTICE)
            model = THINKING_FALLBACK_MODEL

        is_native = is_google_model(model)
        if not is_native and (not profile.openrouter_api_key or self.openrouter is None):
            await channel.notice(OPENROUTER_FALLBACK_NOTICE)
            model = settings.default_model
            is_native = is_google_model(model)

        ctx = TurnContext(
            agent_input=agent_input,
            settings=settings,
            model=model,
            is_native=is_native,
            provider=self.gemini if is_native else self.openrouter,
            channel=channel,
            stop_event=stop_event,
            api_key=agent_input.api_key if is_native else profile.openrouter_api_key,
            pipeline=self.pipeline,
            image_client=self.image_client,
            thinking_budget=thinking_budget,
            base_instruction=prompts.base_instruction(friendly_model_name(model), thinking_budget),
            sleep=self.sleep,
        )

        decision = await self.router.route(
            agent_input.prompt,
            agent_input.user_id,
            agent_input.api_key,
            len(agent_input.attachments),
        )
        state = ActionState(decision.action, agent_input.prompt, dict(decision.parameters))

        await self._preflight_search(ctx)
        if self.memory is not None:
            ctx.memory_context = await self.memory.get_context(CONTEXT_CATEGORIES)
        return ctx, state

    def model_supports_search(self, ctx: TurnContext) -> bool:
        return ctx.is_native or "perplexity" in ctx.model

    async def _preflight_search(self, ctx: TurnContext) -> None:
        prompt = ctx.agent_input.prompt
        if not ctx.search_enabled:
            return
        if not should_use_external_search(prompt, self.model_supports_search(ctx), False):
            return
        await ctx.channel.send(f"<SEARCH>{prompt}</SEARCH>", kind="marker")
        try:
            results = await ctx.pipeline.search(prompt, ctx.settings.preflight_max_results)
            if results:
                pages = await ctx.pipeline.fetch_contents(results, ctx.settings.preflight_max_results)
                ctx.grounding.extend(pages_to_sources(pages))
                ctx.external_search_context = format_preflight_context(prompt, pages)
        except Exception as exc:
            logger.warning("External search failed gracefully: %s", exc)

    def _simple_contents(self, ctx: TurnContext, prompt: str) -> List[Dict[str, Any]]:
        assistant_role = "model" if ctx.is_native else "assistant"
        contents: List[Dict[str, Any]] = [
            {"role": "user" if msg.sender == "user" else assistant_role, "parts": [{"text": msg.text}]}
            for msg in history_without_trailing_user(ctx.agent_input.history)
            if msg.text.strip()
        ]
        attachments = ctx.agent_input.attachments
        if ctx.is_native:
            user_parts = native_user_parts(prompt, attachments)
        else:
            text = linearize_attachments(prompt, attachments, TEXT_ONLY_IMAGE_NOTE) if attachments else prompt
            user_parts = [{"text": text}]
        contents.append({"role": "user", "parts": user_parts})
        return contents

    async def _loop(self, ctx: TurnContext, state: ActionState) -> AgentExecutionResult:
        agent_input = ctx.agent_input
        for iteration in range(MAX_LOOPS):
            if ctx.stop_event.is_set():
                raise GenerationCancelled()
            logger.debug("Turn iteration %d action=%s", iteration + 1, state.action.value)

            handler = SUBAGENTS.get(state.action)
            if handler is not None:
                outcome = await handler(ctx, state)
                if isinstance(outcome, Finalize):
                    return self._result(agent_input, outcome.text, ctx.grounding)
                state = outcome.state
                continue

            system = f"{ctx.base_instruction}\n\n{ctx.memory_block()}\n\n{prompts.date_time_context()}"
            request = ctx.request(self._simple_contents(ctx, state.prompt), system)
            generated = await ctx.stream(request, stop_on=CLOSING_TAGS)
            if ctx.stop_event.is_set():
                raise GenerationCancelled()

            next_state = await self._detect_tags(ctx, generated)
            if next_state is not None:
                state = next_state
                continue

            if not ctx.response_text.strip() and ctx.fallback_search_context:
                ctx.response_text = ctx.fallback_search_context
                await ctx.channel.send(ctx.fallback_search_context)
            return self._result(agent_input, ctx.response_text, ctx.grounding)

        logger.info("Turn loop hit the %d iteration limit", MAX_LOOPS)
        return self._result(agent_input, ctx.response_text, ctx.grounding)

    async def _detect_tags(self, ctx: TurnContext, generated: str) -> Optional[ActionState]:
        """Map control tags in this iteration's output to the next action; first rule wins."""
        queries = [q.strip() for q in SEARCH_TAG_RE.findall(generated)]

        if (
            queries
            and ctx.search_enabled
            and should_use_external_search(queries[0], self.model_supports_search(ctx), True)
        ):
            batches = await ctx.pipeline.search_many(queries, ctx.settings.tag_search_max_results)
            valid = [batch for batch in batches if batch["pages"]]
            if valid:
                context = ""
                for batch in valid:
                    ctx.grounding.extend(pages_to_sources(batch["pages"]))
                    context += format_query_context(batch["query"], batch["pages"])
                ctx.fallback_search_context = context
                synthesis = prompts.synthesis_prompt(ctx.agent_input.prompt, queries, context)
                return ActionState(AgentAction.SIMPLE, synthesis)

        deep = _first_match((DEEP_TAG_RE,), generated)
        if deep is not None:
            return ActionState(AgentAction.DEEP_SEARCH, deep)
        if len(queries) == 1 and not ctx.fallback_search_context:
            return ActionState(AgentAction.SEARCH, queries[0], {"from_tag": True})
        image = _first_match((IMAGE_TAG_RE,), generated)
        if image is not None:
            return ActionState(AgentAction.IMAGE, image, {"prompt": image})
        project = _first_match((PROJECT_TAG_RE,), generated)
        if project is not None:
            return ActionState(AgentAction.PROJECT, project)
        canvas = _first_match(CANVAS_TAG_RES, generated)
        if canvas is not None:
            return ActionState(AgentAction.CANVAS, canvas)
        study = _first_match((STUDY_TAG_RE,), generated)
        if study is not None:
            return ActionState(AgentAction.STUDY, study)
        return None

    async def run_instant_mode(
        self, agent_input: AgentInput, channel: OutputChannel, stop_event: asyncio.Event
    ) -> str:
        """Single streamed completion on the free provider; no routing, memory or search."""
        try:
            if self.instant is None:
                raise RuntimeError("instant provider not configured")
            messages = [
                {"role": "user" if msg.sender == "user" else "assistant", "content": msg.text}
                for msg in history_without_trailing_user(agent_input.history)
            ]
            messages.append(
                {"role": "user", "content": linearize_attachments(agent_input.prompt, agent_input.attachments)}
            )
            text = ""
            async for delta in self.instant.stream_text(messages):
                if stop_event.is_set():
                    break
                text += delta
                await channel.send(delta)
            return text
        except Exception as exc:
            logger.error("Instant mode failed: %s", exc)
            raise InstantModeUnavailable("Instant mode service unavailable.") from exc
