import logging
import re
from typing import List, Optional, Tuple

from .schemas import AgentAction, RouterDecision


logger = logging.getLogger("uvicorn.error")


# Ordered; the first matching rule decides the action.
ROUTE_RULES: List[Tuple[AgentAction, re.Pattern]] = [
    (
        AgentAction.IMAGE,
        re.compile(
            r"\b(generate|create|draw|make|paint|render|design)\b.{0,40}\b"
            r"(image|picture|photo|drawing|illustration|logo|artwork|wallpaper|poster)s?\b",
            re.IGNORECASE | re.DOTALL,
        ),
    ),
    (
        AgentAction.DEEP_SEARCH,
        re.compile(r"\b(deep research|deep dive|research report|in-depth research|comprehensive research)\b", re.IGNORECASE),
    ),
    (
        AgentAction.CANVAS,
        re.compile(
            r"\b(canvas|landing page|web ?page|website|html page|interactive (demo|app|widget)|mini ?game)\b",
            re.IGNORECASE,
        ),
    ),
    (
        AgentAction.STUDY,
        re.compile(r"\b(study guide|quiz me|flash ?cards?|practice questions|help me study|teach me)\b", re.IGNORECASE),
    ),
    (
        AgentAction.PROJECT,
        re.compile(r"\b(project plan|new project|start a project|project roadmap|scaffold (a|the|my) project)\b", re.IGNORECASE),
    ),
    (
        AgentAction.SEARCH,
        re.compile(r"\b(search the web|search online|look (it )?up online|google (it|this|that)|web search)\b", re.IGNORECASE),
    ),
]


class SemanticRouter:
    """Classifies a prompt into the action the turn loop starts from."""

    def __init__(self, rules: Optional[List[Tuple[AgentAction, re.Pattern]]] = None):
        self.rules = rules if rules is not None else ROUTE_RULES

    async def route(
        self,
        prompt: str,
        user_id: str = "local",
        api_key: Optional[str] = None,
        file_count: int = 0,
    ) -> RouterDecision:
        # Attachments always go to the main model, which sees them inline.
        if file_count > 0:
            return RouterDecision(action=AgentAction.SIMPLE, confidence=1.0)
        text = (prompt or "").strip()
        for action, pattern in self.rules:
            if pattern.search(text):
                logger.info("Router matched %s for user %s", action.value, user_id)
                parameters = {"prompt": text} if action == AgentAction.IMAGE else {}
                return RouterDecision(action=action, parameters=parameters, confidence=0.8)
        return RouterDecision(action=AgentAction.SIMPLE, confidence=0.5)
