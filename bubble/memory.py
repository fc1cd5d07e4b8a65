from typing import Dict, List, Sequence

from .db import Database


CONTEXT_CATEGORIES = (
    "inner_personal",
    "outer_personal",
    "personal",
    "interests",
    "preferences",
    "custom",
    "codebase",
    "aesthetic",
    "project",
)


class MemoryStore:
    """Category-keyed view over saved memory items."""

    def __init__(self, db: Database, per_category_limit: int = 20):
        self.db = db
        self.per_category_limit = per_category_limit

    async def get_context(self, categories: Sequence[str] = CONTEXT_CATEGORIES) -> Dict[str, List[dict]]:
        context: Dict[str, List[dict]] = {}
        for category in categories:
            items = await self.db.list_memory(kinds=[category], limit=self.per_category_limit)
            if not items:
                continue
            bucket = context.setdefault(category, [])
            for item in items:
                entry = {"title": item["title"], "content": item["content"]}
                if item["tags"]:
                    entry["tags"] = item["tags"]
                bucket.append(entry)
        return context
