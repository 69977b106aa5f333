"""
Memory tool — searches the user's past conversations. Backs
search_chat_history.

The user comes from the call context, never from model-supplied
arguments, so the model can only ever search the current user's records.
"""

import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def no_results_message(query: str) -> str:
    return f'I couldn\'t find any relevant information about "{query}" in your previous conversations.'


class MemoryTool:
    """Semantic search over the caller's stored conversation history."""

    def __init__(self, vector_memory, max_results: int = 5, excerpt_chars: int = 200):
        """
        Args:
            vector_memory: VectorMemory instance.
            max_results: Maximum number of hits to return.
            excerpt_chars: Per-hit content length before it is shortened.
        """
        self.vector_memory = vector_memory
        self.max_results = max_results
        self.excerpt_chars = excerpt_chars
        logger.info("MemoryTool initialized (max_results=%d)", max_results)

    async def handle(self, args: dict, context: dict) -> str:
        query = str(args.get("query", "")).strip()
        user_id = context.get("user_id", "")
        if not query:
            return "Please provide something to search for."
        if not user_id:
            logger.warning("search_chat_history called without a user in context")
            return no_results_message(query)

        hits = await self.vector_memory.search(user_id, query, top_k=self.max_results)
        if not hits:
            return no_results_message(query)

        lines = [f"I found {len(hits)} relevant message(s) from your previous conversations:", ""]
        for i, hit in enumerate(hits, 1):
            when = datetime.fromtimestamp(hit.timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
            content = hit.content
            if len(content) > self.excerpt_chars:
                content = content[:self.excerpt_chars] + "..."
            speaker = "You" if hit.role == "user" else "Assistant"
            title = hit.conversation_title or "Untitled Chat"
            lines.append(f'{i}. From "{title}" ({when}, score {hit.score:.2f})')
            lines.append(f"   {speaker}: {content}")
        return "\n".join(lines)
