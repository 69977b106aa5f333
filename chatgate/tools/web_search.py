"""
search_web tool: DuckDuckGo through LangChain, no API key needed.

LangChain's tool is synchronous, so each query runs in a worker thread.
Errors propagate; ModelGateway turns them into a generic tool failure.
"""

import asyncio
import logging

from langchain_community.tools import DuckDuckGoSearchResults

logger = logging.getLogger(__name__)

NOTHING_FOUND = 'I couldn\'t find information about "{query}". Please try rephrasing your question.'


class WebSearchTool:

    def __init__(self, max_results: int = 5):
        self.max_results = max_results
        self._ddg = DuckDuckGoSearchResults(max_results=max_results)

    async def handle(self, args: dict, context: dict) -> str:
        query = " ".join(str(args.get("query", "")).split())
        if not query:
            return "Please provide something to search for."
        logger.debug("search_web: %r (max %d)", query, self.max_results)
        results = await asyncio.to_thread(self._ddg.invoke, query)
        if not results:
            return NOTHING_FOUND.format(query=query)
        return f'Search results for "{query}":\n\n{results}'
