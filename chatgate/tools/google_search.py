"""
Google Custom Search, used for the real-time lookups (stock prices and
weather). Without an API key + engine id the tools answer with a
"not configured" message instead of calling out.
"""

import logging

import httpx

logger = logging.getLogger(__name__)

CSE_URL = "https://www.googleapis.com/customsearch/v1"


def _format(heading: str, results: list[dict]) -> str:
    lines = [heading, ""]
    for i, r in enumerate(results, 1):
        lines.append(f"{i}. {r['title']}\n{r['snippet']}\n{r['link']}\n")
    return "\n".join(lines).rstrip()


class GoogleSearchTool:
    """Thin async client for the Custom Search JSON API."""

    def __init__(self, api_key: str = "", cse_id: str = "", max_results: int = 3, timeout: float = 10.0):
        self.api_key = api_key
        self.cse_id = cse_id
        self.max_results = max_results
        self.timeout = timeout
        logger.info("GoogleSearchTool initialized (configured=%s)", self.configured)

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.cse_id)

    async def search(self, query: str, num: int | None = None) -> list[dict]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(
                CSE_URL,
                params={"key": self.api_key, "cx": self.cse_id, "q": query, "num": num or self.max_results},
            )
            resp.raise_for_status()
            items = resp.json().get("items") or []
        return [
            {"title": it.get("title", ""), "link": it.get("link", ""), "snippet": it.get("snippet", "")}
            for it in items
        ]

    def _not_configured(self, what: str) -> str:
        return (
            f"Unable to fetch {what}: live search is not configured on this server "
            "(Google Custom Search API key and engine id are required)."
        )

    async def get_stock_price(self, args: dict, context: dict) -> str:
        symbol = str(args.get("symbol", "")).strip().upper()
        if not symbol:
            return "Please provide a stock symbol."
        if not self.configured:
            return self._not_configured(f"stock data for {symbol}")
        results = await self.search(f"{symbol} stock price current")
        if not results:
            return f"I couldn't find current stock price information for {symbol}. Please check the symbol and try again."
        return _format(f"Current stock information for {symbol}:", results)

    async def get_weather(self, args: dict, context: dict) -> str:
        location = str(args.get("location", "")).strip()
        if not location:
            return "Please provide a location."
        if not self.configured:
            return self._not_configured(f"weather for {location}")
        results = await self.search(f"weather in {location} current conditions")
        if not results:
            return f"I couldn't find weather information for {location}. Please check the location name and try again."
        return _format(f"Current weather information for {location}:", results)
