"""
Prompt + tool catalog.

Holds the fixed instruction turns that open every model context, the
behavior rules folded into them, and the tool declarations offered to the
model. Tool descriptions are the only thing that tells the model when to
call a tool, so they are configuration: config.yaml can replace any
description or disable a tool without touching code.

    tools:
      search_chat_history:
        enabled: true
        description: "..."

Behavior rule categories can be switched off the same way:

    prompts:
      behavior:
        formatting: false
"""

from __future__ import annotations

import copy
import logging

logger = logging.getLogger(__name__)


BASE_PROMPT = (
    "You are a helpful AI assistant with access to the user's full conversation "
    "history across multiple chat sessions.\n\n"
    "When writing code, ALWAYS use actual values - NEVER use placeholders like [object Object]."
)

TOOL_USAGE_PROMPT = """When a user asks about something from a previous conversation that isn't visible in the current chat, use the search_chat_history function to look through their other chat sessions.

Examples of when to use search_chat_history:
- "what did I tell you about my preferences?" -> Search for "preferences" in past conversations
- "do you remember when I mentioned my project?" -> Search for "project" in past conversations
- "what was that code snippet I shared earlier?" -> Search for "code snippet" in past conversations

Only search chat history when the information is clearly from a different conversation. If it's in the current chat, use that directly."""

ACKNOWLEDGEMENT = """Understood! I'll help with your questions by:
- Using information from the current conversation when available
- Searching previous chat sessions if you reference something from another conversation
- Using web search for current events and real-time information
- Providing accurate, helpful responses with real code (never using placeholders)"""

# Short one-liners for the catalog summary turn
TOOL_SUMMARIES = {
    "search_web": "For current events and general knowledge",
    "get_stock_price": "Current stock prices",
    "get_weather": "Current weather for a location",
    "get_time": "Current time for a location",
    "search_chat_history": "To find information from previous chat sessions",
}

BEHAVIOR_RULES: dict[str, tuple[str, list[str]]] = {
    "code_generation": ("Code Generation", [
        "ALWAYS use actual values in code examples",
        "NEVER use placeholders like [object Object] or TODO",
        "Include error handling in code examples",
        "Provide working, runnable code examples",
    ]),
    "formatting": ("Response Formatting", [
        "Use markdown formatting for better readability",
        "Break long responses into sections with headers",
        "Use code blocks with language specifiers",
        "Keep paragraphs concise (3-4 sentences max)",
    ]),
    "function_calling": ("Function Calling", [
        "ONLY call search_chat_history for information NOT in current conversation",
        "Always check current conversation first before searching history",
        "Prefer search_web for current events and real-time data",
        "Use get_stock_price, get_weather, get_time for real-time queries",
        "Don't make redundant function calls",
    ]),
    "tone": ("Tone & Style", [
        "Be helpful and friendly",
        "Acknowledge when you don't know something",
        "Ask clarifying questions when needed",
        "Be concise but thorough",
    ]),
    "error_handling": ("Error Handling", [
        "If a function call fails, explain what went wrong",
        "Suggest alternatives when something doesn't work",
        "Never expose internal errors to user",
    ]),
    "context_awareness": ("Context Awareness", [
        "Remember information from earlier in the conversation",
        "Don't ask for information already provided",
        "Use they/them pronouns when gender is unknown",
    ]),
}


def _string_param(name: str, description: str) -> dict:
    return {
        "type": "object",
        "properties": {name: {"type": "string", "description": description}},
        "required": [name],
    }


TOOL_DECLARATIONS: dict[str, dict] = {
    "get_stock_price": {
        "name": "get_stock_price",
        "description": "Get current stock price information for a given stock symbol",
        "parameters": _string_param("symbol", "The stock symbol (e.g., AAPL, GOOGL, MSFT)"),
    },
    "get_weather": {
        "name": "get_weather",
        "description": "Get current weather information for a specific location",
        "parameters": _string_param(
            "location", "The location to get weather for (e.g., 'New York', 'London', 'Tokyo')"
        ),
    },
    "get_time": {
        "name": "get_time",
        "description": "Get current time for a specific location or city",
        "parameters": _string_param(
            "location", "The location to get time for (e.g., 'New York', 'London', 'Tokyo', 'NY', 'LA')"
        ),
    },
    "search_web": {
        "name": "search_web",
        "description": "Search the web for general information about any topic",
        "parameters": _string_param("query", "The search query to look up on the web"),
    },
    "search_chat_history": {
        "name": "search_chat_history",
        "description": (
            "Search through ALL of the user's past conversations (across different chat "
            "sessions) to find relevant information.\n\n"
            "IMPORTANT: You can already see the current chat session's full history - use "
            "this function ONLY to search OTHER chat sessions.\n\n"
            "Use this when:\n"
            "1. User asks about people/entities not mentioned in THIS conversation\n"
            "2. User references documents uploaded in previous chats\n"
            "3. User asks about their preferences, favorites, or past statements "
            "(e.g., 'what's my favorite X', 'what did I say about Y')\n"
            "4. User asks 'do you remember when I told you about X' and X isn't in current chat\n"
            "5. Questions starting with 'my' that reference context not in current chat\n\n"
            "DO NOT use this if the information is already visible in the current conversation history."
        ),
        "parameters": _string_param(
            "query",
            "What to search for in past conversations. Be specific - include names, "
            "topics, or keywords that would help find the relevant information.",
        ),
    },
}


class PromptCatalog:
    """Static instruction turns + tool declarations, with config overrides."""

    def __init__(self, tools_cfg: dict | None = None, behavior_cfg: dict | None = None):
        tools_cfg = tools_cfg or {}
        behavior_cfg = behavior_cfg or {}

        self.declarations: dict[str, dict] = {}
        for name, decl in TOOL_DECLARATIONS.items():
            tcfg = tools_cfg.get(name) or {}
            if not tcfg.get("enabled", True):
                continue
            decl = copy.deepcopy(decl)
            if tcfg.get("description"):
                decl["description"] = tcfg["description"]
            self.declarations[name] = decl

        self.behavior = {
            key: rules for key, rules in BEHAVIOR_RULES.items()
            if behavior_cfg.get(key, True)
        }
        logger.debug(
            "PromptCatalog loaded (tools=%s, behavior=%s)",
            list(self.declarations), list(self.behavior),
        )

    @classmethod
    def from_config(cls, cfg: dict) -> "PromptCatalog":
        return cls(
            tools_cfg=cfg.get("tools") or {},
            behavior_cfg=(cfg.get("prompts") or {}).get("behavior") or {},
        )

    def tool_declarations(self, enabled: list[str] | None = None) -> list[dict]:
        """Declarations for the given tool names (default: every enabled tool)."""
        names = enabled if enabled is not None else list(self.declarations)
        out = []
        for name in names:
            decl = self.declarations.get(name)
            if decl is None:
                logger.warning("Tool %s has no declaration, not offering it to the model", name)
                continue
            out.append(copy.deepcopy(decl))
        return out

    def behavior_text(self) -> str:
        sections = []
        for title, rules in self.behavior.values():
            sections.append(title + ":\n" + "\n".join(f"- {r}" for r in rules))
        return "\n\n".join(sections)

    def tools_summary(self, enabled: list[str] | None = None) -> str:
        names = enabled if enabled is not None else list(self.declarations)
        lines = [
            f"- {name}: {TOOL_SUMMARIES.get(name, self.declarations[name]['description'].splitlines()[0])}"
            for name in names if name in self.declarations
        ]
        if not lines:
            return ""
        return "You also have access to:\n" + "\n".join(lines)

    def instruction_turns(self, enabled: list[str] | None = None) -> list[dict]:
        """
        The ordered opening turns: base prompt, tool-usage guidance, tool
        catalog summary, behavior rules, then the model's acknowledgement.
        """
        texts = [BASE_PROMPT]
        summary = self.tools_summary(enabled)
        if summary:
            if "search_chat_history" in (enabled if enabled is not None else self.declarations):
                texts.append(TOOL_USAGE_PROMPT)
            texts.append(summary)
        rules = self.behavior_text()
        if rules:
            texts.append(rules)
        turns = [{"role": "user", "parts": [{"text": t}]} for t in texts]
        turns.append({"role": "model", "parts": [{"text": ACKNOWLEDGEMENT}]})
        return turns
