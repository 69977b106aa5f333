"""
Streaming generation backends for chatgate.
Selected by backend.provider in config.yaml.
"""
from chatgate.backends.base import GenerationBackend, ModelChunk
from chatgate.backends.gemini import GeminiBackend
from chatgate.backends.openai_compat import OpenAICompatibleBackend

_PROVIDERS: dict[str, type[GenerationBackend]] = {
    "gemini": GeminiBackend,
    "openai_compat": OpenAICompatibleBackend,
}


def make_generation_backend(cfg: dict) -> GenerationBackend:
    """Build the backend described by the ``backend:`` config block."""
    b = cfg.get("backend") or {}
    provider = b.get("provider", "gemini")
    cls = _PROVIDERS.get(provider)
    if cls is None:
        raise ValueError(
            f"Unknown generation backend: '{provider}'. Available: {', '.join(_PROVIDERS)}"
        )
    kwargs = {
        "name": provider,
        "model": b.get("model", ""),
        "timeout": float(b.get("timeout", 60)),
        "api_key": b.get("api_key", ""),
    }
    if b.get("url"):
        kwargs["url"] = b["url"]
    return cls(**kwargs)


__all__ = [
    "GenerationBackend",
    "ModelChunk",
    "GeminiBackend",
    "OpenAICompatibleBackend",
    "make_generation_backend",
]
