"""
Config loader for chatgate.

config.yaml is read once and cached; every module goes through
get_config() or section(). The file sits at the project root unless
CHATGATE_CONFIG points elsewhere.

String values may reference the environment as ${NAME}; .env is loaded
first, and a variable that is not set becomes "".
"""

import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"
_ENV_REF = re.compile(r"\$\{(\w+)\}")

_config: dict | None = None


def _expand(node):
    """Substitute ${NAME} references in every string, at any depth."""
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), node)
    if isinstance(node, dict):
        return {key: _expand(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand(item) for item in node]
    return node


def config_path() -> Path:
    override = os.environ.get("CHATGATE_CONFIG")
    return Path(override) if override else _CONFIG_PATH


def load_config(path: Path | None = None, reload: bool = False) -> dict:
    """Read, expand and cache the config file. Cached unless reload=True."""
    global _config
    if _config is not None and not reload:
        return _config

    source = Path(path) if path else config_path()
    if not source.exists():
        raise FileNotFoundError(f"Config not found: {source}")

    _config = _expand(yaml.safe_load(source.read_text()) or {})
    return _config


def get_config() -> dict:
    return _config if _config is not None else load_config()


def section(name: str) -> dict:
    """One top-level block; {} when it is missing or left empty."""
    return get_config().get(name) or {}
