import logging
import os
import pathlib
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("advisory-router.config")

ROOT = pathlib.Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = ROOT / "config" / "router_config.yaml"
DEFAULT_RULES_PATH = ROOT / "config" / "classifier_rules.yaml"

# Environment variable -> backend whose default model it overrides.
MODEL_ENV_OVERRIDES = {
    "OPENAI_MODEL": "openai",
    "AZURE_OPENAI_DEPLOYMENT": "azure-openai",
    "CLAUDE_MODEL": "claude",
    "GEMINI_MODEL": "gemini",
    "PERPLEXITY_MODEL": "perplexity",
}


def env_flag(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def load_yaml(path) -> Dict[str, Any]:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _merge_env_config(cfg: Dict[str, Any]):
    """Merge environment variables into the loaded configuration."""
    backends = cfg.setdefault("backends", {})
    for env_var, backend in MODEL_ENV_OVERRIDES.items():
        val = os.getenv(env_var)
        if val and backend in backends:
            backends[backend]["default_model"] = val
            models = backends[backend].setdefault("models", [])
            if val not in models:
                models.insert(0, val)

    routing = cfg.setdefault("routing", {})
    if os.getenv("OPENAI_MODEL"):
        routing["default_model"] = os.getenv("OPENAI_MODEL")
    if os.getenv("CLAUDE_MODEL"):
        routing["long_context_model"] = os.getenv("CLAUDE_MODEL")
    if os.getenv("GEMINI_MODEL"):
        routing["cost_optimized_model"] = os.getenv("GEMINI_MODEL")
    if os.getenv("PERPLEXITY_MODEL"):
        routing["search_model"] = os.getenv("PERPLEXITY_MODEL")


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    path = path or os.getenv("ROUTER_CONFIG", str(DEFAULT_CONFIG_PATH))
    cfg = load_yaml(path)
    _merge_env_config(cfg)
    logger.info(f"Loaded router config from {path} ({len(cfg.get('backends', {}))} backends)")
    return cfg
