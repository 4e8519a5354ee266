import logging
import math
from typing import Optional

logger = logging.getLogger("advisory-router.cost")

# Approximate blended pricing per 1M tokens, used only for audit estimates.
PRICING_PER_1M = {
    "mini": 0.50,       # gpt-4o-mini / gemini flash
    "standard": 5.00,   # gpt-4o / sonar
    "elite": 9.00,      # claude sonnet
    "document": 0.00,   # document intelligence is billed per page
    "local": 0.00,      # ollama
}

# Document intelligence prebuilt analyzers, per page.
PRICE_PER_PAGE = 0.0015


def _get_tier_from_model(model_name: Optional[str]) -> str:
    name = (model_name or "").lower()
    if name.startswith("prebuilt-"):
        return "document"
    if "mini" in name or "flash" in name:
        return "mini"
    if "claude" in name or "opus" in name:
        return "elite"
    if "llama" in name and "sonar" not in name:
        return "local"
    if "deepseek" in name or "qwen" in name:
        return "local"
    return "standard"


def est_tokens(text: str) -> int:
    """Rough estimation of tokens (char/4)."""
    return max(1, math.ceil(len(text or "") / 4))


def estimate_cost(model_name: str, total_tokens: int, pages: int = 0) -> float:
    tier = _get_tier_from_model(model_name)
    cost = (total_tokens / 1_000_000) * PRICING_PER_1M.get(tier, 5.0)
    if tier == "document":
        cost += pages * PRICE_PER_PAGE
    return round(cost, 6)
