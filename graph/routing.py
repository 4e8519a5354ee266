"""
Routing Decision Engine

route(classification, tier) -> RoutingDecision   (which backend/model, which solvers)
plan(decision)              -> [RouteCandidate]  (health-ordered attempt list)

route() is a pure function of the classification and tier. plan() layers the
HealthMonitor's current view on top of the decision, so the two together are
deterministic for a given health snapshot.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from graph.classifier import Complexity, Domain, QueryClassification
from providers.base import GENERAL_BACKEND, Backend
from services.health_monitor import HealthMonitor

logger = logging.getLogger("advisory-router.routing")

TOKEN_BUDGET = {
    Complexity.SIMPLE: 500,
    Complexity.MODERATE: 800,
    Complexity.COMPLEX: 1200,
    Complexity.EXPERT: 2000,
}
RESEARCH_TOKENS = 500
DOCUMENT_TOKENS = 300

DOMAIN_CALCULATORS = ("tax-calculator", "materiality-calculator", "financial-metrics")

DEFAULT_MODELS = {
    "default_model": "gpt-4o",
    "long_context_model": "claude-3-5-sonnet-20241022",
    "cost_optimized_model": "gemini-2.0-flash-exp",
    "search_model": "llama-3.1-sonar-large-128k-online",
    "document_model": "prebuilt-layout",
    "cost_fallback_models": ["gpt-4o-mini", "gpt-4o"],
}


@dataclass(frozen=True)
class RoutingDecision:
    primary_model: str
    preferred_backend: Backend
    fallback_backends: Tuple[Backend, ...]
    fallback_models: Tuple[str, ...]
    solvers: Tuple[str, ...]
    estimated_tokens: int
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_model": self.primary_model,
            "preferred_backend": self.preferred_backend.value,
            "fallback_backends": [b.value for b in self.fallback_backends],
            "fallback_models": list(self.fallback_models),
            "solvers": list(self.solvers),
            "estimated_tokens": self.estimated_tokens,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class RouteCandidate:
    backend: Backend
    model: str
    healthy: bool
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {"backend": self.backend.value, "model": self.model, "healthy": self.healthy, "score": self.score}


class RoutingDecisionEngine:
    def __init__(
        self,
        health: HealthMonitor,
        routing_config: Optional[Dict[str, Any]] = None,
        backend_models: Optional[Dict[str, List[str]]] = None,
    ):
        self.health = health
        cfg = dict(DEFAULT_MODELS)
        cfg.update(routing_config or {})
        self._cfg = cfg
        self._enterprise_models: Dict[str, str] = cfg.get("enterprise_models") or {}
        self._aliases: Dict[str, str] = cfg.get("model_aliases") or {}
        self._backend_models: Dict[Backend, List[str]] = {
            Backend(name): list(models) for name, models in (backend_models or {}).items()
        }

    def default_model_for(self, backend: Backend) -> str:
        if backend is Backend.OPENAI:
            return self._cfg["default_model"]
        elif backend is Backend.AZURE_OPENAI:
            return self._cfg.get("azure_model", self._cfg["default_model"])
        elif backend is Backend.CLAUDE:
            return self._cfg["long_context_model"]
        elif backend is Backend.GEMINI:
            return self._cfg["cost_optimized_model"]
        elif backend is Backend.PERPLEXITY:
            return self._cfg["search_model"]
        elif backend is Backend.AZURE_DOCUMENT_INTELLIGENCE:
            return self._cfg["document_model"]
        raise ValueError(f"Unhandled backend: {backend}")

    def resolve_model(self, model: str) -> str:
        """Map specialized model ids onto the model that actually serves them."""
        return self._aliases.get(model, model)

    def serves(self, backend: Backend, model: str) -> bool:
        models = self._backend_models.get(backend)
        if models is None:
            return model == self.default_model_for(backend)
        return model in models

    # ---------- Decision ----------
    def _base_choice(self, c: QueryClassification) -> Tuple[Backend, str, List[Backend], List[str], List[str]]:
        if c.needs_document_analysis:
            return (Backend.AZURE_DOCUMENT_INTELLIGENCE, self._cfg["document_model"],
                    [Backend.OPENAI, Backend.CLAUDE], [self._cfg["default_model"]], ["document-parser"])

        if c.needs_real_time_data or c.needs_research:
            solvers = ["tax-case-law-search"] if c.needs_research else []
            return (Backend.PERPLEXITY, self._cfg["search_model"],
                    [Backend.OPENAI, Backend.CLAUDE], [self._cfg["default_model"]], solvers)

        if c.needs_deep_reasoning or c.complexity is Complexity.EXPERT:
            return (Backend.CLAUDE, self._cfg["long_context_model"],
                    [Backend.OPENAI], [self._cfg["default_model"]], [])

        if c.complexity in (Complexity.SIMPLE, Complexity.MODERATE):
            return (Backend.GEMINI, self._cfg["cost_optimized_model"],
                    [Backend.OPENAI], list(self._cfg["cost_fallback_models"]), [])

        return (Backend.OPENAI, self._cfg["default_model"],
                [Backend.CLAUDE, Backend.GEMINI], [self._cfg["long_context_model"]], [])

    def _domain_solvers(self, c: QueryClassification) -> List[str]:
        solvers = []
        if c.domain is Domain.TAX:
            if c.sub_domain and "international" in c.sub_domain:
                solvers.append("multi-jurisdiction-tax")
            if c.needs_calculation:
                solvers.append("tax-calculator")
        elif c.domain is Domain.AUDIT:
            solvers.append("risk-assessment")
            if c.needs_calculation:
                solvers.append("materiality-calculator")
        elif c.domain is Domain.FINANCIAL_REPORTING:
            if c.sub_domain and ("gaap" in c.sub_domain or "ifrs" in c.sub_domain):
                solvers.append("standards-lookup")
            if c.needs_calculation:
                solvers.append("financial-metrics")
        elif c.domain is Domain.COMPLIANCE:
            solvers.append("regulatory-check")
            if c.jurisdictions:
                solvers.append("jurisdiction-rules")
        return solvers

    def route(self, classification: QueryClassification, tier: str = "free") -> RoutingDecision:
        c = classification
        backend, model, fallbacks, fallback_models, solvers = self._base_choice(c)

        if backend is not GENERAL_BACKEND and GENERAL_BACKEND not in fallbacks:
            fallbacks.append(GENERAL_BACKEND)

        if (tier or "").lower() == "enterprise" and c.domain.value in self._enterprise_models:
            model = self._enterprise_models[c.domain.value]

        solvers.extend(self._domain_solvers(c))
        if c.needs_calculation and not any(s in solvers for s in DOMAIN_CALCULATORS):
            solvers.append("financial-calculator")
        solvers = list(dict.fromkeys(solvers))

        tokens = TOKEN_BUDGET[c.complexity]
        if c.needs_research:
            tokens += RESEARCH_TOKENS
        if c.needs_document_analysis:
            tokens += DOCUMENT_TOKENS

        reasoning = (
            f"Classified as {c.domain.value} query with {c.complexity.value} complexity. "
            f"Using {backend.value} provider with {model} model for optimal domain expertise."
        )
        if solvers:
            reasoning += f" Engaging {', '.join(solvers)} for enhanced accuracy."

        decision = RoutingDecision(
            primary_model=model,
            preferred_backend=backend,
            fallback_backends=tuple(fallbacks),
            fallback_models=tuple(fallback_models),
            solvers=tuple(solvers),
            estimated_tokens=tokens,
            reasoning=reasoning,
        )
        logger.debug(f"Routing decision: {decision.to_dict()}")
        return decision

    # ---------- Plan ----------
    def _models_for(self, backend: Backend, decision: RoutingDecision) -> List[str]:
        if backend is decision.preferred_backend:
            model = self.resolve_model(decision.primary_model)
            return [model if self.serves(backend, model) else self.default_model_for(backend)]
        served = [m for m in decision.fallback_models if self.serves(backend, m)]
        return served or [self.default_model_for(backend)]

    def plan(self, decision: RoutingDecision) -> List[RouteCandidate]:
        """
        Ordered attempt list: the preferred backend first, then fallbacks by
        current health score (stable on ties). A fallback backend contributes
        one candidate per fallback model it serves, which is how a chain of
        progressively more capable models on one backend is expressed.
        Unhealthy backends stay in the plan flagged `healthy=False`.
        """
        fallbacks = [b for b in dict.fromkeys(decision.fallback_backends) if b is not decision.preferred_backend]
        fallbacks.sort(key=self.health.score, reverse=True)

        candidates: List[RouteCandidate] = []
        for backend in [decision.preferred_backend] + fallbacks:
            healthy = self.health.is_healthy(backend)
            score = self.health.score(backend)
            for model in self._models_for(backend, decision):
                candidates.append(RouteCandidate(backend, model, healthy, score))
        return candidates
