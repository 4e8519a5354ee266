"""
Reasoning governor: picks how hard the backend should think.

select_profile(classification, mode, tier, decision) -> ReasoningProfile
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from graph.classifier import Complexity, QueryClassification
from graph.config import env_flag
from graph.routing import RoutingDecision
from providers.base import GENERAL_BACKEND, Backend

logger = logging.getLogger("advisory-router.governor")


class ProfileKind(str, Enum):
    FAST = "fast"
    CHAIN_OF_THOUGHT = "chain-of-thought"
    MULTI_AGENT = "multi-agent"
    PARALLEL = "parallel"


# ---------- Modes ----------
CANONICAL_MODES = ("standard", "deep-research", "checklist", "workflow", "audit-plan", "calculation")
MODE_ALIASES = {"research": "deep-research", "calculate": "calculation", "audit": "audit-plan"}

COT_MODES = ("deep-research", "calculation")
MONITORED_MODES = ("calculation", "audit-plan", "deep-research")
PAID_TIERS = ("payg", "plus", "professional", "enterprise")
PARALLEL_TIERS = ("professional", "enterprise")

AGENT_SETS = {
    "audit-plan": ("audit", "compliance"),
    "deep-research": ("research", "validation"),
}


def normalize_mode(mode: Optional[str]) -> str:
    m = (mode or "").strip().lower()
    m = MODE_ALIASES.get(m, m)
    return m if m in CANONICAL_MODES else "standard"


# ---------- Capabilities ----------
@dataclass(frozen=True)
class ModelCapability:
    chain_of_thought: bool
    long_context: bool
    context_window: int


CAPABILITIES: Dict[Tuple[Backend, str], ModelCapability] = {
    (Backend.CLAUDE, "claude-3-5-sonnet-20241022"): ModelCapability(True, True, 200_000),
    (Backend.GEMINI, "gemini-2.0-flash-exp"): ModelCapability(True, True, 1_000_000),
    (Backend.PERPLEXITY, "llama-3.1-sonar-large-128k-online"): ModelCapability(False, True, 128_000),
    (Backend.AZURE_OPENAI, "gpt-4o"): ModelCapability(True, False, 128_000),
    (Backend.OPENAI, "gpt-4o"): ModelCapability(True, False, 128_000),
    (Backend.OPENAI, "gpt-4o-mini"): ModelCapability(True, False, 128_000),
}


def supports_chain_of_thought(backend: Backend, model: str) -> bool:
    cap = CAPABILITIES.get((Backend(backend), model))
    return bool(cap and cap.chain_of_thought)


# ---------- Prompt augmentation ----------
_COT_PROMPTS = {
    "calculation": """

REASONING INSTRUCTIONS:
Work the problem step by step before answering:

1. Problem: restate what is asked and list the inputs and variables.
2. Rules: name the tax code sections, standards or regulations that apply.
3. Calculation: show every arithmetic operation on its own line.
4. Check: recompute the key figures and confirm the totals agree.
5. Answer: state the result and how confident you are in it.

Label the sections "Step-by-Step Analysis" and "Final Answer".""",
    "deep-research": """

REASONING INSTRUCTIONS:
Research the question explicitly before concluding:

1. Question: restate it in your own words.
2. Sources: list the authoritative sources you rely on (statutes, standards, rulings).
3. Findings: summarize what each source says.
4. Synthesis: explain where the sources agree or conflict.
5. Conclusion: give the best-supported answer.

Cite a specific source for every claim and mark your confidence in each.""",
    "audit-plan": """

REASONING INSTRUCTIONS:
Approach this as an audit engagement:

1. Objectives: state what assurance is being sought.
2. Risks: identify inherent and control risks and the assertions affected.
3. Materiality: set planning materiality and explain the benchmark.
4. Procedures: list the tests of controls and substantive procedures.
5. Evidence: describe the evidence needed and how results will be evaluated.

Reference the auditing standards that apply to each step.""",
}

_DEFAULT_PROMPT = """

REASONING INSTRUCTIONS:
Think through the question in numbered steps, check each step, and only
then give a clearly labelled final answer."""


def prompt_augmentation(mode: str) -> str:
    return _COT_PROMPTS.get(mode, _DEFAULT_PROMPT)


@dataclass(frozen=True)
class ReasoningProfile:
    kind: ProfileKind = ProfileKind.FAST
    agents: Tuple[str, ...] = ()
    prompt_augmentation: Optional[str] = None
    chain_of_thought: bool = False
    cognitive_monitoring: bool = False
    mode: str = "standard"
    decisions: Tuple[str, ...] = field(default=())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "agents": list(self.agents),
            "prompt_augmentation": self.prompt_augmentation,
            "chain_of_thought": self.chain_of_thought,
            "cognitive_monitoring": self.cognitive_monitoring,
            "mode": self.mode,
            "decisions": list(self.decisions),
        }


class ReasoningProfileSelector:
    def __init__(
        self,
        enable_cot: Optional[bool] = None,
        enable_multi_agent: Optional[bool] = None,
        enable_parallel: Optional[bool] = None,
        enable_monitoring: Optional[bool] = None,
        default_model: str = "gpt-4o",
    ):
        self.enable_cot = env_flag("ENABLE_COT_REASONING", True) if enable_cot is None else enable_cot
        self.enable_multi_agent = env_flag("ENABLE_MULTI_AGENT", False) if enable_multi_agent is None else enable_multi_agent
        self.enable_parallel = env_flag("ENABLE_PARALLEL_REASONING", False) if enable_parallel is None else enable_parallel
        self.enable_monitoring = env_flag("ENABLE_COMPLIANCE_MONITORING", True) if enable_monitoring is None else enable_monitoring
        self.default_model = default_model

    def should_monitor(self, mode: str, tier: str) -> bool:
        return self.enable_monitoring and normalize_mode(mode) in MONITORED_MODES and (tier or "").lower() in PAID_TIERS

    def select_profile(
        self,
        classification: QueryClassification,
        mode: Optional[str],
        tier: Optional[str],
        decision: Optional[RoutingDecision] = None,
        model: Optional[str] = None,
    ) -> ReasoningProfile:
        """
        `model` is the concrete model the preferred backend will run; when
        omitted the decision's primary model (or the general default) is used.
        """
        mode = normalize_mode(mode)
        tier = (tier or "free").lower()
        monitoring = self.should_monitor(mode, tier)

        backend = decision.preferred_backend if decision else GENERAL_BACKEND
        model = model or (decision.primary_model if decision else self.default_model)
        cot_capable = supports_chain_of_thought(backend, model)

        if tier == "free":
            return ReasoningProfile(
                ProfileKind.FAST, mode=mode, chain_of_thought=cot_capable,
                cognitive_monitoring=monitoring, decisions=("free tier: fast reasoning only",),
            )

        decisions = []
        if mode in COT_MODES:
            if self.enable_cot and cot_capable:
                return ReasoningProfile(
                    ProfileKind.CHAIN_OF_THOUGHT,
                    prompt_augmentation=prompt_augmentation(mode),
                    chain_of_thought=True,
                    cognitive_monitoring=monitoring,
                    mode=mode,
                    decisions=(f"chain-of-thought for {mode} on {backend.value}/{model}",),
                )
            decisions.append(
                "chain-of-thought disabled" if not self.enable_cot else f"{backend.value}/{model} lacks chain-of-thought"
            )

        if mode in AGENT_SETS and classification.complexity in (Complexity.COMPLEX, Complexity.EXPERT):
            if self.enable_multi_agent:
                agents = AGENT_SETS[mode]
                return ReasoningProfile(
                    ProfileKind.MULTI_AGENT,
                    agents=agents,
                    prompt_augmentation=prompt_augmentation(mode),
                    chain_of_thought=cot_capable,
                    cognitive_monitoring=monitoring,
                    mode=mode,
                    decisions=tuple(decisions) + (f"multi-agent ({', '.join(agents)}) for {classification.complexity.value} {mode}",),
                )
            decisions.append("multi-agent disabled")

        if mode == "calculation" and tier in PARALLEL_TIERS:
            if self.enable_parallel:
                return ReasoningProfile(
                    ProfileKind.PARALLEL,
                    prompt_augmentation=prompt_augmentation(mode),
                    chain_of_thought=cot_capable,
                    cognitive_monitoring=monitoring,
                    mode=mode,
                    decisions=tuple(decisions) + (f"parallel reasoning for {tier} calculation",),
                )
            decisions.append("parallel reasoning disabled")

        return ReasoningProfile(
            ProfileKind.FAST, chain_of_thought=cot_capable, cognitive_monitoring=monitoring,
            mode=mode, decisions=tuple(decisions),
        )
