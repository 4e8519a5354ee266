"""
Advisory Router - dispatch pipeline for accounting questions.

Graph flow (LangGraph):
1. classify -> keyword triage into domain / complexity / requirement flags
2. route    -> backend + model decision and a health-ordered attempt plan
3. govern   -> reasoning profile and prompt augmentation
4. invoke   -> walk the plan through per-backend circuit breakers
5. agents   -> optional reviewer passes for multi-agent profiles
6. validate -> compliance checks when monitoring is enabled

Components are built once (build_dispatcher) and handed to the Dispatcher;
nothing here keeps module-level state.
"""

import dataclasses
import datetime
import functools
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph

from graph.classifier import QueryClassification, QueryClassifier
from graph.config import load_config
from graph.cost_guard import _get_tier_from_model, estimate_cost
from graph.errors import RoutingExhausted
from graph.governor import ProfileKind, ReasoningProfile, ReasoningProfileSelector
from graph.routing import RouteCandidate, RoutingDecision, RoutingDecisionEngine
from graph.sentinel import CognitiveMonitorResult, ComplianceValidator, ValidationContext
from providers.base import (
    GENERAL_BACKEND,
    Backend,
    BackendError,
    CompletionBackend,
    CompletionRequest,
    CompletionResponse,
    ErrorCode,
    TokenUsage,
    classify_exception,
)
from providers.registry import build_backends
from services.audit_sink import DEFAULT_KEY, AuditSink
from services.circuit_breaker import BreakerRegistry, CallTimeoutError, CircuitOpenError
from services.health_monitor import HealthMonitor

logger = logging.getLogger("advisory-router.graph")

SYSTEM_PROMPT = (
    "You are a professional accounting assistant. Answer precisely, cite the "
    "specific statute, standard or publication you rely on, show your arithmetic, "
    "and recommend consulting a qualified tax professional or CPA before acting on tax advice."
)
AGENT_PROMPTS = {
    "audit": "You are an audit reviewer. Check the draft for gaps in risk assessment, materiality and audit evidence.",
    "compliance": "You are a compliance reviewer. Check the draft for regulatory, disclosure and standards issues.",
    "research": "You are a research reviewer. Check that every claim in the draft is backed by a specific authoritative source.",
    "validation": "You are a validation reviewer. Recompute the figures in the draft and flag anything inconsistent.",
}
MAX_ATTACHMENT_CHARS = 40000
# Once a backend answers with one of these, its other models are not tried.
BLOCKING_CODES = (ErrorCode.QUOTA_EXCEEDED, ErrorCode.AUTH_ERROR)


# ---------- Request / Result ----------
@dataclass
class Attachment:
    filename: str = ""
    mime_type: Optional[str] = None
    document_type: Optional[str] = None
    extracted_text: Optional[str] = None
    url: Optional[str] = None
    data: Optional[str] = None  # base64

    def has_document(self) -> bool:
        return bool(self.url or self.data)

    def descriptor(self) -> Dict[str, Any]:
        return {"url": self.url, "data": self.data, "type": self.document_type, "filename": self.filename}


@dataclass
class DispatchRequest:
    query: str
    history: List[Dict[str, str]] = field(default_factory=list)
    tier: str = "free"
    mode: str = "standard"
    attachment: Optional[Attachment] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class DispatchResult:
    request_id: str
    content: str
    classification: QueryClassification
    decision: RoutingDecision
    profile: ReasoningProfile
    monitor: Optional[CognitiveMonitorResult]
    backend: Backend
    model: str
    usage: TokenUsage
    finish_reason: str
    attempts: List[Dict[str, str]]
    processing_time_ms: int
    agent_notes: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def estimated_cost(self) -> float:
        return estimate_cost(self.model, self.usage.total, pages=int(self.metadata.get("pages_analyzed", 0) or 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "content": self.content,
            "backend": self.backend.value,
            "model": self.model,
            "finish_reason": self.finish_reason,
            "usage": dataclasses.asdict(self.usage),
            "classification": self.classification.to_dict(),
            "routing": self.decision.to_dict(),
            "profile": self.profile.to_dict(),
            "monitor": self.monitor.to_dict() if self.monitor else None,
            "agent_notes": self.agent_notes,
            "attempts": self.attempts,
            "processing_time_ms": self.processing_time_ms,
        }

    def audit_entry(self) -> Dict[str, Any]:
        """Row handed to the analytics pipeline for every answered request."""
        alternatives = [m for m in self.decision.fallback_models if m != self.model]
        return {
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "request_id": self.request_id,
            "classification": self.classification.to_dict(),
            "selected_model": self.model,
            "selected_backend": self.backend.value,
            "routing_reason": self.decision.reasoning,
            "confidence": self.classification.confidence,
            "alternative_models": alternatives,
            "processing_time_ms": self.processing_time_ms,
            "profile": self.profile.kind.value,
            "monitor_status": self.monitor.overall_status if self.monitor else None,
            "requires_human_review": self.monitor.requires_human_review if self.monitor else False,
            "tokens": dataclasses.asdict(self.usage),
            "estimated_cost_usd": self.estimated_cost(),
            "attempts": self.attempts,
        }


# ---------- State ----------
class DispatchState(TypedDict, total=False):
    request: DispatchRequest
    classification: QueryClassification
    decision: RoutingDecision
    plan: List[RouteCandidate]
    profile: ReasoningProfile
    completion: CompletionResponse
    backend: Backend
    model: str
    attempts: List[Dict[str, str]]
    agent_notes: Dict[str, str]
    agent_usage: TokenUsage
    monitor: Optional[CognitiveMonitorResult]


def _attempt(backend: Backend, model: str, status: str) -> Dict[str, str]:
    return {"backend": backend.value, "model": model, "status": status}


class Dispatcher:
    def __init__(
        self,
        classifier: QueryClassifier,
        engine: RoutingDecisionEngine,
        governor: ReasoningProfileSelector,
        validator: ComplianceValidator,
        health: HealthMonitor,
        breakers: BreakerRegistry,
        backends: Dict[Backend, CompletionBackend],
        audit_sink: Optional[AuditSink] = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.classifier = classifier
        self.engine = engine
        self.governor = governor
        self.validator = validator
        self.health = health
        self.breakers = breakers
        self.backends = backends
        self.audit_sink = audit_sink
        self.system_prompt = system_prompt
        self._graph = self._build_graph()

    # ---------- Pure steps ----------
    def classify(self, request: DispatchRequest) -> QueryClassification:
        c = self.classifier.classify(request.query)
        if request.attachment is not None and request.attachment.has_document() and not c.needs_document_analysis:
            c = dataclasses.replace(c, needs_document_analysis=True)
        return c

    def build_messages(self, request: DispatchRequest, profile: ReasoningProfile) -> List[Dict[str, str]]:
        system = self.system_prompt + (profile.prompt_augmentation or "")
        messages = [{"role": "system", "content": system}]
        for m in request.history or []:
            if m.get("role") in ("user", "assistant") and m.get("content"):
                messages.append({"role": m["role"], "content": m["content"]})

        user = request.query
        att = request.attachment
        if att is not None and att.extracted_text:
            user += f"\n\nAttached document ({att.filename or 'document'}):\n{att.extracted_text[:MAX_ATTACHMENT_CHARS]}"
        messages.append({"role": "user", "content": user})
        return messages

    def preview(self, request: DispatchRequest) -> Dict[str, Any]:
        """Everything dispatch() would decide, without calling a backend."""
        c = self.classify(request)
        decision = self.engine.route(c, request.tier)
        plan = self.engine.plan(decision)
        profile = self.governor.select_profile(c, request.mode, request.tier, decision, model=plan[0].model if plan else None)
        return {
            "classification": c.to_dict(),
            "routing": decision.to_dict(),
            "plan": [cand.to_dict() for cand in plan],
            "configured_backends": sorted(b.value for b in self.backends),
            "profile": profile.to_dict(),
        }

    # ---------- Graph nodes ----------
    async def _node_classify(self, state: DispatchState) -> DispatchState:
        return {"classification": self.classify(state["request"])}

    async def _node_route(self, state: DispatchState) -> DispatchState:
        decision = self.engine.route(state["classification"], state["request"].tier)
        return {"decision": decision, "plan": self.engine.plan(decision)}

    async def _node_govern(self, state: DispatchState) -> DispatchState:
        request = state["request"]
        plan = state.get("plan") or []
        profile = self.governor.select_profile(
            state["classification"], request.mode, request.tier, state["decision"],
            model=plan[0].model if plan else None,
        )
        return {"profile": profile}

    async def _call(self, backend: Backend, completion_request: CompletionRequest) -> CompletionResponse:
        adapter = self.backends[backend]
        breaker = self.breakers.for_backend(backend)
        return await breaker.call(functools.partial(adapter.generate_completion, completion_request))

    async def _node_invoke(self, state: DispatchState) -> DispatchState:
        request = state["request"]
        messages = self.build_messages(request, state["profile"])
        metadata = {"request_id": request.request_id, "solvers": list(state["decision"].solvers)}
        if request.attachment is not None:
            metadata["document"] = request.attachment.descriptor()

        attempts = list(state.get("attempts") or [])
        blocked = set()

        for cand in state["plan"]:
            backend, model = cand.backend, cand.model
            if backend in blocked:
                attempts.append(_attempt(backend, model, "skipped:blocked"))
                continue
            if backend not in self.backends:
                attempts.append(_attempt(backend, model, "skipped:not_configured"))
                continue
            if not self.health.is_healthy(backend):
                attempts.append(_attempt(backend, model, "skipped:unhealthy"))
                continue

            logger.info(f"Invoking {backend.value}/{model} (attempt {len(attempts) + 1})")
            completion_request = CompletionRequest(messages=messages, model=model, metadata=metadata)
            try:
                completion = await self._call(backend, completion_request)
            except CircuitOpenError:
                attempts.append(_attempt(backend, model, "skipped:circuit_open"))
                continue
            except CallTimeoutError as e:
                self.health.record_failure(backend, BackendError(str(e), backend, ErrorCode.TIMEOUT))
                attempts.append(_attempt(backend, model, f"error:{ErrorCode.TIMEOUT.value}"))
                continue
            except Exception as e:
                err = classify_exception(e, backend)
                if err.code is not ErrorCode.INVALID_REQUEST:
                    self.health.record_failure(backend, err)
                if err.code in BLOCKING_CODES:
                    blocked.add(backend)
                logger.warning(f"{backend.value}/{model} failed ({err.code.value}): {err}")
                attempts.append(_attempt(backend, model, f"error:{err.code.value}"))
                continue

            self.health.record_success(backend)
            attempts.append(_attempt(backend, model, "success"))
            return {"completion": completion, "backend": backend, "model": model, "attempts": attempts}

        logger.error(f"Routing exhausted for {request.request_id}: {json.dumps(attempts)}")
        raise RoutingExhausted(attempts)

    async def _node_agents(self, state: DispatchState) -> DispatchState:
        profile = state["profile"]
        if profile.kind is not ProfileKind.MULTI_AGENT or not profile.agents:
            return {"agent_notes": {}, "agent_usage": TokenUsage()}

        backend, model = state["backend"], state["model"]
        draft = state["completion"].content
        notes, usage = {}, TokenUsage()
        for agent in profile.agents:
            messages = [
                {"role": "system", "content": AGENT_PROMPTS.get(agent, f"You are the {agent} reviewer.")},
                {"role": "user", "content": f"Question:\n{state['request'].query}\n\nDraft answer:\n{draft}"},
            ]
            try:
                resp = await self._call(backend, CompletionRequest(messages=messages, model=model))
            except CircuitOpenError as e:
                notes[agent] = f"review unavailable: {e}"
                continue
            except Exception as e:
                # The draft already stands; a missing review is noted, not fatal.
                code = ErrorCode.TIMEOUT if isinstance(e, CallTimeoutError) else classify_exception(e, backend).code
                if code is not ErrorCode.INVALID_REQUEST:
                    self.health.record_failure(backend, BackendError(str(e), backend, code))
                logger.warning(f"Agent {agent} review on {backend.value} failed ({code.value}): {e}")
                notes[agent] = f"review unavailable: {e}"
                continue
            self.health.record_success(backend)
            notes[agent] = resp.content
            usage.input += resp.tokens_used.input
            usage.output += resp.tokens_used.output
            usage.total += resp.tokens_used.total
        return {"agent_notes": notes, "agent_usage": usage}

    async def _node_validate(self, state: DispatchState) -> DispatchState:
        profile = state["profile"]
        if not profile.cognitive_monitoring:
            return {"monitor": None}
        request = state["request"]
        docs = []
        if request.attachment is not None and request.attachment.extracted_text:
            docs.append(request.attachment.extracted_text)
        context = ValidationContext(mode=profile.mode, source_documents=docs)
        return {"monitor": self.validator.validate(request.query, state["completion"].content, context)}

    def _build_graph(self):
        g = StateGraph(DispatchState)

        g.add_node("classify", self._node_classify)
        g.add_node("route", self._node_route)
        g.add_node("govern", self._node_govern)
        g.add_node("invoke", self._node_invoke)
        g.add_node("agents", self._node_agents)
        g.add_node("validate", self._node_validate)

        g.set_entry_point("classify")
        g.add_edge("classify", "route")
        g.add_edge("route", "govern")
        g.add_edge("govern", "invoke")
        g.add_edge("invoke", "agents")
        g.add_edge("agents", "validate")
        g.add_edge("validate", END)

        return g.compile()

    # ---------- Entry point ----------
    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        t0 = time.perf_counter()
        state = await self._graph.ainvoke({"request": request, "attempts": []})

        completion: CompletionResponse = state["completion"]
        usage = dataclasses.replace(completion.tokens_used)
        agent_usage = state.get("agent_usage") or TokenUsage()
        usage.input += agent_usage.input
        usage.output += agent_usage.output
        usage.total += agent_usage.total

        result = DispatchResult(
            request_id=request.request_id,
            content=completion.content,
            classification=state["classification"],
            decision=state["decision"],
            profile=state["profile"],
            monitor=state.get("monitor"),
            backend=state["backend"],
            model=state["model"],
            usage=usage,
            finish_reason=completion.finish_reason,
            attempts=state["attempts"],
            processing_time_ms=int((time.perf_counter() - t0) * 1000),
            agent_notes=state.get("agent_notes") or {},
            metadata=completion.metadata,
        )

        metric_event = {
            "ts": datetime.datetime.now().isoformat(),
            "request_id": result.request_id,
            "domain": result.classification.domain.value,
            "complexity": result.classification.complexity.value,
            "backend": result.backend.value,
            "model_id": result.model,
            "tier": _get_tier_from_model(result.model),
            "profile": result.profile.kind.value,
            "tokens_total": usage.total,
            "latency_ms": result.processing_time_ms,
            "cost_est_usd": result.estimated_cost(),
            "attempts": len(result.attempts),
            "monitor": result.monitor.overall_status if result.monitor else None,
        }
        logger.info(f"METRIC: {json.dumps(metric_event)}")

        if self.audit_sink is not None:
            await self.audit_sink.record(result.audit_entry())
        return result


# ---------- Builder ----------
def build_dispatcher(
    config: Optional[Dict[str, Any]] = None,
    backends: Optional[Dict[Backend, CompletionBackend]] = None,
    classifier: Optional[QueryClassifier] = None,
    audit_sink: Optional[AuditSink] = None,
    health: Optional[HealthMonitor] = None,
    breakers: Optional[BreakerRegistry] = None,
) -> Dispatcher:
    config = load_config() if config is None else config
    health_cfg = config.get("health") or {}
    audit_cfg = config.get("audit") or {}

    health = health or HealthMonitor(
        decay_interval=float(health_cfg.get("decay_interval_sec", 60)),
        recovery_window=float(health_cfg.get("recovery_window_sec", 300)),
    )
    breakers = breakers or BreakerRegistry(config.get("breakers"))
    backend_models = {name: entry.get("models") or [entry.get("default_model")] for name, entry in (config.get("backends") or {}).items()}
    engine = RoutingDecisionEngine(health, config.get("routing"), backend_models)
    governor = ReasoningProfileSelector(default_model=engine.default_model_for(GENERAL_BACKEND))

    return Dispatcher(
        classifier=classifier or QueryClassifier(),
        engine=engine,
        governor=governor,
        validator=ComplianceValidator(),
        health=health,
        breakers=breakers,
        backends=build_backends(config) if backends is None else backends,
        audit_sink=audit_sink or AuditSink(key=audit_cfg.get("redis_key", DEFAULT_KEY), max_entries=int(audit_cfg.get("max_entries", 10000))),
    )
