import asyncio
import os

import pytest
from fastapi.testclient import TestClient

from graph.classifier import QueryClassifier, load_rules
from graph.config import load_config
from graph.router import build_dispatcher
from providers.base import Backend, CompletionBackend, CompletionResponse, TokenUsage
from services.audit_sink import AuditSink
from services.circuit_breaker import BreakerRegistry
from services.health_monitor import HealthMonitor

# Fixed test API key for consistent auth testing
TEST_API_KEY = "test_secret_key_12345"

# Anything that could point the router at a real service.
ROUTER_ENV_VARS = (
    "OPENAI_API_KEY", "OPENAI_BASE_URL", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT",
    "ANTHROPIC_API_KEY", "GOOGLE_AI_API_KEY", "PERPLEXITY_API_KEY",
    "AZURE_DOCUMENT_INTELLIGENCE_KEY", "AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT",
    "OLLAMA_BASE_URL", "REDIS_URL", "ROUTER_CONFIG", "CLASSIFIER_RULES",
    "OPENAI_MODEL", "CLAUDE_MODEL", "GEMINI_MODEL", "PERPLEXITY_MODEL", "AZURE_OPENAI_DEPLOYMENT",
    "ENABLE_COT_REASONING", "ENABLE_MULTI_AGENT", "ENABLE_PARALLEL_REASONING", "ENABLE_COMPLIANCE_MONITORING",
)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeBackend(CompletionBackend):
    """
    Scripted backend. Each call consumes the next outcome: a string is
    returned as the completion, an exception instance is raised. When the
    script runs out it answers with a canned reply.
    """

    def __init__(self, name, outcomes=None, default_model="fake-model", delay: float = 0.0):
        self.name = Backend(name)
        self.default_model = default_model
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = []

    async def generate_completion(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else f"answer from {self.name.value}"
        if isinstance(outcome, BaseException):
            raise outcome
        return CompletionResponse(content=outcome, tokens_used=TokenUsage(10, 20, 30), model=request.model)


@pytest.fixture(scope="session", autouse=True)
def setup_global_env():
    """
    Set baseline environment variables for the entire test session.
    Used to prevent accidental production connectivity.
    """
    os.environ["ROUTER_ENV"] = "test"
    os.environ["ROUTER_API_KEY"] = TEST_API_KEY


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Every test starts without provider credentials, Redis or feature flags."""
    for var in ROUTER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("ROUTER_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_backend():
    """The FakeBackend class, so tests can script one per backend."""
    return FakeBackend


@pytest.fixture(scope="session")
def rules():
    return load_rules()


@pytest.fixture
def classifier(rules):
    return QueryClassifier(rules)


@pytest.fixture
def router_config():
    return load_config()


@pytest.fixture
def make_dispatcher(router_config, clock, classifier):
    """Build a Dispatcher over fake backends with a controllable clock."""
    def _make(backends, **kwargs):
        kwargs.setdefault("health", HealthMonitor(clock=clock))
        kwargs.setdefault("breakers", BreakerRegistry(router_config.get("breakers"), clock=clock))
        kwargs.setdefault("audit_sink", AuditSink(redis_url=""))
        kwargs.setdefault("classifier", classifier)
        return build_dispatcher(config=router_config, backends=backends, **kwargs)
    return _make


@pytest.fixture
def client():
    """
    Create a TestClient with the FastAPI app.
    Lazy import ensures app is initialized with test env vars.
    Uses context manager pattern for proper cleanup.
    """
    from app.main import app
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Return headers with a valid API key."""
    return {"X-API-Key": TEST_API_KEY}


@pytest.fixture
def wrong_auth_headers():
    """Return headers with an invalid API key."""
    return {"X-API-Key": "invalid-key-attempt"}
