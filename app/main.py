import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# ---------- Structured Logging ----------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","msg":"%(message)s"}',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger("advisory-router")

# ---------- Prometheus & Rate Limiting ----------
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])

from graph.errors import RoutingExhausted
from graph.router import Attachment, DispatchRequest, build_dispatcher
from providers.base import Backend

PUBLIC_PATHS = ("/healthz", "/docs", "/openapi.json")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the dispatcher once and run the health decay loop for the app's lifetime."""
    dispatcher = build_dispatcher()
    app.state.dispatcher = dispatcher
    await dispatcher.audit_sink.connect()
    dispatcher.health.start()
    logger.info(f"Advisory router ready. {len(dispatcher.backends)} backends configured: "
                f"{sorted(b.value for b in dispatcher.backends)}")
    yield
    await dispatcher.health.stop()
    await dispatcher.audit_sink.close()
    logger.info("Shutting down advisory router.")

app = FastAPI(title="Advisory Router", version="1.0.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Init Metrics
Instrumentator().instrument(app).expose(app)


@app.exception_handler(RoutingExhausted)
async def routing_exhausted_handler(request, exc: RoutingExhausted):
    return JSONResponse(status_code=503, content=exc.to_dict())


# Global Exception Handler for clean 500s
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.exception(f"Unhandled error on {request.url.path}")
    return Response(
        content=json.dumps({
            "error": "Internal Server Error",
            "detail": str(exc),
            "type": type(exc).__name__
        }),
        status_code=500,
        media_type="application/json"
    )

@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Content-Security-Policy"] = "default-src 'self'"
    return response

@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    if request.url.path.startswith(PUBLIC_PATHS):
        return await call_next(request)

    expected_key = os.getenv("ROUTER_API_KEY")
    if expected_key:
        client_key = request.headers.get("X-API-Key")
        if not client_key:
            auth_header = request.headers.get("Authorization")
            if auth_header:
                client_key = auth_header[7:] if auth_header.startswith("Bearer ") else auth_header

        if not client_key or client_key != expected_key:
            logger.info(f"Auth rejected: path={request.url.path} auth_provided={bool(client_key)}")
            return Response(content="Unauthorized: Invalid or missing API Key", status_code=401)

    return await call_next(request)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True, allow_methods=["*"], allow_headers=["*"],
)


# ---------- Schemas ----------
class Message(BaseModel):
    role: Literal["system", "user", "assistant"] = "user"
    content: str = Field(..., min_length=1, max_length=200000)

class AttachmentModel(BaseModel):
    filename: str = ""
    mime_type: Optional[str] = None
    document_type: Optional[str] = None
    extracted_text: Optional[str] = Field(None, max_length=2_000_000)
    url: Optional[str] = None
    data: Optional[str] = None

class QueryRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=200000)
    history: List[Message] = Field(default_factory=list)
    tier: Literal["free", "payg", "plus", "professional", "enterprise"] = "free"
    mode: str = "standard"
    attachment: Optional[AttachmentModel] = None

    def to_dispatch(self) -> DispatchRequest:
        return DispatchRequest(
            query=self.query,
            history=[m.model_dump() for m in self.history],
            tier=self.tier,
            mode=self.mode,
            attachment=Attachment(**self.attachment.model_dump()) if self.attachment else None,
        )


# ---------- Routes ----------
@app.post("/v1/query")
@limiter.limit("100/minute")
async def query(request: Request, req: QueryRequest) -> Dict[str, Any]:
    dispatcher = request.app.state.dispatcher
    result = await dispatcher.dispatch(req.to_dispatch())
    logger.info(json.dumps({"evt": "query_done", "backend": result.backend.value, "model": result.model,
                            "lat_ms": result.processing_time_ms}))
    return result.to_dict()

@app.post("/debug/router_decision")
def debug_route_decision(request: Request, req: QueryRequest) -> Dict[str, Any]:
    return request.app.state.dispatcher.preview(req.to_dispatch())

@app.get("/healthz")
def healthz():
    return {"ok": True}

@app.head("/healthz")
def _healthz_head():
    return Response(status_code=200)

@app.get("/health")
async def health_check(request: Request):
    """Backend health scores, breaker states and audit sink status."""
    dispatcher = request.app.state.dispatcher
    backends = dispatcher.health.status()
    configured = {b.value for b in dispatcher.backends}
    available = [name for name, rec in backends.items() if rec["healthy"] and name in configured]
    return {
        "status": "ok" if available else "degraded",
        "service": "advisory-router",
        "available_backends": available,
        "backends": backends,
        "breakers": dispatcher.breakers.stats(),
        "audit_sink": await dispatcher.audit_sink.get_metrics(),
    }

@app.post("/admin/backends/{backend}/reset")
def reset_backend(request: Request, backend: str):
    try:
        target = Backend(backend)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown backend: {backend}")
    dispatcher = request.app.state.dispatcher
    dispatcher.health.reset(target)
    dispatcher.breakers.for_backend(target).reset()
    return {"reset": target.value, "health": dispatcher.health.status()[target.value]}
