import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger("advisory-router.providers")


class Backend(str, Enum):
    """Closed set of completion backends the router knows how to reach."""
    OPENAI = "openai"
    AZURE_OPENAI = "azure-openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    PERPLEXITY = "perplexity"
    AZURE_DOCUMENT_INTELLIGENCE = "azure-document-intelligence"


# The general-purpose backend always closes a fallback chain.
GENERAL_BACKEND = Backend.OPENAI


class ErrorCode(str, Enum):
    RATE_LIMIT = "rate-limit"
    QUOTA_EXCEEDED = "quota-exceeded"
    AUTH_ERROR = "auth-error"
    INVALID_REQUEST = "invalid-request"
    PROVIDER_ERROR = "provider-error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_CODES = {ErrorCode.RATE_LIMIT, ErrorCode.PROVIDER_ERROR, ErrorCode.TIMEOUT, ErrorCode.UNKNOWN}

FINISH_REASONS = ("stop", "length", "tool_calls", "error")


class BackendError(Exception):
    """Failure raised by a backend adapter, tagged with a stable error code."""

    def __init__(
        self,
        message: str,
        backend: Optional[Backend] = None,
        code: ErrorCode = ErrorCode.UNKNOWN,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.backend = backend
        self.code = code
        self.retryable = code in RETRYABLE_CODES if retryable is None else retryable
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "backend": self.backend.value if self.backend else None,
            "code": self.code.value,
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


# ---------- Request / Response ----------
@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass
class CompletionRequest:
    messages: List[Dict[str, str]]
    model: str
    temperature: float = 0.0
    max_tokens: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResponse:
    content: str
    tokens_used: TokenUsage
    model: str
    finish_reason: str = "stop"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CompletionBackend(ABC):
    """Uniform contract every backend adapter implements."""

    name: Backend
    default_model: str

    @abstractmethod
    async def generate_completion(self, request: CompletionRequest) -> CompletionResponse:
        ...


# ---------- Error mapping ----------
_QUOTA_MARKERS = ("insufficient_quota", "quota exceeded", "quota_exceeded", "billing")
_AUTH_MARKERS = ("invalid api key", "incorrect api key", "authentication", "unauthorized")
_RATE_MARKERS = ("rate limit", "rate_limit", "too many requests")


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(exc: BaseException, backend: Optional[Backend] = None) -> BackendError:
    """Map an SDK/transport exception onto a BackendError."""
    if isinstance(exc, BackendError):
        return exc

    status = _status_code(exc)
    msg = str(exc).lower()
    type_name = type(exc).__name__.lower()

    if isinstance(exc, asyncio.TimeoutError) or "timeout" in type_name or "timed out" in msg:
        code = ErrorCode.TIMEOUT
    elif any(m in msg for m in _QUOTA_MARKERS):
        code = ErrorCode.QUOTA_EXCEEDED
    elif status == 429 or any(m in msg for m in _RATE_MARKERS):
        code = ErrorCode.RATE_LIMIT
    elif status in (401, 403) or any(m in msg for m in _AUTH_MARKERS):
        code = ErrorCode.AUTH_ERROR
    elif status in (400, 404, 413, 422):
        code = ErrorCode.INVALID_REQUEST
    elif status is not None and status >= 500:
        code = ErrorCode.PROVIDER_ERROR
    elif "connection" in type_name or "connect" in msg:
        code = ErrorCode.PROVIDER_ERROR
    else:
        code = ErrorCode.UNKNOWN

    return BackendError(str(exc) or type(exc).__name__, backend, code, status_code=status)


def message_to_response(message: Any, model: str, **metadata) -> CompletionResponse:
    """Turn a LangChain AIMessage into a CompletionResponse."""
    content = getattr(message, "content", message)
    if isinstance(content, list):
        content = "".join(p.get("text", "") if isinstance(p, dict) else str(p) for p in content)

    usage = getattr(message, "usage_metadata", None) or {}
    tokens = TokenUsage(
        input=int(usage.get("input_tokens", 0)),
        output=int(usage.get("output_tokens", 0)),
        total=int(usage.get("total_tokens", 0)),
    )
    if not tokens.total:
        tokens.total = tokens.input + tokens.output

    resp_meta = getattr(message, "response_metadata", None) or {}
    finish = resp_meta.get("finish_reason") or resp_meta.get("done_reason") or "stop"
    if finish not in FINISH_REASONS:
        finish = "stop"

    return CompletionResponse(
        content=str(content),
        tokens_used=tokens,
        model=resp_meta.get("model_name") or resp_meta.get("model") or model,
        finish_reason=finish,
        metadata=metadata,
    )
