import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from graph.cost_guard import est_tokens
from providers.base import (
    Backend,
    BackendError,
    CompletionBackend,
    CompletionRequest,
    CompletionResponse,
    ErrorCode,
    TokenUsage,
    classify_exception,
)

logger = logging.getLogger("advisory-router.document-intelligence")

# Prebuilt analyzers for common financial documents.
PREBUILT_MODELS = {
    "invoice": "prebuilt-invoice",
    "receipt": "prebuilt-receipt",
    "w2": "prebuilt-tax.us.w2",
    "w-2": "prebuilt-tax.us.w2",
    "1040": "prebuilt-tax.us.1040",
    "1098": "prebuilt-tax.us.1098",
    "1099": "prebuilt-tax.us.1099",
}
DEFAULT_PREBUILT = "prebuilt-layout"


def select_prebuilt(document_type: Optional[str]) -> str:
    return PREBUILT_MODELS.get((document_type or "").lower(), DEFAULT_PREBUILT)


def extract_document_info(request: CompletionRequest) -> Dict[str, Any]:
    """Find the document to analyze: explicit metadata first, then the last message."""
    doc = request.metadata.get("document") or {}
    if doc.get("url") or doc.get("data"):
        return doc

    content = request.messages[-1].get("content", "") if request.messages else ""
    content = content.strip()
    try:
        parsed = json.loads(content)
        if isinstance(parsed, dict):
            return {"url": parsed.get("url"), "data": parsed.get("data"), "type": parsed.get("type")}
    except ValueError:
        pass
    if content.startswith(("http://", "https://")):
        return {"url": content, "type": doc.get("type")}
    return {}


class DocumentIntelligenceBackend(CompletionBackend):
    """Azure AI Document Intelligence over its REST API (analyze + poll)."""

    def __init__(
        self,
        name: Backend,
        endpoint: str,
        api_key: str,
        api_version: str = "2024-11-30",
        default_model: str = DEFAULT_PREBUILT,
        poll_interval: float = 1.0,
        max_polls: int = 60,
        time_budget: float = 40.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.default_model = default_model
        self._endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._api_version = api_version
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._time_budget = time_budget
        self._transport = transport

    async def generate_completion(self, request: CompletionRequest) -> CompletionResponse:
        info = extract_document_info(request)
        if not info.get("url") and not info.get("data"):
            raise BackendError("No document URL or data provided", self.name, ErrorCode.INVALID_REQUEST)

        model = select_prebuilt(info.get("type"))
        try:
            result = await self._analyze(model, info)
        except BackendError:
            raise
        except Exception as e:
            err = classify_exception(e, self.name)
            logger.warning(f"Document analysis failed ({err.code.value}): {e}")
            raise err from e

        content = format_analysis(result, model)
        prompt_tokens = est_tokens("".join(m.get("content", "") for m in request.messages))
        output_tokens = est_tokens(content)
        return CompletionResponse(
            content=content,
            tokens_used=TokenUsage(prompt_tokens, output_tokens, prompt_tokens + output_tokens),
            model=model,
            finish_reason="stop",
            metadata={
                "backend": self.name.value,
                "document_type": info.get("type") or "document",
                "pages_analyzed": len(result.get("pages") or []),
            },
        )

    async def _analyze(self, model: str, info: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._endpoint}/documentintelligence/documentModels/{model}:analyze"
        params = {"api-version": self._api_version}
        headers = {"Ocp-Apim-Subscription-Key": self._api_key}
        body = {"urlSource": info["url"]} if info.get("url") else {"base64Source": info["data"]}

        # The whole analyze + poll cycle has to finish inside the breaker timeout.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._time_budget
        async with httpx.AsyncClient(timeout=min(30.0, self._time_budget), transport=self._transport) as client:
            resp = await client.post(url, params=params, headers=headers, json=body)
            resp.raise_for_status()
            op_url = resp.headers.get("Operation-Location")
            if not op_url:
                raise BackendError("Analyze call returned no Operation-Location", self.name, ErrorCode.PROVIDER_ERROR)

            for _ in range(self._max_polls):
                poll = await client.get(op_url, headers=headers)
                poll.raise_for_status()
                data = poll.json()
                status = data.get("status")
                if status == "succeeded":
                    return data.get("analyzeResult") or {}
                if status == "failed":
                    detail = (data.get("error") or {}).get("message", "analysis failed")
                    raise BackendError(detail, self.name, ErrorCode.PROVIDER_ERROR)
                if loop.time() + self._poll_interval >= deadline:
                    break
                await asyncio.sleep(self._poll_interval)

        raise BackendError(
            f"Analysis did not finish within {self._time_budget:g}s ({self._max_polls} polls max)",
            self.name, ErrorCode.TIMEOUT,
        )


def format_table(table: Dict[str, Any]) -> List[str]:
    """Render analyzer cells as pipe-separated rows."""
    rows = table.get("rowCount", 0)
    cols = table.get("columnCount", 0)
    grid = [["" for _ in range(cols)] for _ in range(rows)]
    for cell in table.get("cells") or []:
        r, c = cell.get("rowIndex", 0), cell.get("columnIndex", 0)
        if r < rows and c < cols:
            grid[r][c] = (cell.get("content") or "").replace("\n", " ")
    return ["| " + " | ".join(row) + " |" for row in grid]


def format_analysis(result: Dict[str, Any], model: str) -> str:
    pages = len(result.get("pages") or [])
    lines = [f"Document analysis ({model}, {pages} page(s))"]

    for doc in result.get("documents") or []:
        fields = doc.get("fields") or {}
        if fields:
            lines.append("")
            lines.append(f"Extracted fields ({doc.get('docType', 'document')}):")
            for name, value in fields.items():
                text = (value or {}).get("content")
                if text:
                    lines.append(f"- {name}: {text}")

    pairs = [
        ((kv.get("key") or {}).get("content"), (kv.get("value") or {}).get("content"))
        for kv in result.get("keyValuePairs") or []
    ]
    pairs = [(k, v) for k, v in pairs if k]
    if pairs:
        lines.append("")
        lines.append("Key-value pairs:")
        for key, value in pairs:
            lines.append(f"- {key}: {value or ''}")

    for i, table in enumerate(result.get("tables") or [], 1):
        lines.append("")
        lines.append(f"Table {i} ({table.get('rowCount', 0)}x{table.get('columnCount', 0)}):")
        lines.extend(format_table(table))

    content = result.get("content")
    if content:
        lines.append("")
        lines.append(content)
    return "\n".join(lines)
