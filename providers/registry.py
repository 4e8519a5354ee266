import logging
import os
from typing import Any, Dict

from providers.base import Backend, CompletionBackend
from providers.document_intelligence import DocumentIntelligenceBackend
from providers.ollama_client import OllamaBackend
from providers.openai_client import OpenAIChatBackend

logger = logging.getLogger("advisory-router.providers")


def make_backend(backend: Backend, entry: Dict[str, Any], timeout: float = 45.0) -> CompletionBackend:
    """Build one backend adapter from its config entry."""
    kind = entry.get("kind", "openai")
    default_model = entry.get("default_model", "")
    api_key = os.getenv(entry.get("api_key_env", ""), "")

    if kind == "openai":
        base_url = os.getenv(entry.get("base_url_env", "")) or entry.get("base_url")
        return OpenAIChatBackend(backend, default_model, api_key, base_url=base_url, timeout=timeout)
    elif kind == "azure":
        endpoint = os.getenv(entry.get("endpoint_env", "")) or entry.get("endpoint")
        return OpenAIChatBackend(
            backend, default_model, api_key, timeout=timeout,
            azure=True, endpoint=endpoint, api_version=entry.get("api_version"),
        )
    elif kind == "ollama":
        base_url = os.getenv(entry.get("enabled_env", "")) or entry.get("base_url")
        return OllamaBackend(backend, default_model, base_url=base_url)
    elif kind == "document-intelligence":
        endpoint = os.getenv(entry.get("endpoint_env", "")) or entry.get("endpoint")
        if not endpoint:
            raise ValueError(f"{backend.value}: document intelligence endpoint is required")
        return DocumentIntelligenceBackend(
            backend, endpoint, api_key,
            api_version=entry.get("api_version", "2024-11-30"), default_model=default_model,
            time_budget=max(1.0, timeout - 5.0),
        )
    raise ValueError(f"Unknown backend kind '{kind}' for {backend.value}")


def build_backends(config: Dict[str, Any]) -> Dict[Backend, CompletionBackend]:
    """Register every configured backend whose credentials are present."""
    timeout = float(config.get("breakers", {}).get("ai_backend", {}).get("timeout_sec", 45))
    backends: Dict[Backend, CompletionBackend] = {}

    for name, entry in (config.get("backends") or {}).items():
        backend = Backend(name)
        required_env = entry.get("api_key_env") or entry.get("enabled_env")
        if required_env and not os.getenv(required_env):
            logger.info(f"Backend {name} not configured ({required_env} unset)")
            continue
        try:
            backends[backend] = make_backend(backend, entry, timeout=timeout)
            logger.info(f"Backend {name} initialized ({entry.get('kind', 'openai')}, {entry.get('default_model')})")
        except ValueError as e:
            logger.error(f"Failed to initialize backend {name}: {e}")

    if not backends:
        logger.warning("No completion backends initialized! Check environment variables.")
    return backends
