import logging
import os
from typing import Any, Dict, Optional

from langchain_core.runnables import Runnable, RunnableLambda
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from providers.base import (
    Backend,
    CompletionBackend,
    CompletionRequest,
    CompletionResponse,
    classify_exception,
    message_to_response,
)

logger = logging.getLogger("advisory-router.openai")


def _needs_reasoning(name: str) -> bool:
    """Reasoning models (o1, o3, o4 families) reject the temperature param."""
    n = (name or "").lower()
    return n.startswith("o1") or n.startswith("o3") or n.startswith("o4")


def make_openai(
    model: str,
    api_key: str,
    base_url: Optional[str] = None,
    temperature: float = 0.0,
    timeout: float = 45.0,
    max_tokens: Optional[int] = None,
) -> Runnable:
    """Build a `messages -> AIMessage` runnable for any OpenAI-compatible endpoint."""
    org = os.getenv("OPENAI_ORGANIZATION") or os.getenv("OPENAI_ORG")
    proj = os.getenv("OPENAI_PROJECT")

    headers = {}
    if proj:
        headers["OpenAI-Project"] = proj

    kwargs = dict(
        model=model,
        api_key=api_key,
        base_url=base_url,
        organization=org,
        timeout=timeout,
        default_headers=headers or None,
        # Retries belong to the router's fallback chain, not the SDK.
        max_retries=int(os.getenv("OPENAI_MAX_RETRIES", "0")),
    )
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    if not _needs_reasoning(model):
        kwargs["temperature"] = temperature

    llm = ChatOpenAI(**kwargs)
    to_msgs = RunnableLambda(lambda x: x["messages"])
    return to_msgs | llm


def make_azure_openai(
    deployment: str,
    api_key: str,
    endpoint: str,
    api_version: str,
    temperature: float = 0.0,
    timeout: float = 45.0,
    max_tokens: Optional[int] = None,
) -> Runnable:
    kwargs = dict(
        azure_deployment=deployment,
        azure_endpoint=endpoint,
        api_key=api_key,
        api_version=api_version,
        timeout=timeout,
        max_retries=0,
        temperature=temperature,
    )
    if max_tokens:
        kwargs["max_tokens"] = max_tokens

    llm = AzureChatOpenAI(**kwargs)
    to_msgs = RunnableLambda(lambda x: x["messages"])
    return to_msgs | llm


class OpenAIChatBackend(CompletionBackend):
    """
    Backend adapter for OpenAI and OpenAI-compatible APIs.

    Claude, Gemini and Perplexity all expose OpenAI-compatible chat endpoints,
    so one adapter serves them with a different base URL. Set `azure=True`
    to talk to an Azure OpenAI deployment instead.
    """

    def __init__(
        self,
        name: Backend,
        default_model: str,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 45.0,
        temperature: float = 0.0,
        azure: bool = False,
        endpoint: Optional[str] = None,
        api_version: Optional[str] = None,
    ):
        self.name = name
        self.default_model = default_model
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._temperature = temperature
        self._azure = azure
        self._endpoint = endpoint
        self._api_version = api_version
        self._chains: Dict[Any, Runnable] = {}

    def _get_chain(self, model: str, max_tokens: Optional[int]) -> Runnable:
        key = (model, max_tokens)
        if key not in self._chains:
            if self._azure:
                self._chains[key] = make_azure_openai(
                    model, self._api_key, self._endpoint, self._api_version,
                    temperature=self._temperature, timeout=self._timeout, max_tokens=max_tokens,
                )
            else:
                self._chains[key] = make_openai(
                    model, self._api_key, self._base_url,
                    temperature=self._temperature, timeout=self._timeout, max_tokens=max_tokens,
                )
        return self._chains[key]

    async def generate_completion(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self.default_model
        chain = self._get_chain(model, request.max_tokens)
        try:
            message = await chain.ainvoke({"messages": request.messages})
        except Exception as e:
            err = classify_exception(e, self.name)
            logger.warning(f"{self.name.value} call failed ({err.code.value}): {e}")
            raise err from e
        return message_to_response(message, model, backend=self.name.value)
