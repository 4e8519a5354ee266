import logging
import os

from langchain_core.runnables import Runnable, RunnableLambda
from langchain_ollama import ChatOllama

from providers.base import (
    Backend,
    CompletionBackend,
    CompletionRequest,
    CompletionResponse,
    classify_exception,
    message_to_response,
)

logger = logging.getLogger("advisory-router.ollama")


def make_ollama(model: str, base_url: str = None, temperature: float = 0.1) -> Runnable:
    base_url = base_url or os.getenv("OLLAMA_BASE_URL") or "http://localhost:11434"

    num_ctx = int(os.getenv("OLLAMA_NUM_CTX", "8192"))
    num_predict = int(os.getenv("OLLAMA_NUM_PREDICT", "-1"))
    top_p = float(os.getenv("OLLAMA_TOP_P", "0.9"))
    keep_alive = os.getenv("OLLAMA_KEEP_ALIVE", None)

    llm = ChatOllama(
        model=model,
        base_url=base_url,
        temperature=temperature,
        num_ctx=num_ctx,
        num_predict=num_predict,
        top_p=top_p,
        keep_alive=keep_alive,
    )

    to_msgs = RunnableLambda(lambda x: x["messages"])
    return to_msgs | llm


class OllamaBackend(CompletionBackend):
    """Serves any backend slot from a local Ollama model (offline development)."""

    def __init__(self, name: Backend, default_model: str, base_url: str = None, temperature: float = 0.1):
        self.name = name
        self.default_model = default_model
        self._base_url = base_url
        self._temperature = temperature
        self._chains = {}

    async def generate_completion(self, request: CompletionRequest) -> CompletionResponse:
        # The requested model belongs to the remote vendor; locally we always run ours.
        model = self.default_model
        if model not in self._chains:
            self._chains[model] = make_ollama(model, self._base_url, self._temperature)
        try:
            message = await self._chains[model].ainvoke({"messages": request.messages})
        except Exception as e:
            err = classify_exception(e, self.name)
            logger.warning(f"Ollama call for {self.name.value} failed ({err.code.value}): {e}")
            raise err from e
        return message_to_response(message, model, backend=self.name.value, local=True)
