import os

import httpx
from openai import OpenAI, OpenAIError

from cascade_categorizer.classifiers.base import ChatCompleter, Embedder
from cascade_categorizer.core.settings import get_env_float
from cascade_categorizer.errors import TransientStageError
from cascade_categorizer.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def build_client(
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float | None = None,
) -> OpenAI:
    if timeout is None:
        timeout = get_env_float("OPENAI_TIMEOUT", DEFAULT_TIMEOUT_SECONDS, min_value=0.1)
    return OpenAI(
        api_key=api_key or os.getenv("OPENAI_API_KEY"),
        base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
        http_client=httpx.Client(timeout=timeout),
    )


class OpenAIEmbedder(Embedder):
    def __init__(self, client: OpenAI, model: str = "text-embedding-3-small"):
        self.client = client
        self.model = model

    def embed(self, text: str) -> list[float]:
        try:
            response = self.client.embeddings.create(model=self.model, input=text)
        except OpenAIError as exc:
            logger.warning("[EMBED] %s request failed: %s", self.model, exc)
            raise TransientStageError(f"embedding request failed: {exc}") from exc
        if not response.data:
            raise TransientStageError("embedding response contained no vectors")
        return list(response.data[0].embedding)


class OpenAIChatCompleter(ChatCompleter):
    def __init__(self, client: OpenAI):
        self.client = client

    def complete(
        self,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> tuple[str, int]:
        kwargs = {"model": model, "messages": messages, "temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        try:
            completion = self.client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            logger.warning("[LLM] %s request failed: %s", model, exc)
            raise TransientStageError(f"LLM request failed: {exc}") from exc

        if not completion.choices:
            raise TransientStageError("LLM response contained no choices")
        text = completion.choices[0].message.content or ""
        usage = getattr(completion, "usage", None)
        tokens = getattr(usage, "total_tokens", None) or 0
        return text, int(tokens)


class DisabledEmbedder(Embedder):
    """Stand-in used when no API key is configured; the RAG stage then never matches."""

    def embed(self, text: str) -> list[float]:
        raise TransientStageError("embedding provider not configured")


class DisabledChatCompleter(ChatCompleter):
    def complete(
        self,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> tuple[str, int]:
        raise TransientStageError("LLM provider not configured")


def build_capabilities(embedding_model: str) -> tuple[Embedder, ChatCompleter]:
    if not os.getenv("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY not found. RAG and LLM stages disabled.")
        return DisabledEmbedder(), DisabledChatCompleter()
    client = build_client()
    logger.info(
        "OpenAI capabilities enabled: embeddings=%s, base_url=%s",
        embedding_model,
        os.getenv("OPENAI_BASE_URL") or "default",
    )
    return OpenAIEmbedder(client, model=embedding_model), OpenAIChatCompleter(client)
