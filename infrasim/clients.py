"""Asynchronous OpenAI-compatible clients for chat completions and embeddings."""

from __future__ import annotations

import logging
import os
from copy import deepcopy
from typing import Any, Iterable, List, Mapping, MutableMapping, Sequence

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


SUPPORTED_PROVIDERS = ("vllm", "ollama", "deepseek", "openai")

DEFAULT_EXTRA_BODY: Mapping[str, Any] = {
    "extra_body": {"chat_template_kwargs": {"enable_thinking": False}}
}


class LLMClient:
    """Thin wrapper over :class:`openai.AsyncOpenAI` with provider defaults.

    ``ollama`` and ``vllm`` servers expose the OpenAI wire format but do not
    check the API key, so an empty key is replaced by a placeholder for them.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        provider: str = "ollama",
        api_key: str | None = None,
        api_key_env: str | None = None,
        temperature: float | None = None,
        default_extra_body: Mapping[str, Any] | None = None,
    ) -> None:
        provider_key = provider.lower()
        if provider_key not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider '{provider}'")

        if api_key is None:
            env_name = api_key_env or (
                "DEEPSEEK_API_KEY" if provider_key == "deepseek" else "OPENAI_API_KEY"
            )
            api_key = os.environ.get(env_name) or ""
        if not api_key and provider_key in {"ollama", "vllm"}:
            api_key = provider_key

        extra = default_extra_body
        if extra is None and provider_key == "vllm":
            extra = DEFAULT_EXTRA_BODY

        self._client = AsyncOpenAI(base_url=base_url, api_key=api_key)
        self.model = model
        self.provider = provider_key
        self.temperature = temperature
        self.default_extra_body = dict(extra or {})

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------
    async def chat(
        self,
        messages: Sequence[Mapping[str, object]],
        *,
        extra_body: Mapping[str, Any] | None = None,
    ) -> str:
        payload: MutableMapping[str, Any] = {"model": self.model, "messages": list(messages)}
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        merged = self._merge_extra(extra_body)
        if merged:
            payload.update(merged)

        logger.debug("Dispatching chat request: %s", payload)
        response = await self._client.chat.completions.create(**payload)
        logger.debug("Chat raw response: %s", response)
        choice = response.choices[0].message
        return getattr(choice, "content", "") or ""

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    async def embed(self, texts: Iterable[str]) -> List[List[float]]:
        items = list(texts)
        if not items:
            return []

        payload: MutableMapping[str, Any] = {"model": self.model, "input": items}
        logger.debug("Dispatching embedding request for %s text(s)", len(items))
        response = await self._client.embeddings.create(**payload)
        vectors: List[List[float]] = []
        for entry in response.data:
            vector = getattr(entry, "embedding", None)
            if vector is None:
                continue
            vectors.append([float(x) for x in vector])
        if len(vectors) != len(items):
            logger.warning(
                "Embedding count mismatch: expected %s, received %s", len(items), len(vectors)
            )
        return vectors

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _merge_extra(
        self, extra_body: Mapping[str, Any] | None
    ) -> MutableMapping[str, Any] | None:
        if not self.default_extra_body and not extra_body:
            return None
        merged: MutableMapping[str, Any] = deepcopy(self.default_extra_body)
        if extra_body:
            for key, value in extra_body.items():
                if (
                    key in merged
                    and isinstance(merged[key], MutableMapping)
                    and isinstance(value, Mapping)
                ):
                    merged[key].update(value)  # type: ignore[arg-type]
                else:
                    merged[key] = deepcopy(value) if isinstance(value, Mapping) else value
        return merged


__all__ = ["LLMClient", "SUPPORTED_PROVIDERS"]
