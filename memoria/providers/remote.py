"""Remote model access through LiteLLM."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import litellm
from loguru import logger

from memoria.errors import ProviderError

if TYPE_CHECKING:
    from memoria.config.schema import Config


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: str


@dataclass(frozen=True, slots=True)
class RemoteCompletion:
    content: str
    input_tokens: int
    output_tokens: int
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RemoteEmbeddings:
    vectors: list[list[float]]
    input_tokens: int


class LiteLLMClient:
    """Resolve credentials per model from config and call LiteLLM's async API."""

    def __init__(self, config: "Config") -> None:
        self._config = config

    def _credentials(self, model: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        provider_cfg = self._config.get_provider(model)
        if provider_cfg is None:
            return kwargs
        if provider_cfg.api_key:
            kwargs["api_key"] = provider_cfg.api_key
        if provider_cfg.api_base:
            kwargs["api_base"] = provider_cfg.api_base
        if provider_cfg.extra_headers:
            kwargs["extra_headers"] = provider_cfg.extra_headers
        return kwargs

    async def embed(self, texts: list[str], *, model: str, timeout: float = 30.0) -> RemoteEmbeddings:
        try:
            response = await litellm.aembedding(
                model=model,
                input=texts,
                timeout=timeout,
                **self._credentials(model),
            )
        except Exception as e:
            raise ProviderError(f"remote embedding via {model} failed: {e}") from e

        vectors: list[list[float]] = []
        for item in getattr(response, "data", None) or []:
            vector = item.get("embedding") if isinstance(item, dict) else getattr(item, "embedding", None)
            if not isinstance(vector, list):
                raise ProviderError(f"remote embedding via {model} returned malformed data")
            vectors.append([float(v) for v in vector])
        if len(vectors) != len(texts):
            raise ProviderError(
                f"remote embedding via {model} returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        usage = getattr(response, "usage", None)
        input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        return RemoteEmbeddings(vectors=vectors, input_tokens=input_tokens)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        timeout: float = 60.0,
    ) -> RemoteCompletion:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": timeout,
            **self._credentials(model),
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ProviderError(f"remote completion via {model} failed: {e}") from e

        choice = response.choices[0]
        message = choice.message
        tool_calls: list[ToolCallRequest] = []
        for call in getattr(message, "tool_calls", None) or []:
            function = getattr(call, "function", None)
            if function is None:
                continue
            tool_calls.append(
                ToolCallRequest(
                    id=str(getattr(call, "id", "") or ""),
                    name=str(getattr(function, "name", "") or ""),
                    arguments=str(getattr(function, "arguments", "") or "{}"),
                )
            )
        usage = getattr(response, "usage", None)
        result = RemoteCompletion(
            content=str(getattr(message, "content", None) or ""),
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            tool_calls=tool_calls,
        )
        logger.debug(
            "remote completion model={} in={} out={} tools={}",
            model,
            result.input_tokens,
            result.output_tokens,
            len(tool_calls),
        )
        return result
