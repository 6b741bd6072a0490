"""Local model server client (Ollama HTTP API)."""

from __future__ import annotations

import time
from dataclasses import dataclass

import httpx
from loguru import logger

from memoria.errors import ProviderUnavailableError
from memoria.utils.helpers import estimate_tokens


@dataclass(frozen=True, slots=True)
class LocalGeneration:
    text: str
    input_tokens: int
    output_tokens: int


class OllamaClient:
    """
    Thin async client for a local Ollama server.

    Connection failures and error statuses raise ProviderUnavailableError so
    the gateway can fall back to the remote tier.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        *,
        enabled: bool = True,
        health_ttl_seconds: float = 60.0,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.enabled = enabled
        self.health_ttl_seconds = health_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._available: bool | None = None
        self._checked_at = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def is_available(self) -> bool:
        """Probe ``/api/tags``; the answer is cached for ``health_ttl_seconds``."""
        if not self.enabled:
            return False
        now = time.monotonic()
        if self._available is not None and now - self._checked_at < self.health_ttl_seconds:
            return self._available
        try:
            async with self._client() as client:
                response = await client.get("/api/tags", timeout=5.0)
            self._available = response.status_code < 400
        except httpx.HTTPError as e:
            logger.debug("ollama health check failed: {}", e)
            self._available = False
        self._checked_at = now
        return self._available

    def mark_unavailable(self) -> None:
        self._available = False
        self._checked_at = time.monotonic()

    async def embed(self, text: str, *, model: str) -> list[float]:
        data = await self._post("/api/embeddings", {"model": model, "prompt": text}, capability="embed")
        vector = data.get("embedding")
        if not isinstance(vector, list) or not vector:
            raise ProviderUnavailableError("embed", f"ollama returned no embedding for {model}")
        return [float(v) for v in vector]

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        max_tokens: int = 120,
        temperature: float = 0.1,
        system: str | None = None,
    ) -> LocalGeneration:
        payload: dict[str, object] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {"num_predict": max_tokens, "temperature": temperature},
        }
        if system:
            payload["system"] = system
        data = await self._post("/api/generate", payload, capability="generate")
        text = str(data.get("response") or "").strip()
        return LocalGeneration(
            text=text,
            input_tokens=int(data.get("prompt_eval_count") or estimate_tokens(prompt)),
            output_tokens=int(data.get("eval_count") or estimate_tokens(text)),
        )

    async def _post(self, path: str, payload: dict[str, object], *, capability: str) -> dict[str, object]:
        if not self.enabled:
            raise ProviderUnavailableError(capability, "local model disabled")
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.mark_unavailable()
            raise ProviderUnavailableError(capability, f"ollama {path}: {e}") from e
        if not isinstance(data, dict):
            raise ProviderUnavailableError(capability, f"ollama {path}: unexpected response")
        return data
