"""
Ollama adapters: text generation (/api/generate) and embeddings (/api/embed)
"""

import json
import logging
from typing import AsyncIterator, List, Optional

import httpx

from core.exceptions import OperationTimeoutError, RateLimitError, UpstreamError

from .providers import EmbeddingModel, LanguageModel

logger = logging.getLogger("copilot.ollama")


class _OllamaClient:
    """Shared httpx client handling"""

    def __init__(self, base_url: str, timeout: float, client: Optional[httpx.AsyncClient]):
        self.ollama_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _check_status(self, response: httpx.Response, service: str) -> None:
        if response.status_code == 429:
            raise RateLimitError(service)
        if response.status_code >= 400:
            raise UpstreamError(service, f"HTTP {response.status_code} from {response.url.path}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OllamaLanguageModel(_OllamaClient, LanguageModel):
    """LanguageModel backed by Ollama /api/generate"""

    def __init__(
        self,
        base_url: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(base_url, timeout, client)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _payload(self, prompt: str, system: Optional[str], stream: bool) -> dict:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            }
        }
        if system:
            payload["system"] = system
        return payload

    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.ollama_url}/api/generate",
                json=self._payload(prompt, system, stream=False)
            )
        except httpx.TimeoutException as e:
            raise OperationTimeoutError("ollama-generate", self.timeout * 1000, model=self.model) from e
        except httpx.HTTPError as e:
            raise UpstreamError("ollama", f"request failed: {e}", model=self.model) from e

        self._check_status(response, "ollama")
        try:
            return response.json().get("response", "")
        except ValueError as e:
            raise UpstreamError("ollama", "invalid JSON payload", model=self.model) from e

    async def stream(self, prompt: str, system: Optional[str] = None) -> AsyncIterator[str]:
        client = await self._get_client()
        try:
            async with client.stream(
                "POST",
                f"{self.ollama_url}/api/generate",
                json=self._payload(prompt, system, stream=True)
            ) as response:
                self._check_status(response, "ollama")
                async for line in response.aiter_lines():
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed stream line: {line[:80]}")
                        continue
                    if data.get("error"):
                        raise UpstreamError("ollama", data["error"], model=self.model)
                    if data.get("response"):
                        yield data["response"]
                    if data.get("done"):
                        break
        except httpx.TimeoutException as e:
            raise OperationTimeoutError("ollama-stream", self.timeout * 1000, model=self.model) from e
        except httpx.HTTPError as e:
            raise UpstreamError("ollama", f"stream failed: {e}", model=self.model) from e


class OllamaEmbeddingModel(_OllamaClient, EmbeddingModel):
    """EmbeddingModel backed by Ollama /api/embed"""

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(base_url, timeout, client)
        self.model_name = model

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.ollama_url}/api/embed",
                json={"model": self.model_name, "input": texts}
            )
        except httpx.TimeoutException as e:
            raise OperationTimeoutError("ollama-embed", self.timeout * 1000, model=self.model_name) from e
        except httpx.HTTPError as e:
            raise UpstreamError("embedding", f"request failed: {e}", model=self.model_name) from e

        self._check_status(response, "embedding")
        try:
            embeddings = response.json().get("embeddings", [])
        except ValueError as e:
            raise UpstreamError("embedding", "invalid JSON payload", model=self.model_name) from e

        if len(embeddings) != len(texts):
            raise UpstreamError(
                "embedding",
                f"expected {len(texts)} vectors, got {len(embeddings)}",
                model=self.model_name
            )
        return embeddings
