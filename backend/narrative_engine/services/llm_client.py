"""LLM client wrapper for the DeepSeek (OpenAI-compatible) API."""
from typing import List, Dict, Optional, Any, AsyncIterator
import asyncio
import json
import logging
import httpx
from httpx import ReadTimeout

from narrative_engine.core.config import settings
from narrative_engine.infrastructure.resilience import async_retry, backoff_delay


logger = logging.getLogger(__name__)


class ProviderUnavailableError(RuntimeError):
    """Transient provider failure (5xx or rate limiting)."""


def _is_transient(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class DeepSeekClient:
    """Async client for DeepSeek chat completions and embeddings."""

    def __init__(self) -> None:
        self.api_key = settings.DEEPSEEK_API_KEY
        self.base_url = settings.DEEPSEEK_API_BASE.rstrip("/")
        self.model = settings.DEEPSEEK_MODEL
        self.embedding_base_url = (settings.EMBEDDING_API_BASE or settings.DEEPSEEK_API_BASE).rstrip("/")
        self.embedding_api_key = settings.EMBEDDING_API_KEY or settings.DEEPSEEK_API_KEY
        self.embedding_model = settings.EMBEDDING_MODEL

    def _headers(self, api_key: Optional[str] = None) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key or self.api_key}",
            "Content-Type": "application/json",
        }

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(settings.DEEPSEEK_TIMEOUT, read=settings.DEEPSEEK_TIMEOUT)

    async def _post_json(self, url: str, payload: Dict[str, Any], api_key: Optional[str] = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout()) as client:
            try:
                response = await client.post(url, headers=self._headers(api_key), json=payload)
            except ReadTimeout:
                raise
            except httpx.HTTPError as exc:
                raise RuntimeError(
                    "DeepSeek connection error. Please retry in a moment."
                ) from exc
            if response.status_code != 200:
                if _is_transient(response.status_code):
                    raise ProviderUnavailableError(f"DeepSeek API error: {response.text}")
                raise RuntimeError(f"DeepSeek API error: {response.text}")
            return response.json()

    async def _post_with_retry(self, url: str, payload: Dict[str, Any], api_key: Optional[str] = None) -> Dict[str, Any]:
        return await async_retry(
            self._post_json,
            url,
            payload,
            api_key,
            retries=settings.LLM_TRANSPORT_RETRIES,
            backoff=settings.LLM_TRANSPORT_BACKOFF,
            exceptions=(ProviderUnavailableError,),
            on_retry=lambda attempt, exc: logger.warning(
                "Transient provider error (attempt %s): %s", attempt, exc
            ),
        )

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 2000,
        model: Optional[str] = None,
        response_format: Optional[Dict[str, Any]] = None,
        return_full: bool = False,
    ) -> Any:
        """Call DeepSeek chat completions and return the assistant content."""
        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format

        result = await self._post_with_retry(f"{self.base_url}/chat/completions", payload)
        message = result["choices"][0]["message"]
        if return_full:
            return message
        return message.get("content") or ""

    async def chat_stream(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 2000,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Stream DeepSeek chat completions token by token.

        Transient errors are retried only while opening the stream; once a
        delta has been yielded a failure propagates to the consumer.
        """
        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }

        attempt = 0
        while True:
            async with httpx.AsyncClient(timeout=self._timeout()) as client:
                try:
                    async with client.stream(
                        "POST",
                        f"{self.base_url}/chat/completions",
                        headers=self._headers(),
                        json=payload,
                    ) as response:
                        if response.status_code != 200:
                            error_text = (await response.aread()).decode()
                            if _is_transient(response.status_code) and attempt < settings.LLM_TRANSPORT_RETRIES:
                                attempt += 1
                                logger.warning(
                                    "Transient provider error on stream open (attempt %s): %s",
                                    attempt,
                                    error_text,
                                )
                                await asyncio.sleep(backoff_delay(attempt, settings.LLM_TRANSPORT_BACKOFF))
                                continue
                            raise RuntimeError(f"DeepSeek API error: {error_text}")

                        async for line in response.aiter_lines():
                            if not line:
                                continue
                            if line.startswith("data: "):
                                data = line[6:]
                                if data == "[DONE]":
                                    break
                                try:
                                    chunk = json.loads(data)
                                except json.JSONDecodeError:
                                    continue
                                delta = (chunk.get("choices") or [{}])[0].get("delta", {})
                                content = delta.get("content")
                                if content:
                                    yield content
                        return
                except ReadTimeout:
                    raise
                except httpx.HTTPError as exc:
                    raise RuntimeError(
                        "DeepSeek connection error. Please retry in a moment."
                    ) from exc

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts through the OpenAI-compatible embeddings endpoint."""
        if not texts:
            return []
        payload = {"model": self.embedding_model, "input": texts}
        result = await self._post_with_retry(
            f"{self.embedding_base_url}/embeddings",
            payload,
            api_key=self.embedding_api_key,
        )
        data = sorted(result.get("data", []), key=lambda item: item.get("index", 0))
        vectors = [item["embedding"] for item in data]
        if len(vectors) != len(texts):
            raise RuntimeError(
                f"Embedding API returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors
