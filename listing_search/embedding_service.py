"""Embedding providers and the fallback chain that selects between them.

Providers are tried in priority order; the first configured provider whose
circuit is not open and which answers successfully serves the request, and
its name is reported back so responses can record which backend was used.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
import numpy as np
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from listing_search.circuit_breaker import CircuitBreaker
from listing_search.config import SearchSettings
from listing_search.errors import CircuitOpenError, EmbeddingError
from listing_search.models import BatchEmbeddingResult, EmbeddingResult
from listing_search.service_interfaces import EmbeddingProviderInterface

# Configure logging
logger = logging.getLogger(__name__)

MAX_EMBED_INPUT_CHARS = 8192


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingError) and exc.retryable


def clean_text(text: str) -> str:
    """Remove null bytes, collapse whitespace and bound the input length."""
    return " ".join(text.replace("\x00", "").split())[:MAX_EMBED_INPUT_CHARS]


def normalize_dimensions(embedding: Sequence[float], target: int) -> List[float]:
    """Pad with zeros or truncate so every vector has *target* dimensions."""
    values = [float(v) for v in embedding]
    if len(values) >= target:
        return values[:target]
    return values + [0.0] * (target - len(values))


def mean_pool(token_embeddings: Sequence[Sequence[float]]) -> List[float]:
    if len(token_embeddings) == 0:
        return []
    return np.asarray(token_embeddings, dtype=float).mean(axis=0).tolist()


class BaseEmbeddingProvider(EmbeddingProviderInterface):
    """Shared retry, timeout and circuit-breaker handling for providers."""

    dimensions: int = 0

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 30.0,
        max_attempts: int = 3,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.breaker = breaker or CircuitBreaker(f"embedding-{self.name}")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def circuit_state(self) -> str:
        return self.breaker.state

    def is_healthy(self) -> bool:
        return self.is_configured and not self.breaker.is_open()

    async def _request(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError

    async def _request_with_retry(self, texts: List[str]) -> List[List[float]]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.25, max=2),
            reraise=True,
        ):
            with attempt:
                embeddings = await self._request(texts)
        return embeddings

    async def _request_with_timeout(self, texts: List[str]) -> List[List[float]]:
        try:
            return await asyncio.wait_for(self._request_with_retry(texts), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingError(
                f"{self.name} request timeout", self.name, "TIMEOUT", retryable=True
            ) from exc

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed *texts*, splitting into provider-sized chunks."""
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.max_batch_size):
            chunk = texts[start:start + self.max_batch_size]
            vectors.extend(await self.breaker.call(lambda chunk=chunk: self._request_with_timeout(chunk)))
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"{self.name} returned {len(vectors)} embeddings for {len(texts)} inputs",
                self.name,
                "BAD_RESPONSE",
            )
        return vectors


class HttpEmbeddingProvider(BaseEmbeddingProvider):
    """Provider reached over a JSON HTTP API with a bearer token."""

    endpoint: str = ""

    def __init__(self, api_key: Optional[str], timeout: float = 30.0, max_attempts: int = 3,
                 breaker: Optional[CircuitBreaker] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__(api_key, timeout, max_attempts, breaker)
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Any:
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
            )
        except httpx.TimeoutException as exc:
            raise EmbeddingError(f"{self.name} request timeout", self.name, "TIMEOUT", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingError(
                f"{self.name} request failed: {exc}", self.name, "NETWORK_ERROR", retryable=True
            ) from exc

        if response.status_code >= 400:
            raise EmbeddingError(
                f"{self.name} API error: {response.status_code} - {response.text[:200]}",
                self.name,
                f"HTTP_{response.status_code}",
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response.json()

    async def aclose(self) -> None:
        await self.client.aclose()


class ZepEmbeddingProvider(HttpEmbeddingProvider):
    name = "zep"
    model = "zep-1"
    dimensions = 1536
    max_batch_size = 100
    endpoint = "https://api.z.ai/api/v2/embeddings"

    async def _request(self, texts: List[str]) -> List[List[float]]:
        data = await self._post(self.endpoint, {"texts": texts, "model": self.model})
        if isinstance(data, dict):
            if data.get("embeddings") is not None:
                return data["embeddings"]
            if isinstance(data.get("data"), list):
                return [item["embedding"] for item in data["data"]]
        raise EmbeddingError("zep returned an unexpected payload", self.name, "BAD_RESPONSE")


class HuggingFaceEmbeddingProvider(HttpEmbeddingProvider):
    """HuggingFace Inference API; 384-dim vectors padded by the service."""

    name = "huggingface"
    model = "BAAI/bge-small-en-v1.5"
    dimensions = 384
    max_batch_size = 32
    endpoint = "https://router.huggingface.co/hf-inference/models"

    async def _request(self, texts: List[str]) -> List[List[float]]:
        data = await self._post(f"{self.endpoint}/{self.model}", {"inputs": texts})
        if not isinstance(data, list) or not data:
            raise EmbeddingError("huggingface returned an unexpected payload", self.name, "BAD_RESPONSE")
        # Token-level output is [texts][tokens][dims] and needs pooling
        if isinstance(data[0], list) and data[0] and isinstance(data[0][0], list):
            return [mean_pool(item) for item in data]
        return data


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    name = "openai"
    dimensions = 1536
    max_batch_size = 100

    def __init__(self, api_key: Optional[str], model: str = "text-embedding-3-small", timeout: float = 30.0,
                 max_attempts: int = 3, breaker: Optional[CircuitBreaker] = None, client: Any = None):
        self.model = model
        super().__init__(api_key, timeout, max_attempts, breaker)
        self._client = client

    def _get_client(self):
        if self._client is None:
            import openai

            self._client = openai.AsyncOpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    async def _request(self, texts: List[str]) -> List[List[float]]:
        import openai

        try:
            resp = await self._get_client().embeddings.create(model=self.model, input=texts)
        except openai.APIStatusError as exc:
            raise EmbeddingError(
                f"openai API error: {exc.status_code} - {exc.message}",
                self.name,
                f"HTTP_{exc.status_code}",
                retryable=exc.status_code >= 500 or exc.status_code == 429,
            ) from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise EmbeddingError(
                f"openai request failed: {exc}", self.name, "NETWORK_ERROR", retryable=True
            ) from exc
        return [record.embedding for record in resp.data]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class EmbeddingService:
    """Priority-ordered fallback chain over embedding providers."""

    def __init__(
        self,
        providers: Sequence[EmbeddingProviderInterface],
        dimensions: int = 1536,
        enable_fallback: bool = True,
    ):
        """Initialize the embedding service.

        Args:
            providers: Providers in order of preference
            dimensions: Dimension every returned vector is normalised to
            enable_fallback: Try the next provider when one fails
        """
        self.providers = list(providers)
        self.dimensions = dimensions
        self.enable_fallback = enable_fallback
        logger.info(
            f"Embedding service initialized with providers: {[p.name for p in self.providers]}"
        )

    async def embed(self, text: str) -> EmbeddingResult:
        result = await self.embed_batch([text])
        return EmbeddingResult(
            embedding=result.embeddings[0],
            provider=result.provider,
            model=result.model,
            dimensions=result.dimensions,
            latency_ms=result.latency_ms,
        )

    async def embed_batch(self, texts: Sequence[str]) -> BatchEmbeddingResult:
        """Embed *texts* with the first provider that succeeds.

        Raises:
            EmbeddingError: if no provider is configured or every provider fails
        """
        start_time = time.perf_counter()
        cleaned = [clean_text(t) for t in texts]
        errors: List[str] = []

        for provider in self.providers:
            if not provider.is_configured:
                logger.debug(f"Skipping {provider.name}: API key not configured")
                continue

            try:
                vectors = await provider.embed_batch(cleaned)
            except (EmbeddingError, CircuitOpenError) as e:
                errors.append(f"{provider.name}: {e}")
                logger.warning(f"Embedding provider {provider.name} failed: {e}")
                if not self.enable_fallback:
                    raise
                continue

            latency_ms = round((time.perf_counter() - start_time) * 1000)
            logger.info(f"Embeddings generated via {provider.name}: {len(texts)} texts in {latency_ms}ms")
            return BatchEmbeddingResult(
                embeddings=[normalize_dimensions(v, self.dimensions) for v in vectors],
                provider=provider.name,
                model=provider.model,
                dimensions=self.dimensions,
                latency_ms=latency_ms,
            )

        if not errors:
            raise EmbeddingError("No embedding provider configured", "all", "NOT_CONFIGURED")

        logger.error(f"All embedding providers failed for {len(texts)} texts: {errors}")
        raise EmbeddingError(
            f"All embedding providers failed: {'; '.join(errors)}",
            "all",
            "ALL_PROVIDERS_FAILED",
        )

    def health(self) -> Dict[str, Dict[str, Any]]:
        return {
            provider.name: {
                "configured": provider.is_configured,
                "circuit_state": provider.circuit_state(),
                "healthy": provider.is_healthy(),
            }
            for provider in self.providers
        }

    def active_provider(self) -> Optional[str]:
        for provider in self.providers:
            if provider.is_healthy():
                return provider.name
        return None

    async def aclose(self) -> None:
        for provider in self.providers:
            await provider.aclose()


def create_embedding_service(settings: SearchSettings) -> EmbeddingService:
    """Build the provider chain: Zep, then OpenAI, then HuggingFace."""
    timeout = settings.embedding_timeout_seconds
    providers: List[EmbeddingProviderInterface] = [
        ZepEmbeddingProvider(settings.zep_api_key, timeout=timeout),
        OpenAIEmbeddingProvider(settings.openai_api_key, model=settings.openai_embedding_model, timeout=timeout),
        HuggingFaceEmbeddingProvider(settings.huggingface_token, timeout=timeout),
    ]
    return EmbeddingService(providers, dimensions=settings.embedding_dimensions)
