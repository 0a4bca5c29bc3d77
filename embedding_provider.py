"""
Embedding Providers - Turn query/record text into vectors
Gemini (REST, remote) and sentence-transformers (local) backends
"""
import asyncio
from typing import List, Optional

import aiohttp
from sentence_transformers import SentenceTransformer

from constants import (
    GEMINI_EMBEDDING_MODEL, GEMINI_EMBEDDING_DIMENSION, LOCAL_EMBEDDING_MODEL,
    EMBEDDING_TIMEOUT_SECONDS,
)
from retrieval_errors import EmbeddingProviderError, EmbeddingTimeout
from structured_logger import get_logger

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class EmbeddingProvider:
    """Interface: async embed(text) -> vector"""

    name = "base"
    dimension: Optional[int] = None
    # Model name recorded in index metadata
    model_id: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return False

    async def embed(self, text: str) -> List[float]:
        raise EmbeddingProviderError(f"Embedding provider '{self.name}' is not available")

    async def close(self):
        """Release network/model resources"""


class NullEmbeddingProvider(EmbeddingProvider):
    """Provider used when vector search is switched off"""

    name = "none"


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Google text-embedding-004 over the Generative Language REST API"""

    name = "gemini"

    def __init__(self, api_key: Optional[str], model: str = GEMINI_EMBEDDING_MODEL,
                 timeout: float = EMBEDDING_TIMEOUT_SECONDS,
                 dimension: int = GEMINI_EMBEDDING_DIMENSION):
        """
        Initialize Gemini provider

        Args:
            api_key: GEMINI_API_KEY; the provider reports unavailable without it
            model: Embedding model name
            timeout: Per-request timeout in seconds
            dimension: Expected vector length
        """
        self.api_key = api_key
        self.model = model
        self.model_id = model
        self.timeout = timeout
        self.dimension = dimension
        self.url = f"{GEMINI_API_BASE}/{model}:embedContent"
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def embed(self, text: str) -> List[float]:
        if not self.is_available:
            raise EmbeddingProviderError("GEMINI_API_KEY is not set")

        payload = {
            "model": f"models/{self.model}",
            "content": {"parts": [{"text": text}]}
        }
        try:
            async with self._get_session().post(self.url, params={"key": self.api_key},
                                                json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    raise EmbeddingProviderError(
                        f"Gemini embedding returned status {response.status}: {body[:200]}")
                data = await response.json()
        except asyncio.TimeoutError as e:
            raise EmbeddingTimeout(f"Gemini embedding timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise EmbeddingProviderError(f"Gemini embedding request failed: {e}") from e
        except ValueError as e:
            # json.JSONDecodeError on a malformed body
            raise EmbeddingProviderError(f"Gemini embedding response is not valid JSON: {e}") from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        values = embedding.get("values") if isinstance(embedding, dict) else None
        if not values or not isinstance(values, list):
            raise EmbeddingProviderError("Gemini embedding response has no values")
        try:
            return [float(v) for v in values]
        except (TypeError, ValueError) as e:
            raise EmbeddingProviderError(f"Gemini embedding values are not numeric: {e}") from e

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers model, run off the event loop"""

    name = "sentence_transformers"

    def __init__(self, model_name: str = LOCAL_EMBEDDING_MODEL):
        self.model_name = model_name
        self.model_id = model_name
        try:
            self.model = SentenceTransformer(model_name)
            self.dimension = self.model.get_sentence_embedding_dimension()
            self.model_loaded = True
        except Exception as e:
            get_logger().warning("embedding_model_unavailable",
                                 model=model_name, error=str(e))
            self.model = None
            self.model_loaded = False

    @property
    def is_available(self) -> bool:
        return self.model_loaded

    def _encode(self, text: str) -> List[float]:
        vector = self.model.encode([text], normalize_embeddings=True)[0]
        return [float(v) for v in vector]

    async def embed(self, text: str) -> List[float]:
        if not self.model_loaded:
            raise EmbeddingProviderError(f"Model {self.model_name} is not loaded")
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._encode, text)
        except Exception as e:
            raise EmbeddingProviderError(f"Local embedding failed: {e}") from e


def create_embedding_provider(config) -> EmbeddingProvider:
    """
    Build the provider named by embedding.provider in config

    Args:
        config: Config instance

    Returns:
        EmbeddingProvider (NullEmbeddingProvider for 'none' or unknown names)
    """
    provider = str(config.embedding_provider).lower()
    if provider == "gemini":
        return GeminiEmbeddingProvider(
            api_key=config.gemini_api_key,
            model=config.embedding_model,
            timeout=config.embedding_timeout,
            dimension=config.embedding_dimension or GEMINI_EMBEDDING_DIMENSION,
        )
    if provider == "sentence_transformers":
        model = config.embedding_model
        if model == GEMINI_EMBEDDING_MODEL:
            model = LOCAL_EMBEDDING_MODEL
        return SentenceTransformerEmbeddingProvider(model_name=model)
    if provider != "none":
        get_logger().warning("unknown_embedding_provider", provider=provider)
    return NullEmbeddingProvider()
