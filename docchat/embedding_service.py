import asyncio
from typing import List, Optional
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from sentence_transformers import SentenceTransformer
import openai
from openai import AsyncOpenAI
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from .config import get_settings

settings = get_settings()


@dataclass
class EmbeddingResult:
    embeddings: List[List[float]]
    model_name: str
    dimension: int
    processing_time: float


def is_quota_error(error: BaseException) -> bool:
    """OpenAI signals exhausted quota and rate limiting with HTTP 429"""
    if isinstance(error, openai.RateLimitError):
        return True
    return getattr(error, "status_code", None) == 429


def is_transient_error(error: BaseException) -> bool:
    if is_quota_error(error):
        return False
    return isinstance(error, (
        openai.APIConnectionError,
        openai.APITimeoutError,
        openai.InternalServerError,
    ))


class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers"""

    @abstractmethod
    async def encode(self, texts: List[str]) -> EmbeddingResult:
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        pass

    @abstractmethod
    def get_model_name(self) -> str:
        pass


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI embedding provider with bounded concurrency and retry logic"""

    dimensions = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, client: AsyncOpenAI = None):
        if client is None and not settings.openai_api_key:
            raise ValueError("OpenAI API key is required")

        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)
        self.model_name = settings.openai_embedding_model
        self._dimension = self.dimensions.get(self.model_name, settings.index_dimension)
        self._semaphore = asyncio.Semaphore(settings.embedding_max_concurrency)

    @retry(
        retry=retry_if_exception(is_transient_error),
        stop=stop_after_attempt(settings.embedding_max_retries),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True
    )
    async def _encode_batch(self, batch_texts: List[str]) -> List[List[float]]:
        async with self._semaphore:
            response = await self.client.embeddings.create(
                input=batch_texts,
                model=self.model_name
            )
        return [item.embedding for item in response.data]

    async def encode(self, texts: List[str]) -> EmbeddingResult:
        start_time = asyncio.get_running_loop().time()

        try:
            # Process in batches to avoid token limits
            batch_size = settings.batch_size
            batches = [texts[i:i + batch_size] for i in range(0, len(texts), batch_size)]
            batch_results = await asyncio.gather(*(self._encode_batch(b) for b in batches))

            all_embeddings = [emb for batch in batch_results for emb in batch]
            processing_time = asyncio.get_running_loop().time() - start_time

            return EmbeddingResult(
                embeddings=all_embeddings,
                model_name=self.model_name,
                dimension=self._dimension,
                processing_time=processing_time
            )

        except Exception as e:
            logger.error(f"OpenAI embedding failed: {e}")
            raise

    def get_dimension(self) -> int:
        return self._dimension

    def get_model_name(self) -> str:
        return self.model_name


class HuggingFaceEmbeddingProvider(BaseEmbeddingProvider):
    """Local sentence-transformers model, loaded on first use and run off the event loop"""

    known_dimensions = {
        "sentence-transformers/all-MiniLM-L6-v2": 384,
        "sentence-transformers/all-MiniLM-L12-v2": 384,
        "sentence-transformers/all-mpnet-base-v2": 768,
    }

    def __init__(self, model_name: str = None):
        self.model_name = model_name or settings.embedding_model
        self.model: Optional[SentenceTransformer] = None
        self._dimension = self.known_dimensions.get(self.model_name)
        self._load_lock = asyncio.Lock()

    async def _ensure_model(self) -> SentenceTransformer:
        async with self._load_lock:
            if self.model is None:
                logger.info(f"Loading embedding model: {self.model_name}")
                loop = asyncio.get_running_loop()
                self.model = await loop.run_in_executor(None, SentenceTransformer, self.model_name)
                self._dimension = self.model.get_sentence_embedding_dimension()
        return self.model

    async def encode(self, texts: List[str]) -> EmbeddingResult:
        model = await self._ensure_model()
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        # Unit-length vectors
        encode = partial(
            model.encode,
            texts,
            batch_size=settings.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False
        )
        try:
            vectors = await loop.run_in_executor(None, encode)
        except Exception as e:
            logger.error(f"Local embedding with {self.model_name} failed: {e}")
            raise

        return EmbeddingResult(
            embeddings=vectors.tolist(),
            model_name=self.model_name,
            dimension=self._dimension,
            processing_time=loop.time() - start_time
        )

    def get_dimension(self) -> int:
        if self._dimension is None:
            raise ValueError(f"Dimension of {self.model_name} is unknown until the model is loaded")
        return self._dimension

    def get_model_name(self) -> str:
        return self.model_name


class EmbeddingService:
    """Embedding service backed by the configured provider"""

    def __init__(self, provider: Optional[BaseEmbeddingProvider] = None):
        self._provider = provider

    @property
    def provider(self) -> BaseEmbeddingProvider:
        if self._provider is None:
            self._provider = self._create_provider(settings.embedding_provider)
            logger.info(f"Embedding provider initialized: {self._provider.get_model_name()}")
        return self._provider

    def _create_provider(self, name: str) -> BaseEmbeddingProvider:
        """Create provider based on configuration"""
        if name.lower() == "openai":
            return OpenAIEmbeddingProvider()
        elif name.lower() == "huggingface":
            return HuggingFaceEmbeddingProvider()
        else:
            raise ValueError(f"Unsupported embedding provider: {name}")

    async def encode_texts(self, texts: List[str]) -> EmbeddingResult:
        if not texts:
            return EmbeddingResult([], self.get_model_name(), self.get_dimension(), 0.0)

        logger.debug(f"Encoding {len(texts)} texts with {self.get_model_name()}")
        return await self.provider.encode(texts)

    async def encode_query(self, query: str) -> List[float]:
        """Encode single query text"""
        result = await self.encode_texts([query])
        return result.embeddings[0] if result.embeddings else []

    async def encode_documents(self, documents: List[str]) -> List[List[float]]:
        """Encode multiple documents"""
        result = await self.encode_texts(documents)
        return result.embeddings

    def get_dimension(self) -> int:
        return self.provider.get_dimension()

    def get_model_name(self) -> str:
        return self.provider.get_model_name()


# Global embedding service instance
embedding_service = EmbeddingService()
