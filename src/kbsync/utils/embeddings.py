import os
from typing import Callable, List, Optional

from dotenv import load_dotenv
from fastembed import TextEmbedding

from kbsync.config import settings
from kbsync.core.errors import EmbeddingError
from kbsync.core.logging import get_logger

logger = get_logger(__name__)

load_dotenv()

DEFAULT_EMBEDDING_MODEL = "BAAI/bge-small-en-v1.5"

# Factory used to create or return the embedding service singleton. This indirection
# allows tests to swap in mocks without loading a model at import time.
_embedding_service_factory: Callable[[Optional[str]], "EmbeddingService"]


class EmbeddingService:
    """
    Unified embedding service supporting both FastEmbed (local) and OpenAI (API).

    Automatically detects provider based on model name:
    - OpenAI models: text-embedding-3-small, text-embedding-3-large, text-embedding-ada-002
    - FastEmbed models: BAAI/bge-*, snowflake/*, mixedbread-ai/*, etc.
    """
    _instances = {}

    def __new__(cls, model: Optional[str] = None):
        embedding_model = model or settings.embedding_model or DEFAULT_EMBEDDING_MODEL

        if embedding_model not in cls._instances:
            instance = super().__new__(cls)
            instance._initialize(embedding_model)
            cls._instances[embedding_model] = instance

        return cls._instances[embedding_model]

    def _initialize(self, model: str):
        self.model = model

        if model.startswith("text-embedding-"):
            self.provider = "openai"
            self._init_openai(model)
        else:
            self.provider = "fastembed"
            self._init_fastembed(model)

    def _init_fastembed(self, model: str):
        """Initialize FastEmbed (local, free)."""
        self.embeddings = TextEmbedding(model_name=model)
        logger.info("embedding_service_initialized", provider="fastembed", model=model)

    def _init_openai(self, model: str):
        """Initialize OpenAI API (requires API key)."""
        from openai import OpenAI

        api_key = settings.openai_api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY environment variable not set. "
                "Please set it in your .env file."
            )

        self.client = OpenAI(api_key=api_key, timeout=settings.embedding_timeout_seconds)
        logger.info("embedding_service_initialized", provider="openai", model=model)

    def embed_query(self, text: str) -> List[float]:
        """Embed a single query string."""
        if self.provider == "openai":
            return self._embed_openai([text])[0]
        # FastEmbed returns a generator of numpy arrays
        return list(self.embeddings.embed([text]))[0].tolist()

    def embed(self, text: str) -> List[float]:
        """
        Embed one chunk of text.

        Raises:
            EmbeddingError: the provider failed or returned an empty vector.
        """
        try:
            vector = self.embed_query(text)
        except Exception as e:
            raise EmbeddingError(f"{self.provider} embedding failed: {e}") from e

        if not vector:
            raise EmbeddingError(f"{self.provider} returned an empty embedding")
        return vector

    async def embed_async(self, text: str) -> List[float]:
        """Async wrapper for embed (for pipeline compatibility)."""
        return self.embed(text)

    def _embed_openai(self, texts: List[str]) -> List[List[float]]:
        response = self.client.embeddings.create(
            model=self.model,
            input=texts,
            encoding_format="float",
        )
        embeddings = [item.embedding for item in response.data]

        logger.debug(
            "openai_embedding_created",
            texts=len(texts),
            dimensions=len(embeddings[0]) if embeddings else 0,
        )
        return embeddings


def set_embedding_service_factory(factory: Callable[[Optional[str]], "EmbeddingService"]):
    """Override the factory used to create EmbeddingService instances."""
    global _embedding_service_factory
    _embedding_service_factory = factory


def reset_embedding_service_singleton():
    """Reset the singleton instances (useful for tests)."""
    EmbeddingService._instances = {}


def reset_embedding_service_factory():
    """Reset the embedding service factory to the default singleton creator."""
    set_embedding_service_factory(EmbeddingService)


def get_embedding_service(embedding_model: Optional[str] = None) -> EmbeddingService:
    """Get the embedding service via the current factory."""
    return _embedding_service_factory(embedding_model)


# Initialize the default factory
reset_embedding_service_factory()
