# infrastructure/embedding_services.py
"""Embedding generation with L2 normalization for consistent similarity scoring"""
import asyncio
import logging
import numpy as np
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar
from sentence_transformers import SentenceTransformer

from core.exceptions import EmbeddingUnavailable, ValidationError
from core.interfaces import IEmbeddingService
from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

T = TypeVar("T")


class LazyResource(Generic[T]):
    """
    Single-flight lazy initializer.

    The first caller of get() runs the loader; concurrent callers wait on the
    same lock and receive the same instance. A failed load is not cached, so
    the next get() retries.
    """

    def __init__(self, loader: Callable[[], Awaitable[T]], name: str = "resource"):
        self._loader = loader
        self._name = name
        self._value: Optional[T] = None
        self._lock = asyncio.Lock()
        self.load_count = 0

    @property
    def loaded(self) -> bool:
        return self._value is not None

    async def get(self) -> T:
        if self._value is not None:
            return self._value
        async with self._lock:
            if self._value is None:
                self.load_count += 1
                logger.info(f"[LAZY] Loading {self._name} (attempt {self.load_count})")
                self._value = await self._loader()
        return self._value


def _load_sentence_transformer(model_name: str) -> SentenceTransformer:
    """Prefer the local cache, fall back to downloading."""
    try:
        logger.info(f"Attempting to load model {model_name} from local cache...")
        model = SentenceTransformer(model_name, local_files_only=True)
        logger.info(f"Successfully loaded {model_name} from local cache.")
    except Exception as e:
        logger.warning(
            f"Model {model_name} not found in cache. Attempting online download. "
            f"This may take a few minutes. Error: {e}"
        )
        model = SentenceTransformer(model_name)
        logger.info(f"Successfully downloaded and loaded {model_name}.")
    return model


class SentenceTransformerEmbedding(IEmbeddingService):
    """
    Sentence transformer producing unit-length vectors.

    With L2-normalized vectors cosine similarity equals the dot product, which
    is what both the ANN index and the exact fallback in the chunk store rely on.
    """

    def __init__(
        self,
        model_name: str = settings.EMBEDDING_MODEL_NAME,
        dimension: int = settings.EMBEDDING_DIMENSION,
        timeout_sec: float = settings.EMBEDDING_TIMEOUT_SEC,
        loader: Optional[Callable[[str], Any]] = None,
    ):
        self._model_name = model_name
        self._dimension = dimension
        self._timeout_sec = timeout_sec
        load_fn = loader or _load_sentence_transformer

        async def _load() -> Any:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(load_fn, model_name), timeout=self._timeout_sec
                )
            except asyncio.TimeoutError as e:
                raise EmbeddingUnavailable(f"Loading {model_name} timed out") from e
            except Exception as e:
                logger.error(f"[EMBED] Failed to load {model_name}: {e}")
                raise EmbeddingUnavailable(f"Embedding model {model_name} unavailable") from e

        self._model = LazyResource(_load, name=f"embedding model {model_name}")

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def loaded(self) -> bool:
        return self._model.loaded

    async def warm_up(self) -> None:
        """Load the model ahead of the first request."""
        await self._model.get()

    def _l2_normalize(self, arr: np.ndarray) -> np.ndarray:
        """
        L2 normalize vectors to unit length (||v|| = 1).

        Args:
            arr: (N, D) array of N vectors with D dimensions

        Returns:
            (N, D) array of unit-normalized vectors
        """
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms[norms == 0] = 1e-12  # Avoid division by zero
        return arr / norms

    async def _encode(self, texts: List[str]) -> np.ndarray:
        model = await self._model.get()
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(model.encode, texts, convert_to_tensor=False),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingUnavailable(f"Embedding timed out after {self._timeout_sec}s") from e
        except Exception as e:
            logger.error(f"[EMBED] Encoding failed: {e}")
            raise EmbeddingUnavailable("Embedding generation failed") from e

        arr = np.array(raw, dtype="float32").reshape(len(texts), -1)
        if arr.shape[1] != self._dimension:
            raise EmbeddingUnavailable(
                f"Model produced {arr.shape[1]}-dim vectors, expected {self._dimension}"
            )
        return self._l2_normalize(arr)

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text")
        normalized = await self._encode([text.strip()])
        return normalized[0].tolist()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise ValidationError("Cannot embed empty text")
        normalized = await self._encode(list(texts))
        logger.debug(f"[EMBED] Generated {len(texts)} embeddings")
        return normalized.tolist()
