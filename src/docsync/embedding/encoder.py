"""Embedding providers.

Two interchangeable strategies produce fixed-dimension vectors for chunk
text: a local sentence-transformers model and a remote OpenAI-compatible
embeddings API. Both are selected from :class:`EmbeddingSettings`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import sys
import threading
from dataclasses import asdict, dataclass
from typing import Iterable, Literal, Sequence

import httpx
import numpy as np
from sentence_transformers import SentenceTransformer

from docsync.errors import (
    DimensionMismatch,
    InvalidCredentials,
    ProviderResponseError,
    ProviderUnavailable,
)

DEFAULT_MODEL = "sentence-transformers/all-mpnet-base-v2"
DEFAULT_REMOTE_MODEL = "text-embedding-3-large"
DEFAULT_REMOTE_DIMENSION = 3072
DEFAULT_REMOTE_URL = "https://api.openai.com/v1"

_PROVIDER_ALIASES = {
    "local": "local",
    "local-minilm": "local",
    "local-e5": "local",
    "local-e5-large": "local",
    "remote": "remote",
    "openai": "remote",
}

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingSettings:
    provider: Literal["local", "remote"] = "local"
    model_name: str = DEFAULT_MODEL
    dimension: int | None = None
    batch_size: int = 16
    timeout: float = 60.0
    max_retries: int = 3
    retry_backoff: float = 1.0
    base_url: str = DEFAULT_REMOTE_URL
    api_key_env: str = "OPENAI_API_KEY"
    backend: Literal["torch", "onnx", "openvino"] | None = None
    device: str | None = None

    def __post_init__(self) -> None:
        provider = _PROVIDER_ALIASES.get(str(self.provider).lower())
        if provider is None:
            raise ValueError(f"Unknown embedding provider: {self.provider!r}")
        self.provider = provider  # type: ignore[assignment]
        if provider == "remote":
            if self.model_name == DEFAULT_MODEL:
                self.model_name = DEFAULT_REMOTE_MODEL
            if self.dimension is None:
                self.dimension = DEFAULT_REMOTE_DIMENSION

    @property
    def provider_id(self) -> str:
        return f"{self.provider}:{self.model_name}"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EmbeddingSettings":
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        return cls(**known)


def detect_optimal_backend() -> Literal["torch", "onnx"]:
    """Prefer ONNX Runtime where it is installed, PyTorch otherwise."""
    try:
        import onnxruntime as ort

        providers = ort.get_available_providers()
    except ImportError:
        logger.info("ONNX not available, using PyTorch backend on %s", sys.platform)
        return "torch"

    if sys.platform == "darwin" and platform.machine() == "arm64":
        logger.info("Detected Apple Silicon - using ONNX backend")
    else:
        logger.info("Using ONNX backend (providers: %s)", ", ".join(providers))
    return "onnx"


class EmbeddingProvider:
    """Strategy interface: batch of texts in, batch of vectors out."""

    settings: EmbeddingSettings

    @property
    def provider_id(self) -> str:
        return self.settings.provider_id

    @property
    def batch_size(self) -> int:
        return max(1, self.settings.batch_size)

    def dimension(self) -> int:
        raise NotImplementedError

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        raise NotImplementedError

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]

    def close(self) -> None:
        pass


class LocalEmbeddingProvider(EmbeddingProvider):
    """Sentence-transformers model loaded on first use.

    Loading failures (model not downloaded, broken backend) surface as
    :class:`ProviderUnavailable` so a sync run can retry or record them.
    """

    def __init__(self, settings: EmbeddingSettings | None = None) -> None:
        self.settings = settings or EmbeddingSettings()
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        with self._lock:
            if self._model is not None:
                return self._model
            backend = self.settings.backend or detect_optimal_backend()
            try:
                self._model = SentenceTransformer(
                    self.settings.model_name, backend=backend, device=self.settings.device
                )
            except Exception as exc:
                if backend == "torch":
                    raise ProviderUnavailable(
                        f"Cannot load embedding model {self.settings.model_name}: {exc}"
                    ) from exc
                logger.warning(
                    "Failed to load model with backend '%s': %s. Falling back to PyTorch.",
                    backend,
                    exc,
                )
                try:
                    self._model = SentenceTransformer(
                        self.settings.model_name, backend="torch", device=self.settings.device
                    )
                except Exception as fallback_exc:
                    raise ProviderUnavailable(
                        f"Cannot load embedding model {self.settings.model_name}: {fallback_exc}"
                    ) from fallback_exc
            logger.info("Loaded embedding model %s", self.settings.model_name)
            return self._model

    def dimension(self) -> int:
        if self.settings.dimension is None:
            model = self._load_model()
            self.settings.dimension = int(model.get_sentence_embedding_dimension())
        return self.settings.dimension

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32, L2-normalised embeddings for input texts."""
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension()), dtype="float32")
        model = self._load_model()
        embeddings = model.encode(
            sentences,
            batch_size=self.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return embeddings.astype("float32", copy=False)


class RemoteEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` endpoint over httpx."""

    def __init__(
        self, settings: EmbeddingSettings, *, client: httpx.Client | None = None
    ) -> None:
        self.settings = settings
        self._client = client or httpx.Client(timeout=settings.timeout)
        self._owns_client = client is None

    def dimension(self) -> int:
        assert self.settings.dimension is not None
        return self.settings.dimension

    def _api_key(self) -> str:
        key = os.environ.get(self.settings.api_key_env, "")
        if not key:
            raise InvalidCredentials(
                f"Environment variable {self.settings.api_key_env} is not set"
            )
        return key

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        inputs = list(texts)
        if not inputs:
            return np.zeros((0, self.dimension()), dtype="float32")

        payload = {"model": self.settings.model_name, "input": inputs}
        if self.settings.model_name.startswith("text-embedding-3"):
            payload["dimensions"] = self.dimension()
        try:
            response = self._client.post(
                f"{self.settings.base_url.rstrip('/')}/embeddings",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key()}"},
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"Embedding API unreachable: {exc}") from exc

        if response.status_code == 401:
            raise InvalidCredentials("Embedding API rejected the API key")
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"Embedding API returned HTTP {response.status_code}")
        if response.is_error:
            raise ProviderResponseError(
                f"Embedding API returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = sorted(response.json().get("data", []), key=lambda item: item.get("index", 0))
        except (ValueError, AttributeError, TypeError) as exc:
            raise ProviderResponseError(f"Embedding API returned a malformed payload: {exc}") from exc
        if len(data) != len(inputs):
            raise ProviderUnavailable(
                f"Embedding API returned {len(data)} vectors for {len(inputs)} inputs"
            )
        try:
            vectors = np.asarray([item["embedding"] for item in data], dtype="float32")
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderResponseError(f"Embedding API returned malformed vectors: {exc}") from exc
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return vectors / norms

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def create_embedding_provider(settings: EmbeddingSettings) -> EmbeddingProvider:
    """Select the provider strategy for a profile."""
    if settings.provider == "remote":
        return RemoteEmbeddingProvider(settings)
    return LocalEmbeddingProvider(settings)


async def embed_with_retry(
    provider: EmbeddingProvider,
    texts: Sequence[str],
    *,
    timeout: float | None = None,
    max_retries: int | None = None,
    backoff: float | None = None,
) -> np.ndarray:
    """Embed ``texts`` in provider-sized batches off the event loop.

    Each call is bounded by ``timeout``; timeouts and
    :class:`ProviderUnavailable` are retried with exponential backoff up to
    ``max_retries`` times before the last error is raised.
    """
    settings = provider.settings
    timeout = settings.timeout if timeout is None else timeout
    max_retries = settings.max_retries if max_retries is None else max_retries
    backoff = settings.retry_backoff if backoff is None else backoff
    expected = provider.dimension()

    batches = []
    for start in range(0, len(texts), provider.batch_size):
        batch = list(texts[start : start + provider.batch_size])
        attempt = 0
        while True:
            try:
                vectors = await asyncio.wait_for(asyncio.to_thread(provider.embed, batch), timeout)
                break
            except (ProviderUnavailable, asyncio.TimeoutError) as exc:
                if attempt >= max_retries:
                    if isinstance(exc, asyncio.TimeoutError):
                        raise ProviderUnavailable(
                            f"Embedding call timed out after {timeout:.0f}s"
                        ) from exc
                    raise
                delay = backoff * (2**attempt)
                attempt += 1
                logger.warning(
                    "Embedding attempt %d failed (%s), retrying in %.1fs", attempt, exc, delay
                )
                await asyncio.sleep(delay)
        if vectors.ndim != 2 or vectors.shape[1] != expected:
            raise DimensionMismatch(expected, int(vectors.shape[-1]))
        batches.append(vectors)

    if not batches:
        return np.zeros((0, expected), dtype="float32")
    return np.vstack(batches).astype("float32", copy=False)
