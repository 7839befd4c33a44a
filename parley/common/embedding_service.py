"""
Embedding Service

Maps text to fixed-length vectors for knowledge retrieval.

Providers:
- google: Gemini embedContent / batchEmbedContents REST API (httpx)
- openai: OpenAI embeddings API (official SDK)

Dimensionality is constant per deployment; a vector of any other length is
treated as a failed request.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from .errors import EmbeddingError

logger = logging.getLogger("parley.common.embedding_service")

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = httpx.Timeout(60.0)


class EmbeddingService:
    """
    Embedding client for Parley.

    Missing credentials leave the service unavailable rather than failing at
    construction time, so the webhook can still acknowledge deliveries.
    """

    def __init__(
        self,
        provider: str = "google",
        model: str = "gemini-embedding-001",
        dimensions: Optional[int] = 3072,
        google_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize embedding service.

        Args:
            provider: "google" or "openai"
            model: Embedding model name
            dimensions: Expected vector length (None disables the check)
            google_api_key: Gemini API key
            openai_api_key: OpenAI API key
            http_client: Pre-built httpx client (tests inject a MockTransport)
        """
        self.provider = (provider or "google").lower()
        self.model = model
        self.dimensions = dimensions
        self._api_key: Optional[str] = None
        self._http: Optional[httpx.Client] = None
        self._openai = None

        if self.provider == "google":
            if not google_api_key:
                logger.info("google API key not provided, embedding service unavailable")
                return
            self._api_key = google_api_key
            self._http = http_client or httpx.Client(timeout=DEFAULT_TIMEOUT)
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("openai API key not provided, embedding service unavailable")
                return
            try:
                from openai import OpenAI

                self._openai = OpenAI(api_key=openai_api_key, timeout=60.0)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        logger.warning("Unsupported embedding provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._http is not None or self._openai is not None

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            One vector per input text, in input order
        """
        if not self.is_available:
            raise RuntimeError("Embedding service is not available")

        if not texts:
            return []

        if self.provider == "google":
            vectors = self._embed_gemini(texts)
        else:
            vectors = self._embed_openai(texts)

        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        for vector in vectors:
            self._check_dimensions(vector)
        return vectors

    def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        return self.embed([text])[0]

    def _embed_gemini(self, texts: List[str]) -> List[List[float]]:
        model_path = f"models/{self.model}"
        requests = []
        for text in texts:
            request = {"model": model_path, "content": {"parts": [{"text": text}]}}
            if self.dimensions:
                request["outputDimensionality"] = self.dimensions
            requests.append(request)

        url = f"{GEMINI_API_BASE}/{model_path}:batchEmbedContents"
        try:
            response = self._http.post(
                url,
                json={"requests": requests},
                headers={"x-goog-api-key": self._api_key},
            )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if response.is_error:
            raise EmbeddingError(
                f"Unexpected embedding response {response.status_code}: {response.text[:500]}"
            )

        try:
            data = response.json()
            return [list(item["values"]) for item in data["embeddings"]]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"Failed to parse embedding response: {e}") from e

    def _embed_openai(self, texts: List[str]) -> List[List[float]]:
        kwargs = {"model": self.model, "input": texts}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        try:
            response = self._openai.embeddings.create(**kwargs)
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    def _check_dimensions(self, vector: List[float]) -> None:
        if not vector:
            raise EmbeddingError("Embedding response contained an empty vector")
        if self.dimensions and len(vector) != self.dimensions:
            raise EmbeddingError(
                f"Vector dimension mismatch: expected {self.dimensions}, got {len(vector)}"
            )

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
