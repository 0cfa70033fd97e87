"""
Embedding provider client and vector helpers

The embedding model is an external, fallible and possibly slow service.
Every call carries an explicit timeout; callers treat any
``EmbeddingProviderError`` as a degraded run and continue with
deterministic retrieval.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import numpy as np
import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from inbox_matcher.text_utils import extract_domain, sanitize_for_logging

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-004"
DEFAULT_DIMENSIONS = 768


class EmbeddingProviderError(Exception):
    """Raised when the provider is unreachable, times out or returns garbage."""
    pass


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> Optional[float]:
    """
    Cosine similarity of two vectors, floored at 0.

    Returns None when either vector is missing, empty, zero-length or the
    dimensions differ, so the embedding signal is simply left out.
    """
    if a is None or b is None:
        return None
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or va.shape != vb.shape:
        return None
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0 or not np.isfinite(norm):
        return None
    similarity = float(np.dot(va, vb) / norm)
    if not np.isfinite(similarity):
        return None
    return min(1.0, max(0.0, similarity))


# ============================================
# TEXT PREPARATION
# ============================================

def _join_parts(parts: List[Optional[str]]) -> str:
    text = " ".join(p.strip() for p in parts if p and p.strip())
    return text or "unknown"


def prepare_document_text(document: Any) -> str:
    """Text embedded for a document: sender/display name, website host, description."""
    return _join_parts([
        getattr(document, 'display_name', None),
        getattr(document, 'counterparty_name', None),
        extract_domain(getattr(document, 'website', None)),
        getattr(document, 'description', None),
    ])


def prepare_transaction_text(transaction: Any) -> str:
    """Text embedded for a transaction: counterparty and description."""
    return _join_parts([
        getattr(transaction, 'counterparty_name', None),
        getattr(transaction, 'description', None),
    ])


# ============================================
# PROVIDERS
# ============================================

class EmbeddingProvider(ABC):
    """Interface to the external text embedding model."""

    model: str = DEFAULT_MODEL

    @abstractmethod
    def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        """Return the embedding vector for ``text``.

        Raises:
            EmbeddingProviderError: on any failure, including timeouts
        """


def _extract_vector(body: Any) -> Any:
    """Vector from ``{"embedding": [...]}`` or ``{"data": [{"embedding": [...]}]}``."""
    if not isinstance(body, dict):
        raise EmbeddingProviderError(f"Embedding response is a {type(body).__name__}, expected an object")
    if "embedding" in body:
        return body["embedding"]
    data = body.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise EmbeddingProviderError("Embedding response did not contain a vector")
    return data[0].get("embedding")


class HttpEmbeddingProvider(EmbeddingProvider):
    """
    JSON-over-HTTP embedding client.

    Sends ``{"model": ..., "input": ...}`` and accepts either
    ``{"embedding": [...]}`` or ``{"data": [{"embedding": [...]}]}``.
    Connection errors and timeouts are retried a bounded number of times.
    """

    def __init__(
        self,
        url: str,
        model: str = DEFAULT_MODEL,
        dimensions: int = DEFAULT_DIMENSIONS,
        timeout: float = 5.0,
        max_retries: int = 2,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        if not url:
            raise ValueError("Embedding provider URL is required")
        self.url = url
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.max_retries = max_retries
        self.api_key = api_key
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> 'HttpEmbeddingProvider':
        cfg = config.embedding
        return cls(
            url=cfg.provider_url,
            model=cfg.model,
            dimensions=cfg.dimensions,
            timeout=cfg.timeout_seconds,
            max_retries=cfg.max_retries,
            api_key=os.getenv(cfg.api_key_env),
        )

    def _post(self, payload: dict) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        send = retry(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(self._session.post)
        return send(self.url, json=payload, headers=headers, timeout=self.timeout)

    def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        model = model or self.model
        try:
            response = self._post({"model": model, "input": text})
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as e:
            raise EmbeddingProviderError(f"Embedding request timed out after {self.timeout}s") from e
        except (requests.RequestException, ValueError) as e:
            raise EmbeddingProviderError(
                f"Embedding request failed: {sanitize_for_logging(str(e))}"
            ) from e

        vector = _extract_vector(body)
        if not isinstance(vector, list) or not vector:
            raise EmbeddingProviderError("Embedding response did not contain a vector")
        if self.dimensions and len(vector) != self.dimensions:
            raise EmbeddingProviderError(
                f"Expected {self.dimensions} dimensions, got {len(vector)}"
            )
        try:
            values = [float(v) for v in vector]
        except (TypeError, ValueError) as e:
            raise EmbeddingProviderError("Embedding vector contains non-numeric values") from e
        if not np.all(np.isfinite(values)):
            raise EmbeddingProviderError("Embedding vector contains non-finite values")
        return values
