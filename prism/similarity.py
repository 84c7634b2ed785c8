from __future__ import annotations

import logging
import threading
from typing import Dict, List, Sequence

import numpy as np

from .errors import DimensionMismatch, EmptyResult
from .llm.service import GenerativeService

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two embeddings, clipped to [0, 1].

    Zero-magnitude input scores 0.0. Negative similarity is clipped to 0.0 because
    the search maximises this value.

    Raises:
        DimensionMismatch: if the vectors differ in length.
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise DimensionMismatch(f"Vector dimensions do not match: {va.shape} vs {vb.shape}")
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    sim = float(np.dot(va, vb) / (na * nb))
    return min(1.0, max(0.0, sim))


class ImageSimilarity:
    """Scores two images through the service: describe -> embed -> cosine."""

    def __init__(self, service: GenerativeService) -> None:
        self.service = service
        self._reference_cache: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def _describe(self, image_path: str) -> str:
        # services with a dedicated caption call skip prompt extraction and refusal checks
        caption = getattr(self.service, "caption_image", None)
        if caption is not None:
            return caption(image_path)
        return self.service.describe_image(image_path)

    def embed_image(self, image_path: str) -> List[float]:
        description = self._describe(image_path)
        vector = list(self.service.embed(description))
        if not vector:
            raise EmptyResult(f"empty embedding for {image_path}")
        return vector

    def _reference_embedding(self, reference: str) -> List[float]:
        with self._lock:
            cached = self._reference_cache.get(reference)
        if cached is not None:
            return cached
        vector = self.embed_image(reference)
        with self._lock:
            self._reference_cache.setdefault(reference, vector)
        return vector

    def compare(self, reference: str, generated: str) -> float:
        score = cosine_similarity(self._reference_embedding(reference), self.embed_image(generated))
        logger.debug(f"similarity {reference} vs {generated}: {score:.4f}")
        return score
