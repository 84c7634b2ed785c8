from __future__ import annotations

from typing import Optional, Protocol, Sequence

from ..state import HistoryEntry


class GenerativeService(Protocol):
    """What the search needs from an image/vision/embedding provider."""

    def describe_image(self, image: str) -> str:
        ...

    def generate_image(self, prompt: str, out_path: str) -> str:
        ...

    def refine_prompt(
        self,
        current_prompt: str,
        reference_image: str,
        generated_image: str,
        score: float,
        iteration: int,
        history: Optional[Sequence[HistoryEntry]] = None,
    ) -> str:
        ...

    def embed(self, text: str) -> Sequence[float]:
        ...


class Scorer(Protocol):
    def compare(self, reference: str, generated: str) -> float:
        ...
