from __future__ import annotations

from typing import Iterable, Iterator, List

from .state import Candidate


class CandidateLedger:
    """Every candidate of a run, in insertion order. Never pruned."""

    def __init__(self) -> None:
        self._items: List[Candidate] = []

    def add(self, candidate: Candidate) -> None:
        self._items.append(candidate)

    def extend(self, candidates: Iterable[Candidate]) -> None:
        for c in candidates:
            self.add(c)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(list(self._items))

    def top(self, k: int) -> List[Candidate]:
        """The k best by in-iteration score; ties keep insertion order."""
        if k <= 0:
            return []
        ranked = sorted(self._items, key=lambda c: c.in_iteration_score, reverse=True)
        return ranked[:k]

    def best(self) -> Candidate | None:
        top = self.top(1)
        return top[0] if top else None
