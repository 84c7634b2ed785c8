from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, TypedDict

from . import config as _cfg
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

TraceKind = Literal["initial", "refined", "error"]
StopReason = Literal["threshold", "exhausted", "all_failed"]


class StreamStatus(str, Enum):
    SEEDED = "seeded"
    ITERATING = "iterating"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


_ENV_FIELDS = {
    "max_iterations": "PRISM_MAX_ITERATIONS",
    "similarity_threshold": "PRISM_SIMILARITY_THRESHOLD",
    "stream_count": "PRISM_STREAM_COUNT",
    "output_dir": "PRISM_OUTPUT_DIR",
    "concurrency": "PRISM_CONCURRENCY",
}


@dataclass
class SearchConfig:
    max_iterations: int = _cfg.MAX_ITERATIONS
    similarity_threshold: float = _cfg.SIMILARITY_THRESHOLD
    stream_count: int = _cfg.STREAM_COUNT
    output_dir: Path = Path(_cfg.OUTPUT_DIR)
    diversify_streams: bool = False
    stream_timeout: Optional[float] = None
    concurrency: int = _cfg.CONCURRENCY

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        try:
            self._coerce()
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid search configuration: {e}") from e

    def _coerce(self) -> None:
        if int(self.max_iterations) < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")
        self.max_iterations = int(self.max_iterations)
        threshold = float(self.similarity_threshold)
        if not 0.0 <= threshold <= 1.0:
            raise ConfigurationError(f"similarity_threshold must be in [0, 1], got {threshold}")
        self.similarity_threshold = threshold
        if int(self.stream_count) < 1:
            logger.warning(f"stream_count must be at least 1 (got {self.stream_count}), using 1")
            self.stream_count = 1
        self.stream_count = int(self.stream_count)
        self.concurrency = max(1, int(self.concurrency))

    @classmethod
    def from_env(cls, **overrides: Any) -> "SearchConfig":
        """Build a config from the PRISM_* variables as they are set now.

        Unset variables fall back to the import-time defaults; ``overrides`` win over both.
        """
        values: Dict[str, Any] = {}
        for name, var in _ENV_FIELDS.items():
            raw = os.getenv(var)
            if raw is not None and raw.strip():
                values[name] = raw.strip()
        values.update(overrides)
        return cls(**values)

    def updated(self, **changes: Any) -> "SearchConfig":
        # replace() re-runs __post_init__, so changes are validated like a fresh config
        return dataclasses.replace(self, **changes)

    def ensure_output_dir(self) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir


@dataclass(frozen=True)
class HistoryEntry:
    iteration: int
    stream: int
    prompt: str
    generated_image: str
    reference_image: str
    score: float
    role: str = "user"


@dataclass(frozen=True)
class Candidate:
    prompt: str
    in_iteration_score: float
    artifact: Optional[str]
    source_iteration: int
    stream: int = 0

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "Candidate":
        return cls(
            prompt=entry.prompt,
            in_iteration_score=entry.score,
            artifact=entry.generated_image,
            source_iteration=entry.iteration,
            stream=entry.stream,
        )


@dataclass(frozen=True)
class StreamEvent:
    iteration: int
    kind: Literal["refine_failed", "refine_retried", "tick_failed"]
    message: str


@dataclass
class Stream:
    index: int
    current_prompt: str
    history: List[HistoryEntry] = field(default_factory=list)
    status: StreamStatus = StreamStatus.SEEDED
    last_error: Optional[str] = None
    events: List[StreamEvent] = field(default_factory=list)

    def history_before(self, iteration: int) -> List[HistoryEntry]:
        return [h for h in self.history if h.iteration < iteration]


class StreamError(TypedDict):
    stream: int
    error: str


@dataclass
class IterationRecord:
    iteration: int
    kind: TraceKind
    prompts: Dict[int, str] = field(default_factory=dict)
    results: List[HistoryEntry] = field(default_factory=list)
    errors: List[StreamError] = field(default_factory=list)
    refine_failures: List[StreamError] = field(default_factory=list)


class ReferenceScore(TypedDict):
    reference_image: str
    score: float


@dataclass
class FinalEvaluation:
    prompt: str
    total_score: float
    average_score: float
    breakdown: List[ReferenceScore]
    artifact: Optional[str]
    source_iteration: int
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def evaluable(self) -> bool:
        return bool(self.breakdown)


@dataclass
class RunResult:
    best_prompt: Optional[str]
    best_score: float
    best_artifact: Optional[str]
    trace: List[IterationRecord]
    final_evaluations: List[FinalEvaluation]
    stream_count: int
    stop_reason: StopReason
    threshold_reached: bool
    references: Tuple[str, ...] = ()

    @property
    def total_iterations(self) -> int:
        # iteration 0 is the bootstrap record
        return sum(1 for rec in self.trace if rec.iteration > 0)

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["total_iterations"] = self.total_iterations
        return data
