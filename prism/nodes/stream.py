from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from ..errors import DimensionMismatch
from ..llm.service import GenerativeService, Scorer
from ..state import HistoryEntry, Stream, StreamEvent, StreamStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickOutcome:
    stream: int
    entry: Optional[HistoryEntry] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RefineOutcome:
    stream: int
    prompt: str
    retried: Optional[str] = None
    error: Optional[str] = None


def artifact_path(output_dir: Path, iteration: int, stream: int) -> Path:
    return output_dir / f"generated_iter{iteration}_stream{stream}_{uuid.uuid4().hex[:12]}.png"


def run_tick(
    stream: int,
    prompt: str,
    reference: str,
    iteration: int,
    *,
    service: GenerativeService,
    scorer: Scorer,
    output_dir: Path,
    log: logging.Logger = logger,
) -> TickOutcome:
    """Generate one image for ``prompt`` and score it against ``reference``.

    Works on a snapshot (index, prompt) so it never touches shared state.
    Every failure becomes a failed outcome except DimensionMismatch, which
    means the embedding setup is broken and propagates.
    """
    out_path = artifact_path(output_dir, iteration, stream)
    log.debug(f"Generating image for stream {stream} (iteration {iteration}) -> {out_path}")
    try:
        generated = service.generate_image(prompt, str(out_path))
        score = scorer.compare(reference, generated)
    except DimensionMismatch:
        raise
    except Exception as e:
        log.error(f"Error processing stream {stream} in iteration {iteration}: {e}")
        return TickOutcome(stream=stream, error=str(e))

    log.info(f"In-iteration similarity: iteration={iteration} stream={stream} score={score:.4f}")
    return TickOutcome(
        stream=stream,
        entry=HistoryEntry(
            iteration=iteration,
            stream=stream,
            prompt=prompt,
            generated_image=generated,
            reference_image=reference,
            score=score,
        ),
    )


def apply_tick(stream: Stream, outcome: TickOutcome, iteration: int) -> None:
    if outcome.entry is not None:
        stream.history.append(outcome.entry)
        stream.status = StreamStatus.ITERATING
        stream.last_error = None
        return
    stream.status = StreamStatus.FAILED
    stream.last_error = outcome.error
    stream.events.append(StreamEvent(iteration=iteration, kind="tick_failed", message=outcome.error or ""))


def run_refine(
    entry: HistoryEntry,
    history: Sequence[HistoryEntry],
    *,
    service: GenerativeService,
    log: logging.Logger = logger,
) -> RefineOutcome:
    """Ask for a better prompt; retry once without history, then keep the old one."""
    try:
        prompt = service.refine_prompt(
            entry.prompt,
            entry.reference_image,
            entry.generated_image,
            entry.score,
            entry.iteration,
            history=list(history),
        )
        return RefineOutcome(stream=entry.stream, prompt=prompt)
    except Exception as e:
        log.warning(f"Failed to refine prompt with history for stream {entry.stream}, retrying without: {e}")
        first_error = str(e)

    try:
        prompt = service.refine_prompt(
            entry.prompt,
            entry.reference_image,
            entry.generated_image,
            entry.score,
            entry.iteration,
            history=None,
        )
        return RefineOutcome(stream=entry.stream, prompt=prompt, retried=first_error)
    except Exception as e:
        log.warning(f"Failed to refine prompt for stream {entry.stream}, keeping the current one: {e}")
        return RefineOutcome(stream=entry.stream, prompt=entry.prompt, retried=first_error, error=str(e))


def apply_refine(stream: Stream, outcome: RefineOutcome, iteration: int) -> None:
    stream.current_prompt = outcome.prompt
    if outcome.retried is not None:
        stream.events.append(StreamEvent(iteration=iteration, kind="refine_retried", message=outcome.retried))
    if outcome.error is not None:
        stream.events.append(StreamEvent(iteration=iteration, kind="refine_failed", message=outcome.error))
