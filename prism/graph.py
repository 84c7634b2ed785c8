from __future__ import annotations

import logging
import random
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar, Union

from .errors import ConfigurationError, NoUsableCandidates, TransportError
from .ledger import CandidateLedger
from .llm.refusal import RefusalClassifier
from .llm.service import GenerativeService, Scorer
from .logging_config import log_timer, preview
from .nodes import archive, bootstrap, rerank
from .nodes import stream as stream_node
from .similarity import ImageSimilarity
from .state import (
    Candidate,
    IterationRecord,
    RunResult,
    SearchConfig,
    StopReason,
    Stream,
    StreamStatus,
)

T = TypeVar("T")
R = TypeVar("R")

ReferenceInput = Union[str, Path, Sequence[Union[str, Path]]]


def normalize_references(references: ReferenceInput) -> Tuple[str, ...]:
    if isinstance(references, (str, Path)):
        refs = (str(references),)
    else:
        refs = tuple(str(r) for r in references)
    if not refs:
        raise ConfigurationError("At least one reference image is required")
    return refs


def _fan_out(
    fn: Callable[[T], R],
    items: Sequence[T],
    on_timeout: Callable[[T], R],
    *,
    max_workers: int,
    timeout: Optional[float],
) -> List[R]:
    """Run ``fn`` over ``items`` concurrently and join.

    Items still running after ``timeout`` are reported through ``on_timeout``;
    their workers are abandoned, not awaited. Exceptions raised by ``fn``
    propagate.

    With a timeout every item gets its own worker, so the deadline is measured
    from each item's start and nothing is reported as timed out while queued.
    """
    if not items:
        return []
    workers = len(items) if timeout is not None else min(len(items), max_workers)
    ex = ThreadPoolExecutor(max_workers=max(1, workers))
    pending = set()
    try:
        futures = [ex.submit(fn, item) for item in items]
        _, pending = wait(futures, timeout=timeout)
        results: List[R] = []
        for fut, item in zip(futures, items):
            if fut in pending:
                fut.cancel()
                results.append(on_timeout(item))
            else:
                results.append(fut.result())
        return results
    finally:
        ex.shutdown(wait=not pending, cancel_futures=True)


class SearchOrchestrator:
    """Runs the stream search for one reference set.

    Owns the streams, the candidate ledger and the best-ever tracker. All of
    them are mutated here only, after each fan-out has been joined.
    """

    def __init__(
        self,
        service: GenerativeService,
        scorer: Optional[Scorer] = None,
        *,
        logger: Optional[logging.Logger] = None,
        classifier: Optional[RefusalClassifier] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.service = service
        self.scorer = scorer or ImageSimilarity(service)
        self.log = logger or logging.getLogger(__name__)
        self.classifier = classifier or RefusalClassifier.strict()
        self.rng = rng or random.Random()
        self.ledger = CandidateLedger()
        self.streams: List[Stream] = []

    def _sample_reference(self, references: Sequence[str]) -> str:
        return self.rng.choice(references) if len(references) > 1 else references[0]

    def run(self, references: ReferenceInput, config: SearchConfig) -> RunResult:
        refs = normalize_references(references)
        out_dir = config.ensure_output_dir()
        self.log.info(
            f"PRISM execution started: references={list(refs)} max_iterations={config.max_iterations} "
            f"threshold={config.similarity_threshold} streams={config.stream_count}"
        )

        with log_timer(self.log, "PRISM execution"):
            streams, initial = bootstrap.run(self.service, refs, config, classifier=self.classifier, log=self.log)
            self.streams = streams
            trace: List[IterationRecord] = [initial]
            ledger = self.ledger = CandidateLedger()
            best: Optional[Candidate] = None
            stop_reason: StopReason = "exhausted"

            for iteration in range(1, config.max_iterations + 1):
                with log_timer(self.log, f"iteration {iteration}"):
                    record, iteration_best = self._tick_all(streams, refs, iteration, config, out_dir)
                trace.append(record)

                for entry in record.results:
                    candidate = Candidate.from_entry(entry)
                    ledger.add(candidate)
                    if best is None or candidate.in_iteration_score > best.in_iteration_score:
                        best = candidate
                        self.log.info(
                            f"New best result: iteration={iteration} stream={entry.stream} score={entry.score:.4f}"
                        )

                if iteration_best is not None and iteration_best >= config.similarity_threshold:
                    self.log.info(
                        f"Similarity threshold reached at iteration {iteration}: "
                        f"{iteration_best:.4f} >= {config.similarity_threshold}"
                    )
                    stop_reason = "threshold"
                    break
                if len(record.errors) >= config.stream_count:
                    self.log.warning(f"All streams failed in iteration {iteration}, stopping")
                    stop_reason = "all_failed"
                    break
                if iteration < config.max_iterations:
                    self._refine_all(streams, record, iteration, config)

            self._settle_statuses(streams, stop_reason)
            evaluations, winner = rerank.run(
                ledger,
                refs,
                config.stream_count,
                service=self.service,
                scorer=self.scorer,
                output_dir=out_dir,
                log=self.log,
            )

        if winner is not None:
            best_prompt, best_score, best_artifact = winner.prompt, winner.average_score, winner.artifact
        elif best is not None:
            best_prompt, best_score, best_artifact = best.prompt, best.in_iteration_score, best.artifact
        else:
            best_prompt, best_score, best_artifact = None, 0.0, None

        result = RunResult(
            best_prompt=best_prompt,
            best_score=best_score,
            best_artifact=best_artifact,
            trace=trace,
            final_evaluations=evaluations,
            stream_count=config.stream_count,
            stop_reason=stop_reason,
            threshold_reached=stop_reason == "threshold",
            references=refs,
        )
        self.log.info(
            f"PRISM execution completed: iterations={result.total_iterations} best_score={best_score:.4f} "
            f"stop_reason={stop_reason}"
        )
        return result

    def _tick_all(
        self,
        streams: List[Stream],
        refs: Sequence[str],
        iteration: int,
        config: SearchConfig,
        out_dir: Path,
    ) -> Tuple[IterationRecord, Optional[float]]:
        # snapshot prompts and sample references before any worker starts
        jobs = [(s.index, s.current_prompt, self._sample_reference(refs)) for s in streams]
        self.log.info(f"Starting iteration {iteration} with {len(jobs)} stream(s)")

        outcomes = _fan_out(
            lambda job: stream_node.run_tick(
                job[0], job[1], job[2], iteration,
                service=self.service, scorer=self.scorer, output_dir=out_dir, log=self.log,
            ),
            jobs,
            lambda job: stream_node.TickOutcome(
                stream=job[0], error=str(TransportError(f"stream tick timed out after {config.stream_timeout}s"))
            ),
            max_workers=config.concurrency,
            timeout=config.stream_timeout,
        )

        record = IterationRecord(iteration=iteration, kind="refined", prompts={j[0]: j[1] for j in jobs})
        for s, outcome in zip(streams, outcomes):
            stream_node.apply_tick(s, outcome, iteration)
            if outcome.entry is not None:
                record.results.append(outcome.entry)
            else:
                record.errors.append({"stream": s.index, "error": outcome.error or ""})
        if streams and len(record.errors) >= len(streams):
            record.kind = "error"

        scores = [e.score for e in record.results]
        return record, (max(scores) if scores else None)

    def _refine_all(self, streams: List[Stream], record: IterationRecord, iteration: int, config: SearchConfig) -> None:
        by_index = {s.index: s for s in streams}
        # each stream sees only its own earlier iterations
        jobs = [(entry, by_index[entry.stream].history_before(iteration)) for entry in record.results]
        self.log.debug(f"Refining prompts for {len(jobs)} stream(s) after iteration {iteration}")

        outcomes = _fan_out(
            lambda job: stream_node.run_refine(job[0], job[1], service=self.service, log=self.log),
            jobs,
            lambda job: stream_node.RefineOutcome(
                stream=job[0].stream, prompt=job[0].prompt, error=f"refinement timed out after {config.stream_timeout}s"
            ),
            max_workers=config.concurrency,
            timeout=config.stream_timeout,
        )
        for outcome in outcomes:
            stream_node.apply_refine(by_index[outcome.stream], outcome, iteration)
            if outcome.error is not None:
                record.refine_failures.append({"stream": outcome.stream, "error": outcome.error})
            else:
                self.log.debug(f"Stream {outcome.stream} prompt: {preview(outcome.prompt)}")

    @staticmethod
    def _settle_statuses(streams: List[Stream], stop_reason: StopReason) -> None:
        for s in streams:
            if stop_reason == "threshold":
                s.status = StreamStatus.CONVERGED
            elif stop_reason == "exhausted" and s.status is not StreamStatus.FAILED:
                s.status = StreamStatus.EXHAUSTED


def run_search(
    references: ReferenceInput,
    config: SearchConfig,
    service: GenerativeService,
    scorer: Optional[Scorer] = None,
    **kwargs,
) -> RunResult:
    return SearchOrchestrator(service, scorer, **kwargs).run(references, config)


def execute(
    reference_image: ReferenceInput,
    config: Optional[SearchConfig] = None,
    *,
    service: Optional[GenerativeService] = None,
    scorer: Optional[Scorer] = None,
    logger: Optional[logging.Logger] = None,
    rng: Optional[random.Random] = None,
    strict: bool = True,
    archive_outputs: bool = True,
) -> RunResult:
    """Run a full search and archive it under ``config.output_dir``.

    Raises:
        BootstrapFailure: the initial description failed or was refused.
        NoUsableCandidates: with ``strict``, when no candidate was produced.
    """
    config = config or SearchConfig.from_env()
    if service is None:
        from .llm.gemini import GeminiService

        service = GeminiService()
    result = SearchOrchestrator(service, scorer, logger=logger, rng=rng).run(reference_image, config)
    if archive_outputs:
        archive.run(result, config.output_dir)
    if strict and result.best_prompt is None:
        raise NoUsableCandidates(
            f"No usable candidate after {result.total_iterations} iteration(s) (stop reason: {result.stop_reason})"
        )
    return result
