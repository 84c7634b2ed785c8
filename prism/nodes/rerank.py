from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..ledger import CandidateLedger
from ..llm.service import GenerativeService, Scorer
from ..logging_config import preview
from ..state import Candidate, FinalEvaluation, ReferenceScore

logger = logging.getLogger(__name__)

MAX_FINAL_CANDIDATES = 10


def final_candidate_count(stream_count: int, ledger_size: int) -> int:
    return min(2 * stream_count, MAX_FINAL_CANDIDATES, ledger_size)


def evaluate_candidate(
    candidate: Candidate,
    references: Sequence[str],
    *,
    service: GenerativeService,
    scorer: Scorer,
    output_dir: Path,
    log: logging.Logger = logger,
) -> FinalEvaluation:
    """Score one candidate against every reference; every failure is recorded, never raised."""
    failures: List[Dict[str, str]] = []
    artifact: Optional[str] = candidate.artifact
    if not artifact or not Path(artifact).exists():
        out_path = output_dir / f"final_eval_{uuid.uuid4().hex[:12]}.png"
        try:
            artifact = service.generate_image(candidate.prompt, str(out_path))
        except Exception as e:
            log.warning(f"Regeneration failed for final evaluation ({preview(candidate.prompt, 50)}): {e}")
            failures.append({"reference_image": "*", "error": str(e)})
            artifact = None

    breakdown: List[ReferenceScore] = []
    total = 0.0
    if artifact:
        for ref in references:
            try:
                score = scorer.compare(ref, artifact)
            except Exception as e:
                log.warning(f"Error in final evaluation ({preview(candidate.prompt, 50)}) vs {ref}: {e}")
                failures.append({"reference_image": ref, "error": str(e)})
                continue
            total += score
            breakdown.append({"reference_image": ref, "score": score})

    return FinalEvaluation(
        prompt=candidate.prompt,
        total_score=total,
        average_score=total / len(references) if references else 0.0,
        breakdown=breakdown,
        artifact=artifact,
        source_iteration=candidate.source_iteration,
        failures=failures,
    )


def run(
    ledger: CandidateLedger,
    references: Sequence[str],
    stream_count: int,
    *,
    service: GenerativeService,
    scorer: Scorer,
    output_dir: Path,
    limit: Optional[int] = None,
    log: logging.Logger = logger,
) -> Tuple[List[FinalEvaluation], Optional[FinalEvaluation]]:
    """Re-score the C best candidates against all references.

    Returns every evaluation (best total first) and the winner, which is None
    when no candidate could be scored against any reference.
    """
    if not len(ledger):
        return [], None
    c = final_candidate_count(stream_count, len(ledger)) if limit is None else min(limit, len(ledger))
    top = ledger.top(c)
    log.info(f"Final evaluation phase: {len(ledger)} candidates collected, re-scoring top {c}")

    evaluations = [
        evaluate_candidate(cand, references, service=service, scorer=scorer, output_dir=output_dir, log=log)
        for cand in top
    ]
    evaluations.sort(key=lambda e: e.total_score, reverse=True)
    winner = next((e for e in evaluations if e.evaluable), None)
    if winner is not None:
        log.info(
            f"Final best prompt selected: total={winner.total_score:.4f} "
            f"average={winner.average_score:.4f} iteration={winner.source_iteration}"
        )
    else:
        log.warning("No candidate could be re-evaluated; keeping the in-loop best")
    return evaluations, winner
