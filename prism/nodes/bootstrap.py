from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from ..errors import BootstrapFailure, ServiceError
from ..llm.refusal import RefusalClassifier
from ..llm.service import GenerativeService
from ..logging_config import log_timer, preview
from ..state import IterationRecord, SearchConfig, Stream

logger = logging.getLogger(__name__)


def validate_initial_prompt(prompt: str, classifier: RefusalClassifier) -> str:
    prompt = (prompt or "").strip()
    if not prompt:
        raise BootstrapFailure("Failed to generate initial prompt: empty response")
    if classifier.is_refusal(prompt):
        raise BootstrapFailure(f"Initial prompt generation was refused by API: {prompt[:200]}")
    return prompt


def _describe(service: GenerativeService, image: str, classifier: RefusalClassifier) -> str:
    try:
        text = service.describe_image(image)
    except ServiceError as e:
        raise BootstrapFailure(f"Failed to generate initial prompt: {e}") from e
    return validate_initial_prompt(text, classifier)


def run(
    service: GenerativeService,
    references: Sequence[str],
    config: SearchConfig,
    *,
    classifier: RefusalClassifier,
    log: logging.Logger = logger,
) -> Tuple[List[Stream], IterationRecord]:
    """Describe the first reference and seed one stream per configured slot.

    Any failure here raises BootstrapFailure before a stream exists.
    """
    with log_timer(log, "bootstrap"):
        initial = _describe(service, references[0], classifier)
    log.info(f"Initial prompt: {preview(initial, 200)}")

    prompts = [initial]
    for n in range(1, config.stream_count):
        if not config.diversify_streams:
            prompts.append(initial)
            continue
        # extra samples are best effort; only the first description is fatal
        try:
            prompts.append(_describe(service, references[0], classifier))
        except BootstrapFailure as e:
            log.warning(f"Stream {n} seed description failed, sharing the initial prompt: {e}")
            prompts.append(initial)

    streams = [Stream(index=n, current_prompt=p) for n, p in enumerate(prompts)]
    record = IterationRecord(iteration=0, kind="initial", prompts={s.index: s.current_prompt for s in streams})
    return streams, record
