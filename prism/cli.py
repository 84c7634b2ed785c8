from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

from . import config
from .errors import BootstrapFailure, ConfigurationError, NoUsableCandidates
from .graph import execute
from .logging_config import setup_logging
from .state import SearchConfig

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="PRISM: search for a prompt that reproduces a reference image",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--image", action="append", required=True, help="Reference image (repeatable)")
    parser.add_argument("--max-iterations", type=int, default=config.MAX_ITERATIONS, help="Iterations per run")
    parser.add_argument("--threshold", type=float, default=config.SIMILARITY_THRESHOLD, help="Stop once a score reaches this")
    parser.add_argument("--streams", type=int, default=config.STREAM_COUNT, help="Parallel refinement streams")
    parser.add_argument("--outdir", type=str, default="", help="Output directory (default: artifacts/run_<timestamp>)")
    parser.add_argument("--diversify", action="store_true", help="Seed each stream from its own description")
    parser.add_argument("--stream-timeout", type=float, default=None, help="Wall-clock limit per stream tick (seconds)")
    parser.add_argument("--log-level", type=str, default=config.LOG_LEVEL, help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    return parser


def _default_outdir() -> str:
    from datetime import datetime

    return str(Path(config.OUTPUT_DIR) / f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    for image in args.image:
        if not Path(image).exists():
            raise SystemExit(f"Reference image not found: {image}")

    try:
        search_config = SearchConfig(
            max_iterations=args.max_iterations,
            similarity_threshold=args.threshold,
            stream_count=args.streams,
            output_dir=Path(args.outdir or _default_outdir()),
            diversify_streams=args.diversify,
            stream_timeout=args.stream_timeout,
        )
        result = execute(args.image, search_config)
    except (BootstrapFailure, NoUsableCandidates, ConfigurationError) as e:
        logger.error(str(e))
        raise SystemExit(f"{type(e).__name__}: {e}")

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))
    else:
        print(f"Best prompt ({result.best_score:.3f}, {result.total_iterations} iteration(s), {result.stop_reason}):")
        print(result.best_prompt)
        print(f"Artifacts saved under: {search_config.output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
