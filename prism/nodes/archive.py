from __future__ import annotations

import json
from pathlib import Path

from ..state import RunResult


def run(result: RunResult, outdir: Path) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    # dump full trace
    (outdir / "trace.json").write_text(
        json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str), encoding="utf-8"
    )

    # dump prompts
    prompts = {
        "best_prompt": result.best_prompt,
        "best_score": result.best_score,
        "final_evaluations": [
            {"prompt": e.prompt, "total_score": e.total_score, "average_score": e.average_score}
            for e in result.final_evaluations
        ],
    }
    (outdir / "prompts.json").write_text(json.dumps(prompts, ensure_ascii=False, indent=2), encoding="utf-8")

    # copy final image
    if result.best_artifact:
        src = Path(result.best_artifact)
        if src.exists():
            (outdir / f"final{src.suffix or '.png'}").write_bytes(src.read_bytes())

    return outdir
