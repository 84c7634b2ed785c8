import re
import threading
from pathlib import Path

import pytest

from prism import config
from prism.errors import GenerationFailure
from prism.state import SearchConfig

_ARTIFACT = re.compile(r"generated_iter(\d+)_stream(\d+)_")


def parse_artifact(path):
    """(iteration, stream) encoded in an in-loop artifact name, or (None, None)."""
    m = _ARTIFACT.search(Path(str(path)).name)
    if not m:
        return None, None
    return int(m.group(1)), int(m.group(2))


class FakeService:
    """In-memory GenerativeService that records every call."""

    def __init__(self, descriptions=("A watercolor of a red fox sitting in fresh snow",),
                 fail_generate=(), refine_fn=None, block=None):
        self.descriptions = list(descriptions)
        self.fail_generate = set(fail_generate)
        self.refine_fn = refine_fn
        self.block = block or {}
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, kind, **payload):
        with self._lock:
            self.calls.append(dict(kind=kind, **payload))

    def calls_of(self, kind):
        with self._lock:
            return [c for c in self.calls if c["kind"] == kind]

    def describe_image(self, image):
        self._record("describe", image=image)
        with self._lock:
            text = self.descriptions.pop(0) if len(self.descriptions) > 1 else self.descriptions[0]
        if isinstance(text, Exception):
            raise text
        return text

    def generate_image(self, prompt, out_path):
        iteration, stream = parse_artifact(out_path)
        self._record("generate", prompt=prompt, out_path=out_path, iteration=iteration, stream=stream)
        gate = self.block.get((iteration, stream))
        if gate is not None:
            gate.wait(5)
        if (iteration, stream) in self.fail_generate or "*" in self.fail_generate:
            raise GenerationFailure(f"no image for iteration={iteration} stream={stream}")
        Path(out_path).parent.mkdir(parents=True, exist_ok=True)
        Path(out_path).write_bytes(b"fake-image")
        return out_path

    def refine_prompt(self, current_prompt, reference_image, generated_image, score, iteration, history=None):
        _, stream = parse_artifact(generated_image)
        self._record(
            "refine",
            prompt=current_prompt,
            stream=stream,
            iteration=iteration,
            history=list(history) if history is not None else None,
        )
        if self.refine_fn is not None:
            return self.refine_fn(current_prompt, iteration, history)
        return f"{current_prompt} | refined@{iteration}"

    def embed(self, text):
        return [1.0, 0.0, 0.0]


class ScriptedScorer:
    """Scores by (iteration, stream) of the artifact name, or per artifact and reference."""

    def __init__(self, scores=None, default=0.1, by_artifact=None):
        self.scores = dict(scores or {})
        self.default = default
        self.by_artifact = dict(by_artifact or {})
        self.calls = []

    def compare(self, reference, generated):
        self.calls.append((reference, generated))
        if generated in self.by_artifact:
            value = self.by_artifact[generated][reference]
        else:
            value = self.scores.get(parse_artifact(generated), self.default)
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def reference(tmp_path):
    path = tmp_path / "reference.png"
    path.write_bytes(b"reference")
    return str(path)


@pytest.fixture
def make_config(tmp_path):
    def _make(**kwargs):
        kwargs.setdefault("output_dir", tmp_path / "out")
        kwargs.setdefault("max_iterations", 3)
        kwargs.setdefault("similarity_threshold", 0.99)
        return SearchConfig(**kwargs)

    return _make


@pytest.fixture
def offline(monkeypatch):
    monkeypatch.setattr(config, "get_api_key", lambda: None)
