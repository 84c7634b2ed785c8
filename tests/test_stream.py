import pytest

from conftest import FakeService, ScriptedScorer
from prism.errors import DimensionMismatch, ServiceRefusal, TransportError
from prism.nodes import stream as stream_node
from prism.state import HistoryEntry, Stream, StreamStatus


def _entry(iteration=1, stream=0, prompt="p", score=0.4):
    return HistoryEntry(
        iteration=iteration,
        stream=stream,
        prompt=prompt,
        generated_image=f"generated_iter{iteration}_stream{stream}_abc.png",
        reference_image="ref.png",
        score=score,
    )


def test_tick_success_produces_entry(tmp_path):
    service = FakeService()
    outcome = stream_node.run_tick(
        0, "a prompt", "ref.png", 1, service=service, scorer=ScriptedScorer(default=0.42), output_dir=tmp_path
    )
    assert outcome.error is None
    assert outcome.entry.score == 0.42
    assert outcome.entry.prompt == "a prompt"
    assert outcome.entry.reference_image == "ref.png"
    assert "generated_iter1_stream0_" in outcome.entry.generated_image


def test_tick_generation_failure_is_captured(tmp_path):
    service = FakeService(fail_generate={(2, 1)})
    outcome = stream_node.run_tick(
        1, "a prompt", "ref.png", 2, service=service, scorer=ScriptedScorer(), output_dir=tmp_path
    )
    assert outcome.entry is None
    assert "iteration=2" in outcome.error


def test_tick_scoring_failure_is_captured(tmp_path):
    scorer = ScriptedScorer(scores={(1, 0): TransportError("embedding timed out")})
    outcome = stream_node.run_tick(0, "p", "ref.png", 1, service=FakeService(), scorer=scorer, output_dir=tmp_path)
    assert outcome.entry is None
    assert "timed out" in outcome.error


def test_tick_unexpected_error_is_captured(tmp_path):
    scorer = ScriptedScorer(scores={(1, 0): RuntimeError("cannot decode image")})
    outcome = stream_node.run_tick(0, "p", "ref.png", 1, service=FakeService(), scorer=scorer, output_dir=tmp_path)
    assert outcome.entry is None
    assert outcome.error == "cannot decode image"


def test_tick_dimension_mismatch_propagates(tmp_path):
    scorer = ScriptedScorer(scores={(1, 0): DimensionMismatch("3 vs 4")})
    with pytest.raises(DimensionMismatch):
        stream_node.run_tick(0, "p", "ref.png", 1, service=FakeService(), scorer=scorer, output_dir=tmp_path)


def test_artifact_names_are_unique(tmp_path):
    assert stream_node.artifact_path(tmp_path, 1, 0) != stream_node.artifact_path(tmp_path, 1, 0)


def test_apply_tick_failure_keeps_prompt_and_history():
    s = Stream(index=0, current_prompt="keep me")
    stream_node.apply_tick(s, stream_node.TickOutcome(stream=0, error="boom"), 1)
    assert s.current_prompt == "keep me"
    assert s.history == []
    assert s.status is StreamStatus.FAILED
    assert s.events[0].kind == "tick_failed"


def test_apply_tick_success_appends_history():
    s = Stream(index=0, current_prompt="p")
    stream_node.apply_tick(s, stream_node.TickOutcome(stream=0, entry=_entry()), 1)
    assert len(s.history) == 1
    assert s.status is StreamStatus.ITERATING


def test_refine_passes_history():
    service = FakeService()
    history = [_entry(iteration=1, prompt="old")]
    outcome = stream_node.run_refine(_entry(iteration=2, prompt="cur"), history, service=service)
    assert outcome.prompt == "cur | refined@2"
    assert outcome.error is None and outcome.retried is None
    assert service.calls_of("refine")[0]["history"] == history


def test_refine_retries_without_history():
    def refine(prompt, iteration, history):
        if history is not None:
            raise ServiceRefusal("too long")
        return "fresh prompt"

    service = FakeService(refine_fn=refine)
    outcome = stream_node.run_refine(_entry(prompt="cur"), [], service=service)
    assert outcome.prompt == "fresh prompt"
    assert outcome.retried == "too long"
    assert outcome.error is None
    assert [c["history"] for c in service.calls_of("refine")] == [[], None]


def test_refine_keeps_prompt_when_both_attempts_fail():
    def refine(prompt, iteration, history):
        raise TransportError("offline")

    s = Stream(index=0, current_prompt="cur", history=[_entry(prompt="cur")])
    outcome = stream_node.run_refine(_entry(prompt="cur"), [], service=FakeService(refine_fn=refine))
    assert outcome.prompt == "cur"
    assert outcome.error == "offline"

    stream_node.apply_refine(s, outcome, 1)
    assert s.current_prompt == "cur"
    assert len(s.history) == 1
    assert [e.kind for e in s.events] == ["refine_retried", "refine_failed"]


def test_refine_unexpected_errors_keep_prompt():
    def refine(prompt, iteration, history):
        raise RuntimeError("sdk blew up")

    service = FakeService(refine_fn=refine)
    outcome = stream_node.run_refine(_entry(prompt="cur"), [_entry(prompt="old")], service=service)

    assert outcome.prompt == "cur"
    assert outcome.retried == "sdk blew up"
    assert outcome.error == "sdk blew up"
    assert len(service.calls_of("refine")) == 2
