import pytest

from conftest import FakeService, ScriptedScorer
from prism.errors import DimensionMismatch, TransportError
from prism.ledger import CandidateLedger
from prism.nodes import rerank
from prism.state import Candidate


@pytest.fixture
def artifacts(tmp_path):
    paths = []
    for i in range(5):
        p = tmp_path / f"candidate_{i}.png"
        p.write_bytes(b"img")
        paths.append(str(p))
    return paths


def _ledger(scores, artifacts):
    ledger = CandidateLedger()
    for i, (score, artifact) in enumerate(zip(scores, artifacts)):
        ledger.add(Candidate(prompt=f"p{i}", in_iteration_score=score, artifact=artifact, source_iteration=i + 1))
    return ledger


@pytest.mark.parametrize(
    "streams,size,expected",
    [(1, 5, 2), (3, 4, 4), (8, 40, 10), (2, 0, 0)],
)
def test_final_candidate_count(streams, size, expected):
    assert rerank.final_candidate_count(streams, size) == expected


def test_selects_top_candidates_and_picks_highest_total(tmp_path, artifacts):
    ledger = _ledger([0.9, 0.8, 0.95, 0.4, 0.7], artifacts)
    scorer = ScriptedScorer(
        by_artifact={
            artifacts[0]: {"r1": 0.5, "r2": 0.5},
            artifacts[1]: {"r1": 0.9, "r2": 0.8},
            artifacts[2]: {"r1": 0.7, "r2": 0.6},
        }
    )

    evaluations, winner = rerank.run(
        ledger, ["r1", "r2"], 1, service=FakeService(), scorer=scorer, output_dir=tmp_path, limit=3
    )

    assert {e.prompt for e in evaluations} == {"p0", "p1", "p2"}
    assert [e.prompt for e in evaluations] == ["p1", "p2", "p0"]
    assert winner.prompt == "p1"
    assert winner.total_score == pytest.approx(1.7)
    assert winner.average_score == pytest.approx(0.85)
    # the 0.4 and 0.7 candidates were never re-scored
    assert {g for _, g in scorer.calls} == set(artifacts[:3])


def test_default_limit_uses_stream_count(tmp_path, artifacts):
    ledger = _ledger([0.9, 0.8, 0.95, 0.4, 0.7], artifacts)
    evaluations, _ = rerank.run(
        ledger, ["r1"], 2, service=FakeService(), scorer=ScriptedScorer(), output_dir=tmp_path
    )
    assert len(evaluations) == 4


def test_empty_ledger(tmp_path):
    assert rerank.run(CandidateLedger(), ["r1"], 1, service=FakeService(), scorer=ScriptedScorer(),
                      output_dir=tmp_path) == ([], None)


def test_missing_artifact_is_regenerated_once(tmp_path):
    service = FakeService()
    candidate = Candidate(prompt="p", in_iteration_score=0.5, artifact=None, source_iteration=1)

    evaluation = rerank.evaluate_candidate(
        candidate, ["r1", "r2"], service=service, scorer=ScriptedScorer(default=0.3), output_dir=tmp_path
    )

    generated = service.calls_of("generate")
    assert len(generated) == 1
    assert "final_eval_" in generated[0]["out_path"]
    assert evaluation.artifact == generated[0]["out_path"]
    assert evaluation.total_score == pytest.approx(0.6)


def test_failed_reference_is_omitted_from_total(tmp_path, artifacts):
    candidate = Candidate(prompt="p", in_iteration_score=0.5, artifact=artifacts[0], source_iteration=1)
    scorer = ScriptedScorer(by_artifact={artifacts[0]: {"r1": 0.5, "r2": TransportError("timeout")}})

    evaluation = rerank.evaluate_candidate(
        candidate, ["r1", "r2"], service=FakeService(), scorer=scorer, output_dir=tmp_path
    )

    assert evaluation.total_score == pytest.approx(0.5)
    # average is over every reference, failed ones included
    assert evaluation.average_score == pytest.approx(0.25)
    assert evaluation.breakdown == [{"reference_image": "r1", "score": 0.5}]
    assert evaluation.failures[0]["reference_image"] == "r2"


def test_no_winner_when_nothing_can_be_scored(tmp_path):
    ledger = CandidateLedger()
    ledger.add(Candidate(prompt="p", in_iteration_score=0.5, artifact=None, source_iteration=1))

    evaluations, winner = rerank.run(
        ledger, ["r1"], 1, service=FakeService(fail_generate={"*"}), scorer=ScriptedScorer(), output_dir=tmp_path
    )

    assert winner is None
    assert len(evaluations) == 1
    assert not evaluations[0].evaluable
    assert evaluations[0].failures


def test_dimension_mismatch_on_one_reference_is_recorded(tmp_path, artifacts):
    ledger = _ledger([0.6], artifacts)
    scorer = ScriptedScorer(by_artifact={artifacts[0]: {"ref": 0.7, "other": DimensionMismatch("768 vs 256")}})

    evaluations, winner = rerank.run(
        ledger, ["ref", "other"], 1, service=FakeService(), scorer=scorer, output_dir=tmp_path
    )

    assert winner is evaluations[0]
    assert winner.breakdown == [{"reference_image": "ref", "score": 0.7}]
    assert winner.average_score == pytest.approx(0.35)
    assert "768 vs 256" in winner.failures[0]["error"]


def test_unexpected_regeneration_error_is_recorded(tmp_path):
    class BrokenService(FakeService):
        def generate_image(self, prompt, out_path):
            raise RuntimeError("decoder crashed")

    candidate = Candidate(prompt="p", in_iteration_score=0.5, artifact=None, source_iteration=1)
    evaluation = rerank.evaluate_candidate(
        candidate, ["r1"], service=BrokenService(), scorer=ScriptedScorer(), output_dir=tmp_path
    )

    assert not evaluation.evaluable
    assert evaluation.failures == [{"reference_image": "*", "error": "decoder crashed"}]
