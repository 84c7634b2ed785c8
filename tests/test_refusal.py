import pytest

from prism.llm.refusal import RefusalClassifier, Verdict, extract_prompt, refusal_hint


@pytest.mark.parametrize(
    "text",
    [
        "I'm sorry, I can't help with that.",
        "申し訳ありませんが、お手伝いできません。",
        "その画像には人物の顔があるため分析できません。",
    ],
)
def test_default_classifier_refuses_short_apologies(text):
    assert RefusalClassifier.default().classify(text) is Verdict.REFUSED


def test_default_classifier_accepts_long_text_even_with_apology():
    text = "I'm sorry, I can't help noticing the striking light. " + "A misty pine forest at dawn, " * 5
    assert len(text) >= 100
    assert not RefusalClassifier.default().is_refusal(text)


def test_default_classifier_accepts_ordinary_prompt():
    assert not RefusalClassifier.default().is_refusal("A red bicycle leaning on a brick wall")


def test_strict_classifier_catches_bootstrap_refusal():
    assert RefusalClassifier.strict().is_refusal("I'm sorry, I cannot analyze this image")


def test_strict_classifier_ignores_length():
    text = "A detailed scene. " * 20 + "Unfortunately I am unable to continue."
    assert RefusalClassifier.strict().is_refusal(text)


def test_custom_patterns():
    classifier = RefusalClassifier.from_strings([r"^nope$"], max_length=None)
    assert classifier.is_refusal("NOPE")
    assert not classifier.is_refusal("nope, here is a prompt")


def test_hint_for_faces():
    assert "face" in refusal_hint("画像には顔が含まれています")
    assert "policy" in refusal_hint("I cannot analyze this")
    assert refusal_hint("I'm sorry") == ""


def test_extract_prompt_after_separator():
    body = "A dramatic oil painting of a lighthouse on a cliff during a violent storm, crashing waves"
    content = f"Here is the prompt you asked for.\n---\n{body}"
    assert extract_prompt(content) == body


def test_extract_prompt_after_label():
    body = "Soft pastel illustration of a girl with long silver hair standing in a field of lavender"
    assert extract_prompt(f"Prompt:\n{body}") == body


def test_extract_prompt_keeps_plain_prompt():
    text = "A cozy cabin in the woods"
    assert extract_prompt(f"  {text}\n") == text


def test_extract_prompt_keeps_content_when_remainder_is_short():
    content = "A bright beach scene with palm trees and turquoise water under a clear sky\n\nShort note"
    assert extract_prompt(content) == content


def test_extract_prompt_strips_apology_prefix():
    body = "A portrait of an elderly man with a white beard in warm, low-key Rembrandt lighting"
    content = f"Result\n---\n申し訳ありませんが、ただし以下を提案します。\n\n{body}"
    assert extract_prompt(content) == body
