from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Pattern, Sequence, Tuple


class Verdict(str, Enum):
    ACCEPTED = "accepted"
    REFUSED = "refused"


# Whole-message apologies; only trusted on short replies
SHORT_REPLY_PATTERNS: Tuple[str, ...] = (
    r"^申し訳ありません[が、]?.*?(できません|お手伝いできません|お役に立てません|詳しい分析.*できません|その画像についての分析.*できません).*?$",
    r"^I'm sorry.*?(can't help|cannot help|unable to help).*?$",
    r"^.*?顔が含まれています.*?詳しい分析.*できません.*?$",
    r"^.*?その画像には.*?できません.*?$",
    r"^.*?その画像についての分析.*できません.*?$",
)

# Substring list applied to the bootstrap description, regardless of length
BOOTSTRAP_PATTERNS: Tuple[str, ...] = (
    r"I'm sorry",
    r"I can't help",
    r"I cannot",
    r"I am not able",
    r"I don't have",
    r"unable to",
    r"cannot assist",
    r"I'm unable",
    r"I cannot provide",
    r"I cannot analyze",
    r"I cannot create",
    r"申し訳ありません",
    r"申し訳ございません",
    r"できません",
    r"分析.*できません",
    r"詳しい分析.*できません",
    r"顔が含まれています",
    r"画像には顔が含まれています",
    r"その画像には",
    r"ご提供いただいた画像",
    r"お手伝いできません",
    r"お役に立てません",
)

MAX_REFUSAL_LENGTH = 100


@dataclass(frozen=True)
class RefusalClassifier:
    patterns: Tuple[Pattern[str], ...]
    max_length: Optional[int] = MAX_REFUSAL_LENGTH

    @classmethod
    def from_strings(cls, patterns: Iterable[str], max_length: Optional[int] = MAX_REFUSAL_LENGTH) -> "RefusalClassifier":
        compiled = tuple(re.compile(p, re.IGNORECASE | re.DOTALL) for p in patterns)
        return cls(patterns=compiled, max_length=max_length)

    @classmethod
    def default(cls) -> "RefusalClassifier":
        return cls.from_strings(SHORT_REPLY_PATTERNS, MAX_REFUSAL_LENGTH)

    @classmethod
    def strict(cls) -> "RefusalClassifier":
        return cls.from_strings(BOOTSTRAP_PATTERNS, max_length=None)

    def classify(self, text: str) -> Verdict:
        if self.max_length is not None and len(text) >= self.max_length:
            return Verdict.ACCEPTED
        for pattern in self.patterns:
            if pattern.search(text):
                return Verdict.REFUSED
        return Verdict.ACCEPTED

    def is_refusal(self, text: str) -> bool:
        return self.classify(text) is Verdict.REFUSED


def refusal_hint(text: str) -> str:
    if "顔" in text or "face" in text.lower():
        return "Likely cause: the image contains a face or person, which the provider may refuse to analyse in detail."
    if "分析" in text or "analyze" in text.lower():
        return "Likely cause: the image content conflicts with the provider's usage policy; try another image."
    return ""


# Markers that separate an explanatory preamble from the actual prompt
_PROMPT_MARKERS: Sequence[Pattern[str]] = (
    re.compile(r"---\s*\n(.*)", re.DOTALL),
    re.compile(r"(?:Prompt|プロンプト)[：:]\s*\n(.*)", re.DOTALL),
    re.compile(r"以下[はが]プロンプト[です。：:]\s*\n(.*)", re.DOTALL),
    re.compile(r"\n\n(.*)", re.DOTALL),
)
_APOLOGY_PREFIX = re.compile(r"^申し訳ありません[が、]?.*?(しかし|ただし|ただ|なお).*?\n\n(.*)", re.DOTALL)
MIN_EXTRACTED_LENGTH = 50


def extract_prompt(content: str) -> str:
    """Strip an explanation the model put before the prompt itself."""
    content = content.strip()
    extracted = content
    for marker in _PROMPT_MARKERS:
        m = marker.search(content)
        if m:
            extracted = m.group(1).strip()
            if len(extracted) > MIN_EXTRACTED_LENGTH:
                break
    else:
        # no marker left a long enough remainder
        extracted = content
    m = _APOLOGY_PREFIX.search(extracted)
    if m:
        extracted = m.group(2).strip()
    return extracted
