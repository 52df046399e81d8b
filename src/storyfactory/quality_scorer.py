"""
Chapter quality scoring on a 0-100 scale.

HeuristicQualityScorer judges length and dialogue balance only.
LLMQualityScorer asks the text-generation provider for a quick editorial
verdict, averages it with the heuristic, and falls back to the heuristic
alone whenever the provider fails or answers with something unparseable.
"""

import json
import logging
import re
from typing import List, Optional, Tuple

from .models import QualityResult
from .providers.base import QualityScorer, TextGenerationProvider
from .utils.errors import ProviderError
from .utils.word_count import WordCountValidator

logger = logging.getLogger(__name__)

LENGTH_WEIGHT = 80.0
DIALOGUE_WEIGHT = 20.0
SHORT_CHAPTER_PENALTY = 20.0
SHORT_CHAPTER_FLOOR = 30.0

# Preferred share of dialogue lines
DIALOGUE_RANGE = (0.2, 0.6)

# Characters that open a dialogue line
DIALOGUE_MARKERS = ('"', "“", "'", "‘", "-", "–", "—", "「")

REVIEW_EXCERPT_CHARS = 4000

_CODE_FENCE = re.compile(r"^```(?:json)?|```$", re.MULTILINE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def dialogue_ratio(text: str) -> float:
    """Share of non-empty lines that open with a dialogue marker."""
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    if not lines:
        return 0.0
    spoken = sum(1 for line in lines if line.startswith(DIALOGUE_MARKERS))
    return spoken / len(lines)


class HeuristicQualityScorer(QualityScorer):
    """Length- and dialogue-based scorer that needs no provider."""

    def __init__(self, validator: Optional[WordCountValidator] = None):
        self.validator = validator or WordCountValidator()

    def score(self, text: str, chapter_number: int, genre: str) -> QualityResult:
        issues: List[str] = []
        suggestions: List[str] = []

        word_count, long_enough = self.validator.validate(text)
        score = self.validator.length_ratio(text) * LENGTH_WEIGHT
        if not long_enough:
            issues.append(
                f"Chapter is too short ({word_count} words, minimum {self.validator.min_words})"
            )
            suggestions.append("Expand scenes with concrete action and sensory detail")
            score = max(SHORT_CHAPTER_FLOOR, score - SHORT_CHAPTER_PENALTY)

        ratio = dialogue_ratio(text)
        low, high = DIALOGUE_RANGE
        if low <= ratio <= high:
            score += DIALOGUE_WEIGHT
        else:
            score += DIALOGUE_WEIGHT / 2
            if ratio < low:
                issues.append(f"Too little dialogue ({ratio:.0%} of lines)")
                suggestions.append("Let characters speak; move exposition into dialogue")
            else:
                issues.append(f"Too much dialogue ({ratio:.0%} of lines)")
                suggestions.append("Ground the dialogue with narration and action beats")

        return QualityResult(score=score, issues=issues, suggestions=suggestions)


def _parse_verdict(text: str) -> Tuple[float, List[str]]:
    """
    Parse a JSON verdict of the form {"score": 0-100, "issues": [...]}.

    Raises:
        ValueError: If no usable verdict is present
    """
    cleaned = _CODE_FENCE.sub("", text or "").strip()
    match = _JSON_OBJECT.search(cleaned)
    if not match:
        raise ValueError("No JSON object in quality verdict")
    data = json.loads(match.group(0))
    if not isinstance(data, dict) or "score" not in data:
        raise ValueError("Quality verdict has no score")
    try:
        score = float(data["score"])
    except TypeError:
        raise ValueError(f"Quality verdict score is not a number: {data['score']!r}")
    issues = data.get("issues") or []
    if not isinstance(issues, list):
        issues = [str(issues)]
    return score, [str(issue) for issue in issues]


class LLMQualityScorer(QualityScorer):
    """
    Provider-backed scorer.

    The final score is the mean of the heuristic score and the provider's
    verdict; issues from both are merged.
    """

    def __init__(
        self,
        provider: TextGenerationProvider,
        fallback: Optional[QualityScorer] = None,
        model: Optional[str] = None
    ):
        self.provider = provider
        self.fallback = fallback or HeuristicQualityScorer()
        self.model = model

    def _build_prompt(self, text: str, chapter_number: int, genre: str) -> str:
        excerpt = text[:REVIEW_EXCERPT_CHARS]
        return (
            f"Quickly review chapter {chapter_number} of a {genre} web novel.\n\n"
            f"{excerpt}\n\n"
            "Rate pacing, hook strength, character voice and prose on a 0-100 scale. "
            "Reply with JSON only, for example:\n"
            '{"score": 72, "issues": ["slow opening"]}'
        )

    def score(self, text: str, chapter_number: int, genre: str) -> QualityResult:
        baseline = self.fallback.score(text, chapter_number, genre)
        try:
            raw = self.provider.generate(
                "You are a strict serialized-fiction editor.",
                self._build_prompt(text, chapter_number, genre),
                model=self.model,
                temperature=0.3,
                max_tokens=256,
            )
            verdict_score, verdict_issues = _parse_verdict(raw)
        except ProviderError as e:
            logger.warning(f"Quality review failed for chapter {chapter_number}, using heuristic: {e}")
            return baseline
        except ValueError as e:
            logger.warning(f"Unparseable quality verdict for chapter {chapter_number}, using heuristic: {e}")
            return baseline

        combined = (baseline.score + max(0.0, min(100.0, verdict_score))) / 2
        issues = baseline.issues + [issue for issue in verdict_issues if issue not in baseline.issues]
        logger.debug(
            f"Chapter {chapter_number} quality: heuristic={baseline.score:.1f}, "
            f"review={verdict_score:.1f}, combined={combined:.1f}"
        )
        return QualityResult(score=combined, issues=issues, suggestions=baseline.suggestions)
