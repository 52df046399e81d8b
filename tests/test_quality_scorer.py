"""
Tests for the heuristic and provider-backed quality scorers.
"""

import pytest

from storyfactory.quality_scorer import (
    HeuristicQualityScorer,
    LLMQualityScorer,
    _parse_verdict,
    dialogue_ratio,
)
from storyfactory.utils.errors import ProviderError
from tests.conftest import FakeProvider, make_chapter_text


class TestHeuristicScorer:
    """Tests for HeuristicQualityScorer."""

    def test_full_length_balanced_chapter(self):
        result = HeuristicQualityScorer().score(make_chapter_text(1), 1, "tu tiên")
        assert result.score == 100
        assert result.issues == []

    def test_short_chapter_is_penalized(self):
        text = make_chapter_text(1, words=500, heading=False)
        result = HeuristicQualityScorer().score(text, 1, "tu tiên")
        assert result.score == 50
        assert any("too short" in issue for issue in result.issues)
        assert result.suggestions

    def test_no_dialogue(self):
        result = HeuristicQualityScorer().score(" ".join(["word"] * 2500), 1, "tu tiên")
        assert result.score == 90
        assert result.issues == ["Too little dialogue (0% of lines)"]

    def test_dialogue_ratio(self):
        assert dialogue_ratio('"Hi"\nNarration\n\n— Đi thôi\nMore') == 0.5
        assert dialogue_ratio("") == 0.0


class TestParseVerdict:
    """Tests for parsing the editor's JSON verdict."""

    def test_plain_json(self):
        assert _parse_verdict('{"score": 72, "issues": ["slow opening"]}') == (72.0, ["slow opening"])

    def test_code_fence_and_chatter(self):
        raw = 'Here you go:\n```json\n{"score": "64", "issues": "weak hook"}\n```'
        assert _parse_verdict(raw) == (64.0, ["weak hook"])

    @pytest.mark.parametrize("raw", ["", "no json here", '{"issues": []}', '{"score": "high"}', '{"score": null}'])
    def test_unusable_verdicts(self, raw):
        with pytest.raises(ValueError):
            _parse_verdict(raw)


class TestLLMScorer:
    """Tests for LLMQualityScorer."""

    def test_averages_heuristic_and_verdict(self):
        provider = FakeProvider(['{"score": 60, "issues": ["thin villain"]}'])
        result = LLMQualityScorer(provider, model="gemini-test").score(make_chapter_text(4), 4, "tu tiên")

        assert result.score == 80
        assert result.issues == ["thin villain"]
        call = provider.calls[0]
        assert call["model"] == "gemini-test"
        assert call["temperature"] == 0.3
        assert "chapter 4 of a tu tiên web novel" in call["user_prompt"]

    def test_verdict_is_clamped(self):
        provider = FakeProvider(['{"score": 250}'])
        assert LLMQualityScorer(provider).score(make_chapter_text(1), 1, "tu tiên").score == 100

    def test_provider_error_falls_back(self):
        provider = FakeProvider([ProviderError("timeout")])
        result = LLMQualityScorer(provider).score(make_chapter_text(1), 1, "tu tiên")
        assert result.score == 100

    def test_garbage_verdict_falls_back(self):
        provider = FakeProvider(["I liked it a lot!"])
        text = make_chapter_text(1, words=500, heading=False)
        assert LLMQualityScorer(provider).score(text, 1, "tu tiên").score == 50
