"""
Tests for the item grade ladder.
"""

from storyfactory.grades import (
    GRADE_LADDER,
    expected_max_grade,
    grade_value,
    validate_grade_for_chapter,
)


def test_ladder_order():
    """Grades rank from mundane to immortal."""
    assert GRADE_LADDER[0] == "phàm phẩm"
    assert GRADE_LADDER[-1] == "tiên khí"
    assert grade_value("phàm phẩm") < grade_value("thần khí") < grade_value("tiên khí")


def test_grade_lookup_is_normalized():
    assert grade_value("  Thần Khí ") == grade_value("thần khí")
    assert grade_value("legendary") == 0


def test_expected_ceiling_grows_with_chapter():
    assert expected_max_grade(10) == "hạ phẩm"
    assert expected_max_grade(1000) == "linh khí"
    assert expected_max_grade(5000) == "tiên khí"


def test_expected_ceiling_scales_with_story_length():
    assert expected_max_grade(100, total_chapters=200) == "linh khí"
    assert expected_max_grade(100, total_chapters=2000) == "hạ phẩm"


def test_divine_grade_too_early():
    result = validate_grade_for_chapter("thần khí", 10)
    assert result.is_valid is False
    assert result.expected_max_grade == "hạ phẩm"
    assert "too high" in result.warning


def test_low_grade_mid_story_passes():
    result = validate_grade_for_chapter("hạ phẩm", 50)
    assert result.is_valid is True
    assert result.warning is None


def test_tolerance_allows_one_grade_above_ceiling():
    assert validate_grade_for_chapter("trung phẩm", 10).is_valid is True
    assert validate_grade_for_chapter("trung phẩm", 10, tolerance=0).is_valid is False


def test_unknown_grade():
    result = validate_grade_for_chapter("legendary", 10)
    assert result.is_valid is False
    assert "Unknown grade" in result.warning
