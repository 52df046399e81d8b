"""
Item grade ladder and story-position plausibility.

Grades are ordered from mundane to immortal. The expected ceiling grows
with the chapter number, calibrated on a 2000-chapter story and scaled
linearly for shorter or longer productions.
"""

from typing import Dict, List, Optional, Tuple

from .models import GradeValidation

GRADE_LADDER: List[str] = [
    "phàm phẩm",
    "hạ phẩm",
    "trung phẩm",
    "thượng phẩm",
    "cực phẩm",
    "linh khí",
    "bảo khí",
    "thần khí",
    "tiên khí",
]

GRADE_VALUES: Dict[str, int] = {grade: index + 1 for index, grade in enumerate(GRADE_LADDER)}

REFERENCE_TOTAL_CHAPTERS = 2000

# (last chapter of the band in a 2000-chapter story, highest expected grade)
EXPECTED_GRADE_BY_CHAPTER: List[Tuple[int, str]] = [
    (100, "hạ phẩm"),
    (300, "trung phẩm"),
    (500, "thượng phẩm"),
    (800, "cực phẩm"),
    (1200, "linh khí"),
    (1600, "bảo khí"),
    (1900, "thần khí"),
    (2000, "tiên khí"),
]

# Grades allowed above the expected ceiling before a warning is raised
DEFAULT_GRADE_TOLERANCE = 1


def normalize_grade(grade: Optional[str]) -> str:
    return (grade or "").strip().lower()


def grade_value(grade: Optional[str]) -> int:
    """Numeric rank of a grade (1-based); 0 for unknown grades."""
    return GRADE_VALUES.get(normalize_grade(grade), 0)


def expected_max_grade(at_chapter: int, total_chapters: int = REFERENCE_TOTAL_CHAPTERS) -> str:
    """Highest grade expected at a chapter of a story of the given length."""
    scale = (total_chapters or REFERENCE_TOTAL_CHAPTERS) / REFERENCE_TOTAL_CHAPTERS
    for band_end, grade in EXPECTED_GRADE_BY_CHAPTER:
        if at_chapter <= round(band_end * scale):
            return grade
    return GRADE_LADDER[-1]


def validate_grade_for_chapter(
    grade: str,
    at_chapter: int,
    total_chapters: int = REFERENCE_TOTAL_CHAPTERS,
    tolerance: int = DEFAULT_GRADE_TOLERANCE
) -> GradeValidation:
    """
    Check whether an item grade fits the current story position.

    Args:
        grade: Grade label from GRADE_LADDER
        at_chapter: Chapter where the item appears
        total_chapters: Planned story length
        tolerance: Grades above the expected ceiling that are still accepted

    Returns:
        GradeValidation; never raises
    """
    ceiling = expected_max_grade(at_chapter, total_chapters)
    value = grade_value(grade)
    if value == 0:
        return GradeValidation(
            is_valid=False,
            expected_max_grade=ceiling,
            warning=f'Unknown grade "{grade}". Known grades: {", ".join(GRADE_LADDER)}',
        )
    if value > GRADE_VALUES[ceiling] + tolerance:
        return GradeValidation(
            is_valid=False,
            expected_max_grade=ceiling,
            warning=(
                f'Grade "{grade}" is too high for chapter {at_chapter}; '
                f'expected at most "{ceiling}"'
            ),
        )
    return GradeValidation(is_valid=True, expected_max_grade=ceiling)
