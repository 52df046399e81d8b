"""
Word counting and chapter title extraction.

Chapters target roughly 2500 words; anything under 1800 is flagged as short
by the quality heuristics.
"""

import re

TARGET_WORD_COUNT = 2500
MIN_WORD_COUNT = 1800

# How many leading lines may hold the "Chapter N: Title" heading
TITLE_SEARCH_LINES = 5

_HEADING_PATTERN = re.compile(r"^(?:#+\s*)?(?:chapter|chương)\s+(\d+)\s*(?:[:.\-–]\s*(.*))?$", re.IGNORECASE)


def count_words(text):
    """
    Count words in text.

    Args:
        text: String to count words in

    Returns:
        Word count as integer (0 for empty or non-string input)
    """
    if not text or not isinstance(text, str):
        return 0
    return len(text.split())


def default_title(chapter_number):
    return f"Chapter {chapter_number}"


def extract_title(content, chapter_number):
    """
    Split a generated chapter into its title and body.

    A "Chapter N: Title" (or "Chương N: Title") heading is recognized within
    the first few lines; the heading line is removed from the body. Without a
    heading the default title "Chapter N" is used and the body is untouched.

    Args:
        content: Raw generated chapter text
        chapter_number: Chapter number used for the default title

    Returns:
        Tuple of (title, body)
    """
    lines = (content or "").split("\n")
    for index, raw_line in enumerate(lines[:TITLE_SEARCH_LINES]):
        line = raw_line.strip().strip("*").strip()
        match = _HEADING_PATTERN.match(line)
        if not match:
            continue
        title = (match.group(2) or "").strip().strip("*").strip()
        body = "\n".join(lines[index + 1:]).strip()
        return title or default_title(chapter_number), body
    return default_title(chapter_number), (content or "").strip()


class WordCountValidator:
    """
    Checks chapter length against the target band.
    """

    def __init__(self, min_words=MIN_WORD_COUNT, target_words=TARGET_WORD_COUNT):
        self.min_words = min_words
        self.target_words = target_words

    def count_words(self, text):
        return count_words(text)

    def validate(self, text):
        """
        Validate chapter length.

        Args:
            text: Chapter body

        Returns:
            Tuple of (word_count, is_long_enough)
        """
        word_count = self.count_words(text)
        return word_count, word_count >= self.min_words

    def length_ratio(self, text):
        """Fraction of the target length reached, capped at 1.0."""
        if self.target_words <= 0:
            return 1.0
        return min(1.0, self.count_words(text) / self.target_words)
