"""
Tests for novel export.
"""

import pytest
from docx import Document

from storyfactory.exports import export_novel, sanitize_filename
from storyfactory.models import Chapter
from storyfactory.utils.errors import NotFoundError, ValidationError


@pytest.fixture
def novel(store):
    store.insert_chapter(Chapter(id="c2", novel_id="novel-1", chapter_number=2, title="Storm",
                                 content="The **storm** broke over the *sect*."))
    store.insert_chapter(Chapter(id="c1", novel_id="novel-1", chapter_number=1, title="Dawn",
                                 content="Lâm Phong woke before the bell."))
    return "novel-1"


class TestSanitizeFilename:
    """Tests for filename sanitizing."""

    def test_keeps_accented_letters(self):
        assert sanitize_filename("Kiếm Đạo Độc Tôn", "n1") == "Kiếm_Đạo_Độc_Tôn"

    def test_strips_traversal_and_shell_chars(self):
        assert sanitize_filename("../../etc/passwd; rm -rf", "n1") == "etcpasswd_rm_-rf"

    def test_fallback_to_id(self):
        assert sanitize_filename("***", "abc-123-xyz") == "Novel_abc-123-"
        assert sanitize_filename("", "") == "Novel_export"


class TestExportNovel:
    """Tests for export_novel."""

    def test_chapters_in_order(self, store, novel, tmp_path):
        result = export_novel(store, novel, "markdown", str(tmp_path), title="Sky Sword")
        text = (tmp_path / "Sky_Sword.md").read_text(encoding="utf-8")
        assert text.startswith("# Sky Sword\n")
        assert text.index("Chapter 1: Dawn") < text.index("Chapter 2: Storm")
        assert result["chapters"] == 2
        assert result["word_count"] == 12

    def test_txt_strips_markdown(self, store, novel, tmp_path):
        result = export_novel(store, novel, "TXT", str(tmp_path / "out"))
        text = (tmp_path / "out" / "Novel_novel-1.txt").read_text(encoding="utf-8")
        assert result["format"] == "txt"
        assert "The storm broke over the sect." in text
        assert "#" not in text

    def test_docx(self, store, novel, tmp_path):
        result = export_novel(store, novel, "docx", str(tmp_path), title="Sky Sword")
        doc = Document(result["path"])
        paragraphs = [p.text for p in doc.paragraphs]
        assert paragraphs[0] == "Sky Sword"
        assert "Chapter 1: Dawn" in paragraphs
        assert "The storm broke over the sect." in paragraphs

    def test_unknown_format(self, store, novel, tmp_path):
        with pytest.raises(ValidationError):
            export_novel(store, novel, "pdf", str(tmp_path))

    def test_novel_without_chapters(self, store, tmp_path):
        with pytest.raises(NotFoundError):
            export_novel(store, "nothing", "markdown", str(tmp_path))
