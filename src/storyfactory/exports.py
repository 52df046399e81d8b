"""
Export of a novel's chapters in various formats.

Exports run inside the worker, so each function writes a file into the
export directory and returns its path.
"""

import re
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Pt

from .models import Chapter
from .utils.errors import NotFoundError, ServiceUnavailableError, ValidationError
from .utils.repository import ContentStore
from .utils.word_count import count_words

logger = logging.getLogger(__name__)

VALID_FORMATS = ["markdown", "txt", "docx"]
FILE_EXTENSIONS = {"markdown": "md", "txt": "txt", "docx": "docx"}

_PATH_TRAVERSAL_PATTERN = re.compile(r'\.\.+')
_DANGEROUS_CHARS_PATTERN = re.compile(r'[<>:"|?*\\/;&`$]')
_WHITESPACE_PATTERN = re.compile(r'\s+')
_NON_WORD_PATTERN = re.compile(r'[^\w-]')
_HEADER_PATTERN = re.compile(r'^(#+)\s+(.+)$')
_BOLD_PATTERN = re.compile(r'\*\*(.+?)\*\*')
_ITALIC_PATTERN = re.compile(r'\*(.+?)\*')


def sanitize_filename(title: str, fallback_id: str, max_length: int = 50) -> str:
    """
    Sanitize a title for use in filenames.

    Removes path traversal sequences, path separators and shell
    metacharacters; keeps letters (including accented ones), digits,
    underscores and hyphens.

    Args:
        title: Original title
        fallback_id: Identifier used when nothing of the title survives
        max_length: Maximum length for filename

    Returns:
        Filename-safe string
    """
    safe = _PATH_TRAVERSAL_PATTERN.sub('', title or '')
    safe = _DANGEROUS_CHARS_PATTERN.sub('', safe)
    safe = _WHITESPACE_PATTERN.sub('_', safe)
    safe = _NON_WORD_PATTERN.sub('', safe)
    safe = safe.strip('_-')[:max_length]
    if not safe:
        safe_id = _NON_WORD_PATTERN.sub('', fallback_id)[:8]
        safe = f"Novel_{safe_id}" if safe_id else "Novel_export"
    return safe


def render_markdown(title: str, chapters: List[Chapter]) -> str:
    """Join chapters into one markdown document."""
    parts = [f"# {title}", ""]
    for chapter in chapters:
        parts.append(f"## Chapter {chapter.chapter_number}: {chapter.title}")
        parts.append("")
        parts.append(chapter.content.strip())
        parts.append("")
    return "\n".join(parts).rstrip() + "\n"


def export_markdown(text: str, path: Path) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def export_txt(text: str, path: Path) -> Path:
    """Write plain text with markdown formatting removed."""
    plain = re.sub(r'^#+\s+', '', text, flags=re.MULTILINE)
    plain = _BOLD_PATTERN.sub(r'\1', plain)
    plain = _ITALIC_PATTERN.sub(r'\1', plain)
    path.write_text(plain, encoding="utf-8")
    return path


def export_docx(text: str, title: str, path: Path) -> Path:
    """
    Write a DOCX document.

    Raises:
        ServiceUnavailableError: If DOCX generation fails
    """
    try:
        doc = Document()
        title_para = doc.add_heading(title, level=0)
        title_para.alignment = WD_ALIGN_PARAGRAPH.CENTER

        for line in text.split('\n'):
            if not line.strip():
                continue
            header_match = _HEADER_PATTERN.match(line)
            if header_match:
                level = len(header_match.group(1))
                if level == 1:
                    # Title already rendered
                    continue
                doc.add_heading(header_match.group(2), level=min(level - 1, 3))
                continue
            clean_line = _BOLD_PATTERN.sub(r'\1', line)
            clean_line = _ITALIC_PATTERN.sub(r'\1', clean_line)
            para = doc.add_paragraph(clean_line)
            for run in para.runs:
                run.font.size = Pt(11)

        doc.save(str(path))
        return path
    except (IOError, OSError) as e:
        logger.error(f"I/O error during DOCX export: {str(e)}", exc_info=True)
        raise ServiceUnavailableError("export", f"DOCX export failed due to I/O issue: {str(e)}")


def export_novel(
    store: ContentStore,
    novel_id: str,
    format_type: str,
    output_dir: str,
    title: Optional[str] = None
) -> Dict[str, Any]:
    """
    Export every stored chapter of a novel.

    Args:
        store: Content store holding the chapters
        novel_id: Novel to export
        format_type: One of VALID_FORMATS
        output_dir: Directory the file is written to (created if missing)
        title: Document title (default: novel id)

    Returns:
        Dict with path, format, chapter count and word count

    Raises:
        ValidationError: If the format is unknown
        NotFoundError: If the novel has no chapters
    """
    format_type = (format_type or "").lower()
    if format_type == "md":
        format_type = "markdown"
    if format_type not in VALID_FORMATS:
        raise ValidationError(
            f"Invalid export format '{format_type}'",
            details={"valid_formats": VALID_FORMATS}
        )

    chapters = store.list_chapters(novel_id)
    if not chapters:
        raise NotFoundError("Novel", novel_id)

    title = title or f"Novel {novel_id}"
    text = render_markdown(title, chapters)

    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{sanitize_filename(title, novel_id)}.{FILE_EXTENSIONS[format_type]}"

    if format_type == "markdown":
        export_markdown(text, path)
    elif format_type == "txt":
        export_txt(text, path)
    else:
        export_docx(text, title, path)

    logger.info(f"Exported {len(chapters)} chapter(s) of novel {novel_id} to {path}")
    return {
        "path": str(path),
        "format": format_type,
        "chapters": len(chapters),
        "word_count": sum(chapter.word_count or count_words(chapter.content) for chapter in chapters),
    }
