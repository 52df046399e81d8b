"""
Shared pytest fixtures for the test suite.

Provides a throwaway SQLite content store, a scripted text-generation
provider, a scripted quality scorer and a controllable clock, so the queue
and the writer orchestrator can be exercised deterministically.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from storyfactory.config import FactorySettings
from storyfactory.models import (
    ArcOutline,
    AuthorProfile,
    Blueprint,
    PlotPoint,
    Production,
    QualityResult,
    WriteTask,
)
from storyfactory.providers.base import QualityScorer, TextGenerationProvider
from storyfactory.utils.db_storage import SQLiteContentStore
from storyfactory.utils.errors import ProviderError


def make_chapter_text(chapter_number, title="The Trial", words=2500, heading=True):
    """
    Build a chapter whose dialogue share (30% of lines) is in the preferred band.

    Every line holds 25 words; three lines out of ten open with a quote.
    """
    lines = []
    if heading:
        lines.append(f"Chapter {chapter_number}: {title}")
    line_words = 25
    for index in range(max(1, words // line_words)):
        filler = " ".join(["word"] * (line_words - 1))
        if index % 10 in (2, 5, 8):
            lines.append(f'"Speak {filler}"')
        else:
            lines.append(f"Narration {filler}")
    return "\n".join(lines)


class FakeProvider(TextGenerationProvider):
    """
    Provider returning scripted responses in order.

    A response may be a string, an exception instance (raised) or a
    callable taking the user prompt.
    """

    name = "fake"

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def generate(self, system_prompt, user_prompt, model=None, temperature=None, max_tokens=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if not self.responses:
            raise ProviderError("No scripted response left", provider=self.name)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(user_prompt)
        return response


class ScriptedScorer(QualityScorer):
    """Scorer returning scripted scores; the last score repeats."""

    def __init__(self, scores):
        self.scores = list(scores)
        self.calls = []

    def score(self, text, chapter_number, genre):
        self.calls.append((chapter_number, genre))
        value = self.scores.pop(0) if len(self.scores) > 1 else self.scores[0]
        issues = ["Flat pacing"] if value < 60 else []
        return QualityResult(score=value, issues=issues, suggestions=["Sharpen the hook"] if issues else [])


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def store(tmp_path):
    """SQLite content store in a temporary directory."""
    return SQLiteContentStore(str(tmp_path / "factory.db"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Factory settings with no inter-task delay."""
    return FactorySettings(
        db_path=str(tmp_path / "factory.db"),
        inter_task_delay=0,
        export_dir=str(tmp_path / "exports"),
    )


@pytest.fixture
def blueprint(store):
    bp = Blueprint(
        id="bp-1",
        title="Sky Sword Ascension",
        genre="tu tiên",
        world_name="Thiên Nguyên",
        power_system_name="Cultivation",
        protagonist_name="Lâm Phong",
        synopsis="An outer disciple climbs the cultivation ladder.",
        arcs=[
            ArcOutline(arc_number=1, title="Outer Sect", start_chapter=1, end_chapter=50,
                       summary="Lâm Phong fights for a place in the sect"),
        ],
        plot_points=[PlotPoint(chapter=1, event="Lâm Phong finds a broken sword")],
        twists=[PlotPoint(chapter=3, event="The elder is a spy")],
    )
    store.save_blueprint(bp)
    return bp


@pytest.fixture
def author(store):
    profile = AuthorProfile(
        id="author-1",
        name="Mặc Vân",
        persona_prompt="You are Mặc Vân, a veteran cultivation novelist.",
        writing_style="Terse, punchy sentences",
    )
    store.save_author(profile)
    return profile


@pytest.fixture
def make_production(store, blueprint, author):
    """Factory fixture persisting a production."""
    def _make(production_id="prod-1", total_chapters=100, status="active", **fields):
        production = Production(
            id=production_id,
            project_id=fields.pop("project_id", f"project-{production_id}"),
            novel_id=fields.pop("novel_id", f"novel-{production_id}"),
            blueprint_id=blueprint.id,
            author_id=author.id,
            total_chapters=total_chapters,
            status=status,
            **fields
        )
        store.save_production(production)
        return production
    return _make


@pytest.fixture
def production(make_production):
    return make_production()


@pytest.fixture
def add_task(store):
    """Factory fixture persisting a pending write-task."""
    def _add(production_id, chapter_number, **fields):
        task = WriteTask(
            id=fields.pop("id", str(uuid.uuid4())),
            production_id=production_id,
            chapter_number=chapter_number,
            created_at=fields.pop("created_at", "2026-03-01T00:00:00.000000+00:00"),
            **fields
        )
        store.insert_write_task(task)
        return task
    return _add
