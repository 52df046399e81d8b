"""
Tests for the power progression tracker.
"""

import pytest

from storyfactory.models import PowerRealm
from storyfactory.progression_tracker import (
    DEFAULT_POWER_SYSTEM,
    ProgressionTracker,
    create_progression_tracker,
    describe_power_gap,
)
from storyfactory.utils.errors import ValidationError


@pytest.fixture
def tracker():
    return ProgressionTracker("project-1")


class TestInitialization:
    """Tests for ladder validation and character setup."""

    def test_default_ladder(self, tracker):
        assert [r.name for r in tracker.power_system][:3] == ["Luyện Khí", "Trúc Cơ", "Kim Đan"]
        assert len(tracker.power_system) == len(DEFAULT_POWER_SYSTEM)

    def test_duplicate_realm_names_rejected(self):
        ladder = [PowerRealm(name="A", rank=1), PowerRealm(name="a", rank=2)]
        with pytest.raises(ValueError):
            ProgressionTracker("p", power_system=ladder)

    def test_initialize_defaults_to_first_realm(self, tracker):
        state = tracker.initialize_character("Lâm Phong")
        assert state.realm == "Luyện Khí"
        assert state.level == 1
        assert state.total_breakthroughs == 0

    def test_initialize_unknown_realm(self, tracker):
        with pytest.raises(ValidationError):
            tracker.initialize_character("Lâm Phong", realm="Saiyan")

    def test_realm_lookup_is_case_insensitive(self, tracker):
        assert tracker.get_realm_rank("kim đan") == 2
        assert tracker.get_realm_rank("nowhere") == -1

    def test_returned_state_is_a_copy(self, tracker):
        tracker.initialize_character("Lâm Phong")
        state = tracker.get_power_state("Lâm Phong")
        state.level = 9
        assert tracker.get_power_state("Lâm Phong").level == 1


class TestBreakthroughs:
    """Tests for breakthrough validation and recording."""

    def test_next_realm_breakthrough_succeeds(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=9)
        result = tracker.record_breakthrough("Lâm Phong", 50, "Trúc Cơ", 1)
        assert result.success is True
        state = tracker.get_power_state("Lâm Phong")
        assert (state.realm, state.level) == ("Trúc Cơ", 1)
        assert state.total_breakthroughs == 1
        assert state.last_breakthrough_chapter == 50

    def test_skipping_a_realm_fails(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=9)
        result = tracker.record_breakthrough("Lâm Phong", 50, "Kim Đan", 1)
        assert result.success is False
        assert result.changed is False
        assert any("realm skipped" in error.lower() for error in result.errors)
        assert tracker.get_power_state("Lâm Phong").realm == "Luyện Khí"

    def test_unknown_realm_is_an_error(self, tracker):
        tracker.initialize_character("Lâm Phong")
        validation = tracker.validate_breakthrough("Lâm Phong", "Saiyan", 1, 10)
        assert validation.is_valid is False
        assert "Invalid realm name" in validation.errors[0]

    def test_level_above_realm_cap(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=9)
        validation = tracker.validate_breakthrough("Lâm Phong", "Trúc Cơ", 4, 60)
        assert validation.is_valid is False

    def test_regression_is_rejected(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Kim Đan", level=1)
        validation = tracker.validate_breakthrough("Lâm Phong", "Trúc Cơ", 3, 100)
        assert validation.is_valid is False
        assert any("regression" in error.lower() for error in validation.errors)

    def test_same_level_is_no_progression(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=3)
        validation = tracker.validate_breakthrough("Lâm Phong", "Luyện Khí", 3, 100)
        assert validation.is_valid is False

    def test_fast_breakthrough_only_warns(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=1)
        result = tracker.record_breakthrough("Lâm Phong", 5, "Luyện Khí", 2)
        assert result.success is True
        assert any("too fast" in warning.lower() for warning in result.warnings)

    def test_threshold_scales_with_story_length(self, tracker):
        assert tracker.too_fast_threshold(2000) == 40
        assert tracker.too_fast_threshold(500) == 10
        assert tracker.too_fast_threshold(10) == 1

    def test_bottleneck_realm_warns(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Nguyên Anh", level=3)
        validation = tracker.validate_breakthrough("Lâm Phong", "Hóa Thần", 1, 1500)
        assert validation.is_valid is True
        assert any("bottleneck" in warning for warning in validation.warnings)

    def test_unknown_character_starts_fresh(self, tracker):
        result = tracker.record_breakthrough("Stranger", 100, "Luyện Khí", 2)
        assert result.success is True
        assert any("no power state" in warning for warning in result.warnings)
        assert tracker.get_power_state("Stranger").level == 2

    def test_history_records_breakthrough(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=9)
        tracker.record_breakthrough("Lâm Phong", 50, "Trúc Cơ", 1, trigger="Foundation pill")
        history = tracker.get_history("Lâm Phong")
        assert len(history) == 1
        assert history[0].from_state == "Luyện Khí 9"
        assert history[0].to_state == "Trúc Cơ 1"
        assert history[0].trigger == "Foundation pill"


class TestSkillsAndItems:
    """Tests for skill learning and item acquisition."""

    def test_duplicate_skill_rejected(self, tracker):
        tracker.initialize_character("Lâm Phong")
        assert tracker.record_skill_learned("Lâm Phong", 3, "Sword Qi").success is True
        duplicate = tracker.record_skill_learned("Lâm Phong", 4, "Sword Qi")
        assert duplicate.success is False
        assert tracker.get_power_state("Lâm Phong").abilities == ["Sword Qi"]

    def test_skill_burst_warns(self, tracker):
        tracker.initialize_character("Lâm Phong")
        for index, skill in enumerate(["A", "B", "C"]):
            tracker.record_skill_learned("Lâm Phong", 10 + index, skill)
        result = tracker.record_skill_learned("Lâm Phong", 14, "D")
        assert result.success is True
        assert result.warnings

    def test_items_are_appended(self, tracker):
        tracker.initialize_character("Lâm Phong")
        tracker.record_item_acquired("Lâm Phong", 7, {"name": "Thanh Phong Kiếm", "type": "weapon",
                                                      "grade": "hạ phẩm"})
        tracker.record_item_acquired("Lâm Phong", 8, {"name": "Thanh Phong Kiếm"})
        items = tracker.get_power_state("Lâm Phong").items
        assert len(items) == 2
        assert items[0].acquired_chapter == 7

    def test_skill_before_latest_event_warns(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=9)
        tracker.record_breakthrough("Lâm Phong", 50, "Trúc Cơ", 1)
        result = tracker.record_skill_learned("Lâm Phong", 30, "Sword Qi")
        assert result.success is True
        assert any("Chapter regression" in warning for warning in result.warnings)
        assert tracker.get_power_state("Lâm Phong").abilities == ["Sword Qi"]

    def test_item_before_latest_event_warns(self, tracker):
        tracker.initialize_character("Lâm Phong")
        tracker.record_skill_learned("Lâm Phong", 20, "Sword Qi")
        result = tracker.record_item_acquired("Lâm Phong", 12, {"name": "Thanh Phong Kiếm"})
        assert result.success is True
        assert any("Chapter regression" in warning for warning in result.warnings)
        assert tracker.record_item_acquired("Lâm Phong", 25, {"name": "Cửu Chuyển Đan"}).warnings == []

    def test_grade_validation(self, tracker):
        assert tracker.validate_grade_for_chapter("thần khí", 10).is_valid is False
        assert tracker.validate_grade_for_chapter("hạ phẩm", 50).is_valid is True


class TestPacingAndBattles:
    """Tests for expected realm, power parsing and enemy scaling."""

    def test_expected_realm_bounds(self, tracker):
        assert tracker.get_expected_realm(0).realm == "Luyện Khí"
        assert tracker.get_expected_realm(2000).realm == "Độ Kiếp"
        assert tracker.get_expected_realm(5000).realm == "Độ Kiếp"

    def test_expected_realm_is_monotonic(self, tracker):
        ranks = [
            tracker.get_realm_rank(tracker.get_expected_realm(chapter, 900).realm)
            for chapter in range(0, 901, 50)
        ]
        assert ranks == sorted(ranks)

    def test_progression_curve(self):
        linear = ProgressionTracker("p")
        slow_start = ProgressionTracker("p", progression_curve=lambda x: x ** 2)
        assert linear.get_expected_realm(1000).realm == "Hóa Thần"
        assert slow_start.get_expected_realm(1000).realm == "Kim Đan"

    def test_parse_power_level(self, tracker):
        assert tracker.parse_power_level("Kim Đan 5") == 35
        assert tracker.parse_power_level("Trúc Cơ") == 21
        assert tracker.parse_power_level("mystery") == 1

    def test_easy_win_against_much_stronger_enemy(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=5)
        result = tracker.validate_enemy_scaling("Lâm Phong", "Kim Đan 1", "clean_victory", 50, 2000)
        assert result.is_valid is False
        assert result.power_gap == 31 - 15
        assert result.issues

    def test_retreat_against_stronger_enemy_is_fine(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=5)
        result = tracker.validate_enemy_scaling("Lâm Phong", "Kim Đan 1", "strategic_retreat", 50, 2000)
        assert result.is_valid is True

    def test_unknown_outcome(self, tracker):
        tracker.initialize_character("Lâm Phong")
        assert tracker.validate_enemy_scaling("Lâm Phong", "Trúc Cơ 1", "teleported", 5).is_valid is False

    def test_describe_power_gap(self):
        assert describe_power_gap(-6) == "protagonist overwhelmingly stronger"
        assert describe_power_gap(0) == "even match"
        assert describe_power_gap(8) == "enemy much stronger"

    def test_battle_context_and_summary(self, tracker):
        tracker.initialize_character("Lâm Phong", realm="Trúc Cơ", level=2)
        context = tracker.get_battle_context("Lâm Phong", "Trúc Cơ 3", 120)
        assert "## Battle Power Context" in context
        assert "even match" in context
        summary = tracker.get_progression_summary("Lâm Phong")
        assert summary.startswith("Lâm Phong: Trúc Cơ level 2")
        assert "no progression data" in tracker.get_progression_summary("Nobody")


class TestPersistence:
    """Tests for state restored from the content store."""

    def test_state_survives_reload(self, store):
        tracker = create_progression_tracker("project-9", store=store)
        tracker.initialize_character("Lâm Phong", realm="Luyện Khí", level=9)
        tracker.record_breakthrough("Lâm Phong", 50, "Trúc Cơ", 1)
        tracker.record_skill_learned("Lâm Phong", 51, "Sword Qi")

        reloaded = create_progression_tracker("project-9", store=store)
        state = reloaded.get_power_state("Lâm Phong")
        assert (state.realm, state.level) == ("Trúc Cơ", 1)
        assert state.abilities == ["Sword Qi"]
        assert [e.event_type for e in reloaded.get_history("Lâm Phong")] == ["breakthrough", "skill_learned"]

    def test_projects_are_isolated(self, store):
        create_progression_tracker("project-a", store=store).initialize_character("Lâm Phong")
        assert create_progression_tracker("project-b", store=store).get_power_state("Lâm Phong") is None
        assert list(create_progression_tracker("project-a", store=store).get_all_power_states()) == ["Lâm Phong"]
