"""
Character power progression tracking.

Keeps one power state per character (realm, level, abilities, items) on a
configurable realm ladder and validates breakthroughs, skill acquisition
and battle outcomes against it. Validation never raises: every check
returns a result object with errors (blocking) and warnings (advisory),
so prompt construction can always proceed with whatever is known.

The tracker is single-writer per project. When a content store is given,
accepted changes are persisted best-effort and `load()` restores them.
"""

import logging
import math
import re
import uuid
from typing import Callable, Dict, List, Optional, Union

from .grades import DEFAULT_GRADE_TOLERANCE, REFERENCE_TOTAL_CHAPTERS, validate_grade_for_chapter
from .models import (
    EnemyScalingValidation,
    ExpectedRealm,
    GradeValidation,
    InventoryEntry,
    PowerRealm,
    ProgressionEvent,
    ProgressionState,
    ProgressionValidation,
    TrackerResult,
)
from .utils.errors import ValidationError
from .utils.repository import ContentStore
from .utils.timestamps import utc_now_iso

logger = logging.getLogger(__name__)


DEFAULT_POWER_SYSTEM: List[PowerRealm] = [
    PowerRealm(name="Luyện Khí", rank=1, sub_levels=9, description="Entry realm; qi refining",
               abilities=["Qi control"], breakthrough_difficulty="easy"),
    PowerRealm(name="Trúc Cơ", rank=2, sub_levels=3, description="Foundation building",
               abilities=["Short flight"], breakthrough_difficulty="medium"),
    PowerRealm(name="Kim Đan", rank=3, sub_levels=3, description="Golden core formation",
               abilities=["Strong divine sense"], breakthrough_difficulty="hard"),
    PowerRealm(name="Nguyên Anh", rank=4, sub_levels=3, description="Nascent soul",
               abilities=["Avatar split"], breakthrough_difficulty="hard"),
    PowerRealm(name="Hóa Thần", rank=5, sub_levels=3, description="Soul transformation",
               abilities=["Spatial movement"], breakthrough_difficulty="bottleneck"),
    PowerRealm(name="Luyện Hư", rank=6, sub_levels=3, description="Void refining",
               abilities=["Comprehension of laws"], breakthrough_difficulty="bottleneck"),
    PowerRealm(name="Hợp Thể", rank=7, sub_levels=3, description="Body and dao integration",
               abilities=["Heaven and earth might"], breakthrough_difficulty="bottleneck"),
    PowerRealm(name="Đại Thừa", rank=8, sub_levels=3, description="Great ascension; preparing for tribulation",
               abilities=["Great divine abilities"], breakthrough_difficulty="bottleneck"),
    PowerRealm(name="Độ Kiếp", rank=9, sub_levels=1, description="Crossing the heavenly tribulation",
               abilities=["Immortality"], breakthrough_difficulty="bottleneck"),
]

BATTLE_OUTCOMES = (
    "clean_victory",
    "pyrrhic_victory",
    "narrow_escape",
    "strategic_retreat",
    "interrupted",
    "draw",
    "defeat_recovery",
    "total_defeat",
)
EASY_WIN_OUTCOMES = ("clean_victory", "pyrrhic_victory")
LOSS_OUTCOMES = ("defeat_recovery", "total_defeat")

_DIGITS = re.compile(r"(\d+)")


def describe_power_gap(gap: int) -> str:
    """Human-readable label for enemy power minus protagonist power."""
    if gap <= -5:
        return "protagonist overwhelmingly stronger"
    if gap <= -2:
        return "protagonist stronger"
    if gap <= 2:
        return "even match"
    if gap <= 5:
        return "enemy stronger"
    return "enemy much stronger"


class ProgressionTracker:
    """
    Per-project power state machine and consistency validators.

    Thresholds are constructor parameters:
        min_breakthrough_gap: chapters expected between breakthroughs in a
            story of `reference_total_chapters`; scaled to the actual length
        max_victory_gap: power gap above which an easy win is implausible
        max_defeat_gap: advantage above which losing needs an explanation
        pace_tolerance: allowed distance (power points) from the expected
            realm for the current chapter
    """

    def __init__(
        self,
        project_id: str,
        power_system: Optional[List[PowerRealm]] = None,
        store: Optional[ContentStore] = None,
        total_chapters: int = REFERENCE_TOTAL_CHAPTERS,
        min_breakthrough_gap: int = 40,
        reference_total_chapters: int = REFERENCE_TOTAL_CHAPTERS,
        min_average_pace: float = 5.0,
        skill_burst_window: int = 10,
        skill_burst_limit: int = 3,
        max_victory_gap: int = 3,
        max_defeat_gap: int = 2,
        pace_tolerance: int = 10,
        grade_tolerance: int = DEFAULT_GRADE_TOLERANCE,
        progression_curve: Optional[Callable[[float], float]] = None
    ):
        ladder = list(power_system or DEFAULT_POWER_SYSTEM)
        if not ladder:
            raise ValueError("power_system must contain at least one realm")
        names = [realm.name.lower() for realm in ladder]
        if len(set(names)) != len(names):
            raise ValueError("power_system realm names must be unique")

        self.project_id = project_id
        self.store = store
        self.total_chapters = total_chapters
        self.min_breakthrough_gap = min_breakthrough_gap
        self.reference_total_chapters = reference_total_chapters
        self.min_average_pace = min_average_pace
        self.skill_burst_window = skill_burst_window
        self.skill_burst_limit = skill_burst_limit
        self.max_victory_gap = max_victory_gap
        self.max_defeat_gap = max_defeat_gap
        self.pace_tolerance = pace_tolerance
        self.grade_tolerance = grade_tolerance
        self.progression_curve = progression_curve

        self._ladder = ladder
        self._rank_by_name = {name: index for index, name in enumerate(names)}
        self._states: Dict[str, ProgressionState] = {}
        self._history: Dict[str, List[ProgressionEvent]] = {}

    # ------------------------------------------------------------------
    # Loading and lookup
    # ------------------------------------------------------------------

    def load(self) -> "ProgressionTracker":
        """Restore states and history from the content store, if any."""
        if self.store is None:
            return self
        try:
            for state in self.store.load_character_states(self.project_id):
                if self.get_realm_rank(state.realm) < 0:
                    logger.warning(
                        f"Stored realm '{state.realm}' of {state.character_name} is not on the ladder; skipped"
                    )
                    continue
                self._states[state.character_name] = state
            for event in self.store.load_progression_events(self.project_id):
                self._history.setdefault(event.character_name, []).append(event)
        except Exception as e:
            logger.warning(f"Could not load progression state for project {self.project_id}: {e}")
        logger.debug(f"Loaded {len(self._states)} character state(s) for project {self.project_id}")
        return self

    @property
    def power_system(self) -> List[PowerRealm]:
        return list(self._ladder)

    def get_realm_rank(self, realm_name: Optional[str]) -> int:
        """Index of a realm on the ladder, or -1 if unknown."""
        return self._rank_by_name.get((realm_name or "").strip().lower(), -1)

    def get_realm(self, realm_name: str) -> Optional[PowerRealm]:
        rank = self.get_realm_rank(realm_name)
        return self._ladder[rank] if rank >= 0 else None

    def get_power_state(self, character_name: str) -> Optional[ProgressionState]:
        state = self._states.get(character_name)
        return state.model_copy(deep=True) if state else None

    def get_all_power_states(self) -> Dict[str, ProgressionState]:
        return {name: state.model_copy(deep=True) for name, state in self._states.items()}

    def get_history(self, character_name: str) -> List[ProgressionEvent]:
        return list(self._history.get(character_name, []))

    def initialize_character(
        self,
        character_name: str,
        realm: Optional[str] = None,
        level: int = 1
    ) -> ProgressionState:
        """
        Create (or reset) a character's power state.

        Args:
            character_name: Character to track
            realm: Starting realm (default: first realm of the ladder)
            level: Starting level inside the realm

        Returns:
            The new state

        Raises:
            ValidationError: If the realm is not on the ladder or level < 1
        """
        start = self._ladder[0] if realm is None else self.get_realm(realm)
        if start is None:
            raise ValidationError(
                f"Invalid realm name: {realm}",
                details={"valid_realms": [r.name for r in self._ladder]}
            )
        if level < 1:
            raise ValidationError("Level must be at least 1")

        state = ProgressionState(
            project_id=self.project_id,
            character_name=character_name,
            realm=start.name,
            level=level,
        )
        self._states[character_name] = state
        self._persist_state(state)
        logger.info(f"Initialized {character_name} at {start.name} level {level}")
        return state.model_copy(deep=True)

    def _default_state(self, character_name: str) -> ProgressionState:
        return ProgressionState(
            project_id=self.project_id,
            character_name=character_name,
            realm=self._ladder[0].name,
            level=1,
        )

    # ------------------------------------------------------------------
    # Breakthroughs
    # ------------------------------------------------------------------

    def too_fast_threshold(self, total_chapters: Optional[int] = None) -> int:
        """Minimum chapters between breakthroughs for a story of this length."""
        total = total_chapters or self.total_chapters
        scaled = self.min_breakthrough_gap * total / self.reference_total_chapters
        return max(1, round(scaled))

    def validate_breakthrough(
        self,
        character_name: str,
        new_realm: str,
        new_level: int,
        at_chapter: int,
        total_chapters: Optional[int] = None
    ) -> ProgressionValidation:
        """
        Check a proposed breakthrough against the character's state.

        Args:
            character_name: Character breaking through
            new_realm: Target realm
            new_level: Target level inside the realm
            at_chapter: Chapter of the breakthrough
            total_chapters: Planned story length (default: tracker setting)

        Returns:
            ProgressionValidation with blocking errors and advisory warnings
        """
        result = ProgressionValidation()
        state = self._states.get(character_name)
        if state is None:
            result.warnings.append(
                f"{character_name} has no power state yet; assuming a fresh start at "
                f"{self._ladder[0].name} level 1"
            )
            state = self._default_state(character_name)

        target_rank = self.get_realm_rank(new_realm)
        if target_rank < 0:
            result.errors.append(f"Invalid realm name: {new_realm}")
            result.suggestions.append(f"Valid realms: {', '.join(r.name for r in self._ladder)}")
            result.is_valid = False
            return result

        target = self._ladder[target_rank]
        current_rank = self.get_realm_rank(state.realm)

        if new_level < 1:
            result.errors.append(f"Invalid level {new_level}: levels start at 1")
        elif new_level > target.sub_levels:
            result.errors.append(
                f"Invalid level {new_level}: {target.name} has only {target.sub_levels} level(s)"
            )

        if target_rank > current_rank + 1:
            skipped = target_rank - current_rank - 1
            result.errors.append(
                f"Realm skipped: cannot jump from {state.realm} to {target.name} "
                f"({skipped} realm(s) in between)"
            )
            result.suggestions.append(f"Break through to {self._ladder[current_rank + 1].name} first")
        elif target_rank < current_rank:
            result.errors.append(
                f"Realm regression: {character_name} is already at {state.realm}; "
                f"record a power loss instead of a breakthrough"
            )
        elif target_rank == current_rank and new_level <= state.level:
            result.errors.append(
                f"No progression: {character_name} is already at {state.realm} level {state.level}"
            )

        chapters_since = at_chapter - state.last_breakthrough_chapter
        threshold = self.too_fast_threshold(total_chapters)
        if chapters_since < 0:
            result.warnings.append(
                f"Chapter regression: breakthrough at chapter {at_chapter} precedes the last one "
                f"at chapter {state.last_breakthrough_chapter}"
            )
        elif chapters_since < threshold:
            result.warnings.append(
                f"Breakthrough too fast: only {chapters_since} chapter(s) since the last one "
                f"(expected at least {threshold})"
            )
            result.suggestions.append("Add cultivation time, a setback or a catalyst event first")

        if target_rank == current_rank + 1 and target.breakthrough_difficulty == "bottleneck":
            result.warnings.append(
                f"{target.name} is a bottleneck realm; the breakthrough needs a major catalyst"
            )
            result.suggestions.append("Foreshadow a special opportunity, treasure or epiphany")

        if state.total_breakthroughs > 0 and at_chapter > 0:
            average_pace = at_chapter / (state.total_breakthroughs + 1)
            if average_pace < self.min_average_pace:
                result.warnings.append(
                    f"Average pace of {average_pace:.1f} chapters per breakthrough is very fast"
                )

        result.is_valid = not result.errors
        return result

    def record_breakthrough(
        self,
        character_name: str,
        at_chapter: int,
        new_realm: str,
        new_level: int,
        trigger: Optional[str] = None,
        consequences: Optional[List[str]] = None,
        total_chapters: Optional[int] = None
    ) -> TrackerResult:
        """
        Validate and apply a breakthrough.

        Returns:
            TrackerResult; on rejection nothing is changed
        """
        validation = self.validate_breakthrough(
            character_name, new_realm, new_level, at_chapter, total_chapters
        )
        if not validation.is_valid:
            logger.info(f"Rejected breakthrough of {character_name}: {'; '.join(validation.errors)}")
            return TrackerResult(
                success=False,
                warnings=validation.warnings,
                errors=validation.errors,
                changed=False,
            )

        state = self._states.get(character_name) or self._default_state(character_name)
        previous = f"{state.realm} {state.level}"
        state.realm = self.get_realm(new_realm).name
        state.level = new_level
        state.total_breakthroughs += 1
        state.last_breakthrough_chapter = at_chapter
        self._states[character_name] = state

        self._record_event(
            character_name,
            at_chapter,
            "breakthrough",
            from_state=previous,
            to_state=f"{state.realm} {state.level}",
            trigger=trigger,
            consequences=consequences,
        )
        self._persist_state(state)
        logger.info(f"{character_name} broke through to {state.realm} level {state.level} at chapter {at_chapter}")
        return TrackerResult(success=True, warnings=validation.warnings)

    # ------------------------------------------------------------------
    # Skills and items
    # ------------------------------------------------------------------

    def validate_skill_learning(
        self,
        character_name: str,
        skill_name: str,
        at_chapter: int
    ) -> ProgressionValidation:
        result = ProgressionValidation()
        state = self._states.get(character_name)
        if state is not None and skill_name in state.abilities:
            result.errors.append(f"{character_name} already knows {skill_name}")

        recent = [
            event for event in self._history.get(character_name, [])
            if event.event_type == "skill_learned"
            and 0 <= at_chapter - event.chapter < self.skill_burst_window
        ]
        if len(recent) >= self.skill_burst_limit:
            result.warnings.append(
                f"{character_name} learned {len(recent)} skills in the last "
                f"{self.skill_burst_window} chapters"
            )
            result.suggestions.append("Give the new skills time to be practiced and shown")

        regression = self._chapter_regression(character_name, at_chapter, "skill")
        if regression:
            result.warnings.append(regression)

        result.is_valid = not result.errors
        return result

    def record_skill_learned(self, character_name: str, at_chapter: int, skill_name: str) -> TrackerResult:
        """Append a skill; exact duplicates (case-sensitive) are rejected."""
        validation = self.validate_skill_learning(character_name, skill_name, at_chapter)
        if not validation.is_valid:
            return TrackerResult(
                success=False,
                warnings=validation.warnings,
                errors=validation.errors,
                changed=False,
            )

        state = self._states.setdefault(character_name, self._default_state(character_name))
        state.abilities.append(skill_name)
        self._record_event(character_name, at_chapter, "skill_learned", to_state=skill_name)
        self._persist_state(state)
        return TrackerResult(success=True, warnings=validation.warnings)

    def record_item_acquired(
        self,
        character_name: str,
        at_chapter: int,
        item: Union[InventoryEntry, dict]
    ) -> TrackerResult:
        """Append an item to the character's inventory. Duplicates are allowed."""
        if isinstance(item, dict):
            item = InventoryEntry(**{"acquired_chapter": at_chapter, **item})
        warnings = []
        regression = self._chapter_regression(character_name, at_chapter, "item")
        if regression:
            warnings.append(regression)
            logger.warning(f"{character_name}: {regression}")
        state = self._states.setdefault(character_name, self._default_state(character_name))
        state.items.append(item)
        self._record_event(
            character_name,
            at_chapter,
            "item_acquired",
            to_state=f"{item.name} ({item.grade})" if item.grade else item.name,
        )
        self._persist_state(state)
        return TrackerResult(success=True, warnings=warnings)

    def validate_grade_for_chapter(
        self,
        grade: str,
        at_chapter: int,
        total_chapters: Optional[int] = None
    ) -> GradeValidation:
        return validate_grade_for_chapter(
            grade,
            at_chapter,
            total_chapters or self.total_chapters,
            tolerance=self.grade_tolerance,
        )

    # ------------------------------------------------------------------
    # Expected pacing and battles
    # ------------------------------------------------------------------

    def get_expected_realm(self, at_chapter: int, total_chapters: Optional[int] = None) -> ExpectedRealm:
        """
        Realm and level a main character should roughly have reached.

        Interpolates over the ladder by story completion, optionally through
        `progression_curve` (maps completion fraction to ladder fraction).
        """
        total = total_chapters or self.total_chapters
        progress = at_chapter / total if total > 0 else 0.0
        progress = max(0.0, min(1.0, progress))
        if self.progression_curve is not None:
            progress = max(0.0, min(1.0, self.progression_curve(progress)))

        count = len(self._ladder)
        index = min(int(progress * count), count - 1)
        realm = self._ladder[index]
        level = math.ceil((progress * count - index) * realm.sub_levels) or 1
        level = max(1, min(level, realm.sub_levels))
        return ExpectedRealm(realm=realm.name, level=level)

    def parse_power_level(self, label: str) -> int:
        """
        Convert a label such as "Kim Đan 5" to a comparable scalar.

        realm rank * 10 + sub-level; the longest realm name found in the
        label wins, the first number is the sub-level (default 1).
        """
        lowered = (label or "").lower()
        base = 0
        best_length = 0
        for index, realm in enumerate(self._ladder):
            name = realm.name.lower()
            if name in lowered and len(name) > best_length:
                base = (index + 1) * 10
                best_length = len(name)
        match = _DIGITS.search(lowered)
        sub_level = int(match.group(1)) if match else 1
        return base + sub_level

    def _state_power(self, state: ProgressionState) -> int:
        return (self.get_realm_rank(state.realm) + 1) * 10 + state.level

    def validate_enemy_scaling(
        self,
        protagonist: str,
        enemy_power_label: str,
        outcome: str,
        at_chapter: int,
        total_chapters: Optional[int] = None
    ) -> EnemyScalingValidation:
        """
        Judge whether a battle outcome is plausible given the power gap.

        Off-pace protagonists are reported as warnings; only outcome
        implausibility makes the result invalid.
        """
        result = EnemyScalingValidation()
        if outcome not in BATTLE_OUTCOMES:
            result.is_valid = False
            result.issues.append(f"Unknown battle outcome: {outcome}")
            result.suggestions.append(f"Use one of: {', '.join(BATTLE_OUTCOMES)}")
            return result

        state = self._states.get(protagonist)
        if state is None:
            result.warnings.append(f"{protagonist} has no power state; scaling not checked")
            return result

        protagonist_power = self._state_power(state)
        gap = self.parse_power_level(enemy_power_label) - protagonist_power
        result.power_gap = gap

        if gap > self.max_victory_gap and outcome in EASY_WIN_OUTCOMES:
            result.issues.append(
                f"Enemy is {gap} power levels stronger yet {outcome.replace('_', ' ')} - implausible"
            )
            result.suggestions.append("Explain the upset: special item, enemy weakness or outside help")
        if gap < -self.max_defeat_gap and outcome in LOSS_OUTCOMES:
            result.issues.append(
                f"Protagonist is {-gap} power levels stronger yet suffers {outcome.replace('_', ' ')}"
            )
            result.suggestions.append("Add a hidden enemy power, a handicap or a betrayal")

        expected = self.get_expected_realm(at_chapter, total_chapters)
        expected_power = self.parse_power_level(f"{expected.realm} {expected.level}")
        if protagonist_power > expected_power + self.pace_tolerance:
            result.warnings.append(f"{protagonist} is stronger than expected for chapter {at_chapter}")
            result.suggestions.append("Slow down breakthroughs or raise enemy difficulty")
        elif protagonist_power < expected_power - self.pace_tolerance:
            result.warnings.append(f"{protagonist} is weaker than expected for chapter {at_chapter}")
            result.suggestions.append("Consider a power-up event or a time skip")

        result.is_valid = not result.issues
        return result

    # ------------------------------------------------------------------
    # Prompt projections
    # ------------------------------------------------------------------

    def get_battle_context(self, protagonist: str, enemy_power_label: str, at_chapter: int) -> str:
        """Render the power comparison for a battle scene prompt."""
        state = self._states.get(protagonist)
        if state is None:
            return f"Battle context unavailable: {protagonist} has no power state"

        protagonist_power = self._state_power(state)
        enemy_power = self.parse_power_level(enemy_power_label)
        gap = enemy_power - protagonist_power
        lines = [
            "## Battle Power Context",
            f"**Chapter:** {at_chapter}",
            f"**Protagonist:** {state.realm} level {state.level} (power {protagonist_power})",
            f"**Enemy:** {enemy_power_label} (power {enemy_power})",
            f"**Power Gap:** {gap:+d} ({describe_power_gap(gap)})",
            "",
            "### Expected Outcome:",
        ]
        if gap <= -5:
            lines.append("- Protagonist should win easily; a chance to showcase power")
        elif gap <= -2:
            lines.append("- Protagonist has the edge and should win unless the enemy hides a trump card")
        elif gap <= 2:
            lines.append("- Balanced fight; tactics, items and allies decide it")
        elif gap <= 5:
            lines.append("- Enemy is stronger; plausible: pyrrhic_victory, narrow_escape, strategic_retreat")
        else:
            lines.append("- Enemy is overwhelming; plausible: narrow_escape, strategic_retreat, interrupted")

        if state.abilities:
            lines.append("")
            lines.append(f"### Abilities: {', '.join(state.abilities[-5:])}")
        if state.items:
            recent = ", ".join(f"{i.name} ({i.grade})" if i.grade else i.name for i in state.items[-3:])
            lines.append(f"### Recent Items: {recent}")
        return "\n".join(lines)

    def get_progression_summary(self, character_name: str) -> str:
        """One-line power snapshot of a character for prompts."""
        state = self._states.get(character_name)
        if state is None:
            return f"{character_name}: no progression data"
        return (
            f"{character_name}: {state.realm} level {state.level} | "
            f"Abilities: {len(state.abilities)} | Items: {len(state.items)} | "
            f"Breakthroughs: {state.total_breakthroughs} "
            f"(last at chapter {state.last_breakthrough_chapter})"
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _chapter_regression(self, character_name: str, at_chapter: int, kind: str) -> Optional[str]:
        history = self._history.get(character_name)
        if not history:
            return None
        latest = max(event.chapter for event in history)
        if at_chapter < latest:
            return (
                f"Chapter regression: {kind} at chapter {at_chapter} precedes the latest "
                f"recorded event at chapter {latest}"
            )
        return None

    def _record_event(
        self,
        character_name: str,
        chapter: int,
        event_type: str,
        to_state: str,
        from_state: Optional[str] = None,
        trigger: Optional[str] = None,
        consequences: Optional[List[str]] = None
    ) -> None:
        event = ProgressionEvent(
            id=str(uuid.uuid4()),
            project_id=self.project_id,
            character_name=character_name,
            chapter=chapter,
            event_type=event_type,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            consequences=consequences or [],
            created_at=utc_now_iso(),
        )
        self._history.setdefault(character_name, []).append(event)
        if self.store is None:
            return
        try:
            self.store.insert_progression_event(event)
        except Exception as e:
            logger.warning(f"Could not persist {event_type} event of {character_name}: {e}")

    def _persist_state(self, state: ProgressionState) -> None:
        if self.store is None:
            return
        try:
            self.store.save_character_state(state)
        except Exception as e:
            logger.warning(f"Could not persist power state of {state.character_name}: {e}")


def create_progression_tracker(
    project_id: str,
    power_system: Optional[List[PowerRealm]] = None,
    store: Optional[ContentStore] = None,
    **kwargs
) -> ProgressionTracker:
    """Create a tracker and load any persisted state for the project."""
    return ProgressionTracker(project_id, power_system=power_system, store=store, **kwargs).load()
