"""
Item and economy tracking for a serialized story.

Registers named items per project, follows their owners and status, and
checks them for consistency: names that readers could confuse, grades that
are too strong for the current chapter, prices that do not rise with grade,
and items the story has forgotten about. Like the progression tracker it is
single-writer per project and reports problems through result objects.

The prose scanner `detect_items_in_content` is a best-effort keyword
heuristic; missing a mention is acceptable, raising is not.
"""

import logging
import random
import re
import uuid
from collections import Counter
from difflib import SequenceMatcher
from itertools import product
from typing import Any, Dict, Iterable, List, Optional, Union

from .grades import (
    DEFAULT_GRADE_TOLERANCE,
    GRADE_LADDER,
    GRADE_VALUES,
    REFERENCE_TOTAL_CHAPTERS,
    normalize_grade,
    validate_grade_for_chapter,
)
from .models import (
    DetectedItem,
    EconomyIssue,
    EconomyValidation,
    GradeValidation,
    ItemNameValidation,
    ItemRegistration,
    ItemStatistics,
    ItemUsageReminder,
    MentionCount,
    OwnerRecord,
    SimilarItem,
    StatusChange,
    TrackedItem,
    TrackerResult,
)
from .utils.repository import ContentStore
from .utils.timestamps import utc_now_iso

logger = logging.getLogger(__name__)

ITEM_CATEGORIES = (
    "weapon", "armor", "accessory", "consumable", "material", "technique", "artifact", "currency",
)
TERMINAL_ITEM_STATUSES = ("consumed", "destroyed", "lost")

SIMILARITY_REPORT_THRESHOLD = 60
SIMILARITY_COLLISION_THRESHOLD = 80

ITEM_KEYWORDS: Dict[str, List[str]] = {
    "weapon": ["kiếm", "đao", "thương", "cung", "mâu", "kích", "chùy", "côn", "roi", "tiêu"],
    "armor": ["giáp", "bào", "khôi", "thuẫn", "khiên", "áo"],
    "accessory": ["nhẫn", "vòng", "trâm", "ngọc bội", "đai", "túi"],
    "consumable": ["đan", "dược", "thuốc", "linh dược", "tiên đan", "huyết"],
    "material": ["linh thạch", "tinh hoa", "tinh nguyên", "linh mạch", "nguyên liệu"],
    "technique": ["công pháp", "bí kíp", "tâm pháp", "quyết", "thuật"],
    "artifact": ["bảo vật", "linh bảo", "thần khí", "pháp bảo", "trấn phái", "truyền thừa"],
    "currency": ["tiên tệ", "kim tệ", "ngân lượng", "nguyên thạch"],
}

GRADE_KEYWORDS: Dict[str, List[str]] = {
    "phàm phẩm": ["phàm phẩm", "phàm cấp"],
    "hạ phẩm": ["hạ phẩm", "hạ cấp"],
    "trung phẩm": ["trung phẩm", "trung cấp"],
    "thượng phẩm": ["thượng phẩm", "thượng cấp", "cao cấp"],
    "cực phẩm": ["cực phẩm", "đỉnh cấp", "hoàn mỹ"],
    "linh khí": ["linh khí", "linh cấp"],
    "bảo khí": ["bảo khí", "bảo cấp"],
    "thần khí": ["thần khí", "thần cấp", "thần binh"],
    "tiên khí": ["tiên khí", "tiên cấp", "tiên binh"],
}

NAME_PREFIXES: Dict[str, List[str]] = {
    "weapon": ["Thanh", "Hắc", "Bạch", "Huyền", "Xích", "Tử", "Kim", "Nguyệt", "Nhật", "Phong"],
    "armor": ["Thiên", "Địa", "Long", "Hổ", "Quy", "Phượng", "Kỳ", "Lân"],
    "accessory": ["Ngọc", "Trân", "Bảo", "Linh", "Minh", "Thần", "Tiên"],
    "consumable": ["Cửu", "Bát", "Thất", "Lục", "Ngũ", "Tứ", "Tam", "Nhị", "Nhất"],
    "material": ["Thiên", "Địa", "Hỏa", "Thủy", "Mộc", "Kim", "Thổ", "Lôi", "Phong"],
    "technique": ["Vô", "Đại", "Chân", "Cực", "Tuyệt", "Thái", "Huyền", "Diệu"],
    "artifact": ["Hồng", "Hoàng", "Cổ", "Viễn", "Tiên", "Thần", "Ma", "Thánh"],
}

NAME_SUFFIXES: Dict[str, List[str]] = {
    "weapon": ["Kiếm", "Đao", "Thương", "Kích", "Côn", "Cung", "Mâu", "Phủ"],
    "armor": ["Giáp", "Bào", "Khôi", "Thuẫn", "Y"],
    "accessory": ["Hoàn", "Bội", "Trâm", "Đái", "Liên", "Châu"],
    "consumable": ["Đan", "Dược", "Tán", "Hoàn", "Lộ"],
    "material": ["Thạch", "Tinh", "Hoa", "Chi", "Tủy", "Hồn"],
    "technique": ["Quyết", "Công", "Thuật", "Pháp", "Kinh", "Tâm Pháp"],
    "artifact": ["Bảo", "Đài", "Lâu", "Đỉnh", "Lô", "Ngọc"],
}

NAME_MIDDLES = ["Long", "Phượng", "Hồng", "Vũ", "Thiên", "Vân", "Nguyệt", "Linh", "Yêu", "Ma"]

USAGE_SUGGESTIONS: Dict[str, str] = {
    "weapon": "{name} could decide an upcoming combat scene",
    "armor": "{name} should come up when the protagonist is attacked",
    "consumable": "{name} could save the day in an emergency",
    "technique": "Show the protagonist training with or using {name}",
    "artifact": "{name} could reveal a hidden secret or a new use",
}
DEFAULT_USAGE_SUGGESTION = "Mention {name} again so readers do not forget it"

_QUOTED_NAME = re.compile(r"[\"“「『]([^\"”」』]{2,29})[\"”」』]")
_WORD = re.compile(r"[^\W\d_]+")


def name_similarity(a: str, b: str) -> int:
    """
    Similarity of two names in percent.

    Containment scores at least 80 (scaled by the length ratio); otherwise
    the difflib matching-blocks ratio is used.
    """
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return 0
    if a == b:
        return 100
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if shorter in longer:
        return round(80 + (len(shorter) / len(longer)) * 20)
    return round(SequenceMatcher(None, a, b).ratio() * 100)


def generate_item_name_suggestions(
    category: str,
    existing_names_lower: Iterable[str],
    count: int = 5,
    rng: Optional[random.Random] = None
) -> List[str]:
    """
    Compose up to `count` fresh item names for a category.

    Args:
        category: Item category (unknown categories use artifact parts)
        existing_names_lower: Lower-cased names already taken
        count: Maximum number of names
        rng: Random source, for reproducible suggestions

    Returns:
        Unique names that collide with no existing name (case-insensitive)
    """
    taken = {name.lower() for name in existing_names_lower}
    prefixes = NAME_PREFIXES.get(category, NAME_PREFIXES["artifact"])
    suffixes = NAME_SUFFIXES.get(category, NAME_SUFFIXES["artifact"])

    candidates = [f"{p} {s}" for p, s in product(prefixes, suffixes)]
    candidates += [f"{p} {m} {s}" for p, m, s in product(prefixes, NAME_MIDDLES, suffixes)]
    (rng or random.Random()).shuffle(candidates)

    suggestions: List[str] = []
    for name in candidates:
        if len(suggestions) >= count:
            break
        if name.lower() not in taken:
            suggestions.append(name)
            taken.add(name.lower())
    return suggestions


def _known_names(existing_items: Any) -> set:
    if not existing_items:
        return set()
    if isinstance(existing_items, dict):
        names = set()
        for key, value in existing_items.items():
            names.add(str(key).lower())
            if isinstance(value, TrackedItem):
                names.add(value.name.lower())
                if value.alternate_name:
                    names.add(value.alternate_name.lower())
        return names
    names = set()
    for entry in existing_items:
        if isinstance(entry, TrackedItem):
            names.add(entry.name.lower())
            if entry.alternate_name:
                names.add(entry.alternate_name.lower())
        else:
            names.add(str(entry).lower())
    return names


def _extract_name(context: str) -> Optional[str]:
    quoted = _QUOTED_NAME.search(context)
    if quoted:
        return quoted.group(1).strip()

    # Longest run of capitalized words separated only by whitespace
    best: List[str] = []
    run: List[str] = []
    previous_end = None
    for match in _WORD.finditer(context):
        word = match.group(0)
        adjacent = previous_end is not None and context[previous_end:match.start()].isspace()
        if word[0].isupper():
            run = run + [word] if (run and adjacent) else [word]
            if len(run) > len(best):
                best = run
        else:
            run = []
        previous_end = match.end()
    name = " ".join(best)
    return name if 1 < len(name) < 30 else None


def detect_items_in_content(text: str, existing_items: Any = None) -> List[DetectedItem]:
    """
    Find item-like mentions in generated prose.

    A mention is a category keyword with a quoted or capitalized name
    nearby. Results are deduplicated by name and tagged `is_new` when the
    name is not in `existing_items` (a dict keyed by lower-cased name, or an
    iterable of names or TrackedItems).

    Returns:
        Detected items; an empty list for empty or non-text input
    """
    if not text or not isinstance(text, str):
        return []
    try:
        known = _known_names(existing_items)
    except (TypeError, AttributeError):
        known = set()

    lowered = text.lower()
    detected: Dict[str, DetectedItem] = {}
    for category, keywords in ITEM_KEYWORDS.items():
        for keyword in keywords:
            start = lowered.find(keyword)
            while start != -1:
                context = text[max(0, start - 30):min(len(text), start + len(keyword) + 50)]
                name = _extract_name(context)
                if name and name.lower() not in detected:
                    context_lower = context.lower()
                    grade = next(
                        (g for g, words in GRADE_KEYWORDS.items() if any(w in context_lower for w in words)),
                        None,
                    )
                    detected[name.lower()] = DetectedItem(
                        name=name,
                        category=category,
                        grade=grade,
                        context=context.strip(),
                        is_new=name.lower() not in known,
                    )
                start = lowered.find(keyword, start + 1)
    return list(detected.values())


def get_item_statistics(
    items: Union[Dict[str, TrackedItem], Iterable[TrackedItem]],
    at_chapter: int,
    forgotten_after: int = 60,
    recent_window: int = 10
) -> ItemStatistics:
    """
    Aggregate registry statistics for dashboards.

    Args:
        items: Tracked items (dict values or any iterable)
        at_chapter: Current chapter
        forgotten_after: Chapters without a mention before an active item
            counts as forgotten
        recent_window: Items first mentioned within this many chapters are
            recent acquisitions
    """
    item_list = list(items.values()) if isinstance(items, dict) else list(items)
    if not item_list:
        return ItemStatistics()

    total_mentions = sum(item.mention_count for item in item_list)
    ranked = sorted(item_list, key=lambda item: item.mention_count, reverse=True)
    return ItemStatistics(
        total_items=len(item_list),
        by_category=dict(Counter(item.category for item in item_list)),
        by_grade=dict(Counter(item.grade for item in item_list)),
        by_status=dict(Counter(item.status for item in item_list)),
        avg_mentions_per_item=total_mentions / len(item_list),
        forgotten_items=[
            item.name for item in item_list
            if item.status == "active" and at_chapter - item.last_mention_chapter >= forgotten_after
        ],
        most_mentioned=[MentionCount(name=item.name, mentions=item.mention_count) for item in ranked[:5]],
        recent_acquisitions=[
            item.name for item in item_list
            if 0 <= at_chapter - item.first_mention_chapter < recent_window
        ],
    )


class ItemTracker:
    """
    Registry of named items for one project.

    Lookups by primary or alternate name are case-insensitive.
    """

    def __init__(
        self,
        project_id: str,
        store: Optional[ContentStore] = None,
        total_chapters: int = REFERENCE_TOTAL_CHAPTERS,
        grade_tolerance: int = DEFAULT_GRADE_TOLERANCE,
        price_inversion_tolerance: float = 0.0,
        price_deviation_threshold: float = 0.5,
        stale_after: int = 30,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the tracker.

        Args:
            project_id: Project the items belong to
            store: Optional content store for persistence
            total_chapters: Planned story length, for grade plausibility
            grade_tolerance: Grades above the expected ceiling still accepted
            price_inversion_tolerance: Fraction by which a lower grade's mean
                price may exceed the next grade's before it is flagged
            price_deviation_threshold: Relative spread inside one grade that
                is reported as a minor issue
            stale_after: Chapters without mention before the inventory block
                marks an item as unused
            rng: Random source for name suggestions
        """
        self.project_id = project_id
        self.store = store
        self.total_chapters = total_chapters
        self.grade_tolerance = grade_tolerance
        self.price_inversion_tolerance = price_inversion_tolerance
        self.price_deviation_threshold = price_deviation_threshold
        self.stale_after = stale_after
        self._rng = rng or random.Random()
        self._items: Dict[str, TrackedItem] = {}
        self._name_index: Dict[str, str] = {}

    def load(self) -> "ItemTracker":
        """Restore items from the content store, if any."""
        if self.store is None:
            return self
        try:
            for item in self.store.load_tracked_items(self.project_id):
                self._index(item)
        except Exception as e:
            logger.warning(f"Could not load items for project {self.project_id}: {e}")
        logger.debug(f"Loaded {len(self._items)} item(s) for project {self.project_id}")
        return self

    def _index(self, item: TrackedItem) -> None:
        self._items[item.id] = item
        self._name_index[item.name.lower()] = item.id
        if item.alternate_name:
            self._name_index[item.alternate_name.lower()] = item.id

    def _persist(self, item: TrackedItem) -> None:
        if self.store is None:
            return
        try:
            self.store.save_tracked_item(item)
        except Exception as e:
            logger.warning(f"Could not persist item {item.name}: {e}")

    def _find(self, name: str) -> Optional[TrackedItem]:
        item_id = self._name_index.get((name or "").strip().lower())
        return self._items.get(item_id) if item_id else None

    def get_item(self, name: str) -> Optional[TrackedItem]:
        item = self._find(name)
        return item.model_copy(deep=True) if item else None

    @property
    def items(self) -> List[TrackedItem]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    # ------------------------------------------------------------------
    # Names and registration
    # ------------------------------------------------------------------

    def validate_item_name(self, candidate: str, category: Optional[str] = None) -> ItemNameValidation:
        """
        Check a proposed name against every registered name and alternate.

        Args:
            candidate: Proposed item name
            category: Category used for rename suggestions (default artifact)

        Returns:
            ItemNameValidation; not unique on an exact (case-insensitive)
            match or when an existing name is at least 80% similar
        """
        lowered = (candidate or "").strip().lower()
        scores: Dict[str, int] = {}
        exact = lowered in self._name_index
        for item in self._items.values():
            for known in (item.name, item.alternate_name):
                if not known:
                    continue
                score = 100 if known.lower() == lowered else name_similarity(lowered, known)
                if score > SIMILARITY_REPORT_THRESHOLD:
                    scores[item.name] = max(scores.get(item.name, 0), score)

        similar = sorted(
            (SimilarItem(name=name, similarity=score) for name, score in scores.items()),
            key=lambda s: s.similarity,
            reverse=True,
        )[:5]
        is_unique = not exact and (not similar or similar[0].similarity < SIMILARITY_COLLISION_THRESHOLD)

        suggestions: List[str] = []
        rename: List[str] = []
        if exact:
            suggestions.append(f'An item named "{candidate}" already exists; reuse it or pick another name')
        elif similar and similar[0].similarity >= SIMILARITY_COLLISION_THRESHOLD:
            top = similar[0]
            suggestions.append(
                f'"{candidate}" is {top.similarity}% similar to "{top.name}"; readers may confuse them'
            )
        if not is_unique:
            rename = generate_item_name_suggestions(
                category or "artifact", self._name_index.keys(), count=3, rng=self._rng
            )
        return ItemNameValidation(
            is_unique=is_unique,
            similar_items=similar,
            suggestions=suggestions,
            rename_suggestions=rename,
        )

    def validate_grade_for_chapter(
        self,
        grade: str,
        at_chapter: int,
        total_chapters: Optional[int] = None
    ) -> GradeValidation:
        return validate_grade_for_chapter(
            grade, at_chapter, total_chapters or self.total_chapters, tolerance=self.grade_tolerance
        )

    def register_item(
        self,
        name: str,
        category: str,
        grade: str,
        description: str,
        at_chapter: int,
        owner: Optional[str] = None,
        alternate_name: Optional[str] = None,
        effects: Optional[List[str]] = None,
        estimated_value: Optional[float] = None,
        currency: Optional[str] = None,
        restrictions: Optional[List[str]] = None
    ) -> ItemRegistration:
        """
        Register a new item.

        Exact duplicates (primary or alternate name, case-insensitive) are
        refused. Near-duplicate names and implausibly strong grades only add
        warnings.

        Returns:
            ItemRegistration with the created item on success
        """
        name = (name or "").strip()
        if not name:
            return ItemRegistration(success=False, warnings=["Item name must not be empty"])
        if category not in ITEM_CATEGORIES:
            return ItemRegistration(
                success=False,
                warnings=[f"Unknown category '{category}'; expected one of {', '.join(ITEM_CATEGORIES)}"],
            )
        if normalize_grade(grade) not in GRADE_VALUES:
            return ItemRegistration(
                success=False,
                warnings=[f"Unknown grade '{grade}'; expected one of {', '.join(GRADE_LADDER)}"],
            )
        for label in (name, alternate_name):
            if label and label.strip().lower() in self._name_index:
                existing = self._find(label)
                return ItemRegistration(
                    success=False,
                    warnings=[f'Item "{label}" already exists (registered as "{existing.name}")'],
                )

        warnings: List[str] = []
        naming = self.validate_item_name(name, category)
        if not naming.is_unique:
            warnings.extend(naming.suggestions)
        grading = self.validate_grade_for_chapter(grade, at_chapter)
        if not grading.is_valid and grading.warning:
            warnings.append(grading.warning)

        item = TrackedItem(
            id=str(uuid.uuid4()),
            project_id=self.project_id,
            name=name,
            alternate_name=alternate_name.strip() if alternate_name else None,
            category=category,
            grade=normalize_grade(grade),
            description=description or "",
            effects=effects or [],
            restrictions=restrictions or [],
            estimated_value=estimated_value,
            currency=currency,
            first_mention_chapter=at_chapter,
            last_mention_chapter=at_chapter,
            mention_count=1,
            current_owner=owner,
            owner_history=[OwnerRecord(owner=owner, chapter=at_chapter)] if owner else [],
            created_at=utc_now_iso(),
        )
        self._index(item)
        self._persist(item)
        logger.info(f"Registered {category} '{name}' ({item.grade}) at chapter {at_chapter}")
        for warning in warnings:
            logger.warning(f"Item '{name}': {warning}")
        return ItemRegistration(success=True, item=item.model_copy(deep=True), warnings=warnings)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def record_mention(self, item_name: str, at_chapter: int) -> TrackerResult:
        item = self._find(item_name)
        if item is None:
            return TrackerResult(success=False, errors=[f"Item '{item_name}' not found"], changed=False)
        warnings = []
        if at_chapter < item.last_mention_chapter:
            warnings.append(
                f"Chapter regression: mention at {at_chapter} precedes last mention at {item.last_mention_chapter}"
            )
        item.last_mention_chapter = max(item.last_mention_chapter, at_chapter)
        item.mention_count += 1
        self._persist(item)
        return TrackerResult(success=True, warnings=warnings)

    def transfer_ownership(self, item_name: str, new_owner: str, at_chapter: int) -> TrackerResult:
        """
        Hand an item to a new owner.

        Refused (without any change) for unknown or no-longer-active items
        and for chapters earlier than the last ownership change.
        """
        item = self._find(item_name)
        if item is None:
            return TrackerResult(success=False, errors=[f"Item '{item_name}' not found"], changed=False)
        if item.status != "active":
            return TrackerResult(
                success=False,
                errors=[f"Item '{item.name}' is {item.status} and cannot change hands"],
                changed=False,
            )
        last_chapter = item.owner_history[-1].chapter if item.owner_history else item.first_mention_chapter
        if at_chapter < last_chapter:
            return TrackerResult(
                success=False,
                errors=[
                    f"Chapter regression: transfer at chapter {at_chapter} precedes the last "
                    f"ownership change at chapter {last_chapter}"
                ],
                changed=False,
            )

        item.owner_history.append(OwnerRecord(owner=new_owner, chapter=at_chapter))
        item.current_owner = new_owner
        item.last_mention_chapter = max(item.last_mention_chapter, at_chapter)
        item.mention_count += 1
        self._persist(item)
        logger.info(f"'{item.name}' passed to {new_owner} at chapter {at_chapter}")
        return TrackerResult(success=True)

    def update_item_status(self, item_name: str, new_status: str, at_chapter: int) -> TrackerResult:
        """
        Move an active item to a terminal status.

        Repeating the current terminal status is a successful no-op; any
        other change away from a terminal status is refused.
        """
        item = self._find(item_name)
        if item is None:
            return TrackerResult(success=False, errors=[f"Item '{item_name}' not found"], changed=False)
        if new_status not in TERMINAL_ITEM_STATUSES:
            return TrackerResult(
                success=False,
                errors=[f"Invalid status '{new_status}'; expected one of {', '.join(TERMINAL_ITEM_STATUSES)}"],
                changed=False,
            )
        if item.status == new_status:
            return TrackerResult(success=True, changed=False)
        if item.status != "active":
            return TrackerResult(
                success=False,
                errors=[f"Item '{item.name}' is already {item.status}; status changes are one-way"],
                changed=False,
            )

        warnings = []
        last_chapter = max(
            [item.last_mention_chapter] + [record.chapter for record in item.owner_history]
        )
        if at_chapter < last_chapter:
            warnings.append(
                f"Chapter regression: status change at chapter {at_chapter} precedes the last "
                f"recorded chapter {last_chapter}"
            )
            logger.warning(f"Item '{item.name}': {warnings[-1]}")

        item.status = new_status
        item.status_change_chapter = at_chapter
        item.status_history.append(StatusChange(status=new_status, chapter=at_chapter))
        self._persist(item)
        logger.info(f"'{item.name}' is now {new_status} (chapter {at_chapter})")
        return TrackerResult(success=True, warnings=warnings)

    # ------------------------------------------------------------------
    # Queries and checks
    # ------------------------------------------------------------------

    def get_items_by_owner(self, owner: str) -> List[TrackedItem]:
        wanted = (owner or "").lower()
        return [
            item.model_copy(deep=True) for item in self._items.values()
            if item.status == "active" and (item.current_owner or "").lower() == wanted
        ]

    def get_unused_item_reminders(
        self,
        at_chapter: int,
        threshold_chapters: int = 50,
        owner: Optional[str] = None
    ) -> List[ItemUsageReminder]:
        """Active items unmentioned for more than `threshold_chapters`, longest first."""
        reminders = []
        for item in self._items.values():
            if item.status != "active":
                continue
            if owner is not None and (item.current_owner or "").lower() != owner.lower():
                continue
            since = at_chapter - item.last_mention_chapter
            if since > threshold_chapters:
                template = USAGE_SUGGESTIONS.get(item.category, DEFAULT_USAGE_SUGGESTION)
                reminders.append(ItemUsageReminder(
                    item_name=item.name,
                    category=item.category,
                    last_mention_chapter=item.last_mention_chapter,
                    chapters_since_last_use=since,
                    suggestion=template.format(name=item.name),
                ))
        reminders.sort(key=lambda r: r.chapters_since_last_use, reverse=True)
        return reminders

    def validate_economy(self) -> EconomyValidation:
        """
        Check that mean prices rise with grade.

        Grades are compared with the next priced grade up the ladder. A
        wide spread of prices inside one grade is a minor issue only.
        """
        by_grade: Dict[str, List[float]] = {}
        for item in self._items.values():
            if item.estimated_value:
                by_grade.setdefault(item.grade, []).append(item.estimated_value)

        issues: List[EconomyIssue] = []
        priced = [grade for grade in GRADE_LADDER if grade in by_grade]
        for lower, higher in zip(priced, priced[1:]):
            avg_lower = sum(by_grade[lower]) / len(by_grade[lower])
            avg_higher = sum(by_grade[higher]) / len(by_grade[higher])
            if avg_lower > avg_higher * (1 + self.price_inversion_tolerance):
                issues.append(EconomyIssue(
                    description=(
                        f"Price inversion: {lower} items average {avg_lower:,.0f}, "
                        f"more than {higher} items at {avg_higher:,.0f}"
                    ),
                    severity="moderate",
                    grade=lower,
                ))

        for grade in priced:
            prices = by_grade[grade]
            if len(prices) < 2:
                continue
            mean = sum(prices) / len(prices)
            deviation = max(abs(price - mean) / mean for price in prices)
            if deviation > self.price_deviation_threshold:
                issues.append(EconomyIssue(
                    description=f"Prices of {grade} items vary widely (deviation {round(deviation * 100)}%)",
                    severity="minor",
                    grade=grade,
                ))

        return EconomyValidation(
            is_consistent=not any(issue.severity != "minor" for issue in issues),
            issues=issues,
        )

    def build_item_context(self, owner: str, at_chapter: int) -> str:
        """Inventory block for a generation prompt."""
        lines = ["## Inventory:"]
        owned = self.get_items_by_owner(owner)
        if not owned:
            lines.append("- No notable items")
            return "\n".join(lines)

        by_category: Dict[str, List[TrackedItem]] = {}
        for item in owned:
            by_category.setdefault(item.category, []).append(item)
        for category, items in by_category.items():
            lines.append(f"### {category}:")
            for item in items:
                marker = " [UNUSED FOR A WHILE]" if at_chapter - item.last_mention_chapter > self.stale_after else ""
                lines.append(f"- {item.name} ({item.grade}){marker}")

        reminders = self.get_unused_item_reminders(at_chapter, self.stale_after, owner=owner)
        if reminders:
            lines.append("### Items to bring back:")
            for reminder in reminders[:3]:
                lines.append(f"- {reminder.item_name}: {reminder.suggestion}")
        return "\n".join(lines)

    def detect_items(self, text: str) -> List[DetectedItem]:
        """Scan prose for item mentions against this registry."""
        return detect_items_in_content(text, self._name_index)

    def suggest_names(self, category: str, count: int = 5) -> List[str]:
        return generate_item_name_suggestions(category, self._name_index.keys(), count, rng=self._rng)

    def get_statistics(self, at_chapter: int, forgotten_after: int = 60) -> ItemStatistics:
        return get_item_statistics(self._items.values(), at_chapter, forgotten_after=forgotten_after)


def create_item_tracker(project_id: str, store: Optional[ContentStore] = None, **kwargs) -> ItemTracker:
    """Create a tracker and load any persisted items for the project."""
    return ItemTracker(project_id, store=store, **kwargs).load()
