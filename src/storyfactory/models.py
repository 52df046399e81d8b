"""
Record types for the serial fiction factory.

Every row that crosses the content-store boundary, and every structured
result returned by the trackers, queue and orchestrator, is one of these
Pydantic models. Timestamps are ISO-8601 strings in UTC.
"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator


JobType = Literal[
    "write_chapter",
    "batch_write",
    "analyze_chapter",
    "generate_summary",
    "export_story",
]
JobStatus = Literal["pending", "processing", "completed", "failed", "retrying", "timeout"]

JOB_TYPES = ("write_chapter", "batch_write", "analyze_chapter", "generate_summary", "export_story")
JOB_STATUSES = ("pending", "processing", "completed", "failed", "retrying", "timeout")


class Job(BaseModel):
    """A unit of deferred work in the persistent job queue."""
    id: str
    owner_id: str
    type: JobType
    status: JobStatus = "pending"
    priority: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    error: Optional[str] = None
    attempts: int = Field(0, ge=0)
    max_attempts: int = Field(3, ge=1)
    timeout_ms: int = Field(..., gt=0)
    scheduled_for: str
    progress: int = Field(0, ge=0, le=100)
    progress_message: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None


class QueueStats(BaseModel):
    """Aggregate job counts for dashboards."""
    counts: Dict[str, int] = Field(default_factory=dict)
    pending_total: int = 0
    processing: int = 0
    completed: int = 0
    failed_total: int = 0
    avg_processing_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Progression
# ---------------------------------------------------------------------------

BreakthroughDifficulty = Literal["easy", "medium", "hard", "bottleneck"]
ProgressionEventType = Literal["breakthrough", "skill_learned", "item_acquired", "power_loss", "transformation"]


class PowerRealm(BaseModel):
    """One rung of a power-system ladder."""
    name: str
    rank: int
    sub_levels: int = Field(1, ge=1)
    description: str = ""
    abilities: List[str] = Field(default_factory=list)
    breakthrough_difficulty: BreakthroughDifficulty = "medium"


class InventoryEntry(BaseModel):
    """An item carried by a character, as seen by the progression tracker."""
    name: str
    type: str = ""
    grade: str = ""
    acquired_chapter: int = 0


class ProgressionState(BaseModel):
    """Power state of one character in one project."""
    project_id: str = ""
    character_name: str
    realm: str
    level: int = Field(1, ge=1)
    abilities: List[str] = Field(default_factory=list)
    items: List[InventoryEntry] = Field(default_factory=list)
    total_breakthroughs: int = 0
    last_breakthrough_chapter: int = 0


class ProgressionEvent(BaseModel):
    """Append-only log entry for a character's progression."""
    id: str
    project_id: str = ""
    character_name: str
    chapter: int
    event_type: ProgressionEventType
    from_state: Optional[str] = None
    to_state: str
    trigger: Optional[str] = None
    consequences: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None


class ProgressionValidation(BaseModel):
    """Outcome of a breakthrough or skill validation."""
    is_valid: bool = True
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class TrackerResult(BaseModel):
    """Result of a tracker mutation. Validation problems never raise."""
    success: bool
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    changed: bool = True


class ExpectedRealm(BaseModel):
    realm: str
    level: int


class GradeValidation(BaseModel):
    """Whether an item grade is plausible at a given story position."""
    is_valid: bool
    expected_max_grade: str
    warning: Optional[str] = None


class EnemyScalingValidation(BaseModel):
    """Plausibility check of a battle outcome against the power gap."""
    is_valid: bool = True
    power_gap: int = 0
    issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

ItemCategory = Literal[
    "weapon", "armor", "accessory", "consumable", "material", "technique", "artifact", "currency"
]
ItemStatus = Literal["active", "consumed", "destroyed", "lost"]


class OwnerRecord(BaseModel):
    owner: str
    chapter: int


class StatusChange(BaseModel):
    status: ItemStatus
    chapter: int


class TrackedItem(BaseModel):
    """A named item registered in one project."""
    id: str
    project_id: str = ""
    name: str = Field(..., min_length=1)
    alternate_name: Optional[str] = None
    category: ItemCategory
    grade: str
    description: str = ""
    effects: List[str] = Field(default_factory=list)
    restrictions: List[str] = Field(default_factory=list)
    estimated_value: Optional[float] = None
    currency: Optional[str] = None
    first_mention_chapter: int
    last_mention_chapter: int
    mention_count: int = 1
    current_owner: Optional[str] = None
    owner_history: List[OwnerRecord] = Field(default_factory=list)
    status: ItemStatus = "active"
    status_change_chapter: Optional[int] = None
    status_history: List[StatusChange] = Field(default_factory=list)
    created_at: Optional[str] = None


class SimilarItem(BaseModel):
    name: str
    similarity: int


class ItemNameValidation(BaseModel):
    is_unique: bool
    similar_items: List[SimilarItem] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    rename_suggestions: List[str] = Field(default_factory=list)


class ItemRegistration(BaseModel):
    success: bool
    item: Optional[TrackedItem] = None
    warnings: List[str] = Field(default_factory=list)

    @property
    def warning(self) -> Optional[str]:
        return "; ".join(self.warnings) if self.warnings else None


class ItemUsageReminder(BaseModel):
    item_name: str
    category: str
    last_mention_chapter: int
    chapters_since_last_use: int
    suggestion: str


class EconomyIssue(BaseModel):
    description: str
    severity: Literal["minor", "moderate", "major"]
    grade: Optional[str] = None


class EconomyValidation(BaseModel):
    is_consistent: bool
    issues: List[EconomyIssue] = Field(default_factory=list)


class DetectedItem(BaseModel):
    """A best-effort item mention found in prose."""
    name: str
    category: str
    grade: Optional[str] = None
    context: str = ""
    is_new: bool = True


class MentionCount(BaseModel):
    name: str
    mentions: int


class ItemStatistics(BaseModel):
    total_items: int = 0
    by_category: Dict[str, int] = Field(default_factory=dict)
    by_grade: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[str, int] = Field(default_factory=dict)
    avg_mentions_per_item: float = 0.0
    forgotten_items: List[str] = Field(default_factory=list)
    most_mentioned: List[MentionCount] = Field(default_factory=list)
    recent_acquisitions: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Production and writing
# ---------------------------------------------------------------------------

ProductionStatus = Literal["active", "paused", "finished"]
WriteTaskStatus = Literal["pending", "writing", "rewriting", "completed", "failed"]
ErrorSeverity = Literal["info", "warning", "error", "critical"]


class ArcOutline(BaseModel):
    arc_number: int
    title: str
    start_chapter: int
    end_chapter: int
    summary: str = ""


class PlotPoint(BaseModel):
    chapter: int
    event: str


class Blueprint(BaseModel):
    """Pre-existing outline a production writes chapters against."""
    id: str
    title: str
    genre: str = "tu tiên"
    world_name: str = ""
    power_system_name: str = ""
    power_system: List[PowerRealm] = Field(default_factory=list)
    protagonist_name: str = ""
    protagonist_description: str = ""
    synopsis: str = ""
    arcs: List[ArcOutline] = Field(default_factory=list)
    plot_points: List[PlotPoint] = Field(default_factory=list)
    twists: List[PlotPoint] = Field(default_factory=list)


class AuthorProfile(BaseModel):
    """Virtual author persona assigned to a production."""
    id: str
    name: str
    persona_prompt: str = ""
    writing_style: str = ""
    total_chapters_written: int = 0
    avg_quality_score: float = 0.0


class Production(BaseModel):
    """Generation progress of one serialized story."""
    id: str
    project_id: str
    novel_id: str
    blueprint_id: str
    author_id: str
    status: ProductionStatus = "active"
    current_chapter: int = 0
    total_chapters: int = Field(..., ge=1)
    chapters_written_today: int = 0
    last_write_date: Optional[str] = None
    last_chapter_summary: Optional[str] = None
    quality_scores: List[float] = Field(default_factory=list)
    avg_chapter_quality: float = 0.0
    total_rewrites: int = 0
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None
    updated_at: Optional[str] = None


class WriteTask(BaseModel):
    """One chapter waiting to be written."""
    id: str
    production_id: str
    chapter_number: int = Field(..., ge=1)
    arc_number: Optional[int] = None
    status: WriteTaskStatus = "pending"
    attempt_count: int = 0
    plot_objectives: str = ""
    tension_target: int = Field(50, ge=0, le=100)
    special_instructions: str = ""
    scheduled_time: Optional[str] = None
    scheduled_slot: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result_chapter_id: Optional[str] = None
    content_preview: Optional[str] = None
    word_count: Optional[int] = None
    quality_score: Optional[float] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None


class Chapter(BaseModel):
    id: str
    novel_id: str
    production_id: Optional[str] = None
    chapter_number: int
    title: str
    content: str
    word_count: int = 0
    quality_score: Optional[float] = None
    created_at: Optional[str] = None


class PublishEntry(BaseModel):
    id: str
    production_id: str
    chapter_id: str
    chapter_number: int
    scheduled_time: str
    publish_slot: str = "evening"
    status: Literal["scheduled", "published", "cancelled"] = "scheduled"
    created_at: Optional[str] = None


class FactoryErrorEntry(BaseModel):
    """Operator-facing error log entry."""
    id: str
    production_id: Optional[str] = None
    chapter_number: Optional[int] = None
    error_type: str
    error_code: Optional[str] = None
    error_message: str
    error_details: Dict[str, Any] = Field(default_factory=dict)
    severity: ErrorSeverity = "warning"
    requires_attention: bool = False
    status: Literal["new", "acknowledged", "resolved"] = "new"
    created_at: Optional[str] = None


class QualityResult(BaseModel):
    """Verdict of a quality scorer on the 0-100 scale."""
    score: float
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    @field_validator("score")
    @classmethod
    def clamp_score(cls, v: float) -> float:
        return max(0.0, min(100.0, float(v)))


class TaskOutcome(BaseModel):
    """Result of one write-task inside a batch."""
    task_id: str
    chapter_number: int
    status: Literal["completed", "failed"]
    chapter_id: Optional[str] = None
    quality_score: Optional[float] = None
    rewritten: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None


class BatchResult(BaseModel):
    """Collected outcomes of one orchestrator batch."""
    outcomes: List[TaskOutcome] = Field(default_factory=list)

    @property
    def written(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "completed")

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    @property
    def rewritten(self) -> int:
        return sum(1 for o in self.outcomes if o.rewritten)

    def summary(self) -> Dict[str, Any]:
        return {
            "processed": len(self.outcomes),
            "written": self.written,
            "failed": self.failed,
            "rewritten": self.rewritten,
            "outcomes": [o.model_dump() for o in self.outcomes],
        }
