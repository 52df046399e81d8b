"""
SQLite-backed content store.

Persists jobs, productions, write-tasks, chapters, the publish schedule,
the operator error log and the tracker backing tables. List and dict
columns are stored as JSON text. Claims run inside BEGIN IMMEDIATE so
several worker processes can share one database file.
"""

import json
import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel

from .repository import ContentStore
from ..models import (
    AuthorProfile,
    Blueprint,
    Chapter,
    FactoryErrorEntry,
    Job,
    Production,
    ProgressionEvent,
    ProgressionState,
    PublishEntry,
    TrackedItem,
    WriteTask,
)

logger = logging.getLogger(__name__)

# table -> (record type, JSON columns)
TABLES: Dict[str, Tuple[Type[BaseModel], Tuple[str, ...]]] = {
    "jobs": (Job, ("payload", "result")),
    "productions": (Production, ("quality_scores",)),
    "blueprints": (Blueprint, ("power_system", "arcs", "plot_points", "twists")),
    "authors": (AuthorProfile, ()),
    "write_tasks": (WriteTask, ()),
    "chapters": (Chapter, ()),
    "publish_schedule": (PublishEntry, ()),
    "factory_errors": (FactoryErrorEntry, ("error_details",)),
    "character_states": (ProgressionState, ("abilities", "items")),
    "progression_events": (ProgressionEvent, ("consequences",)),
    "tracked_items": (TrackedItem, ("effects", "restrictions", "owner_history", "status_history")),
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        priority INTEGER NOT NULL DEFAULT 0,
        payload TEXT,
        result TEXT,
        error TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        timeout_ms INTEGER NOT NULL,
        scheduled_for TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        progress_message TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_dequeue ON jobs(status, scheduled_for, priority DESC, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS productions (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        novel_id TEXT NOT NULL,
        blueprint_id TEXT NOT NULL,
        author_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        current_chapter INTEGER NOT NULL DEFAULT 0,
        total_chapters INTEGER NOT NULL,
        chapters_written_today INTEGER NOT NULL DEFAULT 0,
        last_write_date TEXT,
        last_chapter_summary TEXT,
        quality_scores TEXT,
        avg_chapter_quality REAL NOT NULL DEFAULT 0,
        total_rewrites INTEGER NOT NULL DEFAULT 0,
        consecutive_errors INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        last_error_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blueprints (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        genre TEXT,
        world_name TEXT,
        power_system_name TEXT,
        power_system TEXT,
        protagonist_name TEXT,
        protagonist_description TEXT,
        synopsis TEXT,
        arcs TEXT,
        plot_points TEXT,
        twists TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS authors (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        persona_prompt TEXT,
        writing_style TEXT,
        total_chapters_written INTEGER NOT NULL DEFAULT 0,
        avg_quality_score REAL NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS write_tasks (
        id TEXT PRIMARY KEY,
        production_id TEXT NOT NULL,
        chapter_number INTEGER NOT NULL,
        arc_number INTEGER,
        status TEXT NOT NULL DEFAULT 'pending',
        attempt_count INTEGER NOT NULL DEFAULT 0,
        plot_objectives TEXT,
        tension_target INTEGER NOT NULL DEFAULT 50,
        special_instructions TEXT,
        scheduled_time TEXT,
        scheduled_slot TEXT,
        started_at TEXT,
        completed_at TEXT,
        result_chapter_id TEXT,
        content_preview TEXT,
        word_count INTEGER,
        quality_score REAL,
        error_message TEXT,
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_write_tasks_pending ON write_tasks(status, scheduled_time)",
    "CREATE INDEX IF NOT EXISTS idx_write_tasks_production ON write_tasks(production_id, chapter_number)",
    """
    CREATE TABLE IF NOT EXISTS chapters (
        id TEXT PRIMARY KEY,
        novel_id TEXT NOT NULL,
        production_id TEXT,
        chapter_number INTEGER NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        word_count INTEGER NOT NULL DEFAULT 0,
        quality_score REAL,
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chapters_novel ON chapters(novel_id, chapter_number)",
    """
    CREATE TABLE IF NOT EXISTS publish_schedule (
        id TEXT PRIMARY KEY,
        production_id TEXT NOT NULL,
        chapter_id TEXT NOT NULL,
        chapter_number INTEGER NOT NULL,
        scheduled_time TEXT NOT NULL,
        publish_slot TEXT,
        status TEXT NOT NULL DEFAULT 'scheduled',
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_publish_production ON publish_schedule(production_id, scheduled_time)",
    """
    CREATE TABLE IF NOT EXISTS factory_errors (
        id TEXT PRIMARY KEY,
        production_id TEXT,
        chapter_number INTEGER,
        error_type TEXT NOT NULL,
        error_code TEXT,
        error_message TEXT NOT NULL,
        error_details TEXT,
        severity TEXT NOT NULL DEFAULT 'warning',
        requires_attention INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'new',
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_factory_errors_created ON factory_errors(created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS character_states (
        project_id TEXT NOT NULL,
        character_name TEXT NOT NULL,
        realm TEXT NOT NULL,
        level INTEGER NOT NULL DEFAULT 1,
        abilities TEXT,
        items TEXT,
        total_breakthroughs INTEGER NOT NULL DEFAULT 0,
        last_breakthrough_chapter INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (project_id, character_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS progression_events (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        character_name TEXT NOT NULL,
        chapter INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        "trigger" TEXT,
        consequences TEXT,
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_progression_events_project ON progression_events(project_id, chapter)",
    """
    CREATE TABLE IF NOT EXISTS tracked_items (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        alternate_name TEXT,
        category TEXT NOT NULL,
        grade TEXT NOT NULL,
        description TEXT,
        effects TEXT,
        restrictions TEXT,
        estimated_value REAL,
        currency TEXT,
        first_mention_chapter INTEGER NOT NULL,
        last_mention_chapter INTEGER NOT NULL,
        mention_count INTEGER NOT NULL DEFAULT 1,
        current_owner TEXT,
        owner_history TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        status_change_chapter INTEGER,
        status_history TEXT,
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tracked_items_project ON tracked_items(project_id)",
]

# Columns added after the first release; applied to databases that predate them.
ADDED_COLUMNS = [
    ("blueprints", "power_system", "TEXT"),
]


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


class SQLiteContentStore(ContentStore):
    """
    Content store backed by a single SQLite file.

    Every operation opens its own short-lived connection, so one instance
    can be shared between threads (the job watchdog runs on timer threads).
    """

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        """
        Initialize the store and create the schema if needed.

        Args:
            db_path: Path to the SQLite database file
            busy_timeout: Seconds to wait for a competing writer's lock
        """
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    # -- connection handling -------------------------------------------------

    def get_db_connection(self) -> sqlite3.Connection:
        """Get a database connection in autocommit mode."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def db_transaction(self, immediate: bool = False):
        """
        Context manager for database transactions.

        Args:
            immediate: Take the write lock up front (BEGIN IMMEDIATE) so a
                read-then-update sequence cannot interleave with another writer
        """
        conn = self.get_db_connection()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def init_database(self) -> None:
        """Initialize the database schema."""
        conn = self.get_db_connection()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)
            for table, column, column_type in ADDED_COLUMNS:
                existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
                if column not in existing:
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
                    logger.info(f"Added column {table}.{column}")
        finally:
            conn.close()
        logger.debug(f"Database schema ready at {self.db_path}")

    # -- generic row mapping -------------------------------------------------

    def _encode(self, table: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        model_cls, json_columns = TABLES[table]
        unknown = set(fields) - set(model_cls.model_fields)
        if unknown:
            raise ValueError(f"Unknown column(s) for {table}: {sorted(unknown)}")
        encoded = {}
        for key, value in fields.items():
            if key in json_columns and value is not None:
                value = json.dumps(value, ensure_ascii=False, default=_json_default)
            elif isinstance(value, BaseModel):
                value = json.dumps(value.model_dump(), ensure_ascii=False)
            encoded[key] = value
        return encoded

    def _decode(self, table: str, row: Optional[sqlite3.Row]):
        if row is None:
            return None
        model_cls, json_columns = TABLES[table]
        data = dict(row)
        for key in json_columns:
            if data.get(key) is not None:
                data[key] = json.loads(data[key])
            else:
                # NULL falls back to the field default
                data.pop(key, None)
        return model_cls.model_validate(data)

    def _insert(self, table: str, record: BaseModel, replace: bool = False) -> None:
        values = self._encode(table, record.model_dump())
        columns = ",".join(f'"{c}"' for c in values)
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        with self.db_transaction() as conn:
            conn.execute(
                f"{verb} INTO {table} ({columns}) VALUES ({_placeholders(values)})",
                tuple(values.values()),
            )

    def _get(self, table: str, key_value: str):
        conn = self.get_db_connection()
        try:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (key_value,)).fetchone()
        finally:
            conn.close()
        return self._decode(table, row)

    def _update(
        self,
        table: str,
        key_value: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        if not fields:
            return False
        values = self._encode(table, fields)
        assignments = ",".join(f'"{c}" = ?' for c in values)
        sql = f"UPDATE {table} SET {assignments} WHERE id = ?"
        params: List[Any] = list(values.values()) + [key_value]
        if expected_statuses is not None:
            statuses = list(expected_statuses)
            sql += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        with self.db_transaction() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount == 1

    def _select(self, table: str, sql: str, params: Iterable[Any] = ()) -> list:
        conn = self.get_db_connection()
        try:
            rows = conn.execute(sql, tuple(params)).fetchall()
        finally:
            conn.close()
        return [self._decode(table, row) for row in rows]

    # -- jobs ------------------------------------------------------------------

    def insert_job(self, job: Job) -> None:
        self._insert("jobs", job)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._get("jobs", job_id)

    def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        return self._update("jobs", job_id, fields, expected_statuses)

    def claim_next_job(self, now: str, eligible_statuses: Iterable[str]) -> Optional[Job]:
        statuses = list(eligible_statuses)
        marks = _placeholders(statuses)
        with self.db_transaction(immediate=True) as conn:
            row = conn.execute(
                f"""
                SELECT id FROM jobs
                WHERE status IN ({marks}) AND scheduled_for <= ?
                ORDER BY priority DESC, created_at ASC, rowid ASC
                LIMIT 1
                """,
                (*statuses, now),
            ).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = 'processing', attempts = attempts + 1,
                    started_at = ?, updated_at = ?
                WHERE id = ? AND status IN ({marks})
                """,
                (now, now, row["id"], *statuses),
            )
            if cursor.rowcount != 1:
                return None
            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
        return self._decode("jobs", claimed)

    def list_jobs(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: int = 20
    ) -> List[Job]:
        clauses, params = [], []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if statuses:
            statuses = list(statuses)
            clauses.append(f"status IN ({_placeholders(statuses)})")
            params.extend(statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        return self._select(
            "jobs",
            f"SELECT * FROM jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            params,
        )

    def delete_jobs_completed_before(self, cutoff: str, statuses: Iterable[str]) -> int:
        statuses = list(statuses)
        with self.db_transaction() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM jobs
                WHERE status IN ({_placeholders(statuses)})
                  AND completed_at IS NOT NULL AND completed_at < ?
                """,
                (*statuses, cutoff),
            )
            return cursor.rowcount

    def job_stats_rows(self) -> List[Dict[str, Any]]:
        conn = self.get_db_connection()
        try:
            rows = conn.execute("SELECT status, started_at, completed_at FROM jobs").fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    # -- productions and context --------------------------------------------

    def save_production(self, production: Production) -> None:
        self._insert("productions", production, replace=True)

    def get_production(self, production_id: str) -> Optional[Production]:
        return self._get("productions", production_id)

    def update_production(self, production_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("productions", production_id, fields)

    def save_blueprint(self, blueprint: Blueprint) -> None:
        self._insert("blueprints", blueprint, replace=True)

    def get_blueprint(self, blueprint_id: str) -> Optional[Blueprint]:
        return self._get("blueprints", blueprint_id)

    def save_author(self, author: AuthorProfile) -> None:
        self._insert("authors", author, replace=True)

    def get_author(self, author_id: str) -> Optional[AuthorProfile]:
        return self._get("authors", author_id)

    def update_author(self, author_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("authors", author_id, fields)

    # -- write tasks -----------------------------------------------------------

    def insert_write_task(self, task: WriteTask) -> None:
        self._insert("write_tasks", task)

    def get_write_task(self, task_id: str) -> Optional[WriteTask]:
        return self._get("write_tasks", task_id)

    def claim_write_tasks(
        self,
        limit: int,
        now: str,
        task_ids: Optional[Iterable[str]] = None
    ) -> List[WriteTask]:
        sql = """
            SELECT id FROM write_tasks
            WHERE status = 'pending'
              AND production_id NOT IN (SELECT id FROM productions WHERE status != 'active')
        """
        params: List[Any] = []
        if task_ids is not None:
            task_ids = list(task_ids)
            if not task_ids:
                return []
            sql += f" AND id IN ({_placeholders(task_ids)})"
            params.extend(task_ids)
        sql += " ORDER BY scheduled_time IS NULL, scheduled_time ASC, chapter_number ASC, rowid ASC LIMIT ?"
        params.append(limit)

        claimed: List[WriteTask] = []
        with self.db_transaction(immediate=True) as conn:
            ids = [row["id"] for row in conn.execute(sql, params).fetchall()]
            for task_id in ids:
                cursor = conn.execute(
                    """
                    UPDATE write_tasks
                    SET status = 'writing', attempt_count = attempt_count + 1,
                        started_at = ?, error_message = NULL
                    WHERE id = ? AND status = 'pending'
                    """,
                    (now, task_id),
                )
                if cursor.rowcount == 1:
                    row = conn.execute("SELECT * FROM write_tasks WHERE id = ?", (task_id,)).fetchone()
                    claimed.append(self._decode("write_tasks", row))
        return claimed

    def update_write_task(self, task_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("write_tasks", task_id, fields)

    def list_write_tasks(
        self,
        production_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[WriteTask]:
        sql = "SELECT * FROM write_tasks WHERE production_id = ?"
        params: List[Any] = [production_id]
        if statuses:
            statuses = list(statuses)
            sql += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        return self._select("write_tasks", sql + " ORDER BY chapter_number ASC", params)

    # -- chapters, publishing, error log ---------------------------------------

    def insert_chapter(self, chapter: Chapter) -> None:
        self._insert("chapters", chapter)

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        return self._get("chapters", chapter_id)

    def list_chapters(self, novel_id: str) -> List[Chapter]:
        return self._select(
            "chapters",
            "SELECT * FROM chapters WHERE novel_id = ? ORDER BY chapter_number ASC",
            (novel_id,),
        )

    def insert_publish_entry(self, entry: PublishEntry) -> None:
        self._insert("publish_schedule", entry)

    def list_publish_entries(self, production_id: str) -> List[PublishEntry]:
        return self._select(
            "publish_schedule",
            "SELECT * FROM publish_schedule WHERE production_id = ? ORDER BY scheduled_time ASC",
            (production_id,),
        )

    def insert_factory_error(self, entry: FactoryErrorEntry) -> None:
        self._insert("factory_errors", entry)

    def list_factory_errors(
        self,
        production_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[FactoryErrorEntry]:
        clauses, params = [], []
        if production_id is not None:
            clauses.append("production_id = ?")
            params.append(production_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        return self._select(
            "factory_errors",
            f"SELECT * FROM factory_errors {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            params,
        )

    # -- tracker backing tables ------------------------------------------------

    def save_character_state(self, state: ProgressionState) -> None:
        self._insert("character_states", state, replace=True)

    def load_character_states(self, project_id: str) -> List[ProgressionState]:
        return self._select(
            "character_states",
            "SELECT * FROM character_states WHERE project_id = ? ORDER BY character_name",
            (project_id,),
        )

    def insert_progression_event(self, event: ProgressionEvent) -> None:
        self._insert("progression_events", event)

    def load_progression_events(self, project_id: str) -> List[ProgressionEvent]:
        return self._select(
            "progression_events",
            "SELECT * FROM progression_events WHERE project_id = ? ORDER BY chapter ASC, rowid ASC",
            (project_id,),
        )

    def save_tracked_item(self, item: TrackedItem) -> None:
        self._insert("tracked_items", item, replace=True)

    def load_tracked_items(self, project_id: str) -> List[TrackedItem]:
        return self._select(
            "tracked_items",
            "SELECT * FROM tracked_items WHERE project_id = ? ORDER BY first_mention_chapter, rowid",
            (project_id,),
        )
