import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional, Sequence

from db_pool import SQLiteConnectionPool
from errors import ConfigurationError, StoreUnavailableError

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "In progress"
STATUS_COMPLETED = "Completed"

MESSAGE_TYPES = {"student", "ai"}
MESSAGE_SUBTYPES = {"regular", "clarification_question", "clarification_response"}

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def _guard(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as exc:
        logger.warning("Store unavailable during %s: %s", action, exc)
        raise StoreUnavailableError(f"Database unavailable during {action}") from exc


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Single write transaction; rolled back as a whole on any error."""
    with _guard("transaction"):
        with _pool.transaction() as con:
            yield con


def _exec(sql: str, params: Iterable = ()):
    with _guard("write"):
        with _pool.get_connection() as con:
            return con.execute(sql, tuple(params))


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _guard("read"):
        with _pool.get_connection() as con:
            cur = con.execute(sql, tuple(params))
            return cur.fetchall()


def _row_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _guard("init"):
        with _conn() as con:
            con.executescript(
                """
                PRAGMA foreign_keys = ON;
                PRAGMA journal_mode=WAL;

                CREATE TABLE IF NOT EXISTS institutions (
                  id             INTEGER PRIMARY KEY AUTOINCREMENT,
                  name           TEXT NOT NULL,
                  scoring_scale  REAL NOT NULL DEFAULT 10,
                  created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS skill_level_settings (
                  id              INTEGER PRIMARY KEY AUTOINCREMENT,
                  institution_id  INTEGER NOT NULL,
                  "order"         INTEGER NOT NULL,
                  label           TEXT NOT NULL,
                  description     TEXT,
                  lower_limit     REAL,
                  upper_limit     REAL,
                  FOREIGN KEY(institution_id) REFERENCES institutions(id) ON DELETE CASCADE,
                  UNIQUE(institution_id, label)
                );

                CREATE TABLE IF NOT EXISTS assessments (
                  id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                  institution_id       INTEGER,
                  name                 TEXT NOT NULL,
                  case_text            TEXT NOT NULL,
                  case_solution        TEXT,
                  questions_per_skill  INTEGER NOT NULL DEFAULT 1,
                  output_language      TEXT NOT NULL DEFAULT 'en',
                  created_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                  FOREIGN KEY(institution_id) REFERENCES institutions(id)
                );

                CREATE TABLE IF NOT EXISTS skills (
                  id           INTEGER PRIMARY KEY AUTOINCREMENT,
                  name         TEXT NOT NULL,
                  description  TEXT
                );

                CREATE TABLE IF NOT EXISTS skill_levels (
                  id           INTEGER PRIMARY KEY AUTOINCREMENT,
                  skill_id     INTEGER NOT NULL,
                  "order"      INTEGER NOT NULL,
                  label        TEXT NOT NULL,
                  description  TEXT,
                  standard     INTEGER NOT NULL DEFAULT 0,
                  FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_skill_levels_skill ON skill_levels(skill_id, "order");

                CREATE TABLE IF NOT EXISTS assessment_skills (
                  assessment_id  INTEGER NOT NULL,
                  skill_id       INTEGER NOT NULL,
                  weight         REAL NOT NULL DEFAULT 100,
                  PRIMARY KEY (assessment_id, skill_id),
                  FOREIGN KEY(assessment_id) REFERENCES assessments(id) ON DELETE CASCADE,
                  FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS sources (
                  id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                  title               TEXT NOT NULL,
                  authors             TEXT,
                  processing_status   TEXT NOT NULL DEFAULT 'pending',
                  content_embeddings  BLOB,
                  created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS skill_sources (
                  skill_id   INTEGER NOT NULL,
                  source_id  INTEGER NOT NULL,
                  PRIMARY KEY (skill_id, source_id),
                  FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE CASCADE,
                  FOREIGN KEY(source_id) REFERENCES sources(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS attempts (
                  id             INTEGER PRIMARY KEY AUTOINCREMENT,
                  assessment_id  INTEGER NOT NULL,
                  user_id        TEXT NOT NULL,
                  status         TEXT NOT NULL DEFAULT 'In progress',
                  final_grade    REAL NOT NULL DEFAULT 0.0,
                  created_at     TEXT NOT NULL,
                  updated_at     TEXT NOT NULL,
                  completed_at   TEXT,
                  FOREIGN KEY(assessment_id) REFERENCES assessments(id)
                );

                CREATE INDEX IF NOT EXISTS idx_attempts_user ON attempts(assessment_id, user_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS conversation_messages (
                  id               INTEGER PRIMARY KEY AUTOINCREMENT,
                  attempt_id       INTEGER NOT NULL,
                  message_type     TEXT NOT NULL CHECK (message_type IN ('student', 'ai')),
                  message_subtype  TEXT NOT NULL DEFAULT 'regular'
                                   CHECK (message_subtype IN ('regular', 'clarification_question', 'clarification_response')),
                  message_text     TEXT NOT NULL,
                  evaluation_tier  TEXT,
                  created_at       TEXT NOT NULL,
                  FOREIGN KEY(attempt_id) REFERENCES attempts(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_messages_attempt ON conversation_messages(attempt_id, created_at, id);

                CREATE TABLE IF NOT EXISTS assessment_results (
                  id              INTEGER PRIMARY KEY AUTOINCREMENT,
                  attempt_id      INTEGER NOT NULL,
                  skill_id        INTEGER NOT NULL,
                  skill_level_id  INTEGER NOT NULL,
                  feedback        TEXT NOT NULL,
                  grade           REAL,
                  created_at      TEXT NOT NULL,
                  FOREIGN KEY(attempt_id) REFERENCES attempts(id) ON DELETE CASCADE,
                  FOREIGN KEY(skill_level_id) REFERENCES skill_levels(id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_results_attempt_skill
                  ON assessment_results(attempt_id, skill_id);
                """
            )


# -------------- institution settings --------------
def upsert_institution(name: str, scoring_scale: float = 10.0, institution_id: Optional[int] = None) -> int:
    if institution_id is None:
        cur = _exec(
            "INSERT INTO institutions(name, scoring_scale) VALUES (?, ?)",
            (name, float(scoring_scale)),
        )
        return int(cur.lastrowid)
    _exec(
        """
        INSERT INTO institutions(id, name, scoring_scale) VALUES (?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET name = excluded.name, scoring_scale = excluded.scoring_scale
        """,
        (int(institution_id), name, float(scoring_scale)),
    )
    return int(institution_id)


def get_institution(institution_id: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT id, name, scoring_scale FROM institutions WHERE id = ?", (int(institution_id),))
    return _row_dict(rows[0]) if rows else None


def upsert_skill_level_setting(
    institution_id: int,
    order: int,
    label: str,
    lower_limit: Optional[float],
    upper_limit: Optional[float],
    description: Optional[str] = None,
) -> None:
    if lower_limit is not None and upper_limit is not None and lower_limit > upper_limit:
        raise ConfigurationError(f"Setting {label!r}: lower_limit exceeds upper_limit")
    _exec(
        """
        INSERT INTO skill_level_settings(institution_id, "order", label, description, lower_limit, upper_limit)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(institution_id, label) DO UPDATE SET
            "order" = excluded."order",
            description = excluded.description,
            lower_limit = excluded.lower_limit,
            upper_limit = excluded.upper_limit
        """,
        (int(institution_id), int(order), label, description, lower_limit, upper_limit),
    )


def list_skill_level_settings(institution_id: Optional[int]) -> list[Dict[str, Any]]:
    if institution_id is None:
        return []
    rows = _query(
        """
        SELECT "order" AS level_order, label, lower_limit, upper_limit
        FROM skill_level_settings
        WHERE institution_id = ?
        ORDER BY "order"
        """,
        (int(institution_id),),
    )
    return [_row_dict(row) for row in rows]


# -------------- assessment / skill configuration --------------
def create_assessment(
    name: str,
    case_text: str,
    questions_per_skill: int,
    *,
    institution_id: Optional[int] = None,
    case_solution: Optional[str] = None,
    output_language: str = "en",
) -> int:
    if int(questions_per_skill) < 1:
        raise ConfigurationError("questions_per_skill must be at least 1")
    cur = _exec(
        """
        INSERT INTO assessments(institution_id, name, case_text, case_solution, questions_per_skill, output_language)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (institution_id, name, case_text, case_solution, int(questions_per_skill), output_language or "en"),
    )
    return int(cur.lastrowid)


def get_assessment(assessment_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, institution_id, name, case_text, case_solution, questions_per_skill, output_language
        FROM assessments WHERE id = ?
        """,
        (int(assessment_id),),
    )
    return _row_dict(rows[0]) if rows else None


def create_skill(name: str, description: Optional[str] = None) -> int:
    cur = _exec("INSERT INTO skills(name, description) VALUES (?, ?)", (name, description))
    return int(cur.lastrowid)


def add_skill_level(
    skill_id: int,
    order: int,
    label: str,
    description: Optional[str] = None,
    *,
    standard: bool = False,
) -> int:
    cur = _exec(
        """
        INSERT INTO skill_levels(skill_id, "order", label, description, standard)
        VALUES (?, ?, ?, ?, ?)
        """,
        (int(skill_id), int(order), label, description, 1 if standard else 0),
    )
    return int(cur.lastrowid)


def link_skill(assessment_id: int, skill_id: int, weight: float = 100.0) -> None:
    _exec(
        """
        INSERT INTO assessment_skills(assessment_id, skill_id, weight) VALUES (?, ?, ?)
        ON CONFLICT(assessment_id, skill_id) DO UPDATE SET weight = excluded.weight
        """,
        (int(assessment_id), int(skill_id), float(weight)),
    )


def list_assessment_skills(assessment_id: int) -> list[Dict[str, Any]]:
    """Skills of an assessment, each with its ordered levels and weight."""

    skill_rows = _query(
        """
        SELECT s.id AS skill_id, s.name, s.description, aks.weight
        FROM assessment_skills aks
        JOIN skills s ON s.id = aks.skill_id
        WHERE aks.assessment_id = ?
        ORDER BY s.id
        """,
        (int(assessment_id),),
    )
    if not skill_rows:
        return []
    skill_ids = [row["skill_id"] for row in skill_rows]
    placeholders = ",".join("?" for _ in skill_ids)
    level_rows = _query(
        f"""
        SELECT id, skill_id, "order" AS level_order, label, description, standard
        FROM skill_levels
        WHERE skill_id IN ({placeholders})
        ORDER BY skill_id, "order", id
        """,
        skill_ids,
    )
    levels: Dict[int, list[Dict[str, Any]]] = {skill_id: [] for skill_id in skill_ids}
    for row in level_rows:
        levels[row["skill_id"]].append(
            {
                "id": row["id"],
                "order": row["level_order"],
                "label": row["label"],
                "description": row["description"] or "",
                "standard": bool(row["standard"]),
            }
        )
    skills = []
    for row in skill_rows:
        weight = row["weight"]
        skills.append(
            {
                "id": row["skill_id"],
                "name": row["name"],
                "description": row["description"] or "",
                "weight": float(weight) if weight is not None else 100.0,
                "levels": levels.get(row["skill_id"], []),
            }
        )
    return skills


# -------------- sources (ingestion pipeline output) --------------
def create_source(
    title: str,
    content_embeddings: Any = None,
    *,
    authors: Optional[str] = None,
    processing_status: str = "completed",
) -> int:
    payload = content_embeddings
    if payload is not None and not isinstance(payload, (str, bytes)):
        payload = json_dumps(payload)
    cur = _exec(
        """
        INSERT INTO sources(title, authors, processing_status, content_embeddings)
        VALUES (?, ?, ?, ?)
        """,
        (title, authors, processing_status, payload),
    )
    return int(cur.lastrowid)


def link_source(skill_id: int, source_id: int) -> None:
    _exec(
        "INSERT OR IGNORE INTO skill_sources(skill_id, source_id) VALUES (?, ?)",
        (int(skill_id), int(source_id)),
    )


def list_completed_sources(assessment_id: int) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT DISTINCT src.id, src.title, src.authors, src.content_embeddings
        FROM sources src
        JOIN skill_sources ss ON ss.source_id = src.id
        JOIN assessment_skills aks ON aks.skill_id = ss.skill_id
        WHERE aks.assessment_id = ? AND src.processing_status = 'completed'
        ORDER BY src.id
        """,
        (int(assessment_id),),
    )
    return [_row_dict(row) for row in rows]


# -------------- attempts --------------
_ATTEMPT_COLUMNS = "id, assessment_id, user_id, status, final_grade, created_at, updated_at, completed_at"


def get_attempt(attempt_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE id = ?", (int(attempt_id),))
    return _row_dict(rows[0]) if rows else None


def get_or_create_attempt(assessment_id: int, user_id: str) -> Dict[str, Any]:
    """Return the latest attempt of ``user_id`` for the assessment, creating one if needed."""

    with transaction() as con:
        row = con.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS} FROM attempts
            WHERE assessment_id = ? AND user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (int(assessment_id), user_id),
        ).fetchone()
        if row is not None:
            return _row_dict(row)
        now = _utcnow()
        cur = con.execute(
            """
            INSERT INTO attempts(assessment_id, user_id, status, final_grade, created_at, updated_at)
            VALUES (?, ?, ?, 0.0, ?, ?)
            """,
            (int(assessment_id), user_id, STATUS_IN_PROGRESS, now, now),
        )
        created = con.execute(f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE id = ?", (cur.lastrowid,)).fetchone()
    logger.info("Created attempt %s for assessment %s user %s", created["id"], assessment_id, user_id)
    return _row_dict(created)


# -------------- conversation log --------------
def insert_message(
    con: sqlite3.Connection,
    attempt_id: int,
    message_type: str,
    message_text: str,
    *,
    message_subtype: str = "regular",
    evaluation_tier: Optional[str] = None,
) -> int:
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unknown message type: {message_type}")
    if message_subtype not in MESSAGE_SUBTYPES:
        raise ValueError(f"Unknown message subtype: {message_subtype}")
    now = _utcnow()
    cur = con.execute(
        """
        INSERT INTO conversation_messages(attempt_id, message_type, message_subtype, message_text, evaluation_tier, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (int(attempt_id), message_type, message_subtype, message_text, evaluation_tier, now),
    )
    con.execute("UPDATE attempts SET updated_at = ? WHERE id = ?", (now, int(attempt_id)))
    return int(cur.lastrowid)


def append_message(
    attempt_id: int,
    message_type: str,
    message_text: str,
    *,
    message_subtype: str = "regular",
    evaluation_tier: Optional[str] = None,
) -> int:
    with transaction() as con:
        return insert_message(
            con,
            attempt_id,
            message_type,
            message_text,
            message_subtype=message_subtype,
            evaluation_tier=evaluation_tier,
        )


def list_messages(attempt_id: int) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, attempt_id, message_type, message_subtype, message_text, evaluation_tier, created_at
        FROM conversation_messages
        WHERE attempt_id = ?
        ORDER BY created_at ASC, id ASC
        """,
        (int(attempt_id),),
    )
    return [_row_dict(row) for row in rows]


# -------------- results (used inside the finalize transaction) --------------
_RESULT_SELECT = """
    SELECT ar.id, ar.attempt_id, ar.skill_id, ar.skill_level_id, ar.feedback, ar.grade,
           s.name AS skill_name, sl.label AS skill_level_label, sl."order" AS skill_level_order,
           COALESCE(aks.weight, 100) AS weight
    FROM assessment_results ar
    JOIN attempts a ON a.id = ar.attempt_id
    JOIN skills s ON s.id = ar.skill_id
    JOIN skill_levels sl ON sl.id = ar.skill_level_id
    LEFT JOIN assessment_skills aks ON aks.assessment_id = a.assessment_id AND aks.skill_id = ar.skill_id
    WHERE ar.attempt_id = ?
    ORDER BY ar.skill_id
"""


def fetch_results(con: sqlite3.Connection, attempt_id: int) -> list[Dict[str, Any]]:
    return [_row_dict(row) for row in con.execute(_RESULT_SELECT, (int(attempt_id),)).fetchall()]


def list_results(attempt_id: int) -> list[Dict[str, Any]]:
    return [_row_dict(row) for row in _query(_RESULT_SELECT, (int(attempt_id),))]


def insert_results(con: sqlite3.Connection, attempt_id: int, rows: Sequence[Dict[str, Any]]) -> int:
    """Insert result rows; rows for an already-graded skill are ignored."""

    now = _utcnow()
    inserted = 0
    for row in rows:
        cur = con.execute(
            """
            INSERT INTO assessment_results(attempt_id, skill_id, skill_level_id, feedback, grade, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(attempt_id, skill_id) DO NOTHING
            """,
            (
                int(attempt_id),
                int(row["skill_id"]),
                int(row["skill_level_id"]),
                row["feedback"],
                row.get("grade"),
                now,
            ),
        )
        inserted += cur.rowcount
    return inserted


def mark_attempt_completed(con: sqlite3.Connection, attempt_id: int, final_grade: float) -> bool:
    now = _utcnow()
    cur = con.execute(
        """
        UPDATE attempts
        SET status = ?, completed_at = ?, updated_at = ?, final_grade = ?
        WHERE id = ? AND status != ?
        """,
        (STATUS_COMPLETED, now, now, float(final_grade), int(attempt_id), STATUS_COMPLETED),
    )
    return cur.rowcount == 1


def get_attempt_in(con: sqlite3.Connection, attempt_id: int) -> Optional[Dict[str, Any]]:
    row = con.execute(f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE id = ?", (int(attempt_id),)).fetchone()
    return _row_dict(row)
