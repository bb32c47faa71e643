import json
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_MASTERY_COUNTERS = frozenset(
    {
        "good_attempts",
        "bad_attempts",
        "tokens_earned",
        "total_questions_answered",
        "correct_answers",
        "sessions_completed",
    }
)
_MASTERY_ASSIGNABLE = frozenset(
    {
        "test_taken",
        "mastery_level",
        "good_attempts",
        "bad_attempts",
        "current_step",
        "streak_current",
        "streak_best",
        "last_played",
    }
)
_SUBJECT_ASSIGNABLE = frozenset(
    {
        "total_attempts",
        "correct_attempts",
        "mastery_level",
        "is_unlocked",
        "next_grade_unlocked",
        "downgraded",
    }
)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def close() -> None:
    """Close the idle pooled connections; the pool reopens them on demand."""
    _pool.close_all()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _run(con: Optional[sqlite3.Connection], sql: str, params: Iterable = ()):
    """Execute inside ``con`` when given (caller commits), else autocommit."""
    if con is not None:
        return con.execute(sql, params)
    return _exec(sql, params)


def _fetch(con: Optional[sqlite3.Connection], sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    if con is not None:
        return con.execute(sql, params).fetchall()
    return _query(sql, params)


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Yield a connection holding a write lock; commit on success, roll back on error."""
    with _pool.get_connection() as con:
        con.execute("BEGIN IMMEDIATE")
        try:
            yield con
        except BaseException:
            con.rollback()
            raise
        con.commit()


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              user_id     TEXT PRIMARY KEY,
              grade       TEXT NOT NULL DEFAULT '3',
              tokens      INTEGER NOT NULL DEFAULT 0,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS fact_mastery (
              user_id                  TEXT NOT NULL,
              operator                 TEXT NOT NULL,
              test_taken               INTEGER NOT NULL DEFAULT 0,
              mastery_level            INTEGER NOT NULL DEFAULT 0,
              good_attempts            INTEGER NOT NULL DEFAULT 0,
              bad_attempts             INTEGER NOT NULL DEFAULT 0,
              current_step             INTEGER NOT NULL DEFAULT 0,
              tokens_earned            INTEGER NOT NULL DEFAULT 0,
              total_questions_answered INTEGER NOT NULL DEFAULT 0,
              correct_answers          INTEGER NOT NULL DEFAULT 0,
              streak_current           INTEGER NOT NULL DEFAULT 0,
              streak_best              INTEGER NOT NULL DEFAULT 0,
              sessions_completed       INTEGER NOT NULL DEFAULT 0,
              last_played              TIMESTAMP,
              created_at               TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at               TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (user_id, operator),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS fact_stage_completions (
              user_id       TEXT NOT NULL,
              operator      TEXT NOT NULL,
              stage         TEXT NOT NULL,
              seq           INTEGER NOT NULL,
              source        TEXT NOT NULL DEFAULT 'assessment',
              completed_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (user_id, operator, stage),
              FOREIGN KEY(user_id, operator) REFERENCES fact_mastery(user_id, operator) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS subject_mastery (
              id                  INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id             TEXT NOT NULL,
              subject             TEXT NOT NULL,
              grade               TEXT NOT NULL,
              total_attempts      INTEGER NOT NULL DEFAULT 0,
              correct_attempts    INTEGER NOT NULL DEFAULT 0,
              mastery_level       INTEGER NOT NULL DEFAULT 0,
              is_unlocked         INTEGER NOT NULL DEFAULT 1,
              next_grade_unlocked INTEGER NOT NULL DEFAULT 0,
              downgraded          INTEGER NOT NULL DEFAULT 0,
              last_practiced      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(user_id, subject, grade),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_subject_mastery_user ON subject_mastery(user_id, subject);

            CREATE TABLE IF NOT EXISTS fact_catalog (
              id           TEXT PRIMARY KEY,
              operation    TEXT NOT NULL,
              operand1     INTEGER NOT NULL,
              operand2     INTEGER NOT NULL,
              answer       INTEGER NOT NULL,
              fact_type    TEXT,
              grade_levels TEXT,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_fact_catalog_type ON fact_catalog(operation, fact_type);

            CREATE TABLE IF NOT EXISTS module_history (
              id                  INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id             TEXT NOT NULL,
              module_name         TEXT NOT NULL,
              run_type            TEXT NOT NULL,
              grade_level         TEXT,
              questions_total     INTEGER NOT NULL DEFAULT 0,
              questions_correct   INTEGER NOT NULL DEFAULT 0,
              time_spent_seconds  REAL,
              tokens_earned       INTEGER NOT NULL DEFAULT 0,
              properties          TEXT,
              completed_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_module_history_user ON module_history(user_id, completed_at DESC);
            """
        )
        con.commit()


# -------------- users --------------
def _default_grade() -> str:
    return (os.getenv("DEFAULT_USER_GRADE") or "3").strip().upper()


def ensure_user(user_id: str, grade: Optional[str] = None, con: Optional[sqlite3.Connection] = None) -> Dict[str, Any]:
    """Create ``user_id`` if missing and return its row."""
    _run(
        con,
        "INSERT OR IGNORE INTO users (user_id, grade) VALUES (?, ?)",
        (user_id, str(grade) if grade is not None else _default_grade()),
    )
    user = get_user(user_id, con=con)
    if user is None:
        raise RuntimeError(f"user {user_id!r} could not be created")
    return user


def get_user(user_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _fetch(con, "SELECT user_id, grade, tokens, created_at, updated_at FROM users WHERE user_id = ?", (user_id,))
    return dict(rows[0]) if rows else None


def set_user_grade(user_id: str, grade: str, con: Optional[sqlite3.Connection] = None) -> None:
    _run(
        con,
        "UPDATE users SET grade = ?, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
        (str(grade), user_id),
    )


def add_user_tokens(user_id: str, amount: int, con: Optional[sqlite3.Connection] = None) -> None:
    _run(
        con,
        "UPDATE users SET tokens = COALESCE(tokens, 0) + ?, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
        (int(amount), user_id),
    )


# -------------- fact mastery --------------
def _mastery_row_to_dict(row: sqlite3.Row, types_complete: List[str]) -> Dict[str, Any]:
    record = dict(row)
    record["test_taken"] = bool(record["test_taken"])
    record["mastery_level"] = bool(record["mastery_level"])
    record["types_complete"] = types_complete
    return record


def list_types_complete(user_id: str, operator: str, con: Optional[sqlite3.Connection] = None) -> List[str]:
    rows = _fetch(
        con,
        "SELECT stage FROM fact_stage_completions WHERE user_id = ? AND operator = ? ORDER BY seq",
        (user_id, operator),
    )
    return [row["stage"] for row in rows]


def get_mastery_record(user_id: str, operator: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _fetch(con, "SELECT * FROM fact_mastery WHERE user_id = ? AND operator = ?", (user_id, operator))
    if not rows:
        return None
    return _mastery_row_to_dict(rows[0], list_types_complete(user_id, operator, con=con))


def create_mastery_record(
    user_id: str,
    operator: str,
    seed_types: Sequence[str] = (),
    con: Optional[sqlite3.Connection] = None,
) -> bool:
    """Insert an empty record seeded with ``seed_types``. Returns False if it already existed."""
    cur = _run(
        con,
        "INSERT OR IGNORE INTO fact_mastery (user_id, operator) VALUES (?, ?)",
        (user_id, operator),
    )
    created = cur.rowcount == 1
    if created and seed_types:
        merge_types_complete(user_id, operator, seed_types, source="auto_skip", con=con)
    return created


def merge_types_complete(
    user_id: str,
    operator: str,
    stages: Iterable[str],
    *,
    source: str = "assessment",
    con: Optional[sqlite3.Connection] = None,
) -> List[str]:
    """Append ``stages`` to the completed list, ignoring ones already present.

    Returns the stages that were actually added, in order.
    """
    added: List[str] = []
    for stage in stages:
        cur = _run(
            con,
            """
            INSERT OR IGNORE INTO fact_stage_completions (user_id, operator, stage, seq, source)
            SELECT ?, ?, ?, COALESCE(MAX(seq), -1) + 1, ?
            FROM fact_stage_completions WHERE user_id = ? AND operator = ?
            """,
            (user_id, operator, stage, source, user_id, operator),
        )
        if cur.rowcount == 1:
            added.append(stage)
    return added


def update_mastery_record(
    user_id: str,
    operator: str,
    *,
    increments: Optional[Mapping[str, int]] = None,
    assignments: Optional[Mapping[str, Any]] = None,
    con: Optional[sqlite3.Connection] = None,
) -> None:
    """Apply ``col = col + n`` increments and plain assignments in one statement.

    Column names are checked against fixed allow-lists; values are always bound.
    """
    clauses: List[str] = []
    params: List[Any] = []
    for column, amount in (increments or {}).items():
        if column not in _MASTERY_COUNTERS:
            raise ValueError(f"Unknown mastery counter: {column}")
        clauses.append(f"{column} = {column} + ?")
        params.append(int(amount))
    for column, value in (assignments or {}).items():
        if column not in _MASTERY_ASSIGNABLE:
            raise ValueError(f"Unknown mastery field: {column}")
        clauses.append(f"{column} = ?")
        params.append(int(value) if isinstance(value, bool) else value)
    if not clauses:
        return
    clauses.append("updated_at = CURRENT_TIMESTAMP")
    params.extend([user_id, operator])
    _run(
        con,
        f"UPDATE fact_mastery SET {', '.join(clauses)} WHERE user_id = ? AND operator = ?",
        params,
    )


def set_mastery_flag(user_id: str, operator: str, con: Optional[sqlite3.Connection] = None) -> bool:
    """Flip ``mastery_level`` to true. Returns True only if it was false before."""
    cur = _run(
        con,
        """
        UPDATE fact_mastery SET mastery_level = 1, updated_at = CURRENT_TIMESTAMP
        WHERE user_id = ? AND operator = ? AND mastery_level = 0
        """,
        (user_id, operator),
    )
    return cur.rowcount == 1


# -------------- subject mastery --------------
def _subject_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    for flag in ("is_unlocked", "next_grade_unlocked", "downgraded"):
        record[flag] = bool(record[flag])
    return record


def ensure_subject_mastery(
    user_id: str,
    subject: str,
    grade: str,
    con: Optional[sqlite3.Connection] = None,
) -> Dict[str, Any]:
    _run(
        con,
        "INSERT OR IGNORE INTO subject_mastery (user_id, subject, grade) VALUES (?, ?, ?)",
        (user_id, subject, str(grade)),
    )
    record = get_subject_mastery(user_id, subject, grade, con=con)
    if record is None:
        raise RuntimeError(f"{subject} mastery for {user_id!r} could not be created")
    return record


def get_subject_mastery(
    user_id: str,
    subject: str,
    grade: str,
    con: Optional[sqlite3.Connection] = None,
) -> Optional[Dict[str, Any]]:
    rows = _fetch(
        con,
        "SELECT * FROM subject_mastery WHERE user_id = ? AND subject = ? AND grade = ?",
        (user_id, subject, str(grade)),
    )
    return _subject_row_to_dict(rows[0]) if rows else None


def update_subject_mastery(
    user_id: str,
    subject: str,
    grade: str,
    fields: Mapping[str, Any],
    con: Optional[sqlite3.Connection] = None,
) -> None:
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in fields.items():
        if column not in _SUBJECT_ASSIGNABLE:
            raise ValueError(f"Unknown subject mastery field: {column}")
        clauses.append(f"{column} = ?")
        params.append(int(value) if isinstance(value, bool) else value)
    if not clauses:
        return
    clauses.append("last_practiced = CURRENT_TIMESTAMP")
    params.extend([user_id, subject, str(grade)])
    _run(
        con,
        f"UPDATE subject_mastery SET {', '.join(clauses)} WHERE user_id = ? AND subject = ? AND grade = ?",
        params,
    )


def list_subject_mastery(user_id: str, subject: Optional[str] = None) -> List[Dict[str, Any]]:
    if subject:
        rows = _query(
            "SELECT * FROM subject_mastery WHERE user_id = ? AND subject = ? ORDER BY grade",
            (user_id, subject),
        )
    else:
        rows = _query("SELECT * FROM subject_mastery WHERE user_id = ? ORDER BY subject, grade", (user_id,))
    return [_subject_row_to_dict(row) for row in rows]


# -------------- fact catalog --------------
def upsert_catalog_facts(facts: Iterable[Mapping[str, Any]]) -> int:
    count = 0
    with _conn() as con:
        for fact in facts:
            con.execute(
                """
                INSERT INTO fact_catalog (id, operation, operand1, operand2, answer, fact_type, grade_levels)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  operation=excluded.operation,
                  operand1=excluded.operand1,
                  operand2=excluded.operand2,
                  answer=excluded.answer,
                  fact_type=excluded.fact_type,
                  grade_levels=excluded.grade_levels
                """,
                (
                    str(fact["id"]),
                    fact["operation"],
                    int(fact["operand1"]),
                    int(fact["operand2"]),
                    int(fact["answer"]),
                    fact.get("fact_type"),
                    json.dumps(fact.get("grade_levels") or []),
                ),
            )
            count += 1
        con.commit()
    return count


def query_catalog(
    operation: str,
    *,
    fact_type: Optional[str] = None,
    operand1_bounds: Optional[Tuple[int, int]] = None,
    operand2_bounds: Optional[Tuple[int, int]] = None,
) -> List[Dict[str, Any]]:
    clauses = ["operation = ?"]
    params: List[Any] = [operation]
    if fact_type is not None:
        clauses.append("fact_type = ?")
        params.append(fact_type)
    if operand1_bounds is not None:
        clauses.append("operand1 BETWEEN ? AND ?")
        params.extend(operand1_bounds)
    if operand2_bounds is not None:
        clauses.append("operand2 BETWEEN ? AND ?")
        params.extend(operand2_bounds)
    rows = _query(
        f"SELECT id, operation, operand1, operand2, answer, fact_type, grade_levels FROM fact_catalog WHERE {' AND '.join(clauses)} ORDER BY id",
        params,
    )
    facts = []
    for row in rows:
        fact = dict(row)
        try:
            fact["grade_levels"] = json.loads(fact["grade_levels"] or "[]")
        except json.JSONDecodeError:
            fact["grade_levels"] = []
        facts.append(fact)
    return facts


def count_catalog(operation: Optional[str] = None) -> int:
    if operation:
        rows = _query("SELECT COUNT(*) AS n FROM fact_catalog WHERE operation = ?", (operation,))
    else:
        rows = _query("SELECT COUNT(*) AS n FROM fact_catalog")
    return int(rows[0]["n"])


# -------------- module history --------------
def log_module_history(
    user_id: str,
    module_name: str,
    run_type: str,
    *,
    grade_level: Optional[str],
    questions_total: int,
    questions_correct: int,
    tokens_earned: int,
    time_spent_seconds: Optional[float] = None,
    properties: Optional[Dict[str, Any]] = None,
    con: Optional[sqlite3.Connection] = None,
) -> None:
    _run(
        con,
        """
        INSERT INTO module_history
        (user_id, module_name, run_type, grade_level, questions_total, questions_correct,
         time_spent_seconds, tokens_earned, properties)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            module_name,
            run_type,
            grade_level,
            int(questions_total),
            int(questions_correct),
            time_spent_seconds,
            int(tokens_earned),
            json.dumps(properties or {}),
        ),
    )


def list_module_history(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM module_history WHERE user_id = ? ORDER BY id DESC LIMIT ?",
        (user_id, int(limit)),
    )
    history = []
    for row in rows:
        entry = dict(row)
        try:
            entry["properties"] = json.loads(entry["properties"] or "{}")
        except json.JSONDecodeError:
            entry["properties"] = {}
        history.append(entry)
    return history
