"""
database.py — SQLite schema init, migration, and CRUD operations.

Single-file database with WAL mode for concurrent reads.
Holds societies, members, events (with their inline score maps), the
normalized results log (event_results), audit log and settings.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Optional

from core.models import (
    Event, Member, RawResult, ResolvedResult,
    CLASS_GENERAL, FORMAT_STABLEFORD, STATUS_NONE,
)

DB_DIR = Path(__file__).parent.parent / "data"
DB_NAME = "societyoom.db"


def get_db_path() -> Path:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    return DB_DIR / DB_NAME


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS societies (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS members (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    society_id  INTEGER NOT NULL REFERENCES societies(id),
    name        TEXT NOT NULL,
    handicap    REAL,
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS events (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    society_id          INTEGER NOT NULL REFERENCES societies(id),
    name                TEXT NOT NULL,
    date                TEXT NOT NULL,
    classification      TEXT NOT NULL DEFAULT 'general',
    format              TEXT NOT NULL DEFAULT 'stableford',
    results_status      TEXT NOT NULL DEFAULT 'none',
    results_json        TEXT NOT NULL DEFAULT '{}',
    player_ids_json     TEXT NOT NULL DEFAULT '[]',
    published_at        TEXT,
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS event_results (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    society_id  INTEGER NOT NULL REFERENCES societies(id),
    event_id    INTEGER NOT NULL REFERENCES events(id),
    member_id   INTEGER NOT NULL,
    day_value   REAL,
    position    INTEGER NOT NULL,
    points      REAL NOT NULL DEFAULT 0,
    basis       TEXT,
    created_at  TEXT DEFAULT (datetime('now')),
    UNIQUE(event_id, member_id)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    INTEGER,
    action      TEXT NOT NULL,
    entity_type TEXT,
    entity_id   INTEGER,
    details     TEXT,
    before_val  TEXT,
    after_val   TEXT,
    source      TEXT DEFAULT 'admin',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_log(event_id, created_at);
CREATE INDEX IF NOT EXISTS idx_members_society ON members(society_id);
CREATE INDEX IF NOT EXISTS idx_events_society ON events(society_id, date);
CREATE INDEX IF NOT EXISTS idx_event_results_society ON event_results(society_id);
CREATE INDEX IF NOT EXISTS idx_event_results_event ON event_results(event_id);

CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


def migrate_db(conn: sqlite3.Connection) -> None:
    """Add new columns to existing tables (idempotent for upgrades)."""
    def _has_column(table: str, column: str) -> bool:
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(c["name"] == column for c in cols)

    # events: required players + publish timestamp
    if not _has_column("events", "player_ids_json"):
        conn.execute("ALTER TABLE events ADD COLUMN player_ids_json TEXT NOT NULL DEFAULT '[]'")
    if not _has_column("events", "published_at"):
        conn.execute("ALTER TABLE events ADD COLUMN published_at TEXT")

    # event_results: ranking basis per row
    if not _has_column("event_results", "basis"):
        conn.execute("ALTER TABLE event_results ADD COLUMN basis TEXT")

    conn.commit()


# ======================================================================
# SETTINGS
# ======================================================================

SETTINGS_DEFAULTS = {
    "default_oom_only": "true",     # standings/results log when oom_only is omitted
    "standings_source": "merged",   # merged | log | inline
}


def get_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    """Read a setting value from the database."""
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Write a setting value to the database."""
    conn.execute(
        "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
        (key, value)
    )
    conn.commit()


# ======================================================================
# ROW CONVERSION
# ======================================================================

def row_to_member(row: sqlite3.Row) -> Member:
    return Member(id=row["id"], name=row["name"],
                  society_id=row["society_id"], handicap=row["handicap"])


def row_to_event(row: sqlite3.Row) -> Event:
    try:
        player_ids = tuple(int(p) for p in json.loads(row["player_ids_json"] or "[]"))
    except (TypeError, ValueError):
        player_ids = ()
    return Event(
        id=row["id"],
        society_id=row["society_id"],
        name=row["name"],
        date=row["date"],
        classification=row["classification"] or CLASS_GENERAL,
        format=row["format"] or FORMAT_STABLEFORD,
        results_status=row["results_status"] or STATUS_NONE,
        player_ids=player_ids,
    )


def row_to_resolved(row: sqlite3.Row) -> ResolvedResult:
    return ResolvedResult(
        event_id=row["event_id"],
        member_id=row["member_id"],
        day_value=row["day_value"],
        position=row["position"],
        points=row["points"],
        basis=row["basis"],
    )


def _score(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).strip()
        return float(text) if "." in text else int(text)
    except ValueError:
        return None


def decode_inline_results(event_id: int, results_json: Optional[str]) -> list[RawResult]:
    """Inline score map → RawResult list. Unreadable entries are skipped."""
    try:
        data = json.loads(results_json or "{}")
    except ValueError:
        return []
    if not isinstance(data, dict):
        return []

    raws = []
    for member_key, scores in data.items():
        try:
            member_id = int(member_key)
        except (TypeError, ValueError):
            continue
        if not isinstance(scores, dict):
            continue
        strokeplay = _score(scores.get("strokeplay"))
        if strokeplay is None:
            # older maps stored gross strokes under "gross"
            strokeplay = _score(scores.get("gross"))
        raws.append(RawResult(
            member_id=member_id,
            event_id=event_id,
            stableford_points=_score(scores.get("stableford")),
            strokeplay_gross=strokeplay,
            net_score=_score(scores.get("net")),
        ))
    raws.sort(key=lambda r: r.member_id)
    return raws


def encode_inline_results(raws: list[RawResult]) -> str:
    return json.dumps({str(r.member_id): r.to_json() for r in raws}, sort_keys=True)


# ======================================================================
# CREATE
# ======================================================================

def create_society(conn: sqlite3.Connection, name: str) -> int:
    cur = conn.execute("INSERT INTO societies (name) VALUES (?)", (name,))
    conn.commit()
    return cur.lastrowid


def create_member(conn: sqlite3.Connection, society_id: int, name: str,
                  handicap: Optional[float] = None) -> int:
    cur = conn.execute(
        "INSERT INTO members (society_id, name, handicap) VALUES (?, ?, ?)",
        (society_id, name, handicap)
    )
    conn.commit()
    return cur.lastrowid


def create_event(conn: sqlite3.Connection, society_id: int, name: str, date: str,
                 classification: str = CLASS_GENERAL,
                 fmt: str = FORMAT_STABLEFORD,
                 player_ids: Optional[list[int]] = None) -> int:
    """Insert a new event (results_status 'none') and return its id."""
    cur = conn.execute(
        """INSERT INTO events (society_id, name, date, classification, format,
           player_ids_json)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (society_id, name, date, classification, fmt,
         json.dumps(list(player_ids or [])))
    )
    conn.commit()
    return cur.lastrowid


def import_legacy_event(conn: sqlite3.Connection, society_id: int, name: str,
                        date: str, results: dict,
                        classification: str = CLASS_GENERAL,
                        fmt: str = FORMAT_STABLEFORD,
                        results_status: str = "published") -> int:
    """Insert an event carrying only an inline score map (no log rows).

    Used to load events recorded before the results log existed.
    """
    cur = conn.execute(
        """INSERT INTO events (society_id, name, date, classification, format,
           results_status, results_json)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (society_id, name, date, classification, fmt, results_status,
         json.dumps(results, sort_keys=True))
    )
    conn.commit()
    return cur.lastrowid


# ======================================================================
# READ
# ======================================================================

def get_society(conn: sqlite3.Connection, society_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM societies WHERE id=?", (society_id,)).fetchone()


def get_members(conn: sqlite3.Connection, society_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM members WHERE society_id=? ORDER BY name, id", (society_id,)
    ).fetchall()


def get_event(conn: sqlite3.Connection, event_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()


def get_events(conn: sqlite3.Connection, society_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM events WHERE society_id=? ORDER BY date, id", (society_id,)
    ).fetchall()


def get_event_results(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    """Results log rows for one event, best position first."""
    return conn.execute(
        """SELECT r.*, m.name as member_name
           FROM event_results r
           LEFT JOIN members m ON r.member_id = m.id
           WHERE r.event_id=?
           ORDER BY r.position ASC, r.member_id ASC""",
        (event_id,)
    ).fetchall()


def get_society_log_rows(conn: sqlite3.Connection,
                         society_id: int) -> list[ResolvedResult]:
    rows = conn.execute(
        """SELECT * FROM event_results WHERE society_id=?
           ORDER BY event_id, position, member_id""",
        (society_id,)
    ).fetchall()
    return [row_to_resolved(r) for r in rows]


def get_society_inline_results(conn: sqlite3.Connection,
                               society_id: int) -> dict[int, list[RawResult]]:
    rows = conn.execute(
        "SELECT id, results_json FROM events WHERE society_id=?", (society_id,)
    ).fetchall()
    return {r["id"]: decode_inline_results(r["id"], r["results_json"]) for r in rows}


def load_society(conn: sqlite3.Connection,
                 society_id: int) -> tuple[list[Member], list[Event]]:
    """Roster and events for a society as engine models."""
    members = [row_to_member(r) for r in get_members(conn, society_id)]
    events = [row_to_event(r) for r in get_events(conn, society_id)]
    return members, events


# ======================================================================
# UPDATE
# ======================================================================

def update_event(conn: sqlite3.Connection, event_id: int, **kwargs) -> None:
    """Update event fields. Pass field=value pairs."""
    if not kwargs:
        return
    if "player_ids" in kwargs:
        kwargs["player_ids_json"] = json.dumps(list(kwargs.pop("player_ids") or []))
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [event_id]
    conn.execute(f"UPDATE events SET {sets}, updated_at=datetime('now') WHERE id=?", vals)
    conn.commit()


# ======================================================================
# AUDIT LOG
# ======================================================================

def log_audit(conn: sqlite3.Connection, event_id: Optional[int],
              action: str, entity_type: str = "",
              entity_id: Optional[int] = None,
              details: str = "",
              before_val: str = "", after_val: str = "",
              source: str = "admin", commit: bool = True) -> int:
    """Log an admin action for audit trail.

    commit=False leaves the row inside the caller's open transaction.
    """
    cur = conn.execute(
        """INSERT INTO audit_log (event_id, action, entity_type, entity_id,
           details, before_val, after_val, source)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (event_id, action, entity_type, entity_id,
         details, before_val, after_val, source)
    )
    if commit:
        conn.commit()
    return cur.lastrowid


def get_audit_log(conn: sqlite3.Connection, event_id: Optional[int] = None,
                  limit: int = 100) -> list[sqlite3.Row]:
    """Get audit log entries, newest first."""
    if event_id:
        return conn.execute(
            "SELECT * FROM audit_log WHERE event_id=? ORDER BY id DESC LIMIT ?",
            (event_id, limit)
        ).fetchall()
    return conn.execute(
        "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()
