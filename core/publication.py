"""
publication.py — Results publication state machine.

    none ──save──▶ draft ──publish──▶ published ──reopen──▶ corrected ──save──▶ draft

Only 'published' results count towards season standings.  Raw scores can be
edited in none/draft/corrected and are locked while published.

Draft saves, metadata updates, publish and reopen each run inside a single
BEGIN IMMEDIATE transaction, so readers never see a published event without
its results log rows (or log rows for an event that is no longer published).
BEGIN IMMEDIATE also serializes these writers: a status check is never
overtaken by another connection before the write that depends on it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Iterable

from core.database import (
    get_event, row_to_event, decode_inline_results, encode_inline_results,
    log_audit, update_event,
)
from core.models import (
    RawResult, ResolvedResult,
    STATUS_NONE, STATUS_DRAFT, STATUS_PUBLISHED, STATUS_CORRECTED,
)
from core.resolver import resolve_event_positions, select_ranking_value

logger = logging.getLogger("societyoom.publication")

ALLOWED_TRANSITIONS = {
    STATUS_NONE: {STATUS_DRAFT},
    STATUS_DRAFT: {STATUS_DRAFT, STATUS_PUBLISHED},
    STATUS_PUBLISHED: {STATUS_CORRECTED},
    STATUS_CORRECTED: {STATUS_DRAFT},
}

EDITABLE_STATUSES = (STATUS_NONE, STATUS_DRAFT, STATUS_CORRECTED)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(current: str, target: str) -> str:
    """Return target if current → target is legal, else raise ValueError."""
    if not can_transition(current, target):
        raise ValueError(f"Illegal results transition {current!r} → {target!r}")
    return target


def is_countable(status: str) -> bool:
    return status == STATUS_PUBLISHED


def is_editable(status: str) -> bool:
    return status in EDITABLE_STATUSES


# ---------------------------------------------------------------------------
# Draft
# ---------------------------------------------------------------------------

def save_draft_scores(conn: sqlite3.Connection, event_id: int,
                      scores: Iterable[RawResult]) -> tuple[bool, str]:
    """Replace the event's raw scores and move it to draft.

    Idempotent: saving the same scores twice leaves the same draft.
    Refused while the event is published.  The status check, the score
    write and the audit row share one BEGIN IMMEDIATE transaction, so a
    concurrent publish either lands before (and the save is refused) or
    after (and publishes the saved draft).
    """
    raws = sorted({r.member_id: r for r in scores}.values(), key=lambda r: r.member_id)
    results_json = encode_inline_results(
        [RawResult(r.member_id, event_id, r.stableford_points,
                   r.strokeplay_gross, r.net_score) for r in raws])

    conn.execute("BEGIN IMMEDIATE")
    try:
        row = get_event(conn, event_id)
        if row is None:
            conn.rollback()
            return False, "Event not found"
        status = row["results_status"]
        if not is_editable(status):
            conn.rollback()
            return False, "Results are published — reopen the event to correct them"

        conn.execute(
            """UPDATE events SET results_json=?, results_status=?, updated_at=datetime('now')
               WHERE id=?""",
            (results_json, transition(status, STATUS_DRAFT), event_id)
        )
        log_audit(conn, event_id, "save_draft", "event", event_id,
                  details=f"{len(raws)} scores", before_val=status,
                  after_val=STATUS_DRAFT, commit=False)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return True, ""


LOCKED_FIELDS = ("format", "classification", "date", "player_ids")


def update_event_details(conn: sqlite3.Connection, event_id: int,
                         fields: dict) -> tuple[bool, str]:
    """Update event metadata. Fields that change ranking are locked while published."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        row = get_event(conn, event_id)
        if row is None:
            conn.rollback()
            return False, "Event not found"
        locked = sorted(set(LOCKED_FIELDS) & set(fields))
        if row["results_status"] == STATUS_PUBLISHED and locked:
            conn.rollback()
            return False, ("Results are published — reopen the event before changing "
                           + ", ".join(locked))
        if not fields:
            conn.rollback()
            return True, ""
        update_event(conn, event_id, **fields)  # commits
    except Exception:
        conn.rollback()
        raise
    return True, ""


def missing_required_scores(event, raws: list[RawResult]) -> list[int]:
    """Required players without a usable score for the event's format."""
    by_member = {r.member_id: r for r in raws}
    missing = []
    for player_id in event.player_ids:
        raw = by_member.get(player_id)
        if raw is None or select_ranking_value(event.format, raw) is None:
            missing.append(player_id)
    return missing


# ---------------------------------------------------------------------------
# Publish / reopen
# ---------------------------------------------------------------------------

def _write_log_rows(conn: sqlite3.Connection, society_id: int,
                    rows: list[ResolvedResult]) -> None:
    for r in rows:
        conn.execute(
            """INSERT INTO event_results (society_id, event_id, member_id,
               day_value, position, points, basis)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (society_id, r.event_id, r.member_id, r.day_value,
             r.position, r.points, r.basis)
        )


def publish_event_results(conn: sqlite3.Connection,
                          event_id: int) -> tuple[bool, str]:
    """draft → published: write results log rows and lock the event.

    Either the status flip and every log row commit together or nothing does.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        row = get_event(conn, event_id)
        if row is None:
            conn.rollback()
            return False, "Event not found"
        if not can_transition(row["results_status"], STATUS_PUBLISHED):
            conn.rollback()
            return False, f"Cannot publish results in status '{row['results_status']}'"

        event = row_to_event(row)
        raws = decode_inline_results(event_id, row["results_json"])

        missing = missing_required_scores(event, raws)
        if missing:
            conn.rollback()
            return False, "Missing scores for members: " + ", ".join(str(m) for m in missing)

        resolved = resolve_event_positions(event, raws)
        if not resolved:
            conn.rollback()
            return False, "No scores entered"

        conn.execute("DELETE FROM event_results WHERE event_id=?", (event_id,))
        _write_log_rows(conn, event.society_id, resolved)
        conn.execute(
            """UPDATE events SET results_status=?, published_at=datetime('now'),
               updated_at=datetime('now') WHERE id=?""",
            (STATUS_PUBLISHED, event_id)
        )
        log_audit(conn, event_id, "publish_results", "event", event_id,
                  details=json.dumps({"rows": len(resolved)}),
                  before_val=STATUS_DRAFT, after_val=STATUS_PUBLISHED,
                  commit=False)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info("Published event %s: %d result rows", event_id, len(resolved))
    return True, ""


def reopen_event_results(conn: sqlite3.Connection, event_id: int,
                         reason: str = "") -> tuple[bool, str]:
    """published → corrected: withdraw the results log rows for correction.

    The event stops counting immediately; the next draft save moves it back
    to draft and it must be published again.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        row = get_event(conn, event_id)
        if row is None:
            conn.rollback()
            return False, "Event not found"
        if not can_transition(row["results_status"], STATUS_CORRECTED):
            conn.rollback()
            return False, f"Cannot reopen results in status '{row['results_status']}'"

        removed = conn.execute(
            "DELETE FROM event_results WHERE event_id=?", (event_id,)
        ).rowcount
        conn.execute(
            """UPDATE events SET results_status=?, published_at=NULL,
               updated_at=datetime('now') WHERE id=?""",
            (STATUS_CORRECTED, event_id)
        )
        log_audit(conn, event_id, "reopen_results", "event", event_id,
                  details=reason, before_val=STATUS_PUBLISHED,
                  after_val=STATUS_CORRECTED, commit=False)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info("Reopened event %s for correction (%d rows withdrawn): %s",
                event_id, removed, reason)
    return True, ""
