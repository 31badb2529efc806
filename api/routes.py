"""
routes.py — REST API endpoints for SocietyOOM.

All endpoints under /api/. Wraps CRUD from core/database.py, the publication
state machine from core/publication.py and standings from core/reconcile.py.
Standings are recomputed from the database on every request.
"""

from __future__ import annotations

import tempfile
import os
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from core.database import (
    get_connection,
    create_society, get_society,
    create_member, get_members,
    create_event, get_event, get_events,
    get_event_results, load_society, row_to_event, decode_inline_results,
    get_audit_log, get_setting, set_setting, SETTINGS_DEFAULTS,
)
from core.models import (
    RawResult, EVENT_FORMATS, CLASSIFICATIONS, STATUS_PUBLISHED,
)
from core.points import points_legend, format_points
from core.publication import (
    save_draft_scores, publish_event_results, reopen_event_results,
    update_event_details, missing_required_scores,
)
from core.reconcile import (
    SOURCE_MODES, SOURCE_LOG, SOURCE_INLINE,
    load_result_source, compute_season_standings, compute_results_log,
    compare_sources,
)
from core.resolver import resolve_event_positions
from core.season import qualifying_events, export_standings_csv

logger = logging.getLogger("societyoom.api")

router = APIRouter()


# ─── Helper ──────────────────────────────────────────────────────────

def _row_to_dict(row) -> dict:
    """Convert sqlite3.Row to dict."""
    if row is None:
        return {}
    return dict(row)


def _rows_to_list(rows) -> list[dict]:
    """Convert list of sqlite3.Row to list of dicts."""
    return [dict(r) for r in rows]


def _get_conn():
    return get_connection()


def _event_or_404(conn, event_id: int):
    event = get_event(conn, event_id)
    if not event:
        raise HTTPException(404, "Event not found")
    return event


def _society_or_404(conn, society_id: int):
    society = get_society(conn, society_id)
    if not society:
        raise HTTPException(404, "Society not found")
    return society


def _season_query(conn, season: Optional[int], oom_only: Optional[bool]) -> tuple[int, bool]:
    if season is None:
        season = date.today().year
    if oom_only is None:
        default = get_setting(conn, "default_oom_only",
                              SETTINGS_DEFAULTS["default_oom_only"])
        oom_only = default == "true"
    return season, oom_only


def _event_dict(row) -> dict:
    d = _row_to_dict(row)
    d.pop("results_json", None)
    event = row_to_event(row)
    d["player_ids"] = list(event.player_ids)
    d["season_year"] = event.season_year
    return d


def _resolved_dict(r, names: dict) -> dict:
    return {
        "member_id": r.member_id,
        "member_name": names.get(r.member_id, "Unknown"),
        "day_value": r.day_value,
        "position": r.position,
        "points": r.points,
        "points_display": format_points(r.points),
        "basis": r.basis,
    }


# ─── Pydantic models ─────────────────────────────────────────────────

class SocietyCreate(BaseModel):
    name: str

class MemberCreate(BaseModel):
    name: str
    handicap: Optional[float] = None

class EventCreate(BaseModel):
    name: str
    date: str
    classification: str = "general"
    format: str = "stableford"
    player_ids: list[int] = []

class EventUpdate(BaseModel):
    name: Optional[str] = None
    date: Optional[str] = None
    classification: Optional[str] = None
    format: Optional[str] = None
    player_ids: Optional[list[int]] = None

class ScoreEntry(BaseModel):
    member_id: int
    stableford: Optional[float] = None
    strokeplay: Optional[float] = None
    net: Optional[float] = None

class ScoresBody(BaseModel):
    scores: list[ScoreEntry]

class ReopenBody(BaseModel):
    reason: str = ""

class SettingValue(BaseModel):
    value: str


def _check_event_fields(fmt: Optional[str], classification: Optional[str]) -> None:
    if fmt is not None and fmt not in EVENT_FORMATS:
        raise HTTPException(400, f"Unknown format '{fmt}'")
    if classification is not None and classification not in CLASSIFICATIONS:
        raise HTTPException(400, f"Unknown classification '{classification}'")


# ═══════════════════════════════════════════════════════════════════════
# POINTS TABLE
# ═══════════════════════════════════════════════════════════════════════

@router.get("/points-table")
async def points_table():
    return points_legend()


# ═══════════════════════════════════════════════════════════════════════
# SOCIETIES & MEMBERS
# ═══════════════════════════════════════════════════════════════════════

@router.post("/societies")
async def create_society_endpoint(body: SocietyCreate):
    conn = _get_conn()
    try:
        return {"id": create_society(conn, body.name)}
    finally:
        conn.close()


@router.get("/societies/{society_id}")
async def get_society_endpoint(society_id: int):
    conn = _get_conn()
    try:
        return _row_to_dict(_society_or_404(conn, society_id))
    finally:
        conn.close()


@router.get("/societies/{society_id}/members")
async def list_members(society_id: int):
    conn = _get_conn()
    try:
        return _rows_to_list(get_members(conn, society_id))
    finally:
        conn.close()


@router.post("/societies/{society_id}/members")
async def create_member_endpoint(society_id: int, body: MemberCreate):
    conn = _get_conn()
    try:
        _society_or_404(conn, society_id)
        return {"id": create_member(conn, society_id, body.name, body.handicap)}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# EVENTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/societies/{society_id}/events")
async def list_events(society_id: int):
    conn = _get_conn()
    try:
        return [_event_dict(r) for r in get_events(conn, society_id)]
    finally:
        conn.close()


@router.post("/societies/{society_id}/events")
async def create_event_endpoint(society_id: int, body: EventCreate):
    _check_event_fields(body.format, body.classification)
    conn = _get_conn()
    try:
        _society_or_404(conn, society_id)
        event_id = create_event(conn, society_id, body.name, body.date,
                                body.classification, body.format, body.player_ids)
        return {"id": event_id}
    finally:
        conn.close()


@router.get("/events/{event_id}")
async def get_event_endpoint(event_id: int):
    conn = _get_conn()
    try:
        return _event_dict(_event_or_404(conn, event_id))
    finally:
        conn.close()


@router.put("/events/{event_id}")
async def update_event_endpoint(event_id: int, body: EventUpdate):
    _check_event_fields(body.format, body.classification)
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        fields = {k: v for k, v in body.model_dump().items() if v is not None}
        ok, msg = update_event_details(conn, event_id, fields)
        if not ok:
            raise HTTPException(400, msg)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# SCORES & PUBLICATION
# ═══════════════════════════════════════════════════════════════════════

@router.put("/events/{event_id}/scores")
async def save_scores_endpoint(event_id: int, body: ScoresBody):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        raws = [RawResult(s.member_id, event_id, s.stableford, s.strokeplay, s.net)
                for s in body.scores]
        ok, msg = save_draft_scores(conn, event_id, raws)
        if not ok:
            raise HTTPException(400, msg)
        return {"ok": True, "status": "draft", "count": len(raws)}
    finally:
        conn.close()


@router.get("/events/{event_id}/preview")
async def preview_event(event_id: int):
    """Provisional positions and points from the entered scores."""
    conn = _get_conn()
    try:
        row = _event_or_404(conn, event_id)
        event = row_to_event(row)
        raws = decode_inline_results(event_id, row["results_json"])
        resolved = resolve_event_positions(event, raws)
        names = {m["id"]: m["name"] for m in get_members(conn, event.society_id)}
        return {
            "event_id": event_id,
            "status": event.results_status,
            "provisional": not event.is_published,
            "leaders": [r.member_id for r in resolved if r.position == 1],
            "missing": missing_required_scores(event, raws),
            "results": [_resolved_dict(r, names) for r in resolved],
        }
    finally:
        conn.close()


@router.post("/events/{event_id}/publish")
async def publish_endpoint(event_id: int):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        ok, msg = publish_event_results(conn, event_id)
        if not ok:
            raise HTTPException(400, msg)
        return {"ok": True, "status": "published"}
    finally:
        conn.close()


@router.post("/events/{event_id}/reopen")
async def reopen_endpoint(event_id: int, body: ReopenBody):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        ok, msg = reopen_event_results(conn, event_id, body.reason)
        if not ok:
            raise HTTPException(400, msg)
        return {"ok": True, "status": "corrected"}
    finally:
        conn.close()


@router.get("/events/{event_id}/results")
async def event_results_endpoint(event_id: int):
    conn = _get_conn()
    try:
        _event_or_404(conn, event_id)
        rows = _rows_to_list(get_event_results(conn, event_id))
        for r in rows:
            r["member_name"] = r.get("member_name") or "Unknown"
            r["points_display"] = format_points(r["points"])
        return rows
    finally:
        conn.close()


@router.get("/events/{event_id}/audit")
async def event_audit(event_id: int, limit: int = 100):
    conn = _get_conn()
    try:
        return _rows_to_list(get_audit_log(conn, event_id, limit))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# STANDINGS
# ═══════════════════════════════════════════════════════════════════════

def _standings(conn, society_id: int, season: int, oom_only: bool, source: str):
    if source not in SOURCE_MODES:
        raise HTTPException(400, f"Unknown source '{source}'")
    members, events = load_society(conn, society_id)
    result_source = load_result_source(conn, society_id, source)
    standings = compute_season_standings(society_id, season, oom_only,
                                         members, events, result_source)
    return standings, events


@router.get("/societies/{society_id}/standings")
async def standings_endpoint(society_id: int,
                             season: Optional[int] = Query(None),
                             oom_only: Optional[bool] = Query(None),
                             source: Optional[str] = Query(None),
                             include_zero: bool = False):
    conn = _get_conn()
    try:
        _society_or_404(conn, society_id)
        season, oom_only = _season_query(conn, season, oom_only)
        if source is None:
            source = get_setting(conn, "standings_source",
                                 SETTINGS_DEFAULTS["standings_source"])
        standings, events = _standings(conn, society_id, season, oom_only, source)
        rows = []
        for s in standings:
            if s.total_points <= 0 and not include_zero:
                continue
            d = s.to_dict()
            d["points_display"] = format_points(s.total_points)
            rows.append(d)
        return {
            "society_id": society_id,
            "season": season,
            "oom_only": oom_only,
            "source": source,
            "event_count": len(qualifying_events(events, season, oom_only, society_id)),
            "standings": rows,
        }
    finally:
        conn.close()


@router.get("/societies/{society_id}/standings/verify")
async def verify_standings(society_id: int,
                           season: Optional[int] = Query(None),
                           oom_only: Optional[bool] = Query(None)):
    """Check that the results log and the inline scores give the same totals."""
    conn = _get_conn()
    try:
        _society_or_404(conn, society_id)
        season, oom_only = _season_query(conn, season, oom_only)
        members, events = load_society(conn, society_id)
        diffs = compare_sources(
            society_id, season, oom_only, members, events,
            load_result_source(conn, society_id, SOURCE_LOG),
            load_result_source(conn, society_id, SOURCE_INLINE),
        )
        return {"ok": not diffs, "diffs": diffs}
    finally:
        conn.close()


@router.get("/societies/{society_id}/standings/export/csv")
async def export_standings_endpoint(society_id: int,
                                    season: Optional[int] = Query(None),
                                    oom_only: Optional[bool] = Query(None)):
    """Export season standings as CSV download."""
    from fastapi.responses import StreamingResponse
    import io

    conn = _get_conn()
    try:
        _society_or_404(conn, society_id)
        season, oom_only = _season_query(conn, season, oom_only)
        source = get_setting(conn, "standings_source",
                             SETTINGS_DEFAULTS["standings_source"])
        standings, _ = _standings(conn, society_id, season, oom_only, source)
        standings = [s for s in standings if s.total_points > 0]

        with tempfile.NamedTemporaryFile(mode="w", suffix=".csv", delete=False,
                                         encoding="utf-8") as tmp:
            tmp_path = tmp.name

        export_standings_csv(standings, tmp_path)

        with open(tmp_path, "r", encoding="utf-8") as f:
            content = f.read()
        os.unlink(tmp_path)

        return StreamingResponse(
            io.StringIO(content),
            media_type="text/csv",
            headers={"Content-Disposition":
                     f"attachment; filename=oom_{society_id}_{season}.csv"},
        )
    finally:
        conn.close()


@router.get("/societies/{society_id}/results-log")
async def results_log_endpoint(society_id: int,
                               season: Optional[int] = Query(None),
                               oom_only: Optional[bool] = Query(None)):
    conn = _get_conn()
    try:
        _society_or_404(conn, society_id)
        season, oom_only = _season_query(conn, season, oom_only)
        source = get_setting(conn, "standings_source",
                             SETTINGS_DEFAULTS["standings_source"])
        if source not in SOURCE_MODES:
            raise HTTPException(400, f"Unknown source '{source}'")
        members, events = load_society(conn, society_id)
        return compute_results_log(society_id, season, oom_only, members, events,
                                   load_result_source(conn, society_id, source))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# SETTINGS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/settings/{key}")
async def get_setting_endpoint(key: str):
    if key not in SETTINGS_DEFAULTS:
        raise HTTPException(404, f"Unknown setting '{key}'")
    conn = _get_conn()
    try:
        return {"key": key, "value": get_setting(conn, key, SETTINGS_DEFAULTS[key])}
    finally:
        conn.close()


@router.put("/settings/{key}")
async def put_setting_endpoint(key: str, body: SettingValue):
    if key not in SETTINGS_DEFAULTS:
        raise HTTPException(404, f"Unknown setting '{key}'")
    if key == "default_oom_only" and body.value not in ("true", "false"):
        raise HTTPException(400, "default_oom_only must be 'true' or 'false'")
    if key == "standings_source" and body.value not in SOURCE_MODES:
        raise HTTPException(400, f"Unknown source '{body.value}'")
    conn = _get_conn()
    try:
        set_setting(conn, key, body.value)
        logger.info("Setting %s = %s", key, body.value)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# STATUS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/status")
async def status():
    conn = _get_conn()
    try:
        societies = conn.execute("SELECT COUNT(*) as cnt FROM societies").fetchone()["cnt"]
        published = conn.execute(
            "SELECT COUNT(*) as cnt FROM events WHERE results_status=?",
            (STATUS_PUBLISHED,)
        ).fetchone()["cnt"]
        return {"ok": True, "societies": societies, "published_events": published}
    finally:
        conn.close()
