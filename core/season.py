"""
season.py — Season filtering, Order of Merit aggregation, results log, export.

Standings are a pure function of the qualifying events and their resolved
rows: nothing here caches or persists totals.

Sort order: total points desc, wins desc, events played desc, member id asc.
Ranks run 1..N in that order (equal keys do not share a rank).
"""

from __future__ import annotations

import csv
import logging
import re
from datetime import datetime
from typing import Iterable, Optional

from core.models import (
    Event, Member, ResolvedResult, SeasonStanding,
    STATUS_PUBLISHED, CLASS_OOM,
)
from core.points import format_points

logger = logging.getLogger("societyoom.season")

DATE_FORMATS = ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%d/%m/%Y")

_YEAR_PREFIX = re.compile(r"^(\d{4})")


def event_season_year(date_str: Optional[str]) -> Optional[int]:
    """Season year from an event date, or None if the date is unusable."""
    if not date_str or not str(date_str).strip():
        return None
    text = str(date_str).strip()

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).year
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).year
        except ValueError:
            pass

    m = _YEAR_PREFIX.match(text)
    if m:
        year = int(m.group(1))
        if 1900 < year < 2100:
            return year
    return None


# ---------------------------------------------------------------------------
# Gating
# ---------------------------------------------------------------------------

def event_counts_for_season(event: Event, season_year: int,
                            oom_only: bool = False,
                            society_id: Optional[int] = None) -> bool:
    """True iff the event is published, in the season and passes the OOM filter."""
    if society_id is not None and event.society_id != society_id:
        return False
    if event.results_status != STATUS_PUBLISHED:
        return False
    if oom_only and event.classification != CLASS_OOM:
        return False
    year = event_season_year(event.date)
    if year is None:
        logger.warning("Event %s (%s): unparsable date %r — excluded from season",
                       event.id, event.name, event.date)
        return False
    return year == season_year


def qualifying_events(events: Iterable[Event], season_year: int,
                      oom_only: bool = False,
                      society_id: Optional[int] = None) -> list[Event]:
    """Events that count for the season, ordered by date then id."""
    selected = [e for e in events
                if e is not None
                and event_counts_for_season(e, season_year, oom_only, society_id)]
    selected.sort(key=lambda e: (e.date, e.id))
    return selected


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def standing_sort_key(standing: SeasonStanding) -> tuple:
    return (-standing.total_points, -standing.wins,
            -standing.events_played, standing.member_id)


def aggregate_standings(resolved_events: Iterable[tuple[Event, list[ResolvedResult]]],
                        members: Iterable[Member]) -> list[SeasonStanding]:
    """Sum points, wins and events played per member, then sort and rank.

    resolved_events: (event, resolved rows) pairs, already gated.
    Members with no contribution are omitted; members missing from the
    roster are kept as "Unknown".  Zero-point members are returned; hiding
    them is up to the caller.
    """
    roster = {m.id: m for m in members if m is not None}
    stats: dict[int, SeasonStanding] = {}

    for event, rows in resolved_events:
        counted: set[int] = set()
        for row in rows:
            if row.member_id in counted:
                logger.warning("Event %s: duplicate result for member %s ignored",
                               event.id, row.member_id)
                continue
            counted.add(row.member_id)

            standing = stats.get(row.member_id)
            if standing is None:
                member = roster.get(row.member_id)
                standing = SeasonStanding(
                    member_id=row.member_id,
                    member_name=member.name if member else "Unknown",
                    handicap=member.handicap if member else None,
                )
                stats[row.member_id] = standing

            standing.total_points += row.points
            standing.events_played += 1
            if row.position == 1:
                standing.wins += 1

    standings = sorted(stats.values(), key=standing_sort_key)
    for rank, standing in enumerate(standings, 1):
        standing.rank = rank
    return standings


# ---------------------------------------------------------------------------
# Results log
# ---------------------------------------------------------------------------

def build_results_log(resolved_events: Iterable[tuple[Event, list[ResolvedResult]]],
                      members: Iterable[Member]) -> list[dict]:
    """Group resolved rows per event for the results log view."""
    names = {m.id: m.name for m in members if m is not None}
    log = []
    for event, rows in resolved_events:
        if not rows:
            continue
        ordered = sorted(rows, key=lambda r: (r.position, r.member_id))
        log.append({
            "event_id": event.id,
            "event_name": event.name,
            "event_date": event.date,
            "format": event.format,
            "classification": event.classification,
            "results": [
                {
                    "member_id": r.member_id,
                    "member_name": names.get(r.member_id, "Unknown"),
                    "day_value": r.day_value,
                    "position": r.position,
                    "points": r.points,
                }
                for r in ordered
            ],
        })
    return log


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def export_standings_csv(standings: list[SeasonStanding], filepath: str) -> int:
    """Export standings to CSV. Returns row count."""
    count = 0
    with open(filepath, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f, delimiter=";")
        writer.writerow(["Pos", "Member", "Points", "Wins", "Played"])
        for s in standings:
            writer.writerow([s.rank, s.member_name, format_points(s.total_points),
                             s.wins, s.events_played])
            count += 1
    return count
