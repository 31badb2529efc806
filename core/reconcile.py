"""
reconcile.py — Result sources and season standings.

Two stores can hold an event's results:
  - the normalized results log (event_results rows written at publish), and
  - the legacy inline score map kept on the event itself.

A ResultSource answers "what are this event's resolved rows?".  The merged
source decides per event: log rows win when the event has any, otherwise the
inline scores are resolved on the fly.  An event is never read from both.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, Mapping, Optional

from core.models import Event, Member, RawResult, ResolvedResult, SeasonStanding
from core.resolver import resolve_event_positions
from core.season import aggregate_standings, build_results_log, qualifying_events

logger = logging.getLogger("societyoom.reconcile")

SOURCE_MERGED = "merged"
SOURCE_LOG = "log"
SOURCE_INLINE = "inline"
SOURCE_MODES = (SOURCE_MERGED, SOURCE_LOG, SOURCE_INLINE)


class ResultSource:
    """Base: resolved rows for one event. Empty list = no contribution."""

    name = "none"

    def results_for(self, event: Event) -> list[ResolvedResult]:
        raise NotImplementedError

    def has_results(self, event: Event) -> bool:
        return bool(self.results_for(event))


class LogResultSource(ResultSource):
    """Pre-resolved rows from the normalized results log."""

    name = SOURCE_LOG

    def __init__(self, rows: Iterable[ResolvedResult]):
        self._by_event: dict[int, list[ResolvedResult]] = {}
        for row in rows:
            self._by_event.setdefault(row.event_id, []).append(row)

    def results_for(self, event: Event) -> list[ResolvedResult]:
        rows = self._by_event.get(event.id, [])
        return sorted(rows, key=lambda r: (r.position, r.member_id))


class InlineResultSource(ResultSource):
    """Legacy path: resolve each event's inline raw scores on demand."""

    name = SOURCE_INLINE

    def __init__(self, raw_by_event: Mapping[int, Iterable[RawResult]]):
        self._raw = {event_id: list(raws) for event_id, raws in raw_by_event.items()}

    def results_for(self, event: Event) -> list[ResolvedResult]:
        raws = self._raw.get(event.id)
        if not raws:
            return []
        return resolve_event_positions(event, raws)


class MergedResultSource(ResultSource):
    """Per event: log rows if present, else inline resolution."""

    name = SOURCE_MERGED

    def __init__(self, log: LogResultSource, inline: InlineResultSource):
        self.log = log
        self.inline = inline

    def results_for(self, event: Event) -> list[ResolvedResult]:
        rows = self.log.results_for(event)
        if rows:
            return rows
        rows = self.inline.results_for(event)
        if rows:
            logger.debug("Event %s: no log rows, resolved %d inline results",
                         event.id, len(rows))
        return rows


def _resolve_events(events: list[Event],
                    result_source: ResultSource) -> list[tuple[Event, list[ResolvedResult]]]:
    resolved = []
    for event in events:
        rows = result_source.results_for(event)
        if not rows:
            logger.info("Event %s (%s) is published but has no results — skipped",
                        event.id, event.name)
            continue
        resolved.append((event, rows))
    return resolved


def compute_season_standings(society_id: Optional[int], season_year: int,
                             oom_only: bool, members: Iterable[Member],
                             events: Iterable[Event],
                             result_source: ResultSource) -> list[SeasonStanding]:
    """Season standings for a society, recomputed from scratch on every call."""
    selected = qualifying_events(events, season_year, oom_only, society_id)
    resolved = _resolve_events(selected, result_source)
    standings = aggregate_standings(resolved, members)
    logger.debug("Standings society=%s season=%s oom_only=%s source=%s: "
                 "%d events, %d members", society_id, season_year, oom_only,
                 result_source.name, len(resolved), len(standings))
    return standings


def compute_results_log(society_id: Optional[int], season_year: int,
                        oom_only: bool, members: Iterable[Member],
                        events: Iterable[Event],
                        result_source: ResultSource) -> list[dict]:
    """Per-event results log for the same event selection as the standings."""
    members = list(members)
    selected = qualifying_events(events, season_year, oom_only, society_id)
    return build_results_log(_resolve_events(selected, result_source), members)


def compare_sources(society_id: Optional[int], season_year: int, oom_only: bool,
                    members: Iterable[Member], events: Iterable[Event],
                    log: LogResultSource,
                    inline: InlineResultSource) -> list[str]:
    """Compare log-only and inline-only standings over events present in both.

    Returns list of diff messages (empty = both paths agree).
    """
    members = list(members)
    selected = qualifying_events(events, season_year, oom_only, society_id)
    shared = [e for e in selected if log.has_results(e) and inline.has_results(e)]

    via_log = {s.member_id: s for s in compute_season_standings(
        society_id, season_year, oom_only, members, shared, log)}
    via_inline = {s.member_id: s for s in compute_season_standings(
        society_id, season_year, oom_only, members, shared, inline)}

    diffs = []
    for member_id in sorted(set(via_log) | set(via_inline)):
        a = via_log.get(member_id)
        b = via_inline.get(member_id)
        if a is None:
            diffs.append(f"member={member_id} only in inline standings")
            continue
        if b is None:
            diffs.append(f"member={member_id} only in log standings")
            continue
        if abs(a.total_points - b.total_points) > 1e-9:
            diffs.append(f"member={member_id} points {a.total_points} (log) → "
                         f"{b.total_points} (inline)")
        if a.wins != b.wins:
            diffs.append(f"member={member_id} wins {a.wins} (log) → {b.wins} (inline)")
        if a.events_played != b.events_played:
            diffs.append(f"member={member_id} played {a.events_played} (log) → "
                         f"{b.events_played} (inline)")

    for d in diffs:
        logger.warning("Source diff: %s", d)
    return diffs


# ---------------------------------------------------------------------------
# Database-backed sources
# ---------------------------------------------------------------------------

def load_result_source(conn: sqlite3.Connection, society_id: int,
                       mode: str = SOURCE_MERGED) -> ResultSource:
    """Build a result source from the database for one society."""
    from core.database import get_society_log_rows, get_society_inline_results

    if mode not in SOURCE_MODES:
        raise ValueError(f"Unknown result source {mode!r}")
    if mode == SOURCE_LOG:
        return LogResultSource(get_society_log_rows(conn, society_id))
    if mode == SOURCE_INLINE:
        return InlineResultSource(get_society_inline_results(conn, society_id))
    return MergedResultSource(
        LogResultSource(get_society_log_rows(conn, society_id)),
        InlineResultSource(get_society_inline_results(conn, society_id)),
    )
