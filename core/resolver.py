"""
resolver.py — Event position & points resolution.

Turns one event's raw scores into finishing positions and tie-split points:
sort best first, group identical values, standard competition ranking
(1, 1, 3, ...), and average the points of the ranks each tie group occupies.

Pure functions: no database access, no side effects.
"""

from __future__ import annotations

import logging
import math
from itertools import groupby
from typing import Iterable, Optional

from core.models import (
    Event, RawResult, ResolvedResult, RankingBasis,
    FORMAT_STABLEFORD, FORMAT_STROKEPLAY, FORMAT_BOTH,
)
from core.points import tie_split_points

logger = logging.getLogger("societyoom.resolver")


def _usable(value) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if not isinstance(value, (int, float)):
        return False
    return not math.isnan(value) and not math.isinf(value)


def _strokeplay_value(raw: RawResult) -> Optional[float]:
    if _usable(raw.strokeplay_gross):
        return raw.strokeplay_gross
    if _usable(raw.net_score):
        return raw.net_score
    return None


def select_ranking_value(event_format: str,
                         raw: RawResult) -> Optional[tuple[RankingBasis, float]]:
    """Pick the value a member is ranked on, decided per member.

    stableford: stableford points only.
    strokeplay: gross strokes, else net score.
    both:       stableford if the member has it, else their strokeplay value.

    Returns None when the member has nothing usable for this format.
    """
    if event_format == FORMAT_STABLEFORD:
        if _usable(raw.stableford_points):
            return RankingBasis.STABLEFORD, raw.stableford_points
        return None

    if event_format == FORMAT_STROKEPLAY:
        value = _strokeplay_value(raw)
        return (RankingBasis.STROKEPLAY, value) if value is not None else None

    if event_format == FORMAT_BOTH:
        if _usable(raw.stableford_points):
            return RankingBasis.STABLEFORD, raw.stableford_points
        value = _strokeplay_value(raw)
        return (RankingBasis.STROKEPLAY, value) if value is not None else None

    logger.warning("Unknown event format %r — member %s not ranked",
                   event_format, raw.member_id)
    return None


def event_sort_basis(event_format: str,
                     bases: Iterable[RankingBasis]) -> RankingBasis:
    """Direction used to order an event's participants.

    A "both" event sorts stableford-style (descending) as soon as one
    participant is ranked on stableford, otherwise strokeplay-style.
    Equal day values tie even when the members' bases differ.
    """
    if event_format == FORMAT_STROKEPLAY:
        return RankingBasis.STROKEPLAY
    if event_format == FORMAT_STABLEFORD:
        return RankingBasis.STABLEFORD
    if RankingBasis.STABLEFORD in set(bases):
        return RankingBasis.STABLEFORD
    return RankingBasis.STROKEPLAY


def resolve_event_positions(event: Event,
                            raw_results: Iterable[RawResult]) -> list[ResolvedResult]:
    """Resolve positions and points for one event.

    Members without a usable raw value are dropped (no position, no points,
    not counted as played). Ties share the better rank and split the points
    of the ranks they occupy.  Output is ordered by position, then member id.
    """
    entries: list[tuple[int, RankingBasis, float]] = []
    seen: set[int] = set()

    for raw in raw_results:
        if raw is None or raw.member_id in seen:
            continue
        picked = select_ranking_value(event.format, raw)
        if picked is None:
            logger.debug("Event %s: member %s has no usable score for %s",
                         event.id, raw.member_id, event.format)
            continue
        seen.add(raw.member_id)
        basis, value = picked
        entries.append((raw.member_id, basis, value))

    if not entries:
        return []

    sort_basis = event_sort_basis(event.format, (b for _, b, _ in entries))
    if len({b for _, b, _ in entries}) > 1:
        logger.warning("Event %s (%s): participants ranked on mixed metrics",
                       event.id, event.format)

    def sort_key(entry):
        member_id, _, value = entry
        return (-value if sort_basis.higher_is_better else value, member_id)

    entries.sort(key=sort_key)

    resolved: list[ResolvedResult] = []
    better = 0
    # Ties group on the day value alone; in a mixed "both" field a stableford
    # 36 and a strokeplay 36 share a position.
    for value, group in groupby(entries, key=lambda e: e[2]):
        group = list(group)
        position = better + 1
        points = tie_split_points(position, len(group))
        for member_id, basis, day_value in group:
            resolved.append(ResolvedResult(
                event_id=event.id,
                member_id=member_id,
                day_value=day_value,
                position=position,
                points=points,
                basis=basis.value,
            ))
        better += len(group)

    assert all(1 <= r.position <= len(entries) for r in resolved), \
        f"Event {event.id}: position outside 1..{len(entries)}"
    return resolved


def current_leaders(event: Event, raw_results: Iterable[RawResult]) -> list[int]:
    """Member ids currently at position 1 (draft preview). Ties return all."""
    return [r.member_id for r in resolve_event_positions(event, raw_results)
            if r.position == 1]
