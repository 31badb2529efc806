"""Data models for the Order of Merit engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# events.format
FORMAT_STABLEFORD = "stableford"
FORMAT_STROKEPLAY = "strokeplay"
FORMAT_BOTH = "both"
EVENT_FORMATS = (FORMAT_STABLEFORD, FORMAT_STROKEPLAY, FORMAT_BOTH)

# events.classification
CLASS_GENERAL = "general"
CLASS_OOM = "oom"
CLASS_MAJOR = "major"
CLASSIFICATIONS = (CLASS_GENERAL, CLASS_OOM, CLASS_MAJOR)

# events.results_status
STATUS_NONE = "none"
STATUS_DRAFT = "draft"
STATUS_PUBLISHED = "published"
STATUS_CORRECTED = "corrected"
RESULTS_STATUSES = (STATUS_NONE, STATUS_DRAFT, STATUS_PUBLISHED, STATUS_CORRECTED)


class RankingBasis(str, Enum):
    """Which raw value a member is ranked on."""
    STABLEFORD = "stableford"
    STROKEPLAY = "strokeplay"

    @property
    def higher_is_better(self) -> bool:
        return self is RankingBasis.STABLEFORD


@dataclass(frozen=True)
class Member:
    id: int
    name: str
    society_id: Optional[int] = None
    handicap: Optional[float] = None


@dataclass(frozen=True)
class Event:
    """A scheduled competition. season_year is derived from date."""
    id: int
    society_id: int
    name: str
    date: str
    classification: str = CLASS_GENERAL   # general | oom | major
    format: str = FORMAT_STABLEFORD       # stableford | strokeplay | both
    results_status: str = STATUS_NONE     # none | draft | published | corrected
    player_ids: tuple = ()                # members required before publish

    @property
    def season_year(self) -> Optional[int]:
        from core.season import event_season_year
        return event_season_year(self.date)

    @property
    def is_published(self) -> bool:
        return self.results_status == STATUS_PUBLISHED


@dataclass(frozen=True)
class RawResult:
    """One member's entered scores for one event. Any value may be missing."""
    member_id: int
    event_id: int
    stableford_points: Optional[float] = None
    strokeplay_gross: Optional[float] = None
    net_score: Optional[float] = None

    def to_json(self) -> dict:
        return {
            "stableford": self.stableford_points,
            "strokeplay": self.strokeplay_gross,
            "net": self.net_score,
        }


@dataclass(frozen=True)
class ResolvedResult:
    """Normalized results log row: position and tie-split points for one member."""
    event_id: int
    member_id: int
    day_value: Optional[float]
    position: int
    points: float
    basis: Optional[str] = None

    @property
    def is_win(self) -> bool:
        return self.position == 1


@dataclass
class SeasonStanding:
    """Derived per-member season totals. Never persisted."""
    member_id: int
    member_name: str = "Unknown"
    handicap: Optional[float] = None
    total_points: float = 0.0
    wins: int = 0
    events_played: int = 0
    rank: int = 0

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "member_name": self.member_name,
            "handicap": self.handicap,
            "total_points": self.total_points,
            "wins": self.wins,
            "events_played": self.events_played,
            "rank": self.rank,
        }
