"""
points.py — Order of Merit points table.

F1-style points by finishing position: 1st=25, 2nd=18 ... 10th=1, 11th+ = 0.
Both the published results log and the inline fallback resolve points through
this module, so the two paths can never disagree on the table.
"""

from __future__ import annotations

OOM_POINTS = {
    1: 25,
    2: 18,
    3: 15,
    4: 12,
    5: 10,
    6: 8,
    7: 6,
    8: 4,
    9: 2,
    10: 1,
}

POINTS_POSITIONS = max(OOM_POINTS)


def points_for_position(position: int) -> int:
    """Points for a single finishing position. 0 beyond the table."""
    if position < 1:
        raise ValueError(f"Position must be 1 or greater, got {position}")
    return OOM_POINTS.get(position, 0)


def tie_split_points(start_position: int, group_size: int) -> float:
    """Average points over the ranks a tie group occupies.

    A group of k members tied at rank r occupies ranks r..r+k-1; each member
    gets sum(points(r..r+k-1)) / k.  Two players tied 1st get (25+18)/2.
    """
    if group_size < 1:
        raise ValueError(f"Tie group must have at least one member, got {group_size}")
    total = sum(points_for_position(p)
                for p in range(start_position, start_position + group_size))
    if group_size == 1:
        return float(total)
    return total / group_size


def points_legend() -> list[dict]:
    """Points table as ordered rows for display."""
    return [{"position": pos, "points": pts} for pos, pts in sorted(OOM_POINTS.items())]


def format_points(points: float | None) -> str:
    """Format points for display: decimals only when needed (25, 21.5, 19.33)."""
    if points is None:
        return ""
    if points == int(points):
        return str(int(points))
    return f"{points:.2f}".rstrip("0").rstrip(".")
