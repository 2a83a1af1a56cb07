"""
LABBUDDY LAYOUT - Placement Heuristics for the Canvas

Three placement problems, all pure functions over Positions:

1. Random placement for nodes added without a position.
2. Overlap resolution after a drag ends: if the drop point is too close to
   another node, walk outward along a spiral until a clear spot is found or
   the attempt budget runs out.
3. The recommendation row: suggestions sit in a horizontal row beneath the
   anchor, centred on its x-coordinate.

Overlap resolution is best-effort. It always terminates after at most
MAX_PLACEMENT_ATTEMPTS candidates; when none is clear the last candidate is
accepted and the result says so (resolved=False).
"""
import math
import random
from typing import Iterable, List, Optional, Sequence

import msgspec

from core.schemas import Position


# =============================================================================
# CONSTANTS
# =============================================================================

MIN_NODE_DISTANCE = 150.0
SPIRAL_ANGLE_STEP = math.pi / 6
SPIRAL_RADIUS_STEP = 40.0
MAX_PLACEMENT_ATTEMPTS = 48

# (x, y, width, height) of the area new nodes are scattered into
RANDOM_AREA = (100.0, 100.0, 400.0, 300.0)

RECOMMENDATION_OFFSET_Y = 200.0
RECOMMENDATION_SPACING = 250.0


# =============================================================================
# RESULT TYPES
# =============================================================================

class PlacementResult(msgspec.Struct, kw_only=True, frozen=True):
    """
    Outcome of an overlap resolution.

    attempts is the number of spiral candidates examined (0 when the drop
    point was already clear). resolved is False only when the budget was
    exhausted without finding a clear candidate.
    """
    position: Position
    resolved: bool
    attempts: int


# =============================================================================
# GEOMETRY
# =============================================================================

def distance(a: Position, b: Position) -> float:
    """Euclidean distance between two canvas positions."""
    return math.hypot(a.x - b.x, a.y - b.y)


def is_clear(
    position: Position,
    others: Iterable[Position],
    min_distance: float = MIN_NODE_DISTANCE,
) -> bool:
    """True if position is at least min_distance away from every other position."""
    return all(distance(position, other) >= min_distance for other in others)


def spiral_candidate(origin: Position, attempt: int) -> Position:
    """
    The attempt-th point on the search spiral around origin (attempt >= 1).

    Each step turns by SPIRAL_ANGLE_STEP and moves SPIRAL_RADIUS_STEP further
    out, so one full turn covers twelve candidates.
    """
    angle = attempt * SPIRAL_ANGLE_STEP
    radius = attempt * SPIRAL_RADIUS_STEP
    return Position(
        x=origin.x + radius * math.cos(angle),
        y=origin.y + radius * math.sin(angle),
    )


def resolve_overlap(
    position: Position,
    others: Sequence[Position],
    min_distance: float = MIN_NODE_DISTANCE,
    max_attempts: int = MAX_PLACEMENT_ATTEMPTS,
) -> PlacementResult:
    """
    Nudge a dropped node away from its neighbours.

    Args:
        position: Where the drag ended
        others: Positions of every other node on the canvas
        min_distance: Required clearance
        max_attempts: Spiral candidates to try before giving up

    Returns:
        PlacementResult with the final position
    """
    if is_clear(position, others, min_distance):
        return PlacementResult(position=position, resolved=True, attempts=0)

    candidate = position
    for attempt in range(1, max_attempts + 1):
        candidate = spiral_candidate(position, attempt)
        if is_clear(candidate, others, min_distance):
            return PlacementResult(position=candidate, resolved=True, attempts=attempt)

    return PlacementResult(position=candidate, resolved=False, attempts=max_attempts)


# =============================================================================
# PLACEMENT
# =============================================================================

def random_position(rng: Optional[random.Random] = None) -> Position:
    """A pseudo-random point inside RANDOM_AREA."""
    rng = rng or random
    left, top, width, height = RANDOM_AREA
    return Position(x=left + rng.random() * width, y=top + rng.random() * height)


def recommendation_row(anchor: Position, count: int) -> List[Position]:
    """
    Positions for `count` suggestions beneath the anchor.

    The row is centred on anchor.x at anchor.y + RECOMMENDATION_OFFSET_Y, with
    RECOMMENDATION_SPACING between neighbours.
    """
    if count <= 0:
        return []
    y = anchor.y + RECOMMENDATION_OFFSET_Y
    start_x = anchor.x - (count - 1) * RECOMMENDATION_SPACING / 2
    return [Position(x=start_x + i * RECOMMENDATION_SPACING, y=y) for i in range(count)]
