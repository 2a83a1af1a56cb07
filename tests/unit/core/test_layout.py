"""
Unit tests for core/layout.py - placement heuristics.
"""
import math
import random

from core.layout import (
    MAX_PLACEMENT_ATTEMPTS,
    MIN_NODE_DISTANCE,
    RANDOM_AREA,
    distance,
    is_clear,
    random_position,
    recommendation_row,
    resolve_overlap,
    spiral_candidate,
)
from core.schemas import Position


def test_distance():
    assert distance(Position(x=0, y=0), Position(x=3, y=4)) == 5


def test_is_clear_threshold_is_inclusive():
    assert is_clear(Position(x=150, y=0), [Position(x=0, y=0)])
    assert not is_clear(Position(x=149.9, y=0), [Position(x=0, y=0)])


def test_resolve_overlap_clear_position_unchanged():
    start = Position(x=0, y=0)
    result = resolve_overlap(start, [Position(x=400, y=400)])

    assert result.position == start
    assert result.resolved
    assert result.attempts == 0


def test_resolve_overlap_moves_away_from_neighbour():
    neighbour = Position(x=100, y=100)
    result = resolve_overlap(Position(x=105, y=100), [neighbour])

    assert result.resolved
    assert result.attempts > 0
    assert distance(result.position, neighbour) >= MIN_NODE_DISTANCE


def test_resolve_overlap_gives_up_after_budget():
    # Every candidate is crowded when the required clearance is huge
    start = Position(x=0, y=0)
    result = resolve_overlap(start, [start], min_distance=10_000)

    assert not result.resolved
    assert result.attempts == MAX_PLACEMENT_ATTEMPTS
    assert result.position == spiral_candidate(start, MAX_PLACEMENT_ATTEMPTS)


def test_resolve_overlap_dense_cluster_terminates():
    # 100px grid out past the spiral's reach: no point is 150px from every node
    grid = [
        Position(x=float(x), y=float(y))
        for x in range(-2100, 2101, 100)
        for y in range(-2100, 2101, 100)
    ]
    start = Position(x=10, y=10)

    result = resolve_overlap(start, grid)

    assert not result.resolved
    assert result.attempts == MAX_PLACEMENT_ATTEMPTS
    assert result.position == spiral_candidate(start, MAX_PLACEMENT_ATTEMPTS)
    assert not is_clear(result.position, grid)


def test_resolve_overlap_with_no_other_nodes():
    result = resolve_overlap(Position(x=5, y=5), [])
    assert result.attempts == 0


def test_spiral_candidate_grows_outward():
    origin = Position(x=0, y=0)
    radii = [distance(origin, spiral_candidate(origin, k)) for k in range(1, 6)]
    assert radii == sorted(radii)
    assert math.isclose(radii[0], 40.0)


def test_random_position_within_area():
    left, top, width, height = RANDOM_AREA
    rng = random.Random(42)
    for _ in range(50):
        p = random_position(rng)
        assert left <= p.x <= left + width
        assert top <= p.y <= top + height


def test_recommendation_row_centred_beneath_anchor():
    row = recommendation_row(Position(x=400, y=100), 3)

    assert [p.x for p in row] == [150, 400, 650]
    assert all(p.y == 300 for p in row)


def test_recommendation_row_empty():
    assert recommendation_row(Position(x=0, y=0), 0) == []
