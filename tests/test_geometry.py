"""Tests for geometry primitives."""

from bpmn_layout_mcp.geometry import (
    SpatialGrid,
    build_orthogonal_route,
    build_z_route,
    deduplicate_waypoints,
    is_orthogonal,
    nearest_border_point,
    path_intersects_rect,
    remove_collinear_points,
    segment_intersects_rect,
    segments_intersect,
)
from bpmn_layout_mcp.models import TASK, Bounds, DiagramElement, Point


def _pts(*coords: tuple[float, float]) -> list[Point]:
    return [Point(x, y) for x, y in coords]


# ===================================================================
# Intersections
# ===================================================================


def test_segments_cross() -> None:
    assert segments_intersect(Point(0, 0), Point(10, 10), Point(0, 10), Point(10, 0))


def test_segments_shared_endpoint_do_not_cross() -> None:
    assert not segments_intersect(Point(0, 0), Point(10, 0), Point(10, 0), Point(10, 10))


def test_segments_touching_at_interior_endpoint_do_not_cross() -> None:
    # T-junction: b starts on a
    assert not segments_intersect(Point(0, 0), Point(10, 0), Point(5, 0), Point(5, 10))


def test_collinear_segments_do_not_cross() -> None:
    assert not segments_intersect(Point(0, 0), Point(10, 0), Point(5, 0), Point(15, 0))


def test_orthogonal_segments_cross() -> None:
    assert segments_intersect(Point(0, 5), Point(10, 5), Point(5, 0), Point(5, 10))


def test_segment_through_rect() -> None:
    rect = Bounds(10, 10, 20, 20)
    assert segment_intersects_rect(Point(0, 20), Point(40, 20), rect)
    assert not segment_intersects_rect(Point(0, 0), Point(40, 0), rect)


def test_path_intersects_rect() -> None:
    rect = Bounds(100, 100, 50, 50)
    assert path_intersects_rect(_pts((0, 0), (125, 0), (125, 200)), rect)
    assert not path_intersects_rect(_pts((0, 0), (90, 0), (90, 200)), rect)


# ===================================================================
# Waypoint clean-up
# ===================================================================


def test_is_orthogonal() -> None:
    assert is_orthogonal(_pts((0, 0), (50, 0), (50, 80)))
    assert not is_orthogonal(_pts((0, 0), (50, 30)))
    assert is_orthogonal(_pts((0, 0), (50, 1)))


def test_deduplicate_waypoints() -> None:
    result = deduplicate_waypoints(_pts((0, 0), (0.5, 0), (50, 0), (50, 0)))
    assert [(p.x, p.y) for p in result] == [(0, 0), (50, 0)]


def test_remove_collinear_points() -> None:
    result = remove_collinear_points(_pts((0, 0), (20, 0), (40, 0), (40, 50)))
    assert [(p.x, p.y) for p in result] == [(0, 0), (40, 0), (40, 50)]


def test_build_z_route() -> None:
    route = build_z_route(100, 40, 200, 140)
    assert [(p.x, p.y) for p in route] == [(100, 40), (150, 40), (150, 140), (200, 140)]
    assert is_orthogonal(route)


def test_build_orthogonal_route() -> None:
    straight = build_orthogonal_route(Point(0, 0), Point(100, 1))
    assert len(straight) == 2
    wide = build_orthogonal_route(Point(0, 0), Point(100, 30))
    assert [(p.x, p.y) for p in wide] == [(0, 0), (100, 0), (100, 30)]
    tall = build_orthogonal_route(Point(0, 0), Point(30, 100))
    assert [(p.x, p.y) for p in tall] == [(0, 0), (0, 100), (30, 100)]


def test_nearest_border_point() -> None:
    el = DiagramElement(id="A", type=TASK, x=0, y=0, width=100, height=80)
    outside = nearest_border_point(el, Point(150, 40))
    assert (outside.x, outside.y) == (100, 40)
    inside = nearest_border_point(el, Point(60, 75))
    assert (inside.x, inside.y) == (60, 80)


# ===================================================================
# Spatial grid
# ===================================================================


def test_spatial_grid_query() -> None:
    grid: SpatialGrid[str] = SpatialGrid(cell_size=100)
    grid.insert("near", Bounds(10, 10, 20, 20))
    grid.insert("far", Bounds(900, 900, 20, 20))
    assert grid.query(Bounds(0, 0, 50, 50)) == ["near"]
    assert len(grid) == 2


def test_spatial_grid_spanning_item_returned_once() -> None:
    grid: SpatialGrid[str] = SpatialGrid(cell_size=50)
    grid.insert("wide", Bounds(0, 0, 200, 20))
    assert grid.query(Bounds(0, 0, 200, 20)) == ["wide"]
