"""
Nearest-neighbour + 2-opt route sequencing for one cluster of stops.

Routes are open paths. With a depot the path starts at the depot and does
not return to it; the depot counts toward `total_distance` but never
appears in `order`.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from .geo import haversine_distance
from .models import GeoPoint, Route

logger = logging.getLogger(__name__)

# Minimum gain for a 2-opt move; stops float noise from looping forever.
IMPROVEMENT_EPSILON = 1e-10

# Above this many stops only this many nearest-neighbour starts are tried.
MAX_MULTI_START = 64

Matrix = List[List[float]]


def distance_matrix(coords: Sequence[Tuple[float, float]]) -> Matrix:
    n = len(coords)
    dist = [[0.0] * n for _ in range(n)]
    for i in range(n):
        for j in range(i + 1, n):
            d = haversine_distance(coords[i][0], coords[i][1], coords[j][0], coords[j][1])
            dist[i][j] = dist[j][i] = d
    return dist


def path_length(route: Sequence[int], dist: Matrix) -> float:
    return sum(dist[route[k]][route[k + 1]] for k in range(len(route) - 1))


def nearest_neighbor(dist: Matrix, start: int) -> List[int]:
    n = len(dist)
    visited = {start}
    route = [start]

    while len(route) < n:
        current = route[-1]
        nearest, nearest_dist = -1, float("inf")
        for i in range(n):
            if i not in visited and dist[current][i] < nearest_dist:
                nearest, nearest_dist = i, dist[current][i]
        route.append(nearest)
        visited.add(nearest)

    return route


def two_opt(route: List[int], dist: Matrix, fixed_start: bool = False) -> List[int]:
    """
    Reverse segments of an open path while that strictly shortens it.

    With fixed_start the first element (the depot) never moves.
    """
    route = list(route)
    n = len(route)
    first = 1 if fixed_start else 0
    improved = True

    while improved:
        improved = False
        for i in range(first, n - 1):
            for j in range(i + 1, n):
                # candidate: reverse route[i..j]
                b, c = route[i], route[j]
                before = after = 0.0
                if i > 0:
                    a = route[i - 1]
                    before += dist[a][b]
                    after += dist[a][c]
                if j + 1 < n:
                    d = route[j + 1]
                    before += dist[c][d]
                    after += dist[b][d]
                if after < before - IMPROVEMENT_EPSILON:
                    route[i:j + 1] = route[i:j + 1][::-1]
                    improved = True

    return route


def best_nearest_neighbor(dist: Matrix) -> List[int]:
    """Nearest-neighbour tour from every start, keeping the shortest (first wins ties)."""
    n = len(dist)
    starts = range(min(n, MAX_MULTI_START))
    if n > MAX_MULTI_START:
        logger.warning(f"Route of {n} stops: trying only {MAX_MULTI_START} start points")

    best_route, best_dist = None, float("inf")
    for start in starts:
        route = nearest_neighbor(dist, start)
        d = path_length(route, dist)
        if d < best_dist:
            best_route, best_dist = route, d
    return best_route


def optimize_route(points: Sequence[GeoPoint], depot: Optional[Tuple[float, float]] = None) -> Route:
    """
    Order `points` into a short visiting sequence.

    Args:
        points: stops of one cluster
        depot: optional (lat, lng) the route starts from

    Returns:
        Route with ids in visiting order and the path length in miles (2 dp)
    """
    if not points:
        return Route(order=[], total_distance=0.0)

    if len(points) == 1:
        only = points[0]
        d = haversine_distance(depot[0], depot[1], only.lat, only.lng) if depot else 0.0
        return Route(order=[only.id], total_distance=round(d, 2))

    if depot is None:
        if len(points) == 2:
            a, b = points
            return Route(
                order=[a.id, b.id],
                total_distance=round(haversine_distance(a.lat, a.lng, b.lat, b.lng), 2),
            )

        dist = distance_matrix([(p.lat, p.lng) for p in points])
        route = two_opt(best_nearest_neighbor(dist), dist)
        return Route(
            order=[points[i].id for i in route],
            total_distance=round(path_length(route, dist), 2),
        )

    # Depot sits at index 0; stops are 1..n.
    dist = distance_matrix([depot] + [(p.lat, p.lng) for p in points])
    route = two_opt(nearest_neighbor(dist, 0), dist, fixed_start=True)
    return Route(
        order=[points[i - 1].id for i in route if i != 0],
        total_distance=round(path_length(route, dist), 2),
    )
