"""
Density-based grouping of geocoded stops.

`dbscan` partitions points into proximity clusters so that route
optimization runs on small same-day groups instead of a whole zone.
Every input id comes back in exactly one cluster; points that are not
density-reachable from anything become single-point clusters.
"""

from collections import deque
from typing import Dict, List, Optional, Sequence, Tuple

from .geo import haversine_distance
from .models import GeoPoint

NOISE = -1


def centroid(cluster: Sequence[GeoPoint]) -> Tuple[float, float]:
    lat = sum(p.lat for p in cluster) / len(cluster)
    lng = sum(p.lng for p in cluster) / len(cluster)
    return lat, lng


def cluster_spread(cluster: Sequence[GeoPoint]) -> float:
    """Largest distance (miles) from the centroid to any member."""
    if len(cluster) <= 1:
        return 0.0
    c_lat, c_lng = centroid(cluster)
    return max(haversine_distance(c_lat, c_lng, p.lat, p.lng) for p in cluster)


def _farthest_from(cluster: Sequence[GeoPoint], c_lat: float, c_lng: float) -> Tuple[GeoPoint, float]:
    farthest = cluster[0]
    max_dist = 0.0
    for p in cluster:
        d = haversine_distance(c_lat, c_lng, p.lat, p.lng)
        if d > max_dist:
            farthest, max_dist = p, d
    return farthest, max_dist


def _bisect(cluster: Sequence[GeoPoint], c_lat: float, c_lng: float, farthest: GeoPoint):
    # Split on the line perpendicular to centroid->farthest, through its midpoint.
    dx = farthest.lat - c_lat
    dy = farthest.lng - c_lng
    mid_projection = (dx * dx + dy * dy) / 2

    near, far = [], []
    for p in cluster:
        projection = (p.lat - c_lat) * dx + (p.lng - c_lng) * dy
        (near if projection < mid_projection else far).append(p)

    if not near or not far:
        # Degenerate geometry: halve by distance from the centroid instead.
        ranked = sorted(cluster, key=lambda p: haversine_distance(c_lat, c_lng, p.lat, p.lng))
        mid = (len(ranked) + 1) // 2
        return ranked[:mid], ranked[mid:]
    return near, far


def split_oversized(cluster: Sequence[GeoPoint], max_radius: float) -> List[List[GeoPoint]]:
    """Recursively bisect `cluster` until each part's spread is <= max_radius."""
    if len(cluster) <= 1:
        return [list(cluster)]

    c_lat, c_lng = centroid(cluster)
    farthest, spread = _farthest_from(cluster, c_lat, c_lng)
    if spread <= max_radius:
        return [list(cluster)]

    near, far = _bisect(cluster, c_lat, c_lng, farthest)
    return split_oversized(near, max_radius) + split_oversized(far, max_radius)


def dbscan(
    points: Sequence[GeoPoint],
    epsilon: float = 1.5,
    min_points: int = 2,
    max_radius: Optional[float] = None,
) -> List[List[str]]:
    """
    Cluster points by proximity.

    Args:
        points: geocoded stops; ids must be unique
        epsilon: neighbour radius in miles
        min_points: neighbours (excluding the point itself) needed to seed a cluster
        max_radius: optional cap in miles on each cluster's spread from its centroid

    Returns:
        list of clusters, each a list of point ids
    """
    if min_points < 1:
        raise ValueError("min_points must be >= 1")
    if epsilon < 0:
        raise ValueError("epsilon must be >= 0")

    labels: Dict[int, int] = {}  # point index -> cluster label

    def region_query(i: int) -> List[int]:
        p = points[i]
        return [
            j for j, other in enumerate(points)
            if j != i and haversine_distance(p.lat, p.lng, other.lat, other.lng) <= epsilon
        ]

    current = 0
    for i in range(len(points)):
        if i in labels:
            continue

        neighbors = region_query(i)
        if len(neighbors) < min_points:
            labels[i] = NOISE
            continue

        labels[i] = current
        queue = deque(neighbors)
        while queue:
            j = queue.popleft()
            label = labels.get(j)
            if label == NOISE:
                # border point, reclaimed from noise
                labels[j] = current
            if label is not None:
                continue

            labels[j] = current
            j_neighbors = region_query(j)
            if len(j_neighbors) >= min_points:
                queue.extend(j_neighbors)
        current += 1

    grouped: Dict[int, List[GeoPoint]] = {}
    singles: List[List[GeoPoint]] = []
    for i, p in enumerate(points):
        label = labels[i]
        if label == NOISE:
            singles.append([p])
        else:
            grouped.setdefault(label, []).append(p)

    clusters = list(grouped.values()) + singles

    if max_radius is not None:
        clusters = [part for c in clusters for part in split_oversized(c, max_radius)]

    return [[p.id for p in c] for c in clusters]
