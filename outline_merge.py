"""
Merge edge-adjacent packed rectangles into simplified outlines.

Only used when rectangles are packed flush (zero gap) and drawn without corner
rounding, so neighbouring pieces can be cut as one shape. Rectangles are
grouped into clusters of shared edges; each cluster becomes one point list.

The outline of a multi-rectangle cluster is approximated: corners that are not
buried inside another rectangle are sorted by angle around the cluster's
bounding-box centre. That is exact for a straight strip of rectangles but not a
real polygon union; L-shapes and multi-row blocks can come out with notches
or a centre vertex.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from rect_packer import PlacementSuggestion

Point = Tuple[float, float]

DEFAULT_TOLERANCE = 0.5


@dataclass(frozen=True)
class PixelRect:
    x: int
    y: int
    w: int
    h: int

    @property
    def right(self) -> int:
        return self.x + self.w

    @property
    def bottom(self) -> int:
        return self.y + self.h

    def corners(self) -> List[Point]:
        return [
            (float(self.x), float(self.y)),
            (float(self.right), float(self.y)),
            (float(self.right), float(self.bottom)),
            (float(self.x), float(self.bottom)),
        ]


def should_merge(gap_mm: float, corner_radius_mm: float) -> bool:
    return gap_mm == 0 and corner_radius_mm <= 0


def suggestions_to_pixel_rects(
    suggestions: Iterable[PlacementSuggestion], px_per_mm_x: float, px_per_mm_y: float
) -> List[PixelRect]:
    return [
        PixelRect(
            x=int(round(s.x_mm * px_per_mm_x)),
            y=int(round(s.y_mm * px_per_mm_y)),
            w=int(round(s.width_mm * px_per_mm_x)),
            h=int(round(s.height_mm * px_per_mm_y)),
        )
        for s in suggestions
    ]


def _span_overlap(a0: float, a1: float, b0: float, b1: float) -> float:
    return min(a1, b1) - max(a0, b0)


def shares_edge(a: PixelRect, b: PixelRect, tol: float = DEFAULT_TOLERANCE) -> bool:
    """True when a and b touch along a segment, not just at a corner."""
    side_by_side = abs(a.right - b.x) <= tol or abs(b.right - a.x) <= tol
    if side_by_side and _span_overlap(a.y, a.bottom, b.y, b.bottom) > tol:
        return True
    stacked = abs(a.bottom - b.y) <= tol or abs(b.bottom - a.y) <= tol
    return stacked and _span_overlap(a.x, a.right, b.x, b.right) > tol


def group_clusters(rects: Sequence[PixelRect], tol: float = DEFAULT_TOLERANCE) -> List[List[PixelRect]]:
    remaining = list(range(len(rects)))
    clusters: List[List[PixelRect]] = []
    while remaining:
        members = [remaining.pop(0)]
        grew = True
        while grew:
            grew = False
            for idx in list(remaining):
                if any(shares_edge(rects[idx], rects[m], tol) for m in members):
                    members.append(idx)
                    remaining.remove(idx)
                    grew = True
        clusters.append([rects[i] for i in members])
    return clusters


def _strictly_inside(p: Point, r: PixelRect, tol: float) -> bool:
    return r.x + tol < p[0] < r.right - tol and r.y + tol < p[1] < r.bottom - tol


def cluster_outline(cluster: Sequence[PixelRect], tol: float = DEFAULT_TOLERANCE) -> List[Point]:
    if len(cluster) == 1:
        return cluster[0].corners()

    points: List[Point] = []
    seen = set()
    for i, rect in enumerate(cluster):
        for p in rect.corners():
            if any(_strictly_inside(p, other, tol) for j, other in enumerate(cluster) if j != i):
                continue
            key = (round(p[0], 3), round(p[1], 3))
            if key in seen:
                continue
            seen.add(key)
            points.append(p)

    cx = (min(r.x for r in cluster) + max(r.right for r in cluster)) / 2.0
    cy = (min(r.y for r in cluster) + max(r.bottom for r in cluster)) / 2.0
    points.sort(key=lambda p: math.atan2(p[1] - cy, p[0] - cx))
    return points


def merge_outlines(rects: Sequence[PixelRect], tol: float = DEFAULT_TOLERANCE) -> List[List[Point]]:
    return [cluster_outline(c, tol) for c in group_clusters(rects, tol)]


def outlines_to_mm(outlines: Iterable[Sequence[Point]], px_per_mm_x: float, px_per_mm_y: float) -> List[List[Point]]:
    return [[(x / px_per_mm_x, y / px_per_mm_y) for x, y in outline] for outline in outlines]
