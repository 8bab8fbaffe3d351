"""Habitat outline.

The habitat is the polygon inside which demes and Voronoi seeds may be
placed. Geometry is delegated to shapely; this module only reads the
outline, answers containment queries and reports extents.

Points on the boundary count as inside. A relative tolerance of
BOUNDARY_TOL × max(span) absorbs rounding when lattice nodes are laid
out exactly on the bounding box.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

import numpy as np
import shapely
from shapely.geometry import Polygon
from shapely.geometry.polygon import orient

from eems.utils import read_matrix

BOUNDARY_TOL = 1e-9


class Habitat:
    """Simple polygon habitat with containment and extent queries."""

    def __init__(self, vertices: np.ndarray):
        vertices = np.asarray(vertices, dtype=np.float64)
        if vertices.ndim != 2 or vertices.shape[1] != 2:
            raise ValueError(
                f"Habitat vertices must be an (n, 2) array, got shape {vertices.shape}"
            )
        if len(vertices) > 1 and np.array_equal(vertices[0], vertices[-1]):
            vertices = vertices[:-1]
        if len(vertices) < 3:
            raise ValueError(
                f"Habitat outline needs at least 3 distinct vertices, got {len(vertices)}"
            )
        polygon = Polygon(vertices)
        if not polygon.is_valid or polygon.area <= 0:
            raise ValueError(
                "Habitat outline is not a simple polygon with positive area "
                f"({shapely.is_valid_reason(polygon)})"
            )
        self.polygon = orient(polygon, sign=1.0)
        self.xmin, self.ymin, self.xmax, self.ymax = self.polygon.bounds
        tol = BOUNDARY_TOL * max(self.xspan, self.yspan)
        self._region = self.polygon.buffer(tol)
        shapely.prepare(self._region)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'Habitat':
        """Read the outline from a two-column table of vertices (e.g. <datapath>.outer)."""
        vertices = read_matrix(
            path, ncols=2,
            what="a list of habitat vertices, two coordinates per row",
        )
        return cls(vertices)

    @classmethod
    def rectangle(cls, xmin: float, ymin: float, xmax: float, ymax: float) -> 'Habitat':
        return cls(np.array([[xmin, ymin], [xmax, ymin], [xmax, ymax], [xmin, ymax]]))

    @property
    def xspan(self) -> float:
        return self.xmax - self.xmin

    @property
    def yspan(self) -> float:
        return self.ymax - self.ymin

    @property
    def area(self) -> float:
        return float(self.polygon.area)

    def in_point(self, x: float, y: float) -> bool:
        """True if (x, y) lies inside the habitat or on its boundary."""
        return bool(shapely.intersects_xy(self._region, x, y))

    def in_points(self, xy: np.ndarray) -> np.ndarray:
        """Vectorized in_point over an (n, 2) array."""
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        return np.asarray(shapely.intersects_xy(self._region, xy[:, 0], xy[:, 1]), dtype=bool)

    def random_point(self, rng: np.random.Generator) -> np.ndarray:
        """Uniform point inside the habitat (rejection from the bounding box)."""
        while True:
            x = self.xmin + self.xspan * rng.random()
            y = self.ymin + self.yspan * rng.random()
            if self.in_point(x, y):
                return np.array([x, y])

    def random_points(self, rng: np.random.Generator, n: int) -> np.ndarray:
        points = np.zeros((n, 2), dtype=np.float64)
        for i in range(n):
            points[i] = self.random_point(rng)
        return points
