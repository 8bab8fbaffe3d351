"""Population graph: demes, edges and the sample → deme map.

Builds the discretized landscape the migration surface lives on:
  - make_triangular_grid: regular triangular lattice clipped to the habitat
  - read_input_grid: externally supplied lattice (<gridpath>.demes/.edges)
  - is_connected: single-component check (scipy.sparse.csgraph)
  - map_indiv_to_deme: nearest deme for every sample
  - reindex_demes: observed demes first, so that the observed block of
    any deme-by-deme matrix is its top-left corner
  - build_graph: the full pipeline, failing fast on a disconnected lattice

Indices are 0-based in memory and 1-based in every file, read or written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components
from scipy.spatial.distance import cdist

from eems.habitat import Habitat
from eems.utils import read_matrix, write_matrix

logger = logging.getLogger(__name__)


class DisconnectedGraphError(ValueError):
    """The population grid has more than one connected component."""


# ═══════════════════════════════════════════════════════════════════════
# GRAPH
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Graph:
    """Demes, undirected edges and sample assignment.

    After reindex_demes(), demes 0..o-1 are observed (deme_sizes > 0)
    and demes o..d-1 are unobserved.
    """
    demes: np.ndarray                         # (d, 2) float64 coordinates
    edges: np.ndarray                         # (e, 2) int64, each pair stored once
    indiv2deme: Optional[np.ndarray] = None   # (n,) int64
    deme_sizes: Optional[np.ndarray] = None   # (o,) int64 samples per observed deme

    @property
    def n_demes(self) -> int:
        return int(self.demes.shape[0])

    @property
    def n_obsrv_demes(self) -> int:
        if self.deme_sizes is None:
            return 0
        return int(self.deme_sizes.shape[0])

    @property
    def n_edges(self) -> int:
        return int(self.edges.shape[0])

    @property
    def n_indiv(self) -> int:
        return 0 if self.indiv2deme is None else int(self.indiv2deme.shape[0])

    # ── Connectivity ──────────────────────────────────────────────────

    def adjacency(self) -> sparse.csr_matrix:
        d = self.n_demes
        ones = np.ones(self.n_edges, dtype=np.int8)
        adj = sparse.coo_matrix(
            (ones, (self.edges[:, 0], self.edges[:, 1])), shape=(d, d)
        )
        return adj.tocsr()

    def is_connected(self) -> bool:
        """The graph is connected if it has exactly one connected component."""
        if self.n_demes == 0:
            return False
        n_components, _ = connected_components(self.adjacency(), directed=False)
        return n_components == 1

    # ── Samples ───────────────────────────────────────────────────────

    def map_indiv_to_deme(self, coords: np.ndarray) -> np.ndarray:
        """Assign every sample to its closest deme (first minimum on ties)."""
        coords = np.asarray(coords, dtype=np.float64).reshape(-1, 2)
        dist = cdist(coords, self.demes)
        self.indiv2deme = np.argmin(dist, axis=1).astype(np.int64)
        return self.indiv2deme

    def reindex_demes(self) -> np.ndarray:
        """Renumber demes so observed ones come first.

        Observed demes get 0..o-1 in the order their samples are first
        encountered; unobserved demes get o..d-1 in their original order.
        Coordinates, edges, indiv2deme and deme_sizes are remapped.

        Returns:
            new_index: (d,) array mapping old deme index → new index.
        """
        d = self.n_demes
        if self.indiv2deme is None:
            raise ValueError("[Graph.reindex_demes] samples have not been assigned")
        if self.n_edges and (self.edges.min() < 0 or self.edges.max() >= d):
            raise ValueError("[Graph.reindex_demes] edge index out of range")
        if self.indiv2deme.size and (self.indiv2deme.min() < 0 or self.indiv2deme.max() >= d):
            raise ValueError("[Graph.reindex_demes] sample assignment out of range")

        new_index = np.full(d, -1, dtype=np.int64)
        o = 0
        for alpha in self.indiv2deme:
            if new_index[alpha] == -1:
                new_index[alpha] = o
                o += 1
        self.indiv2deme = new_index[self.indiv2deme]
        self.deme_sizes = np.bincount(self.indiv2deme, minlength=o).astype(np.int64)

        unobserved = np.flatnonzero(new_index == -1)
        new_index[unobserved] = np.arange(o, d)

        demes = np.empty_like(self.demes)
        demes[new_index] = self.demes
        self.demes = demes
        self.edges = new_index[self.edges]
        logger.info("  There are %d observed demes (out of %d demes)", o, d)
        return new_index

    # ── Tessellation support ──────────────────────────────────────────

    def index_closest_to_deme(self, seeds: np.ndarray) -> np.ndarray:
        """Index of the nearest seed for every deme (first minimum on ties)."""
        seeds = np.asarray(seeds, dtype=np.float64).reshape(-1, 2)
        return np.argmin(cdist(seeds, self.demes), axis=0).astype(np.int64)

    # ── Output ────────────────────────────────────────────────────────

    def dlmwrite_grid(self, mcmcpath: Union[str, Path]) -> None:
        """Write ipmap.txt, demes.txt and edges.txt (1-based) into mcmcpath."""
        out = Path(mcmcpath)
        out.mkdir(parents=True, exist_ok=True)
        np.savetxt(out / "ipmap.txt", self.indiv2deme + 1, fmt='%d')
        write_matrix(out / "demes.txt", self.demes, fmt='%.6f')
        write_matrix(out / "edges.txt", self.edges + 1, fmt='%d')


# ═══════════════════════════════════════════════════════════════════════
# LATTICE CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

def neighbors_in_grid(r1: int, c1: int, pos: int, nx: int, ny: int) -> Tuple[int, int, int]:
    """Neighbour `pos` (0-5) of node (r1, c1) in an nx-by-ny triangular grid.

    Odd rows are shifted right by half a column. Positions:
      0 left, 3 right, 5 lower-left, 4 lower-right, 1 upper-left, 2 upper-right.
    This ignores the curvature of the earth.

    Returns:
        (beta, r2, c2) with beta = -1 if the neighbour is off the grid.
    """
    alpha = r1 * nx + c1
    r2 = c2 = -1
    # alpha % (2*nx) > 0: not the first node of an even row
    # (alpha+1) % (2*nx) > 0: not the last node of an odd row
    shift = (r1 + 1) % 2
    if pos == 0 and alpha % nx > 0:
        r2, c2 = r1, c1 - 1
    elif pos == 3 and (alpha + 1) % nx > 0:
        r2, c2 = r1, c1 + 1
    elif pos == 5 and r1 > 0 and alpha % (2 * nx) > 0:
        r2, c2 = r1 - 1, c1 - shift
    elif pos == 4 and r1 > 0 and (alpha + 1) % (2 * nx) > 0:
        r2, c2 = r1 - 1, c1 + 1 - shift
    elif pos == 1 and r1 < ny - 1 and alpha % (2 * nx) > 0:
        r2, c2 = r1 + 1, c1 - shift
    elif pos == 2 and r1 < ny - 1 and (alpha + 1) % (2 * nx) > 0:
        r2, c2 = r1 + 1, c1 + 1 - shift
    if r2 >= 0 and c2 >= 0:
        return nx * r2 + c2, r2, c2
    return -1, r2, c2


def triangular_grid_shape(habitat: Habitat, n_demes: int) -> Tuple[int, int]:
    """Columns and rows so that the lattice density is about n_demes / area."""
    x_demes = int(np.sqrt(n_demes * habitat.xspan ** 2 / habitat.area))
    y_demes = int(np.sqrt(n_demes * habitat.yspan ** 2 / habitat.area))
    return x_demes, y_demes


def make_triangular_grid(habitat: Habitat, n_demes: int) -> Graph:
    """Regular triangular grid, entirely contained inside the habitat outline.

    Nodes outside the habitat are dropped; an edge is kept only if both
    endpoints are inside. Migration is undirected, so each edge is
    entered once, from the lower to the higher raw index.
    """
    x_demes, y_demes = triangular_grid_shape(habitat, n_demes)
    if x_demes < 1 or y_demes < 1:
        raise ValueError(
            f"n_demes={n_demes} gives an empty {x_demes}x{y_demes} grid; "
            f"increase data.n_demes"
        )
    # A triangular grid extends half a triangle on the right
    scalex = habitat.xspan / (x_demes - 0.5) if x_demes > 1 else 1.0
    scaley = habitat.yspan / (y_demes - 1.0) if y_demes > 1 else 1.0

    rows, cols = np.divmod(np.arange(x_demes * y_demes), x_demes)
    xy = np.column_stack([
        habitat.xmin + scalex * (cols + 0.5 * (rows % 2)),
        habitat.ymin + scaley * rows,
    ])
    inside = habitat.in_points(xy)
    # New index is -1 for nodes outside the habitat
    new_index = np.full(x_demes * y_demes, -1, dtype=np.int64)
    new_index[inside] = np.arange(int(inside.sum()))

    pairs: List[Tuple[int, int]] = []
    for alpha in np.flatnonzero(inside):
        r1, c1 = divmod(int(alpha), x_demes)
        for pos in range(6):
            beta, _, _ = neighbors_in_grid(r1, c1, pos, x_demes, y_demes)
            if alpha < beta and inside[beta]:
                pairs.append((new_index[alpha], new_index[beta]))

    edges = np.array(pairs, dtype=np.int64).reshape(-1, 2)
    logger.info(
        "  Triangular grid %dx%d: %d demes inside the habitat, %d edges",
        x_demes, y_demes, int(inside.sum()), len(edges),
    )
    return Graph(demes=xy[inside], edges=edges)


def dedup_edges(edges: np.ndarray) -> np.ndarray:
    """Drop repeated undirected pairs, keeping the first occurrence of each."""
    seen = set()
    keep = []
    for e, (a, b) in enumerate(edges):
        key = (min(a, b), max(a, b))
        if key not in seen:
            seen.add(key)
            keep.append(e)
    return edges[keep]


def read_input_grid(gridpath: Union[str, Path]) -> Graph:
    """Read a population grid from <gridpath>.demes and <gridpath>.edges.

    The grid does not need to be triangular. Edges are 1-based; an edge
    may be listed in both directions, only the first is kept.
    """
    gridpath = str(gridpath)
    demes = read_matrix(
        gridpath + ".demes", ncols=2,
        what="a list of demes, two coordinates per row",
    )
    raw = read_matrix(
        gridpath + ".edges", ncols=2,
        what="a list of connected demes, one pair per row",
    )
    if not np.all(raw == np.round(raw)):
        raise ValueError(
            f"Check that {gridpath}.edges is a list of integer deme indices"
        )
    edges = dedup_edges(raw.astype(np.int64)) - 1
    if edges.min() < 0 or edges.max() >= len(demes):
        raise ValueError(
            f"Check that {gridpath}.edges is a list of two indices per row, "
            f"in the range [1, {len(demes)}]"
        )
    if np.any(edges[:, 0] == edges[:, 1]):
        raise ValueError(f"Check that {gridpath}.edges has no deme connected to itself")
    return Graph(demes=demes, edges=edges)


# ═══════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════

def read_sample_coords(datapath: Union[str, Path], n_indiv: int) -> np.ndarray:
    """Read <datapath>.coord: n_indiv rows of (x, y)."""
    path = str(datapath) + ".coord"
    coords = read_matrix(
        path, nrows=n_indiv, ncols=2,
        what="a list of locations, two coordinates per row",
    )
    logger.info("  Loaded sample coordinates from %s", path)
    return coords


def build_graph(
    habitat: Habitat,
    sample_coords: np.ndarray,
    n_demes: Optional[int] = None,
    gridpath: Optional[Union[str, Path]] = None,
    mcmcpath: Optional[Union[str, Path]] = None,
) -> Graph:
    """Construct the population graph and assign samples to demes.

    Either generates a triangular grid with about n_demes demes, or
    loads the grid at gridpath. The grid must be connected; this is
    checked before samples are assigned and before anything is written.

    Args:
        habitat: Habitat outline.
        sample_coords: (n, 2) sample locations.
        n_demes: Target deme count for the generated grid.
        gridpath: Prefix of an externally supplied grid (takes precedence).
        mcmcpath: If given, write ipmap.txt, demes.txt, edges.txt here.

    Returns:
        Reindexed Graph (observed demes first).

    Raises:
        DisconnectedGraphError: If the grid has more than one component.
    """
    logger.info("[Graph::initialize]")
    if gridpath is not None:
        logger.info("  Load population grid (demes & edges) from %s", gridpath)
        graph = read_input_grid(gridpath)
    else:
        if n_demes is None:
            raise ValueError("build_graph needs either n_demes or gridpath")
        logger.info("  Generate population grid and sample assignment")
        graph = make_triangular_grid(habitat, n_demes)

    if not graph.is_connected():
        raise DisconnectedGraphError(
            f"The population grid is not connected "
            f"({graph.n_demes} demes, {graph.n_edges} edges)."
        )

    graph.map_indiv_to_deme(sample_coords)
    # Reorder the demes, whether the graph is constructed on the fly or loaded from files
    graph.reindex_demes()
    if mcmcpath is not None:
        graph.dlmwrite_grid(mcmcpath)

    logger.info(
        "  The population grid has %d demes and %d edges",
        graph.n_demes, graph.n_edges,
    )
    logger.info(
        "  There are %d samples assigned to %d observed demes",
        graph.n_indiv, graph.n_obsrv_demes,
    )
    logger.info("[Graph::initialize] Done.")
    return graph
