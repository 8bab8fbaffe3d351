"""Core data types for EEMS.

This module is the SINGLE SOURCE OF TRUTH for:
  - MoveType: the proposal repertoire of the reversible-jump sampler
  - Tessellation: one Voronoi surface (seeds + log10 effects)
  - ChainState: the complete committed state of the chain, including
    every cached quantity derived from the two tessellations
  - Proposal: a candidate ChainState plus its own log proposal ratio

All modules import these types from here. Arrays held by a ChainState
are never modified in place; a new state is built with
dataclasses.replace() and committed by a single assignment.

References:
  - Petkova, Novembre & Stephens (2016), Nature Genetics 48:94-100
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class MoveType(IntEnum):
    """Proposal kinds.

    Q_* moves act on the diversity tessellation, M_* moves on the
    migration tessellation. Birth and death are separate kinds so that
    each can be weighted on its own; they are each other's inverse.
    """
    Q_VORONOI_RATE_UPDATE = 0   # random walk on one diversity tile value
    M_VORONOI_RATE_UPDATE = 1   # random walk on one migration tile value
    M_MEAN_RATE_UPDATE    = 2   # random walk on the global log10 migration rate
    Q_VORONOI_POINT_MOVE  = 3   # random walk on one diversity seed
    M_VORONOI_POINT_MOVE  = 4   # random walk on one migration seed
    M_VORONOI_BIRTH       = 5
    M_VORONOI_DEATH       = 6
    Q_VORONOI_BIRTH       = 7
    Q_VORONOI_DEATH       = 8
    DF_UPDATE             = 9   # random walk on the Wishart degrees of freedom


# Birth ↔ death pairing, used for the reversible-jump ratio
INVERSE_MOVE = {
    MoveType.M_VORONOI_BIRTH: MoveType.M_VORONOI_DEATH,
    MoveType.M_VORONOI_DEATH: MoveType.M_VORONOI_BIRTH,
    MoveType.Q_VORONOI_BIRTH: MoveType.Q_VORONOI_DEATH,
    MoveType.Q_VORONOI_DEATH: MoveType.Q_VORONOI_BIRTH,
}


# ═══════════════════════════════════════════════════════════════════════
# TESSELLATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Tessellation:
    """Voronoi surface: tile i has seed seeds[i] and log10 effect effects[i]."""
    seeds: np.ndarray     # (tiles, 2) float64
    effects: np.ndarray   # (tiles,) float64

    def __post_init__(self):
        self.seeds = np.asarray(self.seeds, dtype=np.float64).reshape(-1, 2)
        self.effects = np.asarray(self.effects, dtype=np.float64).reshape(-1)
        if self.seeds.shape[0] != self.effects.shape[0]:
            raise ValueError(
                f"Tessellation has {self.seeds.shape[0]} seeds but "
                f"{self.effects.shape[0]} effects"
            )

    @property
    def tiles(self) -> int:
        return int(self.effects.shape[0])

    def with_tile(self, seed: np.ndarray, effect: float) -> 'Tessellation':
        """New tessellation with one tile appended."""
        return Tessellation(
            seeds=np.vstack([self.seeds, np.reshape(seed, (1, 2))]),
            effects=np.append(self.effects, effect),
        )

    def without_tile(self, tile: int) -> 'Tessellation':
        """New tessellation with tile `tile` removed (order of the rest kept)."""
        return Tessellation(
            seeds=np.delete(self.seeds, tile, axis=0),
            effects=np.delete(self.effects, tile),
        )

    def with_seed(self, tile: int, seed: np.ndarray) -> 'Tessellation':
        seeds = self.seeds.copy()
        seeds[tile] = seed
        return Tessellation(seeds=seeds, effects=self.effects)

    def with_effect(self, tile: int, effect: float) -> 'Tessellation':
        effects = self.effects.copy()
        effects[tile] = effect
        return Tessellation(seeds=self.seeds, effects=effects)


# ═══════════════════════════════════════════════════════════════════════
# CHAIN STATE & PROPOSAL
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ChainState:
    """Committed state of the sampler.

    The first block holds the parameters; the second block is derived
    from them and cached so that a proposal only recomputes the part of
    the likelihood its move touches.
    """
    # ── Parameters ───────────────────────────────────────────────────
    m_tess: Tessellation
    q_tess: Tessellation
    mrate_mu: float          # global log10 migration rate
    mrate_s2: float          # prior variance of migration effects
    qrate_s2: float          # prior variance of diversity effects
    sigma2: float            # Wishart scale
    df: float                # Wishart degrees of freedom

    # ── Derived caches ───────────────────────────────────────────────
    m_colors: Optional[np.ndarray] = None   # (nDemes,) covering migration tile
    q_colors: Optional[np.ndarray] = None   # (nDemes,) covering diversity tile
    q: Optional[np.ndarray] = None          # (oDemes,) diversity rates
    binv: Optional[np.ndarray] = None       # (oDemes, oDemes) resistance operator
    tri_delta_qd: float = 0.0
    ll_atfixdf: float = 0.0
    logpi: float = -np.inf
    logll: float = -np.inf

    @property
    def mtiles(self) -> int:
        return self.m_tess.tiles

    @property
    def qtiles(self) -> int:
        return self.q_tess.tiles


@dataclass
class Proposal:
    """Candidate state produced by one move.

    `ratioln` is the log ratio of reverse to forward proposal densities
    (0 for symmetric random walks, the dimension-matching term for birth
    and death). The candidate's logpi/logll carry the prior and
    likelihood the accept step compares against the committed state.
    """
    move: MoveType
    state: ChainState
    ratioln: float = 0.0
    tile: int = -1
    info: dict = field(default_factory=dict)
