"""Resistance-distance likelihood.

Pairwise dissimilarities D (n × n) between samples are modelled through
the resistance distances of the population graph:

    E[D_ij] = R_{a b} + (W_a + W_b) / 2,   i ≠ j in demes a, b

and -L D Lᵀ ~ Wishart(df, sigma2 · L A Lᵀ / df) with L = [-1 | I] and
A = Q + 2 J B Jᵀ. Everything that depends on the tessellations is
reduced to o × o operations (o = observed demes) with Woodbury and the
REML determinant identity:

    det(L A Lᵀ) = det(A) · 1ᵀA⁻¹1 · det(L Lᵀ) / n

Core pieces:
  - ObservedDiffs: dissimilarities and the constants cached once per run
  - calc_q / calc_binv: per-deme diversity rates and the Schur complement
    of the graph Laplacian on the observed demes
  - tessellation_terms: triDeltaQD and ll_atfixdf for a (Binv, q) pair
  - wishart_loglik: closed form at any (sigma2, df)

References:
  - Petkova, Novembre & Stephens (2016) Nat Genet 48:94-100
  - McRae (2006) Evolution 60:1551-1561 (isolation by resistance)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import numpy as np
from scipy import linalg
from scipy.special import multigammaln

from eems.graph import Graph
from eems.utils import read_matrix

logger = logging.getLogger(__name__)

# Constant added to every entry of Binv; leaves resistance distances unchanged
BINV_CONST = 1.0


# ═══════════════════════════════════════════════════════════════════════
# OBSERVED DISSIMILARITIES
# ═══════════════════════════════════════════════════════════════════════

def _logdet_pd(mat: np.ndarray) -> float:
    """log det of a symmetric positive definite matrix (via Cholesky)."""
    chol = linalg.cholesky(mat, lower=True)
    return 2.0 * float(np.sum(np.log(np.diag(chol))))


@dataclass
class ObservedDiffs:
    """Dissimilarity matrix collapsed onto the observed demes.

    Attributes:
        diffs: (n, n) sample dissimilarities.
        counts: (o,) samples per observed deme (c).
        jt_d_j: (o, o) Jᵀ D J, summed dissimilarities between deme pairs.
        jt_d_diag: (o,) Σ_{i in deme a} D_ii (zero for proper data).
        ld_llt: log det(L Lᵀ).
        ld_ldlt: log det(-L D Lᵀ).
        logn: log(n).
    """
    diffs: np.ndarray
    counts: np.ndarray
    jt_d_j: np.ndarray
    jt_d_diag: np.ndarray
    ld_llt: float
    ld_ldlt: float
    logn: float

    @property
    def n(self) -> int:
        return int(self.diffs.shape[0])

    @property
    def nmin1(self) -> int:
        return self.n - 1

    @property
    def o(self) -> int:
        return int(self.counts.shape[0])

    @classmethod
    def from_matrix(cls, diffs: np.ndarray, graph: Graph) -> 'ObservedDiffs':
        """Validate D and cache the tessellation-independent terms.

        Raises:
            ValueError: If D is not square, not symmetric, does not
                match the sample count, or -L D Lᵀ is not positive
                definite (D is not conditionally negative definite).
        """
        diffs = np.asarray(diffs, dtype=np.float64)
        n = graph.n_indiv
        if diffs.shape != (n, n):
            raise ValueError(
                f"Dissimilarity matrix must be {n}x{n} (one row per sample), "
                f"got {diffs.shape[0]}x{diffs.shape[1]}"
            )
        if n < 2:
            raise ValueError("At least two samples are required")
        if not np.allclose(diffs, diffs.T):
            raise ValueError("Dissimilarity matrix is not symmetric")

        lmat = np.hstack([-np.ones((n - 1, 1)), np.eye(n - 1)])
        try:
            ld_ldlt = _logdet_pd(-lmat @ diffs @ lmat.T)
        except linalg.LinAlgError as e:
            raise ValueError(
                "The dissimilarity matrix is not conditionally negative definite "
                "(-L D L' is not positive definite)"
            ) from e
        ld_llt = _logdet_pd(lmat @ lmat.T)

        o = graph.n_obsrv_demes
        jmat = np.zeros((n, o), dtype=np.float64)
        jmat[np.arange(n), graph.indiv2deme] = 1.0
        jt_d_j = jmat.T @ diffs @ jmat
        jt_d_diag = jmat.T @ np.diag(diffs)

        return cls(
            diffs=diffs,
            counts=graph.deme_sizes.astype(np.float64),
            jt_d_j=jt_d_j,
            jt_d_diag=jt_d_diag,
            ld_llt=ld_llt,
            ld_ldlt=ld_ldlt,
            logn=float(np.log(n)),
        )

    @classmethod
    def from_file(cls, datapath: Union[str, Path], graph: Graph) -> 'ObservedDiffs':
        """Read <datapath>.diffs (n × n, whitespace-delimited)."""
        path = str(datapath) + ".diffs"
        diffs = read_matrix(
            path, nrows=graph.n_indiv, ncols=graph.n_indiv,
            what="a matrix of pairwise dissimilarities, one row per sample",
        )
        logger.info("  Loaded dissimilarity matrix from %s", path)
        return cls.from_matrix(diffs, graph)


# ═══════════════════════════════════════════════════════════════════════
# RATES & RESISTANCE
# ═══════════════════════════════════════════════════════════════════════

def calc_q(q_colors: np.ndarray, q_effects: np.ndarray, o: int) -> np.ndarray:
    """Diversity rates W = 10^effect of the observed demes."""
    return 10.0 ** q_effects[q_colors[:o]]


def calc_mrates(m_colors: np.ndarray, m_effects: np.ndarray, mrate_mu: float) -> np.ndarray:
    """Migration rates m = 10^(effect + mrateMu) of every deme."""
    return 10.0 ** (m_effects[m_colors] + mrate_mu)


def calc_binv(
    graph: Graph,
    m_colors: np.ndarray,
    m_effects: np.ndarray,
    mrate_mu: float,
) -> np.ndarray:
    """Inverse of the observed-deme resistance operator.

    M is the weighted adjacency (edge rate = mean of the endpoint deme
    rates) minus its row sums. The unobserved demes are eliminated by
    the Schur complement

        Binv = -M_oo + M_ou M_uu⁻¹ M_uo + BINV_CONST · 11ᵀ

    Raises:
        numpy.linalg.LinAlgError: If -M_uu is not positive definite.
    """
    d = graph.n_demes
    o = graph.n_obsrv_demes
    mrates = calc_mrates(m_colors, m_effects, mrate_mu)
    alpha = graph.edges[:, 0]
    beta = graph.edges[:, 1]
    edge_rates = 0.5 * (mrates[alpha] + mrates[beta])

    mmat = np.zeros((d, d), dtype=np.float64)
    mmat[alpha, beta] = edge_rates
    mmat[beta, alpha] = edge_rates
    mmat[np.diag_indices(d)] = -mmat.sum(axis=1)

    binv = -mmat[:o, :o]
    if d > o:
        binv = binv - mmat[:o, o:] @ linalg.solve(
            -mmat[o:, o:], mmat[o:, :o], assume_a='pos'
        )
    return binv + BINV_CONST


def resistance_distance(binv: np.ndarray) -> np.ndarray:
    """R_ab = B_aa + B_bb - 2 B_ab with B = Binv⁻¹."""
    bmat = linalg.inv(binv)
    diag = np.diag(bmat)
    return diag[:, None] + diag[None, :] - 2.0 * bmat


# ═══════════════════════════════════════════════════════════════════════
# WISHART LIKELIHOOD
# ═══════════════════════════════════════════════════════════════════════

def tessellation_terms(
    binv: np.ndarray,
    q: np.ndarray,
    obs: ObservedDiffs,
) -> Tuple[float, float]:
    """Tessellation-dependent parts of the log-likelihood.

    Args:
        binv: (o, o) output of calc_binv().
        q: (o,) output of calc_q().
        obs: Cached dissimilarities.

    Returns:
        (tri_delta_qd, ll_atfixdf) where
          tri_delta_qd = tr((L A Lᵀ)⁻¹ (-L D Lᵀ))
          ll_atfixdf   = -½ log det(L A Lᵀ)

    Raises:
        numpy.linalg.LinAlgError: If Binv or Y is not positive definite.
    """
    c = obs.counts
    qinv = 1.0 / q
    cq = c * qinv

    sign, ld_binv = np.linalg.slogdet(binv)
    if sign <= 0:
        raise linalg.LinAlgError("Binv is not positive definite")

    ymat = 0.5 * binv
    ymat[np.diag_indices_from(ymat)] += cq
    y_factor = linalg.cho_factor(ymat, lower=True)
    ld_y = 2.0 * float(np.sum(np.log(np.diag(y_factor[0]))))

    ld_a = ld_y + obs.o * np.log(2.0) - ld_binv + float(c @ np.log(q))
    # A⁻¹1 = J u
    u = qinv - qinv * linalg.cho_solve(y_factor, cq)
    cu = float(c @ u)
    if not cu > 0:
        raise linalg.LinAlgError("1' A^-1 1 is not positive")

    scaled = qinv[:, None] * obs.jt_d_j * qinv[None, :]
    tr_ainv_d = float(obs.jt_d_diag @ qinv) - float(
        np.trace(linalg.cho_solve(y_factor, scaled))
    )
    tri_delta_qd = -(tr_ainv_d - float(u @ obs.jt_d_j @ u) / cu)
    ld_lalt = ld_a + np.log(cu) + obs.ld_llt - obs.logn
    return float(tri_delta_qd), float(-0.5 * ld_lalt)


def wishart_loglik(
    obs: ObservedDiffs,
    sigma2: float,
    df: float,
    tri_delta_qd: float,
    ll_atfixdf: float,
) -> float:
    """Wishart log density of -L D Lᵀ at (sigma2, df)."""
    p = obs.nmin1
    return float(
        0.5 * (df - p - 1.0) * obs.ld_ldlt
        - 0.5 * df * p * np.log(2.0 * sigma2 / df)
        - multigammaln(0.5 * df, p)
        + df * ll_atfixdf
        - 0.5 * df * tri_delta_qd / sigma2
    )
