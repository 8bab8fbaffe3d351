"""EEMS: Estimated Effective Migration Surfaces.

Infers spatially varying effective migration and diversity rates from
pairwise genetic dissimilarities between geo-referenced samples:
  - Habitat outline discretized into a triangular grid of demes
  - Resistance-distance model of expected dissimilarities
  - Two Voronoi surfaces (migration, diversity) with random tile counts
  - Reversible-jump MCMC with Gibbs updates of the variance parameters
"""

__version__ = "0.1.0"
