"""Shared synthetic datasets for the EEMS tests.

A 6 x 4 rectangular habitat with n_demes=30 gives a full 6 x 4
triangular grid (24 demes, 53 edges). Dissimilarities are mean squared
differences between random Gaussian "genotypes", which makes them
conditionally negative definite.
"""

import numpy as np
import pytest

from eems.config import EEMSConfig
from eems.graph import build_graph
from eems.habitat import Habitat
from eems.likelihood import ObservedDiffs
from eems.sampler import EEMS

N_DEMES = 30
N_SITES = 200

SAMPLE_COORDS = np.array([
    [0.3, 0.2],
    [0.4, 0.1],
    [1.9, 1.4],
    [2.1, 1.2],
    [3.2, 2.6],
    [4.5, 3.8],
    [4.6, 3.9],
    [5.8, 0.3],
    [0.2, 3.7],
    [3.0, 0.1],
])


def make_diffs(n: int, n_sites: int = N_SITES, seed: int = 0) -> np.ndarray:
    """Mean squared difference between n random points in n_sites dimensions."""
    rng = np.random.default_rng(seed)
    z = rng.normal(size=(n, n_sites))
    sq = np.sum(z ** 2, axis=1)
    diffs = (sq[:, None] + sq[None, :] - 2.0 * z @ z.T) / n_sites
    np.fill_diagonal(diffs, 0.0)
    return 0.5 * (diffs + diffs.T)


def write_dataset(prefix, coords, diffs, outer):
    np.savetxt(str(prefix) + ".coord", coords, fmt='%.6f')
    np.savetxt(str(prefix) + ".diffs", diffs, fmt='%.10f')
    np.savetxt(str(prefix) + ".outer", outer, fmt='%.6f')


@pytest.fixture
def habitat():
    return Habitat.rectangle(0.0, 0.0, 6.0, 4.0)


@pytest.fixture
def sample_coords():
    return SAMPLE_COORDS.copy()


@pytest.fixture
def diffs():
    return make_diffs(len(SAMPLE_COORDS))


@pytest.fixture
def graph(habitat, sample_coords):
    return build_graph(habitat, sample_coords, n_demes=N_DEMES)


@pytest.fixture
def obs(graph, diffs):
    return ObservedDiffs.from_matrix(diffs, graph)


@pytest.fixture
def dataset(tmp_path, sample_coords, diffs):
    """Input files under tmp_path/data/demo.{coord,diffs,outer}; returns the prefix."""
    (tmp_path / "data").mkdir()
    prefix = tmp_path / "data" / "demo"
    outer = np.array([[0.0, 0.0], [6.0, 0.0], [6.0, 4.0], [0.0, 4.0], [0.0, 0.0]])
    write_dataset(prefix, sample_coords, diffs, outer)
    return str(prefix)


@pytest.fixture
def small_config(tmp_path, dataset):
    """Short chain on the synthetic dataset."""
    config = EEMSConfig()
    config.data.datapath = dataset
    config.data.mcmcpath = str(tmp_path / "mcmc")
    config.data.n_indiv = len(SAMPLE_COORDS)
    config.data.n_sites = N_SITES
    config.data.n_demes = N_DEMES
    config.mcmc.num_mcmc_iter = 60
    config.mcmc.num_burn_iter = 20
    config.mcmc.num_thin_iter = 3
    config.mcmc.report_interval = 0
    config.mcmc.seed = 123
    return config


@pytest.fixture
def sampler(small_config, habitat, graph, obs):
    """Initialized sampler on the synthetic dataset."""
    eems = EEMS(small_config, habitat, graph, obs)
    eems.initialize_state()
    return eems
