"""Reversible-jump MCMC sampler for the migration and diversity surfaces.

Holds the committed ChainState and the machinery to move it:
  - initialize_state / load_final_state: fresh start or checkpoint
  - eval_prior / eval_likelihood: log prior and Wishart log-likelihood
  - propose_*: one method per MoveType, each returning a Proposal whose
    candidate state carries its own prior and likelihood
  - accept_proposal: Metropolis-Hastings step, commit by one assignment
  - update_hyperparams / update_sigma2: Gibbs updates
  - save_iteration / output_results / output_current_state: traces and
    checkpoint

Proposals never modify the committed state: every candidate is a new
ChainState built with dataclasses.replace() from new arrays. A proposal
whose likelihood cannot be evaluated (singular system, overflow) gets
log-likelihood -inf and is rejected.

References:
  - Petkova, Novembre & Stephens (2016) Nat Genet 48:94-100
  - Green (1995) Biometrika 82:711-732 (reversible jump)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple, Union

import numpy as np
from scipy import linalg
from scipy.spatial.distance import cdist

from eems.config import EEMSConfig, config_fingerprint
from eems.distributions import (
    dinvgamln,
    dnegbinln,
    dtrnormln,
    rinvgam,
    rnegbin,
    rtrnorm,
    rtrnorm_vector,
)
from eems.graph import Graph, build_graph, read_sample_coords
from eems.habitat import Habitat
from eems.likelihood import (
    ObservedDiffs,
    calc_binv,
    calc_q,
    resistance_distance,
    tessellation_terms,
    wishart_loglik,
)
from eems.rng import create_rng, rng_state_from_json, rng_state_to_json
from eems.traces import TraceRecorder
from eems.types import INVERSE_MOVE, ChainState, MoveType, Proposal, Tessellation

if TYPE_CHECKING:
    from eems.mcmc import MCMC

logger = logging.getLogger(__name__)

CHECKPOINT_FILE = "checkpoint.npz"


def nearest_seed(seeds: np.ndarray, point: np.ndarray) -> int:
    """Index of the seed closest to point (first minimum on ties)."""
    return int(np.argmin(cdist(np.reshape(point, (1, 2)), seeds)[0]))


class EEMS:
    """Sampler state and moves for one chain.

    Args:
        config: Validated run configuration.
        habitat: Habitat outline (seeds must stay inside it).
        graph: Reindexed population graph.
        obs: Dissimilarities collapsed onto the observed demes.
        rng: Chain RNG; created from config.mcmc.seed if None.
    """

    def __init__(
        self,
        config: EEMSConfig,
        habitat: Habitat,
        graph: Graph,
        obs: ObservedDiffs,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config
        self.habitat = habitat
        self.graph = graph
        self.obs = obs
        self.rng = rng if rng is not None else create_rng(config.mcmc.seed)

        prior = config.prior
        n = obs.n
        self.df_min = float(prior.df_min if prior.df_min is not None else n)
        self.df_max = float(prior.df_max if prior.df_max is not None else config.data.n_sites)
        if self.df_min <= n - 2:
            raise ValueError(
                f"The Wishart degrees of freedom must exceed n - 2 = {n - 2}; "
                f"got df_min = {self.df_min}"
            )
        if self.df_max <= self.df_min:
            raise ValueError(
                f"df_max ({self.df_max}) must be greater than df_min ({self.df_min}); "
                f"set data.n_sites or prior.df_max"
            )

        self.move_weights = {
            m: float(config.mcmc.move_weights.get(m.name, 0.0)) for m in MoveType
        }
        weights = np.array([self.move_weights[m] for m in MoveType])
        self.move_probs = weights / weights.sum()

        self._proposers: Dict[MoveType, Callable[[], Proposal]] = {
            MoveType.Q_VORONOI_RATE_UPDATE: self.propose_q_effects,
            MoveType.M_VORONOI_RATE_UPDATE: self.propose_m_effects,
            MoveType.M_MEAN_RATE_UPDATE: self.propose_mrate_mu,
            MoveType.Q_VORONOI_POINT_MOVE: self.move_q_voronoi,
            MoveType.M_VORONOI_POINT_MOVE: self.move_m_voronoi,
            MoveType.M_VORONOI_BIRTH: self.birth_m_voronoi,
            MoveType.M_VORONOI_DEATH: self.death_m_voronoi,
            MoveType.Q_VORONOI_BIRTH: self.birth_q_voronoi,
            MoveType.Q_VORONOI_DEATH: self.death_q_voronoi,
            MoveType.DF_UPDATE: self.propose_df,
        }

        self.state: Optional[ChainState] = None
        self.recorder = TraceRecorder()

    @classmethod
    def from_config(
        cls,
        config: EEMSConfig,
        rng: Optional[np.random.Generator] = None,
    ) -> 'EEMS':
        """Read the inputs under config.data.datapath and build the graph.

        Writes ipmap.txt, demes.txt and edges.txt into mcmcpath (if set).
        """
        d = config.data
        habitat = Habitat.from_file(d.datapath + ".outer")
        logger.info("  Loaded habitat outline from %s.outer", d.datapath)
        coords = read_sample_coords(d.datapath, d.n_indiv)
        graph = build_graph(
            habitat, coords,
            n_demes=d.n_demes,
            gridpath=d.gridpath,
            mcmcpath=d.mcmcpath or None,
        )
        obs = ObservedDiffs.from_file(d.datapath, graph)
        return cls(config, habitat, graph, obs, rng=rng)

    # ═══════════════════════════════════════════════════════════════════
    # INITIALIZATION
    # ═══════════════════════════════════════════════════════════════════

    def initialize_state(self) -> ChainState:
        """Draw a random starting state from (roughly) the prior."""
        logger.info("[EEMS::initialize_state]")
        prior = self.prior
        rng = self.rng
        # Initialize the two Voronoi tessellations
        qtiles = max(1, rnegbin(rng, 2 * prior.negbi_size, 0.5))
        mtiles = max(1, rnegbin(rng, 2 * prior.negbi_size, 0.5))
        # Draw the Voronoi centers uniformly within the habitat
        q_seeds = self.habitat.random_points(rng, qtiles)
        m_seeds = self.habitat.random_points(rng, mtiles)
        qrate_s2 = rinvgam(rng, 0.5, 0.5)
        mrate_s2 = rinvgam(rng, 0.5, 0.5)
        q_effects = rtrnorm_vector(rng, qtiles, qrate_s2, prior.q_effct_half_interval)
        m_effects = rtrnorm_vector(rng, mtiles, mrate_s2, prior.m_effct_half_interval)
        mrate_mu = prior.mrate_mu_half_interval * (2.0 * rng.random() - 1.0)

        state = ChainState(
            m_tess=Tessellation(m_seeds, m_effects),
            q_tess=Tessellation(q_seeds, q_effects),
            mrate_mu=float(mrate_mu),
            mrate_s2=mrate_s2,
            qrate_s2=qrate_s2,
            sigma2=1.0,
            df=0.5 * (self.df_min + self.df_max),
        )
        self.state = self._start(state)
        logger.info(
            "  EEMS starts with %d qtiles and %d mtiles", qtiles, mtiles,
        )
        logger.info("[EEMS::initialize_state] Done.")
        return self.state

    def load_final_state(self, prevpath: Union[str, Path]) -> ChainState:
        """Resume from the checkpoint written by output_current_state().

        Restores both tessellations, the hyperparameters and the RNG
        state, so the resumed chain continues the stream of the saved one.

        Raises:
            FileNotFoundError: If prevpath holds no checkpoint.
        """
        logger.info("[EEMS::load_final_state]")
        path = Path(prevpath) / CHECKPOINT_FILE
        if not path.exists():
            raise FileNotFoundError(f"Checkpoint not found: {path}")
        with np.load(path) as data:
            m_tess = Tessellation(data['m_seeds'], data['m_effects'])
            q_tess = Tessellation(data['q_seeds'], data['q_effects'])
            mrate_mu, mrate_s2, qrate_s2, sigma2, df = (float(v) for v in data['hyper'])
            fingerprint = str(data['config_hash'])
            rng_json = str(data['rng_state'])
        if fingerprint != config_fingerprint(self.config):
            warnings.warn(
                f"Checkpoint {path} was written with a different data/prior "
                f"configuration; resuming anyway.",
                UserWarning,
                stacklevel=2,
            )
        rng_state_from_json(self.rng, rng_json)

        state = ChainState(
            m_tess=m_tess, q_tess=q_tess,
            mrate_mu=mrate_mu, mrate_s2=mrate_s2, qrate_s2=qrate_s2,
            sigma2=sigma2, df=df,
        )
        self.state = self._start(state)
        logger.info(
            "  EEMS resumes with %d qtiles and %d mtiles from %s",
            state.qtiles, state.mtiles, path,
        )
        logger.info("[EEMS::load_final_state] Done.")
        return self.state

    def _start(self, state: ChainState) -> ChainState:
        state = self._evaluate(state, refresh_m=True, refresh_q=True)
        if not np.isfinite(state.logpi):
            raise RuntimeError(
                "The initial state has zero prior probability "
                "(check the half intervals and the df range)"
            )
        if not np.isfinite(state.logll):
            raise RuntimeError(
                "The initial log likelihood is not finite; "
                "check the dissimilarity matrix and the population grid"
            )
        logger.info(
            "  Initial log prior = %.6f, log likelihood = %.6f",
            state.logpi, state.logll,
        )
        return state

    @property
    def prior(self):
        return self.config.prior

    @property
    def proposal_s2(self):
        return self.config.proposal

    # ═══════════════════════════════════════════════════════════════════
    # PRIOR & LIKELIHOOD
    # ═══════════════════════════════════════════════════════════════════

    def eval_prior(self, state: ChainState) -> float:
        """Log prior of a state; -inf outside the support.

        The support requires every seed inside the habitat, every effect
        and mrateMu inside its half interval, and df in [df_min, df_max].
        """
        p = self.prior
        m, q = state.m_tess, state.q_tess
        in_support = (
            bool(np.all(self.habitat.in_points(m.seeds)))
            and bool(np.all(self.habitat.in_points(q.seeds)))
            and bool(np.all(np.abs(m.effects) <= p.m_effct_half_interval))
            and bool(np.all(np.abs(q.effects) <= p.q_effct_half_interval))
            and abs(state.mrate_mu) <= p.mrate_mu_half_interval
            and self.df_min <= state.df <= self.df_max
        )
        if not in_support:
            return -np.inf
        return float(
            -np.log(state.df)
            + dnegbinln(m.tiles, p.negbi_size, p.negbi_prob)
            + dnegbinln(q.tiles, p.negbi_size, p.negbi_prob)
            + dinvgamln(state.mrate_s2, p.mrate_shape, p.mrate_scale)
            + dinvgamln(state.qrate_s2, p.qrate_shape, p.qrate_scale)
            + dinvgamln(state.sigma2, p.sigma_shape, p.sigma_scale)
            + dtrnormln(q.effects, 0.0, state.qrate_s2, p.q_effct_half_interval)
            + dtrnormln(m.effects, 0.0, state.mrate_s2, p.m_effct_half_interval)
        )

    def eval_likelihood(self, state: ChainState) -> float:
        """Wishart log-likelihood from the cached tessellation terms."""
        return wishart_loglik(
            self.obs, state.sigma2, state.df, state.tri_delta_qd, state.ll_atfixdf,
        )

    def _refresh_m(self, state: ChainState) -> ChainState:
        m_colors = self.graph.index_closest_to_deme(state.m_tess.seeds)
        binv = calc_binv(self.graph, m_colors, state.m_tess.effects, state.mrate_mu)
        return replace(state, m_colors=m_colors, binv=binv)

    def _refresh_q(self, state: ChainState) -> ChainState:
        q_colors = self.graph.index_closest_to_deme(state.q_tess.seeds)
        q = calc_q(q_colors, state.q_tess.effects, self.graph.n_obsrv_demes)
        return replace(state, q_colors=q_colors, q=q)

    def _evaluate(
        self,
        state: ChainState,
        refresh_m: bool = False,
        refresh_q: bool = False,
    ) -> ChainState:
        """Fill in the caches, logpi and logll of a candidate state.

        Only the surface the move touched is recomputed. A state outside
        the prior support is returned with logll = -inf without touching
        the likelihood.
        """
        logpi = self.eval_prior(state)
        if not np.isfinite(logpi):
            return replace(state, logpi=-np.inf, logll=-np.inf)
        try:
            if refresh_m:
                state = self._refresh_m(state)
            if refresh_q:
                state = self._refresh_q(state)
            if refresh_m or refresh_q:
                tri_delta_qd, ll_atfixdf = tessellation_terms(state.binv, state.q, self.obs)
                state = replace(state, tri_delta_qd=tri_delta_qd, ll_atfixdf=ll_atfixdf)
            logll = self.eval_likelihood(state)
        except (linalg.LinAlgError, ValueError) as e:
            logger.debug("Likelihood evaluation failed: %s", e)
            return replace(state, logpi=logpi, logll=-np.inf)
        if not np.isfinite(logll):
            logger.debug("Likelihood evaluation returned %s", logll)
            logll = -np.inf
        return replace(state, logpi=logpi, logll=logll)

    # ═══════════════════════════════════════════════════════════════════
    # PROPOSALS
    # ═══════════════════════════════════════════════════════════════════

    def choose_move_type(self) -> MoveType:
        """Draw a move kind according to the configured weights."""
        return MoveType(int(self.rng.choice(len(self.move_probs), p=self.move_probs)))

    def propose(self, move: MoveType) -> Proposal:
        return self._proposers[move]()

    def propose_q_effects(self) -> Proposal:
        s = self.state
        tile = int(self.rng.integers(s.qtiles))
        effect = self.rng.normal(s.q_tess.effects[tile], np.sqrt(self.proposal_s2.q_effct_s2))
        cand = replace(s, q_tess=s.q_tess.with_effect(tile, effect))
        return Proposal(
            MoveType.Q_VORONOI_RATE_UPDATE,
            self._evaluate(cand, refresh_q=True),
            tile=tile,
        )

    def propose_m_effects(self) -> Proposal:
        s = self.state
        tile = int(self.rng.integers(s.mtiles))
        effect = self.rng.normal(s.m_tess.effects[tile], np.sqrt(self.proposal_s2.m_effct_s2))
        cand = replace(s, m_tess=s.m_tess.with_effect(tile, effect))
        return Proposal(
            MoveType.M_VORONOI_RATE_UPDATE,
            self._evaluate(cand, refresh_m=True),
            tile=tile,
        )

    def propose_mrate_mu(self) -> Proposal:
        s = self.state
        mrate_mu = self.rng.normal(s.mrate_mu, np.sqrt(self.proposal_s2.mrate_mu_s2))
        cand = replace(s, mrate_mu=float(mrate_mu))
        return Proposal(MoveType.M_MEAN_RATE_UPDATE, self._evaluate(cand, refresh_m=True))

    def propose_df(self) -> Proposal:
        """Random walk on df; only the closed form in (sigma2, df) changes."""
        s = self.state
        df = self.rng.normal(s.df, np.sqrt(self.proposal_s2.df_s2))
        cand = replace(s, df=float(df))
        return Proposal(MoveType.DF_UPDATE, self._evaluate(cand))

    def _move_seed(self, tess: Tessellation, s2: float) -> Tuple[Tessellation, int]:
        tile = int(self.rng.integers(tess.tiles))
        x, y = tess.seeds[tile]
        seed = np.array([
            self.rng.normal(x, np.sqrt(s2 * self.habitat.xspan)),
            self.rng.normal(y, np.sqrt(s2 * self.habitat.yspan)),
        ])
        return tess.with_seed(tile, seed), tile

    def move_q_voronoi(self) -> Proposal:
        s = self.state
        q_tess, tile = self._move_seed(s.q_tess, self.proposal_s2.q_seeds_s2)
        return Proposal(
            MoveType.Q_VORONOI_POINT_MOVE,
            self._evaluate(replace(s, q_tess=q_tess), refresh_q=True),
            tile=tile,
        )

    def move_m_voronoi(self) -> Proposal:
        s = self.state
        m_tess, tile = self._move_seed(s.m_tess, self.proposal_s2.m_seeds_s2)
        return Proposal(
            MoveType.M_VORONOI_POINT_MOVE,
            self._evaluate(replace(s, m_tess=m_tess), refresh_m=True),
            tile=tile,
        )

    def _birth(self, tess: Tessellation, move: MoveType, s2: float, half: float):
        """Add one tile; its value is centred on the tile now covering its seed.

        Returns:
            (new tessellation, log proposal ratio, index of the covering tile)
        """
        seed = self.habitat.random_point(self.rng)
        r = nearest_seed(tess.seeds, seed)
        effect = rtrnorm(self.rng, tess.effects[r], s2, half)
        ratioln = (
            np.log(self.move_weights[INVERSE_MOVE[move]] / self.move_weights[move])
            - dtrnormln(effect, tess.effects[r], s2, half)
        )
        return tess.with_tile(seed, effect), float(ratioln), r

    def _death(self, tess: Tessellation, move: MoveType, s2: float, half: float):
        """Remove a uniformly chosen tile.

        Returns:
            (new tessellation, log proposal ratio, removed tile), or None
            if the tessellation has a single tile.
        """
        if tess.tiles == 1:
            return None
        tile = int(self.rng.integers(tess.tiles))
        reduced = tess.without_tile(tile)
        r = nearest_seed(reduced.seeds, tess.seeds[tile])
        ratioln = (
            np.log(self.move_weights[INVERSE_MOVE[move]] / self.move_weights[move])
            + dtrnormln(tess.effects[tile], reduced.effects[r], s2, half)
        )
        return reduced, float(ratioln), tile

    def birth_m_voronoi(self) -> Proposal:
        s = self.state
        move = MoveType.M_VORONOI_BIRTH
        m_tess, ratioln, r = self._birth(
            s.m_tess, move, self.proposal_s2.m_effct_s2, self.prior.m_effct_half_interval,
        )
        return Proposal(
            move, self._evaluate(replace(s, m_tess=m_tess), refresh_m=True),
            ratioln=ratioln, tile=m_tess.tiles - 1, info={'covering': r},
        )

    def death_m_voronoi(self) -> Proposal:
        s = self.state
        move = MoveType.M_VORONOI_DEATH
        result = self._death(
            s.m_tess, move, self.proposal_s2.m_effct_s2, self.prior.m_effct_half_interval,
        )
        if result is None:
            return Proposal(move, s, ratioln=-np.inf)
        m_tess, ratioln, tile = result
        return Proposal(
            move, self._evaluate(replace(s, m_tess=m_tess), refresh_m=True),
            ratioln=ratioln, tile=tile,
        )

    def birth_q_voronoi(self) -> Proposal:
        s = self.state
        move = MoveType.Q_VORONOI_BIRTH
        q_tess, ratioln, r = self._birth(
            s.q_tess, move, self.proposal_s2.q_effct_s2, self.prior.q_effct_half_interval,
        )
        return Proposal(
            move, self._evaluate(replace(s, q_tess=q_tess), refresh_q=True),
            ratioln=ratioln, tile=q_tess.tiles - 1, info={'covering': r},
        )

    def death_q_voronoi(self) -> Proposal:
        s = self.state
        move = MoveType.Q_VORONOI_DEATH
        result = self._death(
            s.q_tess, move, self.proposal_s2.q_effct_s2, self.prior.q_effct_half_interval,
        )
        if result is None:
            return Proposal(move, s, ratioln=-np.inf)
        q_tess, ratioln, tile = result
        return Proposal(
            move, self._evaluate(replace(s, q_tess=q_tess), refresh_q=True),
            ratioln=ratioln, tile=tile,
        )

    # ═══════════════════════════════════════════════════════════════════
    # ACCEPT / GIBBS
    # ═══════════════════════════════════════════════════════════════════

    def accept_proposal(self, proposal: Proposal) -> bool:
        """Metropolis-Hastings accept/reject against one uniform draw.

        On acceptance the candidate replaces the committed state whole.
        """
        u = self.rng.random()
        cand = proposal.state
        if not (np.isfinite(proposal.ratioln)
                and np.isfinite(cand.logpi)
                and np.isfinite(cand.logll)):
            return False
        ratio = (
            proposal.ratioln
            + (cand.logpi - self.state.logpi)
            + (cand.logll - self.state.logll)
        )
        if u < np.exp(min(ratio, 0.0)):
            self.state = cand
            return True
        return False

    def update_hyperparams(self) -> None:
        """Gibbs update of the effect variances mrateS2 and qrateS2."""
        s = self.state
        p = self.prior
        m_ss = float(np.sum(s.m_tess.effects ** 2))
        q_ss = float(np.sum(s.q_tess.effects ** 2))
        mrate_s2 = rinvgam(self.rng, p.mrate_shape + 0.5 * s.mtiles, p.mrate_scale + 0.5 * m_ss)
        qrate_s2 = rinvgam(self.rng, p.qrate_shape + 0.5 * s.qtiles, p.qrate_scale + 0.5 * q_ss)
        state = replace(s, mrate_s2=mrate_s2, qrate_s2=qrate_s2)
        self.state = replace(state, logpi=self.eval_prior(state))

    def update_sigma2(self) -> None:
        """Gibbs update of the Wishart scale sigma2."""
        s = self.state
        p = self.prior
        sigma2 = rinvgam(
            self.rng,
            p.sigma_shape + 0.5 * s.df * self.obs.nmin1,
            p.sigma_scale + 0.5 * s.df * s.tri_delta_qd,
        )
        state = replace(s, sigma2=sigma2)
        self.state = replace(
            state, logpi=self.eval_prior(state), logll=self.eval_likelihood(state),
        )

    def step(self) -> Tuple[MoveType, bool]:
        """One full iteration: one proposal, then the Gibbs updates."""
        move = self.choose_move_type()
        accepted = self.accept_proposal(self.propose(move))
        self.update_hyperparams()
        self.update_sigma2()
        return move, accepted

    # ═══════════════════════════════════════════════════════════════════
    # OUTPUT & DIAGNOSTICS
    # ═══════════════════════════════════════════════════════════════════

    def save_iteration(self, mcmc: 'MCMC') -> bool:
        """Record the committed state if the just-finished iteration is retained."""
        if mcmc.to_save_iteration() < 0:
            return False
        self.recorder.capture(self.state)
        return True

    def print_iteration(self, mcmc: 'MCMC') -> None:
        s = self.state
        logger.info(
            " Ending iteration %d with acceptance proportions:\n%s",
            mcmc.curr_iter, mcmc.acceptance_report(),
        )
        logger.info(
            "         number of deme groups: %d (m) and %d (q)\n"
            "          effective migration mean: %.6f\n"
            "                 sigma2 and df: %.6f and %.6f\n"
            "           log prior = %.6f, log likelihood = %.6f",
            s.mtiles, s.qtiles, s.mrate_mu, s.sigma2, s.df, s.logpi, s.logll,
        )

    def output_results(self, mcmcpath: Union[str, Path]) -> None:
        """Write the trace files of all retained iterations."""
        self.recorder.save(mcmcpath)
        logger.info("  Saved %d retained iterations to %s", len(self.recorder), mcmcpath)

    def output_current_state(self, mcmcpath: Union[str, Path]) -> Path:
        """Write checkpoint.npz: tessellations, hyperparameters, RNG state."""
        s = self.state
        out = Path(mcmcpath)
        out.mkdir(parents=True, exist_ok=True)
        path = out / CHECKPOINT_FILE
        np.savez_compressed(
            path,
            m_seeds=s.m_tess.seeds,
            m_effects=s.m_tess.effects,
            q_seeds=s.q_tess.seeds,
            q_effects=s.q_tess.effects,
            hyper=np.array([s.mrate_mu, s.mrate_s2, s.qrate_s2, s.sigma2, s.df]),
            rng_state=np.array(rng_state_to_json(self.rng)),
            config_hash=np.array(config_fingerprint(self.config)),
        )
        return path

    def check_ll_computation(self, rtol: float = 1e-8) -> None:
        """Recompute prior and likelihood from scratch and compare to the cache.

        Raises:
            RuntimeError: If either value has drifted.
        """
        s = self.state
        fresh = self._evaluate(s, refresh_m=True, refresh_q=True)
        for name in ('logpi', 'logll'):
            cached, recomputed = getattr(s, name), getattr(fresh, name)
            if not np.isclose(cached, recomputed, rtol=rtol, atol=1e-8):
                raise RuntimeError(
                    f"Cached {name} = {cached} but recomputed {name} = {recomputed}"
                )

    def resistance_distances(self) -> np.ndarray:
        """Resistance distances between observed demes in the current state."""
        return resistance_distance(self.state.binv)
