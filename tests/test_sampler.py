"""Tests for eems.sampler — prior, proposals, accept/reject and Gibbs updates."""

from dataclasses import replace

import numpy as np
import pytest
from scipy import linalg

import eems.sampler as sampler_module
from eems.distributions import dtrnormln
from eems.sampler import EEMS
from eems.types import MoveType, Proposal, Tessellation


def _single_tile(state, which):
    tess = getattr(state, which)
    return replace(state, **{which: Tessellation(tess.seeds[:1], tess.effects[:1])})


# ── Initialization ───────────────────────────────────────────────────

class TestInitialization:
    def test_initial_state(self, sampler, habitat):
        s = sampler.state
        assert s.mtiles >= 1 and s.qtiles >= 1
        assert habitat.in_points(s.m_tess.seeds).all()
        assert habitat.in_points(s.q_tess.seeds).all()
        assert np.all(np.abs(s.m_tess.effects) <= 2.0)
        assert np.all(np.abs(s.q_tess.effects) <= 0.1)
        assert abs(s.mrate_mu) <= 2.4
        assert s.sigma2 == 1.0
        assert s.df == pytest.approx(0.5 * (10 + 200))
        assert np.isfinite(s.logpi) and np.isfinite(s.logll)

    def test_caches_filled(self, sampler, graph):
        s = sampler.state
        o = graph.n_obsrv_demes
        assert s.binv.shape == (o, o)
        assert s.q.shape == (o,)
        assert s.m_colors.shape == (graph.n_demes,)
        sampler.check_ll_computation()

    def test_same_seed_same_state(self, small_config, habitat, graph, obs):
        a = EEMS(small_config, habitat, graph, obs)
        b = EEMS(small_config, habitat, graph, obs)
        a.initialize_state()
        b.initialize_state()
        np.testing.assert_array_equal(a.state.m_tess.seeds, b.state.m_tess.seeds)
        np.testing.assert_array_equal(a.state.q_tess.effects, b.state.q_tess.effects)
        assert a.state.logll == b.state.logll

    def test_df_min_too_small(self, small_config, habitat, graph, obs):
        small_config.prior.df_min = graph.n_indiv - 2
        with pytest.raises(ValueError, match="n - 2"):
            EEMS(small_config, habitat, graph, obs)

    def test_df_max_unset(self, small_config, habitat, graph, obs):
        small_config.data.n_sites = 0
        with pytest.raises(ValueError, match="df_max"):
            EEMS(small_config, habitat, graph, obs)

    def test_non_finite_initial_likelihood(self, small_config, habitat, graph, obs, monkeypatch):
        def broken(*args, **kwargs):
            raise linalg.LinAlgError("singular")

        monkeypatch.setattr(sampler_module, "tessellation_terms", broken)
        eems = EEMS(small_config, habitat, graph, obs)
        with pytest.raises(RuntimeError, match="likelihood"):
            eems.initialize_state()


# ── Prior ────────────────────────────────────────────────────────────

class TestPrior:
    def test_seed_outside_habitat(self, sampler):
        s = sampler.state
        bad = replace(s, m_tess=s.m_tess.with_seed(0, np.array([7.0, 2.0])))
        assert sampler.eval_prior(bad) == -np.inf

    def test_effect_outside_interval(self, sampler):
        s = sampler.state
        bad = replace(s, q_tess=s.q_tess.with_effect(0, 0.11))
        assert sampler.eval_prior(bad) == -np.inf

    def test_mrate_mu_outside_interval(self, sampler):
        assert sampler.eval_prior(replace(sampler.state, mrate_mu=2.5)) == -np.inf

    def test_df_outside_range(self, sampler):
        assert sampler.eval_prior(replace(sampler.state, df=9.0)) == -np.inf
        assert sampler.eval_prior(replace(sampler.state, df=201.0)) == -np.inf

    def test_df_bounds_inclusive(self, sampler):
        assert np.isfinite(sampler.eval_prior(replace(sampler.state, df=10.0)))
        assert np.isfinite(sampler.eval_prior(replace(sampler.state, df=200.0)))

    def test_prior_decreases_with_df(self, sampler):
        lo = sampler.eval_prior(replace(sampler.state, df=20.0))
        hi = sampler.eval_prior(replace(sampler.state, df=40.0))
        assert lo - hi == pytest.approx(np.log(2.0))


# ── Proposals ────────────────────────────────────────────────────────

class TestProposals:
    @pytest.mark.parametrize("move", list(MoveType))
    def test_proposals_leave_state_untouched(self, sampler, move):
        before = sampler.state
        seeds = before.m_tess.seeds.copy()
        effects = before.q_tess.effects.copy()
        binv = before.binv.copy()
        proposal = sampler.propose(move)
        assert proposal.move == move
        assert sampler.state is before
        np.testing.assert_array_equal(before.m_tess.seeds, seeds)
        np.testing.assert_array_equal(before.q_tess.effects, effects)
        np.testing.assert_array_equal(before.binv, binv)

    def test_rate_update_changes_one_tile(self, sampler):
        s = sampler.state
        p = sampler.propose_m_effects()
        changed = np.flatnonzero(p.state.m_tess.effects != s.m_tess.effects)
        assert set(changed) <= {p.tile}
        np.testing.assert_array_equal(p.state.m_tess.seeds, s.m_tess.seeds)
        assert p.ratioln == 0.0

    def test_point_move_changes_one_seed(self, sampler):
        s = sampler.state
        p = sampler.move_q_voronoi()
        moved = np.flatnonzero(np.any(p.state.q_tess.seeds != s.q_tess.seeds, axis=1))
        assert set(moved) <= {p.tile}
        np.testing.assert_array_equal(p.state.q_tess.effects, s.q_tess.effects)

    def test_df_update_reuses_tessellation_terms(self, sampler):
        s = sampler.state
        p = sampler.propose_df()
        assert p.state.binv is s.binv
        assert p.state.tri_delta_qd == s.tri_delta_qd

    def test_birth_appends_tile(self, sampler):
        s = sampler.state
        p = sampler.birth_q_voronoi()
        assert p.state.qtiles == s.qtiles + 1
        assert p.tile == s.qtiles
        np.testing.assert_array_equal(p.state.q_tess.seeds[:-1], s.q_tess.seeds)
        np.testing.assert_array_equal(p.state.q_tess.effects[:-1], s.q_tess.effects)

    def test_birth_ratio(self, small_config, habitat, graph, obs):
        small_config.mcmc.move_weights['M_VORONOI_BIRTH'] = 2.0
        eems = EEMS(small_config, habitat, graph, obs)
        eems.initialize_state()
        s = eems.state
        p = eems.birth_m_voronoi()
        r = p.info['covering']
        new_effect = p.state.m_tess.effects[-1]
        expected = np.log(1.0 / 2.0) - dtrnormln(
            new_effect, s.m_tess.effects[r], small_config.proposal.m_effct_s2, 2.0,
        )
        assert p.ratioln == pytest.approx(expected)

    def test_birth_then_death_round_trip(self, sampler):
        before = sampler.state
        birth = sampler.birth_m_voronoi()
        assert np.isfinite(birth.state.logll)
        sampler.state = birth.state

        for _ in range(500):
            death = sampler.death_m_voronoi()
            if death.tile == birth.tile:
                break
        else:
            pytest.fail("death never picked the new tile")

        np.testing.assert_array_equal(death.state.m_tess.seeds, before.m_tess.seeds)
        np.testing.assert_array_equal(death.state.m_tess.effects, before.m_tess.effects)
        assert death.ratioln == pytest.approx(-birth.ratioln)
        assert death.state.logll == pytest.approx(before.logll)
        assert death.state.logpi == pytest.approx(before.logpi)

    def test_death_with_one_tile_rejected(self, sampler):
        s = sampler._evaluate(_single_tile(sampler.state, 'q_tess'), refresh_q=True)
        sampler.state = s
        p = sampler.death_q_voronoi()
        assert p.ratioln == -np.inf
        assert not sampler.accept_proposal(p)
        assert sampler.state is s
        assert sampler.state.qtiles == 1

    def test_zero_weight_move_never_chosen(self, small_config, habitat, graph, obs):
        small_config.mcmc.move_weights['DF_UPDATE'] = 0.0
        eems = EEMS(small_config, habitat, graph, obs)
        moves = {eems.choose_move_type() for _ in range(500)}
        assert MoveType.DF_UPDATE not in moves
        assert len(moves) == len(MoveType) - 1


# ── Accept / reject ──────────────────────────────────────────────────

class TestAcceptProposal:
    def test_better_proposal_committed_whole(self, sampler):
        p = sampler.propose_df()
        better = replace(p.state, logll=sampler.state.logll + 1000.0, logpi=sampler.state.logpi)
        proposal = Proposal(p.move, better)
        assert sampler.accept_proposal(proposal)
        assert sampler.state is better

    def test_much_worse_proposal_rejected(self, sampler):
        before = sampler.state
        p = sampler.propose_df()
        worse = replace(p.state, logll=before.logll - 1000.0, logpi=before.logpi)
        assert not sampler.accept_proposal(Proposal(p.move, worse))
        assert sampler.state is before

    def test_numerical_failure_rejected(self, sampler, monkeypatch):
        def broken(*args, **kwargs):
            raise linalg.LinAlgError("not positive definite")

        before = sampler.state
        monkeypatch.setattr(sampler_module, "tessellation_terms", broken)
        p = sampler.propose_m_effects()
        assert p.state.logll == -np.inf
        assert not sampler.accept_proposal(p)
        assert sampler.state is before

    def test_outside_support_rejected(self, sampler):
        before = sampler.state
        bad = replace(before, mrate_mu=10.0)
        p = Proposal(MoveType.M_MEAN_RATE_UPDATE, sampler._evaluate(bad, refresh_m=True))
        assert p.state.logpi == -np.inf
        assert not sampler.accept_proposal(p)
        assert sampler.state is before

    @pytest.mark.parametrize("ratioln", [0.0, -np.inf])
    def test_one_uniform_per_proposal(self, sampler, ratioln):
        p = sampler.propose_df()
        p.ratioln = ratioln
        snap = sampler.rng.bit_generator.state
        sampler.accept_proposal(p)
        after_accept = sampler.rng.bit_generator.state
        sampler.rng.bit_generator.state = snap
        sampler.rng.random()
        assert sampler.rng.bit_generator.state == after_accept


# ── Gibbs updates ────────────────────────────────────────────────────

class TestGibbs:
    def test_update_hyperparams(self, sampler):
        before = sampler.state
        sampler.update_hyperparams()
        after = sampler.state
        assert after.mrate_s2 > 0 and after.qrate_s2 > 0
        assert after.mrate_s2 != before.mrate_s2
        np.testing.assert_array_equal(after.m_tess.effects, before.m_tess.effects)
        assert after.logpi == pytest.approx(sampler.eval_prior(after))
        assert after.logll == before.logll

    def test_update_sigma2(self, sampler):
        before = sampler.state
        sampler.update_sigma2()
        after = sampler.state
        assert after.sigma2 > 0
        assert after.sigma2 != before.sigma2
        assert after.logll == pytest.approx(sampler.eval_likelihood(after))
        assert after.logpi == pytest.approx(sampler.eval_prior(after))

    def test_sigma2_concentrates_near_maximizer(self, sampler):
        s = sampler.state
        draws = []
        for _ in range(200):
            sampler.update_sigma2()
            draws.append(sampler.state.sigma2)
        p = sampler.prior
        shape = p.sigma_shape + 0.5 * s.df * sampler.obs.nmin1
        scale = p.sigma_scale + 0.5 * s.df * s.tri_delta_qd
        assert np.median(draws) == pytest.approx(scale / shape, rel=0.05)

    def test_caches_consistent_after_steps(self, sampler):
        for _ in range(30):
            sampler.step()
        sampler.check_ll_computation()

    def test_drift_detected(self, sampler):
        sampler.state = replace(sampler.state, logll=sampler.state.logll + 1.0)
        with pytest.raises(RuntimeError, match="logll"):
            sampler.check_ll_computation()


# ── Checkpoint ───────────────────────────────────────────────────────

class TestCheckpoint:
    def test_save_and_load(self, sampler, small_config, habitat, graph, obs, tmp_path):
        for _ in range(5):
            sampler.step()
        path = sampler.output_current_state(tmp_path)
        assert path.name == "checkpoint.npz"

        resumed = EEMS(small_config, habitat, graph, obs)
        resumed.load_final_state(tmp_path)
        np.testing.assert_array_equal(resumed.state.m_tess.seeds, sampler.state.m_tess.seeds)
        np.testing.assert_array_equal(resumed.state.q_tess.effects, sampler.state.q_tess.effects)
        assert resumed.state.sigma2 == sampler.state.sigma2
        assert resumed.state.df == sampler.state.df
        assert resumed.state.logll == pytest.approx(sampler.state.logll)
        np.testing.assert_array_equal(resumed.rng.random(5), sampler.rng.random(5))

    def test_missing_checkpoint(self, small_config, habitat, graph, obs, tmp_path):
        eems = EEMS(small_config, habitat, graph, obs)
        with pytest.raises(FileNotFoundError):
            eems.load_final_state(tmp_path)

    def test_changed_prior_warns(self, sampler, small_config, habitat, graph, obs, tmp_path):
        sampler.output_current_state(tmp_path)
        small_config.prior.sigma_scale = 2.0
        eems = EEMS(small_config, habitat, graph, obs)
        with pytest.warns(UserWarning, match="different"):
            eems.load_final_state(tmp_path)

    def test_resistance_distances(self, sampler, graph):
        r = sampler.resistance_distances()
        o = graph.n_obsrv_demes
        assert r.shape == (o, o)
        np.testing.assert_allclose(np.diag(r), 0.0, atol=1e-10)
        assert np.all(r[~np.eye(o, dtype=bool)] > 0)
