"""MCMC schedule and the outer sampling loop.

Provides:
  - MoveStats / MCMC: burn-in and thinning schedule plus per-move
    proposal and acceptance counts
  - run_chain: iterate an initialized sampler to the end of the schedule
  - run_eems: the whole pipeline from a config (inputs → graph →
    sampler → traces, acceptance.yaml and checkpoint)

Usage:
    from eems.config import load_config
    from eems.mcmc import run_eems

    config = load_config("configs/default.yaml", "my_run.yaml")
    eems = run_eems(config)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import yaml

from eems.config import EEMSConfig, config_to_yaml
from eems.sampler import EEMS
from eems.types import MoveType
from eems.utils import timer

logger = logging.getLogger(__name__)


@dataclass
class MoveStats:
    """Proposal and acceptance counts for a single move kind."""
    proposed: int = 0
    accepted: int = 0

    @property
    def acceptance(self) -> float:
        return self.accepted / self.proposed if self.proposed > 0 else 0.0


class MCMC:
    """Iteration counter with burn-in/thinning and acceptance bookkeeping.

    Iteration i (0-based) is retained when i >= num_burn_iter and
    (i + 1 - num_burn_iter) is a multiple of num_thin_iter + 1.
    """

    def __init__(self, num_mcmc_iter: int, num_burn_iter: int = 0, num_thin_iter: int = 0):
        if num_mcmc_iter < 1:
            raise ValueError(f"num_mcmc_iter must be >= 1, got {num_mcmc_iter}")
        if not 0 <= num_burn_iter < num_mcmc_iter:
            raise ValueError(
                f"num_burn_iter ({num_burn_iter}) must be in [0, {num_mcmc_iter})"
            )
        if num_thin_iter < 0:
            raise ValueError(f"num_thin_iter must be >= 0, got {num_thin_iter}")
        self.num_mcmc_iter = num_mcmc_iter
        self.num_burn_iter = num_burn_iter
        self.num_thin_iter = num_thin_iter
        self.curr_iter = 0          # number of completed iterations
        self._stats: Dict[MoveType, MoveStats] = defaultdict(MoveStats)

    @classmethod
    def from_config(cls, config: EEMSConfig) -> 'MCMC':
        m = config.mcmc
        return cls(m.num_mcmc_iter, m.num_burn_iter, m.num_thin_iter)

    @property
    def finished(self) -> bool:
        return self.curr_iter >= self.num_mcmc_iter

    def end_iteration(self) -> None:
        self.curr_iter += 1

    def num_iters_to_save(self) -> int:
        return (self.num_mcmc_iter - self.num_burn_iter) // (self.num_thin_iter + 1)

    def to_save_iteration(self) -> int:
        """Index among retained iterations of the one just ended, or -1."""
        if self.curr_iter > self.num_burn_iter:
            quot, rem = divmod(self.curr_iter - self.num_burn_iter, self.num_thin_iter + 1)
            if rem == 0:
                return quot - 1
        return -1

    # ── Acceptance ────────────────────────────────────────────────────

    def add_to_total_moves(self, move: MoveType) -> None:
        self._stats[move].proposed += 1

    def add_to_okay_moves(self, move: MoveType) -> None:
        self._stats[move].accepted += 1

    def get_stats(self) -> Dict[MoveType, MoveStats]:
        return dict(self._stats)

    def summary(self) -> dict:
        """Per-move counts and acceptance proportions, suitable for YAML."""
        result = {}
        for move in MoveType:
            stats = self._stats.get(move, MoveStats())
            result[move.name] = {
                'proposed': stats.proposed,
                'accepted': stats.accepted,
                'acceptance': round(stats.acceptance, 6),
            }
        return result

    def acceptance_report(self) -> str:
        lines = []
        for move in MoveType:
            stats = self._stats.get(move)
            if stats is None or stats.proposed == 0:
                continue
            lines.append(
                f"  {move.name:<24} {stats.accepted:>8}/{stats.proposed:<8} "
                f"= {100.0 * stats.acceptance:6.2f}%"
            )
        return '\n'.join(lines)

    def save_acceptance(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.summary(), f, default_flow_style=False, sort_keys=False)


# ═══════════════════════════════════════════════════════════════════════
# OUTER LOOP
# ═══════════════════════════════════════════════════════════════════════

def run_chain(eems: EEMS, mcmc: MCMC, report_interval: int = 0) -> None:
    """Run an initialized sampler until the schedule is exhausted."""
    while not mcmc.finished:
        move, accepted = eems.step()
        mcmc.add_to_total_moves(move)
        if accepted:
            mcmc.add_to_okay_moves(move)
        mcmc.end_iteration()
        eems.save_iteration(mcmc)
        if report_interval and mcmc.curr_iter % report_interval == 0:
            eems.print_iteration(mcmc)


def run_eems(
    config: EEMSConfig,
    rng: Optional[np.random.Generator] = None,
) -> EEMS:
    """Build the graph and sampler from config, run the chain, write outputs.

    Outputs in config.data.mcmcpath: ipmap/demes/edges, the twelve trace
    files, acceptance.yaml, checkpoint.npz and the resolved config.

    Returns:
        The sampler after the final iteration.
    """
    if not config.data.datapath or not config.data.mcmcpath:
        raise ValueError("data.datapath and data.mcmcpath must both be set")
    eems = EEMS.from_config(config, rng=rng)
    mcmcpath = Path(config.data.mcmcpath)
    mcmcpath.mkdir(parents=True, exist_ok=True)
    (mcmcpath / "config.yaml").write_text(config_to_yaml(config))

    if config.data.prevpath:
        eems.load_final_state(config.data.prevpath)
    else:
        eems.initialize_state()

    mcmc = MCMC.from_config(config)
    logger.info(
        "Running %d iterations (burn-in %d, thinning %d), saving %d",
        mcmc.num_mcmc_iter, mcmc.num_burn_iter, mcmc.num_thin_iter,
        mcmc.num_iters_to_save(),
    )
    with timer("EEMS chain"):
        run_chain(eems, mcmc, config.mcmc.report_interval)

    eems.check_ll_computation()
    eems.output_results(mcmcpath)
    mcmc.save_acceptance(mcmcpath / "acceptance.yaml")
    eems.output_current_state(mcmcpath)
    logger.info("Final log prior = %.6f, log likelihood = %.6f",
                eems.state.logpi, eems.state.logll)
    return eems
