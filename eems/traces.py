"""Per-iteration trace recording.

Keeps the retained MCMC iterations in memory and writes them as
whitespace-delimited text tables, one line per retained iteration:

  fixed size      mcmcmhyper (mrateMu, mrateS2), mcmcqhyper (qrateS2),
                  mcmcthetas (sigma2, df), mcmcpilogl (logpi, logll),
                  mcmcmtiles, mcmcqtiles
  variable size   mcmcmrates, mcmcxcoord, mcmcycoord  (migration tiles)
                  mcmcqrates, mcmcwcoord, mcmczcoord  (diversity tiles)

Usage:
    recorder = TraceRecorder()

    # In the sampler loop, for retained iterations only:
    recorder.capture(state)

    # After the chain:
    recorder.save(mcmcpath)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Union

import numpy as np

from eems.types import ChainState

# file name → (columns, format)
FIXED_TRACES = {
    'mcmcmhyper': (2, '%.6f'),
    'mcmcqhyper': (1, '%.6f'),
    'mcmcthetas': (2, '%.6f'),
    'mcmcpilogl': (2, '%.6f'),
    'mcmcmtiles': (1, '%d'),
    'mcmcqtiles': (1, '%d'),
}
RAGGED_TRACES = {
    'mcmcmrates': '%.6e',
    'mcmcxcoord': '%.6f',
    'mcmcycoord': '%.6f',
    'mcmcqrates': '%.6e',
    'mcmcwcoord': '%.6f',
    'mcmczcoord': '%.6f',
}


@dataclass
class IterationTrace:
    """Everything recorded for one retained iteration."""
    mrate_mu: float
    mrate_s2: float
    qrate_s2: float
    sigma2: float
    df: float
    logpi: float
    logll: float
    mrates: np.ndarray      # 10^(effect + mrateMu) per migration tile
    mseeds: np.ndarray      # (mtiles, 2)
    qrates: np.ndarray      # 10^effect per diversity tile
    qseeds: np.ndarray      # (qtiles, 2)

    @classmethod
    def from_state(cls, state: ChainState) -> 'IterationTrace':
        return cls(
            mrate_mu=state.mrate_mu,
            mrate_s2=state.mrate_s2,
            qrate_s2=state.qrate_s2,
            sigma2=state.sigma2,
            df=state.df,
            logpi=state.logpi,
            logll=state.logll,
            mrates=10.0 ** (state.m_tess.effects + state.mrate_mu),
            mseeds=state.m_tess.seeds.copy(),
            qrates=10.0 ** state.q_tess.effects,
            qseeds=state.q_tess.seeds.copy(),
        )


def _format_row(values: np.ndarray, fmt: str) -> str:
    return ' '.join(fmt % v for v in values)


class TraceRecorder:
    """Accumulates retained iterations and writes them to text files."""

    def __init__(self):
        self.iterations: List[IterationTrace] = []

    def __len__(self) -> int:
        return len(self.iterations)

    def capture(self, state: ChainState) -> None:
        """Record the committed state of a retained iteration."""
        self.iterations.append(IterationTrace.from_state(state))

    def fixed_tables(self) -> Dict[str, np.ndarray]:
        """Fixed-size traces as (niter, ncol) arrays."""
        its = self.iterations
        return {
            'mcmcmhyper': np.array([[t.mrate_mu, t.mrate_s2] for t in its]).reshape(-1, 2),
            'mcmcqhyper': np.array([[t.qrate_s2] for t in its]).reshape(-1, 1),
            'mcmcthetas': np.array([[t.sigma2, t.df] for t in its]).reshape(-1, 2),
            'mcmcpilogl': np.array([[t.logpi, t.logll] for t in its]).reshape(-1, 2),
            'mcmcmtiles': np.array([[len(t.mrates)] for t in its], dtype=np.int64).reshape(-1, 1),
            'mcmcqtiles': np.array([[len(t.qrates)] for t in its], dtype=np.int64).reshape(-1, 1),
        }

    def ragged_rows(self) -> Dict[str, List[np.ndarray]]:
        """Variable-length traces, one array per retained iteration."""
        its = self.iterations
        return {
            'mcmcmrates': [t.mrates for t in its],
            'mcmcxcoord': [t.mseeds[:, 0] for t in its],
            'mcmcycoord': [t.mseeds[:, 1] for t in its],
            'mcmcqrates': [t.qrates for t in its],
            'mcmcwcoord': [t.qseeds[:, 0] for t in its],
            'mcmczcoord': [t.qseeds[:, 1] for t in its],
        }

    def save(self, mcmcpath: Union[str, Path]) -> None:
        """Write all twelve trace files into mcmcpath.

        Raises:
            OSError: If a file cannot be written.
        """
        out = Path(mcmcpath)
        out.mkdir(parents=True, exist_ok=True)
        for name, table in self.fixed_tables().items():
            _, fmt = FIXED_TRACES[name]
            with open(out / f"{name}.txt", 'w') as f:
                for row in table:
                    f.write(_format_row(row, fmt) + '\n')
        for name, rows in self.ragged_rows().items():
            fmt = RAGGED_TRACES[name]
            with open(out / f"{name}.txt", 'w') as f:
                for row in rows:
                    f.write(_format_row(row, fmt) + '\n')

    @staticmethod
    def load(mcmcpath: Union[str, Path]) -> Dict[str, object]:
        """Read trace files back.

        Returns:
            Dict of name → (niter, ncol) array for fixed traces and
            name → list of 1-D arrays for variable-length traces.
        """
        src = Path(mcmcpath)
        traces: Dict[str, object] = {}
        for name, (ncol, _) in FIXED_TRACES.items():
            with open(src / f"{name}.txt") as f:
                rows = [line.split() for line in f if line.strip()]
            traces[name] = np.array(rows, dtype=np.float64).reshape(-1, ncol)
        for name in RAGGED_TRACES:
            with open(src / f"{name}.txt") as f:
                traces[name] = [
                    np.array(line.split(), dtype=np.float64)
                    for line in f if line.strip()
                ]
        return traces
