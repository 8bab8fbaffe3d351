"""Configuration system for EEMS.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → run override → command-line overrides

Sections map 1:1 to YAML top-level keys:
  data      — input prefixes, output directory, sample/site/deme counts
  mcmc      — chain length, burn-in, thinning, seed, move weights
  prior     — tile-count, effect, rate-scale and Wishart priors
  proposal  — random-walk proposal variances

References:
  - Petkova, Novembre & Stephens (2016), Supplementary Note
    (default prior and proposal settings)
"""

from __future__ import annotations

import copy
import dataclasses
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from eems.types import INVERSE_MOVE, MoveType
from eems.utils import config_hash


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class DataSection:
    """Input/output locations and problem size.

    datapath is a prefix: <datapath>.coord, <datapath>.diffs and
    <datapath>.outer are read. gridpath, if set, is the prefix of an
    externally supplied lattice (<gridpath>.demes, <gridpath>.edges).
    """
    datapath: str = ""
    mcmcpath: str = ""
    prevpath: Optional[str] = None   # directory holding a checkpoint to resume
    gridpath: Optional[str] = None
    n_indiv: int = 0
    n_sites: int = 0
    n_demes: int = 200               # target deme count for the triangular lattice


def _uniform_move_weights() -> Dict[str, float]:
    return {m.name: 1.0 for m in MoveType}


@dataclass
class MCMCSection:
    """Chain length and move selection."""
    num_mcmc_iter: int = 2_000_000
    num_burn_iter: int = 1_000_000
    num_thin_iter: int = 9_999       # iterations skipped between retained ones
    seed: int = 42
    report_interval: int = 10_000    # log a status line every N iterations (0 = never)
    move_weights: Dict[str, float] = field(default_factory=_uniform_move_weights)


@dataclass
class PriorSection:
    """Prior hyperparameters.

    Effects are log10 offsets with truncated normal priors on
    [-half_interval, half_interval]; tile counts are negative binomial;
    rate scales and sigma2 are inverse gamma (shape, scale).
    df is uniform on [df_min, df_max] with a 1/df factor; None means
    df_min = n_indiv and df_max = n_sites.
    """
    negbi_size: int = 10
    negbi_prob: float = 0.67
    m_effct_half_interval: float = 2.0
    q_effct_half_interval: float = 0.1
    mrate_mu_half_interval: float = 2.4
    mrate_shape: float = 0.001
    mrate_scale: float = 1.0
    qrate_shape: float = 0.001
    qrate_scale: float = 1.0
    sigma_shape: float = 0.001
    sigma_scale: float = 1.0
    df_min: Optional[float] = None
    df_max: Optional[float] = None


@dataclass
class ProposalSection:
    """Random-walk proposal variances.

    Seed variances are relative: the x (y) step variance is
    *_seeds_s2 × habitat x-span (y-span).
    """
    m_seeds_s2: float = 0.1
    q_seeds_s2: float = 0.1
    m_effct_s2: float = 0.1
    q_effct_s2: float = 0.001
    mrate_mu_s2: float = 0.01
    df_s2: float = 10.0


@dataclass
class EEMSConfig:
    """Complete run configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    data: DataSection = field(default_factory=DataSection)
    mcmc: MCMCSection = field(default_factory=MCMCSection)
    prior: PriorSection = field(default_factory=PriorSection)
    proposal: ProposalSection = field(default_factory=ProposalSection)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


_SECTION_MAP = {
    'data': DataSection,
    'mcmc': MCMCSection,
    'prior': PriorSection,
    'proposal': ProposalSection,
}


def _yaml_to_config(data: Dict) -> EEMSConfig:
    """Convert a merged YAML dict to an EEMSConfig."""
    sections = {}
    for key, cls in _SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()

    # Partial move_weights in YAML only override the listed moves
    mcmc_data = data.get('mcmc') if isinstance(data.get('mcmc'), dict) else {}
    if isinstance(mcmc_data.get('move_weights'), dict):
        weights = _uniform_move_weights()
        weights.update(mcmc_data['move_weights'])
        sections['mcmc'].move_weights = weights

    return EEMSConfig(**sections)


def config_to_dict(config: EEMSConfig) -> Dict:
    return dataclasses.asdict(config)


def config_to_yaml(config: EEMSConfig) -> str:
    return yaml.safe_dump(config_to_dict(config), default_flow_style=False, sort_keys=True)


def config_fingerprint(config: EEMSConfig) -> str:
    """Hash of the model-defining sections (data + prior), used to tag checkpoints."""
    defining = {k: v for k, v in config_to_dict(config).items() if k in ('data', 'prior')}
    defining['data'] = {k: v for k, v in defining['data'].items()
                        if k not in ('mcmcpath', 'prevpath')}
    return config_hash(yaml.safe_dump(defining, sort_keys=True))


def validate_config(config: EEMSConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Checks:
      - Problem sizes are consistent (only when given)
      - Chain schedule is well formed
      - Priors and proposals have valid parameters
      - Move weights name known moves and keep birth/death reversible
    """
    d = config.data
    if d.n_indiv < 0 or d.n_sites < 0:
        raise ValueError(
            f"data.n_indiv and data.n_sites must be >= 0, "
            f"got {d.n_indiv} and {d.n_sites}"
        )
    if d.n_indiv == 1:
        raise ValueError("data.n_indiv must be at least 2")
    if d.gridpath is None and d.n_demes < 1:
        raise ValueError(
            f"data.n_demes must be positive when no gridpath is given, got {d.n_demes}"
        )
    if d.prevpath is not None and not Path(d.prevpath).is_dir():
        warnings.warn(
            f"data.prevpath '{d.prevpath}' does not exist. "
            f"Resuming from a checkpoint will fail at runtime.",
            UserWarning,
            stacklevel=2,
        )

    # Chain schedule
    m = config.mcmc
    if m.num_mcmc_iter < 1:
        raise ValueError(f"mcmc.num_mcmc_iter must be >= 1, got {m.num_mcmc_iter}")
    if not (0 <= m.num_burn_iter < m.num_mcmc_iter):
        raise ValueError(
            f"mcmc.num_burn_iter ({m.num_burn_iter}) must be in "
            f"[0, num_mcmc_iter={m.num_mcmc_iter})"
        )
    if m.num_thin_iter < 0:
        raise ValueError(f"mcmc.num_thin_iter must be >= 0, got {m.num_thin_iter}")
    if m.seed < 0:
        raise ValueError("mcmc.seed must be non-negative")
    if m.report_interval < 0:
        raise ValueError("mcmc.report_interval must be >= 0")

    # Move weights
    valid_moves = {mv.name for mv in MoveType}
    unknown = set(m.move_weights) - valid_moves
    if unknown:
        raise ValueError(
            f"mcmc.move_weights has unknown moves {sorted(unknown)}; "
            f"valid moves are {sorted(valid_moves)}"
        )
    if any(w < 0 for w in m.move_weights.values()):
        raise ValueError("mcmc.move_weights must be non-negative")
    if sum(m.move_weights.values()) <= 0:
        raise ValueError("mcmc.move_weights must have a positive total")
    for move, inverse in INVERSE_MOVE.items():
        w = m.move_weights.get(move.name, 0.0)
        w_inv = m.move_weights.get(inverse.name, 0.0)
        if (w > 0) != (w_inv > 0):
            raise ValueError(
                f"mcmc.move_weights: {move.name} and {inverse.name} must both be "
                f"enabled or both disabled, got {w} and {w_inv}"
            )

    # Priors
    p = config.prior
    if p.negbi_size < 1:
        raise ValueError(f"prior.negbi_size must be >= 1, got {p.negbi_size}")
    if not (0.0 < p.negbi_prob < 1.0):
        raise ValueError(f"prior.negbi_prob must be in (0, 1), got {p.negbi_prob}")
    for name in ('m_effct_half_interval', 'q_effct_half_interval',
                 'mrate_mu_half_interval', 'mrate_shape', 'mrate_scale',
                 'qrate_shape', 'qrate_scale', 'sigma_shape', 'sigma_scale'):
        if getattr(p, name) <= 0:
            raise ValueError(f"prior.{name} must be positive, got {getattr(p, name)}")
    if p.df_min is not None and p.df_max is not None and p.df_min >= p.df_max:
        raise ValueError(
            f"prior.df_min ({p.df_min}) must be < prior.df_max ({p.df_max})"
        )

    # Proposals
    for f in dataclasses.fields(ProposalSection):
        value = getattr(config.proposal, f.name)
        if value <= 0:
            raise ValueError(f"proposal.{f.name} must be positive, got {value}")


def load_config(
    base_path: Union[str, Path],
    override_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> EEMSConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → override file → override dict.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        override_path: Optional override YAML.
        overrides: Optional dict of overrides (e.g. from the command line).

    Returns:
        Validated EEMSConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if override_path is not None:
        override_path = Path(override_path)
        if not override_path.exists():
            raise FileNotFoundError(f"Config file not found: {override_path}")
        with open(override_path) as f:
            deep_merge(config_dict, yaml.safe_load(f) or {})

    if overrides is not None:
        deep_merge(config_dict, copy.deepcopy(overrides))

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> EEMSConfig:
    """Return an EEMSConfig with all default values."""
    config = EEMSConfig()
    validate_config(config)
    return config
