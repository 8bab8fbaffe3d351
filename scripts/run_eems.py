#!/usr/bin/env python3
"""Run one EEMS chain from YAML configuration files.

Reads <datapath>.coord, <datapath>.diffs and <datapath>.outer, builds
the population grid, runs the sampler and writes traces, acceptance
proportions and a checkpoint into mcmcpath.

Usage:
    python scripts/run_eems.py --config configs/default.yaml --override runs/barrier.yaml
    python scripts/run_eems.py --config configs/default.yaml --seed 7 --verbose
    python scripts/run_eems.py --config configs/default.yaml --prevpath runs/chain1

References:
    - eems/config.py: EEMSConfig, load_config
    - eems/mcmc.py: run_eems
"""

import argparse
import logging
import sys
from pathlib import Path

# ── Project imports ──────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from eems.config import load_config
from eems.graph import DisconnectedGraphError
from eems.mcmc import run_eems


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Estimate effective migration and diversity surfaces.",
        epilog="Example: python scripts/run_eems.py --config configs/default.yaml",
    )
    parser.add_argument(
        "--config", type=str, default=str(PROJECT_ROOT / "configs" / "default.yaml"),
        help="Base config YAML (default: configs/default.yaml)",
    )
    parser.add_argument(
        "--override", type=str, default=None,
        help="Run-specific YAML merged on top of the base config",
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Override mcmc.seed",
    )
    parser.add_argument(
        "--prevpath", type=str, default=None,
        help="Resume from the checkpoint in this directory",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log every report_interval iterations and debug messages",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    overrides = {}
    if args.seed is not None:
        overrides.setdefault('mcmc', {})['seed'] = args.seed
    if args.prevpath is not None:
        overrides.setdefault('data', {})['prevpath'] = args.prevpath

    try:
        config = load_config(args.config, args.override, overrides or None)
        run_eems(config)
    except (FileNotFoundError, DisconnectedGraphError) as e:
        logging.getLogger("run_eems").error("%s", e)
        return 1

    print("\n✅ Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
