"""Utility functions for EEMS.

General-purpose helpers: whitespace-delimited matrix I/O, hashing, timing.
"""

from __future__ import annotations

import hashlib
import logging
import time
import warnings
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import numpy as np

logger = logging.getLogger(__name__)


def read_matrix(
    path: str | Path,
    nrows: Optional[int] = None,
    ncols: Optional[int] = None,
    what: str = "a matrix",
) -> np.ndarray:
    """Read a whitespace-delimited numeric table.

    Args:
        path: File to read.
        nrows: Required number of rows (None = any).
        ncols: Required number of columns (None = any).
        what: Human description used in the error message,
            e.g. "a list of locations, two coordinates per row".

    Returns:
        (nrows, ncols) float64 array.

    Raises:
        FileNotFoundError: If path doesn't exist.
        ValueError: If the table is empty, ragged, non-numeric or has
            the wrong shape.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    try:
        with warnings.catch_warnings():
            # Empty files are reported below with a clearer message
            warnings.simplefilter("ignore", UserWarning)
            data = np.loadtxt(path, dtype=np.float64, ndmin=2)
    except ValueError as e:
        raise ValueError(f"Check that {path} is {what}: {e}") from e

    if data.size == 0:
        raise ValueError(f"Check that {path} is {what}: the file is empty")
    if ncols is not None and data.shape[1] != ncols:
        raise ValueError(
            f"Check that {path} is {what}: expected {ncols} columns, "
            f"got {data.shape[1]}"
        )
    if nrows is not None and data.shape[0] != nrows:
        raise ValueError(
            f"Check that {path} is {what}: expected {nrows} rows, "
            f"got {data.shape[0]}"
        )
    if not np.all(np.isfinite(data)):
        raise ValueError(f"Check that {path} is {what}: found non-finite values")
    return data


def write_matrix(path: str | Path, data: np.ndarray, fmt: str = '%.6f') -> None:
    """Write a matrix as a whitespace-delimited table (parent dirs created)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(path, np.atleast_2d(data), fmt=fmt, delimiter=' ')


def config_hash(yaml_text: str) -> str:
    """SHA-256 of a YAML config string (for checkpoint tagging)."""
    return hashlib.sha256(yaml_text.encode('utf-8')).hexdigest()


@contextmanager
def timer(label: str = "") -> Generator[None, None, None]:
    """Simple context-manager timer. Logs elapsed time on exit."""
    start = time.perf_counter()
    yield
    elapsed = time.perf_counter() - start
    if label:
        logger.info("[%s] %.3fs", label, elapsed)
    else:
        logger.info("Elapsed: %.3fs", elapsed)
