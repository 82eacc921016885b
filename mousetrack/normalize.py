"""
Time and Space Normalisation of Mouse Trajectories.

Time normalisation resamples every trajectory onto a fixed number of equally
spaced time steps. Space normalisation rescales each trajectory to [0, 1] and
averages it inside fixed elapsed-time bins.
"""

import logging

import numpy as np
import pandas as pd
from sklearn.preprocessing import minmax_scale

from mousetrack.pipeline_config import TimeNormConfig, SpaceNormConfig

logger = logging.getLogger(__name__)

NORMALIZED_COLUMNS = ["trial_id", "step", "x", "y"]


def _empty_normalized() -> pd.DataFrame:
    return pd.DataFrame({
        "trial_id": pd.Series(dtype=np.int64),
        "step": pd.Series(dtype=np.int64),
        "x": pd.Series(dtype=np.float64),
        "y": pd.Series(dtype=np.float64),
    })


def resample_trajectory(t: np.ndarray, x: np.ndarray, y: np.ndarray,
                        n_steps: int = 101) -> tuple:
    """Linearly interpolate (x, y) at *n_steps* equally spaced times.

    Returns (x_steps, y_steps), each of length *n_steps*.
    """
    if len(t) == 0:
        raise ValueError("Cannot resample an empty trajectory")
    if len(t) == 1 or t[-1] == t[0]:
        return np.full(n_steps, x[-1], dtype=np.float64), np.full(n_steps, y[-1], dtype=np.float64)
    grid = np.linspace(t[0], t[-1], n_steps)
    return np.interp(grid, t, x), np.interp(grid, t, y)


def time_normalize(samples: pd.DataFrame,
                   config: TimeNormConfig = None) -> pd.DataFrame:
    """Resample every trial to ``config.n_steps`` time steps (1-based)."""
    if config is None:
        config = TimeNormConfig()
    n_steps = config.n_steps
    if n_steps < 2:
        raise ValueError(f"n_steps must be >= 2, got {n_steps}")
    if samples.empty:
        return _empty_normalized()

    steps = np.arange(1, n_steps + 1, dtype=np.int64)
    parts = []
    for trial_id, grp in samples.groupby("trial_id", sort=True):
        xs, ys = resample_trajectory(grp["t"].to_numpy(), grp["x"].to_numpy(),
                                     grp["y"].to_numpy(), n_steps)
        parts.append(pd.DataFrame({
            "trial_id": np.full(n_steps, trial_id, dtype=np.int64),
            "step": steps, "x": xs, "y": ys,
        }))

    out = pd.concat(parts, ignore_index=True)
    logger.info("Time-normalised %d trials to %d steps", len(parts), n_steps)
    return out


def bin_trajectory(t: np.ndarray, pos: np.ndarray,
                   n_bins: int = 3, bin_ms: float = 500.0) -> np.ndarray:
    """Average positions inside consecutive elapsed-time bins.

    Parameters
    ----------
    t : (n,) elapsed times (ms), starting at 0
    pos : (n, 2) positions
    n_bins, bin_ms : bin layout; bin k covers [k*bin_ms, (k+1)*bin_ms)

    Returns
    -------
    (n_bins, 2) array. Bins after the trial's last sample hold the terminal
    position; empty bins inside the trial are interpolated at their midpoint.
    """
    out = np.empty((n_bins, pos.shape[1]), dtype=np.float64)
    t_end = t[-1]
    for k in range(n_bins):
        lo, hi = k * bin_ms, (k + 1) * bin_ms
        in_bin = (t >= lo) & (t < hi)
        if in_bin.any():
            out[k] = pos[in_bin].mean(axis=0)
        elif t_end < lo:
            out[k] = pos[-1]
        else:
            mid = lo + bin_ms / 2.0
            out[k] = [np.interp(mid, t, pos[:, d]) for d in range(pos.shape[1])]
    return out


def space_normalize(samples: pd.DataFrame,
                    config: SpaceNormConfig = None) -> pd.DataFrame:
    """Unit-scale each trial to [0, 1] and bin it by elapsed time."""
    if config is None:
        config = SpaceNormConfig()
    if config.n_bins < 1 or config.bin_ms <= 0:
        raise ValueError(f"Invalid space binning: n_bins={config.n_bins}, "
                         f"bin_ms={config.bin_ms}")
    if samples.empty:
        return _empty_normalized()

    steps = np.arange(1, config.n_bins + 1, dtype=np.int64)
    parts = []
    n_padded = 0
    for trial_id, grp in samples.groupby("trial_id", sort=True):
        t = grp["t"].to_numpy(dtype=np.float64)
        t = t - t[0]
        pos = minmax_scale(grp[["x", "y"]].to_numpy(dtype=np.float64), axis=0)
        binned = bin_trajectory(t, pos, config.n_bins, config.bin_ms)
        if t[-1] < (config.n_bins - 1) * config.bin_ms:
            n_padded += 1
        parts.append(pd.DataFrame({
            "trial_id": np.full(config.n_bins, trial_id, dtype=np.int64),
            "step": steps, "x": binned[:, 0], "y": binned[:, 1],
        }))

    out = pd.concat(parts, ignore_index=True)
    logger.info("Space-normalised %d trials into %d x %.0f ms bins "
                "(%d padded with terminal position)",
                len(parts), config.n_bins, config.bin_ms, n_padded)
    return out
