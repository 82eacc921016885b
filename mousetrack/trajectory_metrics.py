"""
Per-Trial Kinematic Metrics.

All metrics are computed on exploded samples (ms, start-centred, y up,
left responses mirrored to the right). Sign convention for the curvature
metrics: positive = bowing toward the non-chosen (left) alternative.
"""

import logging

import numpy as np
import pandas as pd

from mousetrack.pipeline_config import TrajectoryConfig

logger = logging.getLogger(__name__)

METRIC_COLUMNS = [
    "movement_init", "movement_duration", "total_rt", "initial_angle",
    "distance_travelled", "auc", "max_deviation", "x_flips",
]


def movement_onset(t: np.ndarray, x: np.ndarray, y: np.ndarray,
                   threshold_px: float = 0.0) -> float:
    """Time of the first sample farther than *threshold_px* from the start."""
    dist = np.hypot(x - x[0], y - y[0])
    moved = np.flatnonzero(dist > threshold_px)
    if len(moved) == 0:
        return float("nan")
    return float(t[moved[0]] - t[0])


def initial_angle(x: np.ndarray, y: np.ndarray,
                  min_distance_px: float = 5.0) -> float:
    """Heading of the first movement, in degrees from straight up.

    Uses the vector from the start to the first sample at least
    *min_distance_px* away. Positive angles point toward the chosen side.
    """
    dx = x - x[0]
    dy = y - y[0]
    far = np.flatnonzero(np.hypot(dx, dy) >= max(min_distance_px, 1e-12))
    if len(far) == 0:
        return float("nan")
    i = far[0]
    return float(np.degrees(np.arctan2(dx[i], dy[i])))


def path_length(x: np.ndarray, y: np.ndarray) -> float:
    """Length of the polyline through all samples."""
    if len(x) < 2:
        return 0.0
    return float(np.sum(np.hypot(np.diff(x), np.diff(y))))


def area_under_curve(x: np.ndarray, y: np.ndarray) -> float:
    """Signed area between the trajectory and the start-end chord.

    Shoelace area of the polygon closed by the chord; a path bowing to the
    left of the chord traces it clockwise, hence the sign flip.
    """
    if len(x) < 3:
        return 0.0
    cross = x * np.roll(y, -1) - np.roll(x, -1) * y
    return float(-0.5 * np.sum(cross))


def max_deviation(x: np.ndarray, y: np.ndarray) -> float:
    """Signed perpendicular deviation from the chord with the largest magnitude."""
    cx, cy = x[-1] - x[0], y[-1] - y[0]
    chord = np.hypot(cx, cy)
    if chord == 0:
        return float("nan")
    # Left of the chord direction is positive
    dev = (cx * (y - y[0]) - cy * (x - x[0])) / chord
    return float(dev[np.argmax(np.abs(dev))])


def count_x_flips(x: np.ndarray) -> int:
    """Number of direction reversals along x (zero steps ignored)."""
    dx = np.sign(np.diff(x))
    dx = dx[dx != 0]
    if len(dx) < 2:
        return 0
    return int(np.sum(dx[1:] != dx[:-1]))


def trajectory_metrics(t: np.ndarray, x: np.ndarray, y: np.ndarray,
                       config: TrajectoryConfig = None) -> dict:
    """All metrics for a single trajectory."""
    if config is None:
        config = TrajectoryConfig()
    if len(t) == 0:
        raise ValueError("Cannot compute metrics of an empty trajectory")

    total_rt = float(t[-1] - t[0])
    init = movement_onset(t, x, y, config.move_threshold_px)
    return {
        "movement_init": init,
        "movement_duration": total_rt - init,
        "total_rt": total_rt,
        "initial_angle": initial_angle(x, y, config.angle_min_distance_px),
        "distance_travelled": path_length(x, y),
        "auc": area_under_curve(x, y),
        "max_deviation": max_deviation(x, y),
        "x_flips": count_x_flips(x),
    }


def compute_trial_metrics(samples: pd.DataFrame, trials: pd.DataFrame,
                          config: TrajectoryConfig = None) -> pd.DataFrame:
    """Compute metrics for every trial and merge them onto the trial table.

    Trial-level columns holding raw traces are not carried over.
    """
    if config is None:
        config = TrajectoryConfig()

    rows = []
    for trial_id, grp in samples.groupby("trial_id", sort=True):
        m = trajectory_metrics(grp["t"].to_numpy(), grp["x"].to_numpy(),
                               grp["y"].to_numpy(), config)
        m["trial_id"] = trial_id
        rows.append(m)
    metrics = pd.DataFrame(rows, columns=["trial_id"] + METRIC_COLUMNS)

    # Drop array-valued trace columns and the loader's raw total_rt
    scalar_cols = [c for c in trials.columns
                   if c not in METRIC_COLUMNS
                   and not (len(trials) and isinstance(trials[c].iloc[0], np.ndarray))]
    out = trials[scalar_cols].merge(metrics, on="trial_id", how="inner",
                                    validate="one_to_one")
    if len(out) < len(trials):
        logger.warning("%d trials have no samples and get no metrics",
                       len(trials) - len(out))
    n_never_moved = int(out["movement_init"].isna().sum())
    if n_never_moved:
        logger.warning("%d trials never left the start position", n_never_moved)
    logger.info("Computed %d metrics for %d trials", len(METRIC_COLUMNS), len(out))
    return out
