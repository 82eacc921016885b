"""
Trajectory Preprocessing.

Steps:
1. Explode per-trial traces into a long sample table
2. Make time and position relative to the first sample, flip y, mirror
   left responses onto the right
3. Iterative z-score outlier trimming on a trial-level column
4. Correctness filter
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from mousetrack.pipeline_config import (
    ColumnConfig, OutlierConfig, TrajectoryConfig,
    OutlierRecord, CorrectnessRecord,
)
from mousetrack.io_trials import trace_is_valid

logger = logging.getLogger(__name__)

SAMPLE_COLUMNS = ["trial_id", "t", "x", "y"]


def _dedupe_timestamps(t: np.ndarray, x: np.ndarray, y: np.ndarray):
    """Collapse repeated timestamps to their last sample."""
    if len(t) < 2:
        return t, x, y
    last = np.append(np.diff(t) != 0, True)
    return t[last], x[last], y[last]


def explode_samples(trials: pd.DataFrame,
                    trajectory_config: TrajectoryConfig = None,
                    columns: ColumnConfig = None) -> pd.DataFrame:
    """Explode parallel trace arrays into ``(trial_id, t, x, y)`` rows.

    Invalid traces (kept when the filter stage was told not to drop them)
    contribute no samples.
    """
    if trajectory_config is None:
        trajectory_config = TrajectoryConfig()
    if columns is None:
        columns = ColumnConfig()
    cfg = trajectory_config

    parts = []
    n_skipped = 0
    for trial_id, side, t, x, y in zip(trials["trial_id"], trials["response_side"],
                                       trials[columns.times], trials[columns.x],
                                       trials[columns.y]):
        t = np.asarray(t, dtype=np.float64)
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if not trace_is_valid(t, x, y):
            n_skipped += 1
            continue
        t, x, y = _dedupe_timestamps(t, x, y)
        t = t - t[0]
        if cfg.center_on_start:
            x = x - x[0]
            y = y - y[0]
        if cfg.flip_y:
            y = -y
        if cfg.mirror_left and side == "left":
            x = -x
        parts.append(pd.DataFrame({
            "trial_id": np.full(len(t), trial_id, dtype=np.int64),
            "t": t, "x": x, "y": y,
        }))

    if n_skipped:
        logger.warning("Skipped %d trials with invalid traces", n_skipped)
    if not parts:
        return pd.DataFrame({c: pd.Series(dtype=np.float64) for c in SAMPLE_COLUMNS})
    samples = pd.concat(parts, ignore_index=True)
    logger.info("Exploded %d samples from %d trials", len(samples), len(parts))
    return samples


def iterative_zscore_trim(df: pd.DataFrame, column: str,
                          threshold: float = 3.0,
                          group_by: Optional[str] = None,
                          max_iterations: int = 100) -> OutlierRecord:
    """Iteratively remove rows whose |z| on *column* exceeds *threshold*.

    z is recomputed from the remaining rows (sample sd) after every pass,
    per group when *group_by* is set. A group stops trimming once a pass
    removes nothing, fewer than 3 finite values remain, or its sd is 0.
    NaN values are neither removed nor used in the statistics.
    """
    if column not in df.columns:
        raise ValueError(f"Outlier column '{column}' not in table")

    keep = pd.Series(True, index=df.index)
    values = df[column].astype(np.float64)
    groups = df[group_by] if group_by is not None else pd.Series(0, index=df.index)

    n_iterations = 0
    for n_iterations in range(1, max_iterations + 1):
        current = values[keep]
        grouped = current.groupby(groups[keep])
        mean = grouped.transform("mean")
        sd = grouped.transform(lambda v: v.std(ddof=1))
        count = grouped.transform("count")
        with np.errstate(invalid="ignore", divide="ignore"):
            z = (current - mean) / sd
        usable = (count >= 3) & (sd > 0) & z.notna()
        outliers = usable & (z.abs() > threshold)
        if not outliers.any():
            break
        keep[outliers[outliers].index] = False
        logger.debug("Trim pass %d on %s: removed %d rows",
                     n_iterations, column, int(outliers.sum()))
    else:
        logger.warning("Outlier trimming hit max_iterations=%d", max_iterations)

    kept = df[keep]
    removed = df[~keep]
    diagnostics = {
        "column": column,
        "threshold": threshold,
        "group_by": group_by,
        "n_removed": len(removed),
        "n_kept": len(kept),
    }
    logger.info("Outlier trimming on %s (|z| > %.2f): removed %d of %d rows "
                "in %d passes", column, threshold, len(removed), len(df),
                n_iterations)
    return OutlierRecord(kept=kept, removed=removed,
                         n_iterations=n_iterations, diagnostics=diagnostics)


def reject_outliers(trials: pd.DataFrame,
                    outlier_config: OutlierConfig = None) -> OutlierRecord:
    """Apply the configured outlier trimming (pass-through when disabled)."""
    if outlier_config is None:
        outlier_config = OutlierConfig()
    if not outlier_config.enabled:
        return OutlierRecord(kept=trials, removed=trials.iloc[0:0],
                             n_iterations=0, diagnostics={"enabled": False})
    return iterative_zscore_trim(
        trials, outlier_config.column,
        threshold=outlier_config.z_threshold,
        group_by=outlier_config.group_by,
        max_iterations=outlier_config.max_iterations,
    )


def filter_correct(trials: pd.DataFrame,
                   columns: ColumnConfig = None) -> CorrectnessRecord:
    """Keep correctly categorised trials and report accuracy."""
    if columns is None:
        columns = ColumnConfig()

    correct = trials["correct"].astype(bool)
    accuracy = float(correct.mean()) if len(trials) else 0.0
    by_condition = {
        str(cond): float(v)
        for cond, v in correct.groupby(trials[columns.trial_type]).mean().items()
    }
    logger.info("Accuracy %.3f (%s); keeping %d correct trials", accuracy,
                ", ".join(f"{k}={v:.3f}" for k, v in sorted(by_condition.items())),
                int(correct.sum()))
    return CorrectnessRecord(trials=trials[correct].reset_index(drop=True),
                             accuracy=accuracy,
                             accuracy_by_condition=by_condition)
