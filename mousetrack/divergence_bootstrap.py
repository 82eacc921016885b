"""
Divergence Run-Length Bootstrap.

Parametric simulation of the null distribution of the longest run of
consecutive significant time steps. Null datasets are drawn from a
multivariate normal fitted to the observed time-normalised curves, each
dataset gets the same vectorised per-step t-test as the observed data, and
the longest run of p < alpha is recorded.

Batches are seeded from one SeedSequence, so results depend on the seed
only and not on the worker count.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List

import numpy as np
import pandas as pd
import psutil

from mousetrack.pipeline_config import (
    BootstrapConfig, BootstrapResult, ColumnConfig, FilterConfig, NullModel,
)
from mousetrack.hypothesis_tests import (
    condition_curves, longest_true_runs, rowwise_ttest_1samp, rowwise_ttest_ind,
)

logger = logging.getLogger(__name__)


def fit_null_model(time_df: pd.DataFrame, trials: pd.DataFrame,
                   coord: str = "x", unit: str = "trial",
                   filter_config: FilterConfig = None,
                   columns: ColumnConfig = None) -> NullModel:
    """Fit the multivariate-normal null model to observed curves.

    unit='trial': grand mean curve and covariance of the condition-centred
    curves, with the observed group sizes.
    unit='subject': zero mean and covariance of per-subject typical minus
    atypical difference curves.
    """
    typ, atyp = condition_curves(time_df, trials, coord, unit, filter_config, columns)
    if unit == "trial":
        if len(typ) < 2 or len(atyp) < 2:
            raise ValueError(f"Null model needs >= 2 trials per condition, "
                             f"got {len(typ)}/{len(atyp)}")
        a, b = typ.to_numpy(), atyp.to_numpy()
        resid = np.vstack([a - a.mean(axis=0), b - b.mean(axis=0)])
        mean = np.vstack([a, b]).mean(axis=0)
        cov = resid.T @ resid / (len(resid) - 2)
    else:
        if len(typ) < 2:
            raise ValueError(f"Paired null model needs >= 2 subjects, got {len(typ)}")
        diff = typ.to_numpy() - atyp.to_numpy()
        mean = np.zeros(diff.shape[1])
        cov = np.cov(diff, rowvar=False)
    return NullModel(coord=coord, unit=unit, mean=mean, cov=np.atleast_2d(cov),
                     n_typical=len(typ), n_atypical=len(atyp))


def _sampling_factor(cov: np.ndarray) -> np.ndarray:
    """Matrix L with L @ L.T == cov (eigendecomposition; tolerates singular cov)."""
    w, v = np.linalg.eigh(cov)
    return v * np.sqrt(np.clip(w, 0.0, None))


def _simulate_batch(size: int, seed: np.random.SeedSequence, model: NullModel,
                    factor: np.ndarray, alpha: float) -> np.ndarray:
    """Longest significant run for *size* null datasets."""
    rng = np.random.default_rng(seed)
    if model.unit == "trial":
        n = model.n_typical + model.n_atypical
        draws = model.mean + rng.standard_normal((size, n, model.n_steps)) @ factor.T
        _, p = rowwise_ttest_ind(draws[:, :model.n_typical], draws[:, model.n_typical:],
                                 axis=1)
    else:
        draws = model.mean + rng.standard_normal((size, model.n_typical, model.n_steps)) @ factor.T
        _, p = rowwise_ttest_1samp(draws, axis=1)
    lengths, _ = longest_true_runs(np.nan_to_num(p, nan=1.0) < alpha)
    return lengths


def _batch_sizes(n_simulations: int, batch_size: int) -> List[int]:
    batch_size = max(1, batch_size)
    full, rest = divmod(n_simulations, batch_size)
    return [batch_size] * full + ([rest] if rest else [])


def simulate_run_lengths(model: NullModel,
                         config: BootstrapConfig = None) -> BootstrapResult:
    """Simulate the null distribution of longest divergence runs.

    Parameters
    ----------
    model : NullModel
    config : BootstrapConfig
        n_workers: 0 (default) = ``min(4, cpu_count)``, 1 = sequential.

    Returns
    -------
    BootstrapResult
    """
    if config is None:
        config = BootstrapConfig()
    if config.n_simulations < 1:
        raise ValueError(f"n_simulations must be >= 1, got {config.n_simulations}")

    sizes = _batch_sizes(config.n_simulations, config.batch_size)
    seeds = np.random.SeedSequence(config.seed).spawn(len(sizes))
    factor = _sampling_factor(model.cov)

    n_workers = config.n_workers
    if n_workers <= 0:
        n_workers = min(4, os.cpu_count() or 1)
    use_parallel = n_workers > 1 and len(sizes) > 1

    process = psutil.Process()
    t_start = time.monotonic()
    logger.info("Bootstrap: %d simulations in %d batches (workers=%d, %s unit, "
                "n=%d/%d, %d steps) (RSS %.2f GB)",
                config.n_simulations, len(sizes), n_workers if use_parallel else 1,
                model.unit, model.n_typical, model.n_atypical, model.n_steps,
                process.memory_info().rss / 1024**3)

    results = [None] * len(sizes)
    completed = 0
    t_last_log = t_start

    def _progress(done):
        nonlocal t_last_log
        t_now = time.monotonic()
        if t_now - t_last_log >= config.log_interval_s:
            elapsed = t_now - t_start
            rate = done / elapsed if elapsed > 0 else 0
            remaining = (config.n_simulations - done) / rate if rate > 0 else 0
            logger.info("Bootstrap: %d/%d (%.0f%%) | %.1f sims/s | ETA %.0fs | RSS %.2f GB",
                        done, config.n_simulations, 100 * done / config.n_simulations,
                        rate, remaining, process.memory_info().rss / 1024**3)
            t_last_log = t_now

    if use_parallel:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = [
                executor.submit(_simulate_batch, size, seed, model, factor, config.alpha)
                for size, seed in zip(sizes, seeds)
            ]
            for i, future in enumerate(futures):
                results[i] = future.result()
                completed += sizes[i]
                _progress(completed)
    else:
        for i, (size, seed) in enumerate(zip(sizes, seeds)):
            results[i] = _simulate_batch(size, seed, model, factor, config.alpha)
            completed += size
            _progress(completed)

    run_lengths = np.concatenate(results).astype(np.int64)
    critical = int(np.ceil(np.quantile(run_lengths, config.run_quantile)))
    elapsed = time.monotonic() - t_start

    diagnostics = {
        "elapsed_s": elapsed,
        "n_batches": len(sizes),
        "n_workers": n_workers if use_parallel else 1,
        "mean_run_length": float(run_lengths.mean()),
        "max_run_length": int(run_lengths.max()),
        "unit": model.unit,
        "coord": model.coord,
    }
    logger.info("Bootstrap done in %.1fs: critical run length %d (q=%.2f), "
                "mean %.2f, max %d", elapsed, critical, config.run_quantile,
                diagnostics["mean_run_length"], diagnostics["max_run_length"])

    return BootstrapResult(
        run_lengths=run_lengths,
        critical_run_length=critical,
        alpha=config.alpha,
        run_quantile=config.run_quantile,
        n_simulations=config.n_simulations,
        seed=config.seed,
        diagnostics=diagnostics,
    )


def compare_observed(observed_run: int, result: BootstrapResult) -> float:
    """Empirical p-value of an observed longest run under the null.

    p = (1 + #{simulated >= observed}) / (1 + n_simulations). Also stored on
    *result*.
    """
    n_ge = int(np.sum(result.run_lengths >= observed_run))
    p = (1.0 + n_ge) / (1.0 + len(result.run_lengths))
    result.observed_run = int(observed_run)
    result.observed_p_value = p
    logger.info("Observed run %d vs null: p=%.4f (critical %d)",
                observed_run, p, result.critical_run_length)
    return p
