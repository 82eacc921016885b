"""
Typical vs Atypical Hypothesis Tests.

- Per-metric Welch and paired t-tests with Cohen's d and Holm correction
- Condition x time-bin ANOVA on space-normalised trajectories
- Two-sample Kolmogorov-Smirnov test
- Bimodality coefficient
- Per-step divergence t-tests on time-normalised trajectories
"""

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
import statsmodels.formula.api as smf
from statsmodels.stats.anova import AnovaRM, anova_lm
from statsmodels.stats.multitest import multipletests

from mousetrack.pipeline_config import (
    ColumnConfig, FilterConfig, StatTestsConfig,
    TTestResult, KSResult, BimodalityResult, DivergenceResult,
)

logger = logging.getLogger(__name__)

BIMODALITY_THRESHOLD = 5.0 / 9.0


# ======================================================================
# Vectorised t-tests
# ======================================================================

def rowwise_ttest_ind(a: np.ndarray, b: np.ndarray, axis: int = -1,
                      equal_var: bool = True) -> Tuple[np.ndarray, np.ndarray]:
    """Independent two-sample t-test along *axis* for every other index.

    Equivalent to ``scipy.stats.ttest_ind(a, b, axis=axis, equal_var=...)``
    without per-call overhead. Zero variance gives +/-inf, or NaN when the
    means are also equal, as scipy does.

    Returns
    -------
    (t, p) arrays with *axis* removed.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    na = a.shape[axis]
    nb = b.shape[axis]
    ma, mb = a.mean(axis=axis), b.mean(axis=axis)
    va, vb = a.var(axis=axis, ddof=1), b.var(axis=axis, ddof=1)

    with np.errstate(divide="ignore", invalid="ignore"):
        if equal_var:
            df = float(na + nb - 2)
            pooled = ((na - 1) * va + (nb - 1) * vb) / df
            se = np.sqrt(pooled * (1.0 / na + 1.0 / nb))
        else:
            sa, sb = va / na, vb / nb
            se = np.sqrt(sa + sb)
            df = (sa + sb) ** 2 / (sa ** 2 / (na - 1) + sb ** 2 / (nb - 1))
            # Undefined only when both variances are 0; t is then +/-inf or NaN
            df = np.where(np.isnan(df), 1.0, df)
        t = (ma - mb) / se
    p = 2.0 * stats.t.sf(np.abs(t), df)
    return t, p


def rowwise_ttest_1samp(a: np.ndarray, axis: int = -1,
                        popmean: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
    """One-sample t-test along *axis* (paired test when *a* holds differences).

    Zero variance gives +/-inf, or NaN when the mean equals *popmean*.
    """
    a = np.asarray(a, dtype=np.float64)
    n = a.shape[axis]
    with np.errstate(divide="ignore", invalid="ignore"):
        se = a.std(axis=axis, ddof=1) / np.sqrt(n)
        t = (a.mean(axis=axis) - popmean) / se
    p = 2.0 * stats.t.sf(np.abs(t), n - 1)
    return t, p


def longest_true_runs(mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Longest run of consecutive True values in every row.

    Parameters
    ----------
    mask : (n,) or (rows, n) bool

    Returns
    -------
    lengths : (rows,) int
    ends : (rows,) int, 0-based index of the last element of the first
        longest run (-1 when a row has no True value)
    """
    m = np.atleast_2d(np.asarray(mask, dtype=bool)).astype(np.int64)
    rows, n = m.shape
    if n == 0:
        return np.zeros(rows, dtype=np.int64), np.full(rows, -1, dtype=np.int64)
    counts = np.cumsum(m, axis=1)
    # Cumulative count frozen at the last False; runs are counts above it
    base = np.maximum.accumulate(np.where(m == 0, counts, 0), axis=1)
    runs = counts - base
    lengths = runs.max(axis=1)
    ends = np.where(lengths > 0, runs.argmax(axis=1), -1)
    return lengths, ends


# ======================================================================
# Helpers
# ======================================================================

def cohens_d(x: np.ndarray, y: np.ndarray) -> float:
    """Cohen's d with pooled standard deviation (x minus y)."""
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    nx, ny = len(x), len(y)
    if nx < 2 or ny < 2:
        return float("nan")
    pooled = np.sqrt(((nx - 1) * x.var(ddof=1) + (ny - 1) * y.var(ddof=1)) / (nx + ny - 2))
    if pooled == 0:
        return float("nan")
    return float((x.mean() - y.mean()) / pooled)


def _labelled(metrics: pd.DataFrame, filter_config: FilterConfig,
              columns: ColumnConfig) -> pd.DataFrame:
    """Restrict to the two conditions and add a ``condition`` column."""
    labels = (filter_config.typical_label, filter_config.atypical_label)
    df = metrics[metrics[columns.trial_type].isin(labels)]
    return df.assign(condition=df[columns.trial_type].astype(str))


def standardize_within(values: pd.Series, groups: pd.Series) -> pd.Series:
    """z-score *values* within each group (NaN where sd is 0 or n < 2)."""
    grouped = values.groupby(groups)
    mean = grouped.transform("mean")
    sd = grouped.transform(lambda v: v.std(ddof=1))
    with np.errstate(divide="ignore", invalid="ignore"):
        z = (values - mean) / sd
    return z.where(sd > 0)


def subject_condition_means(metrics: pd.DataFrame, metric: str,
                            filter_config: FilterConfig = None,
                            columns: ColumnConfig = None) -> pd.DataFrame:
    """Per-subject condition means, keeping subjects with both conditions.

    Returns a frame indexed by subject with typical/atypical columns.
    """
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    df = _labelled(metrics, filter_config, columns)
    wide = (df.groupby([columns.submission_id, "condition"])[metric]
              .mean().unstack("condition"))
    labels = [filter_config.typical_label, filter_config.atypical_label]
    wide = wide.reindex(columns=labels)
    return wide.dropna()


def count_paired_subjects(metrics: pd.DataFrame,
                          filter_config: FilterConfig = None,
                          columns: ColumnConfig = None) -> int:
    """Number of subjects with at least one trial in each condition."""
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    df = _labelled(metrics, filter_config, columns)
    n_cond = df.groupby(columns.submission_id)["condition"].nunique()
    return int((n_cond == 2).sum())


# ======================================================================
# Metric comparisons
# ======================================================================

def welch_ttest(typical: np.ndarray, atypical: np.ndarray) -> TTestResult:
    """Trial-level Welch t-test (typical minus atypical)."""
    typical = typical[np.isfinite(typical)]
    atypical = atypical[np.isfinite(atypical)]
    if len(typical) < 2 or len(atypical) < 2:
        return TTestResult("welch", float("nan"), float("nan"), float("nan"),
                           len(typical), len(atypical))
    res = stats.ttest_ind(typical, atypical, equal_var=False)
    return TTestResult("welch", float(res.statistic), float(res.pvalue),
                       float(res.df), len(typical), len(atypical),
                       effect_size=cohens_d(typical, atypical))


def paired_ttest(typical: np.ndarray, atypical: np.ndarray) -> TTestResult:
    """Subject-level paired t-test with d_z effect size."""
    n = len(typical)
    if n < 2:
        return TTestResult("paired", float("nan"), float("nan"), float("nan"), n, n)
    res = stats.ttest_rel(typical, atypical)
    diff = typical - atypical
    sd = diff.std(ddof=1)
    dz = float(diff.mean() / sd) if sd > 0 else float("nan")
    return TTestResult("paired", float(res.statistic), float(res.pvalue),
                       float(res.df), n, n, effect_size=dz)


def _adjust(pvals: pd.Series, method: str, alpha: float) -> pd.Series:
    out = pd.Series(np.nan, index=pvals.index)
    finite = pvals.notna()
    if finite.sum() > 0:
        _, adj, _, _ = multipletests(pvals[finite].to_numpy(), alpha=alpha, method=method)
        out[finite] = adj
    return out


def compare_metrics(metrics: pd.DataFrame,
                    config: StatTestsConfig = None,
                    filter_config: FilterConfig = None,
                    columns: ColumnConfig = None,
                    paired: bool = True) -> pd.DataFrame:
    """Typical vs atypical comparison for every configured metric.

    Returns one row per metric with Welch and (when *paired*) subject-level
    paired results; p-values are corrected across metrics with
    ``config.correction``.
    """
    if config is None:
        config = StatTestsConfig()
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()

    df = _labelled(metrics, filter_config, columns)
    typ_mask = df["condition"] == filter_config.typical_label
    rows = []
    for metric in config.metrics:
        if metric not in df.columns:
            logger.warning("Metric '%s' not available, skipping", metric)
            continue
        vals = df[metric].astype(np.float64)
        welch = welch_ttest(vals[typ_mask].to_numpy(), vals[~typ_mask].to_numpy())
        row = {
            "metric": metric,
            "mean_typical": float(vals[typ_mask].mean()),
            "mean_atypical": float(vals[~typ_mask].mean()),
            "welch_t": welch.statistic,
            "welch_df": welch.df,
            "welch_p": welch.p_value,
            "cohens_d": welch.effect_size,
            "n_typical": welch.n1,
            "n_atypical": welch.n2,
        }
        if paired:
            wide = subject_condition_means(df, metric, filter_config, columns)
            pt = paired_ttest(wide[filter_config.typical_label].to_numpy(),
                              wide[filter_config.atypical_label].to_numpy())
            row.update({
                "paired_t": pt.statistic,
                "paired_df": pt.df,
                "paired_p": pt.p_value,
                "paired_dz": pt.effect_size,
                "n_subjects": pt.n1,
            })
        rows.append(row)

    table = pd.DataFrame(rows)
    if table.empty:
        return table
    table["welch_p_adj"] = _adjust(table["welch_p"], config.correction, config.alpha)
    if paired:
        table["paired_p_adj"] = _adjust(table["paired_p"], config.correction, config.alpha)
    for _, r in table.iterrows():
        logger.info("%s: typical=%.3f atypical=%.3f Welch t=%.2f p=%.4g",
                    r["metric"], r["mean_typical"], r["mean_atypical"],
                    r["welch_t"], r["welch_p"])
    return table


# ======================================================================
# ANOVA
# ======================================================================

ANOVA_COLUMNS = ["effect", "F", "df_num", "df_den", "p"]


def space_anova(space_df: pd.DataFrame, trials: pd.DataFrame,
                coord: str = "x", method: str = "rm",
                filter_config: FilterConfig = None,
                columns: ColumnConfig = None) -> pd.DataFrame:
    """Condition x time-bin ANOVA on a space-normalised coordinate.

    method='rm' runs a repeated-measures ANOVA on subject means (subjects
    without every condition/bin cell are dropped); method='ols' runs a
    two-way between-trials ANOVA (type II sums of squares).
    """
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    subj = columns.submission_id

    attrs = _labelled(trials, filter_config, columns)[["trial_id", subj, "condition"]]
    df = space_df.merge(attrs, on="trial_id", how="inner").rename(columns={"step": "bin"})

    if df["condition"].nunique() < 2:
        raise ValueError("ANOVA needs trials from both conditions")

    if method == "rm":
        cell = df.groupby([subj, "condition", "bin"], as_index=False)[coord].mean()
        n_cells = df["condition"].nunique() * df["bin"].nunique()
        complete = cell.groupby(subj)[coord].count() == n_cells
        cell = cell[cell[subj].isin(complete[complete].index)]
        n_subjects = cell[subj].nunique()
        if n_subjects < 2:
            raise ValueError(f"Repeated-measures ANOVA needs >= 2 complete "
                             f"subjects, got {n_subjects}")
        res = AnovaRM(cell, depvar=coord, subject=subj,
                      within=["condition", "bin"]).fit()
        tbl = res.anova_table
        out = pd.DataFrame({
            "effect": tbl.index.astype(str),
            "F": tbl["F Value"].to_numpy(),
            "df_num": tbl["Num DF"].to_numpy(),
            "df_den": tbl["Den DF"].to_numpy(),
            "p": tbl["Pr > F"].to_numpy(),
        })
        logger.info("RM-ANOVA on %s: %d subjects", coord, n_subjects)
    elif method == "ols":
        model = smf.ols(f"{coord} ~ C(condition) * C(bin)", data=df).fit()
        tbl = anova_lm(model, typ=2)
        resid_df = float(tbl.loc["Residual", "df"])
        tbl = tbl.drop(index="Residual")
        out = pd.DataFrame({
            "effect": [e.replace("C(", "").replace(")", "") for e in tbl.index],
            "F": tbl["F"].to_numpy(),
            "df_num": tbl["df"].to_numpy(),
            "df_den": resid_df,
            "p": tbl["PR(>F)"].to_numpy(),
        })
        logger.info("Two-way ANOVA on %s: %d trials", coord, df["trial_id"].nunique())
    else:
        raise ValueError(f"Unknown ANOVA method: {method!r}")

    return out[ANOVA_COLUMNS].reset_index(drop=True)


# ======================================================================
# Distribution shape
# ======================================================================

def _condition_values(metrics: pd.DataFrame, metric: str, standardize: bool,
                      filter_config: FilterConfig, columns: ColumnConfig) -> pd.DataFrame:
    df = _labelled(metrics, filter_config, columns)
    vals = df[metric].astype(np.float64)
    if standardize:
        vals = standardize_within(vals, df[columns.submission_id])
    return pd.DataFrame({"condition": df["condition"], "value": vals}).dropna()


def ks_compare(metrics: pd.DataFrame, metric: str = "auc",
               standardize_within_subject: bool = True,
               filter_config: FilterConfig = None,
               columns: ColumnConfig = None) -> KSResult:
    """Two-sample KS test of typical vs atypical *metric* distributions."""
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    vals = _condition_values(metrics, metric, standardize_within_subject,
                             filter_config, columns)
    typ = vals.loc[vals["condition"] == filter_config.typical_label, "value"].to_numpy()
    atyp = vals.loc[vals["condition"] == filter_config.atypical_label, "value"].to_numpy()
    if len(typ) == 0 or len(atyp) == 0:
        stat, p = float("nan"), float("nan")
    else:
        res = stats.ks_2samp(typ, atyp)
        stat, p = float(res.statistic), float(res.pvalue)
    logger.info("KS on %s: D=%.3f p=%.4g (n=%d/%d)", metric, stat, p, len(typ), len(atyp))
    return KSResult(metric=metric, statistic=stat, p_value=p,
                    n_typical=len(typ), n_atypical=len(atyp),
                    standardized=standardize_within_subject)


def bimodality_coefficient(values) -> BimodalityResult:
    """Sample bimodality coefficient (SAS formula).

    BC = (g1^2 + 1) / (g2 + 3 (n-1)^2 / ((n-2)(n-3))), with bias-corrected
    skewness g1 and excess kurtosis g2. BC > 5/9 suggests bimodality.
    """
    x = np.asarray(values, dtype=np.float64)
    x = x[np.isfinite(x)]
    n = len(x)
    if n < 4 or np.ptp(x) == 0:
        return BimodalityResult(float("nan"), float("nan"), float("nan"), n, False)
    g1 = float(stats.skew(x, bias=False))
    g2 = float(stats.kurtosis(x, fisher=True, bias=False))
    bc = (g1 ** 2 + 1.0) / (g2 + 3.0 * (n - 1) ** 2 / ((n - 2) * (n - 3)))
    return BimodalityResult(coefficient=float(bc), skewness=g1, kurtosis=g2,
                            n=n, is_bimodal=bool(bc > BIMODALITY_THRESHOLD))


def bimodality_by_condition(metrics: pd.DataFrame, metric: str = "auc",
                            standardize_within_subject: bool = True,
                            filter_config: FilterConfig = None,
                            columns: ColumnConfig = None) -> dict:
    """Bimodality coefficient per condition, keyed by condition label."""
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    vals = _condition_values(metrics, metric, standardize_within_subject,
                             filter_config, columns)
    out = {}
    for label in (filter_config.typical_label, filter_config.atypical_label):
        res = bimodality_coefficient(vals.loc[vals["condition"] == label, "value"])
        out[label] = res
        logger.info("Bimodality of %s (%s): BC=%.3f (n=%d)%s", metric, label,
                    res.coefficient, res.n, " bimodal" if res.is_bimodal else "")
    return out


# ======================================================================
# Divergence on time-normalised curves
# ======================================================================

def condition_curves(time_df: pd.DataFrame, trials: pd.DataFrame,
                     coord: str = "x", unit: str = "trial",
                     filter_config: FilterConfig = None,
                     columns: ColumnConfig = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Wide (unit x step) matrices of *coord* for typical and atypical.

    unit='subject' averages trials per subject and keeps subjects present in
    both conditions, aligned on the same index.
    """
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    if unit not in ("trial", "subject"):
        raise ValueError(f"Unknown divergence unit: {unit!r}")
    subj = columns.submission_id

    attrs = _labelled(trials, filter_config, columns)[["trial_id", subj, "condition"]]
    df = time_df.merge(attrs, on="trial_id", how="inner")
    if unit == "trial":
        wide = df.pivot(index="trial_id", columns="step", values=coord)
        cond = attrs.set_index("trial_id")["condition"].reindex(wide.index)
        typ = wide[cond == filter_config.typical_label]
        atyp = wide[cond == filter_config.atypical_label]
    else:
        means = df.groupby(["condition", subj, "step"])[coord].mean().unstack("step")
        present = set(means.index.get_level_values("condition"))

        def _block(label):
            if label in present:
                return means.loc[label]
            return pd.DataFrame(columns=means.columns, dtype=np.float64)

        typ = _block(filter_config.typical_label)
        atyp = _block(filter_config.atypical_label)
        both = typ.index.intersection(atyp.index)
        typ, atyp = typ.loc[both], atyp.loc[both]
    return typ, atyp


def _run_bounds(mask: np.ndarray, steps: np.ndarray) -> Tuple[int, Optional[int], Optional[int]]:
    lengths, ends = longest_true_runs(mask)
    length = int(lengths[0])
    if length == 0:
        return 0, None, None
    end = int(ends[0])
    return length, int(steps[end - length + 1]), int(steps[end])


def divergence_analysis(time_df: pd.DataFrame, trials: pd.DataFrame,
                        coord: str = "x", alpha: float = 0.05,
                        unit: str = "trial",
                        filter_config: FilterConfig = None,
                        columns: ColumnConfig = None) -> DivergenceResult:
    """Per-step typical vs atypical t-tests and the longest significant run."""
    typ, atyp = condition_curves(time_df, trials, coord, unit, filter_config, columns)
    steps = typ.columns.to_numpy(dtype=np.int64) if len(typ.columns) else \
        atyp.columns.to_numpy(dtype=np.int64)

    if unit == "trial":
        if len(typ) < 2 or len(atyp) < 2:
            raise ValueError(f"Divergence analysis needs >= 2 trials per condition, "
                             f"got {len(typ)}/{len(atyp)}")
        t, p = rowwise_ttest_ind(typ.to_numpy(), atyp.to_numpy(), axis=0)
    else:
        if len(typ) < 2:
            raise ValueError(f"Paired divergence analysis needs >= 2 subjects, "
                             f"got {len(typ)}")
        t, p = rowwise_ttest_1samp(typ.to_numpy() - atyp.to_numpy(), axis=0)

    significant = np.nan_to_num(p, nan=1.0) < alpha
    length, start, end = _run_bounds(significant, steps)
    first = int(steps[np.argmax(significant)]) if significant.any() else None

    logger.info("Divergence on %s (%s unit): %d significant steps, longest run %d%s",
                coord, unit, int(significant.sum()), length,
                f" (steps {start}-{end})" if length else "")
    return DivergenceResult(
        coord=coord, unit=unit, steps=steps, t_values=t, p_values=p,
        significant=significant, alpha=alpha, longest_run=length,
        run_start=start, run_end=end, first_significant_step=first,
        n_typical=len(typ), n_atypical=len(atyp),
    )
