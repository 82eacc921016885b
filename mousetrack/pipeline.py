"""
End-to-End Analysis Pipeline.

Load -> Filter/Join -> Outlier rejection -> Correctness filter ->
Time/space normalisation -> Metrics -> Hypothesis tests -> Bootstrap ->
Validation. Gates are evaluated as soon as their stage has run; a FATAL
failure stops the run with PipelineError.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, List

import pandas as pd

from mousetrack.pipeline_config import (
    PipelineConfig, GateResult, TrialTableRecord, OutlierRecord,
    CorrectnessRecord, KSResult, BimodalityResult, DivergenceResult,
    NullModel, BootstrapResult, ValidationReport,
)
from mousetrack.gates import evaluate_gate
from mousetrack.io_trials import (
    check_columns, filter_and_join, load_participants, load_trials,
)
from mousetrack.preprocess import explode_samples, filter_correct, reject_outliers
from mousetrack.normalize import space_normalize, time_normalize
from mousetrack.trajectory_metrics import compute_trial_metrics
from mousetrack.hypothesis_tests import (
    bimodality_by_condition, compare_metrics, count_paired_subjects,
    divergence_analysis, ks_compare, space_anova,
)
from mousetrack.divergence_bootstrap import (
    compare_observed, fit_null_model, simulate_run_lengths,
)
from mousetrack.validation import trials_per_condition, validate_pipeline

logger = logging.getLogger(__name__)

N_STAGES = 9


class PipelineError(RuntimeError):
    """Raised when a FATAL gate fails."""

    def __init__(self, gate: GateResult):
        super().__init__(f"Gate {gate.gate_id} ({gate.name}) failed: {gate.reason}")
        self.gate = gate


@dataclass
class PipelineResult:
    """Every stage record of one pipeline run."""
    config: PipelineConfig
    table_record: Optional[TrialTableRecord] = None
    outlier_record: Optional[OutlierRecord] = None
    correctness_record: Optional[CorrectnessRecord] = None
    samples: Optional[pd.DataFrame] = None
    time_normalized: Optional[pd.DataFrame] = None
    space_normalized: Optional[pd.DataFrame] = None
    metrics: Optional[pd.DataFrame] = None
    metric_tests: Optional[pd.DataFrame] = None
    anova: Dict[str, pd.DataFrame] = field(default_factory=dict)
    ks: Optional[KSResult] = None
    bimodality: Dict[str, BimodalityResult] = field(default_factory=dict)
    divergence: Optional[DivergenceResult] = None
    null_model: Optional[NullModel] = None
    bootstrap: Optional[BootstrapResult] = None
    validation: Optional[ValidationReport] = None
    skipped_stages: List[str] = field(default_factory=list)


def _banner(verbose: bool, index: int, text: str) -> None:
    if verbose:
        print(f"\n[{index}/{N_STAGES}] {text}")


def run_pipeline(trials_path, config: PipelineConfig = None,
                 participants_path=None, verbose: bool = False) -> PipelineResult:
    """Run the full typical vs atypical analysis on a trial CSV.

    Parameters
    ----------
    trials_path : path-like
        Experiment export, one row per trial.
    config : PipelineConfig, optional
    participants_path : path-like, optional
        Per-submission table joined on the submission id.
    verbose : bool
        Print numbered stage banners and short summaries.

    Returns
    -------
    PipelineResult

    Raises
    ------
    FileNotFoundError
        If an input file is missing.
    PipelineError
        If a FATAL gate fails.
    """
    if config is None:
        config = PipelineConfig()
    c = config.columns
    result = PipelineResult(config=config)
    gates: Dict[str, GateResult] = {}

    def _check(gate_id, value):
        gr = evaluate_gate(gate_id, value, gate_thresholds=config.gate_thresholds)
        gates[gate_id] = gr
        if not gr.passed and gr.failure_behavior == "FATAL":
            raise PipelineError(gr)
        return gr

    # 1. Load
    _banner(verbose, 1, "Loading trials...")
    raw = load_trials(Path(trials_path), c, strict=False)
    _check("D1", {"missing_columns": check_columns(raw, c), "n_trials": len(raw)})
    participants = None
    if participants_path is not None:
        participants = load_participants(Path(participants_path), c)
    if verbose:
        print(f"  {len(raw)} rows"
              + (f", {len(participants)} participants" if participants is not None else ""))

    # 2. Filter / join
    _banner(verbose, 2, "Filtering and joining participants...")
    table = filter_and_join(raw, participants, config.filtering, c)
    result.table_record = table
    _check("D2", float(table.diagnostics["invalid_trace_fraction"]))
    if verbose:
        print(f"  {len(table.trials)} trials from "
              f"{table.diagnostics['n_submissions']} submissions")

    # 3. Outliers
    _banner(verbose, 3, "Rejecting outliers...")
    outliers = reject_outliers(table.trials, config.outliers)
    result.outlier_record = outliers
    _check("D3", float(outliers.removed_fraction))
    if verbose:
        print(f"  removed {len(outliers.removed)} trials "
              f"({100 * outliers.removed_fraction:.1f}%)")

    # 4. Correctness
    _banner(verbose, 4, "Filtering correct responses...")
    correctness = filter_correct(outliers.kept, c)
    result.correctness_record = correctness
    _check("D4", float(correctness.accuracy))
    _check("D5", trials_per_condition(correctness.trials, config.filtering, c))
    if verbose:
        print(f"  accuracy {correctness.accuracy:.3f}, "
              f"{len(correctness.trials)} correct trials")

    # 5. Normalisation
    _banner(verbose, 5, "Normalising trajectories...")
    samples = explode_samples(correctness.trials, config.trajectory, c)
    result.samples = samples
    result.time_normalized = time_normalize(samples, config.time_norm)
    result.space_normalized = space_normalize(samples, config.space_norm)
    if verbose:
        print(f"  {len(samples)} samples -> {config.time_norm.n_steps} time steps, "
              f"{config.space_norm.n_bins} space bins")

    # 6. Metrics
    _banner(verbose, 6, "Computing trajectory metrics...")
    metrics = compute_trial_metrics(samples, correctness.trials, config.trajectory)
    result.metrics = metrics
    n_paired = count_paired_subjects(metrics, config.filtering, c)
    paired_ok = _check("D6", n_paired).passed
    if verbose:
        print(f"  {len(metrics)} trials, {n_paired} paired subjects")

    # 7. Hypothesis tests
    _banner(verbose, 7, "Running hypothesis tests...")
    tests = config.tests
    if not paired_ok:
        result.skipped_stages.append("paired_tests")
    result.metric_tests = compare_metrics(metrics, tests, config.filtering, c,
                                          paired=paired_ok)

    if tests.anova_method == "rm" and not paired_ok:
        logger.warning("Skipping repeated-measures ANOVA: too few paired subjects")
        result.skipped_stages.append("rm_anova")
    else:
        for coord in tests.anova_coords:
            result.anova[coord] = space_anova(result.space_normalized, metrics, coord,
                                              tests.anova_method, config.filtering, c)

    result.ks = ks_compare(metrics, tests.ks_metric, tests.standardize_within_subject,
                           config.filtering, c)
    result.bimodality = bimodality_by_condition(metrics, tests.bimodality_metric,
                                                tests.standardize_within_subject,
                                                config.filtering, c)

    if tests.divergence_unit == "subject" and not paired_ok:
        logger.warning("Skipping subject-level divergence analysis: too few paired subjects")
        result.skipped_stages.append("subject_divergence")
    else:
        result.divergence = divergence_analysis(
            result.time_normalized, metrics, tests.divergence_coord, tests.alpha,
            tests.divergence_unit, config.filtering, c,
        )
    if verbose and result.divergence is not None:
        div = result.divergence
        print(f"  divergence on {div.coord}: longest run {div.longest_run} steps"
              + (f" ({div.run_start}-{div.run_end})" if div.longest_run else ""))

    # 8. Bootstrap
    _banner(verbose, 8, "Simulating divergence null distribution...")
    boot_cfg = config.bootstrap
    if not boot_cfg.enabled:
        logger.info("Bootstrap disabled")
    elif result.divergence is None:
        result.skipped_stages.append("bootstrap")
    else:
        _check("D7", int(boot_cfg.n_simulations))
        result.null_model = fit_null_model(result.time_normalized, metrics,
                                           tests.divergence_coord, tests.divergence_unit,
                                           config.filtering, c)
        result.bootstrap = simulate_run_lengths(result.null_model, boot_cfg)
        compare_observed(result.divergence.longest_run, result.bootstrap)
        if verbose:
            bs = result.bootstrap
            print(f"  critical run length {bs.critical_run_length}, "
                  f"observed {bs.observed_run} (p={bs.observed_p_value:.4f})")

    # 9. Validation
    _banner(verbose, 9, "Validating...")
    result.validation = validate_pipeline(
        table_record=table,
        outlier_record=outliers,
        correctness_record=correctness,
        n_paired_subjects=n_paired,
        bootstrap_config=boot_cfg,
        gate_results=gates,
        gate_thresholds=config.gate_thresholds,
        filter_config=config.filtering,
        columns=c,
        skipped_stages=result.skipped_stages,
    )
    if verbose:
        print(f"  {result.validation.summary}")

    return result
