"""
Unified Pipeline Validation.

Evaluates the data-quality gates D1-D7 from the stage records and produces a
structured ValidationReport. Collects diagnostics: invalid-trace fraction,
removed fraction, accuracy per condition, trials per condition, paired
subject count, simulation size.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from mousetrack.pipeline_config import (
    ValidationReport, GateResult, GateThresholdsConfig,
    TrialTableRecord, OutlierRecord, CorrectnessRecord,
    BootstrapConfig, FilterConfig, ColumnConfig,
)
from mousetrack.gates import evaluate_gate

logger = logging.getLogger(__name__)


def trials_per_condition(trials, filter_config: FilterConfig = None,
                         columns: ColumnConfig = None) -> Dict[str, int]:
    """Trial counts for the two configured conditions (missing ones count 0)."""
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    counts = trials[columns.trial_type].value_counts()
    return {label: int(counts.get(label, 0))
            for label in (filter_config.typical_label, filter_config.atypical_label)}


def validate_pipeline(
    *,
    table_record: Optional[TrialTableRecord] = None,
    outlier_record: Optional[OutlierRecord] = None,
    correctness_record: Optional[CorrectnessRecord] = None,
    n_paired_subjects: Optional[int] = None,
    bootstrap_config: Optional[BootstrapConfig] = None,
    gate_results: Optional[Dict[str, GateResult]] = None,
    gate_thresholds: Optional[GateThresholdsConfig] = None,
    filter_config: Optional[FilterConfig] = None,
    columns: Optional[ColumnConfig] = None,
    skipped_stages: Optional[List[str]] = None,
) -> ValidationReport:
    """Evaluate all gates and produce a unified ValidationReport.

    Parameters
    ----------
    gate_results : dict
        Pre-computed GateResults keyed by gate ID (D1-D7).
        Gates not in this dict are evaluated from available data.
    skipped_stages : list of str, optional
        Pipeline stages that did not run; D7 is not evaluated when the
        bootstrap was skipped.
    Other parameters provide the stage records for evaluation and diagnostics.

    Returns
    -------
    ValidationReport
    """
    if gate_results is None:
        gate_results = {}

    gates: Dict[str, GateResult] = dict(gate_results)
    diagnostics: Dict[str, Any] = {}

    # --- D1: Input schema (evaluated at load time) ---
    if "D1" not in gates:
        gates["D1"] = GateResult(
            gate_id="D1", name="Input schema",
            passed=True, value=None,
            threshold=None, failure_behavior="FATAL",
            reason="assumed valid (not re-evaluated)",
        )

    # --- D2: Trace integrity ---
    if table_record is not None:
        frac = float(table_record.diagnostics.get("invalid_trace_fraction", 0.0))
        diagnostics["invalid_trace_fraction"] = frac
        diagnostics["n_trials_filtered"] = len(table_record.trials)
        if "D2" not in gates:
            gates["D2"] = evaluate_gate("D2", frac, gate_thresholds=gate_thresholds)

    # --- D3: Outlier trimming ---
    if outlier_record is not None:
        frac = float(outlier_record.removed_fraction)
        diagnostics["removed_fraction"] = frac
        diagnostics["outlier_passes"] = outlier_record.n_iterations
        if "D3" not in gates:
            gates["D3"] = evaluate_gate("D3", frac, gate_thresholds=gate_thresholds)

    # --- D4, D5: Accuracy and condition sample size ---
    if correctness_record is not None:
        diagnostics["accuracy"] = correctness_record.accuracy
        diagnostics["accuracy_by_condition"] = dict(correctness_record.accuracy_by_condition)
        if "D4" not in gates:
            gates["D4"] = evaluate_gate("D4", float(correctness_record.accuracy),
                                        gate_thresholds=gate_thresholds)
        counts = trials_per_condition(correctness_record.trials, filter_config, columns)
        diagnostics["trials_per_condition"] = counts
        if "D5" not in gates:
            gates["D5"] = evaluate_gate("D5", counts, gate_thresholds=gate_thresholds)

    # --- D6: Paired subjects ---
    if n_paired_subjects is not None:
        diagnostics["n_paired_subjects"] = int(n_paired_subjects)
        if "D6" not in gates:
            gates["D6"] = evaluate_gate("D6", int(n_paired_subjects),
                                        gate_thresholds=gate_thresholds)

    # --- D7: Simulation size ---
    bootstrap_skipped = "bootstrap" in (skipped_stages or ())
    if bootstrap_config is not None and bootstrap_config.enabled and not bootstrap_skipped:
        diagnostics["n_simulations"] = int(bootstrap_config.n_simulations)
        if "D7" not in gates:
            gates["D7"] = evaluate_gate("D7", int(bootstrap_config.n_simulations),
                                        gate_thresholds=gate_thresholds)

    # --- Overall pass/fail ---
    # FATAL gates must pass. Others contribute to confidence.
    overall_pass = True
    fatal_failures = []
    degraded = []
    skipped_gates = []

    for gid in sorted(gates):
        gr = gates[gid]
        if not gr.passed:
            if gr.failure_behavior == "FATAL":
                overall_pass = False
                fatal_failures.append(gid)
            elif gr.failure_behavior == "SKIP_STAGE":
                skipped_gates.append(gid)
            elif gr.failure_behavior == "DEGRADE_CONFIDENCE":
                degraded.append(gid)

    parts = []
    if overall_pass:
        parts.append("Pipeline PASSED")
    else:
        parts.append(f"Pipeline FAILED (fatal: {', '.join(fatal_failures)})")
    if degraded:
        parts.append(f"degraded: {', '.join(degraded)}")
    if skipped_gates:
        parts.append(f"skipped: {', '.join(skipped_gates)}")
    n_passed = sum(1 for g in gates.values() if g.passed)
    parts.append(f"{n_passed}/{len(gates)} gates passed")
    summary = "; ".join(parts)

    diagnostics["confidence"] = "degraded" if degraded else "normal"

    report = ValidationReport(
        gates=gates,
        overall_pass=overall_pass,
        diagnostics=diagnostics,
        summary=summary,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    logger.info("Validation: %s", summary)
    return report
