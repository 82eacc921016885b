"""
Pipeline Reporting and Artifact Output.

parameters.json with the resolved configuration, gates and diagnostics.
report.json with the test results.
CSV tables for metrics, normalised trajectories and test outputs.
"""

import json
import logging
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Optional, Dict, Any

import numpy as np
import pandas as pd

from mousetrack.pipeline_config import PipelineConfig, ValidationReport

logger = logging.getLogger(__name__)

PARAMETERS_VERSION = "1.0"


# ======================================================================
# JSON serialisation helpers
# ======================================================================

def _make_serialisable(obj: Any) -> Any:
    """Convert an object to a JSON-serialisable form.

    Non-finite floats become None so the output stays strict JSON.
    """
    if obj is None:
        return None
    if isinstance(obj, (bool, np.bool_)):
        return bool(obj)
    if isinstance(obj, (int, np.integer)):
        return int(obj)
    if isinstance(obj, (float, np.floating)):
        v = float(obj)
        return v if np.isfinite(v) else None
    if isinstance(obj, str):
        return obj
    if isinstance(obj, np.ndarray):
        return [_make_serialisable(v) for v in obj.tolist()]
    if isinstance(obj, pd.DataFrame):
        return [_make_serialisable(r) for r in obj.to_dict(orient="records")]
    if isinstance(obj, dict):
        return {str(k): _make_serialisable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_make_serialisable(v) for v in obj]
    if is_dataclass(obj) and not isinstance(obj, type):
        return {k: _make_serialisable(v) for k, v in asdict(obj).items()}
    return str(obj)


# ======================================================================
# parameters.json
# ======================================================================

def build_parameters(*, config: PipelineConfig, result=None,
                     validation_report: Optional[ValidationReport] = None,
                     extra: Optional[Dict[str, Any]] = None) -> dict:
    """Build the parameters.json dict.

    All values are JSON-serialisable.
    """
    params: Dict[str, Any] = {
        "version": PARAMETERS_VERSION,
        "config": _make_serialisable(config.to_dict()),
    }

    if result is not None:
        stages: Dict[str, Any] = {}
        if result.table_record is not None:
            stages["filter_join"] = _make_serialisable(result.table_record.diagnostics)
        if result.outlier_record is not None:
            stages["outliers"] = _make_serialisable({
                **result.outlier_record.diagnostics,
                "n_iterations": result.outlier_record.n_iterations,
                "removed_fraction": result.outlier_record.removed_fraction,
            })
        if result.correctness_record is not None:
            stages["correctness"] = {
                "accuracy": _make_serialisable(result.correctness_record.accuracy),
                "accuracy_by_condition": _make_serialisable(
                    result.correctness_record.accuracy_by_condition),
                "n_correct": len(result.correctness_record.trials),
            }
        if result.bootstrap is not None:
            stages["bootstrap"] = _make_serialisable(result.bootstrap.diagnostics)
        params["stages"] = stages
        params["skipped_stages"] = list(result.skipped_stages)

    if validation_report is not None:
        gates_section = {}
        for gid, gr in sorted(validation_report.gates.items()):
            gates_section[gid] = {
                "passed": gr.passed,
                "value": _make_serialisable(gr.value),
                "behavior": gr.failure_behavior,
                "reason": gr.reason,
            }
        params["gates"] = gates_section
        if validation_report.diagnostics:
            params["diagnostics"] = _make_serialisable(validation_report.diagnostics)

    if extra:
        for k, v in extra.items():
            if k not in params:
                params[k] = _make_serialisable(v)

    return _make_serialisable(params)


# ======================================================================
# report.json
# ======================================================================

def build_report(result) -> dict:
    """Build report.json from a PipelineResult."""
    report: Dict[str, Any] = {}

    vr = result.validation
    if vr is not None:
        report["overall_pass"] = vr.overall_pass
        report["summary"] = vr.summary
        report["timestamp"] = vr.timestamp
        report["gates"] = {
            gid: {
                "name": gr.name,
                "passed": gr.passed,
                "value": _make_serialisable(gr.value),
                "threshold": _make_serialisable(gr.threshold),
                "failure_behavior": gr.failure_behavior,
                "reason": gr.reason,
            }
            for gid, gr in sorted(vr.gates.items())
        }

    if result.metric_tests is not None:
        report["metric_tests"] = _make_serialisable(result.metric_tests)
    if result.anova:
        report["anova"] = {coord: _make_serialisable(tbl)
                           for coord, tbl in result.anova.items()}
    if result.ks is not None:
        report["ks"] = _make_serialisable(result.ks)
    if result.bimodality:
        report["bimodality"] = _make_serialisable(result.bimodality)

    div = result.divergence
    if div is not None:
        report["divergence"] = {
            "coord": div.coord,
            "unit": div.unit,
            "alpha": div.alpha,
            "n_significant_steps": int(np.sum(div.significant)),
            "longest_run": div.longest_run,
            "run_start": div.run_start,
            "run_end": div.run_end,
            "first_significant_step": div.first_significant_step,
            "n_typical": div.n_typical,
            "n_atypical": div.n_atypical,
        }

    bs = result.bootstrap
    if bs is not None:
        report["bootstrap"] = {
            "n_simulations": bs.n_simulations,
            "seed": bs.seed,
            "alpha": bs.alpha,
            "run_quantile": bs.run_quantile,
            "critical_run_length": bs.critical_run_length,
            "observed_run": bs.observed_run,
            "observed_p_value": _make_serialisable(bs.observed_p_value),
            "mean_run_length": _make_serialisable(float(np.mean(bs.run_lengths))),
        }

    report["skipped_stages"] = list(result.skipped_stages)
    return _make_serialisable(report)


# ======================================================================
# Artifact saving
# ======================================================================

def save_json(data: dict, path: Path) -> None:
    """Save a dict as JSON with consistent formatting."""
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    logger.info("Saved %s", path)


def save_csv(df: pd.DataFrame, path: Path) -> None:
    """Save a table as CSV without the index."""
    df.to_csv(path, index=False)
    logger.info("Saved %s", path)


def save_pipeline_artifacts(result, output_dir: Path,
                            config: Optional[PipelineConfig] = None,
                            extra_params: Optional[Dict[str, Any]] = None) -> Dict[str, Path]:
    """Save all pipeline artifacts to output directory.

    Returns dict mapping artifact name -> file path.
    """
    if config is None:
        config = result.config
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    saved: Dict[str, Path] = {}

    # --- parameters.json ---
    params_path = output_dir / "parameters.json"
    save_json(build_parameters(config=config, result=result,
                               validation_report=result.validation,
                               extra=extra_params), params_path)
    saved["parameters.json"] = params_path

    # --- report.json ---
    report_path = output_dir / "report.json"
    save_json(build_report(result), report_path)
    saved["report.json"] = report_path

    # --- tables ---
    tables = {
        "trial_metrics.csv": result.metrics,
        "time_normalized.csv": result.time_normalized,
        "space_normalized.csv": result.space_normalized,
        "metric_tests.csv": result.metric_tests,
    }
    for coord, tbl in result.anova.items():
        tables[f"anova_{coord}.csv"] = tbl
    if result.divergence is not None:
        tables["divergence.csv"] = result.divergence.to_frame()
    if result.bootstrap is not None:
        tables["bootstrap_run_lengths.csv"] = pd.DataFrame({
            "simulation": np.arange(len(result.bootstrap.run_lengths)),
            "run_length": result.bootstrap.run_lengths,
        })

    for name, df in tables.items():
        if df is None:
            continue
        path = output_dir / name
        save_csv(df, path)
        saved[name] = path

    logger.info("Saved %d artifacts to %s", len(saved), output_dir)
    return saved
