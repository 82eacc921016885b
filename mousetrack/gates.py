"""
Gate Registry.

Defines the data-quality gates (D1-D7) with their thresholds, failure
behaviours, and evaluation logic.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mousetrack.pipeline_config import GateResult, GateThresholdsConfig

logger = logging.getLogger(__name__)


@dataclass
class GateDef:
    """Definition of a single quality gate."""
    gate_id: str
    name: str
    description: str
    failure_behavior: str       # FATAL / SKIP_STAGE / DEGRADE_CONFIDENCE
    default_threshold: Any      # dict or None


# Gate registry
GATE_DEFS: Dict[str, GateDef] = {
    "D1": GateDef(
        "D1", "Input schema",
        "required columns present and at least one trial loaded",
        "FATAL", None,
    ),
    "D2": GateDef(
        "D2", "Trace integrity",
        "fraction of trials with malformed mouse traces <= 5%",
        "DEGRADE_CONFIDENCE",
        {"max_invalid_fraction": 0.05},
    ),
    "D3": GateDef(
        "D3", "Outlier trimming",
        "fraction of trials removed by z-score trimming <= 10%",
        "DEGRADE_CONFIDENCE",
        {"max_removed_fraction": 0.10},
    ),
    "D4": GateDef(
        "D4", "Response accuracy",
        "overall categorisation accuracy >= 80%",
        "DEGRADE_CONFIDENCE",
        {"min_accuracy": 0.80},
    ),
    "D5": GateDef(
        "D5", "Condition sample size",
        ">= 10 correct trials in each of typical and atypical",
        "FATAL",
        {"min_trials_per_condition": 10},
    ),
    "D6": GateDef(
        "D6", "Paired subjects",
        ">= 3 subjects contributing trials to both conditions",
        "SKIP_STAGE",
        {"min_paired_subjects": 3},
    ),
    "D7": GateDef(
        "D7", "Simulation size",
        "bootstrap n_simulations >= 100",
        "DEGRADE_CONFIDENCE",
        {"min_simulations": 100},
    ),
}


def evaluate_gate(gate_id: str, value: Any,
                  threshold_override: Any = None,
                  gate_thresholds: Optional[GateThresholdsConfig] = None) -> GateResult:
    """Evaluate a gate and return a GateResult.

    Parameters
    ----------
    gate_id : str
        One of D1-D7.
    value : scalar or dict
        The measured value(s).
    threshold_override : optional
        Override the default threshold (takes precedence over *gate_thresholds*).
    gate_thresholds : GateThresholdsConfig, optional
        Consolidated config; used when *threshold_override* is None.

    Returns
    -------
    GateResult
    """
    gate_def = GATE_DEFS[gate_id]
    if threshold_override is not None:
        threshold = threshold_override
    elif gate_thresholds is not None:
        threshold = gate_thresholds.threshold_dict(gate_id)
        if threshold is None:
            threshold = gate_def.default_threshold
    else:
        threshold = gate_def.default_threshold

    passed = True
    reason = ""
    t = threshold if isinstance(threshold, dict) else {}

    if gate_id == "D1":
        # value is dict: {missing_columns: [...], n_trials: int}
        v = value if isinstance(value, dict) else {}
        missing = v.get("missing_columns", [])
        n_trials = v.get("n_trials", 0)
        if missing:
            passed = False
            reason += f"missing columns: {', '.join(missing)}; "
        if n_trials < 1:
            passed = False
            reason += "no trials loaded; "
        if passed:
            reason = f"{n_trials} trials, all required columns present"

    elif gate_id == "D2":
        frac = value if isinstance(value, (int, float)) else 1.0
        limit = t.get("max_invalid_fraction", 0.05)
        if frac > limit:
            passed = False
            reason = f"invalid_fraction={frac:.3f} > {limit}"
        else:
            reason = f"invalid_fraction={frac:.3f}: OK"

    elif gate_id == "D3":
        frac = value if isinstance(value, (int, float)) else 1.0
        limit = t.get("max_removed_fraction", 0.10)
        if frac > limit:
            passed = False
            reason = f"removed_fraction={frac:.3f} > {limit}"
        else:
            reason = f"removed_fraction={frac:.3f}: OK"

    elif gate_id == "D4":
        acc = value if isinstance(value, (int, float)) else 0.0
        limit = t.get("min_accuracy", 0.80)
        if acc < limit:
            passed = False
            reason = f"accuracy={acc:.3f} < {limit}"
        else:
            reason = f"accuracy={acc:.3f}: OK"

    elif gate_id == "D5":
        # value is dict: {condition_label: n_trials}
        v = value if isinstance(value, dict) else {}
        limit = t.get("min_trials_per_condition", 10)
        if not v:
            passed = False
            reason = "no conditions present; "
        for cond, n in sorted(v.items()):
            if n < limit:
                passed = False
                reason += f"{cond}: n={n} < {limit}; "
        if passed:
            reason = ", ".join(f"{c}={n}" for c, n in sorted(v.items())) + ": OK"

    elif gate_id == "D6":
        n_subj = value if isinstance(value, (int, float)) else 0
        limit = t.get("min_paired_subjects", 3)
        if n_subj < limit:
            passed = False
            reason = f"paired_subjects={n_subj} < {limit}"
        else:
            reason = f"paired_subjects={n_subj}: OK"

    elif gate_id == "D7":
        n_sim = value if isinstance(value, (int, float)) else 0
        limit = t.get("min_simulations", 100)
        if n_sim < limit:
            passed = False
            reason = f"n_simulations={n_sim} < {limit}"
        else:
            reason = f"n_simulations={n_sim}: OK"

    result = GateResult(
        gate_id=gate_id,
        name=gate_def.name,
        passed=passed,
        value=value,
        threshold=threshold,
        failure_behavior=gate_def.failure_behavior,
        reason=reason,
    )

    level = logging.INFO if passed else logging.WARNING
    logger.log(level, "Gate %s (%s): %s -- %s",
               gate_id, gate_def.name, "PASS" if passed else "FAIL", reason)

    return result
