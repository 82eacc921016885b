"""
Pipeline Configuration and Parameter Dataclasses.

All parameter dataclasses, stage records, defaults, and serialisation.
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, List, Tuple, Dict, Any

import numpy as np
import pandas as pd


# ======================================================================
# Stage records
# ======================================================================

@dataclass
class TrialTableRecord:
    """Filtered and joined trial table (one row per trial)."""
    trials: pd.DataFrame
    diagnostics: dict = field(default_factory=dict)


@dataclass
class OutlierRecord:
    """Result of iterative z-score trimming."""
    kept: pd.DataFrame
    removed: pd.DataFrame
    n_iterations: int
    diagnostics: dict = field(default_factory=dict)

    @property
    def removed_fraction(self) -> float:
        total = len(self.kept) + len(self.removed)
        return len(self.removed) / total if total else 0.0


@dataclass
class CorrectnessRecord:
    """Correct trials plus accuracy bookkeeping."""
    trials: pd.DataFrame
    accuracy: float
    accuracy_by_condition: Dict[str, float] = field(default_factory=dict)


@dataclass
class TTestResult:
    """A single two-sample or paired comparison."""
    test_name: str
    statistic: float
    p_value: float
    df: float
    n1: int
    n2: int
    effect_size: float = float("nan")       # Cohen's d

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class KSResult:
    """Two-sample Kolmogorov-Smirnov comparison."""
    metric: str
    statistic: float
    p_value: float
    n_typical: int
    n_atypical: int
    standardized: bool


@dataclass
class BimodalityResult:
    """Bimodality coefficient for one sample."""
    coefficient: float
    skewness: float
    kurtosis: float          # excess kurtosis
    n: int
    is_bimodal: bool         # coefficient > 5/9


@dataclass
class DivergenceResult:
    """Per-step condition comparison on time-normalised curves."""
    coord: str
    unit: str                       # 'trial' or 'subject'
    steps: np.ndarray               # 1-based
    t_values: np.ndarray
    p_values: np.ndarray
    significant: np.ndarray         # bool, p < alpha
    alpha: float
    longest_run: int
    run_start: Optional[int] = None     # 1-based step, inclusive
    run_end: Optional[int] = None
    first_significant_step: Optional[int] = None
    n_typical: int = 0
    n_atypical: int = 0

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "step": self.steps,
            "t": self.t_values,
            "p": self.p_values,
            "significant": self.significant,
        })


@dataclass
class NullModel:
    """Parametric null model for divergence run lengths."""
    coord: str
    unit: str                       # 'trial' -> two groups, 'subject' -> paired
    mean: np.ndarray                # (n_steps,)
    cov: np.ndarray                 # (n_steps, n_steps)
    n_typical: int
    n_atypical: int

    @property
    def n_steps(self) -> int:
        return int(self.mean.shape[0])


@dataclass
class BootstrapResult:
    """Null distribution of longest significant runs."""
    run_lengths: np.ndarray         # (n_simulations,) int
    critical_run_length: int
    alpha: float
    run_quantile: float
    n_simulations: int
    seed: Optional[int]
    diagnostics: dict = field(default_factory=dict)
    observed_run: Optional[int] = None
    observed_p_value: Optional[float] = None


# ======================================================================
# Gates
# ======================================================================

@dataclass
class GateResult:
    """Result of evaluating a single gate."""
    gate_id: str
    name: str
    passed: bool
    value: Any = None
    threshold: Any = None
    failure_behavior: str = "FATAL"
    reason: str = ""


@dataclass
class ValidationReport:
    """Full pipeline validation report."""
    gates: Dict[str, GateResult]
    overall_pass: bool
    diagnostics: dict = field(default_factory=dict)
    summary: str = ""
    timestamp: str = ""


# ======================================================================
# Configuration dataclasses
# ======================================================================

@dataclass
class ColumnConfig:
    """Column names of the experiment-logging CSV export."""
    submission_id: str = "submission_id"
    trial_name: str = "trial_name"
    trial_number: str = "trial_number"
    answer: str = "answer"
    correct_category: str = "correct_category"
    category_left: str = "category_left"
    category_right: str = "category_right"
    trial_type: str = "trial_type"
    animal: str = "animal"
    handedness: str = "handedness"
    times: str = "mousetracking_time"
    x: str = "mousetracking_x"
    y: str = "mousetracking_y"
    sequence_delimiter: str = "|"

    def required(self) -> List[str]:
        return [self.submission_id, self.answer, self.correct_category,
                self.category_left, self.category_right, self.trial_type,
                self.times, self.x, self.y]


@dataclass
class FilterConfig:
    """Trial filtering and participant join."""
    include_trial_names: Tuple[str, ...] = ("main",)
    typical_label: str = "typical"
    atypical_label: str = "atypical"
    drop_invalid_traces: bool = True
    handedness: Optional[Tuple[str, ...]] = None    # None = keep all


@dataclass
class OutlierConfig:
    """Iterative z-score trimming."""
    enabled: bool = True
    column: str = "total_rt"
    z_threshold: float = 3.0
    group_by: Optional[str] = None          # e.g. 'submission_id'
    max_iterations: int = 100


@dataclass
class TrajectoryConfig:
    """Sample transformation and metric thresholds."""
    center_on_start: bool = True
    flip_y: bool = True
    mirror_left: bool = True
    move_threshold_px: float = 0.0
    angle_min_distance_px: float = 5.0


@dataclass
class TimeNormConfig:
    """Time normalisation."""
    n_steps: int = 101


@dataclass
class SpaceNormConfig:
    """Space normalisation."""
    n_bins: int = 3
    bin_ms: float = 500.0


@dataclass
class StatTestsConfig:
    """Hypothesis test battery."""
    alpha: float = 0.05
    metrics: Tuple[str, ...] = (
        "movement_init", "movement_duration", "total_rt", "initial_angle",
        "distance_travelled", "auc", "max_deviation", "x_flips",
    )
    correction: str = "holm"                # statsmodels multipletests method
    anova_method: str = "rm"                # rm | ols
    anova_coords: Tuple[str, ...] = ("x", "y")
    ks_metric: str = "auc"
    bimodality_metric: str = "auc"
    standardize_within_subject: bool = True
    divergence_coord: str = "x"
    divergence_unit: str = "trial"          # trial | subject


@dataclass
class BootstrapConfig:
    """Divergence run-length simulation."""
    enabled: bool = True
    n_simulations: int = 1000
    alpha: float = 0.05
    run_quantile: float = 0.95
    batch_size: int = 100
    n_workers: int = 0                      # 0 = min(4, cpu_count), 1 = sequential
    seed: Optional[int] = 42
    log_interval_s: float = 5.0


@dataclass
class GateThresholdsConfig:
    """Thresholds for data-quality gates D2-D7."""
    d2_max_invalid_fraction: float = 0.05
    d3_max_removed_fraction: float = 0.10
    d4_min_accuracy: float = 0.80
    d5_min_trials_per_condition: int = 10
    d6_min_paired_subjects: int = 3
    d7_min_simulations: int = 100

    def threshold_dict(self, gate_id: str) -> Optional[dict]:
        """Return the threshold dict expected by ``evaluate_gate``."""
        return {
            "D2": {"max_invalid_fraction": self.d2_max_invalid_fraction},
            "D3": {"max_removed_fraction": self.d3_max_removed_fraction},
            "D4": {"min_accuracy": self.d4_min_accuracy},
            "D5": {"min_trials_per_condition": self.d5_min_trials_per_condition},
            "D6": {"min_paired_subjects": self.d6_min_paired_subjects},
            "D7": {"min_simulations": self.d7_min_simulations},
        }.get(gate_id)


@dataclass
class PipelineConfig:
    """Top-level pipeline configuration."""
    columns: ColumnConfig = field(default_factory=ColumnConfig)
    filtering: FilterConfig = field(default_factory=FilterConfig)
    outliers: OutlierConfig = field(default_factory=OutlierConfig)
    trajectory: TrajectoryConfig = field(default_factory=TrajectoryConfig)
    time_norm: TimeNormConfig = field(default_factory=TimeNormConfig)
    space_norm: SpaceNormConfig = field(default_factory=SpaceNormConfig)
    tests: StatTestsConfig = field(default_factory=StatTestsConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)
    gate_thresholds: GateThresholdsConfig = field(default_factory=GateThresholdsConfig)

    def to_dict(self) -> dict:
        """Serialise to a JSON-safe dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "PipelineConfig":
        """Create from a nested dict (e.g. a JSON config file).

        Unknown keys are ignored; lists are converted to tuples where the
        default is a tuple.
        """
        cfg = cls()
        _mapping = {
            "columns": ColumnConfig,
            "filtering": FilterConfig,
            "outliers": OutlierConfig,
            "trajectory": TrajectoryConfig,
            "time_norm": TimeNormConfig,
            "space_norm": SpaceNormConfig,
            "tests": StatTestsConfig,
            "bootstrap": BootstrapConfig,
            "gate_thresholds": GateThresholdsConfig,
        }
        for key, klass in _mapping.items():
            if key in d and isinstance(d[key], dict):
                sub = klass()
                for k, v in d[key].items():
                    if hasattr(sub, k):
                        if isinstance(v, list):
                            v = tuple(v)
                        setattr(sub, k, v)
                setattr(cfg, key, sub)
        return cfg


def load_config(path) -> PipelineConfig:
    """Load a PipelineConfig from a JSON file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return PipelineConfig.from_dict(json.load(f))
