"""Trial CSV loading, trace parsing, and the filter/join stage."""

import logging
import re
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from mousetrack.pipeline_config import (
    ColumnConfig, FilterConfig, TrialTableRecord,
)

logger = logging.getLogger(__name__)

_BRACKETS = re.compile(r"^[\[\(]|[\]\)]$")


def parse_sequence(value, delimiter: str = "|") -> np.ndarray:
    """Parse one logged trace cell into a float array.

    Accepts delimited strings (``"0|16|33"``), bracketed lists
    (``"[0, 16, 33]"``), sequences, or empty/NaN cells (empty array).
    """
    if value is None:
        return np.empty(0, dtype=np.float64)
    if isinstance(value, (list, tuple, np.ndarray)):
        return np.asarray(value, dtype=np.float64)
    if isinstance(value, float) and np.isnan(value):
        return np.empty(0, dtype=np.float64)

    text = _BRACKETS.sub("", str(value).strip()).strip()
    if not text:
        return np.empty(0, dtype=np.float64)

    # Bracketed exports use commas regardless of the configured delimiter
    sep = delimiter if delimiter in text else ","
    tokens = [tok.strip() for tok in text.split(sep)]
    try:
        return np.array([float(tok) for tok in tokens if tok], dtype=np.float64)
    except ValueError as e:
        raise ValueError(f"Malformed trace value {text[:40]!r}: {e}") from e


def check_columns(df: pd.DataFrame, columns: ColumnConfig = None) -> list:
    """Return required columns missing from *df*."""
    if columns is None:
        columns = ColumnConfig()
    return [c for c in columns.required() if c not in df.columns]


def _parse_column(values: pd.Series, delimiter: str, strict: bool) -> list:
    """Parse a trace column; in non-strict mode malformed cells become empty."""
    parsed = []
    n_malformed = 0
    for v in values:
        try:
            parsed.append(parse_sequence(v, delimiter))
        except ValueError as e:
            if strict:
                raise
            logger.debug("Column %s: %s", values.name, e)
            parsed.append(np.empty(0, dtype=np.float64))
            n_malformed += 1
    if n_malformed:
        logger.warning("Column %s: %d malformed trace cells treated as empty",
                       values.name, n_malformed)
    return parsed


def load_trials(path, columns: ColumnConfig = None,
                strict: bool = True) -> pd.DataFrame:
    """Load the experiment CSV and parse its trace columns.

    With ``strict=False`` missing required columns are only logged, so the
    caller can report them through the input-schema gate, and malformed
    trace cells parse to empty arrays that the filter stage counts as
    invalid traces.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If required columns are missing or a trace is malformed (strict mode).
    """
    if columns is None:
        columns = ColumnConfig()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Trial file not found: {path}")

    df = pd.read_csv(path)
    logger.info("Loaded %d rows from %s", len(df), path.name)

    missing = check_columns(df, columns)
    if missing:
        msg = (f"Trial file {path.name} is missing required columns: "
               f"{', '.join(missing)}")
        if strict:
            raise ValueError(msg)
        logger.error(msg)

    for col in (columns.times, columns.x, columns.y):
        if col in df.columns:
            df[col] = _parse_column(df[col], columns.sequence_delimiter, strict)
    return df


def load_participants(path, columns: ColumnConfig = None) -> pd.DataFrame:
    """Load a per-submission table (e.g. post-test questionnaire).

    Duplicated submissions keep their last row.
    """
    if columns is None:
        columns = ColumnConfig()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Participant file not found: {path}")
    df = pd.read_csv(path)
    if columns.submission_id not in df.columns:
        raise ValueError(f"Participant file {path.name} has no "
                         f"'{columns.submission_id}' column")
    n_before = len(df)
    df = df.drop_duplicates(subset=columns.submission_id, keep="last")
    if len(df) < n_before:
        logger.warning("Dropped %d duplicated participant rows", n_before - len(df))
    return df.reset_index(drop=True)


def trace_is_valid(times: np.ndarray, x: np.ndarray, y: np.ndarray) -> bool:
    """Non-empty, equal-length, finite traces with non-decreasing times."""
    if len(times) == 0 or not (len(times) == len(x) == len(y)):
        return False
    if not (np.all(np.isfinite(times)) and np.all(np.isfinite(x))
            and np.all(np.isfinite(y))):
        return False
    return bool(np.all(np.diff(times) >= 0))


def filter_and_join(trials: pd.DataFrame,
                    participants: Optional[pd.DataFrame] = None,
                    filter_config: FilterConfig = None,
                    columns: ColumnConfig = None) -> TrialTableRecord:
    """Filter the raw trial table and join participant attributes.

    Adds ``trial_id``, ``response_side``, ``correct`` and ``total_rt``.
    """
    if filter_config is None:
        filter_config = FilterConfig()
    if columns is None:
        columns = ColumnConfig()
    c = columns

    df = trials.copy()
    diagnostics = {"n_input": len(df)}

    # Practice / main phase
    if c.trial_name in df.columns and filter_config.include_trial_names:
        keep = df[c.trial_name].isin(filter_config.include_trial_names)
        diagnostics["n_dropped_trial_name"] = int((~keep).sum())
        df = df[keep]

    conditions = (filter_config.typical_label, filter_config.atypical_label)
    keep = df[c.trial_type].isin(conditions)
    diagnostics["n_dropped_condition"] = int((~keep).sum())
    df = df[keep]

    # Trace integrity
    valid = np.array([
        trace_is_valid(t, x, y)
        for t, x, y in zip(df[c.times], df[c.x], df[c.y])
    ], dtype=bool)
    n_invalid = int((~valid).sum())
    diagnostics["n_invalid_traces"] = n_invalid
    diagnostics["invalid_trace_fraction"] = n_invalid / len(df) if len(df) else 0.0
    if n_invalid:
        logger.warning("%d of %d trials have malformed mouse traces",
                       n_invalid, len(df))
    if filter_config.drop_invalid_traces:
        df = df[valid]

    # Participant join
    if participants is not None:
        extra = [col for col in participants.columns
                 if col == c.submission_id or col not in df.columns or col == c.handedness]
        right = participants[extra]
        if c.handedness in right.columns and c.handedness in df.columns:
            right = right.rename(columns={c.handedness: "_participant_handedness"})
        df = df.merge(right, on=c.submission_id, how="left", validate="many_to_one")
        if "_participant_handedness" in df.columns:
            df[c.handedness] = df[c.handedness].fillna(df["_participant_handedness"])
            df = df.drop(columns="_participant_handedness")
        diagnostics["n_joined_participants"] = int(participants[c.submission_id]
                                                   .isin(df[c.submission_id]).sum())

    if filter_config.handedness is not None:
        if c.handedness not in df.columns:
            raise ValueError(f"Handedness filter requested but no "
                             f"'{c.handedness}' column is available")
        keep = df[c.handedness].isin(filter_config.handedness)
        diagnostics["n_dropped_handedness"] = int((~keep).sum())
        df = df[keep]

    # Response direction
    side = np.where(df[c.answer] == df[c.category_left], "left",
                    np.where(df[c.answer] == df[c.category_right], "right", ""))
    df = df.assign(response_side=side)
    unmatched = df["response_side"] == ""
    diagnostics["n_dropped_unmatched_answer"] = int(unmatched.sum())
    if unmatched.any():
        logger.warning("%d trials answer neither the left nor the right category",
                       int(unmatched.sum()))
    df = df[~unmatched]

    df = df.assign(
        correct=(df[c.answer] == df[c.correct_category]).to_numpy(),
        total_rt=[float(t[-1] - t[0]) if len(t) else np.nan for t in df[c.times]],
    )
    df = df.reset_index(drop=True)
    df.insert(0, "trial_id", np.arange(len(df), dtype=np.int64))

    diagnostics["n_output"] = len(df)
    diagnostics["n_submissions"] = int(df[c.submission_id].nunique())
    logger.info("Filter/join: %d -> %d trials from %d submissions",
                diagnostics["n_input"], len(df), diagnostics["n_submissions"])

    return TrialTableRecord(trials=df, diagnostics=diagnostics)
