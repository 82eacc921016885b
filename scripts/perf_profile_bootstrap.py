#!/usr/bin/env python3
"""
Performance profiling for the divergence run-length bootstrap.

Builds a synthetic null model representative of a full experiment
(hundreds of trials per condition, 101 time steps), times
simulate_run_lengths for several worker counts, and saves results to
artifacts/perf/.

Usage:
    python3 scripts/perf_profile_bootstrap.py [--tag baseline|after]
"""
import argparse
import json
import os
import sys
import time

import numpy as np
import psutil

# Ensure project root on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mousetrack.pipeline_config import BootstrapConfig, NullModel
from mousetrack.divergence_bootstrap import simulate_run_lengths


# ---------------------------------------------------------------------------
# Synthetic workload generator
# ---------------------------------------------------------------------------

def make_null_model(n_typical=400, n_atypical=200, n_steps=101,
                    length_scale=10.0, unit="trial"):
    """Smooth (squared-exponential) covariance over time steps."""
    steps = np.arange(n_steps, dtype=np.float64)
    cov = 400.0 * np.exp(-0.5 * (steps[:, None] - steps[None, :]) ** 2 / length_scale ** 2)
    cov += 1e-6 * np.eye(n_steps)
    mean = np.linspace(0.0, 300.0, n_steps)
    if unit == "subject":
        mean = np.zeros(n_steps)
        n_atypical = n_typical
    return NullModel(coord="x", unit=unit, mean=mean, cov=cov,
                     n_typical=n_typical, n_atypical=n_atypical)


# ---------------------------------------------------------------------------
# Profiling harness
# ---------------------------------------------------------------------------

def profile_bootstrap(n_simulations=1000, batch_size=100, workers=(1, 2, 4),
                      unit="trial"):
    """Run the simulation for each worker count, collect timing stats."""
    model = make_null_model(unit=unit)
    print(f"Null model: {unit} unit, n={model.n_typical}/{model.n_atypical}, "
          f"{model.n_steps} steps")

    process = psutil.Process()
    runs = []
    reference = None
    for n_workers in workers:
        cfg = BootstrapConfig(n_simulations=n_simulations, batch_size=batch_size,
                              n_workers=n_workers, seed=42, log_interval_s=1e9)
        rss_before = process.memory_info().rss
        t0 = time.perf_counter()
        res = simulate_run_lengths(model, cfg)
        dt = time.perf_counter() - t0
        if reference is None:
            reference = res.run_lengths
        runs.append({
            "n_workers": n_workers,
            "total_time_s": round(dt, 3),
            "sims_per_sec": round(n_simulations / dt, 2),
            "rss_delta_mb": round((process.memory_info().rss - rss_before) / 1024**2, 1),
            "critical_run_length": res.critical_run_length,
            "matches_sequential": bool(np.array_equal(reference, res.run_lengths)),
        })
        print(f"  workers={n_workers}: {dt:.2f} s")

    return {
        "n_simulations": n_simulations,
        "batch_size": batch_size,
        "unit": unit,
        "n_typical": model.n_typical,
        "n_atypical": model.n_atypical,
        "n_steps": model.n_steps,
        "runs": runs,
    }


def format_results(results):
    """Format results as human-readable text."""
    lines = [
        "=" * 60,
        "Bootstrap Performance Profile",
        "=" * 60,
        f"Simulations:     {results['n_simulations']} (batch {results['batch_size']})",
        f"Null model:      {results['unit']} unit, n={results['n_typical']}/"
        f"{results['n_atypical']}, {results['n_steps']} steps",
        "",
    ]
    for r in results["runs"]:
        lines.append(
            f"workers={r['n_workers']}: {r['total_time_s']:.3f} s, "
            f"{r['sims_per_sec']:.1f} sims/s, RSS +{r['rss_delta_mb']:.0f} MB, "
            f"critical={r['critical_run_length']}, "
            f"identical={r['matches_sequential']}"
        )
    lines.append("=" * 60)
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--tag", default="baseline",
                        help="Tag for output files (baseline or after)")
    parser.add_argument("--simulations", type=int, default=1000)
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--unit", choices=["trial", "subject"], default="trial")
    args = parser.parse_args()

    results = profile_bootstrap(n_simulations=args.simulations,
                                batch_size=args.batch_size, unit=args.unit)

    out_dir = os.path.join(os.path.dirname(os.path.dirname(
        os.path.abspath(__file__))), "artifacts", "perf")
    os.makedirs(out_dir, exist_ok=True)

    json_path = os.path.join(out_dir, f"bootstrap_{args.tag}.json")
    with open(json_path, "w") as f:
        json.dump(results, f, indent=2)

    text = format_results(results)
    txt_path = os.path.join(out_dir, f"bootstrap_{args.tag}.txt")
    with open(txt_path, "w") as f:
        f.write(text + "\n")

    print(text)
    print(f"\nSaved: {json_path}")
    print(f"Saved: {txt_path}")


if __name__ == "__main__":
    main()
