#!/usr/bin/env python3
"""
Mouse-Tracking Typicality Analysis - Automated Pipeline Script

Usage:
    python analyze.py <trials.csv> [options]
    python analyze.py --help

This script automates the entire analysis pipeline:
1. Load the experiment export (and optional participant table)
2. Filter trials and join participant attributes
3. Reject reaction-time outliers and incorrect responses
4. Time- and space-normalise the trajectories
5. Compute per-trial kinematic metrics
6. Compare typical vs atypical trials (t-tests, ANOVA, KS, bimodality,
   divergence runs)
7. Simulate the null distribution of divergence run lengths
8. Write JSON/CSV artifacts
"""

import argparse
import logging
import sys
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mouse-Tracking Typicality Analysis - Automated Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Default settings
  python analyze.py trials.csv

  # Join a questionnaire table and use a config file
  python analyze.py trials.csv --participants posttest.csv --config analysis.json

  # Faster run without the bootstrap
  python analyze.py trials.csv --no-bootstrap -o results/pilot
        """
    )

    parser.add_argument('input', type=str, help='Trial CSV exported by the experiment')
    parser.add_argument('--participants', type=str,
                        help='Per-submission CSV joined on the submission id')
    parser.add_argument('--config', type=str,
                        help='JSON file overriding any subset of the configuration')
    parser.add_argument('-o', '--output', type=str, default='outputs',
                        help='Output directory (default: outputs/<input_filename>)')
    parser.add_argument('--n-simulations', type=int, dest='n_simulations',
                        help='Number of bootstrap simulations (default: 1000)')
    parser.add_argument('--workers', type=int,
                        help='Bootstrap worker threads (0 = auto, 1 = sequential)')
    parser.add_argument('--seed', type=int,
                        help='Bootstrap random seed (default: 42)')
    parser.add_argument('--no-bootstrap', action='store_true',
                        help='Skip the divergence run-length simulation')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Verbose output')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(levelname)s: %(name)s: %(message)s',
    )

    # Check input files
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: Input file not found: {input_path}")
        return 1
    if args.participants and not Path(args.participants).exists():
        print(f"Error: Participant file not found: {args.participants}")
        return 1

    if args.output == 'outputs':
        output_dir = Path('outputs') / input_path.stem
    else:
        output_dir = Path(args.output)

    # Import modules (delayed to show help faster)
    from mousetrack.pipeline_config import PipelineConfig, load_config
    from mousetrack.pipeline import PipelineError, run_pipeline
    from mousetrack.reporting import save_pipeline_artifacts

    if args.config:
        try:
            config = load_config(args.config)
        except FileNotFoundError as e:
            print(f"Error: {e}")
            return 1
    else:
        config = PipelineConfig()

    if args.n_simulations is not None:
        config.bootstrap.n_simulations = args.n_simulations
    if args.workers is not None:
        config.bootstrap.n_workers = args.workers
    if args.seed is not None:
        config.bootstrap.seed = args.seed
    if args.no_bootstrap:
        config.bootstrap.enabled = False

    print("\n" + "=" * 60)
    print("MOUSE-TRACKING TYPICALITY ANALYSIS")
    print("=" * 60)
    print(f"Input: {input_path}")
    if args.participants:
        print(f"Participants: {args.participants}")
    print(f"Output: {output_dir}/")

    try:
        result = run_pipeline(input_path, config,
                              participants_path=args.participants, verbose=True)
    except PipelineError as e:
        print()
        print(f"Error: {e}")
        print("=" * 60)
        print("ANALYSIS FAILED")
        print("=" * 60)
        return 1

    print("\nSaving artifacts...")
    saved = save_pipeline_artifacts(result, output_dir, config)

    print()
    print("Output files:")
    for name in sorted(saved):
        print(f"  - {name}")
    if result.skipped_stages:
        print(f"Skipped: {', '.join(result.skipped_stages)}")
    print()
    print("=" * 60)
    print("ANALYSIS COMPLETE")
    print("=" * 60)

    return 0


if __name__ == '__main__':
    sys.exit(main())
