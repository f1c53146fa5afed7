#!/usr/bin/env python3
"""
Main Pipeline for Anchor-based Dataset Integration
Executes residual computation and integration on a combined count matrix
"""

import subprocess
import sys
from pathlib import Path
import argparse

sys.path.insert(0, str(Path(__file__).parent / "src"))
from anchor_integration.config.settings import get_settings


def run_script(command, description):
    """Run a script and handle errors"""
    print(f"\n{'='*60}")
    print(f"RUNNING: {description}")
    print(f"{'='*60}")

    try:
        result = subprocess.run([sys.executable] + command,
                                capture_output=True, text=True)
    except OSError as e:
        print(f"✗ {description} failed with exception: {e}")
        return False

    if result.returncode == 0:
        print(f"✓ {description} completed successfully")
        if result.stdout:
            print("Output:")
            print(result.stdout[-1000:])  # Last 1000 chars
        return True

    print(f"✗ {description} failed with return code {result.returncode}")
    print("Error output:")
    print(result.stderr or result.stdout)
    return False


def main():
    parser = argparse.ArgumentParser(description='Anchor Integration Pipeline')
    parser.add_argument('counts', help='Combined raw count .h5ad')
    parser.add_argument('--split-key', default='stim',
                        help='obs column separating the conditions')
    parser.add_argument('--skip-residuals', action='store_true',
                        help='Input already holds residuals in adata.X')
    parser.add_argument('--reference', default=None,
                        help="Reference dataset name, 'first' or 'largest'")

    args = parser.parse_args()

    settings = get_settings()
    base_dir = Path(__file__).parent
    counts_path = Path(args.counts)
    processed_path = settings.get_processed_data_path(counts_path.stem)

    steps = []
    if not args.skip_residuals:
        steps.append((
            [str(base_dir / 'scripts/01_compute_residuals.py'), str(counts_path),
             '--output', str(processed_path)],
            'Residual Computation',
        ))
        integrate_input, layer = processed_path, 'residuals'
    else:
        integrate_input, layer = counts_path, 'X'

    integrate_cmd = [str(base_dir / 'scripts/02_integrate_datasets.py'), str(integrate_input),
                     '--split-key', args.split_key, '--layer', layer]
    if args.reference:
        integrate_cmd += ['--reference', args.reference]
    steps.append((integrate_cmd, 'Dataset Integration'))

    print(f"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                    ANCHOR-BASED DATASET INTEGRATION PIPELINE                 ║
╚══════════════════════════════════════════════════════════════════════════════╝

Pipeline Overview:
1. Residual Computation - QC and Pearson residuals from raw counts
2. Dataset Integration - CCA, anchors and correction split by '{args.split_key}'

Starting pipeline execution...
""")

    success_count = 0
    for command, description in steps:
        if run_script(command, description):
            success_count += 1
        else:
            print(f"\n⚠️  Pipeline stopped due to failure in: {description}")
            break

    print(f"""
{'='*80}
PIPELINE EXECUTION SUMMARY
{'='*80}

Completed steps: {success_count}/{len(steps)}

Results are saved in:
- data/processed/   - Residuals and integrated datasets
- results/tables/   - Integration summaries
""")
    return 0 if success_count == len(steps) else 1


if __name__ == "__main__":
    sys.exit(main())
