#!/usr/bin/env python3
"""
Residual Computation for Anchor Integration
Quality filters raw counts and stores Pearson residuals for integration
"""

import argparse
import sys
from pathlib import Path

import scanpy as sc

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
from anchor_integration.config.settings import get_settings
from anchor_integration.data.preprocessing import compute_residuals, quality_control
from anchor_integration.utils.log import setup_logging


def main():
    parser = argparse.ArgumentParser(description='Compute Pearson residuals from raw counts')
    parser.add_argument('input', help='Combined raw count .h5ad (all conditions)')
    parser.add_argument('--output', default=None,
                        help='Output .h5ad (default: data/processed/<name>_processed.h5ad)')
    parser.add_argument('--theta', type=float, default=100.0,
                        help='Negative binomial overdispersion')
    parser.add_argument('--min-genes', type=int, default=200)
    parser.add_argument('--min-cells', type=int, default=3)
    args = parser.parse_args()

    setup_logging()
    settings = get_settings()
    settings.create_directories()

    input_path = Path(args.input)
    output_path = Path(args.output) if args.output else settings.get_processed_data_path(input_path.stem)

    print(f"Loading counts from {input_path}")
    adata = sc.read_h5ad(input_path)
    adata.var_names_make_unique()
    print(f"Loaded {adata.n_obs} cells, {adata.n_vars} genes")

    adata = quality_control(adata, min_genes=args.min_genes, min_cells=args.min_cells)
    adata = compute_residuals(adata, theta=args.theta)

    adata.write(output_path)
    print(f"Residuals saved to {output_path} (layer 'residuals')")


if __name__ == "__main__":
    main()
