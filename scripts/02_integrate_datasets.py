#!/usr/bin/env python3
"""
Integration Pipeline for Control/Stimulated Single-Cell Datasets
Splits a combined object by condition and integrates it with CCA anchors
"""

import argparse
import json
import sys
from pathlib import Path

import scanpy as sc

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
from anchor_integration.analysis.integration import integrate
from anchor_integration.config.settings import IntegrationConfig, get_settings
from anchor_integration.data.datasets import split_anndata
from anchor_integration.exceptions import IntegrationError
from anchor_integration.utils.log import setup_logging


def embed(adata, n_pcs=30, n_neighbors=15):
    """PCA, neighbour graph and UMAP on the integrated matrix"""
    sc.pp.scale(adata, max_value=10)
    n_pcs = min(n_pcs, adata.n_vars - 1, adata.n_obs - 1)
    sc.tl.pca(adata, svd_solver='arpack', n_comps=n_pcs)
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs)
    sc.tl.umap(adata)
    return adata


def summarize(result, config):
    """Integration summary for the JSON report"""
    obs = result.obs
    return {
        'reference': result.reference,
        'n_cells': int(result.n_cells),
        'n_features': int(result.n_genes),
        'cells_per_dataset': {k: int(v) for k, v in obs['dataset'].value_counts().items()},
        'unanchored_cells': int(obs['unanchored'].sum()),
        'anchors': {f"{ref}->{query}": len(a) for (ref, query), a in result.anchors.items()},
        'config': config.as_dict(),
    }


def main():
    parser = argparse.ArgumentParser(description='Anchor-based dataset integration')
    parser.add_argument('input', help='Combined .h5ad holding residuals')
    parser.add_argument('--split-key', default='stim',
                        help='obs column separating the datasets')
    parser.add_argument('--layer', default='residuals',
                        help="Layer holding residuals ('X' for adata.X)")
    parser.add_argument('--cell-type-key', default=None)
    parser.add_argument('--reference', default=None,
                        help="Reference dataset name, 'first' or 'largest'")
    parser.add_argument('--output', default=None)
    parser.add_argument('--no-embed', action='store_true',
                        help='Skip PCA/UMAP on the integrated matrix')
    args = parser.parse_args()

    setup_logging()
    settings = get_settings()
    settings.create_directories()

    input_path = Path(args.input)
    output_path = Path(args.output) if args.output else settings.get_integrated_data_path(input_path.stem)

    print(f"Loading {input_path}")
    adata = sc.read_h5ad(input_path)
    layer = None if args.layer == 'X' else args.layer

    datasets = split_anndata(adata, args.split_key, layer=layer, cell_type_key=args.cell_type_key)
    for dataset in datasets:
        print(f"  {dataset.name}: {dataset.n_cells} cells, {dataset.n_genes} genes")

    overrides = {}
    if args.reference is not None:
        overrides['reference'] = args.reference
    config = IntegrationConfig.from_settings(settings, **overrides)

    print(f"\n{'='*50}")
    print("INTEGRATION METHOD: CCA ANCHORS")
    print(f"{'='*50}")

    try:
        result = integrate(datasets, config=config)
    except IntegrationError as e:
        print(f"Integration failed at stage {e.stage}: {e}")
        sys.exit(1)

    integrated = result.to_anndata()
    if not args.no_embed:
        integrated = embed(integrated, n_pcs=config.embedding_dim)

    integrated.write(output_path)
    print(f"Integrated data saved to {output_path}")

    summary_path = settings.TABLES_DIR / f"{input_path.stem}_integration_summary.json"
    with open(summary_path, 'w') as f:
        json.dump(summarize(result, config), f, indent=2, default=str)

    print(f"\n{'='*50}")
    print("INTEGRATION COMPLETE")
    print(f"{'='*50}")
    print(f"Summary saved to {summary_path}")


if __name__ == "__main__":
    main()
