#!/usr/bin/env python
"""
Re-export Loupe Browser CSVs from an integrated h5ad.

Usage:
    python export_loupe.py --input results/integrated_harmony.h5ad --output results/
    python export_loupe.py --input integrated.h5ad --samples IF BF --basis X_umap --dims 2
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for visium_integration
sys.path.insert(0, str(Path(__file__).parent.parent))

from visium_integration.pipeline import export_from_h5ad


def main():
    parser = argparse.ArgumentParser(description="Export Loupe projection and cluster CSVs")
    parser.add_argument("--input", type=str, required=True, help="Integrated h5ad file")
    parser.add_argument("--output", type=str, default="./results/", help="Output directory")
    parser.add_argument(
        "--samples",
        nargs="+",
        type=str,
        help="Sample labels in export order (default: order stored in the h5ad)",
    )
    parser.add_argument("--batch-key", type=str, default="sample", help="Sample column in obs")
    parser.add_argument("--basis", type=str, default="X_umap", help="obsm key to export")
    parser.add_argument("--cluster-key", type=str, default="clusters", help="Cluster column in obs")
    parser.add_argument("--dims", type=int, default=2, help="Number of coordinate columns")
    parser.add_argument("--coord-prefix", type=str, default="UMAP", help="Coordinate column prefix")
    parser.add_argument("--strip", type=int, default=2, help="Instrument suffix length to strip (0 keeps the raw barcode)")
    parser.add_argument("--embedding-file", type=str, default="umap_projection.csv")
    parser.add_argument("--cluster-file", type=str, default="clusters.csv")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    output_path = Path(args.output)
    print(f"Loading {args.input}...")
    embedding, clusters = export_from_h5ad(
        args.input,
        output_path / args.embedding_file,
        output_path / args.cluster_file,
        batch_key=args.batch_key,
        sample_ids=args.samples,
        basis=args.basis,
        cluster_key=args.cluster_key,
        n_dims=args.dims,
        coord_prefix=args.coord_prefix,
        suffix_strip_length=args.strip,
    )

    print(f"  Projection: {output_path / args.embedding_file} ({len(embedding)} rows)")
    print(f"  Clusters:   {output_path / args.cluster_file} ({len(clusters)} rows)")


if __name__ == "__main__":
    main()
