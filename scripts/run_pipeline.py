#!/usr/bin/env python
"""
Harmony integration of Visium samples from different imaging protocols,
with Loupe Browser export.

Usage:
    python run_pipeline.py --config config.yaml
    python run_pipeline.py --config config.yaml --output results/ --resolution 0.8
    python run_pipeline.py --config config.yaml --no-download --no-h5ad
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import scanpy as sc

# Add parent directory to path for visium_integration
sys.path.insert(0, str(Path(__file__).parent.parent))

from visium_integration.config import PipelineConfig, load_config
from visium_integration.pipeline import run_pipeline


def main():
    parser = argparse.ArgumentParser(
        description="Harmony integration and Loupe export for Visium samples",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=str, required=True, help="Path to YAML config file")
    parser.add_argument("--output", type=str, help="Output directory (overrides config)")
    parser.add_argument("--n-pcs", type=int, help="Number of PCs")
    parser.add_argument("--n-neighbors", type=int, help="Number of neighbors")
    parser.add_argument("--resolution", type=float, help="Leiden resolution")
    parser.add_argument("--theta", type=float, help="Harmony theta parameter")
    parser.add_argument(
        "--method",
        type=str,
        choices=["harmonypy", "rpy2"],
        help="Harmony implementation (default: harmonypy)",
    )
    parser.add_argument("--seed", type=int, default=0, help="Random seed (default: 0)")
    parser.add_argument("--no-download", action="store_true", help="Fail instead of fetching missing inputs")
    parser.add_argument("--no-figures", action="store_true", help="Don't save figures")
    parser.add_argument("--no-h5ad", action="store_true", help="Don't save the integrated h5ad")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sc.settings.verbosity = 1

    config = load_config(args.config)

    # CLI args override config
    overrides = {
        ("output", "dir"): args.output,
        ("preprocessing", "n_pcs"): args.n_pcs,
        ("clustering", "n_neighbors"): args.n_neighbors,
        ("clustering", "resolution"): args.resolution,
        ("integration", "theta"): args.theta,
        ("integration", "method"): args.method,
    }
    for (section, key), value in overrides.items():
        if value is not None:
            config.setdefault(section, {})[key] = value
    if args.no_figures:
        config.setdefault("output", {})["save_figures"] = False
    if args.no_h5ad:
        config.setdefault("output", {})["save_h5ad"] = False

    pipeline_config = PipelineConfig.from_dict(config)

    print("=" * 60)
    print("Samples (export order)")
    print("=" * 60)
    for i, spec in enumerate(pipeline_config.samples, start=1):
        print(f"  -{i}  {spec.sample_id}: {spec.input_path}")

    print("\n" + "=" * 60)
    print("Running integration")
    print("=" * 60)
    result = run_pipeline(
        pipeline_config,
        fetch_missing=not args.no_download,
        random_state=args.seed,
    )

    print("\nBatch mixing (higher = better mixed):")
    for name, row in result.metrics.iterrows():
        print(f"  {name}: silhouette {row['batch_silhouette']:.3f}, entropy {row['batch_entropy']:.3f}")

    print("\n" + "=" * 60)
    print("Done! Output files:")
    print("=" * 60)
    print(f"  Projection: {result.embedding_path} ({len(result.embedding)} rows)")
    print(f"  Clusters:   {result.cluster_path} ({len(result.clusters)} rows)")


if __name__ == "__main__":
    main()
