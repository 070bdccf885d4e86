#!/usr/bin/env python
"""
Download and unpack the count matrices listed in a config file.

Usage:
    python fetch_datasets.py --config config.yaml
    python fetch_datasets.py --config config.yaml --cache-dir data/downloads --retries 5
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for visium_integration
sys.path.insert(0, str(Path(__file__).parent.parent))

from visium_integration.config import PipelineConfig
from visium_integration.download import fetch_sample


def main():
    parser = argparse.ArgumentParser(description="Fetch sample matrices into the local cache")
    parser.add_argument("--config", type=str, required=True, help="Path to YAML config file")
    parser.add_argument("--cache-dir", type=str, help="Download cache (overrides config)")
    parser.add_argument("--retries", type=int, help="Download attempts per file (overrides config)")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    config = PipelineConfig.from_yaml(args.config)
    cache_dir = Path(args.cache_dir) if args.cache_dir else config.download.cache_dir
    retries = args.retries if args.retries is not None else config.download.retries

    for spec in config.samples:
        if spec.input_path.exists():
            print(f"{spec.sample_id}: using {spec.input_path}")
            continue
        if not spec.url:
            print(f"{spec.sample_id}: no url configured, skipping")
            continue
        matrix_dir = fetch_sample(spec.url, cache_dir, spec.sample_id, retries=retries)
        print(f"{spec.sample_id}: {matrix_dir}")


if __name__ == "__main__":
    main()
