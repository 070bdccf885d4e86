"""
End-to-end workflow: load samples, correct the protocol batch effect with
Harmony, cluster, and export Loupe Browser CSVs.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import pandas as pd
import scanpy as sc
from anndata import AnnData

from .config import PipelineConfig
from .download import fetch_sample
from .errors import ConfigError, MissingInputError
from .evaluation import summarize_batch_mixing
from .export import write_export_tables
from .integration import (
    compute_neighbors_and_umap,
    correct_and_cluster,
    embedding_records,
)
from .loading import load_samples, merge_samples
from .preprocessing import standard_preprocess
from .reconcile import reconcile_records
from .visualization import plot_batch_distribution, plot_correction_comparison

logger = logging.getLogger(__name__)

SAMPLE_ORDER_KEY = "sample_order"
UNCORRECTED_UMAP = "X_umap_uncorrected"


@dataclass
class PipelineResult:
    adata: AnnData
    embedding: pd.DataFrame
    clusters: pd.DataFrame
    metrics: pd.DataFrame
    embedding_path: Path
    cluster_path: Path


def resolve_sources(config: PipelineConfig, fetch_missing: bool = True) -> Dict[str, Path]:
    """
    Map each sample to a local matrix location, downloading it if needed.

    A sample whose ``input_path`` does not exist is fetched from its ``url``
    into the download cache; without a URL this is a ``MissingInputError``.
    """
    sources = {}
    for spec in config.samples:
        if spec.input_path.exists():
            sources[spec.sample_id] = spec.input_path
        elif spec.url and fetch_missing:
            sources[spec.sample_id] = fetch_sample(
                spec.url,
                config.download.cache_dir,
                spec.sample_id,
                retries=config.download.retries,
            )
        else:
            raise MissingInputError(
                f"Input for sample '{spec.sample_id}' not found: {spec.input_path}"
            )
    return sources


def export_loupe_tables(
    adata: AnnData,
    sample_ids: Sequence[str],
    embedding_path,
    cluster_path,
    basis: str = "X_umap",
    cluster_key: str = "clusters",
    n_dims: int = 2,
    coord_prefix: str = "UMAP",
    suffix_strip_length: int = 2,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Reconcile barcodes and write the projection and cluster CSVs.

    Every spot is reconciled before anything is written; any failure leaves
    no output file behind.
    """
    records = embedding_records(
        adata,
        basis=basis,
        cluster_key=cluster_key,
        n_dims=n_dims,
        coord_prefix=coord_prefix,
    )
    embedding, clusters = reconcile_records(
        records,
        sample_ids,
        suffix_strip_length=suffix_strip_length,
    )
    write_export_tables(
        embedding,
        clusters,
        embedding_path,
        cluster_path,
        n_samples=len(sample_ids),
    )
    return embedding, clusters


def stored_sample_order(adata: AnnData, batch_key: str) -> List[str]:
    """Sample order recorded by ``run_pipeline``, else the batch categories."""
    if SAMPLE_ORDER_KEY in adata.uns:
        return [str(s) for s in adata.uns[SAMPLE_ORDER_KEY]]
    batches = adata.obs[batch_key]
    if isinstance(batches.dtype, pd.CategoricalDtype):
        return [str(c) for c in batches.cat.categories]
    return [str(b) for b in pd.unique(batches.astype(str))]


def _save_figures(adata: AnnData, config: PipelineConfig, figures_dir: Path) -> None:
    batch_key = config.batch_key
    fig = plot_correction_comparison(
        adata,
        {"Uncorrected": UNCORRECTED_UMAP, "Harmony": "X_umap"},
        color_by=batch_key,
        save_path=str(figures_dir / "umap_uncorrected_vs_harmony.png"),
    )
    plt.close(fig)
    fig = plot_batch_distribution(
        adata,
        batch_key=batch_key,
        cluster_key=config.clustering.cluster_key,
        save_path=str(figures_dir / "sample_composition_per_cluster.png"),
    )
    plt.close(fig)


def run_pipeline(
    config: PipelineConfig,
    fetch_missing: bool = True,
    random_state: int = 0,
) -> PipelineResult:
    """
    Run the full workflow described by ``config``.

    Steps: resolve/download inputs, load and merge samples, preprocess,
    embed without correction, Harmony-correct, cluster, score batch mixing,
    export the Loupe CSVs, then optionally save figures and the h5ad.

    Raises
    ------
    ConfigError
        If fewer than two samples contain spots.
    """
    batch_key = config.batch_key
    output_dir = config.output.dir
    sample_ids = config.sample_ids

    sources = resolve_sources(config, fetch_missing=fetch_missing)
    adatas = load_samples(sources, batch_key=batch_key)

    non_empty = [name for name, a in adatas.items() if a.n_obs > 0]
    if len(non_empty) < 2:
        raise ConfigError(
            f"Batch correction needs at least two non-empty samples, got {non_empty}"
        )

    adata = merge_samples(adatas, batch_key=batch_key)
    del adatas
    adata.uns[SAMPLE_ORDER_KEY] = list(sample_ids)
    # Harmony cannot handle a batch level with no spots
    adata.obs[batch_key] = adata.obs[batch_key].cat.remove_unused_categories()

    standard_preprocess(
        adata,
        config.preprocessing,
        batch_key=batch_key,
        random_state=random_state,
    )

    # Uncorrected embedding, kept for the batch-effect figure
    compute_neighbors_and_umap(
        adata,
        use_rep="X_pca",
        n_neighbors=config.clustering.n_neighbors,
        random_state=random_state,
        key_added_suffix="uncorrected",
    )

    harmony_key = correct_and_cluster(
        adata,
        batch_key=batch_key,
        integration=config.integration,
        clustering=config.clustering,
        random_state=random_state,
    )

    metrics = summarize_batch_mixing(
        adata,
        batch_key,
        {"Uncorrected": "X_pca", "Harmony": harmony_key},
    )
    for name, row in metrics.iterrows():
        logger.info(
            "%s: silhouette mixing %.3f, entropy %.3f",
            name,
            row["batch_silhouette"],
            row["batch_entropy"],
        )

    embedding, clusters = export_loupe_tables(
        adata,
        sample_ids,
        config.output.embedding_path,
        config.output.cluster_path,
        cluster_key=config.clustering.cluster_key,
        n_dims=config.embedding_dims,
        coord_prefix=config.output.coord_prefix,
        suffix_strip_length=config.barcode_suffix_strip_length,
    )

    (output_dir / "metrics").mkdir(parents=True, exist_ok=True)
    metrics.to_csv(output_dir / "metrics" / "batch_mixing.tsv", sep="\t")

    if config.output.save_figures:
        _save_figures(adata, config, output_dir / "figures")

    if config.output.save_h5ad:
        adata.write_h5ad(output_dir / "integrated_harmony.h5ad")

    return PipelineResult(
        adata=adata,
        embedding=embedding,
        clusters=clusters,
        metrics=metrics,
        embedding_path=config.output.embedding_path,
        cluster_path=config.output.cluster_path,
    )


def export_from_h5ad(
    h5ad_path,
    embedding_path,
    cluster_path,
    batch_key: str = "sample",
    sample_ids: Optional[Sequence[str]] = None,
    **kwargs,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Re-export Loupe CSVs from an integrated h5ad written by ``run_pipeline``."""
    h5ad_path = Path(h5ad_path)
    if not h5ad_path.is_file():
        raise MissingInputError(f"h5ad not found: {h5ad_path}")
    adata = sc.read_h5ad(h5ad_path)
    if sample_ids is None:
        sample_ids = stored_sample_order(adata, batch_key)
    return export_loupe_tables(adata, sample_ids, embedding_path, cluster_path, **kwargs)
