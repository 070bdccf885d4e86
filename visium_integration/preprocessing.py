"""
Preprocessing of merged spot counts before batch correction.

Thin wrappers over scanpy: QC filtering, library-size normalization,
highly variable gene selection, scaling and PCA.
"""

import logging
from typing import Optional

import scanpy as sc
from anndata import AnnData

from .config import PreprocessingConfig

logger = logging.getLogger(__name__)


def store_raw_counts(adata: AnnData, layer_name: str = "counts") -> None:
    """Keep a copy of the raw counts in ``adata.layers[layer_name]``."""
    adata.layers[layer_name] = adata.X.copy()


def filter_spots_and_genes(
    adata: AnnData,
    min_genes: int = 0,
    min_cells: int = 0,
) -> None:
    """
    Drop spots with fewer than ``min_genes`` detected genes and genes seen in
    fewer than ``min_cells`` spots. A threshold of 0 disables that filter.

    Filtering spots removes them from every downstream output.
    """
    if min_genes > 0:
        n_before = adata.n_obs
        sc.pp.filter_cells(adata, min_genes=min_genes)
        logger.info("Filtered spots: %d -> %d", n_before, adata.n_obs)
    if min_cells > 0:
        n_before = adata.n_vars
        sc.pp.filter_genes(adata, min_cells=min_cells)
        logger.info("Filtered genes: %d -> %d", n_before, adata.n_vars)


def normalize_and_log(adata: AnnData, target_sum: float = 1e4) -> None:
    """Normalize each spot to ``target_sum`` counts and log1p-transform."""
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)


def find_hvgs(
    adata: AnnData,
    n_top_genes: int = 2000,
    batch_key: Optional[str] = None,
) -> None:
    """
    Flag highly variable genes in ``adata.var['highly_variable']``.

    With ``batch_key`` set, genes are ranked within each sample and combined,
    so that protocol-specific genes do not dominate the selection.
    """
    n_top_genes = min(n_top_genes, adata.n_vars)
    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=n_top_genes,
        flavor="seurat",
        batch_key=batch_key,
    )


def scale_and_pca(
    adata: AnnData,
    n_comps: int = 30,
    max_value: float = 10,
    random_state: int = 0,
) -> None:
    """
    Scale genes to unit variance and compute PCA on the highly variable genes.

    The number of components is capped by the data shape, so small inputs
    still produce an ``X_pca`` embedding.
    """
    sc.pp.scale(adata, max_value=max_value)

    n_genes = adata.n_vars
    if "highly_variable" in adata.var:
        n_genes = int(adata.var["highly_variable"].sum())
    n_comps = min(n_comps, adata.n_obs - 1, n_genes - 1)
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        svd_solver="arpack",
        random_state=random_state,
    )


def standard_preprocess(
    adata: AnnData,
    params: Optional[PreprocessingConfig] = None,
    batch_key: Optional[str] = None,
    random_state: int = 0,
) -> None:
    """
    Full preprocessing: filter, store counts, normalize, HVGs, scale, PCA.

    Parameters
    ----------
    adata : AnnData
        Merged dataset with raw counts in ``.X``.
    params : PreprocessingConfig, optional
        Thresholds and sizes; defaults are used when omitted.
    batch_key : str, optional
        Sample column used for batch-aware HVG selection.
    random_state : int
        Random seed for PCA.

    Example
    -------
    >>> standard_preprocess(adata, PreprocessingConfig(n_pcs=30), batch_key="sample")
    >>> # adata.obsm['X_pca'] is ready for Harmony
    """
    if params is None:
        params = PreprocessingConfig()

    filter_spots_and_genes(adata, params.min_genes, params.min_cells)

    if "counts" not in adata.layers:
        store_raw_counts(adata)

    normalize_and_log(adata, target_sum=params.target_sum)
    find_hvgs(adata, n_top_genes=params.n_top_genes, batch_key=batch_key)
    logger.info("HVGs: %d", int(adata.var["highly_variable"].sum()))
    scale_and_pca(
        adata,
        n_comps=params.n_pcs,
        max_value=params.max_scale_value,
        random_state=random_state,
    )
