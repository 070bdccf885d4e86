"""
Batch correction, embedding and clustering of the merged samples.

Includes wrappers for:
- Harmony (harmonypy.run_harmony, or R harmony via rpy2)
- neighbour graph and UMAP
- Leiden clustering

``embedding_records`` turns the results into one table row per spot,
indexed by composite barcode, for export.
"""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from .config import ClusteringConfig, IntegrationConfig
from .errors import SchemaError

logger = logging.getLogger(__name__)

CLUSTER_COLUMN = "clusters"


def _run_harmonypy(
    adata: AnnData,
    batch_key: str,
    use_rep: str,
    key_added: str,
    theta: Optional[float],
    max_iter: int,
    random_state: int,
) -> None:
    try:
        import harmonypy
    except ImportError:
        raise ImportError(
            "harmonypy is required for Harmony. Install with: pip install harmonypy"
        )

    kwargs = {"max_iter_harmony": max_iter, "random_state": random_state}
    if theta is not None:
        kwargs["theta"] = theta
    embed = np.asarray(adata.obsm[use_rep], dtype=np.float64)
    ho = harmonypy.run_harmony(embed, adata.obs, [batch_key], **kwargs)

    # Older harmonypy releases return Z_corr as dims x spots
    corrected = np.asarray(ho.Z_corr)
    if corrected.shape[0] != adata.n_obs:
        corrected = corrected.T
    adata.obsm[key_added] = corrected


def _run_harmony_rpy2(
    adata: AnnData,
    batch_key: str,
    use_rep: str,
    key_added: str,
    theta: Optional[float],
    max_iter: int,
) -> None:
    """
    Run R harmony on a PCA embedding.

    Requires R with the harmony package installed and rpy2 configured.
    """
    try:
        import rpy2.robjects as ro
        from rpy2.robjects import numpy2ri, pandas2ri
        from rpy2.robjects.conversion import localconverter
        from rpy2.robjects.packages import importr
    except ImportError:
        raise ImportError(
            "rpy2 is required for R Harmony. Install with: pip install rpy2"
        )

    try:
        harmony = importr("harmony")
    except Exception as e:
        raise ImportError(
            "R harmony package not found. Install in R with: "
            "install.packages('harmony')"
        ) from e

    embed = np.asarray(adata.obsm[use_rep], dtype=np.float64)
    meta = pd.DataFrame(
        {batch_key: adata.obs[batch_key].astype(str).values},
        index=adata.obs_names,
    )

    harmony_args = {"vars_use": batch_key, "max_iter": max_iter, "verbose": False}
    if theta is not None:
        harmony_args["theta"] = theta

    with localconverter(ro.default_converter + numpy2ri.converter + pandas2ri.converter):
        r_embed = ro.conversion.py2rpy(embed)
        r_meta = ro.conversion.py2rpy(meta)
        harmonized = harmony.RunHarmony(r_embed, r_meta, **harmony_args)
        harmonized = np.asarray(ro.conversion.rpy2py(harmonized))

    adata.obsm[key_added] = harmonized


def run_harmony(
    adata: AnnData,
    batch_key: str,
    use_rep: str = "X_pca",
    theta: Optional[float] = None,
    max_iter: int = 10,
    key_added: Optional[str] = None,
    method: str = "harmonypy",
    random_state: int = 0,
) -> np.ndarray:
    """
    Remove between-sample variation from a PCA embedding with Harmony.

    Parameters
    ----------
    adata : AnnData
        Merged dataset with PCA computed in ``.obsm[use_rep]``.
    batch_key : str
        Column in ``.obs`` holding sample labels.
    use_rep : str
        Key in ``.obsm`` for the input embedding.
    theta : float, optional
        Diversity penalty. Higher values = more aggressive correction.
    max_iter : int
        Maximum Harmony iterations.
    key_added : str, optional
        Key to store the result in ``.obsm``. Default: ``'X_harmony_{batch_key}'``.
    method : str
        ``'harmonypy'`` (Python port) or ``'rpy2'`` (R package).
    random_state : int
        Seed for the harmonypy k-means initialisation.

    Returns
    -------
    np.ndarray
        Harmonized embedding matrix (n_spots x n_dims).
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")
    if batch_key not in adata.obs.columns:
        raise ValueError(f"Batch key '{batch_key}' not found in adata.obs")
    if key_added is None:
        key_added = f"X_harmony_{batch_key}"

    logger.info("Running Harmony (%s) on %s", method, batch_key)
    if method == "harmonypy":
        _run_harmonypy(adata, batch_key, use_rep, key_added, theta, max_iter, random_state)
    elif method == "rpy2":
        _run_harmony_rpy2(adata, batch_key, use_rep, key_added, theta, max_iter)
    else:
        raise ValueError(f"Unknown Harmony method '{method}'")

    corrected = np.asarray(adata.obsm[key_added])
    if corrected.shape[0] != adata.n_obs:
        raise SchemaError(
            f"Harmony returned {corrected.shape[0]} rows for {adata.n_obs} spots"
        )
    return corrected


def compute_neighbors_and_umap(
    adata: AnnData,
    use_rep: str,
    n_neighbors: int = 15,
    metric: str = "euclidean",
    random_state: int = 0,
    key_added_suffix: Optional[str] = None,
) -> str:
    """
    Compute the neighbour graph and UMAP embedding on a given representation.

    With ``key_added_suffix`` the graph is stored under ``neighbors_{suffix}``
    and the UMAP under ``X_umap_{suffix}``; otherwise the scanpy defaults
    are used.

    Returns
    -------
    str
        The ``.obsm`` key holding the UMAP coordinates.
    """
    neighbors_key = f"neighbors_{key_added_suffix}" if key_added_suffix else "neighbors"
    umap_key = f"X_umap_{key_added_suffix}" if key_added_suffix else "X_umap"
    n_neighbors = min(n_neighbors, adata.n_obs - 1)

    sc.pp.neighbors(
        adata,
        use_rep=use_rep,
        n_neighbors=n_neighbors,
        metric=metric,
        random_state=random_state,
        key_added=None if neighbors_key == "neighbors" else neighbors_key,
    )
    sc.tl.umap(
        adata,
        neighbors_key=None if neighbors_key == "neighbors" else neighbors_key,
        random_state=random_state,
    )

    if umap_key != "X_umap":
        adata.obsm[umap_key] = adata.obsm["X_umap"].copy()
    return umap_key


def run_leiden_clustering(
    adata: AnnData,
    resolution: float = 0.5,
    neighbors_key: Optional[str] = None,
    key_added: str = CLUSTER_COLUMN,
    random_state: int = 0,
) -> int:
    """
    Run Leiden clustering and store labels in ``adata.obs[key_added]``.

    Returns
    -------
    int
        Number of clusters found.
    """
    sc.tl.leiden(
        adata,
        resolution=resolution,
        neighbors_key=neighbors_key,
        key_added=key_added,
        random_state=random_state,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )
    n_clusters = adata.obs[key_added].nunique()
    logger.info("Leiden resolution %s: %d clusters", resolution, n_clusters)
    return n_clusters


def correct_and_cluster(
    adata: AnnData,
    batch_key: str,
    integration: Optional[IntegrationConfig] = None,
    clustering: Optional[ClusteringConfig] = None,
    use_rep: str = "X_pca",
    random_state: int = 0,
) -> str:
    """
    Harmony-correct ``use_rep``, then build the neighbour graph, UMAP and
    Leiden clusters on the corrected embedding.

    Results land in ``.obsm['X_harmony_{batch_key}']``, ``.obsm['X_umap']``
    and ``.obs[clustering.cluster_key]``.

    Returns
    -------
    str
        The ``.obsm`` key of the corrected embedding.
    """
    if integration is None:
        integration = IntegrationConfig()
    if clustering is None:
        clustering = ClusteringConfig()

    harmony_key = f"X_harmony_{batch_key}"
    run_harmony(
        adata,
        batch_key=batch_key,
        use_rep=use_rep,
        theta=integration.theta,
        max_iter=integration.max_iter,
        key_added=harmony_key,
        method=integration.method,
        random_state=random_state,
    )
    compute_neighbors_and_umap(
        adata,
        use_rep=harmony_key,
        n_neighbors=clustering.n_neighbors,
        random_state=random_state,
    )
    run_leiden_clustering(
        adata,
        resolution=clustering.resolution,
        key_added=clustering.cluster_key,
        random_state=random_state,
    )
    return harmony_key


def coordinate_columns(n_dims: int, coord_prefix: str = "UMAP") -> List[str]:
    """Column names for exported coordinates, e.g. ``['UMAP-1', 'UMAP-2']``."""
    return [f"{coord_prefix}-{i}" for i in range(1, n_dims + 1)]


def embedding_records(
    adata: AnnData,
    basis: str = "X_umap",
    cluster_key: str = CLUSTER_COLUMN,
    n_dims: int = 2,
    coord_prefix: str = "UMAP",
) -> pd.DataFrame:
    """
    Collect one record per spot: coordinates and cluster label.

    Parameters
    ----------
    adata : AnnData
        Dataset with ``.obsm[basis]`` and ``.obs[cluster_key]``.
    basis : str
        Key in ``.obsm`` holding the coordinates.
    cluster_key : str
        Column in ``.obs`` holding the cluster labels.
    n_dims : int
        Number of leading coordinate dimensions to keep.
    coord_prefix : str
        Prefix for the coordinate column names.

    Returns
    -------
    pd.DataFrame
        Indexed by composite barcode, with ``n_dims`` coordinate columns
        followed by a ``clusters`` column.

    Raises
    ------
    SchemaError
        If the embedding or clusters are missing, the embedding has fewer
        than ``n_dims`` dimensions, or barcodes repeat.
    """
    if basis not in adata.obsm:
        raise SchemaError(f"Embedding '{basis}' not found in adata.obsm")
    if cluster_key not in adata.obs.columns:
        raise SchemaError(f"Cluster column '{cluster_key}' not found in adata.obs")
    if not adata.obs_names.is_unique:
        raise SchemaError("Observation names are not unique")

    coords = np.asarray(adata.obsm[basis])
    if coords.ndim != 2 or coords.shape[1] < n_dims:
        raise SchemaError(
            f"Embedding '{basis}' has shape {coords.shape}; {n_dims} dims requested"
        )

    records = pd.DataFrame(
        coords[:, :n_dims],
        index=adata.obs_names.copy(),
        columns=coordinate_columns(n_dims, coord_prefix),
    )
    records[CLUSTER_COLUMN] = adata.obs[cluster_key].astype(str).values
    return records
