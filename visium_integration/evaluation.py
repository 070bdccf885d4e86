"""
Quantify the protocol batch effect in an embedding.

Both scores are scaled so that higher = samples better mixed:
- silhouette mixing: 1 - silhouette of the sample labels
- neighbourhood entropy: mean entropy of sample labels among each spot's
  nearest neighbours, normalised by log2(n_samples)
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
from anndata import AnnData
from scipy.stats import entropy
from sklearn.metrics import silhouette_score
from sklearn.neighbors import NearestNeighbors

logger = logging.getLogger(__name__)


def _subsample(n: int, sample_size: Optional[int], random_state: int) -> np.ndarray:
    if sample_size is None or sample_size >= n:
        return np.arange(n)
    rng = np.random.default_rng(random_state)
    return np.sort(rng.choice(n, size=sample_size, replace=False))


def compute_batch_mixing_silhouette(
    adata: AnnData,
    batch_key: str,
    use_rep: str,
    sample_size: Optional[int] = None,
    random_state: int = 0,
) -> float:
    """
    Silhouette-based mixing score of the sample labels in ``.obsm[use_rep]``.

    Returns
    -------
    float
        ``1 - silhouette``, in [0, 2]; higher = better mixing.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    idx = _subsample(adata.n_obs, sample_size, random_state)
    embedding = np.asarray(adata.obsm[use_rep])[idx]
    labels = adata.obs[batch_key].astype(str).to_numpy()[idx]

    if len(np.unique(labels)) < 2:
        raise ValueError("Silhouette needs spots from at least two samples")
    return 1 - silhouette_score(embedding, labels, random_state=random_state)


def compute_batch_entropy(
    adata: AnnData,
    batch_key: str,
    use_rep: str,
    n_neighbors: int = 30,
    sample_size: Optional[int] = 5000,
    random_state: int = 0,
) -> float:
    """
    Normalised sample-label entropy in local neighbourhoods.

    Returns
    -------
    float
        Mean entropy divided by ``log2(n_samples)``, in [0, 1].
    """
    embedding = np.asarray(adata.obsm[use_rep])
    labels = adata.obs[batch_key].astype(str).to_numpy()
    batches = np.unique(labels)
    if len(batches) < 2:
        return 0.0

    n_neighbors = min(n_neighbors, adata.n_obs - 1)
    nn = NearestNeighbors(n_neighbors=n_neighbors + 1).fit(embedding)

    idx = _subsample(adata.n_obs, sample_size, random_state)
    _, neighbors = nn.kneighbors(embedding[idx])

    entropies = []
    for row in neighbors:
        neighbor_labels = labels[row[1:]]
        counts = np.array([(neighbor_labels == b).sum() for b in batches])
        entropies.append(entropy(counts / counts.sum(), base=2))

    return float(np.mean(entropies) / np.log2(len(batches)))


def summarize_batch_mixing(
    adata: AnnData,
    batch_key: str,
    embeddings: Dict[str, str],
    sample_size: int = 5000,
) -> pd.DataFrame:
    """
    Score several embeddings, e.g. ``{'Uncorrected': 'X_pca', 'Harmony': 'X_harmony_sample'}``.

    Embeddings missing from ``.obsm`` are skipped with a warning.

    Returns
    -------
    pd.DataFrame
        One row per embedding with ``batch_silhouette`` and ``batch_entropy``.
    """
    rows = []
    for name, key in embeddings.items():
        if key not in adata.obsm:
            logger.warning("%s not found, skipping %s", key, name)
            continue
        rows.append(
            {
                "embedding": name,
                "batch_silhouette": compute_batch_mixing_silhouette(
                    adata, batch_key, key, sample_size=sample_size
                ),
                "batch_entropy": compute_batch_entropy(
                    adata, batch_key, key, sample_size=sample_size
                ),
            }
        )
    return pd.DataFrame(rows, columns=["embedding", "batch_silhouette", "batch_entropy"]).set_index(
        "embedding"
    )
