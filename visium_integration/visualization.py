"""
Figures showing the protocol batch effect before and after correction.
"""

from pathlib import Path
from typing import Dict, Optional, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from anndata import AnnData


def _save(fig: plt.Figure, save_path: Optional[str]) -> None:
    if save_path:
        Path(save_path).parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=150, bbox_inches="tight")


def plot_correction_comparison(
    adata: AnnData,
    embeddings: Dict[str, str],
    color_by: str,
    figsize: Optional[Tuple[float, float]] = None,
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
    point_size: float = 2,
) -> plt.Figure:
    """
    Side-by-side 2D embeddings, e.g. uncorrected vs Harmony UMAP.

    Parameters
    ----------
    adata : AnnData
        Dataset holding every embedding in ``.obsm``.
    embeddings : dict
        Panel title -> ``.obsm`` key, e.g.
        ``{'Uncorrected': 'X_umap_uncorrected', 'Harmony': 'X_umap'}``.
    color_by : str
        Categorical column in ``.obs``, typically the sample label.
    figsize : tuple, optional
        Figure size. Defaults to 5 inches per panel.
    save_path : str, optional
        Path to save the figure.
    palette : dict, optional
        Category -> colour.
    point_size : float
        Marker size.

    Returns
    -------
    matplotlib.figure.Figure
    """
    n_panels = len(embeddings)
    if figsize is None:
        figsize = (5 * n_panels, 5)
    fig, axes = plt.subplots(1, n_panels, figsize=figsize, squeeze=False)

    values = adata.obs[color_by].astype(str)
    categories = list(pd.unique(values))
    if palette is None:
        cmap = plt.get_cmap("tab10" if len(categories) <= 10 else "tab20")
        palette = {c: cmap(i % cmap.N) for i, c in enumerate(categories)}

    for ax, (title, key) in zip(axes[0], embeddings.items()):
        if key not in adata.obsm:
            ax.set_title(f"{title}\n(embedding not found)")
            ax.axis("off")
            continue
        coords = np.asarray(adata.obsm[key])
        for category in categories:
            mask = (values == category).to_numpy()
            ax.scatter(
                coords[mask, 0],
                coords[mask, 1],
                s=point_size,
                alpha=0.6,
                color=palette.get(category, "#999999"),
                label=category,
            )
        ax.set_title(title)
        ax.set_xlabel(f"{title} 1")
        ax.set_ylabel(f"{title} 2")
        ax.set_xticks([])
        ax.set_yticks([])

    axes[0][-1].legend(title=color_by, bbox_to_anchor=(1.02, 1), loc="upper left", markerscale=4)
    fig.tight_layout()
    _save(fig, save_path)
    return fig


def plot_batch_distribution(
    adata: AnnData,
    batch_key: str,
    cluster_key: str,
    normalize: bool = True,
    figsize: Tuple[float, float] = (10, 6),
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
) -> plt.Figure:
    """
    Stacked bar chart of sample composition per cluster.

    Clusters made of a single sample point to a remaining batch effect.
    """
    ct = pd.crosstab(
        adata.obs[cluster_key],
        adata.obs[batch_key],
        normalize="index" if normalize else False,
    )

    # Leiden labels are numeric strings
    try:
        ct = ct.loc[sorted(ct.index, key=lambda x: int(x))]
    except (ValueError, TypeError):
        ct = ct.sort_index()

    fig, ax = plt.subplots(figsize=figsize)
    if palette:
        colors = [palette.get(col, "#999999") for col in ct.columns]
        ct.plot(kind="bar", stacked=True, ax=ax, color=colors)
    else:
        ct.plot(kind="bar", stacked=True, ax=ax)

    ax.set_xlabel(cluster_key)
    ax.set_ylabel("Proportion" if normalize else "Count")
    ax.set_title(f"Sample composition per {cluster_key}")
    ax.legend(title=batch_key, bbox_to_anchor=(1.02, 1), loc="upper left")

    fig.tight_layout()
    _save(fig, save_path)
    return fig
