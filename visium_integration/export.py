"""
Validate and write the Loupe Browser projection and cluster CSVs.
"""

import csv
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from .errors import SchemaError
from .integration import CLUSTER_COLUMN
from .reconcile import BARCODE_COLUMN

logger = logging.getLogger(__name__)

BARCODE_PATTERN = re.compile(r"^[A-Za-z]+-([0-9]+)$")
DELIMITER = ","
UNSAFE_LABEL_CHARS = r"[,\"\r\n]"
FLOAT_FORMAT = "%.6f"


def _check_barcodes(table: pd.DataFrame, name: str, n_samples: Optional[int]) -> None:
    for barcode in table[BARCODE_COLUMN].astype(str):
        match = BARCODE_PATTERN.match(barcode)
        if match is None:
            raise SchemaError(f"{name}: barcode '{barcode}' is not <nucleotides>-<n>")
        ordinal = int(match.group(1))
        if n_samples is not None and not 1 <= ordinal <= n_samples:
            raise SchemaError(
                f"{name}: barcode '{barcode}' has ordinal {ordinal} outside 1..{n_samples}"
            )


def validate_export_tables(
    embedding: pd.DataFrame,
    clusters: pd.DataFrame,
    n_samples: Optional[int] = None,
) -> None:
    """
    Check both tables against the Loupe import format.

    Parameters
    ----------
    embedding : pd.DataFrame
        ``Barcode`` followed by one or more numeric coordinate columns.
    clusters : pd.DataFrame
        Exactly ``Barcode, clusters``.
    n_samples : int, optional
        If given, barcode ordinals must fall in ``1..n_samples``.

    Raises
    ------
    SchemaError
        On a wrong header, a malformed barcode, a non-finite coordinate, a
        cluster label containing the delimiter, or barcodes that differ
        between the two tables.
    """
    if list(embedding.columns[:1]) != [BARCODE_COLUMN] or embedding.shape[1] < 2:
        raise SchemaError(
            f"Embedding header must be Barcode,<dims...>; got {list(embedding.columns)}"
        )
    if list(clusters.columns) != [BARCODE_COLUMN, CLUSTER_COLUMN]:
        raise SchemaError(
            f"Cluster header must be Barcode,clusters; got {list(clusters.columns)}"
        )

    _check_barcodes(embedding, "embedding", n_samples)
    _check_barcodes(clusters, "clusters", n_samples)

    coords = embedding.iloc[:, 1:]
    for column in coords.columns:
        if not pd.api.types.is_numeric_dtype(coords[column]):
            raise SchemaError(f"Coordinate column '{column}' is not numeric")
    if not np.isfinite(coords.to_numpy(dtype=float)).all():
        raise SchemaError("Embedding contains non-finite coordinates")

    labels = clusters[CLUSTER_COLUMN].astype(str)
    bad = labels[labels.str.contains(UNSAFE_LABEL_CHARS) | (labels == "")]
    if len(bad):
        raise SchemaError(f"Invalid cluster labels: {sorted(set(bad))[:5]}")

    if len(embedding) != len(clusters):
        raise SchemaError(
            f"Row counts differ: {len(embedding)} embedding vs {len(clusters)} cluster rows"
        )
    left = embedding[BARCODE_COLUMN].astype(str).value_counts()
    right = clusters[BARCODE_COLUMN].astype(str).value_counts()
    if not left.sort_index().equals(right.sort_index()):
        raise SchemaError("Embedding and cluster tables have different barcodes")


def _write_temp(table: pd.DataFrame, directory: Path, name: str) -> Path:
    fd, tmp = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=directory)
    os.close(fd)
    try:
        table.to_csv(
            tmp,
            index=False,
            sep=DELIMITER,
            quoting=csv.QUOTE_NONE,
            float_format=FLOAT_FORMAT,
        )
    except Exception:
        os.unlink(tmp)
        raise
    return Path(tmp)


def write_export_tables(
    embedding: pd.DataFrame,
    clusters: pd.DataFrame,
    embedding_path,
    cluster_path,
    n_samples: Optional[int] = None,
) -> Tuple[Path, Path]:
    """
    Validate and write both tables.

    Both files are first written to temporary files beside their targets
    and only renamed into place once both writes have succeeded, so a
    failure leaves neither a partial nor a mismatched pair behind.
    If the cluster rename fails, the previous projection is restored. Only
    a crash between the two renames can leave a mismatched pair, with the
    previous projection kept as ``.<name>.bak``.

    Returns
    -------
    tuple of Path
        ``(embedding_path, cluster_path)``.
    """
    validate_export_tables(embedding, clusters, n_samples=n_samples)

    embedding_path = Path(embedding_path)
    cluster_path = Path(cluster_path)
    embedding_path.parent.mkdir(parents=True, exist_ok=True)
    cluster_path.parent.mkdir(parents=True, exist_ok=True)

    written = []
    try:
        written.append(_write_temp(embedding, embedding_path.parent, embedding_path.name))
        written.append(_write_temp(clusters, cluster_path.parent, cluster_path.name))
    except Exception:
        for tmp in written:
            tmp.unlink()
        raise

    # Keep the previous projection until the cluster file is in place
    backup = embedding_path.with_name(f".{embedding_path.name}.bak")
    had_previous = embedding_path.exists()
    if had_previous:
        os.replace(embedding_path, backup)
    try:
        os.replace(written[0], embedding_path)
        os.replace(written[1], cluster_path)
    except OSError:
        if had_previous:
            os.replace(backup, embedding_path)
        else:
            embedding_path.unlink(missing_ok=True)
        for tmp in written:
            tmp.unlink(missing_ok=True)
        raise
    if had_previous:
        backup.unlink()

    logger.info("Wrote %d rows to %s", len(embedding), embedding_path)
    logger.info("Wrote %d rows to %s", len(clusters), cluster_path)
    return embedding_path, cluster_path


def read_export_tables(embedding_path, cluster_path) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Read a written pair back with barcodes and cluster labels kept as strings."""
    embedding = pd.read_csv(embedding_path, dtype={BARCODE_COLUMN: str})
    clusters = pd.read_csv(cluster_path, dtype=str)
    return embedding, clusters
