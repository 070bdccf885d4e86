"""
Map composite barcodes back to per-sample barcodes for Loupe Browser.

Loupe expects barcodes in Space Ranger's aggregated form, where the
instrument suffix ``-1`` is replaced by the 1-based position of the sample
in the aggregation: the ``IF`` spot ``IF_ACGTACGTACGTACGT-1`` of the first
sample becomes ``ACGTACGTACGTACGT-1`` and ``BF_TTGGCCAATTGGCCAA-1`` of the
second becomes ``TTGGCCAATTGGCCAA-2``.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .errors import (
    DuplicateBarcodeError,
    MalformedBarcodeError,
    UnknownSampleError,
)
from .integration import CLUSTER_COLUMN

logger = logging.getLogger(__name__)

BARCODE_COLUMN = "Barcode"


def match_sample(composite: str, sample_ids: Sequence[str]) -> Optional[int]:
    """
    Return the 0-based index of the sample whose prefix ``composite`` carries.

    When several sample labels match (``A`` and ``A_B`` both prefix
    ``A_B_ACGT-1``), the longest label wins. Returns None when none match.
    """
    best = None
    for i, sample_id in enumerate(sample_ids):
        if composite.startswith(f"{sample_id}_"):
            if best is None or len(sample_id) > len(sample_ids[best]):
                best = i
    return best


def reconcile_barcode(
    composite: str,
    sample_id: str,
    ordinal: int,
    suffix_strip_length: int = 2,
) -> str:
    """
    Rewrite one composite barcode for export.

    Parameters
    ----------
    composite : str
        ``<sample_id>_<raw_barcode>`` as produced by the loader.
    sample_id : str
        Label of the sample the barcode belongs to.
    ordinal : int
        1-based position of the sample in the configured order.
    suffix_strip_length : int
        Number of trailing instrument characters to drop (``-1`` is 2).

    Returns
    -------
    str
        ``<raw_barcode without suffix>-<ordinal>``.

    Raises
    ------
    UnknownSampleError
        If ``composite`` does not start with ``<sample_id>_``.
    MalformedBarcodeError
        If nothing would remain after removing the instrument suffix.
    ValueError
        If ``suffix_strip_length`` is negative.
    """
    if suffix_strip_length < 0:
        raise ValueError(f"suffix_strip_length must be >= 0, got {suffix_strip_length}")
    prefix = f"{sample_id}_"
    if not composite.startswith(prefix):
        raise UnknownSampleError(
            f"Barcode '{composite}' does not belong to sample '{sample_id}'"
        )
    raw = composite[len(prefix):]
    if len(raw) <= suffix_strip_length:
        raise MalformedBarcodeError(
            f"Barcode '{composite}' is too short to strip a "
            f"{suffix_strip_length}-character suffix"
        )
    return f"{raw[:len(raw) - suffix_strip_length]}-{ordinal}"


def assign_samples(barcodes: Sequence[str], sample_ids: Sequence[str]) -> List[int]:
    """
    Assign every composite barcode to a configured sample index.

    Raises
    ------
    UnknownSampleError
        Listing the barcodes (up to five) that match no configured sample.
    """
    assigned = [match_sample(b, sample_ids) for b in barcodes]
    unknown = [b for b, i in zip(barcodes, assigned) if i is None]
    if unknown:
        shown = ", ".join(unknown[:5])
        raise UnknownSampleError(
            f"{len(unknown)} barcode(s) match no configured sample "
            f"{list(sample_ids)}: {shown}"
        )
    return assigned


def reconcile_records(
    records: pd.DataFrame,
    sample_ids: Sequence[str],
    coord_columns: Optional[Sequence[str]] = None,
    cluster_column: str = CLUSTER_COLUMN,
    suffix_strip_length: int = 2,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Build the embedding and cluster tables for export.

    Parameters
    ----------
    records : pd.DataFrame
        One row per spot, indexed by composite barcode, as returned by
        ``integration.embedding_records``.
    sample_ids : sequence of str
        Sample labels in export order; position ``i`` gets suffix ``-{i+1}``.
    coord_columns : sequence of str, optional
        Coordinate columns to export. Defaults to every column except
        ``cluster_column``.
    cluster_column : str
        Column holding cluster labels.
    suffix_strip_length : int
        Trailing instrument characters removed from each raw barcode.

    Returns
    -------
    tuple of pd.DataFrame
        ``(embedding, clusters)`` with columns ``Barcode, <coords...>`` and
        ``Barcode, clusters``. Rows follow the configured sample order, and
        the input order within each sample.

    Raises
    ------
    UnknownSampleError
        If any barcode carries no configured sample prefix.
    MalformedBarcodeError
        If a barcode is too short to strip the suffix.
    DuplicateBarcodeError
        If two barcodes of one sample reconcile to the same value.
    """
    if len(sample_ids) == 0:
        raise ValueError("At least one sample must be configured")
    if suffix_strip_length < 0:
        raise ValueError(f"suffix_strip_length must be >= 0, got {suffix_strip_length}")
    if coord_columns is None:
        coord_columns = [c for c in records.columns if c != cluster_column]
    coord_columns = list(coord_columns)

    barcodes = [str(b) for b in records.index]
    assigned = assign_samples(barcodes, sample_ids)

    by_sample: Dict[int, List[int]] = {i: [] for i in range(len(sample_ids))}
    for row, sample_index in enumerate(assigned):
        by_sample[sample_index].append(row)

    embedding_parts = []
    cluster_parts = []
    for sample_index, sample_id in enumerate(sample_ids):
        rows = by_sample[sample_index]
        ordinal = sample_index + 1
        reconciled = [
            reconcile_barcode(barcodes[r], sample_id, ordinal, suffix_strip_length)
            for r in rows
        ]

        duplicated = pd.Index(reconciled)[pd.Index(reconciled).duplicated()]
        if len(duplicated):
            raise DuplicateBarcodeError(
                f"Sample '{sample_id}' has barcodes that collide after stripping "
                f"{suffix_strip_length} characters: {', '.join(duplicated[:5])}"
            )

        subset = records.iloc[rows]
        embedding = subset[coord_columns].reset_index(drop=True)
        embedding.insert(0, BARCODE_COLUMN, reconciled)
        clusters = pd.DataFrame(
            {
                BARCODE_COLUMN: reconciled,
                CLUSTER_COLUMN: subset[cluster_column].astype(str).to_numpy(),
            }
        )
        embedding_parts.append(embedding)
        cluster_parts.append(clusters)
        logger.info("Sample %s (-%d): %d spots", sample_id, ordinal, len(rows))

    embedding_table = pd.concat(embedding_parts, ignore_index=True)
    cluster_table = pd.concat(cluster_parts, ignore_index=True)
    return embedding_table, cluster_table
