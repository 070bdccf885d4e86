"""
Load per-sample 10x count matrices and merge them into one AnnData.

Each sample's barcodes are prefixed with its sample label so that the merged
object has unique observation names, e.g. ``IF_ACGTACGTACGTACGT-1``.
"""

import gzip
import logging
from pathlib import Path
from typing import Dict, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.io
import scipy.sparse as sp

from .download import extract_archive, find_matrix_dir
from .errors import ConfigError, MissingInputError, SchemaError

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar")


def composite_barcode(sample_id: str, raw_barcode: str) -> str:
    """Prefix a raw barcode with its sample label."""
    return f"{sample_id}_{raw_barcode}"


def locate_matrix_files(matrix_dir: Path) -> Tuple[Path, Path, Path]:
    """
    Find the matrix, barcode and feature files of a 10x triple.

    Accepts the gzipped v3 layout (``features.tsv.gz``) and the plain legacy
    v2 layout (``genes.tsv``), the two layouts ``scanpy.read_10x_mtx`` reads.

    Raises
    ------
    MissingInputError
        If any of the three files is absent.
    """
    if (matrix_dir / "genes.tsv").is_file():
        names = {"matrix": "matrix.mtx", "barcodes": "barcodes.tsv", "features": "genes.tsv"}
    else:
        names = {
            "matrix": "matrix.mtx.gz",
            "barcodes": "barcodes.tsv.gz",
            "features": "features.tsv.gz",
        }
    paths = {key: matrix_dir / name for key, name in names.items()}
    missing = [name for key, name in names.items() if not paths[key].is_file()]
    if missing:
        raise MissingInputError(
            f"Incomplete matrix triple in {matrix_dir}: missing {', '.join(missing)}"
        )
    return paths["matrix"], paths["barcodes"], paths["features"]


def _open_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "rt")
    return open(path)


def _read_lines(path: Path) -> list:
    try:
        with _open_text(path) as f:
            return [line.rstrip("\n") for line in f if line.strip()]
    except OSError as e:
        raise MissingInputError(f"Cannot read {path}: {e}") from e


def check_matrix_triple(matrix_dir: Path) -> Tuple[int, int]:
    """
    Verify that the matrix header agrees with the feature and barcode lists.

    Returns
    -------
    tuple of int
        ``(n_barcodes, n_features)``.

    Raises
    ------
    SchemaError
        If the Matrix Market dimensions do not match the list lengths.
    """
    matrix, barcodes, features = locate_matrix_files(matrix_dir)
    try:
        n_rows, n_cols = scipy.io.mminfo(str(matrix))[:2]
    except (OSError, ValueError) as e:
        raise SchemaError(f"Unreadable matrix header in {matrix}: {e}") from e

    n_features = len(_read_lines(features))
    n_barcodes = len(_read_lines(barcodes))

    # 10x matrices are stored features x barcodes
    if n_rows != n_features or n_cols != n_barcodes:
        raise SchemaError(
            f"Matrix {matrix} is {n_rows} x {n_cols} but lists "
            f"{n_features} features and {n_barcodes} barcodes"
        )
    return n_barcodes, n_features


def _empty_fragment(matrix_dir: Path) -> ad.AnnData:
    _, _, features = locate_matrix_files(matrix_dir)
    rows = [line.split("\t") for line in _read_lines(features)]
    gene_ids = [r[0] for r in rows]
    symbols = [r[1] if len(r) > 1 else r[0] for r in rows]
    var = pd.DataFrame({"gene_ids": gene_ids}, index=pd.Index(symbols))
    adata = ad.AnnData(X=sp.csr_matrix((0, len(rows)), dtype=np.float32), var=var)
    adata.var_names_make_unique()
    return adata


def resolve_matrix_source(matrix_source) -> Path:
    """Return a directory holding the matrix triple, extracting archives if needed."""
    source = Path(matrix_source)
    if not source.exists():
        raise MissingInputError(f"Matrix source not found: {source}")
    if source.is_file():
        if source.name.endswith(ARCHIVE_SUFFIXES):
            return extract_archive(source)
        raise MissingInputError(
            f"Matrix source {source} is neither a directory nor a tar archive"
        )
    return find_matrix_dir(source)


def load_sample(
    sample_id: str,
    matrix_source,
    batch_key: str = "sample",
) -> ad.AnnData:
    """
    Load one sample's count matrix with sample-prefixed barcodes.

    Parameters
    ----------
    sample_id : str
        Sample label, unique within the run.
    matrix_source : str or Path
        Directory with a 10x matrix triple, or a tar archive containing one.
    batch_key : str
        Column in ``.obs`` that receives the sample label.

    Returns
    -------
    AnnData
        Fragment with ``obs_names`` of the form ``<sample_id>_<raw_barcode>``
        in the order of the barcode file, ``obs[batch_key]`` set to the
        sample label and ``obs['raw_barcode']`` holding the original barcode.

    Raises
    ------
    MissingInputError
        If the source or one of its files is absent or unreadable.
    SchemaError
        If the matrix dimensions disagree with the barcode or feature list.
    """
    matrix_dir = resolve_matrix_source(matrix_source)
    n_barcodes, n_features = check_matrix_triple(matrix_dir)

    if n_barcodes == 0:
        logger.warning("Sample %s has no barcodes", sample_id)
        adata = _empty_fragment(matrix_dir)
    else:
        try:
            adata = sc.read_10x_mtx(matrix_dir, var_names="gene_symbols", make_unique=True)
        except (OSError, EOFError) as e:
            raise MissingInputError(f"Cannot read matrix in {matrix_dir}: {e}") from e
        except ValueError as e:
            raise SchemaError(f"Inconsistent matrix triple in {matrix_dir}: {e}") from e

    raw = adata.obs_names.to_numpy(dtype=str)
    adata.obs["raw_barcode"] = raw
    adata.obs_names = [composite_barcode(sample_id, b) for b in raw]
    adata.obs[batch_key] = sample_id

    if not adata.obs_names.is_unique:
        raise SchemaError(f"Sample {sample_id} contains duplicated barcodes")

    logger.info("Loaded %s: %d spots x %d genes", sample_id, adata.n_obs, adata.n_vars)
    return adata


def load_samples(
    sources: Dict[str, Path],
    batch_key: str = "sample",
) -> Dict[str, ad.AnnData]:
    """Load several samples into a dictionary keyed by sample label."""
    adatas = {}
    for sample_id, path in sources.items():
        adatas[sample_id] = load_sample(sample_id, path, batch_key=batch_key)
    return adatas


def merge_samples(
    adatas: Dict[str, ad.AnnData],
    batch_key: str = "sample",
    join: str = "inner",
) -> ad.AnnData:
    """
    Concatenate sample fragments into one AnnData.

    Parameters
    ----------
    adatas : dict
        Fragments keyed by sample label, as returned by ``load_samples``.
    batch_key : str
        Column name for sample labels.
    join : str
        Join type for genes ('inner' or 'outer').

    Returns
    -------
    AnnData
        Merged dataset with a categorical ``obs[batch_key]``.
    """
    if len(adatas) == 0:
        raise ConfigError("No samples to merge")

    labels = [str(v) for a in adatas.values() for v in pd.unique(a.obs[batch_key])]
    if len(labels) != len(set(labels)):
        raise ConfigError(f"Fragments share sample labels: {labels}")
    unknown = set(labels) - set(adatas)
    if unknown:
        raise ConfigError(f"Fragment labels {sorted(unknown)} do not match their keys")

    merged = ad.concat(list(adatas.values()), join=join, merge="same")
    if not merged.obs_names.is_unique:
        raise SchemaError("Merged dataset has duplicated composite barcodes")

    merged.obs[batch_key] = pd.Categorical(
        merged.obs[batch_key].astype(str), categories=list(adatas.keys())
    )

    logger.info("Merged shape: %s", merged.shape)
    for batch, count in merged.obs[batch_key].value_counts(sort=False).items():
        logger.info("  %s: %d spots", batch, count)
    return merged
