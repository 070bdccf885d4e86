"""
Pytest configuration and shared fixtures.
"""
import gzip
import shutil
import tempfile
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


def random_barcodes(n, seed=0, suffix="-1"):
    """Unique 16-mer barcodes with an instrument suffix."""
    rng = np.random.default_rng(seed)
    barcodes = []
    seen = set()
    while len(barcodes) < n:
        bc = "".join(rng.choice(list("ACGT"), size=16))
        if bc not in seen:
            seen.add(bc)
            barcodes.append(bc + suffix)
    return barcodes


def write_10x_triple(directory, barcodes, genes, counts=None, legacy=False, n_rows=None, n_cols=None):
    """
    Write a 10x matrix triple.

    ``counts`` is genes x barcodes. ``n_rows``/``n_cols`` override the
    dimensions written in the Matrix Market header.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    if counts is None:
        rng = np.random.default_rng(1)
        counts = rng.poisson(2, size=(len(genes), len(barcodes)))
    counts = np.asarray(counts)

    rows, cols = np.nonzero(counts)
    lines = [
        "%%MatrixMarket matrix coordinate integer general",
        "%",
        f"{len(genes) if n_rows is None else n_rows} "
        f"{len(barcodes) if n_cols is None else n_cols} {len(rows)}",
    ]
    lines += [f"{i + 1} {j + 1} {counts[i, j]}" for i, j in zip(rows, cols)]
    matrix_text = "\n".join(lines) + "\n"
    barcode_text = "".join(f"{b}\n" for b in barcodes)

    if legacy:
        feature_text = "".join(f"ENSG{i:05d}\t{g}\n" for i, g in enumerate(genes))
        (directory / "matrix.mtx").write_text(matrix_text)
        (directory / "barcodes.tsv").write_text(barcode_text)
        (directory / "genes.tsv").write_text(feature_text)
    else:
        feature_text = "".join(
            f"ENSG{i:05d}\t{g}\tGene Expression\n" for i, g in enumerate(genes)
        )
        for name, text in (
            ("matrix.mtx.gz", matrix_text),
            ("barcodes.tsv.gz", barcode_text),
            ("features.tsv.gz", feature_text),
        ):
            with gzip.open(directory / name, "wt") as f:
                f.write(text)
    return directory


@pytest.fixture
def temp_dir():
    """Temporary directory, removed after the test."""
    temp_dir_path = Path(tempfile.mkdtemp()).resolve()
    yield temp_dir_path
    shutil.rmtree(str(temp_dir_path), ignore_errors=True)


@pytest.fixture
def genes():
    return [f"Gene{i}" for i in range(20)]


@pytest.fixture
def if_matrix_dir(temp_dir, genes):
    """IF sample with 12 spots."""
    return write_10x_triple(temp_dir / "IF", random_barcodes(12, seed=1), genes)


@pytest.fixture
def bf_matrix_dir(temp_dir, genes):
    """BF sample with 8 spots."""
    return write_10x_triple(temp_dir / "BF", random_barcodes(8, seed=2), genes)


@pytest.fixture
def records():
    """Provider output for two samples: IF (3 spots) and BF (2 spots)."""
    index = [
        "IF_ACGTACGTACGTACGT-1",
        "BF_TTGGCCAATTGGCCAA-1",
        "IF_AAAACCCCGGGGTTTT-1",
        "BF_ACGTACGTACGTACGT-1",
        "IF_CCCCAAAAGGGGTTTT-1",
    ]
    return pd.DataFrame(
        {
            "UMAP-1": [0.5, -1.25, 2.0, 3.5, -0.75],
            "UMAP-2": [1.0, 0.25, -2.5, 4.0, 0.0],
            "clusters": ["0", "1", "0", "2", "1"],
        },
        index=pd.Index(index),
    )
