"""
Tests for Harmony correction, embedding and per-spot records.
"""
import sys
import types

import numpy as np
import pandas as pd
import pytest
from anndata import AnnData

from visium_integration.errors import SchemaError
from visium_integration.integration import (
    coordinate_columns,
    embedding_records,
    run_harmony,
)


def make_embedded_adata(n_if=4, n_bf=3, n_dims=3):
    rng = np.random.default_rng(0)
    names = [f"IF_{'A' * 15}{i}-1" for i in range(n_if)] + [
        f"BF_{'C' * 15}{i}-1" for i in range(n_bf)
    ]
    adata = AnnData(
        X=np.zeros((len(names), 5)),
        obs=pd.DataFrame(
            {
                "sample": pd.Categorical(["IF"] * n_if + ["BF"] * n_bf, categories=["IF", "BF"]),
                "clusters": pd.Categorical([str(i % 2) for i in range(len(names))]),
            },
            index=names,
        ),
    )
    adata.obsm["X_umap"] = rng.normal(size=(len(names), n_dims))
    return adata


def make_batched_adata(n_per_batch=60, n_pcs=10, shift=5.0, seed=0):
    """Two batches drawn from the same distribution, one shifted."""
    rng = np.random.default_rng(seed)
    pcs = rng.normal(size=(2 * n_per_batch, n_pcs))
    pcs[n_per_batch:] += shift
    adata = AnnData(
        X=np.zeros((2 * n_per_batch, 5)),
        obs=pd.DataFrame(
            {"sample": pd.Categorical(["IF"] * n_per_batch + ["BF"] * n_per_batch)},
            index=[f"spot{i}" for i in range(2 * n_per_batch)],
        ),
    )
    adata.obsm["X_pca"] = pcs
    return adata


@pytest.mark.unit
class TestEmbeddingRecords:
    def test_coordinate_columns(self):
        assert coordinate_columns(2) == ["UMAP-1", "UMAP-2"]
        assert coordinate_columns(3, "tSNE") == ["tSNE-1", "tSNE-2", "tSNE-3"]

    def test_one_row_per_spot(self):
        adata = make_embedded_adata()

        records = embedding_records(adata)

        assert list(records.index) == list(adata.obs_names)
        assert list(records.columns) == ["UMAP-1", "UMAP-2", "clusters"]
        np.testing.assert_allclose(records[["UMAP-1", "UMAP-2"]].to_numpy(), adata.obsm["X_umap"][:, :2])

    def test_labels_are_strings(self):
        adata = make_embedded_adata()
        records = embedding_records(adata)
        assert all(isinstance(label, str) for label in records["clusters"])

    def test_custom_cluster_key(self):
        adata = make_embedded_adata()
        adata.obs["leiden_r1"] = adata.obs["clusters"]
        records = embedding_records(adata, cluster_key="leiden_r1")
        assert "clusters" in records.columns

    def test_missing_embedding(self):
        adata = make_embedded_adata()
        with pytest.raises(SchemaError, match="X_tsne"):
            embedding_records(adata, basis="X_tsne")

    def test_missing_clusters(self):
        adata = make_embedded_adata()
        with pytest.raises(SchemaError):
            embedding_records(adata, cluster_key="leiden")

    def test_too_few_dimensions(self):
        adata = make_embedded_adata(n_dims=2)
        with pytest.raises(SchemaError):
            embedding_records(adata, n_dims=3)

    def test_duplicate_names(self):
        adata = make_embedded_adata()
        adata.obs_names = ["IF_X-1"] * adata.n_obs
        with pytest.raises(SchemaError):
            embedding_records(adata)


@pytest.mark.unit
class TestRunHarmony:
    def test_missing_embedding(self):
        adata = make_batched_adata()
        with pytest.raises(ValueError):
            run_harmony(adata, "sample", use_rep="X_scvi")

    def test_missing_batch_key(self):
        adata = make_batched_adata()
        with pytest.raises(ValueError):
            run_harmony(adata, "protocol")

    def test_unknown_method(self):
        adata = make_batched_adata()
        with pytest.raises(ValueError):
            run_harmony(adata, "sample", method="combat")

    @pytest.mark.parametrize("transposed", [False, True])
    def test_corrected_embedding_is_spots_by_dims(self, monkeypatch, transposed):
        adata = make_batched_adata()
        calls = {}

        def fake_run_harmony(data_mat, meta_data, vars_use, **kwargs):
            calls["vars_use"] = vars_use
            calls["kwargs"] = kwargs
            z = np.asarray(data_mat) + 1.0
            return types.SimpleNamespace(Z_corr=z.T if transposed else z)

        monkeypatch.setitem(
            sys.modules, "harmonypy", types.SimpleNamespace(run_harmony=fake_run_harmony)
        )

        corrected = run_harmony(adata, "sample", theta=2.0, max_iter=5)

        assert corrected.shape == (adata.n_obs, 10)
        np.testing.assert_allclose(adata.obsm["X_harmony_sample"], adata.obsm["X_pca"] + 1.0)
        assert calls["vars_use"] == ["sample"]
        assert calls["kwargs"]["theta"] == 2.0
        assert calls["kwargs"]["max_iter_harmony"] == 5


@pytest.mark.slow
def test_harmony_reduces_batch_separation():
    pytest.importorskip("harmonypy")
    adata = make_batched_adata()

    corrected = run_harmony(adata, "sample")

    assert corrected.shape == adata.obsm["X_pca"].shape
    assert "X_harmony_sample" in adata.obsm

    def gap(x):
        return np.linalg.norm(x[:60].mean(axis=0) - x[60:].mean(axis=0))

    assert gap(corrected) < gap(adata.obsm["X_pca"])
