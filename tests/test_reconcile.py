"""
Unit tests for barcode reconciliation.
"""
import pandas as pd
import pytest

from visium_integration.errors import (
    DuplicateBarcodeError,
    MalformedBarcodeError,
    UnknownSampleError,
)
from visium_integration.reconcile import (
    assign_samples,
    match_sample,
    reconcile_barcode,
    reconcile_records,
)


@pytest.mark.unit
class TestReconcileBarcode:
    def test_first_sample_keeps_suffix_one(self):
        assert reconcile_barcode("IF_ACGTACGTACGTACGT-1", "IF", 1) == "ACGTACGTACGTACGT-1"

    def test_second_sample_gets_suffix_two(self):
        assert reconcile_barcode("BF_TTGGCCAATTGGCCAA-1", "BF", 2) == "TTGGCCAATTGGCCAA-2"

    def test_custom_strip_length(self):
        assert reconcile_barcode("S_ACGT-10", "S", 3, suffix_strip_length=3) == "ACGT-3"

    def test_wrong_prefix_raises(self):
        with pytest.raises(UnknownSampleError):
            reconcile_barcode("BF_ACGT-1", "IF", 1)

    def test_too_short_raises(self):
        with pytest.raises(MalformedBarcodeError):
            reconcile_barcode("IF_A", "IF", 1)

    def test_nothing_left_after_strip_raises(self):
        with pytest.raises(MalformedBarcodeError):
            reconcile_barcode("IF_-1", "IF", 1)

    def test_zero_strip_keeps_raw_barcode(self):
        assert reconcile_barcode("IF_ACGTACGT", "IF", 1, suffix_strip_length=0) == "ACGTACGT-1"

    def test_negative_strip_raises(self):
        with pytest.raises(ValueError):
            reconcile_barcode("IF_ACGTACGT-1", "IF", 1, suffix_strip_length=-1)

    def test_deterministic(self):
        first = reconcile_barcode("IF_ACGTACGTACGTACGT-1", "IF", 1)
        second = reconcile_barcode("IF_ACGTACGTACGTACGT-1", "IF", 1)
        assert first == second


@pytest.mark.unit
class TestMatchSample:
    def test_matches_by_prefix(self):
        assert match_sample("BF_ACGT-1", ["IF", "BF"]) == 1

    def test_no_match(self):
        assert match_sample("XX_ACGT-1", ["IF", "BF"]) is None

    def test_label_without_separator_does_not_match(self):
        assert match_sample("IFX_ACGT-1", ["IF"]) is None

    def test_longest_label_wins(self):
        assert match_sample("A_B_ACGT-1", ["A", "A_B"]) == 1
        assert match_sample("A_ACGT-1", ["A", "A_B"]) == 0

    def test_assign_samples_reports_unknown(self):
        with pytest.raises(UnknownSampleError, match="XX_ACGT-1"):
            assign_samples(["IF_ACGT-1", "XX_ACGT-1"], ["IF", "BF"])


@pytest.mark.unit
class TestReconcileRecords:
    def test_row_counts_match_observations(self, records):
        embedding, clusters = reconcile_records(records, ["IF", "BF"])
        assert len(embedding) == len(records)
        assert len(clusters) == len(records)

    def test_headers(self, records):
        embedding, clusters = reconcile_records(records, ["IF", "BF"])
        assert list(embedding.columns) == ["Barcode", "UMAP-1", "UMAP-2"]
        assert list(clusters.columns) == ["Barcode", "clusters"]

    def test_sample_order_then_input_order(self, records):
        embedding, _ = reconcile_records(records, ["IF", "BF"])
        assert list(embedding["Barcode"]) == [
            "ACGTACGTACGTACGT-1",
            "AAAACCCCGGGGTTTT-1",
            "CCCCAAAAGGGGTTTT-1",
            "TTGGCCAATTGGCCAA-2",
            "ACGTACGTACGTACGT-2",
        ]

    def test_configured_order_sets_ordinal(self, records):
        embedding, _ = reconcile_records(records, ["BF", "IF"])
        assert list(embedding["Barcode"][:2]) == ["TTGGCCAATTGGCCAA-1", "ACGTACGTACGTACGT-1"]
        assert embedding["Barcode"].iloc[2] == "ACGTACGTACGTACGT-2"

    def test_payload_follows_barcode(self, records):
        embedding, clusters = reconcile_records(records, ["IF", "BF"])
        row = embedding.set_index("Barcode").loc["TTGGCCAATTGGCCAA-2"]
        assert row["UMAP-1"] == -1.25
        assert row["UMAP-2"] == 0.25
        labels = clusters.set_index("Barcode")["clusters"]
        assert labels["TTGGCCAATTGGCCAA-2"] == "1"
        assert labels["ACGTACGTACGTACGT-2"] == "2"

    def test_barcode_sets_equal(self, records):
        embedding, clusters = reconcile_records(records, ["IF", "BF"])
        assert set(embedding["Barcode"]) == set(clusters["Barcode"])

    def test_same_raw_barcode_in_two_samples(self, records):
        embedding, _ = reconcile_records(records, ["IF", "BF"])
        barcodes = set(embedding["Barcode"])
        assert "ACGTACGTACGTACGT-1" in barcodes
        assert "ACGTACGTACGTACGT-2" in barcodes

    def test_three_samples(self):
        records = pd.DataFrame(
            {"UMAP-1": [1.0, 2.0, 3.0, 4.0], "clusters": ["a", "b", "a", "c"]},
            index=["A_AC-1", "B_GG-1", "C_TT-1", "C_CA-1"],
        )
        embedding, clusters = reconcile_records(records, ["A", "B", "C"])
        assert list(embedding["Barcode"]) == ["AC-1", "GG-2", "TT-3", "CA-3"]
        assert list(clusters["clusters"]) == ["a", "b", "a", "c"]

    def test_unknown_sample_raises(self, records):
        records.loc["XX_GGGGGGGGGGGGGGGG-1"] = [0.0, 0.0, "0"]
        with pytest.raises(UnknownSampleError):
            reconcile_records(records, ["IF", "BF"])

    def test_empty_sample_contributes_no_rows(self, records):
        embedding, clusters = reconcile_records(records, ["IF", "BF", "EMPTY"])
        assert len(embedding) == len(records)
        assert not embedding["Barcode"].str.endswith("-3").any()
        assert len(clusters) == len(records)

    def test_all_empty(self):
        records = pd.DataFrame(
            {"UMAP-1": pd.Series([], dtype=float), "clusters": pd.Series([], dtype=str)}
        )
        embedding, clusters = reconcile_records(records, ["IF", "BF"])
        assert len(embedding) == 0
        assert list(embedding.columns) == ["Barcode", "UMAP-1"]
        assert len(clusters) == 0

    def test_collision_within_sample_raises(self):
        records = pd.DataFrame(
            {"UMAP-1": [1.0, 2.0], "clusters": ["0", "1"]},
            index=["IF_ACGT-1", "IF_ACGT-2"],
        )
        with pytest.raises(DuplicateBarcodeError):
            reconcile_records(records, ["IF", "BF"])

    def test_malformed_barcode_raises(self):
        records = pd.DataFrame({"UMAP-1": [1.0], "clusters": ["0"]}, index=["IF_1"])
        with pytest.raises(MalformedBarcodeError):
            reconcile_records(records, ["IF"])

    def test_selected_coordinate_columns(self, records):
        embedding, _ = reconcile_records(records, ["IF", "BF"], coord_columns=["UMAP-2"])
        assert list(embedding.columns) == ["Barcode", "UMAP-2"]

    def test_zero_strip_length(self):
        records = pd.DataFrame(
            {"UMAP-1": [1.0, 2.0], "clusters": ["0", "1"]},
            index=["IF_ACGTACGT", "IF_TTGGCCAA"],
        )
        embedding, _ = reconcile_records(records, ["IF"], suffix_strip_length=0)
        assert list(embedding["Barcode"]) == ["ACGTACGT-1", "TTGGCCAA-1"]

    def test_negative_strip_length_raises(self, records):
        with pytest.raises(ValueError):
            reconcile_records(records, ["IF", "BF"], suffix_strip_length=-2)

    def test_no_samples_raises(self, records):
        with pytest.raises(ValueError):
            reconcile_records(records, [])
