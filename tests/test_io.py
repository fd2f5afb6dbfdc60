"""
Tests for input readers and result persistence.
"""

import mudata as md
import numpy as np
import pandas as pd
import pytest
from anndata import AnnData
from scipy import sparse

from brainatac import io


class TestReaders:
    def test_read_10x_peak_h5(self, dataset):
        adata = io.read_10x_peak_h5(dataset.counts_h5)

        assert adata.shape == (len(dataset.barcodes), len(dataset.peaks))
        assert list(adata.obs_names) == dataset.barcodes
        assert list(adata.var_names) == list(dataset.peaks.index)
        assert sparse.issparse(adata.X)
        assert adata.X.sum() > 0

    def test_load_chromatin(self, chromatin, dataset):
        # Peak coordinates parsed from names
        first = chromatin.var.iloc[0]
        assert chromatin.var_names[0] == f"{first['chrom']}:{first['start']}-{first['end']}"

        # Metadata joined on barcode, ambient barcodes dropped
        assert "passed_filters" in chromatin.obs
        assert chromatin.n_obs == len(dataset.barcodes)
        assert (chromatin.obs["is__cell_barcode"] == 1).all()

        assert "counts" in chromatin.layers
        assert {"total_counts", "n_peaks_by_counts"} <= set(chromatin.obs.columns)
        assert chromatin.uns["files"]["fragments"] == str(dataset.fragments)

    def test_load_without_metadata(self, dataset):
        adata = io.load_chromatin(dataset.counts_h5)
        assert "passed_filters" not in adata.obs
        assert adata.uns["files"] == {}

    def test_read_reference(self, dataset):
        reference = io.read_reference(dataset.reference, label_key="subclass")
        assert reference.obs["subclass"].nunique() == 3

    def test_read_reference_missing_label(self, dataset):
        with pytest.raises(ValueError):
            io.read_reference(dataset.reference, label_key="cluster_label")


class TestWriteResult:
    def _small(self):
        adata = AnnData(np.ones((4, 3), dtype=np.float32))
        adata.obs_names = [f"c{i}" for i in range(4)]
        adata.var_names = [f"chr1:{i * 100}-{i * 100 + 50}" for i in range(3)]
        adata.obs["label"] = pd.Series(["a", None, "b", "a"], index=adata.obs_names, dtype=object)
        adata.uns["params"] = {"ident_2": None, "dims": (2, 30), "name": "x"}
        adata.uns["nothing"] = None
        return adata

    def test_h5ad_without_activity(self, tmp_path):
        path = io.write_result(self._small(), tmp_path / "out" / "result.h5mu")

        assert path.suffix == ".h5ad"
        restored = io.read_result(path)
        assert restored.n_obs == 4
        # None entries are dropped, tuples become lists
        assert "nothing" not in restored.uns
        assert "ident_2" not in restored.uns["params"]
        assert list(restored.uns["params"]["dims"]) == [2, 30]

    def test_missing_values_survive_and_input_is_untouched(self, tmp_path):
        adata = self._small()
        adata.uns["da_peaks"] = pd.DataFrame(
            {"p_val": [0.01, 0.2], "closest_gene": ["Sst", None]}, index=["p1", "p2"]
        )

        path = io.write_result(adata, tmp_path / "result.h5ad")

        # The caller's object keeps its dtypes and values
        assert adata.obs["label"].dtype == object
        assert adata.obs["label"].tolist() == ["a", None, "b", "a"]
        assert "nothing" in adata.uns

        restored = io.read_result(path)
        assert restored.obs["label"].isna().tolist() == [False, True, False, False]
        assert restored.obs["label"].iloc[0] == "a"
        genes = restored.uns["da_peaks"]["closest_gene"]
        assert genes.isna().tolist() == [False, True]

    def test_h5mu_with_activity(self, tmp_path):
        adata = self._small()
        activity = AnnData(np.zeros((4, 2), dtype=np.float32))
        activity.obs_names = adata.obs_names
        activity.var_names = ["Gad2", "Sst"]

        path = io.write_result(adata, tmp_path / "result", gene_activity=activity)

        assert path.suffix == ".h5mu"
        mdata = io.read_result(path)
        assert isinstance(mdata, md.MuData)
        assert set(mdata.mod) == {"peaks", "activity"}
        assert mdata["activity"].n_vars == 2
