"""
Tests for per-cell QC metrics and threshold-based filtering.
"""

import numpy as np
import pandas as pd
import pytest

from brainatac import qc
from brainatac.annotation import GeneAnnotation
from brainatac.config import QC_THRESHOLDS, validate_thresholds

from conftest import TEST_THRESHOLDS


class TestMetrics:
    def test_nucleosome_signal(self, chromatin):
        signal = qc.nucleosome_signal(chromatin)

        assert signal.index.equals(chromatin.obs_names)
        assert (signal.dropna() >= 0).all()
        assert chromatin.obs["nucleosome_percentile"].between(0, 1).all()

    def test_nucleosome_signal_nan_without_nfr(self, tmp_path):
        """A cell with only mononucleosomal fragments has no defined ratio."""
        from anndata import AnnData

        path = tmp_path / "frags.tsv.gz"
        pd.DataFrame(
            [("chr1", 0, 200, "A-1", 1), ("chr1", 0, 100, "B-1", 1), ("chr1", 10, 210, "B-1", 1)]
        ).to_csv(path, sep="\t", header=False, index=False, compression="gzip")
        adata = AnnData(np.zeros((2, 1), dtype=np.float32))
        adata.obs_names = ["A-1", "B-1"]

        signal = qc.nucleosome_signal(adata, fragments=path)

        assert np.isnan(signal["A-1"])
        assert signal["B-1"] == 1.0

    def test_tss_enrichment(self, chromatin, dataset):
        scores = qc.tss_enrichment(chromatin)

        profile = chromatin.obsm["tss_profile"]
        assert profile.shape == (chromatin.n_obs, 2001)
        assert chromatin.uns["tss_profile_params"] == {"window": 1000, "flank": 100, "center": 50}

        # Cells with open promoters are enriched, background-only cells are not
        good = scores.drop(dataset.low_quality)
        bad = scores[dataset.low_quality]
        assert good.median() > 5
        assert good.median() > 3 * bad.median()

    def test_tss_enrichment_zero_flank_uses_population_mean(self, tmp_path):
        """A cell without flank insertions is scored against the mean flank of all cells."""
        from anndata import AnnData

        annotation = GeneAnnotation(
            pd.DataFrame(
                {
                    "chrom": ["chr1"],
                    "start": [5000],
                    "end": [9000],
                    "strand": ["+"],
                    "gene_name": ["Neurod6"],
                }
            )
        )
        path = tmp_path / "frags.tsv.gz"
        pd.DataFrame(
            # B-1 cuts at offsets -950 and +959 (both flanks), A-1 at -10 and +9 (center)
            [("chr1", 4050, 5960, "B-1", 1), ("chr1", 4990, 5010, "A-1", 1)]
        ).to_csv(path, sep="\t", header=False, index=False, compression="gzip")
        adata = AnnData(np.zeros((2, 1), dtype=np.float32))
        adata.obs_names = ["A-1", "B-1"]

        scores = qc.tss_enrichment(adata, annotation=annotation, fragments=path)

        population_flank = (0 + 2 / 200) / 2
        assert scores["A-1"] == pytest.approx((2 / 101) / population_flank)
        assert scores["B-1"] == 0

    def test_tss_enrichment_geometry(self, chromatin):
        with pytest.raises(ValueError):
            qc.tss_enrichment(chromatin, window=100, flank=200)

    def test_peak_metrics_from_fragments(self, chromatin, dataset):
        qc.add_peak_metrics(chromatin, blacklist=dataset.blacklist)

        obs = chromatin.obs
        assert (obs["peak_region_fragments"] <= obs["passed_filters"]).all()
        assert obs["pct_reads_in_peaks"].between(0, 100).all()
        assert (obs["blacklist_ratio"].dropna() >= 0).all()
        assert obs.loc[dataset.low_quality, "pct_reads_in_peaks"].max() < 20

    def test_peak_metrics_prefer_metadata(self, chromatin):
        chromatin.obs["peak_region_fragments"] = 50
        chromatin.obs["blacklist_region_fragments"] = 5
        chromatin.obs["passed_filters"] = 100

        qc.add_peak_metrics(chromatin)

        assert (chromatin.obs["pct_reads_in_peaks"] == 50).all()
        assert (chromatin.obs["blacklist_ratio"] == 0.1).all()

    def test_no_blacklist_is_zero(self, chromatin):
        qc.add_peak_metrics(chromatin)
        assert (chromatin.obs["blacklist_region_fragments"] == 0).all()

    def test_qc_groups(self, chromatin):
        chromatin.obs["tss_enrichment"] = [1.0, 3.0] * (chromatin.n_obs // 2)
        chromatin.obs["nucleosome_signal"] = [5.0, 0.5] * (chromatin.n_obs // 2)

        qc.annotate_qc_groups(chromatin)

        assert chromatin.obs["high_tss"].tolist()[:2] == ["Low", "High"]
        assert chromatin.obs["nucleosome_group"].tolist()[:2] == ["NS > 4", "NS < 4"]

    def test_qc_groups_require_metrics(self, chromatin):
        with pytest.raises(ValueError):
            qc.annotate_qc_groups(chromatin)

    def test_compute_qc_metrics(self, chromatin, dataset):
        summary = qc.compute_qc_metrics(chromatin, blacklist=dataset.blacklist)

        expected = {
            "peak_region_fragments",
            "pct_reads_in_peaks",
            "blacklist_ratio",
            "nucleosome_signal",
            "tss_enrichment",
        }
        assert set(summary.columns) == expected
        assert {"high_tss", "nucleosome_group"} <= set(chromatin.obs.columns)


class TestFiltering:
    def test_default_thresholds_are_valid(self):
        assert validate_thresholds(QC_THRESHOLDS)

    def test_validate_rejects_bad_thresholds(self):
        bad = dict(QC_THRESHOLDS, min_peak_region_fragments=200_000)
        with pytest.raises(ValueError):
            validate_thresholds(bad)

        missing = {k: v for k, v in QC_THRESHOLDS.items() if k != "min_tss_enrichment"}
        with pytest.raises(ValueError):
            validate_thresholds(missing)

    def test_passes_qc_strict_inequalities(self, chromatin):
        chromatin.obs["tss_enrichment"] = [2.0, 2.5] + [np.nan] * (chromatin.n_obs - 2)

        keep = qc.passes_qc(chromatin, {"min_tss_enrichment": 2})

        assert keep.tolist()[:2] == [False, True]
        # NaN fails every predicate
        assert not keep.iloc[2:].any()

    def test_passes_qc_unknown_threshold(self, chromatin):
        with pytest.raises(ValueError):
            qc.passes_qc(chromatin, {"min_fragment_length": 3})

    def test_passes_qc_missing_metric(self, chromatin):
        with pytest.raises(ValueError):
            qc.passes_qc(chromatin, {"max_nucleosome_signal": 4})

    def test_filter_cells(self, qc_chromatin, dataset):
        kept = set(qc_chromatin.obs_names)

        assert kept.isdisjoint(dataset.low_quality)
        assert len(kept) >= 0.9 * len(dataset.truth)
        assert qc_chromatin.uns["qc_thresholds"] == TEST_THRESHOLDS
        assert qc.passes_qc(qc_chromatin, TEST_THRESHOLDS).all()
