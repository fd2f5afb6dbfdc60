"""Per-cell quality-control metrics for scATAC-seq and threshold-based cell filtering."""

from __future__ import annotations

import operator
import warnings
from pathlib import Path
from typing import Dict, Sequence

import numpy as np
import pandas as pd
from anndata import AnnData

from .annotation import GeneAnnotation
from .config import (
    HIGH_TSS_CUTOFF,
    NUCLEOSOME_GROUP_CUTOFF,
    QC_THRESHOLDS,
    TSS_CENTER,
    TSS_FLANK,
    TSS_WINDOW,
)
from .fragments import FragmentFile, get_fragments, sparse_counts
from .regions import points_in_intervals, read_bed

# Threshold name -> (obs column, predicate a retained cell must satisfy)
QC_PREDICATES = {
    "min_peak_region_fragments": ("peak_region_fragments", operator.gt),
    "max_peak_region_fragments": ("peak_region_fragments", operator.lt),
    "min_pct_reads_in_peaks": ("pct_reads_in_peaks", operator.gt),
    "max_blacklist_ratio": ("blacklist_ratio", operator.lt),
    "max_nucleosome_signal": ("nucleosome_signal", operator.lt),
    "min_tss_enrichment": ("tss_enrichment", operator.gt),
}


def nucleosome_signal(adata: AnnData, fragments: FragmentFile | str | None = None) -> pd.Series:
    """Ratio of mononucleosomal to nucleosome-free fragments per cell.

    Writes ``obs["nucleosome_signal"]`` and ``obs["nucleosome_percentile"]``.
    Cells without nucleosome-free fragments get NaN.
    """
    frags = get_fragments(adata, fragments)
    stats = frags.fragment_stats()

    nfr = stats["nucleosome_free"].to_numpy(dtype=float)
    mono = stats["mononucleosomal"].to_numpy(dtype=float)
    signal = np.divide(mono, nfr, out=np.full_like(mono, np.nan), where=nfr > 0)

    adata.obs["nucleosome_signal"] = signal
    adata.obs["nucleosome_percentile"] = adata.obs["nucleosome_signal"].rank(pct=True).round(2)
    return adata.obs["nucleosome_signal"]


def tss_enrichment(
    adata: AnnData,
    annotation: GeneAnnotation | None = None,
    fragments: FragmentFile | str | None = None,
    window: int = TSS_WINDOW,
    flank: int = TSS_FLANK,
    center: int = TSS_CENTER,
    biotypes: Sequence[str] | None = ("protein_coding",),
) -> pd.Series:
    """
    Compute a per-cell TSS enrichment score from Tn5 insertions.

    Insertions within ``window`` bases of each unique TSS are counted per
    strand-oriented offset. The raw cells x offsets profile is stored in
    ``adata.obsm["tss_profile"]`` for plotting.

    Parameters
    ----------
    adata : AnnData
        Chromatin object; cells define the rows of the profile.
    annotation : GeneAnnotation, optional
        Gene models. Defaults to the annotation attached to ``adata``.
    fragments : FragmentFile or str, optional
        Defaults to the fragment file recorded on ``adata``.
    window, flank, center : int
        Profile half-width, width of each background flank, and half-width of
        the central window the score averages over.
    biotypes : Sequence[str], optional
        Gene biotypes contributing TSSs.

    Returns
    -------
    pd.Series
        ``obs["tss_enrichment"]``.

    Notes
    -----
    The background for a cell is the mean insertion count over the outermost
    ``flank`` offsets on both sides. Cells with zero background use the mean
    background of all cells.
    """
    if not 0 < flank <= window or not 0 <= center < window:
        raise ValueError("Require 0 < flank <= window and 0 <= center < window")

    annotation = annotation if annotation is not None else GeneAnnotation.from_adata(adata)
    frags = get_fragments(adata, fragments)

    tss = annotation.tss(biotypes)
    tss_pos = tss["position"].to_numpy()
    tss_minus = (tss["strand"] == "-").to_numpy()
    intervals = pd.DataFrame(
        {
            "chrom": tss["chrom"],
            "start": np.maximum(tss_pos - window, 0),
            "end": tss_pos + window + 1,
        }
    )

    rows, cols = [], []
    for chunk in frags.iter_chunks():
        ins = frags.insertions(chunk)
        p_idx, t_idx = points_in_intervals(ins["chrom"], ins["position"], intervals)
        offset = ins["position"].to_numpy()[p_idx] - tss_pos[t_idx]
        offset = np.where(tss_minus[t_idx], -offset, offset) + window
        rows.append(ins["cell"].to_numpy()[p_idx])
        cols.append(offset)

    width = 2 * window + 1
    profile = sparse_counts(rows, cols, (frags.n_cells, width))

    flank_sum = profile[:, :flank].sum(axis=1) + profile[:, width - flank :].sum(axis=1)
    flank_mean = np.asarray(flank_sum, dtype=float).ravel() / (2 * flank)
    zero = flank_mean == 0
    if zero.any():
        population_mean = flank_mean.mean()
        if population_mean == 0:
            warnings.warn("No insertions found in any TSS flank; TSS enrichment set to 0.")
            population_mean = np.inf
        flank_mean[zero] = population_mean

    center_sum = profile[:, window - center : window + center + 1].sum(axis=1)
    center_mean = np.asarray(center_sum, dtype=float).ravel() / (2 * center + 1)

    adata.obsm["tss_profile"] = profile
    adata.obs["tss_enrichment"] = center_mean / flank_mean
    adata.uns["tss_profile_params"] = {"window": window, "flank": flank, "center": center}
    return adata.obs["tss_enrichment"]


def add_peak_metrics(
    adata: AnnData,
    fragments: FragmentFile | str | None = None,
    blacklist: pd.DataFrame | str | Path | None = None,
) -> pd.DataFrame:
    """Fraction of fragments in peaks and blacklist ratio per cell.

    Uses the Cell Ranger ATAC columns ``passed_filters``,
    ``peak_region_fragments`` and ``blacklist_region_fragments`` when present in
    ``obs``. Missing columns are computed from the fragment file. Without a
    blacklist the blacklist fragment count is 0.
    """
    obs = adata.obs
    missing = [
        c
        for c in ("passed_filters", "peak_region_fragments", "blacklist_region_fragments")
        if c not in obs
    ]
    if missing:
        frags = get_fragments(adata, fragments)
        if "passed_filters" in missing:
            obs["passed_filters"] = frags.fragment_stats()["total"].to_numpy()
        if "peak_region_fragments" in missing:
            obs["peak_region_fragments"] = frags.overlapping_fragments(adata.var)
        if "blacklist_region_fragments" in missing:
            if blacklist is None:
                obs["blacklist_region_fragments"] = 0
            else:
                if not isinstance(blacklist, pd.DataFrame):
                    blacklist = read_bed(blacklist)
                obs["blacklist_region_fragments"] = frags.overlapping_fragments(blacklist)

    in_peaks = obs["peak_region_fragments"].to_numpy(dtype=float)
    passed = obs["passed_filters"].to_numpy(dtype=float)
    blacklisted = obs["blacklist_region_fragments"].to_numpy(dtype=float)

    obs["pct_reads_in_peaks"] = np.divide(
        in_peaks * 100, passed, out=np.full_like(in_peaks, np.nan), where=passed > 0
    )
    obs["blacklist_ratio"] = np.divide(
        blacklisted, in_peaks, out=np.full_like(in_peaks, np.nan), where=in_peaks > 0
    )
    return obs[["pct_reads_in_peaks", "blacklist_ratio"]]


def annotate_qc_groups(
    adata: AnnData,
    tss_cutoff: float = HIGH_TSS_CUTOFF,
    nucleosome_cutoff: float = NUCLEOSOME_GROUP_CUTOFF,
) -> None:
    """Categorical QC groupings used by the TSS and fragment-length figures."""
    for key in ("tss_enrichment", "nucleosome_signal"):
        if key not in adata.obs:
            raise ValueError(f"'{key}' not found in adata.obs; compute it first")

    adata.obs["high_tss"] = pd.Categorical(
        np.where(adata.obs["tss_enrichment"] > tss_cutoff, "High", "Low"),
        categories=["High", "Low"],
    )
    cutoff = f"{nucleosome_cutoff:g}"
    adata.obs["nucleosome_group"] = pd.Categorical(
        np.where(
            adata.obs["nucleosome_signal"] > nucleosome_cutoff, f"NS > {cutoff}", f"NS < {cutoff}"
        ),
        categories=[f"NS > {cutoff}", f"NS < {cutoff}"],
    )


def compute_qc_metrics(
    adata: AnnData,
    annotation: GeneAnnotation | None = None,
    fragments: FragmentFile | str | None = None,
    blacklist: pd.DataFrame | str | Path | None = None,
) -> pd.DataFrame:
    """Run every QC metric and return the per-cell summary."""
    frags = get_fragments(adata, fragments)
    print("QC | nucleosome signal")
    nucleosome_signal(adata, frags)
    print("QC | TSS enrichment")
    tss_enrichment(adata, annotation=annotation, fragments=frags)
    print("QC | fragments in peaks and blacklist")
    add_peak_metrics(adata, fragments=frags, blacklist=blacklist)
    annotate_qc_groups(adata)

    columns = [column for column, _ in QC_PREDICATES.values()]
    summary = adata.obs[list(dict.fromkeys(columns))]
    print(summary.describe())
    return summary


def passes_qc(adata: AnnData, thresholds: Dict[str, float] | None = None) -> pd.Series:
    """Boolean mask of cells satisfying every threshold predicate.

    A NaN metric fails its predicate.
    """
    thresholds = QC_THRESHOLDS if thresholds is None else thresholds

    unknown = sorted(set(thresholds) - set(QC_PREDICATES))
    if unknown:
        raise ValueError(f"Unknown QC thresholds: {unknown}")

    keep = pd.Series(True, index=adata.obs_names)
    for name, cutoff in thresholds.items():
        column, predicate = QC_PREDICATES[name]
        if column not in adata.obs:
            raise ValueError(f"QC metric '{column}' not found in adata.obs")
        values = adata.obs[column].to_numpy(dtype=float)
        keep &= predicate(values, cutoff)
    return keep


def filter_cells(adata: AnnData, thresholds: Dict[str, float] | None = None) -> AnnData:
    """Return a copy of ``adata`` restricted to cells passing QC."""
    thresholds = dict(QC_THRESHOLDS if thresholds is None else thresholds)
    keep = passes_qc(adata, thresholds)

    before = adata.n_obs
    filtered = adata[keep.to_numpy()].copy()
    filtered.uns["qc_thresholds"] = thresholds
    kept = filtered.n_obs / max(before, 1)
    print(f"CELL FILTER | kept {filtered.n_obs:,}/{before:,} ({kept:.1%})")
    return filtered
