"""Figures for the scATAC-seq walkthrough.

Every function returns a matplotlib ``Figure`` and writes it to ``save`` when
a path is given.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from matplotlib.collections import PatchCollection
from matplotlib.figure import Figure
from matplotlib.patches import Rectangle

from .annotation import GeneAnnotation
from .config import QC_VIOLIN_KEYS
from .fragments import FragmentFile, get_fragments
from .regions import format_region, parse_region


def _save(fig: Figure, save: str | Path | None) -> Figure:
    if save is not None:
        save = Path(save)
        save.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save, bbox_inches="tight", dpi=100)
    return fig


## QC
## ==


def qc_violin(
    adata: AnnData, keys: Sequence[str] = QC_VIOLIN_KEYS, save: str | Path | None = None
) -> Figure:
    """One violin (with jittered cells) per QC metric."""
    keys = [k for k in keys if k in adata.obs]
    if not keys:
        raise ValueError("None of the requested QC metrics are present in adata.obs")

    fig, axes = plt.subplots(1, len(keys), figsize=(2.6 * len(keys), 4), squeeze=False)
    rng = np.random.default_rng(0)
    for ax, key in zip(axes[0], keys):
        values = adata.obs[key].to_numpy(dtype=float)
        values = values[np.isfinite(values)]
        # KDE needs spread
        if values.size > 1 and np.ptp(values) > 0:
            parts = ax.violinplot(values, showextrema=False)
            for body in parts["bodies"]:
                body.set_alpha(0.5)
        ax.scatter(
            1 + rng.uniform(-0.15, 0.15, values.size), values, s=1, c="black", alpha=0.4
        )
        ax.set_title(key, fontsize=10)
        ax.set_xticks([])
    fig.tight_layout()
    return _save(fig, save)


def tss_plot(
    adata: AnnData, group_key: str = "high_tss", save: str | Path | None = None
) -> Figure:
    """Flank-normalized mean Tn5 insertion profile around TSSs, per cell group."""
    if "tss_profile" not in adata.obsm:
        raise ValueError("No TSS profile found; run qc.tss_enrichment first")
    if group_key not in adata.obs:
        raise ValueError(f"Key '{group_key}' not found in adata.obs")

    params = adata.uns.get("tss_profile_params", {})
    profile = adata.obsm["tss_profile"]
    width = profile.shape[1]
    window = int(params.get("window", (width - 1) // 2))
    flank = int(params.get("flank", max(1, width // 20)))
    offsets = np.arange(width) - window

    groups = adata.obs[group_key].astype(str)
    names = [g for g in pd.unique(groups)]
    fig, axes = plt.subplots(
        1, len(names), figsize=(4 * len(names), 3.5), sharey=True, squeeze=False
    )
    for ax, name in zip(axes[0], sorted(names)):
        mask = (groups == name).to_numpy()
        mean = np.asarray(profile[mask].mean(axis=0), dtype=float).ravel()
        background = np.concatenate([mean[:flank], mean[width - flank :]]).mean()
        if background > 0:
            mean = mean / background
        ax.plot(offsets, mean, color="#377eb8", linewidth=1)
        ax.axvline(0, color="grey", linestyle="--", linewidth=0.5)
        ax.set_title(f"{name} (n={int(mask.sum()):,})", fontsize=10)
        ax.set_xlabel("Distance from TSS (bp)")
    axes[0][0].set_ylabel("Mean TSS enrichment")
    fig.tight_layout()
    return _save(fig, save)


def fragment_histogram(
    adata: AnnData,
    region: str = "chr1:1-10000000",
    group_key: str = "nucleosome_group",
    fragments: FragmentFile | str | None = None,
    max_length: int = 800,
    save: str | Path | None = None,
) -> Figure:
    """Fragment length histograms of the fragments in ``region``, per cell group."""
    if group_key not in adata.obs:
        raise ValueError(f"Key '{group_key}' not found in adata.obs")

    frags = get_fragments(adata, fragments)
    lengths = frags.lengths(region=region)
    groups = adata.obs[group_key].astype(str).to_numpy()
    lengths["group"] = groups[lengths["cell"].to_numpy()] if len(lengths) else []

    names = sorted(pd.unique(groups))
    bins = np.arange(0, max_length + 10, 10)
    fig, axes = plt.subplots(1, len(names), figsize=(4 * len(names), 3.5), squeeze=False)
    for ax, name in zip(axes[0], names):
        values = lengths.loc[lengths["group"] == name, "length"].to_numpy()
        ax.hist(values[values <= max_length], bins=bins, color="#984ea3")
        ax.set_title(name, fontsize=10)
        ax.set_xlabel("Fragment length (bp)")
    axes[0][0].set_ylabel("Fragments")
    fig.suptitle(region, fontsize=10)
    fig.tight_layout()
    return _save(fig, save)


def depth_correlation_plot(adata: AnnData, save: str | Path | None = None) -> Figure:
    """Correlation of each LSI component with sequencing depth."""
    corr = adata.uns.get("lsi", {}).get("depth_correlation")
    if corr is None:
        raise ValueError("No depth correlation found; run pp.depth_correlation first")
    corr = np.asarray(corr, dtype=float)
    components = np.arange(1, corr.size + 1)

    fig, ax = plt.subplots(figsize=(5, 3.5))
    ax.scatter(components, corr, c=corr, cmap="coolwarm", vmin=-1, vmax=1, edgecolors="black")
    ax.axhline(0, color="grey", linewidth=0.5)
    ax.set_ylim(-1.05, 1.05)
    ax.set_xticks(components)
    ax.set_xlabel("Component")
    ax.set_ylabel("Correlation with depth")
    fig.tight_layout()
    return _save(fig, save)


## Embeddings
## ==========


def umap(
    adata: AnnData,
    color: str | Sequence[str],
    legend_loc: str = "right margin",
    save: str | Path | None = None,
    **kwargs,
) -> Figure:
    """UMAP scatter coloured by clusters or labels."""
    if "X_umap" not in adata.obsm:
        raise ValueError("No UMAP found; run tl.embed_and_cluster first")
    fig = sc.pl.umap(
        adata, color=color, ncols=2, legend_loc=legend_loc, return_fig=True, show=False, **kwargs
    )
    return _save(fig, save)


def feature_plot(
    gene_activity: AnnData,
    genes: Sequence[str],
    ncols: int = 3,
    save: str | Path | None = None,
) -> Figure:
    """Gene activity on the UMAP, capped at each gene's 95th percentile."""
    present = [g for g in genes if g in gene_activity.var_names]
    missing = sorted(set(genes) - set(present))
    if missing:
        warnings.warn(f"Genes not found in gene activity: {missing}")
    if not present:
        raise ValueError("None of the requested genes are present")
    if "X_umap" not in gene_activity.obsm:
        raise ValueError("No UMAP found on the gene activity object")

    fig = sc.pl.umap(
        gene_activity,
        color=present,
        ncols=ncols,
        vmax="p95",
        cmap="Blues",
        return_fig=True,
        show=False,
    )
    return _save(fig, save)


## Coverage
## ========


def resolve_region(
    region: str,
    annotation: GeneAnnotation | None = None,
    extend_upstream: int = 0,
    extend_downstream: int = 0,
) -> str:
    """Turn a region string or gene name into a (strand-aware) extended region."""
    try:
        chrom, start, end = parse_region(region)
        minus = False
    except ValueError:
        if annotation is None:
            raise ValueError(f"'{region}' is not a region and no annotation was given")
        gene = annotation.find(region)
        chrom, start, end = gene["chrom"], int(gene["start"]), int(gene["end"])
        minus = gene["strand"] == "-"

    start -= extend_downstream if minus else extend_upstream
    end += extend_upstream if minus else extend_downstream
    return format_region(chrom, max(start, 0), end)


def _smooth(values: np.ndarray, window: int) -> np.ndarray:
    if window is None or window <= 1:
        return values
    return np.convolve(values, np.ones(window) / window, mode="same")


def _interval_track(ax, intervals: pd.DataFrame, start: int, end: int, color: str, height=0.6):
    patches = [
        Rectangle((max(s, start), 0.5 - height / 2), min(e, end) - max(s, start), height)
        for s, e in intervals[["start", "end"]].to_numpy()
    ]
    ax.add_collection(PatchCollection(patches, facecolor=color, edgecolor="none"))


def coverage_plot(
    adata: AnnData,
    region: str,
    group_key: str = "cell_type",
    annotation: GeneAnnotation | None = None,
    fragments: FragmentFile | str | None = None,
    extend_upstream: int = 0,
    extend_downstream: int = 0,
    window: int = 100,
    scale_key: str = "total_counts",
    peaks: bool = True,
    save: str | Path | None = None,
) -> Figure:
    """
    Pseudo-bulk accessibility tracks of each cell group across a region.

    Parameters
    ----------
    adata : AnnData
        Chromatin object with peaks as ``var`` and groups in ``obs[group_key]``.
    region : str
        Region string (``"chr2:76,000,000-76,100,000"``) or a gene name.
    annotation : GeneAnnotation, optional
        Gene models for the gene track and gene-name lookup. Defaults to the
        annotation attached to ``adata`` when there is one.
    extend_upstream, extend_downstream : int
        Strand-aware extension of the region.
    window : int, default 100
        Width of the rolling mean applied to each track.
    scale_key : str, default "total_counts"
        Per-cell depth summed per group for normalization; tracks are scaled
        to coverage per million. Falls back to the number of cells.
    """
    if group_key not in adata.obs:
        raise ValueError(f"Key '{group_key}' not found in adata.obs")
    if annotation is None and "annotation" in adata.uns:
        annotation = GeneAnnotation.from_adata(adata)

    region = resolve_region(region, annotation, extend_upstream, extend_downstream)
    chrom, start, end = parse_region(region)
    positions = np.arange(start, end)

    frags = get_fragments(adata, fragments)
    groups = adata.obs[group_key].astype(str)
    coverage = frags.coverage(region, groups)
    names = sorted(coverage)

    depth = (
        adata.obs[scale_key].astype(float)
        if scale_key in adata.obs
        else pd.Series(1.0, index=adata.obs_names)
    )
    group_depth = depth.groupby(groups.to_numpy()).sum()

    tracks = {}
    for name in names:
        scale = group_depth.get(name, 0.0)
        values = coverage[name] / scale * 1e6 if scale > 0 else coverage[name].astype(float)
        tracks[name] = _smooth(values.astype(float), window)
    ymax = max([t.max() for t in tracks.values()] + [1e-9])

    n_rows = len(names) + (1 if annotation is not None else 0) + (1 if peaks else 0)
    ratios = [2] * len(names) + [0.8] * (n_rows - len(names))
    fig, axes = plt.subplots(
        n_rows,
        1,
        figsize=(8, 0.9 * sum(ratios)),
        sharex=True,
        gridspec_kw={"height_ratios": ratios},
        squeeze=False,
    )
    axes = axes[:, 0]
    colors = plt.get_cmap("tab10")

    for i, name in enumerate(names):
        ax = axes[i]
        ax.fill_between(positions, tracks[name], color=colors(i % 10), linewidth=0)
        ax.set_ylim(0, ymax * 1.05)
        ax.set_ylabel(name, rotation=0, ha="right", va="center", fontsize=8)
        ax.set_yticks([])
        for side in ("top", "right", "left"):
            ax.spines[side].set_visible(False)

    row = len(names)
    if annotation is not None:
        ax = axes[row]
        genes = annotation.frame
        genes = genes[(genes["chrom"] == chrom) & (genes["start"] < end) & (genes["end"] > start)]
        _interval_track(ax, genes, start, end, color="#377eb8", height=0.3)
        for _, gene in genes.iterrows():
            mid = (max(gene["start"], start) + min(gene["end"], end)) / 2
            arrow = "<" if gene["strand"] == "-" else ">"
            ax.text(mid, 0.9, f"{arrow} {gene['gene_name']}", ha="center", va="bottom", fontsize=7)
        ax.set_ylim(0, 1.4)
        ax.set_ylabel("Genes", rotation=0, ha="right", va="center", fontsize=8)
        ax.set_yticks([])
        row += 1

    if peaks:
        ax = axes[row]
        var = adata.var
        if {"chrom", "start", "end"} <= set(var.columns):
            hits = var[(var["chrom"] == chrom) & (var["start"] < end) & (var["end"] > start)]
            _interval_track(ax, hits, start, end, color="#ff7f00")
        ax.set_ylim(0, 1)
        ax.set_ylabel("Peaks", rotation=0, ha="right", va="center", fontsize=8)
        ax.set_yticks([])

    axes[-1].set_xlim(start, end)
    axes[-1].set_xlabel(f"{chrom} position (bp)")
    fig.suptitle(region, fontsize=10)
    return _save(fig, save)
