"""Normalization and latent semantic indexing for peak count matrices."""

from __future__ import annotations

from typing import Tuple

import muon as mu
import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy import sparse


def run_tfidf(adata: AnnData, scale_factor: float = 1e4) -> AnnData:
    """TF-IDF normalize ``adata.X`` in place: ``log(1 + TF * IDF * scale_factor)``.

    Raw counts are preserved in ``layers["counts"]``.
    """
    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()
    adata.X = adata.layers["counts"].astype(np.float32)
    mu.atac.pp.tfidf(
        adata, log_tf=False, log_idf=False, log_tfidf=True, scale_factor=scale_factor
    )
    adata.uns["tfidf"] = {"scale_factor": scale_factor}
    return adata


def _parse_cutoff(min_cutoff: str | int | None, totals: np.ndarray) -> float:
    if min_cutoff is None:
        return -np.inf
    if isinstance(min_cutoff, str):
        if not min_cutoff.startswith("q"):
            raise ValueError(f"Cutoff '{min_cutoff}' must be an integer or a 'qN' percentile")
        q = float(min_cutoff[1:])
        if not 0 <= q <= 100:
            raise ValueError(f"Percentile cutoff '{min_cutoff}' must lie in q0..q100")
        return float(np.percentile(totals, q))
    return float(min_cutoff)


def find_top_features(adata: AnnData, min_cutoff: str | int | None = "q0") -> pd.Series:
    """Flag the most common features for dimensionality reduction.

    ``"qN"`` keeps features at or above the N-th percentile of total counts;
    an integer keeps features with at least that many counts. ``"q0"`` keeps
    everything. Writes ``var["highly_variable"]`` and ``var["percentile"]``.
    """
    counts = adata.layers["counts"] if "counts" in adata.layers else adata.X
    totals = np.asarray(counts.sum(axis=0)).ravel()
    cutoff = _parse_cutoff(min_cutoff, totals)

    adata.var["feature_counts"] = totals
    adata.var["percentile"] = pd.Series(totals, index=adata.var_names).rank(pct=True).to_numpy()
    adata.var["highly_variable"] = totals >= cutoff
    print(f"TOP FEATURES | {int(adata.var['highly_variable'].sum()):,}/{adata.n_vars:,} selected")
    return adata.var["highly_variable"]


def run_svd(adata: AnnData, n_comps: int = 50) -> AnnData:
    """Latent semantic indexing on the TF-IDF matrix (selected features only).

    Writes ``obsm["X_lsi"]``, ``varm["LSI"]`` and ``uns["lsi"]["stdev"]``.
    Loadings of unselected features are zero.
    """
    selected = (
        adata.var["highly_variable"].to_numpy(dtype=bool)
        if "highly_variable" in adata.var
        else np.ones(adata.n_vars, dtype=bool)
    )
    n_comps = min(n_comps, int(selected.sum()) - 1, adata.n_obs - 1)
    if n_comps < 1:
        raise ValueError("Too few cells or selected features to run SVD")

    if selected.all():
        mu.atac.tl.lsi(adata, n_comps=n_comps)
        return adata

    subset = adata[:, selected].copy()
    mu.atac.tl.lsi(subset, n_comps=n_comps)
    adata.obsm["X_lsi"] = subset.obsm["X_lsi"]
    loadings = np.zeros((adata.n_vars, subset.varm["LSI"].shape[1]))
    loadings[selected] = subset.varm["LSI"]
    adata.varm["LSI"] = loadings
    adata.uns["lsi"] = dict(subset.uns["lsi"])
    return adata


def depth_correlation(
    adata: AnnData, key: str = "total_counts", reduction: str = "X_lsi", n_components: int = 10
) -> pd.DataFrame:
    """Pearson correlation between each reduced component and sequencing depth."""
    if reduction not in adata.obsm:
        raise ValueError(f"Reduction '{reduction}' not found in adata.obsm")
    if key not in adata.obs:
        raise ValueError(f"Depth key '{key}' not found in adata.obs")

    embedding = np.asarray(adata.obsm[reduction])[:, :n_components]
    depth = adata.obs[key].to_numpy(dtype=float)
    corr = [np.corrcoef(embedding[:, i], depth)[0, 1] for i in range(embedding.shape[1])]

    result = pd.DataFrame(
        {"component": np.arange(1, embedding.shape[1] + 1), "correlation": corr}
    )
    adata.uns.setdefault("lsi", {})["depth_correlation"] = result["correlation"].to_numpy()
    return result


def select_components(
    adata: AnnData,
    dims: Tuple[int, int] = (2, 30),
    reduction: str = "X_lsi",
    key_added: str = "X_lsi_sel",
) -> np.ndarray:
    """Keep components ``dims[0]..dims[1]`` (1-based, inclusive) of a reduction."""
    if reduction not in adata.obsm:
        raise ValueError(f"Reduction '{reduction}' not found in adata.obsm")
    embedding = np.asarray(adata.obsm[reduction])
    first, last = dims
    if not 1 <= first <= last or last > embedding.shape[1]:
        raise ValueError(
            f"Dims {dims} out of range for '{reduction}' with {embedding.shape[1]} components"
        )
    adata.obsm[key_added] = embedding[:, first - 1 : last]
    return adata.obsm[key_added]


def normalize_gene_activity(gene_activity: AnnData) -> AnnData:
    """Log-normalize gene activity counts with the median library size as scale factor."""
    if "counts" not in gene_activity.layers:
        gene_activity.layers["counts"] = gene_activity.X.copy()
    totals = np.asarray(gene_activity.layers["counts"].sum(axis=1)).ravel()
    gene_activity.obs["activity_total_counts"] = totals
    scale_factor = float(np.median(totals)) or 1.0

    X = gene_activity.layers["counts"]
    gene_activity.X = (
        X.astype(np.float32) if sparse.issparse(X) else np.asarray(X, dtype=np.float32)
    )
    sc.pp.normalize_total(gene_activity, target_sum=scale_factor)
    sc.pp.log1p(gene_activity)
    gene_activity.uns["activity_scale_factor"] = scale_factor
    return gene_activity
