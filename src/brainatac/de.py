"""Differential accessibility between groups of cells."""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from anndata import AnnData
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from .annotation import GeneAnnotation
from .regions import REGION_SEP, regions_frame

DA_TESTS = ("LR", "wilcox")
DA_COLUMNS = ["p_val", "avg_log2FC", "pct_1", "pct_2", "p_val_adj"]


def _column(X, j: int) -> np.ndarray:
    col = X[:, j]
    col = col.toarray() if sparse.issparse(col) else np.asarray(col)
    return col.ravel().astype(float)


def _standardize(X: np.ndarray) -> np.ndarray:
    std = X.std(axis=0)
    std[std == 0] = 1.0
    return (X - X.mean(axis=0)) / std


def _log_likelihood(X: np.ndarray | None, y: np.ndarray) -> float:
    """Log-likelihood of a binomial GLM of ``y`` on an intercept plus ``X``."""
    if X is None or X.shape[1] == 0:
        design = np.ones((len(y), 1))
    else:
        design = sm.add_constant(X, has_constant="add")
    fit = sm.GLM(y, design, family=sm.families.Binomial()).fit()
    return float(fit.llf)


def lr_test(x: np.ndarray, y: np.ndarray, latent: np.ndarray | None = None) -> float:
    """Likelihood-ratio p-value of ``y ~ x + latent`` against ``y ~ latent``."""
    null = None if latent is None else _standardize(latent)
    full = _standardize(x[:, None])
    if null is not None:
        full = np.column_stack([full, null])
    statistic = max(2.0 * (_log_likelihood(full, y) - _log_likelihood(null, y)), 0.0)
    return float(stats.chi2.sf(statistic, df=1))


def wilcox_test(x: np.ndarray, y: np.ndarray) -> float:
    """Two-sided Mann-Whitney U p-value between the two groups."""
    a, b = x[y == 1], x[y == 0]
    if np.all(a == a[0]) and np.all(b == a[0]):
        return 1.0
    return float(stats.mannwhitneyu(a, b, alternative="two-sided").pvalue)


def _mean_expm1(X, mask: np.ndarray) -> np.ndarray:
    sub = X[mask]
    if sparse.issparse(sub):
        sub = sub.copy()
        sub.data = np.expm1(sub.data)
        return np.asarray(sub.mean(axis=0)).ravel()
    return np.expm1(np.asarray(sub)).mean(axis=0)


def _pct_detected(counts, mask: np.ndarray) -> np.ndarray:
    sub = counts[mask]
    detected = (sub > 0).sum(axis=0)
    return np.round(np.asarray(detected).ravel() / max(int(mask.sum()), 1), 3)


def find_markers(
    adata: AnnData,
    group_key: str,
    ident_1: str,
    ident_2: str | None = None,
    test: str = "LR",
    latent_vars: Sequence[str] | None = ("peak_region_fragments",),
    min_pct: float = 0.05,
    logfc_threshold: float = 0.1,
    only_pos: bool = False,
    key_added: str | None = "da_peaks",
) -> pd.DataFrame:
    """
    Find features differentially accessible between two groups of cells.

    Parameters
    ----------
    adata : AnnData
        Object with normalized data in ``X`` and raw counts in
        ``layers["counts"]`` (used for detection rates when present).
    group_key : str
        Column of ``adata.obs`` holding the group labels.
    ident_1 : str
        First group.
    ident_2 : str, optional
        Second group. Defaults to all other cells.
    test : {"LR", "wilcox"}, default "LR"
        Logistic-regression likelihood-ratio test (with ``latent_vars`` as
        covariates) or Wilcoxon rank-sum test.
    latent_vars : Sequence[str], optional
        Columns of ``adata.obs`` to regress out in the LR test.
    min_pct : float, default 0.05
        Only test features detected in at least this fraction of cells in
        either group.
    logfc_threshold : float, default 0.1
        Only test features whose absolute average log2 fold change reaches this.
    only_pos : bool, default False
        Only test features more accessible in ``ident_1``.
    key_added : str, optional
        Key of ``adata.uns`` receiving the result table.

    Returns
    -------
    pd.DataFrame
        Indexed by feature with columns ``p_val``, ``avg_log2FC``, ``pct_1``,
        ``pct_2`` and ``p_val_adj`` (Bonferroni over all features), sorted by
        p-value.
    """
    if test not in DA_TESTS:
        raise ValueError(f"Unknown test '{test}'. Choose from {DA_TESTS}")
    if group_key not in adata.obs:
        raise ValueError(f"Key '{group_key}' not found in adata.obs")

    groups = adata.obs[group_key].astype(str).to_numpy()
    in_1 = groups == str(ident_1)
    in_2 = ~in_1 if ident_2 is None else groups == str(ident_2)
    if not in_1.any():
        raise ValueError(f"Group '{ident_1}' has no cells in '{group_key}'")
    if not in_2.any():
        raise ValueError(f"Group '{ident_2 or 'rest'}' has no cells in '{group_key}'")

    latent_vars = list(latent_vars or []) if test == "LR" else []
    missing = [v for v in latent_vars if v not in adata.obs]
    if missing:
        raise ValueError(f"Latent variables not found in adata.obs: {missing}")

    X = adata.X
    counts = adata.layers["counts"] if "counts" in adata.layers else X
    if sparse.issparse(X):
        X = X.tocsc()
        counts = counts.tocsr() if sparse.issparse(counts) else counts

    pct_1 = _pct_detected(counts, in_1)
    pct_2 = _pct_detected(counts, in_2)
    log2fc = np.log2(_mean_expm1(adata.X, in_1) + 1) - np.log2(_mean_expm1(adata.X, in_2) + 1)

    candidates = np.maximum(pct_1, pct_2) >= min_pct
    if only_pos:
        candidates &= log2fc >= logfc_threshold
    else:
        candidates &= np.abs(log2fc) >= logfc_threshold
    features = np.flatnonzero(candidates)
    print(
        f"DA | {ident_1} vs {ident_2 or 'rest'}: testing {features.size:,}/{adata.n_vars:,} "
        f"features ({test})"
    )

    cells = in_1 | in_2
    y = in_1[cells].astype(int)
    latent = (
        adata.obs.loc[cells, latent_vars].to_numpy(dtype=float) if latent_vars else None
    )

    p_values = np.empty(features.size)
    for i, j in enumerate(features):
        x = _column(X, j)[cells]
        p_values[i] = lr_test(x, y, latent) if test == "LR" else wilcox_test(x, y)

    results = pd.DataFrame(
        {
            "p_val": p_values,
            "avg_log2FC": log2fc[features],
            "pct_1": pct_1[features],
            "pct_2": pct_2[features],
        },
        index=adata.var_names[features],
    )
    # Bonferroni over every feature, tested or not
    padded = np.concatenate([p_values, np.ones(adata.n_vars - features.size)])
    results["p_val_adj"] = multipletests(padded, method="bonferroni")[1][: features.size]
    results = results.sort_values(["p_val", "avg_log2FC"], ascending=[True, False])

    if key_added is not None:
        adata.uns[key_added] = results
        adata.uns[f"{key_added}_params"] = {
            "group_key": group_key,
            "ident_1": str(ident_1),
            "ident_2": ident_2,
            "test": test,
            "latent_vars": latent_vars,
            "min_pct": min_pct,
            "logfc_threshold": logfc_threshold,
            "only_pos": only_pos,
        }
    return results


def annotate_closest_genes(
    results: pd.DataFrame, annotation: GeneAnnotation, sep: Sequence[str] = REGION_SEP
) -> pd.DataFrame:
    """Join the closest gene (and its distance) onto a table indexed by peak name."""
    regions = regions_frame(list(results.index), sep=sep)
    regions.index = results.index
    closest = annotation.closest_feature(regions, sep=sep)
    return results.join(closest.rename(columns={"gene_name": "closest_gene"}))
