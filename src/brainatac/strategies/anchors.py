"""Cross-modality anchors between a labelled scRNA-seq reference and a scATAC-seq query.

Both datasets are compared on shared genes (expression for the reference,
gene activity for the query). The shared correlation structure is captured by
canonical correlation analysis (CCA). Anchors are mutual nearest neighbours in
CCA space, filtered against the original feature space, and scored by the
overlap of their neighbourhoods.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy import sparse
from scipy.spatial import cKDTree
from sklearn.utils.extmath import randomized_svd


@dataclass
class AnchorSet:
    """Anchors between reference and query cells.

    Attributes
    ----------
    anchors : pd.DataFrame
        One row per anchor with integer ``reference`` and ``query`` cell
        positions and a ``score`` in [0, 1].
    reference_cells, query_cells : pd.Index
        Cell names of both datasets, in the order used by the positions.
    features : List[str]
        Genes the datasets were compared on.
    reference_cca, query_cca : np.ndarray
        L2-normalized CCA embeddings of both datasets.
    """

    anchors: pd.DataFrame
    reference_cells: pd.Index
    query_cells: pd.Index
    features: List[str]
    reference_cca: np.ndarray
    query_cca: np.ndarray

    @property
    def n_anchors(self) -> int:
        return len(self.anchors)

    def __repr__(self) -> str:
        return (
            f"AnchorSet(n_anchors={self.n_anchors:,}, reference={len(self.reference_cells):,}, "
            f"query={len(self.query_cells):,}, features={len(self.features):,})"
        )


def select_features(
    reference: AnnData,
    query: AnnData,
    features: Sequence[str] | None = None,
    n_features: int = 5000,
) -> List[str]:
    """Reference variable genes that are also measured in the query."""
    if features is None:
        if "highly_variable" in reference.var:
            features = reference.var_names[reference.var["highly_variable"].to_numpy(dtype=bool)]
        else:
            hvg = sc.pp.highly_variable_genes(
                reference, n_top_genes=min(n_features, reference.n_vars), inplace=False
            )
            features = reference.var_names[hvg["highly_variable"].to_numpy(dtype=bool)]

    candidates = pd.Index(features).drop_duplicates()
    shared = candidates[candidates.isin(query.var_names) & candidates.isin(reference.var_names)]
    if len(shared) == 0:
        raise ValueError("Reference and query share none of the selected features.")
    if len(shared) < len(candidates):
        print(f"FEATURES | {len(shared):,}/{len(candidates):,} reference features found in query")
    return list(shared)


def _dense(adata: AnnData, features: Sequence[str]) -> np.ndarray:
    X = adata[:, list(features)].X
    X = X.toarray() if sparse.issparse(X) else np.asarray(X)
    return X.astype(np.float64)


def _scale(X: np.ndarray, max_value: float = 10.0) -> np.ndarray:
    std = X.std(axis=0, ddof=1) if X.shape[0] > 1 else np.ones(X.shape[1])
    std[~np.isfinite(std) | (std == 0)] = 1.0
    return np.clip((X - X.mean(axis=0)) / std, -max_value, max_value)


def _l2_normalize(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def cca_embedding(
    reference: AnnData,
    query: AnnData,
    features: Sequence[str],
    dims: int = 30,
    random_state: int = 0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Joint CCA embedding of reference and query cells on shared features.

    Each dataset is z-scored per feature (clipped to +/-10). The cells x cells
    cross-product is factorized by truncated SVD; the left and right singular
    vectors embed reference and query cells. Components are sign-normalized
    and every cell vector is L2-normalized.
    """
    ref_scaled = _scale(_dense(reference, features))
    query_scaled = _scale(_dense(query, features))

    cross = ref_scaled @ query_scaled.T
    # The cross-product has rank at most the number of features
    n_components = max(1, min(dims, len(features), min(cross.shape) - 1))
    u, _, vt = randomized_svd(cross, n_components=n_components, random_state=random_state)

    embedding = np.vstack([u, vt.T])
    signs = np.sign(embedding[0])
    signs[signs == 0] = 1.0
    embedding = _l2_normalize(embedding * signs)
    return embedding[: reference.n_obs], embedding[reference.n_obs :]


def _knn(data: np.ndarray, points: np.ndarray, k: int) -> np.ndarray:
    k = min(k, data.shape[0])
    _, idx = cKDTree(data).query(points, k=k)
    return idx.reshape(points.shape[0], k)


def _neighbor_matrix(idx: np.ndarray, n_cols: int, col_offset: int = 0) -> sparse.csr_matrix:
    rows = np.repeat(np.arange(idx.shape[0]), idx.shape[1])
    data = np.ones(rows.size, dtype=np.float32)
    return sparse.csr_matrix(
        (data, (rows, idx.ravel() + col_offset)), shape=(idx.shape[0], n_cols)
    )


def find_mutual_nn(ref: np.ndarray, query: np.ndarray, k: int = 5) -> pd.DataFrame:
    """Reference/query pairs that are among each other's k nearest neighbours."""
    ref_to_query = _neighbor_matrix(_knn(query, ref, k), query.shape[0])
    query_to_ref = _neighbor_matrix(_knn(ref, query, k), ref.shape[0])

    mutual = ref_to_query.multiply(query_to_ref.T).tocoo()
    pairs = pd.DataFrame({"reference": mutual.row, "query": mutual.col}).astype(np.int64)
    return pairs.sort_values(["reference", "query"]).reset_index(drop=True)


def filter_anchors(
    pairs: pd.DataFrame,
    ref_features: np.ndarray,
    query_features: np.ndarray,
    k_filter: int | None = 200,
) -> pd.DataFrame:
    """Keep anchors whose query cell is among the reference cell's ``k_filter``
    nearest query cells in (L2-normalized) feature space."""
    if not k_filter or pairs.empty:
        return pairs

    ref_cells = np.unique(pairs["reference"].to_numpy())
    nn = _knn(_l2_normalize(query_features), _l2_normalize(ref_features[ref_cells]), k_filter)
    allowed = _neighbor_matrix(nn, query_features.shape[0])

    row = np.searchsorted(ref_cells, pairs["reference"].to_numpy())
    keep = np.asarray(allowed[row, pairs["query"].to_numpy()]).ravel() > 0
    return pairs[keep].reset_index(drop=True)


def score_anchors(
    pairs: pd.DataFrame, ref: np.ndarray, query: np.ndarray, k_score: int = 30
) -> np.ndarray:
    """Shared-neighbour score of each anchor, rescaled to [0, 1].

    Every cell's neighbourhood holds its ``k_score`` nearest cells within its
    own dataset and in the other dataset. An anchor's raw score is the number
    of neighbours both of its cells share. Raw scores are shifted by their 1%
    quantile, divided by the (shifted) 90% quantile and clipped to [0, 1].
    """
    if pairs.empty:
        return np.empty(0)

    n_ref, n_query = ref.shape[0], query.shape[0]
    n_total = n_ref + n_query
    graph = sparse.vstack(
        [
            _neighbor_matrix(_knn(ref, ref, k_score), n_total)
            + _neighbor_matrix(_knn(query, ref, k_score), n_total, col_offset=n_ref),
            _neighbor_matrix(_knn(ref, query, k_score), n_total)
            + _neighbor_matrix(_knn(query, query, k_score), n_total, col_offset=n_ref),
        ]
    ).tocsr()

    ref_rows = graph[pairs["reference"].to_numpy()]
    query_rows = graph[pairs["query"].to_numpy() + n_ref]
    shared = np.asarray(ref_rows.multiply(query_rows).sum(axis=1), dtype=float).ravel()

    low, high = np.quantile(shared, [0.01, 0.9])
    if high <= low:
        return np.ones_like(shared)
    return np.clip((shared - low) / (high - low), 0.0, 1.0)


def find_transfer_anchors(
    reference: AnnData,
    query: AnnData,
    features: Sequence[str] | None = None,
    n_features: int = 5000,
    dims: int = 30,
    k_anchor: int = 5,
    k_filter: int | None = 200,
    k_score: int = 30,
    random_state: int = 0,
) -> AnchorSet:
    """
    Find anchors between a labelled reference and a query.

    Parameters
    ----------
    reference : AnnData
        Log-normalized scRNA-seq reference.
    query : AnnData
        Log-normalized query on the same gene namespace (gene activity).
    features : Sequence[str], optional
        Genes to compare on. Defaults to the reference's highly variable genes
        (computed with ``n_features`` when not flagged).
    dims : int, default 30
        Number of CCA components.
    k_anchor : int, default 5
        Neighbourhood size for mutual nearest neighbours.
    k_filter : int or None, default 200
        Neighbourhood size for filtering in feature space; None disables it.
    k_score : int, default 30
        Neighbourhood size for anchor scoring.
    random_state : int, default 0
        Seed of the randomized SVD.

    Returns
    -------
    AnchorSet
    """
    features = select_features(reference, query, features=features, n_features=n_features)
    ref_cca, query_cca = cca_embedding(
        reference, query, features, dims=dims, random_state=random_state
    )

    pairs = find_mutual_nn(ref_cca, query_cca, k=k_anchor)
    n_mutual = len(pairs)
    pairs = filter_anchors(
        pairs, _dense(reference, features), _dense(query, features), k_filter=k_filter
    )
    if pairs.empty:
        raise ValueError("No anchors found between reference and query.")

    pairs["score"] = score_anchors(pairs, ref_cca, query_cca, k_score=k_score)
    print(f"ANCHORS | {len(pairs):,} retained of {n_mutual:,} mutual pairs")

    return AnchorSet(
        anchors=pairs,
        reference_cells=reference.obs_names.copy(),
        query_cells=query.obs_names.copy(),
        features=features,
        reference_cca=ref_cca,
        query_cca=query_cca,
    )


def transfer_data(
    anchor_set: AnchorSet,
    labels: pd.Series | Sequence[str],
    weight_embedding: np.ndarray,
    k_weight: int = 50,
    sd_weight: float = 1.0,
) -> pd.DataFrame:
    """
    Propagate reference labels to every query cell through weighted anchors.

    Parameters
    ----------
    anchor_set : AnchorSet
        Output of ``find_transfer_anchors``.
    labels : pd.Series or Sequence[str]
        Reference label per cell, aligned with ``anchor_set.reference_cells``
        (a Series is reindexed by cell name).
    weight_embedding : np.ndarray
        Query cells x dims embedding in which anchor proximity is measured
        (for scATAC-seq, LSI without the depth component).
    k_weight : int, default 50
        Number of nearest anchors each query cell draws from.
    sd_weight : float, default 1.0
        Bandwidth of the Gaussian kernel on the weights.

    Returns
    -------
    pd.DataFrame
        Query cells x classes prediction scores; rows sum to 1.

    Notes
    -----
    For a query cell with anchor distances ``d`` (ascending), the weight of
    anchor ``j`` is ``1 - d_j / d_k`` times its anchor score, passed through
    ``1 - exp(-w / (2 / sd_weight) ** 2)`` and normalized to sum to 1. A cell
    whose weights are all zero weighs its neighbours uniformly.
    """
    if isinstance(labels, pd.Series):
        labels = labels.reindex(anchor_set.reference_cells)
    labels = np.asarray(labels).astype(str)
    if labels.shape[0] != len(anchor_set.reference_cells):
        raise ValueError("Labels must align with the reference cells.")

    weight_embedding = np.asarray(weight_embedding, dtype=float)
    if weight_embedding.shape[0] != len(anchor_set.query_cells):
        raise ValueError("Weight embedding must have one row per query cell.")

    anchors = anchor_set.anchors
    anchor_labels = labels[anchors["reference"].to_numpy()]
    anchor_scores = anchors["score"].to_numpy(dtype=float)
    anchor_points = weight_embedding[anchors["query"].to_numpy()]

    k = min(k_weight, len(anchors))
    dist, idx = cKDTree(anchor_points).query(weight_embedding, k=k)
    dist = dist.reshape(-1, k)
    idx = idx.reshape(-1, k)

    d_max = dist[:, -1:]
    weights = 1.0 - np.divide(dist, d_max, out=np.zeros_like(dist), where=d_max > 0)
    weights *= anchor_scores[idx]
    weights = 1.0 - np.exp(-weights / (2.0 / sd_weight) ** 2)

    totals = weights.sum(axis=1, keepdims=True)
    empty = totals.ravel() == 0
    weights[empty] = 1.0
    totals[empty] = k
    weights /= totals

    classes = np.unique(labels)
    onehot = (anchor_labels[:, None] == classes[None, :]).astype(float)
    scores = np.einsum("ij,ijc->ic", weights, onehot[idx])
    # Row normalization can overshoot 1 by rounding
    scores = np.clip(scores, 0.0, 1.0)
    return pd.DataFrame(scores, index=anchor_set.query_cells, columns=classes)
