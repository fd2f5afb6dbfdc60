from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from anndata import AnnData

from .anchors import AnchorSet, find_transfer_anchors, transfer_data
from .base import BaseTransferStrategy, TransferResult


class AnchorTransfer(BaseTransferStrategy):
    """
    Transfers reference labels through scored anchors (CCA + mutual nearest neighbours).

    Anchors are found between the reference expression and the query gene
    activity. Each query cell then receives a score per reference class from
    its ``k_weight`` nearest anchors, measured in ``obsm[weight_reduction]``.

    Parameters
    ----------
    reference : AnnData
        Log-normalized, labelled scRNA-seq reference.
    label_key : str
        Column of ``reference.obs`` holding the labels to transfer.
    weight_reduction : str or None, default "X_lsi"
        Query reduction used to weight anchors. None uses the CCA embedding.
    weight_dims : Tuple[int, int] or None, default (2, 30)
        1-based inclusive range of components of the weight reduction.
    """

    def __init__(
        self,
        reference: AnnData,
        label_key: str,
        features: Sequence[str] | None = None,
        n_features: int = 5000,
        dims: int = 30,
        weight_reduction: str | None = "X_lsi",
        weight_dims: Tuple[int, int] | None = (2, 30),
        k_anchor: int = 5,
        k_filter: int | None = 200,
        k_score: int = 30,
        k_weight: int = 50,
        sd_weight: float = 1.0,
        random_state: int = 0,
        **kwargs,
    ):
        if label_key not in reference.obs:
            raise ValueError(f"Label key '{label_key}' not found in reference.obs")

        self.reference = reference
        self.label_key = label_key
        self.features = features
        self.n_features = n_features
        self.dims = dims
        self.weight_reduction = weight_reduction
        self.weight_dims = weight_dims
        self.k_anchor = k_anchor
        self.k_filter = k_filter
        self.k_score = k_score
        self.k_weight = k_weight
        self.sd_weight = sd_weight
        self.random_state = random_state
        self._anchors: AnchorSet | None = None

    @property
    def name(self) -> str:
        return "anchor"

    @property
    def anchors(self) -> AnchorSet | None:
        """Anchor set of the most recent run."""
        return self._anchors

    def _weight_embedding(self, adata: AnnData, anchor_set: AnchorSet) -> np.ndarray:
        if self.weight_reduction is None:
            embedding = anchor_set.query_cca
        else:
            if self.weight_reduction not in adata.obsm:
                raise ValueError(f"Reduction '{self.weight_reduction}' not found in adata.obsm")
            embedding = np.asarray(adata.obsm[self.weight_reduction])

        if self.weight_dims is None:
            return embedding
        first, last = self.weight_dims
        return embedding[:, first - 1 : min(last, embedding.shape[1])]

    def execute_on(self, adata: AnnData) -> TransferResult:
        if self.weight_reduction is not None and self.weight_reduction not in adata.obsm:
            raise ValueError(f"Reduction '{self.weight_reduction}' not found in adata.obsm")

        anchor_set = find_transfer_anchors(
            self.reference,
            adata,
            features=self.features,
            n_features=self.n_features,
            dims=self.dims,
            k_anchor=self.k_anchor,
            k_filter=self.k_filter,
            k_score=self.k_score,
            random_state=self.random_state,
        )
        self._anchors = anchor_set

        scores = transfer_data(
            anchor_set,
            self.reference.obs[self.label_key],
            self._weight_embedding(adata, anchor_set),
            k_weight=self.k_weight,
            sd_weight=self.sd_weight,
        )
        scores.index = adata.obs_names

        return TransferResult(
            adata=adata,
            strategy=self,
            labels=scores.idxmax(axis=1),
            obs={"score_max": scores.max(axis=1)},
            obsm={"scores": scores},
            uns={
                "classes": [str(c) for c in scores.columns],
                "n_anchors": anchor_set.n_anchors,
                "n_features": len(anchor_set.features),
            },
        )
