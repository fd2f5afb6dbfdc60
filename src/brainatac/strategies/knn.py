from __future__ import annotations

from typing import Sequence

import pandas as pd
from anndata import AnnData
from sklearn.neighbors import KNeighborsClassifier

from .anchors import cca_embedding, select_features
from .base import BaseTransferStrategy, TransferResult


class KNNTransfer(BaseTransferStrategy):
    """
    Transfers labels with a k-Nearest Neighbors classifier trained on reference
    cells in the joint CCA space.
    """

    def __init__(
        self,
        reference: AnnData,
        label_key: str,
        features: Sequence[str] | None = None,
        n_features: int = 5000,
        dims: int = 30,
        n_neighbors: int = 15,
        weights: str = "distance",
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
        self.n_neighbors = n_neighbors
        self.weights = weights
        self.random_state = random_state

    @property
    def name(self) -> str:
        return "knn"

    def execute_on(self, adata: AnnData) -> TransferResult:
        features = select_features(
            self.reference, adata, features=self.features, n_features=self.n_features
        )
        X_ref, X_query = cca_embedding(
            self.reference, adata, features, dims=self.dims, random_state=self.random_state
        )
        y_ref = self.reference.obs[self.label_key].astype(str).to_numpy()

        clf = KNeighborsClassifier(
            n_neighbors=min(self.n_neighbors, self.reference.n_obs), weights=self.weights
        )
        clf.fit(X_ref, y_ref)

        preds = clf.predict(X_query)
        probs = clf.predict_proba(X_query)
        max_probs = probs.max(axis=1)

        return TransferResult(
            adata=adata,
            strategy=self,
            labels=pd.Series(preds, index=adata.obs_names),
            obs={"confidence": pd.Series(max_probs, index=adata.obs_names)},
            obsm={
                "probabilities": pd.DataFrame(probs, index=adata.obs_names, columns=clf.classes_)
            },
            uns={"classes": [str(c) for c in clf.classes_]},
        )
