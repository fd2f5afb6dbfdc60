from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Set, Union

import numpy as np
import pandas as pd
from anndata import AnnData

TRANSFER_PREFIX = "predicted"


@dataclass
class TransferResult:
    """Labels predicted for a query object, not yet written into it.

    Attributes
    ----------
    adata : AnnData
        Query object the labels belong to.
    strategy : BaseTransferStrategy
        Strategy that produced them.
    labels : pd.Series
        Predicted label per query cell.
    obs : Dict[str, pd.Series]
        Per-cell extras such as prediction scores, stored as ``obs["{key}_{name}"]``.
    obsm : Dict[str, np.ndarray or pd.DataFrame]
        Per-cell matrices such as class probabilities, stored as ``obsm["{key}_{name}"]``.
    uns : Dict[str, Any]
        Run summary stored as ``uns["{key}_uns"]``.
    """

    adata: AnnData
    strategy: BaseTransferStrategy
    labels: pd.Series
    obs: Dict[str, pd.Series] = field(default_factory=dict)
    obsm: Dict[str, Union[np.ndarray, pd.DataFrame]] = field(default_factory=dict)
    uns: Dict[str, Any] = field(default_factory=dict)

    def _free_key(self) -> str:
        base = f"{TRANSFER_PREFIX}_{self.strategy.name}"
        key, n = base, 1
        while key in self.adata.obs:
            key = f"{base}_{n}"
            n += 1
        return key

    def write_in(self, key: str | None = None) -> str:
        """Store the labels as ``obs[key]`` together with their extras and return the key.

        Without ``key`` the column is ``predicted_<strategy name>``, numbered
        (``_1``, ``_2``, ...) when that column already exists. An explicit key
        overwrites. The strategy's public parameters are recorded in
        ``uns["{key}_params"]``.
        """
        key = self._free_key() if key is None else key
        adata = self.adata
        adata.obs[key] = self.labels.astype(str)
        for name, values in self.obs.items():
            adata.obs[f"{key}_{name}"] = values
        for name, matrix in self.obsm.items():
            if isinstance(matrix, pd.DataFrame):
                matrix = matrix.to_numpy()
            adata.obsm[f"{key}_{name}"] = matrix

        adata.uns[f"{key}_params"] = {
            "strategy": self.strategy.name,
            "params": self.strategy.params(),
        }
        if self.uns:
            adata.uns[f"{key}_uns"] = self.uns
        return key


class BaseTransferStrategy(ABC):
    """
    A labelled reference plus the parameters for predicting its labels on a query.

    Public attributes are the strategy's parameters: they appear in ``repr``
    and in the provenance record, except those in ``_repr_exclude``, which
    hold data rather than settings.
    """

    _repr_exclude: Set[str] = {"reference", "features"}

    @property
    @abstractmethod
    def name(self) -> str:
        """Short name, e.g. ``"anchor"``; used in default ``obs`` keys."""

    @abstractmethod
    def execute_on(self, adata: AnnData) -> TransferResult:
        """Predict labels for the cells of ``adata``."""

    def params(self) -> Dict[str, Any]:
        return {
            k: v
            for k, v in vars(self).items()
            if not k.startswith("_") and k not in self._repr_exclude and v is not None
        }

    def __repr__(self) -> str:
        fields = [f"name='{self.name}'"]
        for k, v in sorted(vars(self).items()):
            if k.startswith("_"):
                continue
            text = "[...]" if k in self._repr_exclude else repr(v)
            if len(text) > 100:
                text = text[:97] + "..."
            fields.append(f"{k}={text}")
        return f"{type(self).__name__}({', '.join(fields)})"
