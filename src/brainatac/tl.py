from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Sequence, Tuple, Union, overload

import pandas as pd
import scanpy as sc
from anndata import AnnData

from .annotation import GeneAnnotation
from .fragments import FragmentFile, get_fragments
from .strategies.base import BaseTransferStrategy, TransferResult

## Embedding and clustering
## ========================


def embed_and_cluster(
    adata: AnnData,
    use_rep: str = "X_lsi_sel",
    n_neighbors: int = 30,
    resolution: float = 0.8,
    key_added: str = "leiden",
    random_state: int = 0,
) -> AnnData:
    """
    Build a cosine kNN graph on a reduction, embed it with UMAP and cluster it with Leiden.

    Parameters
    ----------
    adata : AnnData
        Object holding the reduction in ``obsm[use_rep]``.
    use_rep : str, default "X_lsi_sel"
        Reduction to build the graph from, usually LSI without the depth component.
    n_neighbors : int, default 30
        Neighbourhood size for the graph (capped at ``n_obs - 1``).
    resolution : float, default 0.8
        Leiden resolution; higher values give more clusters.
    key_added : str, default "leiden"
        Column of ``adata.obs`` receiving the cluster ids.
    random_state : int, default 0
        Seed shared by the graph, UMAP and Leiden.

    Returns
    -------
    AnnData
        The same object, with ``obsm["X_umap"]`` and ``obs[key_added]``.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Reduction '{use_rep}' not found in adata.obsm")

    n_neighbors = max(2, min(n_neighbors, adata.n_obs - 1))
    print(f"GRAPH | rep={use_rep}  k={n_neighbors}")
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        use_rep=use_rep,
        metric="cosine",
        random_state=random_state,
    )
    sc.tl.umap(adata, random_state=random_state)
    sc.tl.leiden(
        adata,
        resolution=resolution,
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=random_state,
    )
    print(f"CLUSTERS | {adata.obs[key_added].nunique()} at resolution {resolution}")
    return adata


## Gene activity
## =============


def gene_activity(
    adata: AnnData,
    annotation: GeneAnnotation | None = None,
    fragments: FragmentFile | str | None = None,
    upstream: int = 2000,
    downstream: int = 0,
    biotypes: Sequence[str] | None = ("protein_coding",),
    max_width: int | None = 500000,
) -> AnnData:
    """
    Estimate gene activity as Tn5 insertions in each gene body plus promoter.

    Parameters
    ----------
    adata : AnnData
        Chromatin object; its cells, ``obs`` and ``obsm`` are carried over.
    annotation : GeneAnnotation, optional
        Gene models. Defaults to the annotation attached to ``adata``.
    fragments : FragmentFile or str, optional
        Defaults to the fragment file recorded on ``adata``.
    upstream, downstream : int
        Extension of each gene upstream of the TSS and downstream of its end.
    biotypes : Sequence[str], optional
        Gene biotypes to quantify.
    max_width : int, optional
        Genes whose extended region is wider than this are skipped.

    Returns
    -------
    AnnData
        Cells x genes raw insertion counts (also in ``layers["counts"]``).
    """
    annotation = annotation if annotation is not None else GeneAnnotation.from_adata(adata)
    frags = get_fragments(adata, fragments)

    regions = annotation.gene_regions(
        upstream=upstream, downstream=downstream, biotypes=biotypes, max_width=max_width
    )
    print(f"GENE ACTIVITY | quantifying {len(regions):,} genes")
    counts = frags.count_insertions(regions)

    activity = AnnData(
        X=counts,
        obs=adata.obs.copy(),
        var=pd.DataFrame(
            {
                "gene_id": regions["gene_id"].to_numpy(),
                "chrom": regions["chrom"].to_numpy(),
                "start": regions["start"].to_numpy(),
                "end": regions["end"].to_numpy(),
            },
            index=pd.Index(regions["gene_name"].astype(str).to_numpy()),
        ),
    )
    activity.var_names_make_unique()
    for key, value in adata.obsm.items():
        if key != "tss_profile":
            activity.obsm[key] = value
    activity.layers["counts"] = activity.X.copy()
    return activity


## Cluster identities
## ==================


def assign_cluster_identities(
    adata: AnnData,
    cluster_key: str = "leiden",
    label_key: str = "predicted_id",
    key_added: str = "cell_type",
) -> Dict[str, str]:
    """Relabel each cluster with the most frequent predicted label among its cells."""
    for key in (cluster_key, label_key):
        if key not in adata.obs:
            raise ValueError(f"Key '{key}' not found in adata.obs")

    labels = adata.obs[label_key].astype(str)
    clusters = adata.obs[cluster_key].astype(str)

    # Ties resolve to the label that sorts first
    counts = pd.crosstab(clusters, labels)
    mapping = {str(c): str(counts.loc[c].idxmax()) for c in counts.index}

    adata.obs[key_added] = pd.Categorical(clusters.map(mapping))
    adata.uns[f"{key_added}_mapping"] = mapping
    return mapping


def filter_by_prediction_score(
    adata: AnnData, key: str = "predicted_id_score_max", min_score: float = 0.5
) -> AnnData:
    """Return the cells whose best prediction score reaches ``min_score``."""
    if key not in adata.obs:
        raise ValueError(f"Key '{key}' not found in adata.obs")
    keep = adata.obs[key].to_numpy(dtype=float) >= min_score
    print(f"PREDICTION FILTER | kept {int(keep.sum()):,}/{adata.n_obs:,} (score >= {min_score})")
    return adata[keep].copy()


## Label transfer dispatch
## =======================


@overload
def label(
    adata: AnnData,
    strategies: BaseTransferStrategy,
    key_added: str | None = None,
    n_jobs: int = 4,
) -> Dict[str, TransferResult]: ...


@overload
def label(
    adata: AnnData, strategies: Sequence[BaseTransferStrategy], n_jobs: int = 4
) -> Dict[str, TransferResult]: ...


@overload
def label(
    adata: AnnData, strategies: Dict[str, BaseTransferStrategy], n_jobs: int = 4
) -> Dict[str, TransferResult]: ...


def label(
    adata: AnnData,
    strategies: Union[
        BaseTransferStrategy, Sequence[BaseTransferStrategy], Dict[str, BaseTransferStrategy]
    ],
    key_added: str | None = None,
    n_jobs: int = 4,
) -> Dict[str, TransferResult]:
    """
    Predict query labels with one or more transfer strategies.

    A single strategy runs on the calling thread. A list or dict of strategies
    runs on a thread pool; a strategy that raises is reported and skipped, and
    the others still write their results.

    Parameters
    ----------
    adata : AnnData
        Query object (for scATAC-seq, the gene activity matrix).
    strategies : BaseTransferStrategy, Sequence or Dict
        Strategies to run. Dict keys name the ``obs`` columns; strategies
        given alone or in a list are stored under ``predicted_<name>``,
        numbered when that column already exists.
    key_added : str, optional
        Column for a single strategy's labels.
    n_jobs : int, default 4
        Worker threads for a batch.

    Returns
    -------
    Dict[str, TransferResult]
        Results keyed by the ``obs`` column they were written to.

    Examples
    --------
    >>> anchor = AnchorTransfer(reference=allen, label_key="subclass")
    >>> tl.label(activity, anchor, key_added="predicted_id")
    {'predicted_id': TransferResult(...)}
    >>> tl.label(activity, {"knn": KNNTransfer(reference=allen, label_key="subclass")})
    """
    if isinstance(strategies, BaseTransferStrategy):
        result = strategies.execute_on(adata)
        return {result.write_in(key=key_added): result}

    if isinstance(strategies, dict):
        tasks: List[Tuple[str | None, BaseTransferStrategy]] = list(strategies.items())
    elif isinstance(strategies, (list, tuple)):
        tasks = [(None, s) for s in strategies]
    else:
        raise TypeError(
            f"Expected a BaseTransferStrategy, a sequence or a dict of them, got {type(strategies)}"
        )

    outputs: Dict[str, TransferResult] = {}
    with ThreadPoolExecutor(max_workers=n_jobs) as executor:
        pending = {executor.submit(s.execute_on, adata): (key, s) for key, s in tasks}
        for future in as_completed(pending):
            key, strategy = pending[future]
            try:
                result = future.result()
            except Exception as e:
                print(f"LABEL | {strategy!r} failed: {e}")
                continue
            written = result.write_in(key=key)
            outputs[written] = result
            print(f"LABEL | {strategy.name} -> obs['{written}']")

    return outputs
