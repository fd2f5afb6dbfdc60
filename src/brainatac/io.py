"""Readers for the 10x scATAC-seq inputs and the scRNA-seq reference, plus result persistence."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

import anndata
import h5py
import mudata as md
import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy import sparse

from .regions import REGION_SEP, regions_frame


def _decode(values) -> list[str]:
    return [v.decode("utf-8") if isinstance(v, bytes) else str(v) for v in values]


def read_10x_peak_h5(file_path: str | Path) -> AnnData:
    """Load a Cell Ranger ATAC ``filtered_peak_bc_matrix.h5`` file.

    Args:
        file_path: Path to the 10x HDF5 container

    Returns:
        AnnData object (cells x peaks) with raw counts in CSR format
    """
    with h5py.File(file_path, "r") as f:
        matrix = f["matrix"]
        shape = tuple(int(s) for s in matrix["shape"][:])

        # 10x stores features x cells in CSC layout
        X = sparse.csc_matrix(
            (matrix["data"][:], matrix["indices"][:], matrix["indptr"][:]), shape=shape
        )

        if "features" in matrix:
            features = matrix["features"]
            key = "id" if "id" in features else "name"
            peak_names = _decode(features[key][:])
        else:
            peak_names = _decode(matrix["genes"][:])
        barcodes = _decode(matrix["barcodes"][:])

    if X.shape != (len(peak_names), len(barcodes)):
        raise ValueError(
            f"Matrix shape {X.shape} does not match {len(peak_names)} features "
            f"x {len(barcodes)} barcodes"
        )

    adata = AnnData(X.T.tocsr().astype(np.float32))
    adata.obs_names = barcodes
    adata.var_names = peak_names
    return adata


def read_singlecell_metadata(file_path: str | Path) -> pd.DataFrame:
    """Per-barcode metadata table (``singlecell.csv``) indexed by barcode."""
    metadata = pd.read_csv(file_path, index_col=0)
    metadata.index = metadata.index.astype(str)
    return metadata


def load_chromatin(
    counts_h5: str | Path,
    metadata_csv: str | Path | None = None,
    fragments: str | Path | None = None,
    sep: Sequence[str] = REGION_SEP,
    min_cells: int = 1,
    min_features: int = 0,
    genome: str = "mm10",
) -> AnnData:
    """Build the chromatin-accessibility AnnData used throughout the analysis.

    Peaks are parsed into ``var[chrom, start, end]``. Peaks seen in fewer than
    ``min_cells`` cells and cells with fewer than ``min_features`` peaks are
    dropped. The 10x per-barcode metadata is left-joined onto ``obs``.
    """
    adata = read_10x_peak_h5(counts_h5)
    print(f"LOAD | cells={adata.n_obs:,}  peaks={adata.n_vars:,}")

    coords = regions_frame(adata.var_names, sep=sep)
    for col in ["chrom", "start", "end"]:
        adata.var[col] = coords[col].to_numpy()

    if min_cells > 0:
        sc.pp.filter_genes(adata, min_cells=min_cells)
    if min_features > 0:
        sc.pp.filter_cells(adata, min_genes=min_features)

    if metadata_csv is not None:
        metadata = read_singlecell_metadata(metadata_csv)
        overlap = metadata.columns.intersection(adata.obs.columns)
        adata.obs = adata.obs.join(metadata.drop(columns=overlap), how="left")

    adata.layers["counts"] = adata.X.copy()
    sc.pp.calculate_qc_metrics(
        adata, var_type="peaks", percent_top=None, log1p=False, inplace=True
    )

    adata.uns["genome"] = genome
    adata.uns["files"] = {}
    if fragments is not None:
        adata.uns["files"]["fragments"] = str(fragments)

    print(f"READY | cells={adata.n_obs:,}  peaks={adata.n_vars:,}")
    return adata


def read_reference(file_path: str | Path, label_key: str = "subclass") -> AnnData:
    """Read a labelled scRNA-seq reference stored as ``.h5ad``.

    The reference is expected to carry log-normalized expression in ``X``.
    """
    reference = sc.read_h5ad(file_path)
    if label_key not in reference.obs:
        raise ValueError(f"Label key '{label_key}' not found in reference.obs")
    reference.var_names_make_unique()
    print(
        f"REFERENCE | cells={reference.n_obs:,}  genes={reference.n_vars:,}  "
        f"labels={reference.obs[label_key].nunique()}"
    )
    return reference


def _strip_none(value: Any) -> Any:
    # HDF5 has no representation for None
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, pd.DataFrame):
        return _categorize_objects(value)
    if isinstance(value, (list, tuple)):
        items = [_strip_none(v) for v in value if v is not None]
        return items if all(isinstance(v, (str, int, float, bool)) for v in items) else str(items)
    return value


def _categorize_objects(frame: pd.DataFrame) -> pd.DataFrame:
    # Mixed object columns are stored as string categories; missing values stay missing
    frame = frame.copy()
    for col in frame.columns[frame.dtypes == object]:
        values = frame[col]
        frame[col] = pd.Categorical(values.astype(str).where(values.notna()))
    return frame


def _writable(adata: AnnData) -> AnnData:
    """A write-ready AnnData sharing ``adata``'s matrices; ``adata`` itself is untouched."""
    return AnnData(
        X=adata.X,
        obs=_categorize_objects(adata.obs),
        var=_categorize_objects(adata.var),
        uns={k: _strip_none(v) for k, v in adata.uns.items() if v is not None},
        obsm=dict(adata.obsm),
        varm=dict(adata.varm),
        obsp=dict(adata.obsp),
        varp=dict(adata.varp),
        layers=dict(adata.layers),
    )


def write_result(
    adata: AnnData, file_path: str | Path, gene_activity: AnnData | None = None
) -> Path:
    """Persist the annotated chromatin object.

    With ``gene_activity`` the two objects are written together as a MuData
    ``.h5mu`` file with modalities ``peaks`` and ``activity``. Otherwise a
    plain ``.h5ad`` file is written.
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    if gene_activity is None:
        if file_path.suffix != ".h5ad":
            file_path = file_path.with_suffix(".h5ad")
        _writable(adata).write_h5ad(file_path, compression="gzip")
    else:
        if file_path.suffix != ".h5mu":
            file_path = file_path.with_suffix(".h5mu")
        mdata = md.MuData({"peaks": _writable(adata), "activity": _writable(gene_activity)})
        mdata.write(file_path)

    print(f"SAVED | {file_path}")
    return file_path


def read_result(file_path: str | Path) -> AnnData | md.MuData:
    file_path = Path(file_path)
    if file_path.suffix == ".h5mu":
        return md.read_h5mu(file_path)
    return anndata.read_h5ad(file_path)
