"""Streaming access to 10x fragment files.

A fragment file is a position-sorted, tab-separated, gzip/bgzip-compressed
table with the columns chromosome, start, end, barcode and duplicate count.
Region queries read it through its tabix index (``.tbi`` or ``.csi``).
Each fragment carries two Tn5 insertion sites: ``start`` and ``end - 1``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterator, Sequence

import numpy as np
import pandas as pd
import pysam
from anndata import AnnData
from scipy import sparse

from .config import MONONUCLEOSOME_MAX, NUCLEOSOME_FREE_MAX
from .regions import parse_region, points_in_intervals

FRAGMENT_COLUMNS = ["chrom", "start", "end", "barcode", "count"]
FRAGMENT_DTYPES = {
    "chrom": str,
    "start": np.int64,
    "end": np.int64,
    "barcode": str,
    "count": np.int64,
}
TABIX_EXTENSIONS = (".tbi", ".csi")


class FragmentFile:
    """
    A fragment file restricted to a set of cells.

    Parameters
    ----------
    path : str or Path
        Location of the ``fragments.tsv.gz`` file. Comment lines starting with
        ``#`` (as written by newer Cell Ranger ATAC versions) are skipped. Region
        queries need the file bgzip-compressed with a tabix index beside it.
    cells : Sequence[str], optional
        Cell barcodes to keep, in the order used for the rows of every matrix
        this object returns. Fragments from other barcodes are dropped. Most
        counting methods require cells.
    chunksize : int, default 2_000_000
        Number of lines parsed per chunk.
    """

    def __init__(
        self,
        path: str | Path,
        cells: Sequence[str] | None = None,
        chunksize: int = 2_000_000,
    ):
        self.path = Path(path)
        self.cells = pd.Index(cells, dtype=str) if cells is not None else None
        self.chunksize = chunksize

    def __repr__(self) -> str:
        n_cells = "all" if self.cells is None else f"{len(self.cells):,}"
        return f"FragmentFile(path='{self.path}', cells={n_cells})"

    @property
    def n_cells(self) -> int:
        self._require_cells()
        return len(self.cells)

    def _require_cells(self):
        if self.cells is None:
            raise ValueError("This operation needs the FragmentFile to be created with `cells`.")

    def fetch(self, region: str) -> pd.DataFrame:
        """Fragments overlapping ``region``, read through the tabix index."""
        chrom, start, end = parse_region(region)
        if not any(Path(f"{self.path}{ext}").exists() for ext in TABIX_EXTENSIONS):
            raise FileNotFoundError(f"Region queries need a tabix index for {self.path}")

        with pysam.TabixFile(str(self.path)) as tbx:
            if chrom not in tbx.contigs:
                rows = []
            else:
                rows = [line.split("\t")[:5] for line in tbx.fetch(chrom, start, end)]
        return pd.DataFrame(rows, columns=FRAGMENT_COLUMNS).astype(FRAGMENT_DTYPES)

    def iter_chunks(self, region: str | None = None) -> Iterator[pd.DataFrame]:
        """Yield fragment chunks, optionally restricted to those overlapping ``region``.

        Region queries go through the tabix index and yield a single chunk.
        When the file was opened with cells, every chunk gains a ``cell`` column
        holding the row index of the fragment's barcode in ``self.cells``.
        """
        if region is not None:
            reader = [self.fetch(region)]
        else:
            reader = pd.read_csv(
                self.path,
                sep="\t",
                header=None,
                names=FRAGMENT_COLUMNS,
                dtype=FRAGMENT_DTYPES,
                comment="#",
                chunksize=self.chunksize,
            )
        for chunk in reader:
            if self.cells is not None:
                cell = self.cells.get_indexer(chunk["barcode"])
                chunk = chunk.assign(cell=cell)[cell >= 0]
            if len(chunk):
                yield chunk

    def read(self, region: str | None = None) -> pd.DataFrame:
        """Load all (matching) fragments into memory."""
        chunks = list(self.iter_chunks(region=region))
        if not chunks:
            columns = FRAGMENT_COLUMNS + ([] if self.cells is None else ["cell"])
            return pd.DataFrame(columns=columns)
        return pd.concat(chunks, ignore_index=True)

    @staticmethod
    def insertions(chunk: pd.DataFrame) -> pd.DataFrame:
        """Both Tn5 cut sites of every fragment, with the fragment's row position."""
        n = len(chunk)
        frame = {
            "chrom": np.concatenate([chunk["chrom"].to_numpy()] * 2),
            "position": np.concatenate([chunk["start"].to_numpy(), chunk["end"].to_numpy() - 1]),
            "fragment": np.tile(np.arange(n), 2),
        }
        if "cell" in chunk:
            frame["cell"] = np.tile(chunk["cell"].to_numpy(), 2)
        return pd.DataFrame(frame)

    def count_insertions(self, regions: pd.DataFrame) -> sparse.csr_matrix:
        """Count insertion sites per cell falling in each region.

        Parameters
        ----------
        regions : pd.DataFrame
            ``chrom``, ``start``, ``end`` frame. Overlapping regions each receive
            their own counts.

        Returns
        -------
        scipy.sparse.csr_matrix
            Cells x regions matrix of insertion counts.
        """
        self._require_cells()
        rows, cols = [], []
        for chunk in self.iter_chunks():
            ins = self.insertions(chunk)
            p_idx, r_idx = points_in_intervals(ins["chrom"], ins["position"], regions)
            rows.append(ins["cell"].to_numpy()[p_idx])
            cols.append(r_idx)

        return sparse_counts(rows, cols, (self.n_cells, len(regions)))

    def overlapping_fragments(self, regions: pd.DataFrame) -> np.ndarray:
        """Per-cell number of fragments with at least one insertion inside ``regions``."""
        self._require_cells()
        counts = np.zeros(self.n_cells, dtype=np.int64)
        if len(regions) == 0:
            return counts
        for chunk in self.iter_chunks():
            ins = self.insertions(chunk)
            p_idx, _ = points_in_intervals(ins["chrom"], ins["position"], regions)
            hit = np.unique(ins["fragment"].to_numpy()[p_idx])
            np.add.at(counts, chunk["cell"].to_numpy()[hit], 1)
        return counts

    def fragment_stats(self) -> pd.DataFrame:
        """Per-cell total, nucleosome-free and mononucleosomal fragment counts."""
        self._require_cells()
        total = np.zeros(self.n_cells, dtype=np.int64)
        nfr = np.zeros(self.n_cells, dtype=np.int64)
        mono = np.zeros(self.n_cells, dtype=np.int64)
        for chunk in self.iter_chunks():
            cell = chunk["cell"].to_numpy()
            length = (chunk["end"] - chunk["start"]).to_numpy()
            np.add.at(total, cell, 1)
            np.add.at(nfr, cell[length < NUCLEOSOME_FREE_MAX], 1)
            is_mono = (length >= NUCLEOSOME_FREE_MAX) & (length < MONONUCLEOSOME_MAX)
            np.add.at(mono, cell[is_mono], 1)

        return pd.DataFrame(
            {"total": total, "nucleosome_free": nfr, "mononucleosomal": mono},
            index=self.cells,
        )

    def lengths(self, region: str | None = None) -> pd.DataFrame:
        """Fragment lengths (``cell``, ``length``) for fragments in ``region``."""
        self._require_cells()
        frags = self.read(region=region)
        return pd.DataFrame(
            {
                "cell": frags["cell"].to_numpy(dtype=np.int64),
                "length": (frags["end"] - frags["start"]).to_numpy(dtype=np.int64),
            }
        )

    def coverage(self, region: str, groups: pd.Series) -> Dict[str, np.ndarray]:
        """Base-pair fragment coverage across ``region`` for each cell group.

        Parameters
        ----------
        region : str
            Region string, e.g. ``"chr1:1000-2000"``.
        groups : pd.Series
            Group label per cell, indexed by barcode. Cells missing from
            ``groups`` (or NaN) are ignored.

        Returns
        -------
        dict[str, np.ndarray]
            Group name -> coverage array of length ``end - start``.
        """
        self._require_cells()
        _, r_start, r_end = parse_region(region)
        width = r_end - r_start

        cell_groups = groups.reindex(self.cells)
        categories = [str(g) for g in pd.unique(cell_groups.dropna())]
        diffs = {g: np.zeros(width + 1, dtype=np.int64) for g in categories}

        frags = self.read(region=region)
        if len(frags):
            labels = cell_groups.to_numpy()[frags["cell"].to_numpy(dtype=np.int64)]
            lo = np.clip(frags["start"].to_numpy(dtype=np.int64) - r_start, 0, width)
            hi = np.clip(frags["end"].to_numpy(dtype=np.int64) - r_start, 0, width)
            for g in categories:
                mask = labels.astype(str) == g
                np.add.at(diffs[g], lo[mask], 1)
                np.add.at(diffs[g], hi[mask], -1)

        return {g: np.cumsum(d)[:width] for g, d in diffs.items()}


def get_fragments(
    adata: AnnData, fragments: "FragmentFile | str | Path | None" = None
) -> FragmentFile:
    """Resolve the fragment file for ``adata``, restricted to its cells.

    Falls back to the path recorded in ``adata.uns["files"]["fragments"]``.
    """
    if fragments is None:
        path = adata.uns.get("files", {}).get("fragments")
        if path is None:
            raise ValueError("No fragment file given and none recorded in adata.uns['files'].")
    elif isinstance(fragments, FragmentFile):
        path = fragments.path
        if fragments.cells is not None and fragments.cells.equals(adata.obs_names):
            return fragments
    else:
        path = fragments

    chunksize = fragments.chunksize if isinstance(fragments, FragmentFile) else 2_000_000
    return FragmentFile(path, cells=adata.obs_names, chunksize=chunksize)


def sparse_counts(rows, cols, shape) -> sparse.csr_matrix:
    if rows:
        r = np.concatenate(rows)
        c = np.concatenate(cols)
    else:
        r = c = np.empty(0, dtype=np.int64)
    data = np.ones(r.size, dtype=np.float32)
    # Duplicate (row, col) pairs are summed on conversion.
    return sparse.coo_matrix((data, (r, c)), shape=shape).tocsr()
