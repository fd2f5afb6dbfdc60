"""Gene models used for TSS enrichment, gene activity and peak annotation."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
from anndata import AnnData

from .regions import format_region, nearest_intervals

ANNOTATION_COLUMNS = ["chrom", "start", "end", "strand", "gene_name", "gene_id", "gene_biotype"]
GTF_COLUMNS = [
    "seqname",
    "source",
    "feature",
    "start",
    "end",
    "score",
    "strand",
    "frame",
    "attribute",
]


def _gtf_attribute(attributes: pd.Series, name: str) -> pd.Series:
    return attributes.str.extract(rf'{name} "([^"]*)"', flags=re.IGNORECASE)[0]


class GeneAnnotation:
    """
    A table of gene models in 0-based, half-open coordinates.

    Parameters
    ----------
    frame : pd.DataFrame
        Must contain ``chrom``, ``start``, ``end``, ``strand`` and ``gene_name``.
        ``gene_id`` and ``gene_biotype`` are filled in when absent.
    """

    def __init__(self, frame: pd.DataFrame):
        missing = [c for c in ["chrom", "start", "end", "strand", "gene_name"] if c not in frame]
        if missing:
            raise ValueError(f"Annotation is missing columns: {missing}")

        frame = frame.copy()
        if "gene_id" not in frame:
            frame["gene_id"] = frame["gene_name"]
        if "gene_biotype" not in frame:
            frame["gene_biotype"] = "protein_coding"

        frame = frame[ANNOTATION_COLUMNS].dropna(subset=["gene_name"])
        frame["gene_id"] = frame["gene_id"].fillna(frame["gene_name"])
        frame["gene_biotype"] = frame["gene_biotype"].fillna("unknown")
        frame["chrom"] = frame["chrom"].astype(str)
        frame["start"] = frame["start"].astype(np.int64)
        frame["end"] = frame["end"].astype(np.int64)
        self.frame = frame.sort_values(["chrom", "start", "end"]).reset_index(drop=True)

    def __len__(self) -> int:
        return len(self.frame)

    def __repr__(self) -> str:
        return f"GeneAnnotation(n_genes={len(self):,}, chroms={self.frame['chrom'].nunique()})"

    # Construction
    # ------------

    @classmethod
    def read_gtf(cls, path: str | Path, feature: str = "gene") -> "GeneAnnotation":
        """Read ``gene`` records from a (gzipped) GTF file."""
        gtf = pd.read_csv(
            path,
            sep="\t",
            header=None,
            names=GTF_COLUMNS,
            comment="#",
            dtype={"seqname": str, "attribute": str},
        )
        gtf = gtf[gtf["feature"] == feature]
        attributes = gtf["attribute"]

        biotype = _gtf_attribute(attributes, "gene_biotype")
        biotype = biotype.fillna(_gtf_attribute(attributes, "gene_type"))

        frame = pd.DataFrame(
            {
                "chrom": gtf["seqname"].to_numpy(),
                # GTF is 1-based, inclusive
                "start": gtf["start"].to_numpy() - 1,
                "end": gtf["end"].to_numpy(),
                "strand": gtf["strand"].to_numpy(),
                "gene_name": _gtf_attribute(attributes, "gene_name").to_numpy(),
                "gene_id": _gtf_attribute(attributes, "gene_id").to_numpy(),
                "gene_biotype": biotype.to_numpy(),
            }
        )
        frame["gene_name"] = frame["gene_name"].fillna(frame["gene_id"])
        return cls(frame)

    @classmethod
    def from_ensembl(cls, release: int = 79, species: str = "mus_musculus") -> "GeneAnnotation":
        """Gene models from an Ensembl release via pyensembl (downloads on first use)."""
        from pyensembl import EnsemblRelease

        genome = EnsemblRelease(release, species=species)
        genome.download()
        genome.index()

        records = [
            {
                "chrom": g.contig,
                "start": g.start - 1,
                "end": g.end,
                "strand": g.strand,
                "gene_name": g.gene_name or g.gene_id,
                "gene_id": g.gene_id,
                "gene_biotype": g.biotype,
            }
            for g in genome.genes()
        ]
        return cls(pd.DataFrame.from_records(records))

    @classmethod
    def from_adata(cls, adata: AnnData) -> "GeneAnnotation":
        if "annotation" not in adata.uns:
            raise ValueError("No gene annotation attached (expected adata.uns['annotation']).")
        return cls(pd.DataFrame(adata.uns["annotation"]))

    def attach(self, adata: AnnData, genome: str | None = None) -> None:
        """Store the annotation (and genome name) on ``adata``."""
        adata.uns["annotation"] = self.frame.copy()
        if genome is not None:
            adata.uns["genome"] = genome

    # Transformations
    # ---------------

    def to_ucsc(self) -> "GeneAnnotation":
        """Rename Ensembl sequence names to UCSC style (``1`` -> ``chr1``, ``MT`` -> ``chrM``)."""
        frame = self.frame.copy()
        chrom = frame["chrom"]
        chrom = chrom.where(chrom != "MT", "M")
        frame["chrom"] = np.where(chrom.str.startswith("chr"), chrom, "chr" + chrom)
        return GeneAnnotation(frame)

    def subset(self, biotypes: Sequence[str] | None = None) -> pd.DataFrame:
        if biotypes is None:
            return self.frame.copy()
        return self.frame[self.frame["gene_biotype"].isin(biotypes)].copy()

    def tss(self, biotypes: Sequence[str] | None = ("protein_coding",)) -> pd.DataFrame:
        """Unique transcription start sites (``chrom``, ``position``, ``strand``)."""
        genes = self.subset(biotypes)
        position = np.where(genes["strand"] == "-", genes["end"] - 1, genes["start"])
        tss = pd.DataFrame(
            {
                "chrom": genes["chrom"].to_numpy(),
                "position": position.astype(np.int64),
                "strand": genes["strand"].to_numpy(),
                "gene_name": genes["gene_name"].to_numpy(),
            }
        )
        return tss.drop_duplicates(subset=["chrom", "position", "strand"]).reset_index(drop=True)

    def gene_regions(
        self,
        upstream: int = 2000,
        downstream: int = 0,
        biotypes: Sequence[str] | None = ("protein_coding",),
        max_width: int | None = 500000,
    ) -> pd.DataFrame:
        """Gene bodies extended by a strand-aware promoter region.

        ``upstream`` bases are added before the TSS and ``downstream`` after the
        gene end. Starts are clipped at 0. Regions wider than ``max_width`` after
        extension are dropped.
        """
        genes = self.subset(biotypes)
        minus = (genes["strand"] == "-").to_numpy()

        start = genes["start"].to_numpy() - np.where(minus, downstream, upstream)
        end = genes["end"].to_numpy() + np.where(minus, upstream, downstream)
        regions = genes.assign(start=np.clip(start, 0, None), end=end)

        if max_width is not None:
            regions = regions[(regions["end"] - regions["start"]) <= max_width]
        return regions.reset_index(drop=True)

    # Queries
    # -------

    def find(self, gene_name: str) -> pd.Series:
        """Return the first gene model named ``gene_name``."""
        hits = self.frame[self.frame["gene_name"] == gene_name]
        if hits.empty:
            raise KeyError(f"Gene '{gene_name}' not found in annotation")
        return hits.iloc[0]

    def closest_feature(self, regions: pd.DataFrame, sep=(":", "-")) -> pd.DataFrame:
        """Closest gene for each region.

        Parameters
        ----------
        regions : pd.DataFrame
            ``chrom``, ``start``, ``end`` frame, typically indexed by peak name.

        Returns
        -------
        pd.DataFrame
            Indexed like ``regions`` with ``gene_name``, ``gene_id``,
            ``gene_biotype``, ``closest_region`` and ``distance``. Regions on
            chromosomes without genes get missing values and distance -1.
        """
        best, distance = nearest_intervals(regions, self.frame)
        found = best >= 0
        genes = self.frame.iloc[best[found]]

        out = pd.DataFrame(index=regions.index)
        for col in ["gene_name", "gene_id", "gene_biotype"]:
            out[col] = pd.Series(pd.NA, index=regions.index, dtype=object)
            out.loc[found, col] = genes[col].to_numpy()
        out["closest_region"] = pd.Series(pd.NA, index=regions.index, dtype=object)
        out.loc[found, "closest_region"] = [
            format_region(c, s, e, sep) for c, s, e in genes[["chrom", "start", "end"]].to_numpy()
        ]
        out["distance"] = distance
        return out
