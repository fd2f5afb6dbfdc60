"""
Pytest configuration and fixtures for the brainatac test suite.

Provides a small synthetic 10x scATAC-seq dataset written to disk (peak matrix,
per-barcode metadata, fragment file, GTF and blacklist) together with a
labelled scRNA-seq reference. Each simulated cell type opens the chromatin of
its own marker genes, so clustering, gene activity and label transfer all have
a planted answer to recover.
"""

from pathlib import Path
from types import SimpleNamespace

import h5py
import matplotlib
import numpy as np
import pandas as pd
import pysam
import pytest
import scanpy as sc
from anndata import AnnData
from scipy import sparse

matplotlib.use("Agg")

CHROM_SIZES = {"chr1": 220_000, "chr2": 220_000}
CELL_TYPES = {
    "L2/3 IT": ["Neurod6", "Cux2", "Lamp5", "Otof", "Syt6"],
    "L4": ["Rorb", "Rspo1", "Scnn1a", "Whrn", "Kcnh5"],
    "Sst": ["Sst", "Gad2", "Pvalb", "Lhx6", "Nxph1"],
}
HOUSEKEEPING = ["Actb", "Gapdh", "Tubb5", "Eef1a1", "Rpl13"]
GENE_NAMES = [g for markers in CELL_TYPES.values() for g in markers] + HOUSEKEEPING
GENE_LENGTH = 8_000
N_CELLS_PER_TYPE = 40
N_LOW_QUALITY = 10
BLACKLIST = ("chr1", 205_000, 215_000)

# Thresholds the simulated cells are designed around
TEST_THRESHOLDS = {
    "min_peak_region_fragments": 20,
    "max_peak_region_fragments": 10_000,
    "min_pct_reads_in_peaks": 20,
    "max_blacklist_ratio": 0.5,
    "max_nucleosome_signal": 4,
    "min_tss_enrichment": 3,
}


def make_genes() -> pd.DataFrame:
    """Gene models in 0-based half-open UCSC coordinates (10 genes per chromosome)."""
    records = []
    for k, name in enumerate(GENE_NAMES):
        chrom = "chr1" if k < 10 else "chr2"
        start = 10_000 + (k % 10) * 20_000
        records.append(
            {
                "chrom": chrom,
                "start": start,
                "end": start + GENE_LENGTH,
                "strand": "+" if k % 2 == 0 else "-",
                "gene_name": name,
                "gene_id": f"ENSMUSG{k:011d}",
                "gene_biotype": "protein_coding",
            }
        )
    records.append(
        {
            "chrom": "chr2",
            "start": 205_000,
            "end": 208_000,
            "strand": "+",
            "gene_name": "Gm26917",
            "gene_id": "ENSMUSG99999999999",
            "gene_biotype": "lincRNA",
        }
    )
    genes = pd.DataFrame.from_records(records)
    genes["tss"] = np.where(genes["strand"] == "+", genes["start"], genes["end"] - 1)
    return genes


def make_peaks(genes: pd.DataFrame) -> pd.DataFrame:
    """A promoter peak and a gene-body peak for every protein-coding gene."""
    coding = genes[genes["gene_biotype"] == "protein_coding"]
    promoter = pd.DataFrame(
        {"chrom": coding["chrom"], "start": coding["tss"] - 300, "end": coding["tss"] + 300}
    )
    mid = coding["start"] + GENE_LENGTH // 2
    body = pd.DataFrame({"chrom": coding["chrom"], "start": mid - 300, "end": mid + 300})
    peaks = pd.concat([promoter, body]).sort_values(["chrom", "start"]).reset_index(drop=True)
    peaks.index = [f"{c}:{s}-{e}" for c, s, e in peaks[["chrom", "start", "end"]].to_numpy()]
    return peaks


def simulate_fragments(rng, barcodes, cell_types, genes) -> pd.DataFrame:
    """Fragments for each barcode; ``None`` cell types only receive background."""
    by_name = genes.set_index("gene_name")
    rows = []

    def background(bc, n):
        for _ in range(n):
            chrom = "chr1" if rng.random() < 0.5 else "chr2"
            start = int(rng.integers(0, CHROM_SIZES[chrom] - 600))
            rows.append((chrom, start, start + int(rng.integers(50, 500)), bc))

    for bc, ctype in zip(barcodes, cell_types):
        if ctype is None:
            background(bc, 120)
            continue

        opened = [(g, 12) for g in CELL_TYPES[ctype]] + [(g, 4) for g in HOUSEKEEPING]
        for name, rate in opened:
            gene = by_name.loc[name]
            # Nucleosome-free fragments right at the TSS
            for _ in range(rng.poisson(rate)):
                start = int(gene["tss"] + rng.integers(-60, -10))
                rows.append((gene["chrom"], start, start + int(rng.integers(50, 100)), bc))
            # Gene-body fragments, half of them mononucleosomal
            for _ in range(rng.poisson(rate // 2)):
                start = int(rng.integers(gene["start"], gene["end"] - 300))
                mono = rng.random() >= 0.5
                length = int(rng.integers(160, 280) if mono else rng.integers(60, 140))
                rows.append((gene["chrom"], start, start + length, bc))
        background(bc, 40)

    frags = pd.DataFrame(rows, columns=["chrom", "start", "end", "barcode"])
    frags["count"] = rng.integers(1, 4, size=len(frags))
    return frags.sort_values(["chrom", "start", "end"]).reset_index(drop=True)


def write_fragments(path, frags: pd.DataFrame, header: str = "") -> str:
    """Write sorted fragments as ``<path>.gz`` (bgzip) with a tabix index; return that path."""
    with open(path, "w") as f:
        f.write(header)
        frags.to_csv(f, sep="\t", header=False, index=False)
    return pysam.tabix_index(str(path), preset="bed", force=True)


def count_insertions(frags: pd.DataFrame, peaks: pd.DataFrame, barcodes) -> sparse.csr_matrix:
    """Cells x peaks Tn5 insertion counts (insertions at ``start`` and ``end - 1``)."""
    cell_index = pd.Index(barcodes).get_indexer(frags["barcode"])
    counts = np.zeros((len(barcodes), len(peaks)), dtype=np.int64)
    for pos in (frags["start"].to_numpy(), frags["end"].to_numpy() - 1):
        for chrom in CHROM_SIZES:
            on_chrom = np.flatnonzero((frags["chrom"] == chrom).to_numpy() & (cell_index >= 0))
            chrom_peaks = np.flatnonzero((peaks["chrom"] == chrom).to_numpy())
            starts = peaks["start"].to_numpy()[chrom_peaks]
            ends = peaks["end"].to_numpy()[chrom_peaks]
            idx = np.searchsorted(starts, pos[on_chrom], side="right") - 1
            hit = (idx >= 0) & (pos[on_chrom] < ends[np.clip(idx, 0, None)])
            np.add.at(counts, (cell_index[on_chrom][hit], chrom_peaks[idx[hit]]), 1)
    return sparse.csr_matrix(counts)


def write_10x_h5(path, counts: sparse.csr_matrix, barcodes, peak_names) -> None:
    """Write a Cell Ranger ATAC style HDF5 matrix (features x cells, CSC)."""
    X = counts.T.tocsc()
    with h5py.File(path, "w") as f:
        matrix = f.create_group("matrix")
        matrix.create_dataset("data", data=X.data.astype(np.int32))
        matrix.create_dataset("indices", data=X.indices.astype(np.int64))
        matrix.create_dataset("indptr", data=X.indptr.astype(np.int64))
        matrix.create_dataset("shape", data=np.array(X.shape, dtype=np.int32))
        matrix.create_dataset("barcodes", data=np.array(barcodes, dtype="S"))
        features = matrix.create_group("features")
        features.create_dataset("id", data=np.array(peak_names, dtype="S"))
        features.create_dataset("name", data=np.array(peak_names, dtype="S"))
        feature_type = np.array(["Peaks"] * len(peak_names), dtype="S")
        features.create_dataset("feature_type", data=feature_type)


def write_gtf(path, genes: pd.DataFrame) -> None:
    """Ensembl-style GTF ("1", "2" sequence names, 1-based inclusive coordinates)."""
    with open(path, "w") as f:
        f.write("#!genome-build GRCm38\n")
        for g in genes.itertuples():
            attrs = (
                f'gene_id "{g.gene_id}"; gene_name "{g.gene_name}"; '
                f'gene_biotype "{g.gene_biotype}";'
            )
            seqname = g.chrom.replace("chr", "")
            for feature in ("gene", "transcript"):
                fields = [seqname, "ensembl", feature, g.start + 1, g.end]
                fields += [".", g.strand, ".", attrs]
                f.write("\t".join(str(x) for x in fields) + "\n")


def simulate_expression(rng, n_per_type: int, genes, prefix: str) -> AnnData:
    """Log-normalized expression with type-specific marker genes."""
    base_rates = {g: 5.0 for g in HOUSEKEEPING}
    base_rates.update({"Snap25": 3.0, "Xist": 1.0})

    labels, rows = [], []
    for ctype, markers in CELL_TYPES.items():
        rates = np.array([8.0 if g in markers else base_rates.get(g, 0.3) for g in genes])
        rows.append(rng.poisson(rates, size=(n_per_type, len(genes))))
        labels += [ctype] * n_per_type

    adata = AnnData(X=np.vstack(rows).astype(np.float32))
    adata.obs_names = [f"{prefix}_{i}" for i in range(adata.n_obs)]
    adata.var_names = list(genes)
    adata.obs["truth"] = pd.Categorical(labels)
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    return adata


@pytest.fixture(scope="session")
def dataset(tmp_path_factory):
    """Synthetic 10x scATAC-seq outputs plus a labelled reference, written to disk."""
    rng = np.random.default_rng(42)
    root = tmp_path_factory.mktemp("atac")

    genes = make_genes()
    peaks = make_peaks(genes)

    truth = {}
    barcodes, cell_types = [], []
    for ctype in CELL_TYPES:
        for _ in range(N_CELLS_PER_TYPE):
            bc = f"AAAC{len(barcodes):06d}-1"
            barcodes.append(bc)
            cell_types.append(ctype)
            truth[bc] = ctype
    for i in range(N_LOW_QUALITY):
        barcodes.append(f"TTTG{i:06d}-1")
        cell_types.append(None)
    ambient = [f"GGGA{i:06d}-1" for i in range(5)]

    frags = simulate_fragments(rng, barcodes + ambient, cell_types + [None] * len(ambient), genes)
    fragments_path = Path(
        write_fragments(
            root / "fragments.tsv",
            frags,
            header="# id=synthetic_brain\n# pipeline=cellranger-atac\n",
        )
    )

    counts = count_insertions(frags, peaks, barcodes)
    counts_path = root / "filtered_peak_bc_matrix.h5"
    write_10x_h5(counts_path, counts, barcodes, list(peaks.index))

    n_frags = frags.groupby("barcode").size()
    metadata = pd.DataFrame(
        {
            "passed_filters": n_frags.reindex(barcodes + ambient).fillna(0).astype(int),
            "is__cell_barcode": [1] * len(barcodes) + [0] * len(ambient),
        },
        index=pd.Index(barcodes + ambient, name="barcode"),
    )
    metadata.loc["NO_BARCODE"] = [0, 0]
    metadata_path = root / "singlecell.csv"
    metadata.to_csv(metadata_path)

    gtf_path = root / "genes.gtf"
    write_gtf(gtf_path, genes)

    blacklist_path = root / "blacklist.bed"
    blacklist_path.write_text("{}\t{}\t{}\n".format(*BLACKLIST))

    reference = simulate_expression(rng, 50, GENE_NAMES + ["Snap25", "Xist"], "ref")
    reference.obs["subclass"] = reference.obs["truth"].astype(str)
    reference.var["highly_variable"] = reference.var_names != "Xist"
    reference_path = root / "allen_brain.h5ad"
    reference.write_h5ad(reference_path)

    return SimpleNamespace(
        root=root,
        counts_h5=counts_path,
        metadata_csv=metadata_path,
        fragments=fragments_path,
        gtf=gtf_path,
        blacklist=blacklist_path,
        reference=reference_path,
        genes=genes,
        peaks=peaks,
        fragments_frame=frags,
        barcodes=barcodes,
        low_quality=barcodes[-N_LOW_QUALITY:],
        truth=truth,
    )


@pytest.fixture
def annotation(dataset):
    from brainatac.annotation import GeneAnnotation

    return GeneAnnotation.read_gtf(dataset.gtf).to_ucsc()


@pytest.fixture
def chromatin(dataset, annotation):
    """The loaded peak matrix with the gene annotation attached."""
    from brainatac import io

    adata = io.load_chromatin(
        dataset.counts_h5, metadata_csv=dataset.metadata_csv, fragments=dataset.fragments
    )
    annotation.attach(adata, genome="mm10")
    return adata


@pytest.fixture
def qc_chromatin(chromatin, dataset):
    """QC metrics computed and low-quality cells removed."""
    from brainatac import qc

    qc.compute_qc_metrics(chromatin, blacklist=dataset.blacklist)
    return qc.filter_cells(chromatin, TEST_THRESHOLDS)


@pytest.fixture
def clustered(qc_chromatin):
    """TF-IDF, LSI, UMAP and Leiden clusters on the QC-passing cells."""
    from brainatac import pp, tl

    pp.run_tfidf(qc_chromatin)
    pp.find_top_features(qc_chromatin)
    pp.run_svd(qc_chromatin, n_comps=20)
    pp.select_components(qc_chromatin, dims=(2, 20))
    tl.embed_and_cluster(qc_chromatin, n_neighbors=15, resolution=0.5)
    return qc_chromatin


@pytest.fixture(scope="session")
def reference_adata(dataset):
    return sc.read_h5ad(dataset.reference)


@pytest.fixture
def query_activity():
    """Gene-activity-like query (shared marker structure, no reference-only genes)."""
    np.random.seed(0)
    rng = np.random.default_rng(7)
    query = simulate_expression(rng, 30, GENE_NAMES, "query")
    sc.pp.pca(query, n_comps=10, random_state=0)
    query.obsm["X_lsi"] = query.obsm["X_pca"]
    return query
