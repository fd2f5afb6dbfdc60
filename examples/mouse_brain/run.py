"""EXAMPLE: Annotating the 10x adult mouse brain scATAC-seq dataset"""

from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd
import scanpy as sc
from sklearn.metrics import adjusted_rand_score, normalized_mutual_info_score

import brainatac as ba
from brainatac.config import COVERAGE_GENES, DATA_DIR, MARKER_GENES, QC_THRESHOLDS

# The 10x "atac_v1_adult_brain_fresh_5k" outputs and an Allen Brain reference
# (log-normalized, labels in obs["subclass"]) are expected in DATA_DIR.
CONFIG = ba.PipelineConfig.from_data_dir(DATA_DIR)
# Cortical subclasses compared for differential accessibility.
DA_GROUPS = ("L2/3 IT", "L4")
# Region scanned for the fragment length histogram.
HISTOGRAM_REGION = "chr1:1-10000000"
SAVE_OUTPUTS = True
OUTPUT_DIR = Path("examples/mouse_brain/outputs")
FIGURE_FORMAT = "png"


def _save(name: str) -> Path | None:
    return OUTPUT_DIR / f"{name}.{FIGURE_FORMAT}" if SAVE_OUTPUTS else None


def preprocess_brain() -> tuple[sc.AnnData, ba.GeneAnnotation]:
    """Load the peak matrix, compute QC metrics and keep good cells."""
    adata = ba.io.load_chromatin(
        CONFIG.counts_h5, metadata_csv=CONFIG.metadata_csv, fragments=CONFIG.fragments
    )

    # Ensembl names chromosomes "1", "2", ...; the peaks use "chr1", "chr2", ...
    annotation = ba.pipeline.load_annotation(CONFIG)
    annotation.attach(adata, genome="mm10")

    ba.qc.compute_qc_metrics(adata)
    plt.close(ba.pl.qc_violin(adata, save=_save("qc_violin")))
    plt.close(ba.pl.tss_plot(adata, save=_save("tss_enrichment")))
    plt.close(ba.pl.fragment_histogram(adata, region=HISTOGRAM_REGION, save=_save("fragments")))

    print(f"Thresholds -> {QC_THRESHOLDS}")
    adata = ba.qc.filter_cells(adata, QC_THRESHOLDS)
    return adata, annotation


def reduce_and_cluster(adata: sc.AnnData) -> sc.AnnData:
    """TF-IDF, LSI, then graph clustering without the depth component."""
    ba.pp.run_tfidf(adata)
    ba.pp.find_top_features(adata, min_cutoff="q0")
    ba.pp.run_svd(adata)

    # The first LSI component tracks sequencing depth rather than biology.
    print(ba.pp.depth_correlation(adata).head().to_string(index=False))
    plt.close(ba.pl.depth_correlation_plot(adata, save=_save("depth_correlation")))

    ba.pp.select_components(adata, dims=(2, 30))
    ba.tl.embed_and_cluster(adata, resolution=0.8)
    plt.close(ba.pl.umap(adata, color="leiden", legend_loc="on data", save=_save("umap_leiden")))
    return adata


def transfer_labels(adata: sc.AnnData, annotation: ba.GeneAnnotation) -> sc.AnnData:
    """Gene activity, then anchor-based and kNN label transfer from the RNA reference."""
    activity = ba.tl.gene_activity(adata, annotation)
    ba.pp.normalize_gene_activity(activity)
    plt.close(ba.pl.feature_plot(activity, MARKER_GENES, save=_save("gene_activity")))

    reference = ba.io.read_reference(CONFIG.reference, label_key="subclass")
    strategies = {
        "predicted_id": ba.strategies.AnchorTransfer(reference, label_key="subclass"),
        "predicted_knn": ba.strategies.KNNTransfer(reference, label_key="subclass"),
    }
    ba.tl.label(activity, strategies=strategies, n_jobs=2)

    for key in ("predicted_id", "predicted_id_score_max", "predicted_knn"):
        adata.obs[key] = activity.obs[key].to_numpy()
    ba.tl.assign_cluster_identities(adata, label_key="predicted_id")
    activity.obs["cell_type"] = adata.obs["cell_type"].to_numpy()

    plt.close(
        ba.pl.umap(adata, color=["predicted_id", "cell_type"], save=_save("umap_predicted"))
    )
    return activity


def compare_transfers(adata: sc.AnnData) -> None:
    """Agreement between transfer methods and with the unsupervised clusters."""
    rows = []
    for key in ("predicted_id", "predicted_knn", "cell_type"):
        rows.append(
            {
                "labels": key,
                "ARI_vs_leiden": adjusted_rand_score(adata.obs["leiden"], adata.obs[key]),
                "NMI_vs_leiden": normalized_mutual_info_score(adata.obs["leiden"], adata.obs[key]),
                "agreement_vs_anchor": float(
                    (adata.obs[key].astype(str) == adata.obs["predicted_id"].astype(str)).mean()
                ),
            }
        )

    print("\n" + "=" * 70)
    print("TRANSFER AGREEMENT")
    print("=" * 70)
    print(pd.DataFrame(rows).to_string(index=False))


def differential_accessibility(adata: sc.AnnData, annotation: ba.GeneAnnotation) -> None:
    """LR test between two cortical layers, annotated with the closest genes."""
    ident_1, ident_2 = DA_GROUPS
    present = set(adata.obs["cell_type"].astype(str))
    if not {ident_1, ident_2} <= present:
        print(f"{DA_GROUPS} not both present; skipping differential accessibility.")
        return

    da = ba.de.find_markers(adata, "cell_type", ident_1, ident_2, test="LR", min_pct=0.4)
    da = ba.de.annotate_closest_genes(da, annotation)
    print(da.head(10).to_string())
    if SAVE_OUTPUTS:
        da.to_csv(OUTPUT_DIR / "da_peaks.csv")


def plot_coverage(adata: sc.AnnData, annotation: ba.GeneAnnotation) -> None:
    for gene in COVERAGE_GENES:
        fig = ba.pl.coverage_plot(
            adata,
            gene,
            group_key="cell_type",
            annotation=annotation,
            extend_upstream=1000,
            extend_downstream=1000,
            save=_save(f"coverage_{gene}"),
        )
        plt.close(fig)


def main() -> None:
    """Run the mouse brain scATAC-seq example."""
    if SAVE_OUTPUTS:
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

    adata, annotation = preprocess_brain()
    adata = reduce_and_cluster(adata)
    activity = transfer_labels(adata, annotation)
    compare_transfers(adata)
    differential_accessibility(adata, annotation)
    plot_coverage(adata, annotation)

    if SAVE_OUTPUTS:
        ba.io.write_result(adata, OUTPUT_DIR / "mouse_brain.h5mu", gene_activity=activity)


if __name__ == "__main__":
    main()
