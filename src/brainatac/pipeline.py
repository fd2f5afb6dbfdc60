"""End-to-end analysis of the adult mouse brain scATAC-seq dataset."""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

import matplotlib.pyplot as plt
from anndata import AnnData

from . import de, io, pl, pp, qc, tl
from .annotation import GeneAnnotation
from .config import PipelineConfig
from .fragments import get_fragments
from .strategies import AnchorTransfer

STEPS = [
    "load",
    "annotate",
    "qc",
    "filter",
    "reduce",
    "cluster",
    "gene_activity",
    "transfer",
    "identities",
    "differential",
    "coverage",
    "save",
]

# Region used for the fragment length histograms
FRAGMENT_HISTOGRAM_REGION = "chr1:1-10000000"


def _step(i: int, name: str) -> None:
    print(f"\n[{i + 1}/{len(STEPS)}] {name.upper()}")


def _figure(config: PipelineConfig, name: str, fig_fn, *args, **kwargs) -> None:
    if not config.make_figures:
        return
    save = Path(config.output_dir) / "figures" / f"{name}.{config.figure_format}"
    fig = fig_fn(*args, save=save, **kwargs)
    plt.close(fig)


def load_annotation(config: PipelineConfig) -> GeneAnnotation:
    """Gene models from a GTF file when given, otherwise from Ensembl (UCSC-style names)."""
    if config.gtf is not None:
        annotation = GeneAnnotation.read_gtf(config.gtf)
    else:
        annotation = GeneAnnotation.from_ensembl(release=config.ensembl_release)
    return annotation.to_ucsc()


def transfer_labels(
    adata: AnnData, activity: AnnData, reference: AnnData, config: PipelineConfig
) -> Tuple[AnnData, AnnData]:
    """Predict reference labels from gene activity and copy them onto the peaks object."""
    strategy = AnchorTransfer(
        reference,
        label_key=config.reference_label_key,
        n_features=config.n_reference_features,
        dims=config.cca_dims,
        weight_reduction="X_lsi",
        weight_dims=config.lsi_dims,
        k_weight=config.k_weight,
        random_state=config.random_state,
    )
    tl.label(activity, strategy, key_added="predicted_id")
    for key in ("predicted_id", "predicted_id_score_max"):
        adata.obs[key] = activity.obs[key].to_numpy()

    if config.min_prediction_score is not None:
        adata = tl.filter_by_prediction_score(adata, min_score=config.min_prediction_score)
        activity = activity[adata.obs_names].copy()
    return adata, activity


def run(config: PipelineConfig) -> Tuple[AnnData, AnnData]:
    """
    Run the whole walkthrough and persist the result.

    Parameters
    ----------
    config : PipelineConfig
        Paths and parameters of the run.

    Returns
    -------
    Tuple[AnnData, AnnData]
        The QC-filtered, clustered and labelled chromatin object, and its gene
        activity matrix.
    """
    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    _step(0, "load")
    adata = io.load_chromatin(
        config.counts_h5,
        metadata_csv=config.metadata_csv,
        fragments=config.fragments,
        min_cells=config.min_cells,
        min_features=config.min_features,
        genome=config.genome,
    )

    _step(1, "annotate")
    annotation = load_annotation(config)
    annotation.attach(adata, genome=config.genome)
    print(f"ANNOTATION | {annotation}")

    _step(2, "qc")
    qc.compute_qc_metrics(adata, annotation, get_fragments(adata), blacklist=config.blacklist)
    _figure(config, "qc_violin", pl.qc_violin, adata)
    _figure(config, "tss_enrichment", pl.tss_plot, adata)
    _figure(
        config, "fragment_lengths", pl.fragment_histogram, adata, region=FRAGMENT_HISTOGRAM_REGION
    )

    _step(3, "filter")
    adata = qc.filter_cells(adata, config.qc_thresholds)
    if adata.n_obs == 0:
        raise ValueError("No cells passed QC; relax the thresholds")

    _step(4, "reduce")
    pp.run_tfidf(adata, scale_factor=config.tfidf_scale_factor)
    pp.find_top_features(adata, min_cutoff=config.top_features_cutoff)
    pp.run_svd(adata, n_comps=config.n_lsi_components)
    print(pp.depth_correlation(adata).to_string(index=False))
    _figure(config, "depth_correlation", pl.depth_correlation_plot, adata)

    _step(5, "cluster")
    first, last = config.lsi_dims
    pp.select_components(adata, dims=(first, min(last, adata.obsm["X_lsi"].shape[1])))
    tl.embed_and_cluster(
        adata,
        n_neighbors=config.n_neighbors,
        resolution=config.leiden_resolution,
        random_state=config.random_state,
    )
    _figure(config, "umap_leiden", pl.umap, adata, color="leiden", legend_loc="on data")

    _step(6, "gene_activity")
    activity = tl.gene_activity(
        adata, annotation, get_fragments(adata), upstream=config.promoter_upstream
    )
    pp.normalize_gene_activity(activity)
    _figure(config, "gene_activity", pl.feature_plot, activity, config.marker_genes)

    _step(7, "transfer")
    if config.reference is None:
        print("No reference given; skipping label transfer and cluster identities.")
    else:
        reference = io.read_reference(config.reference, label_key=config.reference_label_key)
        adata, activity = transfer_labels(adata, activity, reference, config)
        _figure(config, "umap_predicted", pl.umap, adata, color="predicted_id")

        _step(8, "identities")
        mapping = tl.assign_cluster_identities(adata, "leiden", "predicted_id", "cell_type")
        activity.obs["cell_type"] = adata.obs["cell_type"].to_numpy()
        for cluster, cell_type in sorted(mapping.items(), key=lambda kv: int(kv[0])):
            print(f"  cluster {cluster:>3} -> {cell_type}")
        _figure(config, "umap_cell_type", pl.umap, adata, color="cell_type", legend_loc="on data")

    _step(9, "differential")
    group_key = config.da_group_key if config.da_group_key in adata.obs else "leiden"
    present = set(adata.obs[group_key].astype(str))
    wanted = [config.da_ident_1] + ([config.da_ident_2] if config.da_ident_2 else [])
    if all(ident in present for ident in wanted):
        results = de.find_markers(
            adata,
            group_key,
            config.da_ident_1,
            config.da_ident_2,
            test="LR",
            latent_vars=config.da_latent_vars,
            min_pct=config.da_min_pct,
        )
        results = de.annotate_closest_genes(results, annotation)
        adata.uns["da_peaks"] = results
        results.to_csv(output_dir / "da_peaks.csv")
        print(results.head(10).to_string())
    else:
        print(f"Groups {wanted} not all present in '{group_key}'; skipping differential test.")

    _step(10, "coverage")
    for gene in config.coverage_genes:
        try:
            annotation.find(gene)
        except KeyError:
            print(f"Gene '{gene}' not in annotation; skipping coverage plot.")
            continue
        _figure(
            config,
            f"coverage_{gene}",
            pl.coverage_plot,
            adata,
            gene,
            group_key=group_key,
            annotation=annotation,
            extend_upstream=config.coverage_extend,
            extend_downstream=config.coverage_extend,
        )

    _step(11, "save")
    io.write_result(adata, config.result_path, gene_activity=activity)
    return adata, activity
