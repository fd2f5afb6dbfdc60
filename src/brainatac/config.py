"""Analysis parameters for the adult mouse brain scATAC-seq walkthrough.

Module-level tables hold the thresholds and constants used across the
package. ``PipelineConfig`` bundles paths and tunables for one end-to-end run.
Edit the tables (or pass overrides to the config) to change stringency.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

# Cell-level QC thresholds (all predicates must hold for a cell to be kept)
QC_THRESHOLDS = {
    "min_peak_region_fragments": 3000,
    "max_peak_region_fragments": 100000,
    "min_pct_reads_in_peaks": 40,
    "max_blacklist_ratio": 0.025,
    "max_nucleosome_signal": 4,
    "min_tss_enrichment": 2,
}

# Fragment length classes (bp)
NUCLEOSOME_FREE_MAX = 147
MONONUCLEOSOME_MAX = 294

# TSS enrichment geometry (bp)
TSS_WINDOW = 1000  # profile spans +/- this many bases around each TSS
TSS_FLANK = 100  # background is the outermost FLANK positions on each side
TSS_CENTER = 50  # score is the mean normalized signal within +/- CENTER

# Cutoffs used only to group cells for the QC figures
HIGH_TSS_CUTOFF = 2
NUCLEOSOME_GROUP_CUTOFF = 4

# Metrics shown in the QC violin panel
QC_VIOLIN_KEYS = [
    "pct_reads_in_peaks",
    "peak_region_fragments",
    "tss_enrichment",
    "blacklist_ratio",
    "nucleosome_signal",
]

# Canonical cortical and interneuron markers for gene activity feature plots
MARKER_GENES = ["Sst", "Pvalb", "Gad2", "Neurod6", "Rorb", "Syt6"]
COVERAGE_GENES = ["Neurod6", "Gad2"]

# 10x "atac_v1_adult_brain_fresh_5k" file names
DATASET_PREFIX = "atac_v1_adult_brain_fresh_5k"
DATASET_FILES = {
    "counts_h5": f"{DATASET_PREFIX}_filtered_peak_bc_matrix.h5",
    "metadata_csv": f"{DATASET_PREFIX}_singlecell.csv",
    "fragments": f"{DATASET_PREFIX}_fragments.tsv.gz",
    "reference": "allen_brain.h5ad",
}

DEFAULT_DATA_DIR = Path("data")
DATA_DIR = Path(os.environ.get("BRAINATAC_DATA_DIR", DEFAULT_DATA_DIR))
OUTPUT_DIR = Path(os.environ.get("BRAINATAC_OUTPUT_DIR", "outputs"))


def validate_thresholds(thresholds: Dict[str, float] | None = None) -> bool:
    """Validate that QC thresholds make sense."""
    thresholds = QC_THRESHOLDS if thresholds is None else thresholds
    errors = []

    missing = sorted(set(QC_THRESHOLDS) - set(thresholds))
    if missing:
        errors.append(f"missing thresholds: {missing}")
    else:
        if thresholds["min_peak_region_fragments"] >= thresholds["max_peak_region_fragments"]:
            errors.append("min_peak_region_fragments must be less than max_peak_region_fragments")

        if not 0 <= thresholds["min_pct_reads_in_peaks"] <= 100:
            errors.append("min_pct_reads_in_peaks must be between 0 and 100")

        if thresholds["max_blacklist_ratio"] < 0:
            errors.append("max_blacklist_ratio must be non-negative")

        if thresholds["max_nucleosome_signal"] <= 0:
            errors.append("max_nucleosome_signal must be positive")

    if errors:
        raise ValueError("QC threshold validation failed:\n" + "\n".join(errors))

    return True


@dataclass
class PipelineConfig:
    """Paths and parameters of one end-to-end run."""

    counts_h5: Path
    metadata_csv: Path | None
    fragments: Path
    reference: Path | None = None
    gtf: Path | None = None
    ensembl_release: int = 79
    blacklist: Path | None = None
    output_dir: Path = OUTPUT_DIR
    genome: str = "mm10"

    # Loading
    min_cells: int = 1
    min_features: int = 0

    # QC
    qc_thresholds: Dict[str, float] = field(default_factory=lambda: dict(QC_THRESHOLDS))

    # Normalization and reduction
    tfidf_scale_factor: float = 1e4
    top_features_cutoff: str | int = "q0"
    n_lsi_components: int = 50
    lsi_dims: Tuple[int, int] = (2, 30)

    # Embedding and clustering
    n_neighbors: int = 30
    leiden_resolution: float = 0.8

    # Gene activity
    promoter_upstream: int = 2000
    marker_genes: List[str] = field(default_factory=lambda: list(MARKER_GENES))

    # Label transfer
    reference_label_key: str = "subclass"
    n_reference_features: int = 5000
    cca_dims: int = 30
    k_weight: int = 50
    min_prediction_score: float | None = None

    # Differential accessibility
    da_group_key: str = "cell_type"
    da_ident_1: str = "L2/3 IT"
    da_ident_2: str | None = "L4"
    da_min_pct: float = 0.4
    da_latent_vars: Tuple[str, ...] = ("peak_region_fragments",)

    # Figures
    coverage_genes: List[str] = field(default_factory=lambda: list(COVERAGE_GENES))
    coverage_extend: int = 1000
    figure_format: str = "png"
    make_figures: bool = True

    random_state: int = 0

    def __post_init__(self):
        validate_thresholds(self.qc_thresholds)

    @classmethod
    def from_data_dir(cls, data_dir: Path | str | None = None, **overrides) -> "PipelineConfig":
        """Resolve the standard 10x dataset file names inside ``data_dir``."""
        data_dir = Path(data_dir) if data_dir is not None else DATA_DIR
        paths = {key: data_dir / name for key, name in DATASET_FILES.items()}
        paths.update(overrides)
        return cls(**paths)

    @property
    def result_path(self) -> Path:
        return Path(self.output_dir) / f"{DATASET_PREFIX}_processed.h5mu"


# Run validation on import
validate_thresholds()
