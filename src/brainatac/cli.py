"""Command-line entry point for the mouse brain scATAC-seq walkthrough."""

from __future__ import annotations

import argparse
from pathlib import Path

from .config import DATA_DIR, OUTPUT_DIR, PipelineConfig
from .pipeline import STEPS, run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Analyze the 10x adult mouse brain scATAC-seq dataset."
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DATA_DIR,
        help="Directory holding the 10x files and the reference (default: %(default)s).",
    )
    parser.add_argument("--counts", type=Path, help="Peak/cell matrix (.h5).")
    parser.add_argument("--metadata", type=Path, help="Per-barcode metadata (.csv).")
    parser.add_argument("--fragments", type=Path, help="Fragment file (.tsv.gz).")
    parser.add_argument("--reference", type=Path, help="Labelled scRNA-seq reference (.h5ad).")
    parser.add_argument(
        "--no-reference", action="store_true", help="Skip label transfer and cluster identities."
    )
    parser.add_argument("--gtf", type=Path, help="Gene annotation GTF (default: Ensembl release).")
    parser.add_argument("--ensembl-release", type=int, default=79)
    parser.add_argument("--blacklist", type=Path, help="Blacklist regions (.bed).")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=OUTPUT_DIR,
        help="Where figures and the result file are written (default: %(default)s).",
    )
    parser.add_argument("--resolution", type=float, default=0.8, help="Leiden resolution.")
    parser.add_argument("--label-key", default="subclass", help="Reference label column.")
    parser.add_argument(
        "--min-prediction-score",
        type=float,
        default=None,
        help="Drop cells whose best prediction score is below this.",
    )
    parser.add_argument("--no-figures", action="store_true", help="Do not write figures.")
    parser.add_argument(
        "--figure-format", default="png", choices=["png", "pdf", "svg"], help="Figure file type."
    )
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument(
        "--list-steps",
        action="store_true",
        help="List the analysis steps and exit.",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    overrides = {
        "counts_h5": args.counts,
        "metadata_csv": args.metadata,
        "fragments": args.fragments,
        "reference": args.reference,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if args.no_reference:
        overrides["reference"] = None

    return PipelineConfig.from_data_dir(
        args.data_dir,
        gtf=args.gtf,
        ensembl_release=args.ensembl_release,
        blacklist=args.blacklist,
        output_dir=args.output_dir,
        leiden_resolution=args.resolution,
        reference_label_key=args.label_key,
        min_prediction_score=args.min_prediction_score,
        make_figures=not args.no_figures,
        figure_format=args.figure_format,
        random_state=args.seed,
        **overrides,
    )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_steps:
        for name in STEPS:
            print(name)
        return

    config = config_from_args(args)
    for key in ("counts_h5", "metadata_csv", "fragments", "reference", "gtf", "blacklist"):
        path = getattr(config, key)
        if path is not None and not Path(path).exists():
            parser.error(f"{key} not found: {path}")

    run(config)


if __name__ == "__main__":
    main()
