"""Mapping module CLI runner.

Enables running a full reference mapping as:
    python -m patchseq_mapper.core.integration --reference <h5ad> --query <h5ad> --output <dir>

Usage Examples:
    # Map Patch-seq cells onto a dissociated-cell reference
    python -m patchseq_mapper.core.integration \\
        --reference data/facs_reference.h5ad \\
        --query data/patchseq.h5ad \\
        --output output/mapping

    # Gene-by-cell CSV inputs with metadata tables
    python -m patchseq_mapper.core.integration \\
        --reference data/facs_counts.csv --reference-meta data/facs_meta.csv \\
        --query data/patchseq_counts.csv --query-meta data/patchseq_meta.csv \\
        --label-key subclass \\
        --output output/mapping

    # Exclude glial contamination and sex/mitochondrial genes
    python -m patchseq_mapper.core.integration \\
        --reference data/facs_reference.h5ad \\
        --query data/patchseq.h5ad \\
        --exclude-genes data/excluded_genes.txt \\
        --non-target Astro Oligo Micro-PVM \\
        --output output/mapping
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence

from ...config import MappingConfig
from ...exceptions import MappingError
from ...io import get_logger, load_gene_list
from ..datasets import load_dataset
from .engine import MappingEngine, MappingResult
from .export import export_mapping_result, export_markers

LOG_FILENAME = "mapping.log"


def setup_logging(
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_filename: str = LOG_FILENAME,
) -> logging.Logger:
    """Console logging plus a timestamped run log under log_dir."""
    level = logging.DEBUG if verbose else logging.INFO
    log_path = Path(log_dir) / log_filename if log_dir else None
    logger, actual_log_path = get_logger(
        "patchseq_mapper", log_path, level=level, console=True
    )
    if actual_log_path is not None:
        logger.info("Log file: %s", actual_log_path)
    return logger


def run_mapping(
    reference_path: Path,
    query_path: Path,
    output_dir: Path,
    config: Optional[MappingConfig] = None,
    reference_meta: Optional[Path] = None,
    query_meta: Optional[Path] = None,
    label_key: str = "label",
    exclude_genes_path: Optional[Path] = None,
    non_target: Optional[Sequence[str]] = None,
    target: Optional[Sequence[str]] = None,
    write_markers: bool = True,
    write_h5ad: bool = False,
    logger: Optional[logging.Logger] = None,
) -> MappingResult:
    """Load both datasets, map the query and write all outputs.

    Parameters
    ----------
    reference_path : Path
        Reference .h5ad or gene-by-cell CSV
    query_path : Path
        Query .h5ad or gene-by-cell CSV
    output_dir : Path
        Output directory
    config : MappingConfig, optional
        Mapping configuration. Defaults if None.
    reference_meta, query_meta : Path, optional
        Cell metadata CSVs for CSV inputs
    label_key : str
        Reference obs column holding cell-type labels
    exclude_genes_path : Path, optional
        Text file of genes to exclude
    non_target : Sequence[str], optional
        Reference labels of contaminant clusters
    target : Sequence[str], optional
        Reference labels of target clusters
    write_markers : bool
        Also select and write markers.csv
    write_h5ad : bool
        Also write the annotated query AnnData

    Returns
    -------
    MappingResult
    """
    config = config or MappingConfig()
    logger = logger or logging.getLogger(__name__)
    output_dir = Path(output_dir)

    reference = load_dataset(
        "reference",
        reference_path,
        metadata_path=reference_meta,
        label_key=label_key,
        require_labels=True,
        unassigned_label=config.unassigned_label,
    )
    query = load_dataset(
        "query",
        query_path,
        metadata_path=query_meta,
        label_key=label_key,
        unassigned_label=config.unassigned_label,
    )
    exclude_genes = load_gene_list(exclude_genes_path) if exclude_genes_path else None

    engine = MappingEngine(config, logger)
    result = engine.run(
        reference,
        query,
        exclude_genes=exclude_genes,
        non_target_clusters=non_target,
        target_clusters=target,
    )
    paths: Dict[str, Path] = export_mapping_result(
        result, output_dir, query=query, write_h5ad=write_h5ad
    )

    if write_markers:
        markers = engine.select_markers(result, reference, query, target_clusters=target)
        paths["markers"] = export_markers(markers, output_dir)

    for name, path in paths.items():
        logger.debug("  %s -> %s", name, path)
    return result


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Map query (Patch-seq) cells onto reference cell types",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m patchseq_mapper.core.integration \\
      --reference data/facs_reference.h5ad \\
      --query data/patchseq.h5ad \\
      --output output/mapping

  python -m patchseq_mapper.core.integration \\
      --reference data/facs_reference.h5ad \\
      --query data/patchseq.h5ad \\
      --config mapping.yaml --seed 7 --method pca \\
      --output output/mapping_pca
        """,
    )

    parser.add_argument(
        "--reference", "-r",
        type=Path,
        required=True,
        help="Reference .h5ad or gene-by-cell CSV",
    )
    parser.add_argument(
        "--query", "-q",
        type=Path,
        required=True,
        help="Query .h5ad or gene-by-cell CSV",
    )
    parser.add_argument(
        "--output", "-o",
        type=Path,
        required=True,
        help="Output directory",
    )
    parser.add_argument("--reference-meta", type=Path, default=None, help="Reference metadata CSV")
    parser.add_argument("--query-meta", type=Path, default=None, help="Query metadata CSV")
    parser.add_argument("--config", "-c", type=Path, default=None, help="Mapping config YAML")
    parser.add_argument(
        "--label-key",
        default="label",
        help="Obs column holding reference cell-type labels (default: label)",
    )
    parser.add_argument("--exclude-genes", type=Path, default=None, help="Gene exclusion list")
    parser.add_argument(
        "--non-target",
        nargs="*",
        default=None,
        help="Reference labels of non-target (contaminant) clusters",
    )
    parser.add_argument(
        "--target",
        nargs="*",
        default=None,
        help="Reference labels of target clusters",
    )
    parser.add_argument(
        "--method",
        choices=["cca", "pca"],
        default=None,
        help="Shared embedding method (default: from config)",
    )
    parser.add_argument("--n-dims", type=int, default=None, help="Embedding dimensionality")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument(
        "--coords-key",
        default=None,
        help="Reference obsm key of coordinates to transfer (default: X_umap)",
    )
    parser.add_argument("--n-jobs", type=int, default=None, help="Parallel workers")
    parser.add_argument("--skip-markers", action="store_true", help="Do not write markers.csv")
    parser.add_argument("--write-h5ad", action="store_true", help="Write annotated query .h5ad")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for the log file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> MappingConfig:
    """Config from YAML (or defaults) with command-line overrides applied."""
    config = MappingConfig.from_yaml(args.config) if args.config else MappingConfig()
    if args.method is not None:
        config.projection.method = args.method
    if args.n_dims is not None:
        config.projection.n_dims = args.n_dims
    if args.seed is not None:
        config.random_seed = args.seed
    if args.coords_key is not None:
        config.transfer.coords_key = args.coords_key
    if args.n_jobs is not None:
        config.n_jobs = args.n_jobs
    return config


def main(argv: Optional[Sequence[str]] = None):
    """CLI entry point."""
    args = parse_args(argv)
    logger = setup_logging(args.verbose, args.log_dir)
    config = build_config(args)

    try:
        result = run_mapping(
            reference_path=args.reference,
            query_path=args.query,
            output_dir=args.output,
            config=config,
            reference_meta=args.reference_meta,
            query_meta=args.query_meta,
            label_key=args.label_key,
            exclude_genes_path=args.exclude_genes,
            non_target=args.non_target,
            target=args.target,
            write_markers=not args.skip_markers,
            write_h5ad=args.write_h5ad,
            logger=logger,
        )
    except MappingError as e:
        logger.error("Mapping failed: %s", e)
        sys.exit(1)

    logger.info(
        "Mapped %d query cells (%d fallback) -> %s",
        len(result.prediction.cells),
        result.prediction.n_fallback,
        args.output,
    )


if __name__ == "__main__":
    main()
