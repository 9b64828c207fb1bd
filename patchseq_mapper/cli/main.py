"""Command-line interface for PatchSeq-Mapper.

Provides CLI commands for mapping query cells onto a labeled reference and
for selecting cross-dataset marker genes.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from .. import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("patchseq_mapper")


@click.group()
@click.version_option(version=__version__, prog_name="patchseq-mapper")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """PatchSeq-Mapper: map Patch-seq cells onto reference cell types.

    Builds a shared embedding of a labeled dissociated-cell reference and a
    Patch-seq query, finds cross-dataset anchors and transfers labels,
    confidences and reference coordinates to the query.

    Examples:

        # Map query cells and write predictions
        patchseq-mapper map --reference ref.h5ad --query patchseq.h5ad --out mapped/

        # Select markers from earlier predictions
        patchseq-mapper markers --reference ref.h5ad --query patchseq.h5ad \\
            --predictions mapped/predictions.csv --out mapped/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command(name="map")
@click.option("--reference", "-r", "reference_path", required=True, type=click.Path(exists=True),
              help="Reference .h5ad or gene-by-cell CSV")
@click.option("--query", "-q", "query_path", required=True, type=click.Path(exists=True),
              help="Query .h5ad or gene-by-cell CSV")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Mapping configuration file (YAML)")
@click.option("--reference-meta", type=click.Path(exists=True), help="Reference metadata CSV")
@click.option("--query-meta", type=click.Path(exists=True), help="Query metadata CSV")
@click.option("--label-key", default="label", help="Obs column holding reference labels")
@click.option("--exclude-genes", type=click.Path(exists=True), help="Gene exclusion list")
@click.option("--non-target", multiple=True, help="Non-target reference label (repeatable)")
@click.option("--target", multiple=True, help="Target reference label (repeatable)")
@click.option("--method", type=click.Choice(["cca", "pca"]), default=None,
              help="Shared embedding method")
@click.option("--n-dims", type=int, default=None, help="Embedding dimensionality")
@click.option("--seed", type=int, default=None, help="Random seed")
@click.option("--coords-key", default=None, help="Reference obsm key of coordinates to transfer")
@click.option("--skip-markers", is_flag=True, help="Do not write markers.csv")
@click.option("--write-h5ad", is_flag=True, help="Write the annotated query .h5ad")
@click.pass_context
def map_cells(
    ctx: click.Context,
    reference_path: str,
    query_path: str,
    output_path: str,
    config: Optional[str],
    reference_meta: Optional[str],
    query_meta: Optional[str],
    label_key: str,
    exclude_genes: Optional[str],
    non_target: Tuple[str, ...],
    target: Tuple[str, ...],
    method: Optional[str],
    n_dims: Optional[int],
    seed: Optional[int],
    coords_key: Optional[str],
    skip_markers: bool,
    write_h5ad: bool,
) -> None:
    """Map query cells onto reference cell types.

    Writes predictions.csv, label_probabilities.csv, anchors.csv,
    specificity.csv, markers.csv and run_summary.yaml to the output
    directory.
    """
    logger = ctx.obj["logger"]
    logger.info("Mapping %s onto %s", query_path, reference_path)

    # Import here to avoid slow startup
    from patchseq_mapper.config import MappingConfig
    from patchseq_mapper.core.integration.__main__ import run_mapping
    from patchseq_mapper.exceptions import MappingError

    cfg = MappingConfig.from_yaml(Path(config)) if config else MappingConfig()
    if method is not None:
        cfg.projection.method = method
    if n_dims is not None:
        cfg.projection.n_dims = n_dims
    if seed is not None:
        cfg.random_seed = seed
    if coords_key is not None:
        cfg.transfer.coords_key = coords_key

    try:
        result = run_mapping(
            reference_path=Path(reference_path),
            query_path=Path(query_path),
            output_dir=Path(output_path),
            config=cfg,
            reference_meta=Path(reference_meta) if reference_meta else None,
            query_meta=Path(query_meta) if query_meta else None,
            label_key=label_key,
            exclude_genes_path=Path(exclude_genes) if exclude_genes else None,
            non_target=list(non_target) or None,
            target=list(target) or None,
            write_markers=not skip_markers,
            write_h5ad=write_h5ad,
            logger=logger,
        )
    except MappingError as e:
        click.echo(f"Mapping failed: {e}", err=True)
        sys.exit(1)

    prediction = result.prediction
    click.echo(
        f"Mapping complete: {len(prediction.cells)} cells, "
        f"{len(result.anchors)} anchors, {prediction.n_fallback} fallback"
    )
    click.echo(f"Output saved to: {output_path}")


@cli.command()
@click.option("--reference", "-r", "reference_path", required=True, type=click.Path(exists=True),
              help="Reference .h5ad or gene-by-cell CSV")
@click.option("--query", "-q", "query_path", required=True, type=click.Path(exists=True),
              help="Query .h5ad or gene-by-cell CSV")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Mapping configuration file (YAML)")
@click.option("--reference-meta", type=click.Path(exists=True), help="Reference metadata CSV")
@click.option("--query-meta", type=click.Path(exists=True), help="Query metadata CSV")
@click.option("--label-key", default="label", help="Obs column holding cell-type labels")
@click.option("--predictions", type=click.Path(exists=True),
              help="predictions.csv giving query labels (default: query's own labels)")
@click.option("--exclude-genes", type=click.Path(exists=True), help="Gene exclusion list")
@click.option("--non-target", multiple=True, help="Non-target reference label (repeatable)")
@click.option("--target", multiple=True, help="Target reference label (repeatable)")
@click.option("--must-include", multiple=True, help="Canonical marker to append (repeatable)")
@click.pass_context
def markers(
    ctx: click.Context,
    reference_path: str,
    query_path: str,
    output_path: str,
    config: Optional[str],
    reference_meta: Optional[str],
    query_meta: Optional[str],
    label_key: str,
    predictions: Optional[str],
    exclude_genes: Optional[str],
    non_target: Tuple[str, ...],
    target: Tuple[str, ...],
    must_include: Tuple[str, ...],
) -> None:
    """Select markers specific in the reference and consistent in the query."""
    logger = ctx.obj["logger"]

    import pandas as pd

    from patchseq_mapper.config import MappingConfig
    from patchseq_mapper.core.datasets import load_dataset
    from patchseq_mapper.core.genes import GeneFilter, MarkerSelector, SpecificityScorer
    from patchseq_mapper.core.integration import export_markers
    from patchseq_mapper.exceptions import MappingError
    from patchseq_mapper.io import load_gene_list

    cfg = MappingConfig.from_yaml(Path(config)) if config else MappingConfig()

    try:
        reference = load_dataset(
            "reference", reference_path, metadata_path=reference_meta,
            label_key=label_key, require_labels=True,
            unassigned_label=cfg.unassigned_label,
        )
        query = load_dataset(
            "query", query_path, metadata_path=query_meta,
            label_key=label_key, unassigned_label=cfg.unassigned_label,
        )
        if predictions:
            predicted = pd.read_csv(predictions, index_col=0)["predicted_label"]
            predicted.index = predicted.index.astype(str)
            labels = predicted.reindex(query.cell_ids).fillna(cfg.unassigned_label)
            query = query.with_labels(labels.tolist(), label_key="predicted_label")
        elif not query.has_labels:
            raise click.UsageError("Query has no labels; pass --predictions")

        gene_result = GeneFilter(cfg, logger).run(
            reference,
            query,
            exclude_genes=load_gene_list(exclude_genes) if exclude_genes else None,
            target_clusters=list(target) or None,
            non_target_clusters=list(non_target) or None,
        )
        table = SpecificityScorer(cfg, logger).run(reference, gene_result.genes)
        marker_list = MarkerSelector(cfg, logger).select(
            table,
            reference,
            query,
            target_clusters=list(target) or None,
            must_include=list(must_include) or None,
        )
    except MappingError as e:
        click.echo(f"Marker selection failed: {e}", err=True)
        sys.exit(1)

    output_file = export_markers(marker_list, Path(output_path))
    click.echo(f"Selected {len(marker_list)} markers")
    click.echo(f"Output saved to: {output_file}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
