"""Export mapping results as flat tables and a YAML run record."""

from pathlib import Path
from typing import Dict, Optional
import logging

import numpy as np

from ...io import ensure_output_dir, log_yaml, write_dataframe
from ..datasets import Dataset
from ..genes.markers import MarkerList
from .engine import MappingResult

logger = logging.getLogger(__name__)


def export_mapping_result(
    result: MappingResult,
    output_dir: Path,
    query: Optional[Dataset] = None,
    write_h5ad: bool = False,
) -> Dict[str, Path]:
    """Write all tables of a mapping run.

    Parameters
    ----------
    result : MappingResult
        Output of MappingEngine.run
    output_dir : Path
        Destination directory (created if missing)
    query : Dataset, optional
        Query dataset; required for write_h5ad
    write_h5ad : bool
        Also write the query AnnData annotated with predictions

    Returns
    -------
    Dict[str, Path]
        Map of artifact name to written path
    """
    out = ensure_output_dir(output_dir)
    paths: Dict[str, Path] = {}

    paths["predictions"] = write_dataframe(
        result.prediction.to_frame(), out / "predictions.csv", index=True
    )
    probabilities = result.prediction.probabilities.copy()
    probabilities.index.name = "cell_id"
    paths["label_probabilities"] = write_dataframe(
        probabilities, out / "label_probabilities.csv", index=True
    )
    paths["anchors"] = write_dataframe(result.anchors.to_frame(), out / "anchors.csv")
    paths["specificity"] = write_dataframe(
        result.specificity.to_frame(), out / "specificity.csv", index=True
    )
    paths["gene_filter"] = write_dataframe(
        result.gene_filter.mask.join(result.gene_filter.stats),
        out / "gene_filter.csv",
        index=True,
    )
    paths["integrated_embedding"] = write_dataframe(
        result.integrated.to_frame(), out / "integrated_embedding.csv", index=True
    )

    summary_path = out / "run_summary.yaml"
    log_yaml(summary_path, result.summary(), append=False)
    paths["run_summary"] = summary_path

    if write_h5ad:
        if query is None:
            raise ValueError("write_h5ad requires the query dataset")
        paths["query_h5ad"] = _write_query_h5ad(result, query, out / "query_mapped.h5ad")

    logger.info("Exported %d mapping artifacts to %s", len(paths), out)
    return paths


def _write_query_h5ad(result: MappingResult, query: Dataset, path: Path) -> Path:
    adata = query.adata.copy()
    frame = result.prediction.to_frame().reindex(adata.obs_names)
    adata.obs["predicted_label"] = frame["predicted_label"].astype("category")
    adata.obs["confidence"] = frame["confidence"].to_numpy()
    adata.obs["mapping_status"] = frame["status"].astype("category")
    adata.obsm["X_shared"] = np.asarray(result.embedding.query)
    adata.obsm["X_integrated"] = np.asarray(result.integrated.query)
    if result.prediction.coordinates is not None:
        adata.obsm["X_transferred"] = result.prediction.coordinates.to_numpy()
    adata.uns["mapping"] = {
        "seed": int(result.embedding.seed),
        "method": result.embedding.method,
        "features": np.asarray(result.features, dtype=str),
    }
    adata.write_h5ad(path)
    return path


def export_markers(markers: MarkerList, output_dir: Path) -> Path:
    """Write the ordered marker list with its selection records."""
    out = ensure_output_dir(output_dir)
    path = write_dataframe(markers.to_frame(), out / "markers.csv", index=True)
    logger.info("Wrote %d markers to %s", len(markers), path)
    return path
