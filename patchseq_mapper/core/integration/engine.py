"""End-to-end mapping of a query dataset onto a reference taxonomy.

Pipeline: gene filter -> beta-score feature selection -> shared embedding
-> mutual nearest-neighbor anchors -> anchor weighting -> label transfer
(+ coordinate transfer and integrated embedding).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging
import time

import numpy as np
import pandas as pd

from ...config import MappingConfig
from ..datasets import Dataset
from ..genes.filter import GeneFilter, GeneFilterResult
from ..genes.markers import MarkerList, MarkerSelector
from ..genes.specificity import SpecificityScorer, SpecificityTable
from .anchors import AnchorFinder, AnchorSet
from .projection import SharedEmbedding, SharedSpaceProjector
from .transfer import LabelTransferEngine, PredictionResult
from .weighting import AnchorWeighter


@dataclass
class MappingResult:
    """Result from a mapping run.

    Attributes
    ----------
    gene_filter : GeneFilterResult
        Shared gene selection
    specificity : SpecificityTable
        Beta scores over the reference clusters
    features : List[str]
        Genes used for the shared embedding
    embedding : SharedEmbedding
        Shared embedding before integration
    anchors : AnchorSet
        Weighted anchors
    prediction : PredictionResult
        Per-query-cell labels, confidences, and coordinates
    integrated : SharedEmbedding
        Joint embedding with query cells corrected toward the reference
    elapsed_seconds : float
        Wall time of the run
    """

    gene_filter: GeneFilterResult
    specificity: SpecificityTable
    features: List[str]
    embedding: SharedEmbedding
    anchors: AnchorSet
    prediction: PredictionResult
    integrated: SharedEmbedding
    elapsed_seconds: float = 0.0
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def no_anchors(self) -> bool:
        return self.anchors.is_empty

    def summary(self) -> Dict[str, Any]:
        """Plain-python run record (YAML/JSON serializable)."""
        counts = pd.Series(self.prediction.predicted_label).value_counts()
        return {
            "seed": int(self.embedding.seed),
            "projection_method": self.embedding.method,
            "n_dims": int(self.embedding.n_dims),
            "n_shared_genes": int(self.gene_filter.n_input),
            "n_filtered_genes": int(self.gene_filter.n_kept),
            "genes_rejected_by_rule": self.gene_filter.rule_counts(),
            "n_features": len(self.features),
            "n_undefined_scores": len(self.specificity.undefined),
            "n_anchors": len(self.anchors),
            "n_anchored_query_cells": (
                0 if self.anchors.is_empty else self.anchors.n_anchored_query_cells()
            ),
            "no_anchors": self.no_anchors,
            "n_query_cells": int(len(self.prediction.cells)),
            "n_fallback": self.prediction.n_fallback,
            "median_confidence": float(np.median(self.prediction.confidence)),
            "predicted_label_counts": {str(k): int(v) for k, v in counts.items()},
            "elapsed_seconds": round(float(self.elapsed_seconds), 3),
            "params": self.params,
        }


class MappingEngine:
    """Map query cells onto reference cell types.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> engine = MappingEngine(MappingConfig())
    >>> result = engine.run(reference, query, non_target_clusters=["Astro", "Oligo"])
    >>> result.prediction.to_frame().head()
    >>> markers = engine.select_markers(result, reference, query)
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.gene_filter = GeneFilter(self.config, self.logger)
        self.scorer = SpecificityScorer(self.config, self.logger)
        self.projector = SharedSpaceProjector(self.config, self.logger)
        self.finder = AnchorFinder(self.config, self.logger)
        self.weighter = AnchorWeighter(self.config, self.logger)
        self.transfer = LabelTransferEngine(self.config, self.logger)
        self.marker_selector = MarkerSelector(self.config, self.logger)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import anndata  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Mapping requires anndata. Install with: pip install anndata"
            )
        if self.config.projection.method == "pca":
            try:
                import scanpy  # noqa: F401
            except ImportError:
                raise RuntimeError(
                    "PCA projection requires scanpy. Install with: pip install scanpy"
                )

    def select_features(self, table: SpecificityTable, n_features: Optional[int] = None) -> List[str]:
        """Top genes by specificity, capped so the embedding stays feasible."""
        n_features = n_features if n_features is not None else self.config.specificity.n_features
        features = table.top_genes(n_features)
        self.logger.info(
            "Selected %d / %d genes by beta score for projection",
            len(features),
            len(table.genes),
        )
        return features

    def run(
        self,
        reference: Dataset,
        query: Dataset,
        exclude_genes: Optional[Iterable[str]] = None,
        non_target_clusters: Optional[Sequence[str]] = None,
        target_clusters: Optional[Sequence[str]] = None,
        features: Optional[Sequence[str]] = None,
    ) -> MappingResult:
        """Run the full mapping pipeline.

        Parameters
        ----------
        reference : Dataset
            Labeled reference dataset
        query : Dataset
            Query dataset
        exclude_genes : Iterable[str], optional
            Genes excluded from every step
        non_target_clusters : Sequence[str], optional
            Reference labels of glial / contaminant clusters
        target_clusters : Sequence[str], optional
            Reference labels of target clusters for the non-target rule
        features : Sequence[str], optional
            Explicit projection genes; must be within the filtered GeneSet.
            Defaults to the top genes by beta score.

        Returns
        -------
        MappingResult
        """
        start = time.time()
        if not reference.label_set:
            raise ValueError(f"Reference dataset '{reference.name}' has no labels")

        self.logger.info(
            "Mapping %s (%d cells) onto %s (%d cells, %d labels), seed=%d",
            query.name,
            query.n_cells,
            reference.name,
            reference.n_cells,
            len(reference.label_set),
            self.config.random_seed,
        )

        gene_result = self.gene_filter.run(
            reference,
            query,
            exclude_genes=exclude_genes,
            target_clusters=target_clusters,
            non_target_clusters=non_target_clusters,
        )
        table = self.scorer.run(reference, gene_result.genes)

        if features is None:
            features = self.select_features(table)
        else:
            allowed = set(gene_result.genes)
            outside = [g for g in features if g not in allowed]
            if outside:
                raise ValueError(
                    f"{len(outside)} requested features are not in the filtered gene set "
                    f"(e.g. {outside[:5]})"
                )
            features = list(features)

        embedding = self.projector.project(reference, query, features)
        anchors = self.finder.find(embedding)
        anchors = self.weighter.weight(anchors, embedding)

        weights = self.transfer.compute_weights(embedding, anchors)
        ref_labels = reference.labels.to_numpy()
        prediction = self.transfer.transfer_labels(embedding, anchors, ref_labels, weights)

        coords_key = self.config.transfer.coords_key
        if coords_key and coords_key in reference.adata.obsm:
            coords = self.transfer.transfer_features(
                embedding,
                anchors,
                np.asarray(reference.adata.obsm[coords_key]),
                weights=weights,
                prediction=prediction,
                reference_labels=ref_labels,
            )
            prediction.coordinates = pd.DataFrame(
                coords,
                index=prediction.cells,
                columns=[f"{coords_key}_{i + 1}" for i in range(coords.shape[1])],
            )
            self.logger.info("Transferred reference '%s' coordinates", coords_key)
        elif coords_key:
            self.logger.info("Reference has no obsm['%s']; skipping coordinates", coords_key)

        integrated = self.transfer.integrate(embedding, anchors, weights)

        elapsed = time.time() - start
        result = MappingResult(
            gene_filter=gene_result,
            specificity=table,
            features=list(features),
            embedding=embedding,
            anchors=anchors,
            prediction=prediction,
            integrated=integrated,
            elapsed_seconds=elapsed,
            params=self.config.to_dict(),
        )
        self.logger.info(
            "Mapping finished in %.1f seconds: %d anchors, %d fallback cells",
            elapsed,
            len(anchors),
            prediction.n_fallback,
        )
        return result

    def select_markers(
        self,
        result: MappingResult,
        reference: Dataset,
        query: Dataset,
        target_clusters: Optional[Sequence[str]] = None,
        must_include: Optional[Iterable[str]] = None,
    ) -> MarkerList:
        """Select markers using the run's scores and predicted query labels."""
        labeled_query = query.with_labels(
            result.prediction.predicted_label, label_key="predicted_label"
        )
        return self.marker_selector.select(
            result.specificity,
            reference,
            labeled_query,
            target_clusters=target_clusters,
            must_include=must_include,
        )
