"""Shared gene selection for cross-assay mapping.

Genes are kept only when they pass every rule:
exclusion lists, non-target (glial/contaminant) expression, cross-platform
mean balance, and minimum detection in both datasets.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging
import re

import numpy as np
import pandas as pd
from scipy import sparse

from ...config import MappingConfig
from ...exceptions import EmptyGeneSetError
from ...utils.stats import group_frame
from ..datasets import Dataset, shared_genes

FILTER_RULES = ("not_excluded", "not_non_target", "balanced", "detected")


@dataclass
class GeneFilterResult:
    """Result from gene filtering.

    Attributes
    ----------
    genes : List[str]
        Kept genes in reference order (the run's GeneSet)
    mask : pd.DataFrame
        Boolean rule outcome per shared gene, one column per rule
    stats : pd.DataFrame
        Per-gene means and detection fractions in both datasets
    n_input : int
        Number of genes shared by both datasets before filtering
    """

    genes: List[str] = field(default_factory=list)
    mask: pd.DataFrame = field(default_factory=pd.DataFrame)
    stats: pd.DataFrame = field(default_factory=pd.DataFrame)
    n_input: int = 0

    @property
    def n_kept(self) -> int:
        return len(self.genes)

    def rule_counts(self) -> Dict[str, int]:
        """Number of genes rejected by each rule."""
        return {rule: int((~self.mask[rule]).sum()) for rule in self.mask.columns}


def _column_summary(matrix: Any, threshold: float) -> tuple:
    """Per-gene mean and detection fraction of a cells x genes matrix."""
    n_cells = matrix.shape[0]
    if sparse.issparse(matrix):
        mean = np.asarray(matrix.mean(axis=0)).ravel()
        detected = np.asarray((matrix > threshold).sum(axis=0)).ravel() / n_cells
    else:
        values = np.asarray(matrix, dtype=float)
        mean = values.mean(axis=0)
        detected = (values > threshold).mean(axis=0)
    return mean, detected


class GeneFilter:
    """Deterministic gene filter shared by both datasets.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> gene_filter = GeneFilter(MappingConfig())
    >>> result = gene_filter.run(
    ...     reference, query,
    ...     exclude_genes=sex_genes,
    ...     non_target_clusters=["Astro", "Oligo", "Micro"],
    ... )
    >>> result.genes[:3]
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def excluded_mask(
        self,
        genes: Sequence[str],
        exclude_genes: Optional[Iterable[str]] = None,
        exclude_patterns: Optional[Sequence[str]] = None,
    ) -> np.ndarray:
        """True for genes that are NOT excluded by list or pattern."""
        if exclude_patterns is None:
            exclude_patterns = self.config.genes.exclude_patterns
        exclude = set(exclude_genes or [])
        regexes = [re.compile(p) for p in exclude_patterns]

        keep = np.ones(len(genes), dtype=bool)
        for i, gene in enumerate(genes):
            if gene in exclude or any(rx.search(gene) for rx in regexes):
                keep[i] = False
        return keep

    def cluster_medians(
        self,
        dataset: Dataset,
        genes: Sequence[str],
        clusters: Sequence[str],
    ) -> pd.DataFrame:
        """Genes x clusters median expression over the dataset's labels."""
        idx = dataset.genes.get_indexer(list(genes))
        return group_frame(
            dataset.adata.X[:, idx],
            dataset.labels.to_numpy(),
            list(clusters),
            list(genes),
            how="median",
        )

    def non_target_mask(
        self,
        reference: Dataset,
        genes: Sequence[str],
        target_clusters: Sequence[str],
        non_target_clusters: Sequence[str],
    ) -> np.ndarray:
        """True for genes whose target-cluster max median is not exceeded
        by their non-target max median."""
        if not non_target_clusters:
            return np.ones(len(genes), dtype=bool)
        if not target_clusters:
            raise ValueError("Non-target clusters given but no target clusters remain")

        target = self.cluster_medians(reference, genes, target_clusters)
        non_target = self.cluster_medians(reference, genes, non_target_clusters)
        target_max = np.nan_to_num(target.max(axis=1, skipna=True).to_numpy(), nan=0.0)
        non_target_max = np.nan_to_num(
            non_target.max(axis=1, skipna=True).to_numpy(), nan=0.0
        )
        return non_target_max <= target_max

    def run(
        self,
        reference: Dataset,
        query: Dataset,
        exclude_genes: Optional[Iterable[str]] = None,
        target_clusters: Optional[Sequence[str]] = None,
        non_target_clusters: Optional[Sequence[str]] = None,
        min_genes: Optional[int] = None,
    ) -> GeneFilterResult:
        """Select genes usable for scoring and projection.

        Parameters
        ----------
        reference : Dataset
            Labeled reference dataset (labels needed only for the
            non-target rule)
        query : Dataset
            Query dataset
        exclude_genes : Iterable[str], optional
            Gene ids to reject outright (sex-linked, mitochondrial, ...)
        target_clusters : Sequence[str], optional
            Reference labels treated as target cell types. Defaults to all
            reference labels not listed as non-target.
        non_target_clusters : Sequence[str], optional
            Reference labels of glial / contaminant clusters
        min_genes : int, optional
            Minimum usable genes. Uses config default if None.

        Returns
        -------
        GeneFilterResult
            Kept genes plus the per-rule mask

        Raises
        ------
        EmptyGeneSetError
            If fewer than min_genes genes survive
        """
        cfg = self.config.genes
        min_genes = min_genes if min_genes is not None else cfg.min_genes
        non_target_clusters = list(non_target_clusters or [])

        genes = shared_genes(reference, query)
        self.logger.info(
            "Gene filter: %d reference, %d query, %d shared genes",
            reference.adata.n_vars,
            query.adata.n_vars,
            len(genes),
        )
        if not genes:
            raise EmptyGeneSetError(0, min_genes, "datasets share no genes")

        if non_target_clusters:
            available = set(reference.label_set)
            missing = [c for c in non_target_clusters if c not in available]
            if missing:
                self.logger.warning(
                    "Non-target clusters not in reference labels, ignored: %s",
                    ", ".join(missing),
                )
            non_target_clusters = [c for c in non_target_clusters if c in available]
            if target_clusters is None:
                target_clusters = [
                    c for c in reference.label_set if c not in set(non_target_clusters)
                ]

        ref_idx = reference.genes.get_indexer(genes)
        query_idx = query.genes.get_indexer(genes)
        threshold = cfg.detection_threshold
        ref_mean, ref_detected = _column_summary(reference.adata.X[:, ref_idx], threshold)
        query_mean, query_detected = _column_summary(query.adata.X[:, query_idx], threshold)

        mask = pd.DataFrame(index=pd.Index(genes, name="gene"))
        mask["not_excluded"] = self.excluded_mask(genes, exclude_genes)
        mask["not_non_target"] = self.non_target_mask(
            reference, genes, list(target_clusters or []), non_target_clusters
        )
        mask["balanced"] = np.abs(ref_mean - query_mean) < cfg.max_log2_mean_diff
        mask["detected"] = (ref_detected >= cfg.min_detection_fraction) & (
            query_detected >= cfg.min_detection_fraction
        )

        stats = pd.DataFrame(
            {
                "reference_mean": ref_mean,
                "query_mean": query_mean,
                "reference_detected": ref_detected,
                "query_detected": query_detected,
            },
            index=mask.index,
        )

        keep = mask[list(FILTER_RULES)].all(axis=1).to_numpy()
        result = GeneFilterResult(
            genes=[g for g, k in zip(genes, keep) if k],
            mask=mask,
            stats=stats,
            n_input=len(genes),
        )

        for rule, n_rejected in result.rule_counts().items():
            self.logger.info("Rule %-15s rejected %d genes", rule, n_rejected)
        self.logger.info("Gene filter kept %d / %d genes", result.n_kept, len(genes))

        if result.n_kept < min_genes:
            self.logger.error(
                "Gene filter kept %d genes, fewer than the %d required",
                result.n_kept,
                min_genes,
            )
            raise EmptyGeneSetError(result.n_kept, min_genes)

        return result
