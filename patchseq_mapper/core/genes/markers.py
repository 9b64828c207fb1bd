"""Final marker gene selection.

Candidates come from the specificity ranking and must pass two filters:

- dominance: the proportion of expressing cells in the gene's assigned
  cluster exceeds min_proportion;
- consistency: the gene's cluster-mean expression vector over the target
  clusters correlates (Pearson) at least min_correlation between the
  reference and the query.

Survivors keep their ranking order, at most max_per_cluster per assigned
cluster, followed by any caller-supplied canonical markers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from ...config import MappingConfig
from ...utils.stats import group_frame, row_pearson
from ..datasets import Dataset
from .specificity import SpecificityScorer, SpecificityTable


@dataclass
class MarkerList:
    """Ordered, de-duplicated marker genes.

    Attributes
    ----------
    genes : List[str]
        Selected markers in output order
    table : pd.DataFrame
        Per-candidate record: cluster, beta, proportion, correlation,
        filter outcomes and selection reason
    """

    genes: List[str] = field(default_factory=list)
    table: pd.DataFrame = field(default_factory=pd.DataFrame)

    def __len__(self) -> int:
        return len(self.genes)

    def by_cluster(self) -> dict:
        """Selected specificity-ranked markers grouped by assigned cluster."""
        selected = self.table[self.table["reason"] == "specific"]
        return {
            cluster: group.index.tolist()
            for cluster, group in selected.groupby("cluster", sort=True)
        }

    def to_frame(self) -> pd.DataFrame:
        """Selected markers in order with their records."""
        frame = self.table.loc[self.genes].copy()
        frame.insert(0, "rank", np.arange(1, len(frame) + 1))
        return frame


class MarkerSelector:
    """Select markers that are specific and reproducible across datasets.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> selector = MarkerSelector(config)
    >>> markers = selector.select(
    ...     table, reference, query_with_predictions,
    ...     target_clusters=["Lamp5", "Pvalb", "Sst", "Vip"],
    ...     must_include=["Gad1"],
    ... )
    >>> markers.genes
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.scorer = SpecificityScorer(self.config, self.logger)

    def cross_dataset_correlation(
        self,
        reference: Dataset,
        query: Dataset,
        genes: Sequence[str],
        clusters: Sequence[str],
    ) -> pd.Series:
        """Pearson correlation of cluster means between the two datasets.

        Clusters without cells in either dataset are ignored per gene.
        """
        genes = list(genes)
        ref_means = group_frame(
            reference.adata.X[:, reference.genes.get_indexer(genes)],
            reference.labels.to_numpy(),
            list(clusters),
            genes,
            how="mean",
        )
        query_means = group_frame(
            query.adata.X[:, query.genes.get_indexer(genes)],
            query.labels.to_numpy(),
            list(clusters),
            genes,
            how="mean",
        )
        corr = row_pearson(ref_means.to_numpy(), query_means.to_numpy())
        return pd.Series(corr, index=pd.Index(genes, name="gene"), name="correlation")

    def select(
        self,
        table: SpecificityTable,
        reference: Dataset,
        query: Dataset,
        target_clusters: Optional[Sequence[str]] = None,
        must_include: Optional[Iterable[str]] = None,
        min_proportion: Optional[float] = None,
        min_correlation: Optional[float] = None,
        max_per_cluster: Optional[int] = None,
    ) -> MarkerList:
        """Build the final marker list.

        Parameters
        ----------
        table : SpecificityTable
            Specificity scores over reference clusters
        reference : Dataset
            Labeled reference dataset
        query : Dataset
            Query dataset labeled with its final (predicted) clusters
        target_clusters : Sequence[str], optional
            Clusters to restrict to. Defaults to all table clusters.
        must_include : Iterable[str], optional
            Canonical markers appended after the ranked selection
        min_proportion : float, optional
            Dominance cutoff. Uses config default if None.
        min_correlation : float, optional
            Consistency cutoff. Uses config default if None.
        max_per_cluster : int, optional
            Per-cluster cap. Uses config default if None.

        Returns
        -------
        MarkerList
        """
        cfg = self.config.markers
        min_proportion = min_proportion if min_proportion is not None else cfg.min_proportion
        min_correlation = (
            min_correlation if min_correlation is not None else cfg.min_correlation
        )
        max_per_cluster = max_per_cluster if max_per_cluster is not None else cfg.max_per_cluster

        if target_clusters is not None:
            target_clusters = list(target_clusters)
            if list(table.clusters) != target_clusters:
                table = self.scorer.restrict(table, target_clusters)
        clusters = table.clusters

        in_both = set(reference.genes) & set(query.genes)
        genes = [g for g in table.ranked() if g in in_both]
        dropped = len(table.genes) - len(genes)
        if dropped:
            self.logger.warning(
                "%d scored genes are missing from one dataset and were skipped", dropped
            )

        assigned = table.assigned_cluster.loc[genes]
        props = table.proportions.loc[genes]
        dominant_prop = np.array(
            [props.at[g, c] for g, c in zip(genes, assigned)], dtype=float
        )
        correlation = self.cross_dataset_correlation(reference, query, genes, clusters)

        records = pd.DataFrame(
            {
                "cluster": assigned.to_numpy(),
                "beta": table.beta.loc[genes].to_numpy(),
                "proportion": dominant_prop,
                "correlation": correlation.to_numpy(),
            },
            index=pd.Index(genes, name="gene"),
        )
        records["passed_dominance"] = np.nan_to_num(records["proportion"], nan=0.0) > min_proportion
        records["passed_consistency"] = (
            np.nan_to_num(records["correlation"], nan=-1.0) >= min_correlation
        )
        records["passed_beta"] = records["beta"] >= cfg.min_beta
        records["reason"] = ""

        selected: List[str] = []
        per_cluster: dict = {c: 0 for c in clusters}
        passing = records[
            records["passed_dominance"]
            & records["passed_consistency"]
            & records["passed_beta"]
        ]
        for gene, row in passing.iterrows():
            if max_per_cluster is not None and per_cluster[row["cluster"]] >= max_per_cluster:
                continue
            per_cluster[row["cluster"]] += 1
            selected.append(gene)
            records.at[gene, "reason"] = "specific"

        for gene in must_include or []:
            if gene in selected:
                continue
            if gene not in in_both:
                self.logger.warning("Required marker %s not present in both datasets", gene)
                continue
            if gene not in records.index:
                extra = self.cross_dataset_correlation(reference, query, [gene], clusters)
                records.loc[gene] = pd.Series({
                    "cluster": "",
                    "beta": np.nan,
                    "proportion": np.nan,
                    "correlation": float(extra.iloc[0]),
                    "passed_dominance": False,
                    "passed_consistency": False,
                    "passed_beta": False,
                    "reason": "",
                })
            records.at[gene, "reason"] = "must_include"
            selected.append(gene)

        self.logger.info(
            "Selected %d markers from %d candidates (%d pass dominance, %d pass consistency)",
            len(selected),
            len(genes),
            int(records["passed_dominance"].sum()),
            int(records["passed_consistency"].sum()),
        )
        return MarkerList(genes=selected, table=records)
