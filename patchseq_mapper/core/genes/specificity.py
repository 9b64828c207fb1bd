"""Gene specificity ("beta score") from proportion-expressed matrices.

For a gene with per-cluster proportions p (fraction of cells expressing
the gene in each cluster), the beta score is

    beta = sum_ij |p_i - p_j|^2 / (sum_ij |p_i - p_j| + eps)

Because every |p_i - p_j| lies in [0, 1], beta lies in [0, 1]. Vectors that
are "on" in a few clusters and "off" elsewhere approach 1; uniform vectors
(all on, all off, or all mid-range) score 0, and mid-range values pull the
score down.

Scoring is parallelized over gene chunks with joblib.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ...config import MappingConfig
from ...exceptions import UndefinedScoreError
from ...utils.stats import group_frame
from ..datasets import Dataset

BETA_EPS = 1e-10
NEUTRAL_SCORE = 0.0


def _beta_chunk(proportions: np.ndarray) -> tuple:
    """Beta scores and definedness for a genes x clusters block."""
    valid = np.isfinite(proportions)
    filled = np.where(valid, proportions, 0.0)
    pair_valid = valid[:, :, None] & valid[:, None, :]
    diffs = np.abs(filled[:, :, None] - filled[:, None, :]) * pair_valid

    numerator = (diffs ** 2).sum(axis=(1, 2))
    denominator = diffs.sum(axis=(1, 2)) + BETA_EPS
    scores = numerator / denominator

    n_valid = valid.sum(axis=1)
    defined = n_valid >= 2
    scores[~defined] = NEUTRAL_SCORE

    safe_n = np.maximum(n_valid, 1)
    mean = filled.sum(axis=1) / safe_n
    variance = (((filled - mean[:, None]) ** 2) * valid).sum(axis=1) / safe_n
    return scores, variance, defined


def beta_score(proportions: Sequence[float]) -> float:
    """Beta score of a single gene's per-cluster proportion vector.

    Clusters with NaN proportion (no cells) are ignored.

    Raises
    ------
    UndefinedScoreError
        If fewer than two clusters have a defined proportion
    """
    row = np.asarray(proportions, dtype=float)[None, :]
    scores, _, defined = _beta_chunk(row)
    if not defined[0]:
        raise UndefinedScoreError(
            "Beta score needs at least two clusters with cells"
        )
    return float(scores[0])


@dataclass
class SpecificityTable:
    """Per-gene specificity statistics.

    Attributes
    ----------
    beta : pd.Series
        Beta score per gene, in [0, 1]
    variance : pd.Series
        Variance of the proportion vector (secondary ranking key)
    proportions : pd.DataFrame
        Genes x clusters proportion of expressing cells
    undefined : List[str]
        Genes whose score was resolved to the neutral value
    """

    beta: pd.Series
    variance: pd.Series
    proportions: pd.DataFrame
    undefined: List[str] = field(default_factory=list)

    @property
    def genes(self) -> pd.Index:
        return self.beta.index

    @property
    def clusters(self) -> List[str]:
        return list(self.proportions.columns)

    @property
    def scores(self) -> pd.DataFrame:
        """Genes x clusters score: beta weighted by per-cluster proportion.

        Comparable within a gene's row only.
        """
        return self.proportions.fillna(0.0).mul(self.beta, axis=0)

    @property
    def assigned_cluster(self) -> pd.Series:
        """Cluster with the maximal score for each gene."""
        return self.scores.idxmax(axis=1)

    def ranked(self) -> pd.Index:
        """Genes ordered by beta desc, variance desc, gene id asc."""
        frame = pd.DataFrame(
            {
                "gene": self.beta.index.astype(str),
                "beta": self.beta.to_numpy(),
                "variance": self.variance.to_numpy(),
            }
        )
        frame = frame.sort_values(
            ["beta", "variance", "gene"],
            ascending=[False, False, True],
            kind="mergesort",
        )
        return pd.Index(frame["gene"].to_numpy(), name="gene")

    def top_genes(self, n: int) -> List[str]:
        return self.ranked()[:n].tolist()

    def to_frame(self) -> pd.DataFrame:
        """Flat gene-level table in ranking order."""
        frame = pd.DataFrame(
            {
                "beta": self.beta,
                "variance": self.variance,
                "assigned_cluster": self.assigned_cluster,
            }
        )
        frame = frame.join(self.proportions.add_prefix("prop_"))
        frame.index.name = "gene"
        return frame.loc[self.ranked()]


class SpecificityScorer:
    """Beta-score specificity scorer.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> scorer = SpecificityScorer(config)
    >>> table = scorer.run(reference, genes=gene_result.genes)
    >>> features = table.top_genes(config.specificity.n_features)
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def compute_proportions(
        self,
        dataset: Dataset,
        genes: Sequence[str],
        clusters: Optional[Sequence[str]] = None,
        threshold: Optional[float] = None,
    ) -> pd.DataFrame:
        """Genes x clusters fraction of cells expressing each gene.

        Clusters without cells get NaN columns.
        """
        if threshold is None:
            threshold = self.config.specificity.expression_threshold
        if clusters is None:
            clusters = dataset.label_set
        if not clusters:
            raise ValueError(f"Dataset '{dataset.name}' has no clusters to score")

        idx = dataset.genes.get_indexer(list(genes))
        if (idx < 0).any():
            raise KeyError(f"Some genes are missing from dataset '{dataset.name}'")
        return group_frame(
            dataset.adata.X[:, idx],
            dataset.labels.to_numpy(),
            list(clusters),
            list(genes),
            how="proportion",
            threshold=threshold,
        )

    def score(
        self,
        proportions: pd.DataFrame,
        strict: Optional[bool] = None,
        n_jobs: Optional[int] = None,
    ) -> SpecificityTable:
        """Score every gene (row) of a genes x clusters proportion matrix.

        Parameters
        ----------
        proportions : pd.DataFrame
            Genes x clusters values in [0, 1]; NaN marks empty clusters
        strict : bool, optional
            Raise instead of resolving undefined scores. Uses config if None.
        n_jobs : int, optional
            Parallel workers. Uses config if None.

        Returns
        -------
        SpecificityTable
        """
        cfg = self.config.specificity
        strict = strict if strict is not None else cfg.strict
        n_jobs = n_jobs if n_jobs is not None else self.config.n_jobs

        values = proportions.to_numpy(dtype=float)
        if np.nanmin(values, initial=0.0) < 0 or np.nanmax(values, initial=0.0) > 1:
            raise ValueError("Proportions must lie in [0, 1]")

        chunk = max(1, cfg.chunk_size)
        bounds = [(s, min(s + chunk, len(values))) for s in range(0, len(values), chunk)]
        parts = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_beta_chunk)(values[s:e]) for s, e in bounds
        )

        if parts:
            scores = np.concatenate([p[0] for p in parts])
            variance = np.concatenate([p[1] for p in parts])
            defined = np.concatenate([p[2] for p in parts])
        else:
            scores = variance = np.zeros(0)
            defined = np.zeros(0, dtype=bool)

        undefined = proportions.index[~defined].astype(str).tolist()
        if undefined:
            if strict:
                raise UndefinedScoreError(
                    f"{len(undefined)} genes have fewer than two populated clusters "
                    f"(e.g. {undefined[:5]})"
                )
            self.logger.warning(
                "Assigned neutral score to %d genes with undefined specificity",
                len(undefined),
            )

        self.logger.info(
            "Scored %d genes over %d clusters (median beta=%.3f)",
            len(scores),
            proportions.shape[1],
            float(np.median(scores)) if len(scores) else float("nan"),
        )
        return SpecificityTable(
            beta=pd.Series(scores, index=proportions.index, name="beta"),
            variance=pd.Series(variance, index=proportions.index, name="variance"),
            proportions=proportions,
            undefined=undefined,
        )

    def run(
        self,
        dataset: Dataset,
        genes: Sequence[str],
        clusters: Optional[Sequence[str]] = None,
    ) -> SpecificityTable:
        """Compute proportions for the dataset's labels and score them."""
        proportions = self.compute_proportions(dataset, genes, clusters)
        return self.score(proportions)

    def restrict(self, table: SpecificityTable, clusters: Sequence[str]) -> SpecificityTable:
        """Re-score a table over a subset of its clusters."""
        missing = [c for c in clusters if c not in table.proportions.columns]
        if missing:
            raise KeyError(f"Clusters not in specificity table: {missing}")
        return self.score(table.proportions[list(clusters)])
