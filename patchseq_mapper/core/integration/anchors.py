"""Mutual nearest-neighbor anchors between reference and query cells.

A reference cell r and query cell q form an anchor when r is among q's
k nearest reference cells AND q is among r's k nearest query cells. The
bidirectional requirement rejects one-sided matches caused by density
differences between the datasets.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging
import warnings

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from ...config import MappingConfig
from ...exceptions import NoAnchorsWarning
from .projection import SharedEmbedding

ANCHOR_COLUMNS = ["ref_index", "query_index", "ref_cell", "query_cell", "score", "weight"]


def _empty_pairs() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "ref_index": pd.Series(dtype=np.int64),
            "query_index": pd.Series(dtype=np.int64),
            "ref_cell": pd.Series(dtype=object),
            "query_cell": pd.Series(dtype=object),
            "score": pd.Series(dtype=np.float64),
            "weight": pd.Series(dtype=np.float64),
        }
    )


@dataclass
class AnchorSet:
    """Anchor pairs with reliability annotations.

    Attributes
    ----------
    pairs : pd.DataFrame
        One row per anchor with columns ref_index, query_index (row positions
        in the embedding), ref_cell, query_cell, score (initial rank-based
        reliability) and weight (neighborhood-consistency weight; equals
        score until weighted). Both in [0, 1].
    k : int
        Neighbor count used for the search
    n_reference : int
        Number of reference cells searched
    n_query : int
        Number of query cells searched
    weighted : bool
        True once AnchorWeighter has annotated the weights
    """

    pairs: pd.DataFrame = field(default_factory=_empty_pairs)
    k: int = 0
    n_reference: int = 0
    n_query: int = 0
    weighted: bool = False

    def __len__(self) -> int:
        return len(self.pairs)

    @property
    def is_empty(self) -> bool:
        return len(self.pairs) == 0

    @property
    def ref_index(self) -> np.ndarray:
        return self.pairs["ref_index"].to_numpy(dtype=np.int64)

    @property
    def query_index(self) -> np.ndarray:
        return self.pairs["query_index"].to_numpy(dtype=np.int64)

    @property
    def weights(self) -> np.ndarray:
        return self.pairs["weight"].to_numpy(dtype=np.float64)

    def n_anchored_query_cells(self) -> int:
        return int(self.pairs["query_index"].nunique())

    def swapped(self) -> "AnchorSet":
        """Anchors with reference and query roles exchanged."""
        pairs = self.pairs.rename(
            columns={
                "ref_index": "query_index",
                "query_index": "ref_index",
                "ref_cell": "query_cell",
                "query_cell": "ref_cell",
            }
        )[ANCHOR_COLUMNS]
        pairs = pairs.sort_values(["query_index", "ref_index"], kind="mergesort")
        return AnchorSet(
            pairs=pairs.reset_index(drop=True),
            k=self.k,
            n_reference=self.n_query,
            n_query=self.n_reference,
            weighted=self.weighted,
        )

    def to_frame(self) -> pd.DataFrame:
        return self.pairs[["ref_cell", "query_cell", "score", "weight"]].copy()


class AnchorFinder:
    """Mutual nearest-neighbor anchor search.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> finder = AnchorFinder(config)
    >>> anchors = finder.find(embedding, k=20)
    >>> len(anchors)
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _rank_matrix(self, targets: np.ndarray, sources: np.ndarray, k: int) -> sparse.csr_matrix:
        """Sparse (n_sources, n_targets) matrix holding 1-based neighbor ranks."""
        nn = NearestNeighbors(n_neighbors=k, metric="euclidean", n_jobs=self.config.n_jobs)
        nn.fit(targets)
        neighbors = nn.kneighbors(sources, return_distance=False)
        n_sources = sources.shape[0]
        rows = np.repeat(np.arange(n_sources), k)
        ranks = np.tile(np.arange(1, k + 1), n_sources)
        return sparse.csr_matrix(
            (ranks, (rows, neighbors.ravel())),
            shape=(n_sources, targets.shape[0]),
        )

    def find(self, embedding: SharedEmbedding, k: Optional[int] = None) -> AnchorSet:
        """Find mutual nearest-neighbor anchors.

        Parameters
        ----------
        embedding : SharedEmbedding
            Reference and query cells in one coordinate frame
        k : int, optional
            Neighbor count. Uses config default if None. Capped at each
            dataset's size.

        Returns
        -------
        AnchorSet
            Anchors sorted by (query_index, ref_index). Empty, with a
            NoAnchorsWarning, when no mutual pairs exist.
        """
        k = k if k is not None else self.config.anchors.k_anchor
        n_ref = embedding.reference.shape[0]
        n_query = embedding.query.shape[0]
        k_ref = min(k, n_ref)
        k_query = min(k, n_query)

        self.logger.info(
            "Searching mutual nearest neighbors (k=%d) between %d reference and %d query cells",
            k,
            n_ref,
            n_query,
        )

        # ranks of reference cells in each query cell's neighborhood, and vice versa
        query_to_ref = self._rank_matrix(embedding.reference, embedding.query, k_ref)
        ref_to_query = self._rank_matrix(embedding.query, embedding.reference, k_query)

        mutual = query_to_ref.multiply(ref_to_query.T > 0).tocoo()
        query_idx = mutual.row.astype(np.int64)
        ref_idx = mutual.col.astype(np.int64)

        if len(query_idx) == 0:
            message = (
                f"No mutual nearest-neighbor anchors found (k={k}, "
                f"{n_ref} reference / {n_query} query cells)"
            )
            self.logger.warning(message)
            warnings.warn(message, NoAnchorsWarning, stacklevel=2)
            return AnchorSet(k=k, n_reference=n_ref, n_query=n_query)

        rank_ref_in_query = np.asarray(query_to_ref[query_idx, ref_idx]).ravel() - 1
        rank_query_in_ref = np.asarray(ref_to_query[ref_idx, query_idx]).ravel() - 1
        score = 1.0 - 0.5 * (rank_ref_in_query / k_ref + rank_query_in_ref / k_query)
        score = np.clip(score, 0.0, 1.0)

        pairs = pd.DataFrame(
            {
                "ref_index": ref_idx,
                "query_index": query_idx,
                "ref_cell": np.asarray(embedding.reference_cells)[ref_idx],
                "query_cell": np.asarray(embedding.query_cells)[query_idx],
                "score": score,
                "weight": score,
            }
        )
        pairs = pairs.sort_values(["query_index", "ref_index"], kind="mergesort")
        anchors = AnchorSet(
            pairs=pairs.reset_index(drop=True),
            k=k,
            n_reference=n_ref,
            n_query=n_query,
        )

        self.logger.info(
            "Found %d anchors covering %d / %d query cells",
            len(anchors),
            anchors.n_anchored_query_cells(),
            n_query,
        )
        return anchors
