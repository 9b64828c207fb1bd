"""Neighborhood-consistency weighting of anchors.

For an anchor (r, q):

- B is r together with its k_filter nearest reference neighbors;
- A is the set of reference cells anchored to any of q's k_filter
  nearest query neighbors (q itself excluded, so the anchor never
  corroborates itself).

The weight is the Jaccard overlap |A & B| / |A | B|. Anchors whose
neighborhoods agree on the same broader mapping approach 1; isolated or
idiosyncratic anchors approach 0. No anchor is dropped.
"""

from typing import Optional
import logging

import numpy as np
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from ...config import MappingConfig
from ...utils.stats import clamp_unit
from .anchors import AnchorSet
from .projection import SharedEmbedding


def neighbor_matrix(
    points: np.ndarray,
    k: int,
    include_self: bool = False,
    n_jobs: int = 1,
) -> sparse.csr_matrix:
    """Boolean (n, n) matrix of each point's k nearest neighbors.

    The point itself is never counted among its k neighbors; it is added
    as an extra entry when include_self is True.
    """
    n = points.shape[0]
    k = max(0, min(k, n - 1))
    rows, cols = [], []
    if k > 0:
        nn = NearestNeighbors(n_neighbors=k + 1, metric="euclidean", n_jobs=n_jobs)
        nn.fit(points)
        neighbors = nn.kneighbors(points, return_distance=False)
        for i in range(n):
            others = neighbors[i][neighbors[i] != i][:k]
            rows.append(np.full(len(others), i))
            cols.append(others)
    if include_self:
        rows.append(np.arange(n))
        cols.append(np.arange(n))
    if rows:
        row_idx = np.concatenate(rows)
        col_idx = np.concatenate(cols)
    else:
        row_idx = col_idx = np.zeros(0, dtype=np.int64)
    data = np.ones(len(row_idx), dtype=bool)
    return sparse.csr_matrix((data, (row_idx, col_idx)), shape=(n, n), dtype=bool)


class AnchorWeighter:
    """Soft anchor weighting by shared-neighbor overlap.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def weight(
        self,
        anchors: AnchorSet,
        embedding: SharedEmbedding,
        k_filter: Optional[int] = None,
    ) -> AnchorSet:
        """Return a copy of the anchors with the `weight` column filled.

        Parameters
        ----------
        anchors : AnchorSet
            Anchors from AnchorFinder
        embedding : SharedEmbedding
            Embedding the anchors were found in
        k_filter : int, optional
            Within-dataset neighbor count. Uses config default if None.

        Returns
        -------
        AnchorSet
            Same anchors with weights in [0, 1]
        """
        k_filter = k_filter if k_filter is not None else self.config.anchors.k_filter

        if anchors.is_empty:
            self.logger.info("No anchors to weight")
            return AnchorSet(
                pairs=anchors.pairs.copy(),
                k=anchors.k,
                n_reference=anchors.n_reference,
                n_query=anchors.n_query,
                weighted=True,
            )

        n_ref = embedding.reference.shape[0]
        n_query = embedding.query.shape[0]
        ref_idx = anchors.ref_index
        query_idx = anchors.query_index

        ref_neighbors = neighbor_matrix(
            embedding.reference, k_filter, include_self=True, n_jobs=self.config.n_jobs
        )
        query_neighbors = neighbor_matrix(
            embedding.query, k_filter, include_self=False, n_jobs=self.config.n_jobs
        )
        anchor_graph = sparse.csr_matrix(
            (np.ones(len(ref_idx)), (query_idx, ref_idx)),
            shape=(n_query, n_ref),
        )

        # reference cells reachable from each query cell's neighbors via anchors
        mapped = (query_neighbors.astype(np.float64) @ anchor_graph) > 0
        mapped = mapped.tocsr()

        a_sets = mapped[query_idx].astype(np.float64)
        b_sets = ref_neighbors[ref_idx].astype(np.float64)
        intersection = np.asarray(a_sets.multiply(b_sets).sum(axis=1)).ravel()
        size_a = np.asarray(a_sets.sum(axis=1)).ravel()
        size_b = np.asarray(b_sets.sum(axis=1)).ravel()
        union = size_a + size_b - intersection

        with np.errstate(invalid="ignore", divide="ignore"):
            weights = np.where(union > 0, intersection / union, 0.0)
        weights = clamp_unit(weights)

        pairs = anchors.pairs.copy()
        pairs["weight"] = weights

        self.logger.info(
            "Weighted %d anchors (k_filter=%d): median weight %.3f, %d with zero support",
            len(pairs),
            k_filter,
            float(np.median(weights)),
            int((weights == 0).sum()),
        )
        return AnchorSet(
            pairs=pairs,
            k=anchors.k,
            n_reference=anchors.n_reference,
            n_query=anchors.n_query,
            weighted=True,
        )
