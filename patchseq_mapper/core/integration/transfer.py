"""Label and feature transfer through weighted anchors.

Each query cell looks at its k_weight nearest anchors (distance from the
cell to the anchors' query endpoints in the shared embedding). An anchor
contributes

    anchor_weight / (distance + distance_offset)

to the label of its reference endpoint. Votes are normalized per cell, so
label probabilities sum to 1; the prediction is the argmax and its share is
the confidence. The same weights average continuous reference features
(e.g. UMAP coordinates) onto query cells and correct the query embedding
toward the reference for an integrated joint embedding.

Cells without any positive vote, or farther than the distance tolerance
from every reference cell, receive the fallback label with confidence 0.
Unless max_distance is set, the tolerance scales with the reference extent
(twice the largest distance of a reference cell from its centroid).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from ...config import MappingConfig
from ...exceptions import MetadataError
from ...utils.stats import clamp_unit
from .anchors import AnchorSet
from .projection import SharedEmbedding

STATUS_ANCHORED = "anchored"
STATUS_NO_ANCHORS = "fallback_no_anchors"
STATUS_OUT_OF_RANGE = "fallback_out_of_range"
FALLBACK_POLICIES = ("majority", "centroid")


@dataclass
class TransferWeights:
    """Per-query-cell anchor weights.

    Attributes
    ----------
    matrix : sparse.csr_matrix
        (n_query, n_anchors) unnormalized vote weights
    out_of_range : np.ndarray
        True for query cells beyond max_distance of every reference cell
    nearest_reference_distance : np.ndarray
        Distance from each query cell to its closest reference cell
    k_weight : int, optional
        Anchors considered per query cell
    max_distance : float, optional
        Distance tolerance applied (None when the check was off)
    """

    matrix: sparse.csr_matrix
    out_of_range: np.ndarray
    nearest_reference_distance: np.ndarray
    k_weight: Optional[int] = None
    max_distance: Optional[float] = None

    @property
    def totals(self) -> np.ndarray:
        return np.asarray(self.matrix.sum(axis=1)).ravel()


@dataclass
class PredictionResult:
    """Per-query-cell transfer output.

    Attributes
    ----------
    cells : pd.Index
        Query cell ids
    predicted_label : np.ndarray
        Predicted reference label per cell
    confidence : np.ndarray
        Share of the winning label, in [0, 1]; 0 for fallback cells
    status : np.ndarray
        "anchored", "fallback_no_anchors" or "fallback_out_of_range"
    probabilities : pd.DataFrame
        Cells x labels vote shares (rows sum to 1 for anchored cells)
    coordinates : pd.DataFrame, optional
        Transferred continuous features (e.g. UMAP coordinates)
    seed : int, optional
        Seed of the projection that produced the embedding
    params : Dict[str, Any]
        Transfer parameters used
    """

    cells: pd.Index
    predicted_label: np.ndarray
    confidence: np.ndarray
    status: np.ndarray
    probabilities: pd.DataFrame
    coordinates: Optional[pd.DataFrame] = None
    seed: Optional[int] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_fallback(self) -> np.ndarray:
        return self.status != STATUS_ANCHORED

    @property
    def n_fallback(self) -> int:
        return int(self.is_fallback.sum())

    def to_frame(self) -> pd.DataFrame:
        """Flat table: cell_id, predicted_label, confidence, status, coords."""
        frame = pd.DataFrame(
            {
                "predicted_label": self.predicted_label,
                "confidence": self.confidence,
                "status": self.status,
            },
            index=pd.Index(self.cells, name="cell_id"),
        )
        if self.coordinates is not None:
            frame = frame.join(self.coordinates)
        return frame


class LabelTransferEngine:
    """Weighted-anchor label and feature transfer.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> engine = LabelTransferEngine(config)
    >>> prediction = engine.transfer_labels(embedding, anchors, reference.labels)
    >>> prediction.to_frame().head()
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def distance_tolerance(self, embedding: SharedEmbedding) -> Optional[float]:
        """Distance beyond which a query cell counts as out of range.

        Returns the configured max_distance when set; otherwise
        distance_factor times the reference extent, or None when
        distance_factor is None.
        """
        cfg = self.config.transfer
        if cfg.max_distance is not None:
            return float(cfg.max_distance)
        if cfg.distance_factor is None or embedding.reference.shape[0] == 0:
            return None
        center = embedding.reference.mean(axis=0)
        extent = 2.0 * np.linalg.norm(embedding.reference - center, axis=1).max()
        return float(cfg.distance_factor * extent)

    def compute_weights(
        self,
        embedding: SharedEmbedding,
        anchors: AnchorSet,
        k_weight: Optional[int] = None,
        max_distance: Optional[float] = None,
    ) -> TransferWeights:
        """Build the (n_query, n_anchors) vote weight matrix."""
        cfg = self.config.transfer
        k_weight = k_weight if k_weight is not None else cfg.k_weight
        if max_distance is None:
            max_distance = self.distance_tolerance(embedding)

        n_query = embedding.query.shape[0]
        n_anchors = len(anchors)

        nn_ref = NearestNeighbors(n_neighbors=1, n_jobs=self.config.n_jobs)
        nn_ref.fit(embedding.reference)
        nearest_ref = nn_ref.kneighbors(embedding.query, return_distance=True)[0][:, 0]
        if max_distance is not None:
            out_of_range = nearest_ref > max_distance
        else:
            out_of_range = np.zeros(n_query, dtype=bool)

        if n_anchors == 0:
            return TransferWeights(
                matrix=sparse.csr_matrix((n_query, 0)),
                out_of_range=out_of_range,
                nearest_reference_distance=nearest_ref,
                k_weight=k_weight,
                max_distance=max_distance,
            )

        k = min(k_weight, n_anchors)
        anchor_points = embedding.query[anchors.query_index]
        nn = NearestNeighbors(n_neighbors=k, n_jobs=self.config.n_jobs)
        nn.fit(anchor_points)
        distances, neighbors = nn.kneighbors(embedding.query)

        values = anchors.weights[neighbors] / (distances + cfg.distance_offset)
        if max_distance is not None:
            values[distances > max_distance] = 0.0
        values[out_of_range] = 0.0

        rows = np.repeat(np.arange(n_query), k)
        matrix = sparse.csr_matrix(
            (values.ravel(), (rows, neighbors.ravel())),
            shape=(n_query, n_anchors),
        )
        matrix.eliminate_zeros()
        return TransferWeights(
            matrix=matrix,
            out_of_range=out_of_range,
            nearest_reference_distance=nearest_ref,
            k_weight=k_weight,
            max_distance=max_distance,
        )

    def _fallback_labels(
        self,
        embedding: SharedEmbedding,
        labels: np.ndarray,
        label_set: List[str],
        cells: np.ndarray,
    ) -> np.ndarray:
        policy = self.config.transfer.fallback
        if policy not in FALLBACK_POLICIES:
            raise ValueError(f"Unknown fallback policy '{policy}'")
        if len(cells) == 0:
            return np.array([], dtype=object)

        if policy == "majority":
            counts = pd.Series(labels[np.isin(labels, label_set)]).value_counts()
            ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
            return np.array([ordered[0][0]] * len(cells), dtype=object)

        centroids = np.vstack(
            [embedding.reference[labels == label].mean(axis=0) for label in label_set]
        )
        dists = np.linalg.norm(
            embedding.query[cells][:, None, :] - centroids[None, :, :], axis=2
        )
        return np.asarray(label_set, dtype=object)[dists.argmin(axis=1)]

    def transfer_labels(
        self,
        embedding: SharedEmbedding,
        anchors: AnchorSet,
        reference_labels: Sequence[str],
        weights: Optional[TransferWeights] = None,
    ) -> PredictionResult:
        """Predict a reference label and confidence for every query cell.

        Parameters
        ----------
        embedding : SharedEmbedding
            Shared embedding the anchors were found in
        anchors : AnchorSet
            Weighted anchors
        reference_labels : Sequence[str]
            Label per reference cell (embedding row order). Cells carrying
            the unassigned sentinel never vote.
        weights : TransferWeights, optional
            Precomputed weights; computed when None

        Returns
        -------
        PredictionResult
        """
        unassigned = self.config.unassigned_label
        labels = np.asarray(reference_labels, dtype=object).astype(str)
        if len(labels) != embedding.reference.shape[0]:
            raise ValueError(
                f"Got {len(labels)} reference labels for "
                f"{embedding.reference.shape[0]} reference cells"
            )
        label_set = sorted(set(labels) - {unassigned})
        if not label_set:
            raise MetadataError("Reference labels are empty after removing the sentinel")

        if weights is None:
            weights = self.compute_weights(embedding, anchors)

        n_query = embedding.query.shape[0]
        label_pos = {label: i for i, label in enumerate(label_set)}
        anchor_labels = labels[anchors.ref_index] if len(anchors) else np.array([], dtype=str)
        voting = np.array([lab in label_pos for lab in anchor_labels], dtype=bool)
        label_cols = np.array(
            [label_pos[lab] for lab in anchor_labels[voting]], dtype=np.int64
        )
        one_hot = sparse.csr_matrix(
            (np.ones(len(label_cols)), (np.flatnonzero(voting), label_cols)),
            shape=(len(anchor_labels), len(label_set)),
        )

        votes = np.asarray((weights.matrix @ one_hot).todense())
        totals = votes.sum(axis=1)
        has_vote = totals > 0

        probabilities = np.zeros_like(votes)
        probabilities[has_vote] = votes[has_vote] / totals[has_vote, None]

        predicted = np.asarray(label_set, dtype=object)[probabilities.argmax(axis=1)]
        confidence = clamp_unit(probabilities.max(axis=1))

        status = np.full(n_query, STATUS_ANCHORED, dtype=object)
        status[~has_vote] = STATUS_NO_ANCHORS
        status[weights.out_of_range] = STATUS_OUT_OF_RANGE

        fallback_cells = np.flatnonzero(~has_vote)
        if len(fallback_cells):
            predicted[fallback_cells] = self._fallback_labels(
                embedding, labels, label_set, fallback_cells
            )
            confidence[fallback_cells] = 0.0
            self.logger.warning(
                "%d / %d query cells received the %s fallback prediction "
                "(%d out of range)",
                len(fallback_cells),
                n_query,
                self.config.transfer.fallback,
                int(weights.out_of_range.sum()),
            )

        self.logger.info(
            "Transferred labels to %d query cells (median confidence %.3f)",
            n_query,
            float(np.median(confidence)) if n_query else float("nan"),
        )

        cfg = self.config.transfer
        return PredictionResult(
            cells=embedding.query_cells,
            predicted_label=predicted.astype(str),
            confidence=confidence,
            status=status.astype(str),
            probabilities=pd.DataFrame(
                probabilities, index=embedding.query_cells, columns=label_set
            ),
            seed=embedding.seed,
            params={
                "k_weight": weights.k_weight,
                "distance_offset": cfg.distance_offset,
                "max_distance": weights.max_distance,
                "fallback": cfg.fallback,
                "n_anchors": len(anchors),
            },
        )

    def transfer_features(
        self,
        embedding: SharedEmbedding,
        anchors: AnchorSet,
        values: np.ndarray,
        weights: Optional[TransferWeights] = None,
        prediction: Optional[PredictionResult] = None,
        reference_labels: Optional[Sequence[str]] = None,
    ) -> np.ndarray:
        """Weighted average of continuous reference features per query cell.

        Parameters
        ----------
        embedding : SharedEmbedding
            Shared embedding
        anchors : AnchorSet
            Weighted anchors
        values : np.ndarray
            (n_reference, n_features) reference feature matrix
        weights : TransferWeights, optional
            Precomputed weights; computed when None
        prediction : PredictionResult, optional
            With reference_labels, places cells without votes at the mean
            feature of their fallback label
        reference_labels : Sequence[str], optional
            Label per reference cell

        Returns
        -------
        np.ndarray
            (n_query, n_features) transferred features
        """
        values = np.asarray(values, dtype=np.float64)
        if values.ndim == 1:
            values = values[:, None]
        if values.shape[0] != embedding.reference.shape[0]:
            raise ValueError("Feature rows must match reference cells")

        if weights is None:
            weights = self.compute_weights(embedding, anchors)

        totals = weights.totals
        has_vote = totals > 0
        out = np.tile(values.mean(axis=0), (embedding.query.shape[0], 1))

        if len(anchors):
            summed = weights.matrix @ values[anchors.ref_index]
            out[has_vote] = summed[has_vote] / totals[has_vote, None]

        if prediction is not None and reference_labels is not None:
            labels = np.asarray(reference_labels, dtype=object).astype(str)
            for i in np.flatnonzero(~has_vote):
                members = labels == prediction.predicted_label[i]
                if members.any():
                    out[i] = values[members].mean(axis=0)
        return out

    def integrate(
        self,
        embedding: SharedEmbedding,
        anchors: AnchorSet,
        weights: Optional[TransferWeights] = None,
    ) -> SharedEmbedding:
        """Move query cells toward their anchors' reference endpoints.

        Each query cell is shifted by the weighted mean of the anchor
        correction vectors (reference endpoint - query endpoint). Cells
        without votes are left in place.
        """
        if weights is None:
            weights = self.compute_weights(embedding, anchors)

        corrected = embedding.query.copy()
        if len(anchors):
            corrections = (
                embedding.reference[anchors.ref_index]
                - embedding.query[anchors.query_index]
            )
            totals = weights.totals
            has_vote = totals > 0
            shift = weights.matrix @ corrections
            corrected[has_vote] += shift[has_vote] / totals[has_vote, None]

        self.logger.info("Built integrated embedding for %d query cells", len(corrected))
        return SharedEmbedding(
            reference=embedding.reference,
            query=corrected,
            reference_cells=embedding.reference_cells,
            query_cells=embedding.query_cells,
            genes=embedding.genes,
            method=f"{embedding.method}+integrated",
            seed=embedding.seed,
            singular_values=embedding.singular_values,
        )
