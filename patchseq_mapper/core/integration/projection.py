"""Shared low-dimensional embedding of reference and query cells.

Two methods are supported:

- ``cca``: both datasets are z-scored per gene, the cell-by-cell
  cross-product over genes is decomposed with a seeded randomized SVD, and
  the left/right singular vectors become the reference/query embeddings.
  Directions of maximal cross-dataset correlation are kept, which damps
  platform-specific variation before anchor search.
- ``pca``: the two matrices are concatenated, scaled and projected with
  scanpy's PCA.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
from sklearn.utils.extmath import randomized_svd

from ...config import MappingConfig
from ...exceptions import DimensionalityError
from ..datasets import Dataset

PROJECTION_METHODS = ("cca", "pca")


@dataclass
class SharedEmbedding:
    """Reference and query cells in one coordinate frame.

    Attributes
    ----------
    reference : np.ndarray
        Reference embedding (n_reference_cells, n_dims)
    query : np.ndarray
        Query embedding (n_query_cells, n_dims)
    reference_cells : pd.Index
        Reference cell ids (row order of `reference`)
    query_cells : pd.Index
        Query cell ids (row order of `query`)
    genes : List[str]
        Genes the embedding was computed from
    method : str
        Projection method used
    seed : int
        Random seed used by the solver
    singular_values : np.ndarray
        Singular values (cca) or explained variance (pca) per dimension
    """

    reference: np.ndarray
    query: np.ndarray
    reference_cells: pd.Index
    query_cells: pd.Index
    genes: List[str] = field(default_factory=list)
    method: str = "cca"
    seed: int = 0
    singular_values: np.ndarray = field(default_factory=lambda: np.zeros(0))

    @property
    def n_dims(self) -> int:
        return int(self.reference.shape[1])

    def swapped(self) -> "SharedEmbedding":
        """Same embedding with the reference and query roles exchanged."""
        return SharedEmbedding(
            reference=self.query,
            query=self.reference,
            reference_cells=self.query_cells,
            query_cells=self.reference_cells,
            genes=self.genes,
            method=self.method,
            seed=self.seed,
            singular_values=self.singular_values,
        )

    def to_frame(self, prefix: str = "dim") -> pd.DataFrame:
        """Stacked embedding with a `dataset` column."""
        columns = [f"{prefix}_{i + 1}" for i in range(self.n_dims)]
        ref = pd.DataFrame(self.reference, index=self.reference_cells, columns=columns)
        ref.insert(0, "dataset", "reference")
        qry = pd.DataFrame(self.query, index=self.query_cells, columns=columns)
        qry.insert(0, "dataset", "query")
        frame = pd.concat([ref, qry])
        frame.index.name = "cell_id"
        return frame


def scale_genes(matrix: np.ndarray, clip: Optional[float] = None) -> np.ndarray:
    """Z-score each gene (column); constant genes become 0."""
    matrix = np.asarray(matrix, dtype=np.float64)
    mean = matrix.mean(axis=0)
    std = matrix.std(axis=0)
    std[std == 0] = 1.0
    scaled = (matrix - mean) / std
    if clip is not None:
        np.clip(scaled, -clip, clip, out=scaled)
    return scaled


def l2_normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Unit-length rows; all-zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class SharedSpaceProjector:
    """Joint embedding of two datasets over a common gene set.

    Parameters
    ----------
    config : MappingConfig, optional
        Mapping configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> projector = SharedSpaceProjector(config)
    >>> embedding = projector.project(reference, query, genes=features)
    >>> embedding.reference.shape
    (5000, 30)
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MappingConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def max_dims(n_reference: int, n_query: int, n_genes: int) -> int:
        """Largest supported embedding dimensionality."""
        return min(n_reference, n_query, n_genes) - 1

    def check_dims(self, n_dims: int, n_reference: int, n_query: int, n_genes: int) -> None:
        """Raise DimensionalityError when n_dims exceeds the available rank."""
        max_allowed = self.max_dims(n_reference, n_query, n_genes)
        if n_dims < 1 or n_dims > max_allowed:
            self.logger.error(
                "Cannot embed into %d dims (reference=%d cells, query=%d cells, %d genes)",
                n_dims,
                n_reference,
                n_query,
                n_genes,
            )
            raise DimensionalityError(n_dims, max_allowed)

    def project(
        self,
        reference: Dataset,
        query: Dataset,
        genes: Sequence[str],
        n_dims: Optional[int] = None,
        method: Optional[str] = None,
        random_seed: Optional[int] = None,
    ) -> SharedEmbedding:
        """Compute the shared embedding.

        Parameters
        ----------
        reference : Dataset
            Reference dataset
        query : Dataset
            Query dataset
        genes : Sequence[str]
            Candidate genes present in both datasets
        n_dims : int, optional
            Embedding dimensionality. Uses config default if None.
        method : str, optional
            "cca" or "pca". Uses config default if None.
        random_seed : int, optional
            Solver seed. Uses config default if None.

        Returns
        -------
        SharedEmbedding

        Raises
        ------
        DimensionalityError
            If n_dims > min(n_reference, n_query, n_genes) - 1
        """
        cfg = self.config.projection
        n_dims = n_dims if n_dims is not None else cfg.n_dims
        method = method if method is not None else cfg.method
        seed = random_seed if random_seed is not None else self.config.random_seed

        if method not in PROJECTION_METHODS:
            raise ValueError(f"Unknown projection method '{method}'")

        genes = list(genes)
        self.check_dims(n_dims, reference.n_cells, query.n_cells, len(genes))

        self.logger.info(
            "Projecting %d reference + %d query cells on %d genes (method=%s, dims=%d, seed=%d)",
            reference.n_cells,
            query.n_cells,
            len(genes),
            method,
            n_dims,
            seed,
        )

        ref_matrix = reference.matrix(genes)
        query_matrix = query.matrix(genes)

        if method == "cca":
            ref_emb, query_emb, values = self._run_cca(ref_matrix, query_matrix, n_dims, seed)
        else:
            ref_emb, query_emb, values = self._run_pca(ref_matrix, query_matrix, n_dims, seed)

        if cfg.l2_normalize:
            ref_emb = l2_normalize_rows(ref_emb)
            query_emb = l2_normalize_rows(query_emb)

        return SharedEmbedding(
            reference=ref_emb,
            query=query_emb,
            reference_cells=reference.cell_ids,
            query_cells=query.cell_ids,
            genes=genes,
            method=method,
            seed=seed,
            singular_values=values,
        )

    def _run_cca(
        self,
        ref_matrix: np.ndarray,
        query_matrix: np.ndarray,
        n_dims: int,
        seed: int,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        clip = self.config.projection.scale_clip
        ref_scaled = scale_genes(ref_matrix, clip)
        query_scaled = scale_genes(query_matrix, clip)

        # Cell-by-cell cross-product over the shared genes
        cross = ref_scaled @ query_scaled.T
        u, s, vt = randomized_svd(cross, n_components=n_dims, random_state=seed)
        self.logger.debug("CCA singular values: %s", np.round(s[:5], 3).tolist())
        return u, vt.T, s

    def _run_pca(
        self,
        ref_matrix: np.ndarray,
        query_matrix: np.ndarray,
        n_dims: int,
        seed: int,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        import anndata as ad
        import scanpy as sc

        merged = ad.AnnData(
            X=np.vstack([ref_matrix, query_matrix]).astype(np.float32),
        )
        sc.pp.scale(merged, zero_center=True, max_value=self.config.projection.scale_clip)
        sc.tl.pca(merged, n_comps=n_dims, svd_solver="arpack", random_state=seed)

        coords = np.asarray(merged.obsm["X_pca"], dtype=np.float64)
        n_ref = ref_matrix.shape[0]
        variance = np.asarray(merged.uns["pca"]["variance"], dtype=np.float64)
        return coords[:n_ref], coords[n_ref:], variance
