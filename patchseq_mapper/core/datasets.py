"""Dataset and cell metadata schema.

A Dataset wraps a cells x genes AnnData together with a validated view
of its cell metadata: a required platform tag, an optional cell-type
label, and an open set of covariate columns kept as-is.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..exceptions import MetadataError
from ..utils.stats import to_dense

logger = logging.getLogger(__name__)

UNASSIGNED = "Unassigned"


@dataclass
class CellMetadata:
    """Validated per-cell metadata.

    Attributes
    ----------
    platform : pd.Series
        Platform tag per cell (str)
    labels : pd.Series, optional
        Cell-type label per cell; unlabeled cells hold the unassigned sentinel
    covariates : pd.DataFrame
        Remaining obs columns (depth, quality, ...) untouched
    """

    platform: pd.Series
    labels: Optional[pd.Series] = None
    covariates: pd.DataFrame = field(default_factory=pd.DataFrame)

    def to_frame(self) -> pd.DataFrame:
        """Flatten into one DataFrame indexed by cell id."""
        frame = pd.DataFrame({"platform": self.platform})
        if self.labels is not None:
            frame["label"] = self.labels
        return frame.join(self.covariates)


class Dataset:
    """A named expression matrix with validated cell metadata.

    Parameters
    ----------
    name : str
        Dataset name, used as platform tag when the obs has none
    adata : AnnData
        Cells x genes, log-scaled non-negative values. Not modified.
    label_key : str
        obs column holding cell-type labels
    platform_key : str
        obs column holding the platform tag
    require_labels : bool
        Raise MetadataError unless at least one cell carries a label
    unassigned_label : str
        Sentinel marking cells without a usable label

    Example
    -------
    >>> reference = Dataset("facs", ref_adata, label_key="subclass", require_labels=True)
    >>> reference.label_set
    ['Lamp5', 'Pvalb', 'Sst', 'Vip']
    """

    def __init__(
        self,
        name: str,
        adata: Any,  # AnnData
        label_key: str = "label",
        platform_key: str = "platform",
        require_labels: bool = False,
        unassigned_label: str = UNASSIGNED,
    ):
        self.name = name
        self.adata = adata
        self.label_key = label_key
        self.platform_key = platform_key
        self.unassigned_label = unassigned_label
        self.metadata = self._validate(require_labels)

    def _validate(self, require_labels: bool) -> CellMetadata:
        adata = self.adata
        if adata.n_obs == 0 or adata.n_vars == 0:
            raise MetadataError(f"Dataset '{self.name}' has an empty expression matrix")
        if not adata.obs_names.is_unique:
            raise MetadataError(f"Dataset '{self.name}' has duplicated cell ids")
        if not adata.var_names.is_unique:
            raise MetadataError(f"Dataset '{self.name}' has duplicated gene ids")

        obs = adata.obs
        if self.platform_key in obs:
            platform = obs[self.platform_key].astype(str)
        else:
            logger.info(
                "Dataset '%s' has no '%s' column; using dataset name as platform",
                self.name,
                self.platform_key,
            )
            platform = pd.Series(self.name, index=obs.index, dtype=str)

        labels = None
        if self.label_key in obs:
            raw = obs[self.label_key]
            labels = raw.astype(object).where(raw.notna(), self.unassigned_label)
            labels = labels.astype(str)
        elif require_labels:
            raise MetadataError(
                f"Dataset '{self.name}' requires labels but obs has no '{self.label_key}' column"
            )

        if require_labels and (labels == self.unassigned_label).all():
            raise MetadataError(
                f"Dataset '{self.name}' has no cells with a usable label"
            )

        covariates = obs.drop(
            columns=[c for c in (self.platform_key, self.label_key) if c in obs]
        )
        return CellMetadata(platform=platform, labels=labels, covariates=covariates)

    def __repr__(self) -> str:
        return (
            f"Dataset(name={self.name!r}, n_cells={self.n_cells}, "
            f"n_genes={self.adata.n_vars}, labeled={self.has_labels})"
        )

    @property
    def n_cells(self) -> int:
        return int(self.adata.n_obs)

    @property
    def cell_ids(self) -> pd.Index:
        return self.adata.obs_names

    @property
    def genes(self) -> pd.Index:
        return self.adata.var_names

    @property
    def has_labels(self) -> bool:
        return self.metadata.labels is not None

    @property
    def labels(self) -> pd.Series:
        """Per-cell labels; raises MetadataError when the dataset is unlabeled."""
        if self.metadata.labels is None:
            raise MetadataError(f"Dataset '{self.name}' has no labels")
        return self.metadata.labels

    @property
    def label_set(self) -> List[str]:
        """Sorted labels present, excluding the unassigned sentinel."""
        if self.metadata.labels is None:
            return []
        values = set(self.metadata.labels.unique()) - {self.unassigned_label}
        return sorted(values)

    @property
    def labeled_mask(self) -> np.ndarray:
        if self.metadata.labels is None:
            return np.zeros(self.n_cells, dtype=bool)
        return (self.metadata.labels != self.unassigned_label).to_numpy()

    def matrix(self, genes: Optional[Sequence[str]] = None) -> np.ndarray:
        """Dense cells x genes float matrix, optionally restricted to genes."""
        if genes is None:
            return to_dense(self.adata.X)
        idx = self.adata.var_names.get_indexer(list(genes))
        if (idx < 0).any():
            missing = [g for g, i in zip(genes, idx) if i < 0][:5]
            raise KeyError(f"Genes not in dataset '{self.name}': {missing}")
        return to_dense(self.adata.X[:, idx])

    def with_labels(self, labels: Sequence[str], label_key: Optional[str] = None) -> "Dataset":
        """Return a new Dataset sharing this matrix but carrying new labels."""
        label_key = label_key or self.label_key
        adata = self.adata.copy()
        adata.obs[label_key] = pd.Series(list(labels), index=adata.obs_names).astype(str)
        return Dataset(
            self.name,
            adata,
            label_key=label_key,
            platform_key=self.platform_key,
            unassigned_label=self.unassigned_label,
        )

    def summary(self) -> Dict[str, Any]:
        """Small dict of dataset facts for run records."""
        info: Dict[str, Any] = {
            "name": self.name,
            "n_cells": self.n_cells,
            "n_genes": int(self.adata.n_vars),
            "platforms": sorted(self.metadata.platform.unique().tolist()),
        }
        if self.has_labels:
            counts = self.labels.value_counts()
            info["label_counts"] = {str(k): int(v) for k, v in counts.items()}
        return info


def shared_genes(reference: Dataset, query: Dataset) -> List[str]:
    """Genes present in both datasets, in reference order."""
    query_genes = set(query.genes)
    return [g for g in reference.genes if g in query_genes]


def load_dataset(
    name: str,
    path: Any,
    metadata_path: Optional[Any] = None,
    label_key: str = "label",
    platform_key: str = "platform",
    id_column: str = "cell_id",
    require_labels: bool = False,
    unassigned_label: str = UNASSIGNED,
) -> Dataset:
    """Load an .h5ad or gene-by-cell CSV (+ metadata CSV) as a Dataset."""
    from ..io.csv import load_anndata

    adata = load_anndata(path, metadata_path=metadata_path, id_column=id_column)
    return Dataset(
        name,
        adata,
        label_key=label_key,
        platform_key=platform_key,
        require_labels=require_labels,
        unassigned_label=unassigned_label,
    )
