"""Statistical utilities for PatchSeq-Mapper.

Provides grouped summaries over expression matrices and NaN-safe
correlation helpers.
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

ArrayLike = Union[np.ndarray, "sparse.spmatrix"]

GROUP_REDUCTIONS = ("mean", "median", "proportion")


def to_dense(matrix: ArrayLike, dtype=np.float64) -> np.ndarray:
    """Return a dense ndarray copy-free where possible."""
    if sparse.issparse(matrix):
        return matrix.toarray().astype(dtype, copy=False)
    return np.asarray(matrix, dtype=dtype)


def clamp_unit(values: np.ndarray) -> np.ndarray:
    """Clamp values to [0, 1], mapping NaN to 0."""
    arr = np.nan_to_num(np.asarray(values, dtype=float), nan=0.0)
    return np.clip(arr, 0.0, 1.0)


def group_reduce(
    matrix: ArrayLike,
    labels: Sequence[str],
    categories: Sequence[str],
    how: str = "mean",
    threshold: float = 0.0,
) -> np.ndarray:
    """Reduce a cells x genes matrix to a groups x genes matrix.

    Parameters
    ----------
    matrix : array-like
        Cells x genes expression values
    labels : Sequence[str]
        Group label per cell
    categories : Sequence[str]
        Groups to report, in output row order
    how : str
        "mean", "median", or "proportion" (fraction of cells > threshold)
    threshold : float
        Detection threshold for how="proportion"

    Returns
    -------
    np.ndarray
        Groups x genes matrix. Groups without cells are all-NaN rows.
    """
    if how not in GROUP_REDUCTIONS:
        raise ValueError(f"Unknown reduction '{how}', expected one of {GROUP_REDUCTIONS}")

    labels = np.asarray(labels).astype(str)
    n_genes = matrix.shape[1]
    out = np.full((len(categories), n_genes), np.nan)

    for i, category in enumerate(categories):
        idx = np.flatnonzero(labels == str(category))
        if idx.size == 0:
            continue
        block = matrix[idx, :]
        if how == "mean":
            out[i] = np.asarray(block.mean(axis=0)).ravel()
        elif how == "proportion":
            if sparse.issparse(block):
                out[i] = np.asarray((block > threshold).sum(axis=0)).ravel() / idx.size
            else:
                out[i] = (np.asarray(block) > threshold).mean(axis=0)
        else:
            out[i] = np.median(to_dense(block), axis=0)
    return out


def group_frame(
    matrix: ArrayLike,
    labels: Sequence[str],
    categories: Sequence[str],
    genes: Sequence[str],
    how: str = "mean",
    threshold: float = 0.0,
) -> pd.DataFrame:
    """Genes x groups DataFrame version of `group_reduce`."""
    values = group_reduce(matrix, labels, categories, how=how, threshold=threshold)
    return pd.DataFrame(values.T, index=pd.Index(genes), columns=pd.Index(categories))


def row_pearson(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pearson correlation between matching rows of two matrices.

    Columns where either matrix has a NaN in a given row are ignored for
    that row. Rows with fewer than two usable columns, or with zero variance
    in either matrix, get NaN.
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"Shape mismatch: {a.shape} vs {b.shape}")

    valid = np.isfinite(a) & np.isfinite(b)
    n = valid.sum(axis=1)
    a0 = np.where(valid, a, 0.0)
    b0 = np.where(valid, b, 0.0)

    with np.errstate(invalid="ignore", divide="ignore"):
        mean_a = a0.sum(axis=1) / n
        mean_b = b0.sum(axis=1) / n
        da = np.where(valid, a0 - mean_a[:, None], 0.0)
        db = np.where(valid, b0 - mean_b[:, None], 0.0)
        cov = (da * db).sum(axis=1)
        denom = np.sqrt((da ** 2).sum(axis=1) * (db ** 2).sum(axis=1))
        r = cov / denom

    r[(n < 2) | (denom == 0)] = np.nan
    return np.clip(r, -1.0, 1.0)
