"""Tabular I/O for PatchSeq-Mapper.

Loads expression matrices (h5ad or gene-by-cell CSV), cell metadata and
gene lists, and writes flat result tables.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _validate_matrix_table(df: pd.DataFrame, path: PathLike) -> None:
    """Validate a gene-by-cell table.

    Raises
    ------
    ValueError
        If the table is empty or has duplicated gene or cell identifiers.
    """
    if df.empty:
        raise ValueError(f"Expression table {path} is empty")
    if df.index.has_duplicates:
        dupes = df.index[df.index.duplicated()].unique().tolist()[:5]
        raise ValueError(f"Duplicated gene ids in {path}: {dupes}")
    if df.columns.has_duplicates:
        dupes = df.columns[df.columns.duplicated()].unique().tolist()[:5]
        raise ValueError(f"Duplicated cell ids in {path}: {dupes}")


def load_expression_matrix(path: PathLike) -> pd.DataFrame:
    """Read a gene-by-cell expression CSV.

    The first column holds gene ids, the header row holds cell ids.

    Parameters
    ----------
    path : PathLike
        Path to the CSV file.

    Returns
    -------
    pd.DataFrame
        Genes x cells matrix of floats.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the table is invalid, or holds missing, non-numeric or negative
        values.
    """
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Expression matrix not found: {csv_path}")
    df = pd.read_csv(csv_path, index_col=0)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    _validate_matrix_table(df, csv_path)

    numeric = df.apply(pd.to_numeric, errors="coerce")
    bad = numeric.isna().to_numpy()
    if bad.any():
        rows, cols = np.nonzero(bad)
        raise ValueError(
            f"Expression matrix {csv_path} has {int(bad.sum())} missing or non-numeric "
            f"values (first at gene {df.index[rows[0]]!r}, cell {df.columns[cols[0]]!r})"
        )
    df = numeric.astype(np.float64)
    if (df.to_numpy() < 0).any():
        raise ValueError(f"Expression matrix {csv_path} has negative values")
    return df


def load_cell_metadata(
    path: PathLike,
    id_column: str = "cell_id",
) -> pd.DataFrame:
    """Read a cell-level metadata table indexed by cell id.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the id column is missing.
    """
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Cell metadata table not found: {csv_path}")
    df = pd.read_csv(csv_path)
    if id_column not in df.columns:
        raise ValueError(f"Metadata table {csv_path} missing column `{id_column}`")
    df[id_column] = df[id_column].astype(str)
    return df.set_index(id_column)


def load_gene_list(path: PathLike) -> List[str]:
    """Read a gene list, one id per line; blank lines and # comments skipped."""
    genes = []
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            line = line.split("#", 1)[0].strip()
            if line:
                genes.append(line)
    return genes


def load_anndata(
    path: PathLike,
    metadata_path: Optional[PathLike] = None,
    id_column: str = "cell_id",
) -> Any:
    """Load an AnnData from .h5ad, or from a gene-by-cell CSV plus metadata.

    Parameters
    ----------
    path : PathLike
        `.h5ad` file or gene-by-cell CSV.
    metadata_path : PathLike, optional
        Cell metadata CSV joined onto obs.
    id_column : str
        Cell id column of the metadata table.

    Returns
    -------
    AnnData
        Cells x genes AnnData.
    """
    import anndata as ad

    path = Path(path)
    if path.suffix == ".h5ad":
        adata = ad.read_h5ad(path)
    else:
        matrix = load_expression_matrix(path)
        adata = ad.AnnData(
            X=matrix.T.to_numpy(dtype=np.float32),
            obs=pd.DataFrame(index=matrix.columns),
            var=pd.DataFrame(index=matrix.index),
        )
    logger.info("Loaded %s (%d cells x %d genes)", path, adata.n_obs, adata.n_vars)

    if metadata_path is not None:
        meta = load_cell_metadata(metadata_path, id_column=id_column)
        missing = adata.obs_names.difference(meta.index)
        if len(missing):
            logger.warning(
                "%d cells in %s have no metadata row", len(missing), path.name
            )
        meta = meta.reindex(adata.obs_names)
        for col in meta.columns:
            adata.obs[col] = meta[col].to_numpy()
    return adata


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path
