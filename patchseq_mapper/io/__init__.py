"""I/O utilities for PatchSeq-Mapper.

Provides logging, CSV I/O, and data loading utilities.
"""

from .logging import get_logger, get_timestamped_log_path, log_yaml
from .csv import (
    ensure_output_dir,
    load_anndata,
    load_cell_metadata,
    load_expression_matrix,
    load_gene_list,
    write_dataframe,
)

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_yaml",
    # CSV I/O
    "ensure_output_dir",
    "load_anndata",
    "load_cell_metadata",
    "load_expression_matrix",
    "load_gene_list",
    "write_dataframe",
]
