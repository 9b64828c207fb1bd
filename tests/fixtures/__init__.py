"""Test fixtures for PatchSeq-Mapper.

Provides mock data generators and test utilities.
"""

from .mock_adata import (
    add_noise_cells,
    cluster_names,
    create_glia_reference,
    create_minimal_cell_metadata,
    create_minimal_expression_matrix,
    create_reference_query,
    marker_genes,
)

__all__ = [
    "add_noise_cells",
    "cluster_names",
    "create_glia_reference",
    "create_minimal_cell_metadata",
    "create_minimal_expression_matrix",
    "create_reference_query",
    "marker_genes",
]
