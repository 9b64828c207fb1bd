"""PatchSeq-Mapper: Cross-assay cell-type mapping and marker scoring.

This package provides tools for:
- Gene selection shared between a reference and a query assay
- Beta-score gene specificity ranking from proportion-expressed matrices
- Shared-space projection (CCA or merged PCA) of reference and query cells
- Mutual-nearest-neighbor anchors with neighborhood-based weighting
- Label and coordinate transfer from reference to query cells
- Marker gene selection reproducible across both assays

Example usage:
    >>> from patchseq_mapper.core.datasets import Dataset
    >>> from patchseq_mapper.core.integration import MappingEngine
    >>>
    >>> reference = Dataset("reference", ref_adata, label_key="subclass")
    >>> query = Dataset("query", patchseq_adata)
    >>> result = MappingEngine().run(reference, query)
    >>> result.prediction.to_frame().head()
"""

__version__ = "0.1.0"
