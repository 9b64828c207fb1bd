"""Gene selection and specificity scoring.

Provides the shared gene filter, beta-score specificity ranking and
cross-dataset marker selection.

Example Usage
-------------
>>> from patchseq_mapper.core.genes import GeneFilter, SpecificityScorer
>>> genes = GeneFilter(config).run(reference, query).genes
>>> table = SpecificityScorer(config).run(reference, genes)
>>> table.top_genes(10)
"""

from .filter import FILTER_RULES, GeneFilter, GeneFilterResult
from .markers import MarkerList, MarkerSelector
from .specificity import (
    NEUTRAL_SCORE,
    SpecificityScorer,
    SpecificityTable,
    beta_score,
)

__all__ = [
    # Filter
    "FILTER_RULES",
    "GeneFilter",
    "GeneFilterResult",
    # Specificity
    "NEUTRAL_SCORE",
    "SpecificityScorer",
    "SpecificityTable",
    "beta_score",
    # Markers
    "MarkerList",
    "MarkerSelector",
]
