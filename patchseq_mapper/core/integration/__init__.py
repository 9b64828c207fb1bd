"""Cross-dataset integration and label transfer.

Provides the shared embedding, mutual nearest-neighbor anchors, anchor
weighting, label/feature transfer and the end-to-end mapping engine.

Example Usage
-------------
>>> from patchseq_mapper.core.integration import MappingEngine
>>> result = MappingEngine(config).run(reference, query)
>>> result.prediction.to_frame().head()
"""

from .anchors import AnchorFinder, AnchorSet
from .engine import MappingEngine, MappingResult
from .export import export_mapping_result, export_markers
from .projection import (
    PROJECTION_METHODS,
    SharedEmbedding,
    SharedSpaceProjector,
)
from .transfer import (
    STATUS_ANCHORED,
    STATUS_NO_ANCHORS,
    STATUS_OUT_OF_RANGE,
    LabelTransferEngine,
    PredictionResult,
    TransferWeights,
)
from .weighting import AnchorWeighter

__all__ = [
    # Projection
    "PROJECTION_METHODS",
    "SharedEmbedding",
    "SharedSpaceProjector",
    # Anchors
    "AnchorFinder",
    "AnchorSet",
    "AnchorWeighter",
    # Transfer
    "LabelTransferEngine",
    "PredictionResult",
    "TransferWeights",
    "STATUS_ANCHORED",
    "STATUS_NO_ANCHORS",
    "STATUS_OUT_OF_RANGE",
    # Engine
    "MappingEngine",
    "MappingResult",
    "export_mapping_result",
    "export_markers",
]
