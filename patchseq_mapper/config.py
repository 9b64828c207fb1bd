"""Configuration classes for the mapping pipeline.

All thresholds, neighbor counts and the random seed live here and are
threaded explicitly through every component.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class GeneFilterConfig:
    """Configuration for shared gene selection.

    Attributes
    ----------
    detection_threshold : float
        Expression value above which a gene counts as detected
    min_detection_fraction : float
        Minimum fraction of detecting cells required in both datasets
    max_log2_mean_diff : float
        Reject genes whose mean expression differs by at least this much
    min_genes : int
        Minimum number of genes required after filtering
    exclude_patterns : List[str]
        Regular expressions for gene ids to exclude (e.g. mitochondrial)
    """

    detection_threshold: float = 0.0
    min_detection_fraction: float = 0.01
    max_log2_mean_diff: float = 2.0
    min_genes: int = 50
    exclude_patterns: List[str] = field(default_factory=lambda: ["^mt-", "^MT-"])


@dataclass
class SpecificityConfig:
    """Configuration for beta-score specificity ranking.

    Attributes
    ----------
    expression_threshold : float
        Expression value above which a cell expresses a gene
    n_features : int
        Number of top-ranked genes handed to the projector
    chunk_size : int
        Genes per parallel scoring chunk
    strict : bool
        Raise UndefinedScoreError instead of assigning the neutral score
    """

    expression_threshold: float = 1.0
    n_features: int = 2000
    chunk_size: int = 500
    strict: bool = False


@dataclass
class ProjectionConfig:
    """Configuration for the shared embedding.

    Attributes
    ----------
    method : str
        "cca" for the correlation-maximizing joint embedding, "pca" for
        PCA on the merged matrix
    n_dims : int
        Embedding dimensionality
    scale_clip : float
        Value clipping after per-gene z-scoring
    l2_normalize : bool
        L2-normalize each cell's embedding vector
    """

    method: str = "cca"
    n_dims: int = 30
    scale_clip: float = 10.0
    l2_normalize: bool = True


@dataclass
class AnchorConfig:
    """Configuration for anchor search and weighting.

    Attributes
    ----------
    k_anchor : int
        Neighbor count for the mutual nearest-neighbor search
    k_filter : int
        Within-dataset neighbor count used for anchor weighting
    """

    k_anchor: int = 20
    k_filter: int = 30


@dataclass
class TransferConfig:
    """Configuration for label and feature transfer.

    Attributes
    ----------
    k_weight : int
        Number of nearest anchors considered per query cell
    distance_offset : float
        Offset added to distances before inversion
    max_distance : float, optional
        Query cells farther than this from every reference cell receive
        the fallback prediction. None derives the tolerance from the
        reference (see distance_factor).
    distance_factor : float, optional
        With max_distance None, the tolerance is distance_factor times the
        reference extent (twice the largest distance of a reference cell
        from the reference centroid). None disables the check.
    fallback : str
        "majority" or "centroid"
    coords_key : str, optional
        Reference obsm key of coordinates to transfer (e.g. "X_umap")
    """

    k_weight: int = 50
    distance_offset: float = 0.1
    max_distance: Optional[float] = None
    distance_factor: Optional[float] = 1.0
    fallback: str = "centroid"
    coords_key: Optional[str] = "X_umap"


@dataclass
class MarkerConfig:
    """Configuration for the final marker list.

    Attributes
    ----------
    min_proportion : float
        Proportion expressing in the assigned cluster must exceed this
    min_correlation : float
        Minimum Pearson correlation of cluster means across datasets
    max_per_cluster : int, optional
        Cap on markers per assigned cluster. None keeps all.
    min_beta : float
        Minimum beta score for a candidate marker
    """

    min_proportion: float = 0.3
    min_correlation: float = 0.75
    max_per_cluster: Optional[int] = 5
    min_beta: float = 0.0


@dataclass
class MappingConfig:
    """Master configuration for a mapping run.

    Attributes
    ----------
    genes : GeneFilterConfig
        Gene filter configuration
    specificity : SpecificityConfig
        Specificity scoring configuration
    projection : ProjectionConfig
        Shared embedding configuration
    anchors : AnchorConfig
        Anchor search/weighting configuration
    transfer : TransferConfig
        Label transfer configuration
    markers : MarkerConfig
        Marker selection configuration
    random_seed : int
        Seed for the stochastic low-rank solvers
    n_jobs : int
        Worker count for parallel scoring and neighbor search
    unassigned_label : str
        Sentinel label excluded from every label set
    """

    genes: GeneFilterConfig = field(default_factory=GeneFilterConfig)
    specificity: SpecificityConfig = field(default_factory=SpecificityConfig)
    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    anchors: AnchorConfig = field(default_factory=AnchorConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)
    random_seed: int = 1337
    n_jobs: int = 1
    unassigned_label: str = "Unassigned"

    @classmethod
    def from_yaml(cls, path: Path) -> "MappingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested mapping section
        if "mapping" in data:
            data = data["mapping"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingConfig":
        """Build configuration from a (possibly partial) dictionary."""
        return cls(
            genes=GeneFilterConfig(**data.get("genes", {})),
            specificity=SpecificityConfig(**data.get("specificity", {})),
            projection=ProjectionConfig(**data.get("projection", {})),
            anchors=AnchorConfig(**data.get("anchors", {})),
            transfer=TransferConfig(**data.get("transfer", {})),
            markers=MarkerConfig(**data.get("markers", {})),
            random_seed=data.get("random_seed", 1337),
            n_jobs=data.get("n_jobs", 1),
            unassigned_label=data.get("unassigned_label", "Unassigned"),
        )

    @classmethod
    def default(cls) -> "MappingConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
