"""Error and warning types raised by the mapping core."""


class MappingError(Exception):
    """Base class for fatal mapping errors."""


class EmptyGeneSetError(MappingError):
    """Raised when gene filtering leaves too few usable genes."""

    def __init__(self, n_genes: int, min_genes: int, reason: str = ""):
        self.n_genes = n_genes
        self.min_genes = min_genes
        message = f"Gene filter kept {n_genes} genes (minimum {min_genes})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DimensionalityError(MappingError):
    """Raised when the requested embedding rank exceeds the available rank."""

    def __init__(self, requested: int, max_allowed: int):
        self.requested = requested
        self.max_allowed = max_allowed
        super().__init__(
            f"Requested {requested} dimensions but at most {max_allowed} "
            "are supported by the input shapes"
        )


class UndefinedScoreError(MappingError):
    """Raised when a gene specificity score cannot be computed."""


class MetadataError(MappingError):
    """Raised when cell metadata does not satisfy the dataset schema."""


class NoAnchorsWarning(UserWarning):
    """Emitted when no mutual nearest-neighbor anchors were found."""
