"""Command-line interface for PatchSeq-Mapper.

Provides CLI commands for mapping and marker selection.

Example Usage
-------------
    # From command line:
    patchseq-mapper --help
    patchseq-mapper map --reference ref.h5ad --query patchseq.h5ad --out out/
    patchseq-mapper markers --reference ref.h5ad --query patchseq.h5ad \
        --predictions out/predictions.csv --out out/
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
