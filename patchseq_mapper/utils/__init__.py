"""Utility functions for PatchSeq-Mapper.

Provides statistical helpers and common utilities used across modules.
"""

from .stats import (
    clamp_unit,
    group_frame,
    group_reduce,
    row_pearson,
    to_dense,
)

__all__ = [
    "clamp_unit",
    "group_frame",
    "group_reduce",
    "row_pearson",
    "to_dense",
]
